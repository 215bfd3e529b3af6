"""Loop closing: queues keyframes and detects loops with consistent covisibility groups."""

from __future__ import annotations

import threading
from collections import deque
from typing import Any

from slammap.loop_detection import ConsistentGroup, check_consistency, min_covisible_score

# Keyframes that must pass after a loop before another one is searched for.
_KEYFRAMES_BETWEEN_LOOPS = 10


class LoopClosing:
    """Receives keyframes from local mapping and looks for places seen before.

    A loop is accepted only when a candidate's covisibility group recurs in
    several consecutive queries.
    """

    covisibility_consistency_threshold = 3

    def __init__(self, world_map: Any, database: Any, vocabulary: Any, fix_scale: bool) -> None:
        self.map = world_map
        self.database = database
        self.vocabulary = vocabulary
        self.fix_scale = bool(fix_scale)
        self.local_mapper: Any = None

        self.current_keyframe: Any = None
        self.matched_keyframe: Any = None
        self.last_loop_kf_id = 0
        self.consistent_groups: list[ConsistentGroup] = []
        self.enough_consistent_candidates: list[Any] = []

        self._queue: deque[Any] = deque()
        self._queue_lock = threading.RLock()

        self._reset = threading.Condition()
        self._reset_requested = False

        self._finish_lock = threading.RLock()
        self._finish_requested = False
        self._finished = True

    def set_local_mapper(self, local_mapper: Any) -> None:
        self.local_mapper = local_mapper

    # Keyframe queue

    def insert_keyframe(self, keyframe: Any) -> None:
        """Queue a keyframe for loop detection; the first keyframe is never queued."""
        with self._queue_lock:
            if keyframe.id != 0:
                self._queue.append(keyframe)

    def check_new_keyframes(self) -> bool:
        with self._queue_lock:
            return bool(self._queue)

    def detect_loop(self) -> bool:
        """Take the next queued keyframe and report whether it closes a consistent loop."""
        with self._queue_lock:
            if not self._queue:
                raise RuntimeError("no keyframe queued for loop detection")
            keyframe = self._queue.popleft()
            # Keep local mapping from erasing it while it is processed here.
            keyframe.set_not_erase()
        self.current_keyframe = keyframe

        if keyframe.id < self.last_loop_kf_id + _KEYFRAMES_BETWEEN_LOOPS:
            self.database.add(keyframe)
            keyframe.set_erase()
            return False

        min_score = min_covisible_score(keyframe, self.vocabulary)
        candidates = self.database.detect_loop_candidates(keyframe, min_score)

        if not candidates:
            self.database.add(keyframe)
            self.consistent_groups = []
            keyframe.set_erase()
            return False

        enough, groups = check_consistency(
            candidates, self.consistent_groups, self.covisibility_consistency_threshold
        )
        self.enough_consistent_candidates = enough
        self.consistent_groups = groups

        self.database.add(keyframe)

        if not enough:
            keyframe.set_erase()
            return False
        return True

    # Reset handshake

    def request_reset(self) -> None:
        """Ask for a reset and block until the loop closing thread has carried it out."""
        with self._reset:
            self._reset_requested = True
            self._reset.wait_for(lambda: not self._reset_requested)

    def reset_if_requested(self) -> None:
        with self._reset:
            if not self._reset_requested:
                return
            with self._queue_lock:
                self._queue.clear()
            self.last_loop_kf_id = 0
            self._reset_requested = False
            self._reset.notify_all()

    # Finish handshake

    def request_finish(self) -> None:
        with self._finish_lock:
            self._finish_requested = True

    def check_finish(self) -> bool:
        with self._finish_lock:
            return self._finish_requested

    def set_finish(self) -> None:
        with self._finish_lock:
            self._finished = True

    def is_finished(self) -> bool:
        with self._finish_lock:
            return self._finished