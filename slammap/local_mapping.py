"""Local mapping: takes new keyframes into the map and keeps the local map lean."""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Any

import numpy as np

log = logging.getLogger(__name__)

# Observations another keyframe must add before a point counts as redundant.
_REDUNDANT_OBSERVATIONS = 3
# Share of redundant points that marks a keyframe as redundant.
_REDUNDANT_RATIO = 0.9
# Points found in fewer than this share of the frames that should see them are culled.
_MIN_FOUND_RATIO = 0.25


def skew_symmetric(v: Any) -> np.ndarray:
    """Cross-product matrix of a 3-vector: ``skew_symmetric(v) @ w == cross(v, w)``."""
    x, y, z = (float(c) for c in np.asarray(v, dtype=float).ravel()[:3])
    return np.array(
        [
            [0.0, -z, y],
            [z, 0.0, -x],
            [-y, x, 0.0],
        ]
    )


def compute_f12(keyframe1: Any, keyframe2: Any) -> np.ndarray:
    """Fundamental matrix with ``x1.T @ F12 @ x2 == 0`` for matching pixels."""
    r1w = np.asarray(keyframe1.rotation(), dtype=float)
    t1w = np.asarray(keyframe1.translation(), dtype=float).ravel()
    r2w = np.asarray(keyframe2.rotation(), dtype=float)
    t2w = np.asarray(keyframe2.translation(), dtype=float).ravel()

    r12 = r1w @ r2w.T
    t12 = -r1w @ r2w.T @ t2w + t1w

    k1 = np.asarray(keyframe1.k, dtype=float)
    k2 = np.asarray(keyframe2.k, dtype=float)
    return np.linalg.inv(k1.T) @ skew_symmetric(t12) @ r12 @ np.linalg.inv(k2)


class LocalMapping:
    """Queue of new keyframes plus the stop, reset and finish handshake with other threads."""

    def __init__(self, world_map: Any, monocular: bool) -> None:
        self.map = world_map
        self.monocular = bool(monocular)
        self.loop_closer: Any = None
        self.current_keyframe: Any = None
        self.recent_added_map_points: list[Any] = []
        # Read by bundle adjustment to abandon its work early.
        self.abort_ba = False

        self._new_keyframes: deque[Any] = deque()
        self._new_kf_lock = threading.RLock()

        self._stop_lock = threading.RLock()
        self._stopped = False
        self._stop_requested = False
        self._not_stop = False

        self._finish_lock = threading.RLock()
        self._finish_requested = False
        self._finished = True

        self._accept_lock = threading.Lock()
        self._accept = True

        self._reset = threading.Condition()
        self._reset_requested = False

    def set_loop_closer(self, loop_closer: Any) -> None:
        self.loop_closer = loop_closer

    # Keyframe queue

    def insert_keyframe(self, keyframe: Any) -> None:
        """Queue a keyframe and ask any running bundle adjustment to stop."""
        with self._new_kf_lock:
            self._new_keyframes.append(keyframe)
            self.abort_ba = True

    def check_new_keyframes(self) -> bool:
        with self._new_kf_lock:
            return bool(self._new_keyframes)

    def process_new_keyframe(self) -> None:
        """Take the next queued keyframe, attach its map points and add it to the map."""
        with self._new_kf_lock:
            keyframe = self._new_keyframes.popleft()
        self.current_keyframe = keyframe

        for index, point in enumerate(keyframe.map_point_matches()):
            if point is None or point.is_bad():
                continue
            if not point.is_in_keyframe(keyframe):
                point.add_observation(keyframe, index)
                point.update_normal_and_depth()
                point.compute_distinctive_descriptors()
            else:
                # Only new stereo points inserted by tracking get here.
                self.recent_added_map_points.append(point)

        keyframe.update_connections()
        self.map.add_keyframe(keyframe)

    # Culling

    def map_point_culling(self) -> None:
        """Drop recently created points that are seldom found or seldom observed."""
        if self.current_keyframe is None:
            raise RuntimeError("no keyframe has been processed")
        threshold = 2 if self.monocular else 3
        current_id = self.current_keyframe.id

        kept: list[Any] = []
        for point in self.recent_added_map_points:
            age = current_id - point.first_kf_id
            if point.is_bad():
                continue
            if point.found_ratio() < _MIN_FOUND_RATIO:
                point.set_bad_flag()
                continue
            if age >= 2 and point.num_observations() <= threshold:
                point.set_bad_flag()
                continue
            if age >= 3:
                continue
            kept.append(point)
        self.recent_added_map_points = kept

    def keyframe_culling(self) -> None:
        """Mark local keyframes bad when most of their points are seen elsewhere at similar scale."""
        if self.current_keyframe is None:
            raise RuntimeError("no keyframe has been processed")

        for keyframe in self.current_keyframe.covisible_keyframes():
            if keyframe.id == 0:
                continue
            redundant = 0
            total = 0
            for index, point in enumerate(keyframe.map_point_matches()):
                if point is None or point.is_bad():
                    continue
                if not self.monocular:
                    depth = keyframe.depth[index]
                    if depth > keyframe.th_depth or depth < 0:
                        continue
                total += 1
                if point.num_observations() <= _REDUNDANT_OBSERVATIONS:
                    continue
                level = keyframe.keys_un[index].octave
                seen = 0
                for other, other_index in point.observations().items():
                    if other is keyframe:
                        continue
                    if other.keys_un[other_index].octave <= level + 1:
                        seen += 1
                        if seen >= _REDUNDANT_OBSERVATIONS:
                            break
                if seen >= _REDUNDANT_OBSERVATIONS:
                    redundant += 1

            if redundant > _REDUNDANT_RATIO * total:
                keyframe.set_bad_flag()

    # Stop handshake

    def request_stop(self) -> None:
        with self._stop_lock:
            self._stop_requested = True
            with self._new_kf_lock:
                self.abort_ba = True

    def stop(self) -> bool:
        """Stop if a stop was requested and stopping is allowed."""
        with self._stop_lock:
            if self._stop_requested and not self._not_stop:
                self._stopped = True
                log.info("Local Mapping STOP")
                return True
            return False

    def is_stopped(self) -> bool:
        with self._stop_lock:
            return self._stopped

    def stop_requested(self) -> bool:
        with self._stop_lock:
            return self._stop_requested

    def release(self) -> None:
        """Resume after a stop, discarding queued keyframes; no effect once finished."""
        with self._stop_lock, self._finish_lock:
            if self._finished:
                return
            self._stopped = False
            self._stop_requested = False
            with self._new_kf_lock:
                self._new_keyframes.clear()
            log.info("Local Mapping RELEASE")

    def accept_keyframes(self) -> bool:
        with self._accept_lock:
            return self._accept

    def set_accept_keyframes(self, flag: bool) -> None:
        with self._accept_lock:
            self._accept = bool(flag)

    def set_not_stop(self, flag: bool) -> bool:
        """Forbid or allow stopping; forbidding fails if already stopped."""
        with self._stop_lock:
            if flag and self._stopped:
                return False
            self._not_stop = bool(flag)
            return True

    def interrupt_ba(self) -> None:
        self.abort_ba = True

    # Reset handshake

    def request_reset(self) -> None:
        """Ask for a reset and block until the mapping thread has carried it out."""
        with self._reset:
            self._reset_requested = True
            self._reset.wait_for(lambda: not self._reset_requested)

    def reset_if_requested(self) -> None:
        with self._reset:
            if not self._reset_requested:
                return
            with self._new_kf_lock:
                self._new_keyframes.clear()
            self.recent_added_map_points = []
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
        with self._finish_lock, self._stop_lock:
            self._finished = True
            self._stopped = True

    def is_finished(self) -> bool:
        with self._finish_lock:
            return self._finished