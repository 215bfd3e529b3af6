"""The map: the set of keyframes and map points that make up the reconstruction."""

from __future__ import annotations

import threading
from typing import Any, Iterable


class Map:
    """Thread-safe container of keyframes and map points."""

    def __init__(self) -> None:
        self._keyframes: dict[Any, None] = {}
        self._map_points: dict[Any, None] = {}
        self._reference_map_points: list[Any] = []
        self._max_keyframe_id = 0
        self._big_change_idx = 0
        self._lock = threading.RLock()

        self.keyframe_origins: list[Any] = []
        # Held while the map is being rewritten (loop correction, global BA).
        self.mutex_map_update = threading.RLock()
        # Serialises map point creation so ids are never handed out twice.
        self.mutex_point_creation = threading.Lock()

    def add_keyframe(self, keyframe: Any) -> None:
        with self._lock:
            self._keyframes[keyframe] = None
            if keyframe.id > self._max_keyframe_id:
                self._max_keyframe_id = keyframe.id

    def add_map_point(self, point: Any) -> None:
        with self._lock:
            self._map_points[point] = None

    def erase_map_point(self, point: Any) -> None:
        with self._lock:
            self._map_points.pop(point, None)

    def erase_keyframe(self, keyframe: Any) -> None:
        with self._lock:
            self._keyframes.pop(keyframe, None)

    def set_reference_map_points(self, points: Iterable[Any]) -> None:
        with self._lock:
            self._reference_map_points = list(points)

    def inform_new_big_change(self) -> None:
        """Record a large change to the map (loop closure, global BA)."""
        with self._lock:
            self._big_change_idx += 1

    def last_big_change(self) -> int:
        with self._lock:
            return self._big_change_idx

    def all_keyframes(self) -> list[Any]:
        with self._lock:
            return list(self._keyframes)

    def all_map_points(self) -> list[Any]:
        with self._lock:
            return list(self._map_points)

    def reference_map_points(self) -> list[Any]:
        with self._lock:
            return list(self._reference_map_points)

    def map_points_in_map(self) -> int:
        with self._lock:
            return len(self._map_points)

    def keyframes_in_map(self) -> int:
        with self._lock:
            return len(self._keyframes)

    def max_keyframe_id(self) -> int:
        with self._lock:
            return self._max_keyframe_id

    def clear(self) -> None:
        """Drop every keyframe and map point."""
        with self._lock:
            self._map_points.clear()
            self._keyframes.clear()
            self._max_keyframe_id = 0
            self._reference_map_points.clear()
            self.keyframe_origins.clear()