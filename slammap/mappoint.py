"""Map points: 3D landmarks observed from several keyframes."""

from __future__ import annotations

import math
import threading
from typing import Any, ClassVar

import numpy as np


def descriptor_distance(a: Any, b: Any) -> int:
    """Hamming distance between two binary descriptors given as byte arrays."""
    xa = np.asarray(a, dtype=np.uint8).ravel()
    xb = np.asarray(b, dtype=np.uint8).ravel()
    if xa.shape != xb.shape:
        raise ValueError("descriptors must have the same length")
    return int(np.unpackbits(np.bitwise_xor(xa, xb)).sum())


class MapPoint:
    """A landmark with its observations, descriptor and scale-invariance range."""

    _next_id: ClassVar[int] = 0
    # Taken by optimisers while they write positions back.
    global_lock: ClassVar[threading.RLock] = threading.RLock()

    def __init__(self, position: Any, reference_keyframe: Any, world_map: Any) -> None:
        self._init_common(position, world_map, reference_keyframe.frame_id)
        self.first_kf_id = reference_keyframe.id
        self._reference_kf = reference_keyframe
        self._assign_id()

    @classmethod
    def from_frame(cls, position: Any, world_map: Any, frame: Any, index: int) -> "MapPoint":
        """Create a point seen by a plain frame, before any keyframe exists for it."""
        point = cls.__new__(cls)
        point._init_common(position, world_map, frame.id)
        point.first_kf_id = -1
        point._reference_kf = None

        center = np.asarray(frame.camera_center(), dtype=float).ravel()
        offset = point._world_pos - center
        dist = float(np.linalg.norm(offset))
        point._normal = offset / dist

        level = frame.keys_un[index].octave
        point._max_distance = dist * frame.scale_factors[level]
        point._min_distance = point._max_distance / frame.scale_factors[frame.scale_levels - 1]
        point._descriptor = np.array(frame.descriptors[index], copy=True)

        point._assign_id()
        return point

    def _init_common(self, position: Any, world_map: Any, first_frame: int) -> None:
        self.map = world_map
        self.first_frame = first_frame
        self.track_reference_for_frame = 0
        self.last_frame_seen = 0
        self.ba_local_for_kf = 0
        self.fuse_candidate_for_kf = 0
        self.loop_point_for_kf = 0
        self.corrected_by_kf = 0
        self.corrected_reference = 0
        self.ba_global_for_kf = 0
        self.pos_gba: np.ndarray | None = None

        self._world_pos = np.array(position, dtype=float).ravel()
        self._normal = np.zeros(3)
        self._descriptor: np.ndarray | None = None
        self._observations: dict[Any, int] = {}
        self._nobs = 0
        self._visible = 1
        self._found = 1
        self._bad = False
        self._replaced: MapPoint | None = None
        self._min_distance = 0.0
        self._max_distance = 0.0
        self._feature_lock = threading.RLock()
        self._pos_lock = threading.RLock()

    def _assign_id(self) -> None:
        with self.map.mutex_point_creation:
            self.id = MapPoint._next_id
            MapPoint._next_id += 1

    def world_pos(self) -> np.ndarray:
        with self._pos_lock:
            return self._world_pos.copy()

    def set_world_pos(self, position: Any) -> None:
        with MapPoint.global_lock, self._pos_lock:
            self._world_pos = np.array(position, dtype=float).ravel()

    def normal(self) -> np.ndarray:
        with self._pos_lock:
            return self._normal.copy()

    def reference_keyframe(self) -> Any:
        with self._feature_lock:
            return self._reference_kf

    def add_observation(self, keyframe: Any, index: int) -> None:
        with self._feature_lock:
            if keyframe in self._observations:
                return
            self._observations[keyframe] = index
            self._nobs += 2 if keyframe.uright[index] >= 0 else 1

    def erase_observation(self, keyframe: Any) -> None:
        """Remove one observation; the point turns bad with two or fewer left."""
        bad = False
        with self._feature_lock:
            if keyframe in self._observations:
                index = self._observations.pop(keyframe)
                self._nobs -= 2 if keyframe.uright[index] >= 0 else 1
                if self._reference_kf is keyframe:
                    self._reference_kf = next(iter(self._observations), None)
                bad = self._nobs <= 2
        if bad:
            self.set_bad_flag()

    def observations(self) -> dict[Any, int]:
        with self._feature_lock:
            return dict(self._observations)

    def num_observations(self) -> int:
        with self._feature_lock:
            return self._nobs

    def set_bad_flag(self) -> None:
        with self._feature_lock, self._pos_lock:
            self._bad = True
            observed = self._observations
            self._observations = {}
        for keyframe, index in observed.items():
            keyframe.erase_map_point_match(index)
        self.map.erase_map_point(self)

    def replaced(self) -> "MapPoint | None":
        with self._feature_lock, self._pos_lock:
            return self._replaced

    def replace(self, other: "MapPoint") -> None:
        """Hand every observation over to ``other`` and retire this point."""
        if other.id == self.id:
            return
        with self._feature_lock, self._pos_lock:
            observed = self._observations
            self._observations = {}
            self._bad = True
            visible, found = self._visible, self._found
            self._replaced = other

        for keyframe, index in observed.items():
            if not other.is_in_keyframe(keyframe):
                keyframe.replace_map_point_match(index, other)
                other.add_observation(keyframe, index)
            else:
                keyframe.erase_map_point_match(index)

        other.increase_found(found)
        other.increase_visible(visible)
        other.compute_distinctive_descriptors()
        self.map.erase_map_point(self)

    def is_bad(self) -> bool:
        with self._feature_lock, self._pos_lock:
            return self._bad

    def increase_visible(self, n: int = 1) -> None:
        with self._feature_lock:
            self._visible += n

    def increase_found(self, n: int = 1) -> None:
        with self._feature_lock:
            self._found += n

    def found_ratio(self) -> float:
        with self._feature_lock:
            return self._found / self._visible

    def compute_distinctive_descriptors(self) -> None:
        """Keep the observed descriptor with the least median distance to the others."""
        with self._feature_lock:
            if self._bad:
                return
            observed = dict(self._observations)
        if not observed:
            return

        descriptors = [
            np.asarray(keyframe.descriptors[index], dtype=np.uint8)
            for keyframe, index in observed.items()
            if not keyframe.is_bad()
        ]
        if not descriptors:
            return

        n = len(descriptors)
        distances = np.zeros((n, n), dtype=np.int64)
        for i, first in enumerate(descriptors):
            for j in range(i + 1, n):
                d = descriptor_distance(first, descriptors[j])
                distances[i, j] = distances[j, i] = d

        best_median = None
        best_idx = 0
        for i, row in enumerate(distances):
            median = int(np.sort(row)[int(0.5 * (n - 1))])
            if best_median is None or median < best_median:
                best_median = median
                best_idx = i

        with self._feature_lock:
            self._descriptor = descriptors[best_idx].copy()

    def descriptor(self) -> np.ndarray | None:
        with self._feature_lock:
            return None if self._descriptor is None else self._descriptor.copy()

    def index_in_keyframe(self, keyframe: Any) -> int:
        with self._feature_lock:
            return self._observations.get(keyframe, -1)

    def is_in_keyframe(self, keyframe: Any) -> bool:
        with self._feature_lock:
            return keyframe in self._observations

    def update_normal_and_depth(self) -> None:
        """Recompute the mean viewing direction and the scale-invariance distances."""
        with self._feature_lock, self._pos_lock:
            if self._bad:
                return
            observed = dict(self._observations)
            reference = self._reference_kf
            position = self._world_pos.copy()
        if not observed or reference is None:
            return

        normal = np.zeros(3)
        for keyframe in observed:
            ray = position - np.asarray(keyframe.camera_center(), dtype=float).ravel()
            normal += ray / np.linalg.norm(ray)

        ref_center = np.asarray(reference.camera_center(), dtype=float).ravel()
        dist = float(np.linalg.norm(position - ref_center))
        level = reference.keys_un[observed.get(reference, 0)].octave
        scale = reference.scale_factors[level]
        coarsest = reference.scale_factors[reference.scale_levels - 1]

        with self._pos_lock:
            self._max_distance = dist * scale
            self._min_distance = self._max_distance / coarsest
            self._normal = normal / len(observed)

    def min_distance_invariance(self) -> float:
        with self._pos_lock:
            return 0.8 * self._min_distance

    def max_distance_invariance(self) -> float:
        with self._pos_lock:
            return 1.2 * self._max_distance

    def predict_scale(self, current_dist: float, frame: Any) -> int:
        """Pyramid level at which the point should appear at ``current_dist``."""
        with self._pos_lock:
            ratio = self._max_distance / current_dist
        scale = math.ceil(math.log(ratio) / frame.log_scale_factor)
        return max(0, min(scale, frame.scale_levels - 1))