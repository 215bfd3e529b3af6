"""Keyframes: selected frames that anchor the map and the covisibility graph."""

from __future__ import annotations

import math
import threading
from typing import Any, ClassVar

import numpy as np

from slammap.covisibility import CovisibilityNode

# Shared map points needed before two keyframes are linked in the graph.
_COVISIBILITY_THRESHOLD = 15


class KeyFrame(CovisibilityNode):
    """A frame kept in the map, with its pose, features and map point matches.

    The frame it is built from must provide calibration (``fx``, ``fy``,
    ``cx``, ``cy``, ``invfx``, ``invfy``, ``bf``, ``b``, ``th_depth``),
    features (``n``, ``keys``, ``keys_un``, ``uright``, ``depth``,
    ``descriptors``), scale pyramid data, image bounds, the feature ``grid``
    (columns of rows of index lists), its ``map_points`` and its pose ``tcw``.
    Keypoints expose ``pt`` as an ``(x, y)`` pair and ``octave``.
    """

    _next_id: ClassVar[int] = 0
    _id_lock: ClassVar[threading.Lock] = threading.Lock()

    def __init__(self, frame: Any, world_map: Any, database: Any) -> None:
        super().__init__()
        with KeyFrame._id_lock:
            self.id = KeyFrame._next_id
            KeyFrame._next_id += 1

        self.frame_id = frame.id
        self.timestamp = frame.timestamp

        self.grid_cols = len(frame.grid)
        self.grid_rows = len(frame.grid[0]) if frame.grid else 0
        self.grid_element_width_inv = frame.grid_element_width_inv
        self.grid_element_height_inv = frame.grid_element_height_inv
        self._grid = [[list(cell) for cell in column] for column in frame.grid]

        # Bookkeeping used by tracking, local mapping and loop closing.
        self.track_reference_for_frame = 0
        self.fuse_target_for_kf = 0
        self.ba_local_for_kf = 0
        self.ba_fixed_for_kf = 0
        self.loop_query = 0
        self.loop_words = 0
        self.loop_score = 0.0
        self.reloc_query = 0
        self.reloc_words = 0
        self.reloc_score = 0.0
        self.tcw_gba: np.ndarray | None = None
        self.tcw_bef_gba: np.ndarray | None = None
        self.ba_global_for_kf = 0
        self.tcp: np.ndarray | None = None

        self.fx, self.fy = frame.fx, frame.fy
        self.cx, self.cy = frame.cx, frame.cy
        self.invfx, self.invfy = frame.invfx, frame.invfy
        self.bf, self.b = frame.bf, frame.b
        self.th_depth = frame.th_depth

        self.n = frame.n
        self.keys = list(frame.keys)
        self.keys_un = list(frame.keys_un)
        self.uright = list(frame.uright)
        self.depth = list(frame.depth)
        self.descriptors = np.array(frame.descriptors, copy=True)

        self.bow_vec = dict(getattr(frame, "bow_vec", {}) or {})
        self.feat_vec = dict(getattr(frame, "feat_vec", {}) or {})
        self.vocabulary = getattr(frame, "vocabulary", None)

        self.scale_levels = frame.scale_levels
        self.scale_factor = frame.scale_factor
        self.log_scale_factor = frame.log_scale_factor
        self.scale_factors = list(frame.scale_factors)
        self.level_sigma2 = list(frame.level_sigma2)
        self.inv_level_sigma2 = list(frame.inv_level_sigma2)

        self.min_x = int(frame.min_x)
        self.min_y = int(frame.min_y)
        self.max_x = int(frame.max_x)
        self.max_y = int(frame.max_y)
        self.k = np.array(frame.k, dtype=float, copy=True)

        self.map = world_map
        self._database = database
        self._map_points: list[Any] = list(frame.map_points)

        self._to_be_erased = False
        self._bad = False
        self._half_baseline = frame.b / 2

        self._pose_lock = threading.RLock()
        self._feature_lock = threading.RLock()
        self._tcw = np.eye(4)
        self._twc = np.eye(4)
        self._ow = np.zeros(3)
        self._cw = np.zeros(3)
        self.set_pose(frame.tcw)

    # Pose

    def set_pose(self, tcw: Any) -> None:
        """Set the world-to-camera transform and derive its inverse and centres."""
        pose = np.array(tcw, dtype=float).reshape(4, 4)
        rcw = pose[:3, :3]
        tvec = pose[:3, 3]
        rwc = rcw.T
        ow = -rwc @ tvec
        twc = np.eye(4)
        twc[:3, :3] = rwc
        twc[:3, 3] = ow
        center = twc @ np.array([self._half_baseline, 0.0, 0.0, 1.0])
        with self._pose_lock:
            self._tcw = pose
            self._twc = twc
            self._ow = ow
            self._cw = center[:3]

    def pose(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw.copy()

    def pose_inverse(self) -> np.ndarray:
        with self._pose_lock:
            return self._twc.copy()

    def camera_center(self) -> np.ndarray:
        with self._pose_lock:
            return self._ow.copy()

    def stereo_center(self) -> np.ndarray:
        """Midpoint of the stereo baseline in world coordinates."""
        with self._pose_lock:
            return self._cw.copy()

    def rotation(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw[:3, :3].copy()

    def translation(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw[:3, 3].copy()

    # Covisibility graph

    def update_connections(self) -> None:
        """Rebuild graph links from the map points this keyframe shares with others."""
        with self._feature_lock:
            points = list(self._map_points)

        counter: dict[Any, int] = {}
        for point in points:
            if point is None or point.is_bad():
                continue
            for keyframe in point.observations():
                if keyframe.id == self.id:
                    continue
                counter[keyframe] = counter.get(keyframe, 0) + 1

        if not counter:
            return

        best = max(counter, key=counter.__getitem__)
        pairs = []
        for keyframe, weight in counter.items():
            if weight >= _COVISIBILITY_THRESHOLD:
                pairs.append((keyframe, weight))
                keyframe.add_connection(self, weight)
        if not pairs:
            pairs.append((best, counter[best]))
            best.add_connection(self, counter[best])

        nodes, weights = self._order(pairs)
        with self._connection_lock:
            self._connected_weights = counter
            self._ordered_connected = nodes
            self._ordered_weights = weights
            if self._first_connection and self.id != 0:
                self._parent = nodes[0]
                self._parent.add_child(self)
                self._first_connection = False

    # Map point matches

    def add_map_point(self, point: Any, index: int) -> None:
        with self._feature_lock:
            self._map_points[index] = point

    def erase_map_point_match(self, index: int) -> None:
        with self._feature_lock:
            self._map_points[index] = None

    def erase_map_point(self, point: Any) -> None:
        """Drop the match with ``point``, wherever the point says it is observed."""
        index = point.index_in_keyframe(self)
        if index >= 0:
            self._map_points[index] = None

    def replace_map_point_match(self, index: int, point: Any) -> None:
        self._map_points[index] = point

    def map_points(self) -> set[Any]:
        """Matched map points that are not bad."""
        with self._feature_lock:
            return {p for p in self._map_points if p is not None and not p.is_bad()}

    def map_point_matches(self) -> list[Any]:
        with self._feature_lock:
            return list(self._map_points)

    def tracked_map_points(self, min_obs: int) -> int:
        """Good matched points, counting only those with ``min_obs`` observations if positive."""
        with self._feature_lock:
            points = self._map_points[: self.n]
            return sum(
                1
                for p in points
                if p is not None
                and not p.is_bad()
                and (min_obs <= 0 or p.num_observations() >= min_obs)
            )

    def map_point(self, index: int) -> Any:
        with self._feature_lock:
            return self._map_points[index]

    # Keypoints and image

    def features_in_area(self, x: float, y: float, r: float) -> list[int]:
        """Indices of undistorted keypoints inside the square of half-side ``r``."""
        min_cx = max(0, math.floor((x - self.min_x - r) * self.grid_element_width_inv))
        if min_cx >= self.grid_cols:
            return []
        max_cx = min(self.grid_cols - 1, math.ceil((x - self.min_x + r) * self.grid_element_width_inv))
        if max_cx < 0:
            return []
        min_cy = max(0, math.floor((y - self.min_y - r) * self.grid_element_height_inv))
        if min_cy >= self.grid_rows:
            return []
        max_cy = min(self.grid_rows - 1, math.ceil((y - self.min_y + r) * self.grid_element_height_inv))
        if max_cy < 0:
            return []

        found = []
        for column in self._grid[min_cx : max_cx + 1]:
            for cell in column[min_cy : max_cy + 1]:
                for index in cell:
                    kx, ky = self.keys_un[index].pt
                    if abs(kx - x) < r and abs(ky - y) < r:
                        found.append(index)
        return found

    def unproject_stereo(self, i: int) -> np.ndarray | None:
        """World position of keypoint ``i`` from its depth, or None without depth."""
        z = self.depth[i]
        if z <= 0:
            return None
        u, v = self.keys[i].pt
        point = np.array([(u - self.cx) * z * self.invfx, (v - self.cy) * z * self.invfy, z])
        with self._pose_lock:
            return self._twc[:3, :3] @ point + self._twc[:3, 3]

    def is_in_image(self, x: float, y: float) -> bool:
        return self.min_x <= x < self.max_x and self.min_y <= y < self.max_y

    # Erasure

    def set_not_erase(self) -> None:
        with self._connection_lock:
            self._not_erase = True

    def set_erase(self) -> None:
        """Allow erasure again, unless loop edges pin this keyframe."""
        with self._connection_lock:
            if not self._loop_edges:
                self._not_erase = False
        if self._to_be_erased:
            self.set_bad_flag()

    def set_bad_flag(self) -> None:
        """Remove this keyframe from the graph, the spanning tree, the map and the database."""
        with self._connection_lock:
            if self.id == 0:
                return
            if self._not_erase:
                self._to_be_erased = True
                return
            connected = list(self._connected_weights)

        for other in connected:
            other.erase_connection(self)

        with self._feature_lock:
            points = list(self._map_points)
        for point in points:
            if point is not None:
                point.erase_observation(self)

        with self._connection_lock, self._feature_lock:
            self._connected_weights.clear()
            self._ordered_connected = []
            self._ordered_weights = []

            parent = self._parent
            candidates: dict[Any, None] = {} if parent is None else {parent: None}

            # Hand each child to the candidate parent it is most strongly linked to.
            while self._children:
                best_weight = -1
                chosen = None
                for child in list(self._children):
                    if child.is_bad():
                        continue
                    for neighbour in child.covisible_keyframes():
                        if neighbour in candidates:
                            w = child.weight(neighbour)
                            if w > best_weight:
                                best_weight = w
                                chosen = (child, neighbour)
                if chosen is None:
                    break
                child, new_parent = chosen
                child.change_parent(new_parent)
                candidates[child] = None
                del self._children[child]

            if parent is not None:
                for child in list(self._children):
                    child.change_parent(parent)
                parent.erase_child(self)
                self.tcp = self._tcw @ parent.pose_inverse()
            self._bad = True

        self.map.erase_keyframe(self)
        if self._database is not None:
            self._database.erase(self)

    def is_bad(self) -> bool:
        with self._connection_lock:
            return self._bad

    def compute_scene_median_depth(self, q: int) -> float:
        """Depth of the matched points at quantile ``1/q`` (q=2 gives the median)."""
        with self._feature_lock, self._pose_lock:
            points = list(self._map_points)
            pose = self._tcw.copy()
        row = pose[2, :3]
        zcw = pose[2, 3]
        depths = sorted(
            float(row @ point.world_pos() + zcw) for point in points[: self.n] if point is not None
        )
        if not depths:
            raise ValueError("keyframe has no map points")
        return depths[(len(depths) - 1) // q]