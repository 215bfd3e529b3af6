"""Geometry behind the map view: camera frustums, graph edges and the camera matrix."""

from __future__ import annotations

import threading
from typing import Any, Iterable

import numpy as np

Point3 = tuple[float, float, float]
Segment = tuple[Point3, Point3]


def frustum_segments(size: float) -> list[Segment]:
    """Line segments of the pyramid used to draw a camera of width ``size``."""
    w = float(size)
    h = w * 0.75
    z = w * 0.6
    origin = (0.0, 0.0, 0.0)
    return [
        (origin, (w, h, z)),
        (origin, (w, -h, z)),
        (origin, (-w, -h, z)),
        (origin, (-w, h, z)),
        ((w, h, z), (w, -h, z)),
        ((-w, h, z), (-w, -h, z)),
        ((-w, h, z), (w, h, z)),
        ((-w, -h, z), (w, -h, z)),
    ]


def _point(center: Any) -> Point3:
    x, y, z = (float(c) for c in np.asarray(center, dtype=float).ravel()[:3])
    return (x, y, z)


def graph_edges(keyframes: Iterable[Any], min_weight: int = 100) -> list[Segment]:
    """Segments between camera centres for strong covisibility links, the spanning tree and loops."""
    edges: list[Segment] = []
    for keyframe in keyframes:
        center = _point(keyframe.camera_center())
        for other in keyframe.covisibles_by_weight(min_weight):
            if other.id < keyframe.id:
                continue
            edges.append((center, _point(other.camera_center())))

        parent = keyframe.parent()
        if parent is not None:
            edges.append((center, _point(parent.camera_center())))

        for other in keyframe.loop_edges():
            if other.id < keyframe.id:
                continue
            edges.append((center, _point(other.camera_center())))
    return edges


class CameraView:
    """Holds the current camera pose and turns it into an OpenGL model matrix."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pose: np.ndarray | None = None

    def set_current_camera_pose(self, tcw: Any) -> None:
        with self._lock:
            self._pose = np.array(tcw, dtype=float).reshape(4, 4)

    def opengl_camera_matrix(self) -> np.ndarray:
        """Camera-to-world transform as 16 values in column-major order; identity if unset."""
        with self._lock:
            pose = None if self._pose is None else self._pose.copy()
        if pose is None:
            return np.eye(4).ravel(order="F")
        rwc = pose[:3, :3].T
        twc = -rwc @ pose[:3, 3]
        matrix = np.eye(4)
        matrix[:3, :3] = rwc
        matrix[:3, 3] = twc
        return matrix.ravel(order="F")