import math
from dataclasses import dataclass
from types import SimpleNamespace

import numpy as np
import pytest

from slammap.keyframe import KeyFrame
from slammap.mappoint import MapPoint
from slammap.worldmap import Map


@dataclass
class KeyPoint:
    pt: tuple
    octave: int = 0


class RecordingDatabase:
    def __init__(self):
        self.erased = []

    def erase(self, keyframe):
        self.erased.append(keyframe)


def make_frame(n=20, keys=None, depth=None, tcw=None, b=0.0):
    if keys is None:
        keys = [KeyPoint((10.0 + 20.0 * i, 50.0)) for i in range(n)]
    n = len(keys)
    grid = [[[] for _ in range(48)] for _ in range(64)]
    for index, kp in enumerate(keys):
        grid[int(kp.pt[0] * 0.1)][int(kp.pt[1] * 0.1)].append(index)
    return SimpleNamespace(
        id=0,
        timestamp=0.0,
        grid=grid,
        grid_element_width_inv=0.1,
        grid_element_height_inv=0.1,
        fx=500.0,
        fy=500.0,
        cx=320.0,
        cy=240.0,
        invfx=1 / 500.0,
        invfy=1 / 500.0,
        bf=500.0 * b,
        b=b,
        th_depth=40.0,
        n=n,
        keys=keys,
        keys_un=keys,
        uright=[-1.0] * n,
        depth=depth if depth is not None else [-1.0] * n,
        descriptors=np.zeros((n, 32), dtype=np.uint8),
        scale_levels=2,
        scale_factor=1.2,
        log_scale_factor=math.log(1.2),
        scale_factors=[1.0, 1.2],
        level_sigma2=[1.0, 1.44],
        inv_level_sigma2=[1.0, 1 / 1.44],
        min_x=0.0,
        min_y=0.0,
        max_x=640.0,
        max_y=480.0,
        k=np.eye(3),
        map_points=[None] * n,
        tcw=np.eye(4) if tcw is None else tcw,
    )


@pytest.fixture
def world():
    return Map(), RecordingDatabase()


def make_kf(world, **kwargs):
    world_map, database = world
    kf = KeyFrame(make_frame(**kwargs), world_map, database)
    world_map.add_keyframe(kf)
    return kf


def share_points(world, kfs, count):
    world_map, _ = world
    points = []
    for i in range(count):
        point = MapPoint([0.0, 0.0, 5.0], kfs[0], world_map)
        for kf in kfs:
            point.add_observation(kf, i)
            kf.add_map_point(point, i)
        world_map.add_map_point(point)
        points.append(point)
    return points


def pose_from(angle, t):
    c, s = math.cos(angle), math.sin(angle)
    pose = np.eye(4)
    pose[:3, :3] = [[c, -s, 0], [s, c, 0], [0, 0, 1]]
    pose[:3, 3] = t
    return pose


def test_pose_round_trip(world):
    kf = make_kf(world)
    pose = pose_from(0.3, [1.0, -2.0, 0.5])
    kf.set_pose(pose)
    assert np.allclose(kf.pose(), pose)
    assert np.allclose(kf.pose_inverse() @ kf.pose(), np.eye(4))
    assert np.allclose(kf.rotation(), pose[:3, :3])
    assert np.allclose(kf.translation(), pose[:3, 3])
    assert np.allclose(kf.camera_center(), -pose[:3, :3].T @ pose[:3, 3])


def test_pose_getters_return_copies(world):
    kf = make_kf(world)
    kf.pose()[0, 3] = 99.0
    assert kf.pose()[0, 3] == 0.0


def test_stereo_center_lies_half_baseline_along_x(world):
    kf = make_kf(world, b=0.2)
    assert np.allclose(kf.stereo_center(), [0.1, 0.0, 0.0])
    kf.set_pose(pose_from(0.0, [-1.0, 0.0, 0.0]))
    assert np.allclose(kf.stereo_center() - kf.camera_center(), [0.1, 0.0, 0.0])


def test_features_in_area(world):
    keys = [KeyPoint((100.0, 100.0)), KeyPoint((105.0, 102.0)), KeyPoint((300.0, 300.0)), KeyPoint((110.0, 100.0))]
    kf = make_kf(world, keys=keys)
    assert sorted(kf.features_in_area(100.0, 100.0, 10.0)) == [0, 1]
    assert kf.features_in_area(1000.0, 1000.0, 5.0) == []


def test_is_in_image(world):
    kf = make_kf(world)
    assert kf.is_in_image(0.0, 0.0)
    assert not kf.is_in_image(640.0, 10.0)
    assert not kf.is_in_image(10.0, -1.0)


def test_unproject_stereo_projects_back(world):
    keys = [KeyPoint((400.0, 200.0)), KeyPoint((10.0, 10.0))]
    kf = make_kf(world, keys=keys, depth=[3.0, -1.0])
    point = kf.unproject_stereo(0)
    assert point[2] == pytest.approx(3.0)
    assert 500.0 * point[0] / point[2] + 320.0 == pytest.approx(400.0)
    assert 500.0 * point[1] / point[2] + 240.0 == pytest.approx(200.0)
    assert kf.unproject_stereo(1) is None


def test_map_point_matches(world):
    world_map, _ = world
    kf = make_kf(world, n=4)
    point = MapPoint([0.0, 0.0, 1.0], kf, world_map)
    point.add_observation(kf, 2)
    kf.add_map_point(point, 2)
    assert kf.map_point(2) is point
    assert kf.map_point_matches() == [None, None, point, None]
    assert kf.map_points() == {point}
    kf.erase_map_point(point)
    assert kf.map_point(2) is None


def test_tracked_map_points_respects_min_obs(world):
    root = make_kf(world, n=4)
    other = make_kf(world, n=4)
    share_points(world, [root, other], 2)
    assert root.tracked_map_points(0) == 2
    assert root.tracked_map_points(3) == 0
    assert root.tracked_map_points(2) == 2


def test_map_points_skip_bad(world):
    kf = make_kf(world, n=4)
    (point,) = share_points(world, [kf], 1)
    point.set_bad_flag()
    assert kf.map_points() == set()
    assert kf.tracked_map_points(0) == 0


def test_update_connections_links_and_parents(world):
    a = make_kf(world)
    b = make_kf(world)
    share_points(world, [a, b], 20)
    b.update_connections()
    assert b.weight(a) == 20
    assert a.weight(b) == 20
    assert b.parent() is a
    assert a.has_child(b)
    assert b.covisible_keyframes() == [a]


def test_update_connections_below_threshold_keeps_best(world):
    a = make_kf(world)
    b = make_kf(world)
    share_points(world, [a, b], 5)
    b.update_connections()
    assert b.covisible_keyframes() == [a]
    assert a.weight(b) == 5


def test_set_bad_flag_removes_keyframe(world):
    world_map, database = world
    make_kf(world)
    a = make_kf(world)
    b = make_kf(world)
    points = share_points(world, [a, b], 20)
    b.update_connections()
    b.set_bad_flag()
    assert b.is_bad()
    assert a.weight(b) == 0
    assert not a.has_child(b)
    assert b not in world_map.all_keyframes()
    assert database.erased == [b]
    assert all(p.is_bad() for p in points)


def test_set_bad_flag_reassigns_children(world):
    root = make_kf(world)
    a = make_kf(world)
    child = make_kf(world)
    a.change_parent(root)
    child.change_parent(a)
    child.add_connection(root, 30)
    a.set_bad_flag()
    assert child.parent() is root
    assert root.has_child(child)
    assert np.allclose(a.tcp, a.pose() @ root.pose_inverse())


def test_not_erase_defers_bad_flag(world):
    make_kf(world)
    kf = make_kf(world)
    kf.set_not_erase()
    kf.set_bad_flag()
    assert not kf.is_bad()
    kf.set_erase()
    assert kf.is_bad()


def test_loop_edge_pins_keyframe(world):
    make_kf(world)
    kf = make_kf(world)
    other = make_kf(world)
    kf.add_loop_edge(other)
    kf.set_bad_flag()
    kf.set_erase()
    assert not kf.is_bad()


def test_scene_median_depth(world):
    world_map, _ = world
    kf = make_kf(world, n=4)
    for i, z in enumerate([4.0, 1.0, 3.0, 2.0]):
        kf.add_map_point(MapPoint([0.0, 0.0, z], kf, world_map), i)
    assert kf.compute_scene_median_depth(2) == pytest.approx(2.0)
    assert kf.compute_scene_median_depth(1) == pytest.approx(4.0)


def test_scene_median_depth_without_points(world):
    kf = make_kf(world, n=4)
    with pytest.raises(ValueError):
        kf.compute_scene_median_depth(2)


def test_ids_increase(world):
    first = make_kf(world)
    second = make_kf(world)
    assert second.id == first.id + 1