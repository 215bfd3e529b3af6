from slammap.worldmap import Map


class _KF:
    def __init__(self, id_):
        self.id = id_


class _MP:
    pass


def test_add_and_count_keyframes():
    m = Map()
    a, b = _KF(3), _KF(7)
    m.add_keyframe(a)
    m.add_keyframe(b)
    m.add_keyframe(a)
    assert m.keyframes_in_map() == 2
    assert m.all_keyframes() == [a, b]
    assert m.max_keyframe_id() == 7


def test_max_id_not_lowered_by_erase():
    m = Map()
    kf = _KF(5)
    m.add_keyframe(kf)
    m.erase_keyframe(kf)
    assert m.keyframes_in_map() == 0
    assert m.max_keyframe_id() == 5


def test_map_points_add_and_erase():
    m = Map()
    p, q = _MP(), _MP()
    m.add_map_point(p)
    m.add_map_point(q)
    m.erase_map_point(p)
    m.erase_map_point(p)
    assert m.map_points_in_map() == 1
    assert m.all_map_points() == [q]


def test_reference_points_are_copied():
    m = Map()
    pts = [_MP(), _MP()]
    m.set_reference_map_points(pts)
    pts.append(_MP())
    got = m.reference_map_points()
    assert len(got) == 2
    got.clear()
    assert len(m.reference_map_points()) == 2


def test_big_change_counter():
    m = Map()
    start = m.last_big_change()
    m.inform_new_big_change()
    m.inform_new_big_change()
    assert m.last_big_change() == start + 2


def test_clear_resets_contents():
    m = Map()
    m.add_keyframe(_KF(9))
    m.add_map_point(_MP())
    m.set_reference_map_points([_MP()])
    m.keyframe_origins.append(_KF(0))
    m.clear()
    assert m.keyframes_in_map() == 0
    assert m.map_points_in_map() == 0
    assert m.max_keyframe_id() == 0
    assert m.reference_map_points() == []
    assert m.keyframe_origins == []