import pytest

from slammap.covisibility import CovisibilityNode
from slammap.keyframe_database import KeyFrameDatabase


class Vocabulary:
    def __init__(self, size=10):
        self._size = size

    def __len__(self):
        return self._size

    def score(self, a, b):
        return sum(min(a[w], b[w]) for w in a if w in b)


class FakeKeyFrame(CovisibilityNode):
    def __init__(self, ident, bow):
        super().__init__()
        self.id = ident
        self.bow_vec = bow
        self.loop_query = -1
        self.loop_words = 0
        self.loop_score = 0.0
        self.reloc_query = -1
        self.reloc_words = 0
        self.reloc_score = 0.0


class FakeFrame:
    def __init__(self, ident, bow):
        self.id = ident
        self.bow_vec = bow


def test_relocalization_finds_keyframe_sharing_words():
    db = KeyFrameDatabase(Vocabulary())
    kf = FakeKeyFrame(1, {1: 0.5, 2: 0.5})
    db.add(kf)
    assert db.detect_relocalization_candidates(FakeFrame(7, {1: 0.5, 2: 0.5})) == [kf]
    assert kf.reloc_query == 7
    assert kf.reloc_words == 2


def test_relocalization_without_shared_words_is_empty():
    db = KeyFrameDatabase(Vocabulary())
    db.add(FakeKeyFrame(1, {1: 1.0}))
    assert db.detect_relocalization_candidates(FakeFrame(3, {4: 1.0})) == []


def test_erase_removes_keyframe():
    db = KeyFrameDatabase(Vocabulary())
    kf = FakeKeyFrame(1, {1: 1.0})
    db.add(kf)
    db.erase(kf)
    assert db.detect_relocalization_candidates(FakeFrame(3, {1: 1.0})) == []


def test_clear_empties_index():
    db = KeyFrameDatabase(Vocabulary())
    db.add(FakeKeyFrame(1, {1: 1.0}))
    db.add(FakeKeyFrame(2, {2: 1.0}))
    db.clear()
    assert db.detect_relocalization_candidates(FakeFrame(3, {1: 1.0, 2: 1.0})) == []


def test_word_outside_vocabulary_raises():
    db = KeyFrameDatabase(Vocabulary(size=3))
    with pytest.raises(IndexError):
        db.add(FakeKeyFrame(1, {5: 1.0}))


def test_loop_candidates_exclude_connected_keyframes():
    db = KeyFrameDatabase(Vocabulary())
    query = FakeKeyFrame(10, {1: 0.5, 2: 0.5})
    connected = FakeKeyFrame(1, {1: 0.5, 2: 0.5})
    distant = FakeKeyFrame(2, {1: 0.5, 2: 0.5})
    query.add_connection(connected, 30)
    db.add(connected)
    db.add(distant)
    result = db.detect_loop_candidates(query, 0.0)
    assert result == [distant]
    assert distant.loop_query == query.id


def test_loop_candidates_respect_min_score():
    db = KeyFrameDatabase(Vocabulary())
    query = FakeKeyFrame(10, {1: 0.5, 2: 0.5})
    weak = FakeKeyFrame(1, {1: 0.1, 2: 0.1})
    db.add(weak)
    assert db.detect_loop_candidates(query, 0.9) == []
    assert weak.loop_score == pytest.approx(weak.bow_vec[1] + weak.bow_vec[2])


def test_loop_candidates_prefer_best_neighbour():
    db = KeyFrameDatabase(Vocabulary())
    query = FakeKeyFrame(10, {1: 1.0, 2: 1.0, 3: 1.0})
    weak = FakeKeyFrame(1, {1: 0.1, 2: 0.1, 3: 0.1})
    strong = FakeKeyFrame(2, {1: 0.3, 2: 0.3, 3: 0.3})
    weak.add_connection(strong, 50)
    strong.add_connection(weak, 50)
    db.add(weak)
    db.add(strong)
    assert db.detect_loop_candidates(query, 0.0) == [strong]


def test_loop_candidates_skip_keyframes_with_few_common_words():
    db = KeyFrameDatabase(Vocabulary())
    query = FakeKeyFrame(10, {1: 1.0, 2: 1.0, 3: 1.0})
    many = FakeKeyFrame(1, {1: 1.0, 2: 1.0, 3: 1.0})
    few = FakeKeyFrame(2, {1: 1.0})
    db.add(many)
    db.add(few)
    result = db.detect_loop_candidates(query, 0.0)
    assert result == [many]
    assert few not in result