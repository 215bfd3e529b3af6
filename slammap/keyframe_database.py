"""Inverted index of keyframes by visual word, used for loop and relocalization queries."""

from __future__ import annotations

import threading
from typing import Any

# Share of the best word count a keyframe needs before it is scored.
_COMMON_WORDS_RATIO = 0.8
# Share of the best accumulated score a candidate needs to be kept.
_RETAIN_RATIO = 0.75
# Neighbours in the covisibility graph whose scores are accumulated.
_NEIGHBOURS = 10


class KeyFrameDatabase:
    """Keyframes indexed by the vocabulary words of their bag-of-words vectors.

    The vocabulary must support ``len()`` (its number of words) and
    ``score(bow_a, bow_b)``.  Bag-of-words vectors are mappings from word id
    to weight.
    """

    def __init__(self, vocabulary: Any) -> None:
        self._vocabulary = vocabulary
        self._lock = threading.RLock()
        self._inverted: list[list[Any]] = [[] for _ in range(len(vocabulary))]

    def add(self, keyframe: Any) -> None:
        with self._lock:
            for word in keyframe.bow_vec:
                self._inverted[word].append(keyframe)

    def erase(self, keyframe: Any) -> None:
        """Remove the keyframe from the list of every word it contains."""
        with self._lock:
            for word in keyframe.bow_vec:
                entries = self._inverted[word]
                for position, entry in enumerate(entries):
                    if entry is keyframe:
                        del entries[position]
                        break

    def clear(self) -> None:
        with self._lock:
            self._inverted = [[] for _ in range(len(self._vocabulary))]

    @staticmethod
    def _retain(scored: list[tuple[float, Any]], best: float) -> list[Any]:
        threshold = _RETAIN_RATIO * best
        kept: list[Any] = []
        seen: set[int] = set()
        for score, keyframe in scored:
            if score > threshold and id(keyframe) not in seen:
                kept.append(keyframe)
                seen.add(id(keyframe))
        return kept

    def detect_loop_candidates(self, keyframe: Any, min_score: float) -> list[Any]:
        """Keyframes that look like ``keyframe`` but are not connected to it."""
        connected = keyframe.connected_keyframes()
        sharing: list[Any] = []

        with self._lock:
            for word in keyframe.bow_vec:
                for other in self._inverted[word]:
                    if other.loop_query != keyframe.id:
                        other.loop_words = 0
                        if other not in connected:
                            other.loop_query = keyframe.id
                            sharing.append(other)
                    other.loop_words += 1

        if not sharing:
            return []

        max_common = max(other.loop_words for other in sharing)
        min_common = int(max_common * _COMMON_WORDS_RATIO)

        scored: list[tuple[float, Any]] = []
        for other in sharing:
            if other.loop_words > min_common:
                score = self._vocabulary.score(keyframe.bow_vec, other.bow_vec)
                other.loop_score = score
                if score >= min_score:
                    scored.append((score, other))

        if not scored:
            return []

        accumulated: list[tuple[float, Any]] = []
        best_acc = min_score
        for score, other in scored:
            best_score = acc_score = score
            best_kf = other
            for neighbour in other.best_covisibility_keyframes(_NEIGHBOURS):
                if neighbour.loop_query == keyframe.id and neighbour.loop_words > min_common:
                    acc_score += neighbour.loop_score
                    if neighbour.loop_score > best_score:
                        best_kf = neighbour
                        best_score = neighbour.loop_score
            accumulated.append((acc_score, best_kf))
            best_acc = max(best_acc, acc_score)

        return self._retain(accumulated, best_acc)

    def detect_relocalization_candidates(self, frame: Any) -> list[Any]:
        """Keyframes similar to ``frame``, for recovering a lost track."""
        sharing: list[Any] = []

        with self._lock:
            for word in frame.bow_vec:
                for other in self._inverted[word]:
                    if other.reloc_query != frame.id:
                        other.reloc_words = 0
                        other.reloc_query = frame.id
                        sharing.append(other)
                    other.reloc_words += 1

        if not sharing:
            return []

        max_common = max(other.reloc_words for other in sharing)
        min_common = int(max_common * _COMMON_WORDS_RATIO)

        scored: list[tuple[float, Any]] = []
        for other in sharing:
            if other.reloc_words > min_common:
                score = self._vocabulary.score(frame.bow_vec, other.bow_vec)
                other.reloc_score = score
                scored.append((score, other))

        if not scored:
            return []

        accumulated: list[tuple[float, Any]] = []
        best_acc = 0.0
        for score, other in scored:
            best_score = acc_score = score
            best_kf = other
            for neighbour in other.best_covisibility_keyframes(_NEIGHBOURS):
                if neighbour.reloc_query != frame.id:
                    continue
                acc_score += neighbour.reloc_score
                if neighbour.reloc_score > best_score:
                    best_kf = neighbour
                    best_score = neighbour.reloc_score
            accumulated.append((acc_score, best_kf))
            best_acc = max(best_acc, acc_score)

        return self._retain(accumulated, best_acc)