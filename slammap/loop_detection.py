"""Loop detection helpers: reference similarity and covisibility consistency."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Sequence


@dataclass(frozen=True)
class ConsistentGroup:
    """A loop candidate's covisibility group and how many times in a row it recurred."""

    keyframes: frozenset
    consistency: int


def min_covisible_score(keyframe: Any, vocabulary: Any) -> float:
    """Lowest similarity between ``keyframe`` and its good covisible keyframes (at most 1)."""
    min_score = 1.0
    for other in keyframe.covisible_keyframes():
        if other.is_bad():
            continue
        score = vocabulary.score(keyframe.bow_vec, other.bow_vec)
        if score < min_score:
            min_score = score
    return min_score


def check_consistency(
    candidates: Iterable[Any],
    previous_groups: Sequence[ConsistentGroup],
    threshold: int,
) -> tuple[list[Any], list[ConsistentGroup]]:
    """Match candidate groups against the previous ones.

    Returns the candidates consistent for at least ``threshold`` consecutive
    keyframes and the groups to remember for the next query.
    """
    enough: list[Any] = []
    current: list[ConsistentGroup] = []
    group_used = [False] * len(previous_groups)

    for candidate in candidates:
        group = frozenset(candidate.connected_keyframes()) | {candidate}
        enough_consistent = False
        consistent_for_some = False

        for position, previous in enumerate(previous_groups):
            if group.isdisjoint(previous.keyframes):
                continue
            consistent_for_some = True
            consistency = previous.consistency + 1
            if not group_used[position]:
                current.append(ConsistentGroup(group, consistency))
                group_used[position] = True
            if consistency >= threshold and not enough_consistent:
                enough.append(candidate)
                enough_consistent = True

        if not consistent_for_some:
            current.append(ConsistentGroup(group, 0))

    return enough, current