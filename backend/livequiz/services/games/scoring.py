import math
from typing import Iterable, List

STREAK_BONUS_PER_STEP = 10
STREAK_BONUS_MIN = 2


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def time_weighted_points(points_base: int, elapsed_ms: int, time_limit_ms: int) -> int:
    """Points for a correct answer.

    Half of ``points_base`` is guaranteed; the other half decays linearly
    over the question's time limit. ``points_base`` is only reached at 0 ms.
    """
    if time_limit_ms <= 0:
        return _round_half_up(points_base * 0.5)
    remaining = max(0.0, 1.0 - elapsed_ms / time_limit_ms)
    return _round_half_up(points_base * (0.5 + 0.5 * remaining))


def streak_bonus(streak: int) -> int:
    """Bonus for a correct answer that brings the streak to ``streak``."""
    if streak < STREAK_BONUS_MIN:
        return 0
    return streak * STREAK_BONUS_PER_STEP


def rank_players(players: Iterable) -> List:
    """Order players for the leaderboard.

    Higher score first, then the smaller cumulative elapsed time on correct
    answers, then the earlier join, then intake order.
    """
    return sorted(
        players,
        key=lambda p: (-p.score, p.correct_elapsed_ms, p.joined_at, p.join_seq),
    )


def leaderboard(players: Iterable) -> List[dict]:
    return [{'id': p.id, 'name': p.name, 'score': p.score} for p in rank_players(players)]
