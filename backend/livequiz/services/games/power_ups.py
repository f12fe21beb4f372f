"""Power-up catalog.

Power-ups are off unless a quiz enables them, in which case every player
starts with one of each. Each can be used once per game, only while a
classic-mode question is active.
"""

import random
from typing import Dict

from livequiz.models import PowerUpState

FIFTY_FIFTY = 'fifty-fifty'
EXTEND_TIME = 'extend-time'
DOUBLE_POINTS = 'double-points'

CATALOG = (FIFTY_FIFTY, EXTEND_TIME, DOUBLE_POINTS)
EXTEND_TIME_SEC = 10


def initial_inventory(enabled: bool) -> Dict[str, PowerUpState]:
    if not enabled:
        return {}
    return {name: PowerUpState() for name in CATALOG}


def hidden_options(correct_index: int, option_count: int, rng=random) -> list:
    """Half of the wrong options (rounded up) for the fifty-fifty power-up."""
    wrong = [i for i in range(option_count) if i != correct_index]
    count = (len(wrong) + 1) // 2
    return sorted(rng.sample(wrong, count))


def consume_double_points(player) -> int:
    """Multiplier for the submission being scored. An armed double-points is spent either way."""
    state = player.power_ups.get(DOUBLE_POINTS)
    if state is not None and state.active:
        state.active = False
        return 2
    return 1
