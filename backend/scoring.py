"""Round scoring.

Two strategies exist side by side:

- ``time_curve``: every correct player earns ``MAX_POINTS * x ** EXPONENT``
  where ``x`` is the fraction of the round that was left when they answered.
- ``bonus_factor``: every correct player earns the same coarse 0-10 bonus,
  ``ceil(remaining / max_time * 10)``, with ``remaining`` measured at the last
  answer of the round.

The poll transport always scores with ``time_curve``; the push transport uses
``config.PUSH_SCORING_STRATEGY``.
"""
import math
from typing import Dict, Optional

import config

TIME_CURVE = "time_curve"
BONUS_FACTOR = "bonus_factor"
STRATEGIES = (TIME_CURVE, BONUS_FACTOR)


def points_from_time(time_taken: Optional[float], max_time: Optional[float] = None,
                     max_points: Optional[int] = None, exponent: Optional[float] = None) -> int:
    """Map answer latency (seconds) to points on the power curve."""
    max_time = config.MAX_TIME if max_time is None else max_time
    max_points = config.MAX_POINTS if max_points is None else max_points
    exponent = config.SCORING_EXPONENT if exponent is None else exponent

    if time_taken is None or isinstance(time_taken, bool):
        return 0
    try:
        time_taken = float(time_taken)
    except (TypeError, ValueError):
        return 0
    if math.isnan(time_taken) or time_taken <= 0 or max_time <= 0:
        return 0

    time_left = max(0.0, max_time - time_taken)
    x = max(0.0, min(1.0, time_left / max_time))
    raw = max_points * math.pow(x, exponent)
    # half-up, not banker's rounding
    return int(math.floor(raw + 0.5))


def bonus_factor(elapsed_seconds: float, max_time: Optional[float] = None) -> int:
    max_time = config.MAX_TIME if max_time is None else max_time
    if max_time <= 0:
        return 0
    elapsed = max(0, int(math.floor(elapsed_seconds)))
    remaining = max(0, max_time - elapsed)
    return int(math.ceil((remaining / max_time) * 10))


def score_round(strategy: str, correct_index: int, selections: Dict[str, dict],
                start_time_ms: float, max_time: Optional[float] = None) -> Dict[str, int]:
    """Return points earned this round per player id (correct players only).

    ``selections`` maps player id to ``{"option_index", "time_taken", "timestamp"}``
    with ``timestamp`` in epoch milliseconds.
    """
    if strategy not in STRATEGIES:
        raise ValueError(f"Unknown scoring strategy: {strategy}")
    max_time = config.MAX_TIME if max_time is None else max_time

    correct = {pid: sel for pid, sel in selections.items()
               if sel.get("option_index") == correct_index}
    if not correct:
        return {}

    if strategy == TIME_CURVE:
        return {pid: points_from_time(sel.get("time_taken"), max_time) for pid, sel in correct.items()}

    last_answer_ms = max((sel.get("timestamp") or start_time_ms) for sel in selections.values())
    bonus = bonus_factor((last_answer_ms - start_time_ms) / 1000, max_time)
    return {pid: bonus for pid in correct}
