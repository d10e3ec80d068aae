from __future__ import annotations

import math
import random
from bisect import bisect_right
from dataclasses import dataclass
from typing import Iterable, List, Optional, Protocol, Tuple


class Staker(Protocol):
    identity: str
    stake: float


@dataclass(frozen=True)
class StakeRange:
    identity: str
    stake: float
    start: float
    end: float  # exclusive


def build_ranges(participants: Iterable[Staker]) -> Tuple[List[StakeRange], float]:
    ranges: List[StakeRange] = []
    cursor = 0.0
    for p in participants:
        start = cursor
        end = cursor + p.stake
        ranges.append(StakeRange(p.identity, p.stake, start, end))
        cursor = end
    return ranges, cursor


def find_winner(ranges: List[StakeRange], draw: float) -> StakeRange:
    ends = [r.end for r in ranges]
    idx = bisect_right(ends, draw)
    if idx < 0 or idx >= len(ranges):
        raise RuntimeError("Draw out of range (unexpected).")
    return ranges[idx]


def select_winner(
    participants: List[Staker],
    total_pot: float,
    draw: Optional[float] = None,
    rng: Optional[random.Random] = None,
) -> Staker:
    """
    Stake-weighted single draw. Participants keep arrival order; each owns
    the half-open interval [start, end) of the cumulative stake line.
    """
    if not participants or total_pot <= 0:
        raise ValueError("Cannot select a winner from an empty pot.")

    ranges, line_total = build_ranges(participants)
    if draw is None:
        draw = (rng or random.SystemRandom()).random() * line_total
        # the product can round up to line_total; keep it inside the last range
        draw = min(draw, math.nextafter(line_total, 0.0))

    winner = find_winner(ranges, draw)
    return next(p for p in participants if p.identity == winner.identity)
