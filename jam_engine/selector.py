"""Pattern selection: emission-window weighting, composite scores and veto."""

import math
from datetime import datetime, timezone

from .constants import CONSENSUS_TIMES, PATTERNS, PHI, PHI_CUBED, PHI_INVERSE, SUBINTERVALS

MIN_SCORE = 0.7
SUCCESS_PRIOR = 0.618
FRESHNESS_HOURS = PHI_CUBED
MINUTES_PER_DAY = 1440

WEIGHTS = {
    "clarity": 0.25,
    "alignment": 0.20,
    "success": 0.30,
    "freshness": 0.15,
    "incentive": 0.10,
}

# (max distance in minutes, multiplier), checked in order.
WINDOW_BUCKETS = [(2, 2.618), (5, 1.618), (10, 1.382)]


def emission_points() -> list[int]:
    """Anchor minutes-of-day plus their subdivisions."""
    points = set()
    for hour, minute in CONSENSUS_TIMES:
        anchor = hour * 60 + minute
        points.add(anchor)
        for offset in SUBINTERVALS:
            points.add((anchor + offset) % MINUTES_PER_DAY)
    return sorted(points)


def window_distance(now: datetime) -> int:
    minute = now.hour * 60 + now.minute
    best = MINUTES_PER_DAY
    for point in emission_points():
        d = abs(minute - point) % MINUTES_PER_DAY
        best = min(best, d, MINUTES_PER_DAY - d)
    return best


def window_multiplier(now: datetime) -> float:
    distance = window_distance(now)
    for limit, multiplier in WINDOW_BUCKETS:
        if distance <= limit:
            return multiplier
    return 1.0


def parse_quiet_window(window: str) -> tuple[int, int]:
    """'HH:MM-HH:MM' -> (start_minute, end_minute)."""
    start, end = window.split("-")
    sh, sm = start.strip().split(":")
    eh, em = end.strip().split(":")
    return int(sh) * 60 + int(sm), int(eh) * 60 + int(em)


def in_quiet_window(now: datetime, windows: list[str]) -> bool:
    minute = now.hour * 60 + now.minute
    for window in windows:
        start, end = parse_quiet_window(window)
        if start <= end:
            if start <= minute < end:
                return True
        elif minute >= start or minute < end:
            return True
    return False


def resonance_alignment(base_resonance: float) -> float:
    """1.0 at Φ, falling by Φ⁻¹ per power of Φ away from it."""
    exponent = math.log(base_resonance) / math.log(PHI)
    return PHI_INVERSE ** abs(exponent - 1)


def success_rate(stats: dict) -> float:
    attempts = stats.get("attempts", 0)
    successes = stats.get("successes", 0)
    if not attempts:
        return SUCCESS_PRIOR
    return min(successes / attempts, 1.0)


def freshness(stats: dict, now_ts: float) -> float:
    last_used = stats.get("last_used_at")
    if not last_used:
        return 1.0
    hours = max(now_ts - last_used, 0) / 3600
    return min(hours / FRESHNESS_HOURS, 1.0)


def tactical_factor(pattern: str, market: dict | None) -> float:
    if not market:
        return 1.0
    steps = PATTERNS[pattern]["steps"]
    pair = f"{steps[0]['from']}/{steps[0]['to']}"
    factor = 1.0 + 0.1 * min(market.get("volatility", {}).get(pair, 0.0), 1.0)
    liquidity = market.get("liquidity", {})
    if pair in liquidity and liquidity[pair] <= 0:
        factor *= PHI_INVERSE
    return factor


def composite_score(pattern: str, stats: dict, now_ts: float, market: dict | None = None) -> float:
    cfg = PATTERNS[pattern]
    components = {
        "clarity": cfg["clarity"],
        "alignment": resonance_alignment(cfg["base_resonance"]),
        "success": success_rate(stats),
        "freshness": freshness(stats, now_ts),
        "incentive": cfg["incentive"],
    }
    score = sum(WEIGHTS[k] * v for k, v in components.items())
    score *= 1 + 0.0618 * min(stats.get("reinforcements", 0), 5)
    return score * tactical_factor(pattern, market)


class Selection:
    def __init__(self, pattern: str | None, score: float, multiplier: float,
                 scores: dict, reason: str | None = None):
        self.pattern = pattern
        self.score = score
        self.multiplier = multiplier
        self.scores = scores
        self.reason = reason

    @property
    def veto(self) -> bool:
        return self.pattern is None


class PatternSelector:
    def __init__(self, quiet_windows: list[str] | None = None, min_score: float = MIN_SCORE):
        self.quiet_windows = quiet_windows or []
        self.min_score = min_score

    def select(self, pattern_stats: dict, now_ts: float, market: dict | None = None) -> Selection:
        now = datetime.fromtimestamp(now_ts, tz=timezone.utc)
        multiplier = window_multiplier(now)
        if in_quiet_window(now, self.quiet_windows):
            return Selection(None, 0.0, multiplier, {}, reason="quiet_window")

        scores = {
            name: composite_score(name, pattern_stats.get(name, {}), now_ts, market) * multiplier
            for name in PATTERNS
        }
        best = max(PATTERNS, key=lambda name: scores[name])
        if scores[best] < self.min_score:
            return Selection(None, scores[best], multiplier, scores, reason="weak_signal")
        return Selection(best, scores[best], multiplier, scores)
