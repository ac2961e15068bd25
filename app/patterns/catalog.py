"""Pattern catalog — the closed set of indicator-combination predicates.

Each ``PatternKind`` member carries its key, display name and predicate, so
the catalog is enumerable and a stored pattern is resolved by key lookup.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Optional

from app.analysis.models import IndicatorSnapshot
from app.patterns.models import Pattern, PatternFeatures

logger = logging.getLogger("surgescan.miner")

PATTERN_BONUS_PER_WIN = 15.0
PATTERN_BONUS_CAP = 20.0


class PatternKind(Enum):
    WHALE_ACCUMULATION = (
        "whale_accumulation",
        "Whale + silent accumulation",
        lambda f: f.whale_count > 0 and f.accumulation,
    )
    DRAIN_ESCAPE = (
        "drain_escape",
        "Liquidity drain + escape velocity",
        lambda f: f.drain and f.escape,
    )
    WHALE_HIGHVOLUME = (
        "whale_highvolume",
        "Whale + heavy volume",
        lambda f: f.whale_count > 0 and f.volume_ratio >= 2.5,
    )
    ASYMMETRIC_ACCUMULATION = (
        "asymmetric_accumulation",
        "Asymmetric buying + silent accumulation",
        lambda f: f.asymmetric_ratio >= 1.5 and f.accumulation,
    )
    ESCAPE_STRONGCLOSE = (
        "escape_strongclose",
        "Escape velocity + strong close",
        lambda f: f.escape and f.closing_strength >= 70,
    )
    MFI_OVERSOLD_WHALE = (
        "mfi_oversold_whale",
        "MFI oversold + whale",
        lambda f: f.mfi <= 30 and f.whale_count > 0,
    )
    DRAIN_ASYMMETRIC = (
        "drain_asymmetric",
        "Liquidity drain + asymmetric buying",
        lambda f: f.drain and f.asymmetric_ratio >= 1.5,
    )
    ACCUMULATION_MODERATE = (
        "accumulation_moderate",
        "Silent accumulation + moderate volume",
        lambda f: f.accumulation and 1.5 <= f.volume_ratio < 3,
    )

    def __init__(
        self,
        key: str,
        label: str,
        predicate: Callable[[PatternFeatures], bool],
    ) -> None:
        self.key = key
        self.label = label
        self._predicate = predicate

    def matches(self, features: PatternFeatures) -> bool:
        return bool(self._predicate(features))

    @classmethod
    def from_key(cls, key: str) -> "PatternKind":
        """Resolve a stored pattern key.

        Raises ``KeyError`` for keys outside the catalog.
        """
        for kind in cls:
            if kind.key == key:
                return kind
        raise KeyError(
            f"Unknown pattern '{key}'. "
            f"Available: {', '.join(k.key for k in cls)}"
        )


@dataclass(frozen=True)
class PatternMatch:
    """Stored patterns a snapshot satisfies, with the capped bonus."""

    patterns: tuple[Pattern, ...]
    bonus: float

    @property
    def matched(self) -> bool:
        return len(self.patterns) > 0

    @property
    def win_rates(self) -> tuple[float, ...]:
        return tuple(p.backtest.win_rate for p in self.patterns)

    def to_dict(self) -> dict:
        return {
            "matched": self.matched,
            "bonus": round(self.bonus, 2),
            "patterns": [
                {
                    "key": p.key,
                    "name": p.name,
                    "win_rate": p.backtest.win_rate,
                    "avg_return": p.backtest.avg_return,
                    "frequency": p.frequency,
                }
                for p in self.patterns
            ],
        }


def matching_kinds(features: PatternFeatures) -> list[PatternKind]:
    """Every catalog predicate *features* satisfies, in catalog order."""
    return [kind for kind in PatternKind if kind.matches(features)]


def match_patterns(
    snapshot: IndicatorSnapshot,
    patterns: Optional[Iterable[Pattern]],
) -> PatternMatch:
    """Check *snapshot* against stored *patterns*.

    Each match contributes ``win_rate / 100 × 15``; the total is capped at
    20.  Patterns whose key is not in the catalog are ignored.
    """
    if not patterns:
        return PatternMatch(patterns=(), bonus=0.0)

    features = PatternFeatures.from_snapshot(snapshot)
    matched: list[Pattern] = []
    bonus = 0.0
    for pattern in patterns:
        try:
            kind = PatternKind.from_key(pattern.key)
        except KeyError:
            logger.warning("Ignoring unknown stored pattern '%s'", pattern.key)
            continue
        if kind.matches(features):
            matched.append(pattern)
            bonus += pattern.backtest.win_rate / 100 * PATTERN_BONUS_PER_WIN

    return PatternMatch(
        patterns=tuple(matched), bonus=min(bonus, PATTERN_BONUS_CAP),
    )
