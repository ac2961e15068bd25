"""Error taxonomy and tagged results shared by every component.

Pure helpers raise the exceptions below; public operations catch them and
hand back a ``Failure`` so callers can tell "skip this symbol" apart from an
empty-but-valid answer.
"""

from dataclasses import dataclass, field
from typing import Optional


# ── Exceptions ───────────────────────────────────────────────────────────


class ScreenerError(Exception):
    """Base class for every error raised inside the screener."""

    kind = "error"


class InsufficientDataError(ScreenerError, ValueError):
    """Fewer bars (or samples) than a component's minimum window."""

    kind = "insufficient_data"


class InputValidationError(ScreenerError, ValueError):
    """Caller-supplied input is outside the accepted range."""

    kind = "input_validation"


class ExternalFetchError(ScreenerError):
    """A market-data provider call failed or timed out."""

    kind = "external_fetch"


class ConfigurationError(ScreenerError):
    """A required external collaborator is not configured."""

    kind = "configuration"


# ── Tagged results ───────────────────────────────────────────────────────

INSUFFICIENT_DATA = InsufficientDataError.kind
INPUT_VALIDATION = InputValidationError.kind
EXTERNAL_FETCH = ExternalFetchError.kind
CONFIGURATION = ConfigurationError.kind


@dataclass(frozen=True)
class Failure:
    """Structured failure returned instead of raising.

    ``kind`` is one of ``insufficient_data``, ``input_validation``,
    ``external_fetch`` or ``configuration``.
    """

    kind: str
    message: str
    symbol: Optional[str] = None
    details: dict = field(default_factory=dict)

    @classmethod
    def from_exception(
        cls, exc: Exception, symbol: Optional[str] = None,
    ) -> "Failure":
        """Map an exception to a tagged failure.

        Errors outside the taxonomy are reported as ``external_fetch`` since
        they originate from I/O collaborators.
        """
        kind = getattr(exc, "kind", EXTERNAL_FETCH)
        if kind == "error":
            kind = EXTERNAL_FETCH
        return cls(kind=kind, message=str(exc), symbol=symbol)

    @property
    def is_insufficient_data(self) -> bool:
        return self.kind == INSUFFICIENT_DATA

    def to_dict(self) -> dict:
        out = {"kind": self.kind, "message": self.message}
        if self.symbol is not None:
            out["symbol"] = self.symbol
        if self.details:
            out["details"] = dict(self.details)
        return out


@dataclass(frozen=True)
class BatchReport:
    """Partial-success counters for batch operations."""

    analyzed: int = 0
    found: int = 0
    failed: int = 0
    skipped: int = 0
    stopped_early: bool = False

    def to_dict(self) -> dict:
        return {
            "analyzed": self.analyzed,
            "found": self.found,
            "failed": self.failed,
            "skipped": self.skipped,
            "stopped_early": self.stopped_early,
        }
