"""Error taxonomy for the expert panel.

Individual expert failures are absorbed by the dispatcher; only
AllExpertsFailed and InvalidRequest ever reach the caller. A result below
the consensus threshold is not an error.
"""

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from expert_panel.models import ExpertResponse


class PanelError(Exception):
    """Base class for expert panel errors."""


class ExpertInvocationError(PanelError):
    """Raised when a reasoning provider call fails or returns malformed output."""

    def __init__(self, source: str, message: str) -> None:
        self.source = source
        self.reason = message
        super().__init__(f"[{source}] {message}")


class ExpertTimeout(ExpertInvocationError):
    """Raised when an expert exceeds its deadline."""

    def __init__(self, source: str, timeout_sec: float) -> None:
        super().__init__(source, f"Request timed out after {timeout_sec:.3f}s")
        self.reason = "timeout"


class AllExpertsFailed(PanelError):
    """Raised when no expert produced a usable response."""

    def __init__(self, failures: "Sequence[ExpertResponse]") -> None:
        self.failures = list(failures)
        summary = ", ".join(f"{f.expert_id}: {f.failure_reason}" for f in self.failures)
        super().__init__(f"All {len(self.failures)} experts failed ({summary})")


class InvalidRequest(PanelError):
    """Raised before dispatch when a request cannot be processed."""
