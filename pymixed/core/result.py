"""
Frozen envelope around a fitted model's parameters.

The payload type varies (LMMParams for linear mixed models); the
bookkeeping around it does not: free-form fit metadata, stage timings,
the name of the code path that produced it, and any warnings raised
along the way.
"""

from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

P = TypeVar('P')


@dataclass(frozen=True)
class Result(Generic[P]):
    """
    Immutable record of one fit.

    Attributes:
        params: Model-specific estimates.
        info: Metadata such as the criterion, optimizer, convergence flag
            and evaluation count.
        timing: Seconds per stage from a Timer, or None when not measured.
        backend_name: Name of the computational path used.
        warnings: Messages for the non-fatal conditions met while fitting.
    """
    params: P
    info: dict[str, Any]
    timing: dict[str, float] | None
    backend_name: str
    warnings: tuple[str, ...] = field(default_factory=tuple)
