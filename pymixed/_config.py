"""Optimizer configuration for the pymixed package.

Holds the process-wide defaults used by the θ optimizer when a call to
:func:`pymixed.mixed.lmm` does not pass its own settings.

Resolution order (first match wins):
    1. An explicit ``optimizer=`` argument to ``lmm()``.
    2. Programmatic override via :func:`set_optimizer_defaults`.
    3. The ``PYMIXED_OPTIMIZER`` and ``PYMIXED_MAXFEVAL`` environment
       variables.
    4. Built-in defaults (Nelder-Mead, ftol_abs=1e-8, ftol_rel=1e-12).

Examples:
    Switch every fit in a session to Powell's method::

        import pymixed
        pymixed.set_optimizer_defaults(method="Powell")

    Cap evaluations from the shell::

        export PYMIXED_MAXFEVAL=5000

    Restore the built-in defaults::

        pymixed.reset_optimizer_defaults()
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace

from pymixed.core.exceptions import ValidationError

_VALID_METHODS = {"Nelder-Mead", "Powell"}


@dataclass(frozen=True)
class OptimizerSettings:
    """Settings for the derivative-free θ optimizer.

    Attributes:
        method: ``scipy.optimize.minimize`` method, one of
            ``"Nelder-Mead"`` or ``"Powell"``. Both accept bounds and use
            no derivatives.
        ftol_abs: Absolute tolerance on the objective improvement.
        ftol_rel: Relative tolerance on the objective improvement,
            scaled by the objective at the initial θ.
        xtol_abs: Absolute tolerance on the change in θ.
        maxfeval: Cap on objective evaluations.
    """
    method: str = "Nelder-Mead"
    ftol_abs: float = 1e-8
    ftol_rel: float = 1e-12
    xtol_abs: float = 1e-8
    maxfeval: int = 10_000

    def __post_init__(self):
        if self.method not in _VALID_METHODS:
            raise ValidationError(
                f"Invalid optimizer method {self.method!r}. "
                f"Choose from {sorted(_VALID_METHODS)}."
            )
        if self.ftol_abs < 0 or self.ftol_rel < 0 or self.xtol_abs < 0:
            raise ValidationError(
                f"Tolerances must be non-negative, got ftol_abs={self.ftol_abs}, "
                f"ftol_rel={self.ftol_rel}, xtol_abs={self.xtol_abs}"
            )
        if self.maxfeval < 1:
            raise ValidationError(f"maxfeval must be >= 1, got {self.maxfeval}")

    def ftol(self, f_initial: float) -> float:
        """Effective absolute objective tolerance for a given starting value."""
        return max(self.ftol_abs, self.ftol_rel * abs(f_initial))


# Sentinel indicating "no programmatic override has been set".
_override: OptimizerSettings | None = None


def _from_environment() -> OptimizerSettings:
    settings = OptimizerSettings()
    method = os.environ.get("PYMIXED_OPTIMIZER", "").strip()
    if method:
        settings = replace(settings, method=method)
    maxfeval = os.environ.get("PYMIXED_MAXFEVAL", "").strip()
    if maxfeval:
        try:
            cap = int(maxfeval)
        except ValueError as exc:
            raise ValidationError(
                f"PYMIXED_MAXFEVAL must be an integer, got {maxfeval!r}"
            ) from exc
        settings = replace(settings, maxfeval=cap)
    return settings


def get_optimizer_defaults() -> OptimizerSettings:
    """Return the active default :class:`OptimizerSettings`."""
    if _override is not None:
        return _override
    return _from_environment()


def set_optimizer_defaults(**changes) -> OptimizerSettings:
    """Override selected default optimizer settings.

    Args:
        **changes: Field names of :class:`OptimizerSettings` and their
            new values. Fields not given keep their current default.

    Returns:
        The new active settings.
    """
    global _override
    _override = replace(get_optimizer_defaults(), **changes)
    return _override


def reset_optimizer_defaults() -> None:
    """Drop any programmatic override."""
    global _override
    _override = None
