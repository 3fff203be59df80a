"""
Tests for the Result[P] envelope.

Validates:
    - Generic type parameter works with arbitrary payload types
    - Frozen immutability
"""

from dataclasses import FrozenInstanceError, dataclass

import pytest

from pymixed.core.result import Result


@dataclass(frozen=True)
class FakeParams:
    """Minimal payload for testing."""
    deviance: float


def _result(**kw):
    fields = dict(
        params=FakeParams(deviance=1234.5),
        info={'method': 'ML', 'converged': True, 'fevals': 57},
        timing={'total_seconds': 0.5, 'optimization': 0.45},
        backend_name='cpu_blocked_cholesky',
    )
    fields.update(kw)
    return Result(**fields)


class TestResultConstruction:
    """Fields are stored as given."""

    def test_fields(self):
        """Payload, info, timing and backend name round-trip unchanged."""
        r = _result()
        assert r.params.deviance == 1234.5
        assert r.info['fevals'] == 57
        assert r.timing['optimization'] == 0.45
        assert r.backend_name == 'cpu_blocked_cholesky'

    def test_timing_optional(self):
        """Timing may be None when a fit was not timed."""
        assert _result(timing=None).timing is None

    def test_warnings_default_empty(self):
        """No warnings are recorded unless passed in."""
        assert _result().warnings == ()

    def test_warnings_kept_in_order(self):
        """Warnings are kept in the order they were raised."""
        r = _result(warnings=("Aliased fixed-effect columns dropped: ['x2']", "other"))
        assert r.warnings[0].startswith("Aliased")
        assert r.warnings[1] == "other"


# ═══════════════════════════════════════════════════════════════════════
# Immutability
# ═══════════════════════════════════════════════════════════════════════


class TestImmutability:
    """A fitted result cannot be changed after it returns."""

    @pytest.mark.parametrize("field", ['params', 'info', 'timing', 'backend_name', 'warnings'])
    def test_cannot_set(self, field):
        """Assigning any field raises FrozenInstanceError."""
        r = _result()
        with pytest.raises(FrozenInstanceError):
            setattr(r, field, None)
