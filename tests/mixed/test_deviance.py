"""Tests for the profiled deviance and the PLS estimates read off L(θ).

The blocked results are checked against a direct dense evaluation of
the marginal likelihood with V = I + ZΛΛᵗZᵗ.
"""

import dataclasses

import numpy as np
import pytest
import scipy.linalg as sla

from pymixed.core.exceptions import NumericalError
from pymixed.mixed._blocked import BlockedSystem
from pymixed.mixed._deviance import (
    INFEASIBLE, objective, profiled_deviance, pwrss,
)
from pymixed.mixed._pls import solve_pls
from pymixed.mixed._update_l import update_l
from pymixed.mixed.design import MixedDesign


KB07_CONTRASTS = {'spkr': 'helmert', 'prec': 'helmert', 'load': 'helmert'}


def _system(formula, data, contrasts=None):
    return BlockedSystem.build(MixedDesign.build(formula, data, contrasts))


def _dense_pieces(system, theta):
    design = system.design
    Z = np.hstack([t.Z.toarray() for t in system.reterms])
    Lam = sla.block_diag(*[
        np.kron(np.eye(t.n_levels), t.lambda_factor(theta[sl]))
        for t, sl in zip(system.reterms, system.theta_slices)
    ])
    V = np.eye(design.n) + Z @ Lam @ Lam.T @ Z.T
    return Z, Lam, V


def _dense_deviance(system, theta, reml=False):
    """-2 log-likelihood profiled over β and σ², by brute force."""
    design = system.design
    X, y, n, p = design.X, design.y, design.n, design.p
    Z, Lam, V = _dense_pieces(system, theta)
    Vinv = np.linalg.inv(V)
    XtVX = X.T @ Vinv @ X
    beta = np.linalg.solve(XtVX, X.T @ Vinv @ y)
    r = y - X @ beta
    rss = r @ Vinv @ r
    _, logdet_v = np.linalg.slogdet(V)
    if reml:
        _, logdet_x = np.linalg.slogdet(XtVX)
        df = n - p
        return logdet_v + logdet_x + df * (1 + np.log(2 * np.pi * rss / df)), beta
    return logdet_v + n * (1 + np.log(2 * np.pi * rss / n)), beta


CASES = [
    ("y ~ 1 + x + (1 | subject)", 'crossed_effects', None, [1.3]),
    ("y ~ 1 + x + (1 | subject) + (1 | item)", 'crossed_effects', None, [1.8, 0.6]),
    ("y ~ 1 + x + (1 | classroom/student)", 'nested_effects', None, [1.4, 2.5]),
    ("reaction ~ 1 + days + (1 + days | subject)", 'sleepstudy_like', None, [0.9, 0.05, 0.25]),
    ("rt ~ 1 + spkr * prec * load + (1 + load | subj) + (1 + prec | item)",
     'kb07_like', KB07_CONTRASTS, [0.8, -0.1, 0.3, 0.5, 0.2, 0.4]),
]
IDS = ['intercept', 'crossed', 'nested', 'slope', 'crossed_slopes']


class TestAgainstDenseLikelihood:
    """Blocked deviance equals the dense marginal likelihood."""

    @pytest.mark.parametrize("formula,fixture,contrasts,theta", CASES, ids=IDS)
    def test_ml_deviance(self, request, formula, fixture, contrasts, theta):
        """ML deviance matches the dense profiled likelihood."""
        system = _system(formula, request.getfixturevalue(fixture), contrasts)
        theta = np.array(theta)
        dev = objective(system, theta, system.new_state())
        expected, _ = _dense_deviance(system, theta)
        np.testing.assert_allclose(dev, expected, rtol=1e-9)

    @pytest.mark.parametrize("formula,fixture,contrasts,theta", CASES, ids=IDS)
    def test_reml_deviance(self, request, formula, fixture, contrasts, theta):
        """REML criterion matches the dense restricted likelihood."""
        system = _system(formula, request.getfixturevalue(fixture), contrasts)
        theta = np.array(theta)
        dev = objective(system, theta, system.new_state(), reml=True)
        expected, _ = _dense_deviance(system, theta, reml=True)
        np.testing.assert_allclose(dev, expected, rtol=1e-9)

    @pytest.mark.parametrize("formula,fixture,contrasts,theta", CASES, ids=IDS)
    def test_beta_is_gls(self, request, formula, fixture, contrasts, theta):
        """β̂ from the factor is the GLS estimate under V(θ)."""
        system = _system(formula, request.getfixturevalue(fixture), contrasts)
        theta = np.array(theta)
        state = update_l(system, theta, system.new_state())
        pls = solve_pls(system, state)
        _, beta = _dense_deviance(system, theta)
        np.testing.assert_allclose(pls.beta, beta, rtol=1e-8, atol=1e-8)

    def test_conditional_modes(self, crossed_effects):
        """b̂ equals ΛΛᵗZᵗV⁻¹(y - Xβ̂), and fitted values use it."""
        system = _system("y ~ 1 + x + (1 | subject) + (1 | item)", crossed_effects)
        theta = np.array([1.8, 0.6])
        state = update_l(system, theta, system.new_state())
        pls = solve_pls(system, state)

        design = system.design
        Z, Lam, V = _dense_pieces(system, theta)
        r = design.y - design.X @ pls.beta
        b_dense = Lam @ Lam.T @ Z.T @ np.linalg.solve(V, r)
        b_blocked = np.concatenate([b.ravel() for b in pls.b])
        np.testing.assert_allclose(b_blocked, b_dense, rtol=1e-8, atol=1e-10)
        np.testing.assert_allclose(
            pls.fitted, design.X @ pls.beta + Z @ b_dense, rtol=1e-8
        )
        np.testing.assert_allclose(pls.residuals, design.y - pls.fitted)

    def test_pwrss(self, sleepstudy_like):
        """pwrss is ‖y - Xβ̂ - Zb̂‖² + ‖u‖² and σ̂² = pwrss / n under ML."""
        system = _system("reaction ~ 1 + days + (1 + days | subject)", sleepstudy_like)
        theta = np.array([0.9, 0.05, 0.25])
        state = update_l(system, theta, system.new_state())
        pls = solve_pls(system, state)
        u = np.concatenate(pls.u)
        expected = np.sum(pls.residuals ** 2) + u @ u
        np.testing.assert_allclose(pwrss(system, state), expected, rtol=1e-9)
        np.testing.assert_allclose(pls.sigma_sq, expected / system.design.n, rtol=1e-9)

    def test_vcov_unscaled(self, crossed_effects):
        """(L_X L_Xᵗ)⁻¹ equals (XᵗV⁻¹X)⁻¹."""
        system = _system("y ~ 1 + x + (1 | subject) + (1 | item)", crossed_effects)
        theta = np.array([1.8, 0.6])
        state = update_l(system, theta, system.new_state())
        pls = solve_pls(system, state)
        _, _, V = _dense_pieces(system, theta)
        X = system.design.X
        expected = np.linalg.inv(X.T @ np.linalg.solve(V, X))
        np.testing.assert_allclose(pls.vcov_unscaled, expected, rtol=1e-8)


class TestInvariance:
    """The deviance depends on θ only through ΛΛᵗ."""

    @pytest.mark.parametrize("column", [0, 1])
    def test_column_sign_flip(self, sleepstudy_like, column):
        """Flipping the sign of a Λ column leaves the deviance unchanged."""
        system = _system("reaction ~ 1 + days + (1 + days | subject)", sleepstudy_like)
        term = system.reterms[0]
        theta = np.array([0.9, 0.05, 0.25])
        lam = term.lambda_factor(theta)
        lam[:, column] *= -1
        rows, cols = term.theta_index
        flipped = lam[rows, cols]

        dev = objective(system, theta, system.new_state())
        dev_flipped = objective(system, flipped, system.new_state())
        np.testing.assert_allclose(dev_flipped, dev, rtol=1e-12)

    def test_sign_flip_crossed(self, kb07_like):
        """A sign flip inside the second of two vector terms changes nothing."""
        system = _system(
            "rt ~ 1 + prec + (1 + load | subj) + (1 + prec | item)",
            kb07_like, KB07_CONTRASTS,
        )
        theta = np.array([0.8, -0.1, 0.3, 0.5, 0.2, 0.4])
        flipped = theta.copy()
        flipped[3:5] *= -1
        np.testing.assert_allclose(
            objective(system, flipped, system.new_state()),
            objective(system, theta, system.new_state()),
            rtol=1e-12,
        )


class TestObjective:
    """Objective wrapper used by the optimizer."""

    def test_infeasible_returns_inf(self, crossed_effects):
        """A non-positive-definite block gives INFEASIBLE, not an exception."""
        system = _system("y ~ 1 + x + (1 | subject)", crossed_effects)
        xb = system.x_block
        broken = dataclasses.replace(
            system, A={**system.A, (xb, xb): -np.eye(system.design.p)}
        )
        assert objective(broken, np.array([1.0]), broken.new_state()) == INFEASIBLE
        assert INFEASIBLE == np.inf

    def test_repeatable(self, crossed_effects):
        """Reusing one workspace across θ values gives repeatable results."""
        system = _system("y ~ 1 + x + (1 | subject) + (1 | item)", crossed_effects)
        state = system.new_state()
        first = objective(system, np.array([1.8, 0.6]), state)
        objective(system, np.array([0.1, 3.0]), state)
        again = objective(system, np.array([1.8, 0.6]), state)
        assert first == again

    def test_zero_theta_is_linear_model(self, crossed_effects):
        """At θ = 0 the deviance is that of ordinary least squares."""
        system = _system("y ~ 1 + x + (1 | subject)", crossed_effects)
        dev = objective(system, np.array([0.0]), system.new_state())
        X, y, n = system.design.X, system.design.y, system.design.n
        beta, *_ = np.linalg.lstsq(X, y, rcond=None)
        rss = np.sum((y - X @ beta) ** 2)
        np.testing.assert_allclose(dev, n * (1 + np.log(2 * np.pi * rss / n)), rtol=1e-10)

    def test_profiled_deviance_requires_valid_state(self, crossed_effects):
        """The deviance cannot be read from an unfactored workspace."""
        system = _system("y ~ 1 + x + (1 | subject)", crossed_effects)
        with pytest.raises(ValueError, match="not valid"):
            profiled_deviance(system, system.new_state())

    def test_pls_rejects_zero_pwrss(self, crossed_effects):
        """A vanishing penalized RSS is reported as a numerical failure."""
        system = _system("y ~ 1 + x + (1 | subject)", crossed_effects)
        state = update_l(system, np.array([1.0]), system.new_state())
        yb = system.y_block
        state.blocks[(yb, yb)][0, 0] = 0.0
        with pytest.raises(NumericalError, match="pwrss=0.0"):
            solve_pls(system, state)
