"""
Tests for two-time correlation functions and spectra
"""

import numpy as np
import pytest
import sympy as sp

from qcumulants import (CorrelationFunction, Create, Destroy, FockSpace, NLevelSpace, NonClosure,
                        ScalingPrecondition, Spectrum, Sum, Transition, average, complete,
                        meanfield, phase_invariant, scale)
from qcumulants.correlation import is_one_time
from qcumulants.numeric import initial_values, liouvillian, to_matrix, unvec, vec


@pytest.fixture
def cavity():
    h = FockSpace("cavity")
    a, ad = Destroy(h, "a"), Create(h, "a")
    Δ, κ = sp.symbols("Δ κ", real=True)
    base = complete(meanfield(ad * a, Δ * ad * a, [a], [κ]))
    return a, ad, Δ, κ, base


def lorentzian(omega, u, delta, kappa):
    return 2 * u * (kappa / 2) / ((kappa / 2) ** 2 + (omega - delta) ** 2)


class TestCorrelation:
    def test_empty_cavity(self, cavity):
        a, ad, Δ, κ, base = cavity
        corr = CorrelationFunction(ad, a, base)
        assert len(corr) == 1
        assert not is_one_time(corr.states[0])
        assert corr.initial == [average(ad * a)]
        assert sp.expand(corr.rhs[0] - (sp.I * Δ - κ / 2) * corr.states[0]) == 0

    def test_time_zero_operator_is_untouched(self, cavity):
        a, ad, Δ, κ, base = cavity
        corr = CorrelationFunction(ad, a, base)
        zero = [op for op in corr.states[0].operator if op.t0]
        assert len(zero) == 1
        assert isinstance(zero[0], Destroy)

    def test_transient_appends_base(self, cavity):
        a, ad, Δ, κ, base = cavity
        corr = CorrelationFunction(ad, a, base, steady_state=False)
        assert len(corr) == 1 + len(base)
        assert corr.states[-1] == base.states[0]


class TestSpectrum:
    def test_lorentzian(self, cavity):
        a, ad, Δ, κ, base = cavity
        spec = Spectrum(CorrelationFunction(ad, a, base), [Δ, κ])
        assert spec(1.0, [2.0], [1.0, 0.5]) == pytest.approx(16.0)
        omega = np.linspace(-2, 4, 7)
        out = spec(omega, [2.0], [1.0, 0.5])
        assert out.shape == omega.shape
        assert np.allclose(out, lorentzian(omega, 2.0, 1.0, 0.5))

    def test_needs_steady_state(self, cavity):
        a, ad, Δ, κ, base = cavity
        with pytest.raises(ValueError):
            Spectrum(CorrelationFunction(ad, a, base, steady_state=False), [Δ, κ])

    def test_missing_parameters(self, cavity):
        a, ad, Δ, κ, base = cavity
        with pytest.raises(ValueError):
            Spectrum(CorrelationFunction(ad, a, base), [Δ])

    def test_base_must_cover_inputs(self, cavity):
        a, ad, Δ, κ, base = cavity
        corr = CorrelationFunction(ad * ad, a, base)
        with pytest.raises(NonClosure):
            Spectrum(corr, [Δ, κ])


class TestResonanceFluorescence:
    """Driven two-level atom; the steady-state coherence enters as a constant input."""

    def test_matches_liouvillian(self):
        h = NLevelSpace("atom", 2)
        s = lambda i, j: Transition(h, "σ", i, j)
        Δ, Ω, Γ = sp.symbols("Δ Ω Γ", real=True)
        base = complete(meanfield([s(2, 2), s(1, 2)], Δ * s(2, 2) + Ω * (s(1, 2) + s(2, 1)),
                                  [s(1, 2)], [Γ]))
        corr = CorrelationFunction(s(2, 1), s(1, 2), base)
        spec = Spectrum(corr, [Δ, Ω, Γ])
        values = [0.3, 1.5, 1.0]

        dims = [2]
        L = liouvillian(0.3 * s(2, 2) + 1.5 * (s(1, 2) + s(2, 1)), [s(1, 2)], [1.0], dims)
        w, v = np.linalg.eig(L)
        rho = unvec(v[:, np.argmin(abs(w))])
        rho = rho / np.trace(rho)
        A, B = to_matrix(s(2, 1), dims), to_matrix(s(1, 2), dims)
        u = initial_values(base, rho, dims)
        assert abs(u[1]) > 1e-3

        for omega in (0.7, 2.0, -1.3, 3.1):
            x = np.linalg.solve(1j * omega * np.eye(4) - L, vec(B @ rho))
            exact = 2 * np.trace(A @ unvec(x)).real
            assert spec(omega, u, values) == pytest.approx(exact, rel=1e-8, abs=1e-10)


class TestIndexedSpectrum:
    def build(self, jc, params):
        Δ, g, κ, Γ = params
        i, j = jc.index("i"), jc.index("j")
        H = Δ * jc.ad * jc.a + Sum(g * (jc.ad * jc.s(1, 2, i) + jc.a * jc.s(2, 1, i)), i)
        eqs = meanfield([jc.ad * jc.a, jc.s(2, 2, j)], H, [jc.a, jc.s(1, 2, i)], [κ, Γ], order=2)
        base = complete(eqs, filter_func=phase_invariant())
        corr = CorrelationFunction(jc.ad, jc.a, base, filter_func=phase_invariant())
        return base, corr

    def test_sums_must_be_scaled(self, jc, params):
        base, corr = self.build(jc, params)
        with pytest.raises(ScalingPrecondition):
            Spectrum(corr, list(params) + [jc.N])

    def test_scaled_spectrum(self, jc, params):
        base, corr = self.build(jc, params)
        scaled_base = scale(base)
        spec = Spectrum(corr.scaled(base=scaled_base), list(params) + [jc.N])
        u = [0.5, 0.3, 0.1 + 0.05j, 0.02][:len(scaled_base)]
        values = spec(np.linspace(-1, 1, 5), u, [0.0, 0.2, 1.0, 0.1, 10])
        assert values.shape == (5,)
        assert np.all(np.isfinite(values))
