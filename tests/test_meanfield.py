"""
Tests for equation generation and closure
"""

import pytest
import sympy as sp

from qcumulants import (Average, Destroy, DoubleIndexedVariable, Equation, FockSpace, Index,
                        IndexBindingConflict, InconsistentFilter, InvalidOperator, NLevelSpace,
                        NonClosure, Sum, Transition, average, complete, evaluate, find_missing,
                        meanfield, normal_order, phase_invariant, substitute_index)
from qcumulants.averages import average_adjoint
from qcumulants.closure import phase
from qcumulants.equations import average_key


def jaynes_cummings(jc, params):
    Δ, g, κ, Γ = params
    a, ad, s = jc.a, jc.ad, jc.s
    H = Δ * ad * a + g * (ad * s(1, 2) + a * s(2, 1))
    return H, [a, s(1, 2)], [κ, Γ]


class TestGenerator:
    def test_cavity_equation(self, jc, params):
        Δ, g, κ, Γ = params
        H, J, rates = jaynes_cummings(jc, params)
        eqs = meanfield(jc.a, H, J, rates, order=1)
        A, S = average(jc.a), average(jc.s(1, 2))
        expected = -sp.I * Δ * A - sp.I * g * S - κ / 2 * A
        assert len(eqs) == 1
        assert sp.expand(eqs[0].rhs - expected) == 0

    def test_atom_population(self, jc, params):
        Δ, g, κ, Γ = params
        H, J, rates = jaynes_cummings(jc, params)
        eqs = meanfield(jc.s(2, 2), H, J, rates)
        P = average(jc.s(2, 2))
        expected = (sp.I * g * average(jc.ad * jc.s(1, 2)) - sp.I * g * average(jc.a * jc.s(2, 1))
                    - Γ * P)
        assert sp.expand(eqs[0].rhs - expected) == 0

    def test_canonical_products_on_rhs(self, jc, params):
        H, J, rates = jaynes_cummings(jc, params)
        eqs = meanfield([jc.ad * jc.a, jc.ad * jc.s(1, 2)], H, J, rates)
        for rhs in eqs.rhs:
            for avg in rhs.atoms(Average):
                assert normal_order(avg.operator) == {avg.operator: 1}

    def test_truncation(self, jc, params):
        H, J, rates = jaynes_cummings(jc, params)
        eqs = meanfield(jc.ad * jc.s(1, 2), H, J, rates, order=2)
        assert all(len(a.operator) <= 2 for a in eqs[0].rhs.atoms(Average))

    def test_target_must_be_a_product(self, jc, params):
        H, J, rates = jaynes_cummings(jc, params)
        with pytest.raises(InvalidOperator):
            meanfield(jc.a + jc.ad, H, J, rates)

    def test_rates_must_match_jumps(self, jc, params):
        H, J, rates = jaynes_cummings(jc, params)
        with pytest.raises(ValueError):
            meanfield(jc.a, H, J, rates[:1])

    def test_bound_index_reused_on_target(self, jc, params):
        Δ, g, κ, Γ = params
        i = jc.index("i")
        H = Δ * jc.ad * jc.a + Sum(g * (jc.ad * jc.s(1, 2, i) + jc.a * jc.s(2, 1, i)), i)
        with pytest.raises(IndexBindingConflict):
            meanfield(jc.s(2, 2, i), H, [jc.a], [κ])

    def test_index_bound_twice(self, jc, params):
        Δ, g, κ, Γ = params
        i = jc.index("i")
        other = Index(jc.h, "j", sp.Symbol("M"), 1)
        H = Sum(g * (jc.ad * jc.s(1, 2, i) + jc.a * jc.s(2, 1, i)), i)
        with pytest.raises(IndexBindingConflict):
            meanfield(jc.s(2, 2, other), H, [jc.s(1, 2, jc.index("j"))], [Γ])


class TestClosure:
    def test_scenario_a(self, jc, params):
        Δ, g, κ, Γ = params
        H, J, rates = jaynes_cummings(jc, params)
        eqs = complete(meanfield(jc.a, H, J, rates, order=1))
        A, S, P = average(jc.a), average(jc.s(1, 2)), average(jc.s(2, 2))
        assert eqs.states == [A, S, P]
        assert eqs.is_closed()
        expected = sp.I * g * (sp.conjugate(A) * S - A * sp.conjugate(S)) - Γ * P
        assert sp.expand(eqs[2].rhs - expected) == 0

    def test_fixed_point(self, jc, params):
        H, J, rates = jaynes_cummings(jc, params)
        eqs = complete(meanfield(jc.a, H, J, rates, order=1))
        again = complete(eqs)
        assert again.states == eqs.states
        assert find_missing(again) == []

    def test_seeds_stay_first(self, jc, params):
        H, J, rates = jaynes_cummings(jc, params)
        seeds = [jc.s(2, 2), jc.a]
        eqs = complete(meanfield(seeds, H, J, rates, order=1))
        assert eqs.states[:2] == [average(jc.s(2, 2)), average(jc.a)]

    def test_ceiling(self, jc, params):
        H, J, rates = jaynes_cummings(jc, params)
        with pytest.raises(NonClosure) as err:
            complete(meanfield(jc.a, H, J, rates, order=1), max_iterations=1)
        assert err.value.iterations == 1

    def test_unbounded_hierarchy_hits_ceiling(self, jc, params):
        H, J, rates = jaynes_cummings(jc, params)
        with pytest.raises(NonClosure):
            complete(meanfield(jc.ad * jc.a, H, J, rates), max_iterations=4)

    def test_append_only(self, jc, params):
        H, J, rates = jaynes_cummings(jc, params)
        eqs = meanfield(jc.a, H, J, rates, order=1)
        with pytest.raises(ValueError):
            eqs.append(Equation(average(jc.a), sp.S.Zero))
        closed = complete(eqs)
        assert len(eqs) == 1
        assert len(closed) == 3


class TestFilter:
    def laser(self, jc, params):
        H, J, rates = jaynes_cummings(jc, params)
        return meanfield([jc.ad * jc.a, jc.s(2, 2)], H, J, rates, order=2)

    def test_phase(self, jc):
        assert phase(average(jc.ad * jc.s(1, 2))) == 0
        assert phase(average(jc.a)) == 1
        assert phase(average(jc.s(2, 1))) == -1
        assert phase(average(jc.ad * jc.s(1, 2)), {0}) == -1

    def test_filter_consistency(self, jc, params):
        keep = phase_invariant()
        eqs = complete(self.laser(jc, params), filter_func=keep)
        assert len(eqs) == 3
        cross = average(jc.ad * jc.s(1, 2))
        assert eqs.lookup(cross) is not None or eqs.lookup(average_adjoint(cross)) is not None
        assert eqs.dropped
        for lhs in eqs.states:
            assert keep(lhs)
        dropped = {average_key(a) for a in eqs.dropped}
        for rhs in eqs.rhs:
            for avg in rhs.atoms(Average):
                assert keep(avg)
                assert average_key(avg) not in dropped

    def test_filter_rejecting_seed(self, jc, params):
        H, J, rates = jaynes_cummings(jc, params)
        with pytest.raises(InconsistentFilter):
            complete(meanfield(jc.a, H, J, rates, order=1), filter_func=phase_invariant())

    def test_composed_predicates(self, jc, params):
        keep = phase_invariant()
        short = lambda avg: keep(avg) and len(avg.operator) <= 2
        eqs = complete(self.laser(jc, params), filter_func=short)
        assert all(short(lhs) for lhs in eqs.states)


class TestIndexed:
    def rate_matrix(self, jc, params):
        Δ, g, κ, Γ = params
        i, j = jc.index("i"), jc.index("j")
        H = Δ * jc.ad * jc.a + Sum(g * (jc.ad * jc.s(1, 2, i) + jc.a * jc.s(2, 1, i)), i)
        R = DoubleIndexedVariable("Γ", i, j)
        return H, [jc.a, jc.s(1, 2, i)], [κ, R]

    def test_per_atom_structure(self, jc, params):
        H, J, rates = self.rate_matrix(jc, params)
        eqs = complete(meanfield(jc.a, H, J, rates, order=1))
        assert len(eqs) == 3
        kinds = sorted(tuple(type(op).__name__ + str(getattr(op, "i", "")) + str(getattr(op, "j", ""))
                             for op in lhs.operator) for lhs in eqs.states)
        assert kinds == [("Destroy",), ("Transition12",), ("Transition22",)]

    def test_matches_explicit_pair(self, jc, params):
        """N = 2 with a rate matrix reproduces the explicit two-atom equations."""
        Δ, g, κ, Γ = params
        Γ0, Γ1 = sp.symbols("Γ0 Γ1")
        H, J, rates = self.rate_matrix(jc, params)
        indexed = complete(meanfield(jc.a, H, J, rates, order=1))

        h2 = FockSpace("cavity") * NLevelSpace("atom1", 2) * NLevelSpace("atom2", 2)
        a2 = Destroy(h2, "a", 0)
        s2 = lambda i, j, k: Transition(h2, "σ", i, j, k)
        H2 = Δ * a2.dagger() * a2 + sum(
            (g * (a2.dagger() * s2(1, 2, k) + a2 * s2(2, 1, k)) for k in (1, 2)), 0 * a2)
        R2 = [[κ, 0, 0], [0, Γ0, Γ1], [0, Γ1, Γ0]]
        explicit = complete(meanfield(a2, H2, [a2, s2(1, 2, 1), s2(1, 2, 2)], R2, order=1))
        assert len(explicit) == 1 + 2 * 2

        Gamma = sp.IndexedBase("Γ")
        rate_values = {Gamma[1, 1]: Γ0, Gamma[2, 2]: Γ0, Gamma[1, 2]: Γ1, Gamma[2, 1]: Γ1}

        def to_explicit(expr):
            rules = {}
            for avg in expr.atoms(Average):
                ops = []
                for op in avg.operator:
                    if isinstance(op, Destroy) or op.aon == 0:
                        ops.append(a2 if isinstance(op, Destroy) else a2.dagger())
                    else:
                        ops.append(s2(op.i, op.j, op.index))
                prod = ops[0]
                for o in ops[1:]:
                    prod = prod * o
                rules[avg] = average(prod)
            return sp.expand(expr.xreplace(rules).xreplace(rate_values))

        for eq in indexed:
            free = [k for k in eq.lhs.indices]
            mapping = {free[0]: 1} if free else {}
            lhs = to_explicit(substitute_index(eq.lhs, mapping))
            rhs = to_explicit(evaluate(substitute_index(eq.rhs, mapping), {jc.N: 2}))
            target = explicit.lookup(lhs)
            assert target is not None
            assert sp.expand(explicit[explicit.states.index(target)].rhs - rhs) == 0
