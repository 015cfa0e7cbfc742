"""
Tests for the reduction over identical subsystems
"""

import pytest
import sympy as sp

from qcumulants import (Average, Index, IndexedSum, ScalingPrecondition, Sum, average, complete,
                        evaluate, meanfield, orbit_representative, phase_invariant, scale,
                        substitute_index)
from qcumulants.averages import average_adjoint


def tavis_cummings(jc, params, n=None):
    Δ, g, κ, Γ = params
    if n is None:
        i, j = jc.index("i"), jc.index("j")
    else:
        i, j = Index(jc.h, "i", n, 1), Index(jc.h, "j", n, 1)
    H = Δ * jc.ad * jc.a + Sum(g * (jc.ad * jc.s(1, 2, i) + jc.a * jc.s(2, 1, i)), i)
    eqs = meanfield([jc.ad * jc.a, jc.s(2, 2, j)], H, [jc.a, jc.s(1, 2, i)], [κ, Γ], order=2)
    return complete(eqs, filter_func=phase_invariant())


def normalize(expr, scaled):
    """Rewrite averages onto the states of a scaled set."""
    rules = {}
    for avg in sp.sympify(expr).atoms(Average):
        rep = orbit_representative(avg)[0]
        if scaled.lookup(rep) is not None:
            rules[avg] = rep
        else:
            rules[avg] = sp.conjugate(orbit_representative(average_adjoint(avg))[0])
    return sp.expand(sp.sympify(expr).xreplace(rules))


class TestRepresentative:
    def test_orbit_mates_share_a_representative(self, jc):
        x = average(jc.s(2, 1, 1) * jc.s(1, 2, 2))
        y = average(jc.s(2, 1, 2) * jc.s(1, 2, 1))
        assert orbit_representative(x)[0] == orbit_representative(y)[0]

    def test_labels_start_at_one(self, jc):
        i, j = jc.index("i"), jc.index("j")
        rep, mapping = orbit_representative(average(jc.s(2, 1, i) * jc.s(1, 2, j)))
        assert sorted(mapping.values()) == [1, 2]
        assert sorted(op.index for op in rep.operator) == [1, 2]

    def test_unindexed_average_is_its_own_representative(self, jc):
        avg = average(jc.ad * jc.a)
        assert orbit_representative(avg) == (avg, {})


class TestScale:
    def test_collective_laser(self, jc, params):
        eqs = tavis_cummings(jc, params)
        assert len(eqs) == 4
        scaled = scale(eqs)
        assert scaled.scaled
        assert scaled.is_closed()
        assert len(scaled) == 4
        for rhs in scaled.rhs:
            assert not rhs.atoms(IndexedSum)
        for lhs in scaled.states:
            assert all(isinstance(k, int) for k in lhs.indices)
        populations = [lhs for lhs in scaled.states if lhs.operator == (jc.s(2, 2, 1),)]
        assert len(populations) == 1
        cross = [lhs for lhs in scaled.states
                 if {type(op).__name__ for op in lhs.operator} == {"Create", "Transition"}
                 or {type(op).__name__ for op in lhs.operator} == {"Destroy", "Transition"}]
        assert len(cross) == 1

    def test_multiplicities_carry_n(self, jc, params):
        scaled = scale(tavis_cummings(jc, params))
        assert jc.N in set().union(*(sp.sympify(r).free_symbols for r in scaled.rhs))

    def test_state_count_does_not_grow_with_n(self, jc, params):
        sizes = {n: len(scale(tavis_cummings(jc, params, n))) for n in (2, 5)}
        assert sizes == {2: 4, 5: 4}
        assert len(scale(tavis_cummings(jc, params))) == 4

    def test_agrees_with_explicit_sum(self, jc, params):
        """For N = 2 the scaled equations match the evaluated indexed ones."""
        eqs = tavis_cummings(jc, params)
        scaled = scale(eqs)
        for eq in eqs:
            rep, mapping = orbit_representative(eq.lhs)
            target = scaled.lookup(rep)
            if target is None:
                continue
            explicit = evaluate(substitute_index(eq.rhs, mapping), {jc.N: 2})
            reduced = scaled[scaled.states.index(target)].rhs.subs(jc.N, 2)
            assert sp.expand(normalize(explicit, scaled) - normalize(reduced, scaled)) == 0

    def test_needs_closed_set(self, jc, params):
        Δ, g, κ, Γ = params
        i = jc.index("i")
        H = Sum(g * (jc.ad * jc.s(1, 2, i) + jc.a * jc.s(2, 1, i)), i)
        with pytest.raises(ScalingPrecondition):
            scale(meanfield(jc.ad * jc.a, H, [jc.a], [κ], order=2))

    def test_undeclared_family(self, jc, params):
        eqs = tavis_cummings(jc, params)
        other = Index(jc.h, "k", sp.Symbol("M"), 1)
        with pytest.raises(ScalingPrecondition):
            scale(eqs, identical=[other])

    def test_declared_family(self, jc, params):
        eqs = tavis_cummings(jc, params)
        assert len(scale(eqs, identical=[jc.index("i")])) == len(scale(eqs))
