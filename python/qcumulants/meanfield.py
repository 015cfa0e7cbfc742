# meanfield.py
# Heisenberg-Lindblad equations of motion for operator averages:
#
#   d<O>/dt = i<[H, O]> + Σ_ab R_ab ( <J_a† O J_b> - ½<J_a† J_b O> - ½<O J_a† J_b> )
#
# A rate vector gives the diagonal R_aa. An indexed jump operator J_i is
# summed over i; a two-index rate Γ[i, j] couples J_i and J_j.
#
# Requires: sympy

from __future__ import annotations
from typing import List, Sequence

import sympy as sp

from .averages import Average, average, undo_average
from .cumulants import cumulant_expansion
from .equations import Equation, EquationSet
from .errors import IndexBindingConflict, InvalidOperator
from .index import Index, check_bindings, fresh_index
from .operators import (QSum, as_qadd, dagger, free_indices, mul, simplify as op_simplify,
                        substitute, sum_of_product)

I = sp.I


# --------------------------- Inputs ------------------------------------------

def _as_target(op) -> Average:
    if isinstance(op, Average):
        return op
    q = as_qadd(op)
    if len(q.terms) != 1 or isinstance(q.terms[0][0], QSum) or not q.terms[0][0] \
            or q.terms[0][1] != 1:
        raise InvalidOperator("a target must be a single operator product", q)
    return Average(q.terms[0][0])


def _is_matrix(rates) -> bool:
    if isinstance(rates, sp.MatrixBase):
        return True
    return bool(rates) and all(isinstance(r, (list, tuple)) for r in rates)


def _rate_indices(rate) -> set:
    return {s for s in sp.sympify(rate).free_symbols if isinstance(s, Index)}


def _channels(J, rates) -> List[tuple]:
    """(J_a, J_b, R_ab, sums) for every dissipation channel."""
    J = list(J)
    if _is_matrix(rates):
        R = sp.Matrix(rates)
        if R.shape != (len(J), len(J)):
            raise ValueError(f"rate matrix of shape {R.shape} for {len(J)} jump operators")
        out = []
        for a, Ja in enumerate(J):
            for b, Jb in enumerate(J):
                if R[a, b] == 0:
                    continue
                if free_indices(Ja) or free_indices(Jb):
                    raise IndexBindingConflict(
                        "indexed jump operators take an indexed rate, not a rate matrix", Ja)
                out.append((Ja, Jb, R[a, b], []))
        return out
    rates = list(rates)
    if len(rates) != len(J):
        raise ValueError(f"{len(rates)} rates for {len(J)} jump operators")
    out = []
    for Jk, R in zip(J, rates):
        idx = free_indices(Jk)
        if not idx:
            out.append((Jk, Jk, R, []))
            continue
        if len(idx) > 1:
            raise IndexBindingConflict("a jump operator may carry one free index", Jk)
        i = idx.pop()
        others = _rate_indices(R) - {i}
        if not others:
            out.append((Jk, Jk, R, [(i, ())]))
        elif len(others) == 1 and i.same_family(next(iter(others))):
            j = others.pop()
            out.append((Jk, substitute(Jk, {i: j}), R, [(i, ()), (j, ())]))
        else:
            raise IndexBindingConflict(
                f"rate {R} does not run over the index of jump operator {Jk}", R)
    return out


def _sum_indices(q) -> set:
    """Index objects bound by sums anywhere in an operator expression."""
    found = set()
    for key, _ in as_qadd(q).terms:
        if isinstance(key, QSum):
            found.add(key.index)
            found |= {k for k in key.non_equal if isinstance(k, Index)}
            found |= _sum_indices(key.term)
    return found


def _all_indices(q) -> set:
    return free_indices(q) | _sum_indices(q)


# --------------------------- Generator ---------------------------------------

def _lindblad_adjoint(O, H, channels, simplify=True):
    """Adjoint Lindblad generator applied to the operator O."""
    dO = mul(I, mul(H, O) - mul(O, H))
    for Ja, Jb, R, sums in channels:
        Jad = dagger(Ja)
        dO = dO + sum_of_product([R, Jad, O, Jb], sums)
        dO = dO - sum_of_product([sp.Rational(1, 2) * R, Jad, Jb, O], sums)
        dO = dO - sum_of_product([sp.Rational(1, 2) * R, O, Jad, Jb], sums)
    return op_simplify(dO) if simplify else as_qadd(dO)


def _rename_clashes(avg: Average, taken) -> Average:
    """Rename free indices of `avg` that coincide with names bound in H or J."""
    names = {k.name for k in avg.indices if isinstance(k, Index)}
    clash = [k for k in avg.indices if isinstance(k, Index) and k.name in taken]
    if not clash:
        return avg
    used = set(taken) | names
    mapping = {}
    for k in clash:
        new = fresh_index(k, used)
        used.add(new.name)
        mapping[k] = new
    return _as_target(substitute(undo_average(avg), mapping))


def meanfield(ops, H, J: Sequence = (), rates: Sequence = (), order=None,
              simplify: bool = True) -> EquationSet:
    """
    Equations of motion for the averages of `ops` (one operator product or
    a list of them). With `order` set, every average of more than `order`
    operators is replaced by its cumulant expansion.
    """
    if not isinstance(ops, (list, tuple)):
        ops = [ops]
    targets = [_as_target(op) for op in ops]
    H = as_qadd(H)
    channels = _channels(J, rates)

    indices = _all_indices(H)
    for Ja, Jb, R, sums in channels:
        indices |= _all_indices(Ja) | _all_indices(Jb) | _rate_indices(R)
    bound = {k.name for k in _sum_indices(H)}
    for _, _, _, sums in channels:
        bound |= {i.name for i, _ in sums}
    for avg in targets:
        check_bindings(list(indices) + [k for k in avg.indices if isinstance(k, Index)])
        for k in avg.indices:
            if isinstance(k, Index) and k.name in bound:
                raise IndexBindingConflict(
                    f"index '{k.name}' of target {avg} is already bound in H or the jumps", avg)

    def derive(avg: Average) -> sp.Expr:
        dO = _lindblad_adjoint(undo_average(avg), H, channels, simplify)
        return cumulant_expansion(average(dO), order)

    eqs = EquationSet(H=H, J=J, rates=rates, order=order, derive=derive,
                      bound_names=bound)
    for avg in targets:
        eqs.append(Equation(avg, derive(avg)))
    return eqs


def derive_missing(eqs: EquationSet, avg: Average) -> Equation:
    """Equation for a newly discovered average, renaming clashing indices."""
    if eqs.derive is None:
        raise ValueError("equation set carries no generator")
    avg = _rename_clashes(avg, eqs.bound_names)
    return Equation(avg, eqs.derive(avg))
