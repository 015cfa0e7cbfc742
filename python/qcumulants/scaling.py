# scaling.py
# Reduction of a closed equation set over identical subsystems.
#
# Every average is mapped onto the representative of its orbit under
# permutations of subsystem labels, sums become multiplicities, and only one
# equation per orbit is kept. Representatives carry concrete labels 1, 2, ...
#
# Requires: sympy

from __future__ import annotations
import itertools as it
import logging
from typing import Dict, Tuple

import sympy as sp

from .averages import Average, IndexedSum, relabel_average, substitute_index
from .equations import Equation, EquationSet, adjoint_of, mixes_times, ordered_averages
from .errors import ScalingPrecondition
from .index import Index

logger = logging.getLogger(__name__)


# --------------------------- Representatives ---------------------------------

def _families(avg: Average) -> Dict[int, list]:
    """Index values of an average grouped by the subsystem they run over."""
    fam = {}
    for op in avg.operator:
        if op.index is not None and op.index not in fam.setdefault(op.aon, []):
            fam[op.aon].append(op.index)
    return {k: v for k, v in fam.items() if v}


def orbit_representative(avg: Average) -> Tuple[Average, dict]:
    """
    Representative of the orbit of `avg` under relabelling of identical
    subsystems, and the mapping {old label: new label} that produces it.
    Labels of each subsystem become 1..m.
    """
    fam = _families(avg)
    if not fam:
        return avg, {}
    choices = []
    for values in fam.values():
        choices.append([dict(zip(values, perm))
                        for perm in it.permutations(range(1, len(values) + 1))])
    best = None
    for combo in it.product(*choices):
        mapping = {}
        for d in combo:
            mapping.update(d)
        rep = relabel_average(avg, mapping)
        if not isinstance(rep, Average):
            raise ScalingPrecondition("relabelling does not give a single average", avg)
        if best is None or rep._key < best[0]._key:
            best = (rep, mapping)
    return best


def _representative(avg: Average) -> Average:
    return orbit_representative(avg)[0]


# --------------------------- Expression rewriting ----------------------------

def _labels(expr) -> set:
    """Integer subsystem labels used by averages and sums in `expr`."""
    used = set()
    for avg in sp.sympify(expr).atoms(Average):
        used |= {op.index for op in avg.operator if isinstance(op.index, int)}
    for s in sp.sympify(expr).atoms(IndexedSum):
        used |= {int(e) for e in s.excluded if e.is_Integer}
    return used


def _scale_sums(expr, used: set) -> sp.Expr:
    """Replace Σ_{i ∉ E} f(i) by (N - |E|) f(k) with a fresh label k, outermost first."""
    expr = sp.sympify(expr)
    if isinstance(expr, IndexedSum):
        for e in expr.excluded:
            if not e.is_Integer:
                raise ScalingPrecondition("sum excludes an index that is still free", expr)
        label = max(used | _labels(expr) | {0}) + 1
        term = substitute_index(expr.term, {expr.index: label})
        return (expr.index.range - len(expr.excluded)) * _scale_sums(term, used | {label})
    if not expr.args or isinstance(expr, Average):
        return expr
    return expr.func(*[_scale_sums(a, used) for a in expr.args])


def _relabel_indexed(expr) -> sp.Expr:
    """g[3] -> g[1], Γ[2, 5] -> Γ[1, 2]: labels renumbered in order of appearance."""
    rules = {}
    for ix in sp.sympify(expr).atoms(sp.Indexed):
        if not all(k.is_Integer for k in ix.indices):
            continue
        order = []
        for k in ix.indices:
            if k not in order:
                order.append(k)
        new = tuple(order.index(k) + 1 for k in ix.indices)
        rules[ix] = ix.base[new]
    return sp.sympify(expr).xreplace(rules)


def _scale_expr(expr, mapping: dict) -> sp.Expr:
    """Relabel with `mapping`, turn sums into multiplicities, use representatives."""
    expr = substitute_index(expr, {k: v for k, v in mapping.items() if isinstance(k, Index)})
    expr = _scale_sums(expr, set(mapping.values()))
    reps = {a: _representative(a) for a in sp.sympify(expr).atoms(Average)}
    expr = sp.sympify(expr).xreplace(reps)
    return sp.expand(_relabel_indexed(expr))


def _check_identical(eqs: EquationSet, identical):
    if identical is None:
        return
    allowed = {(k.aon, k.range) for k in identical}
    for lhs in eqs.states:
        for k in lhs.indices:
            if isinstance(k, Index) and (k.aon, k.range) not in allowed:
                raise ScalingPrecondition(
                    f"index '{k}' runs over subsystems not declared identical", lhs)
    for rhs in eqs.rhs:
        for s in sp.sympify(rhs).atoms(IndexedSum):
            if (s.index.aon, s.index.range) not in allowed:
                raise ScalingPrecondition(
                    f"sum index '{s.index}' runs over subsystems not declared identical", s)


# --------------------------- Scaling -----------------------------------------

def scale(eqs: EquationSet, identical=None) -> EquationSet:
    """
    Reduced copy of a closed equation set: one equation per orbit of
    identical subsystems. `identical` lists indices whose subsystems are
    interchangeable; by default all of them are.
    """
    if not eqs.is_closed():
        raise ScalingPrecondition("scaling needs a closed equation set", eqs.find_missing())
    _check_identical(eqs, identical)

    seen: Dict[Average, sp.Expr] = {}
    equations = []
    for eq in eqs:
        rep, mapping = orbit_representative(eq.lhs)
        rhs = _scale_expr(eq.rhs, mapping)
        if rep in seen:
            if sp.expand(seen[rep] - rhs) != 0:
                raise ScalingPrecondition(
                    "equations of one orbit differ beyond a relabelling", eq)
            continue
        adj = None if mixes_times(rep) else adjoint_of(rep)
        if adj is not None and _representative(adj) in seen:
            continue
        seen[rep] = rhs
        equations.append(Equation(rep, rhs))

    out = eqs.copy(equations, scaled=True, dropped=[_representative(a) for a in eqs.dropped])
    out = _conjugate_missing(out)
    logger.info("scaled %d equations to %d", len(eqs), len(out))
    return out


def _conjugate_missing(eqs: EquationSet) -> EquationSet:
    rules = {}
    for rhs in eqs.rhs:
        for avg in ordered_averages(rhs):
            if avg in rules or eqs.is_fixed(avg) or eqs.lookup(avg) is not None:
                continue
            adj = None if mixes_times(avg) else adjoint_of(avg)
            rep = None if adj is None else _representative(adj)
            if rep is None or eqs.lookup(rep) is None:
                raise ScalingPrecondition("scaled set refers to an average without equation", avg)
            rules[avg] = sp.conjugate(rep)
    if not rules:
        return eqs
    return eqs.copy([Equation(eq.lhs, sp.expand(eq.rhs.xreplace(rules))) for eq in eqs])


def scale_expression(expr, mapping=None) -> sp.Expr:
    """Scaled form of a single expression (e.g. an initial value)."""
    return _scale_expr(expr, mapping or {})
