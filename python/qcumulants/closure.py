# closure.py
# Completion of an equation set: keep deriving equations for averages that
# appear on a right-hand side until every one of them has an equation.
#
# Averages whose adjoint has an equation become conjugate(<X†>). Averages
# rejected by the filter become zero everywhere.
#
# Requires: sympy

from __future__ import annotations
import logging
from typing import Callable, Optional

import sympy as sp

from .averages import Average
from .equations import Equation, EquationSet, adjoint_of, mixes_times, ordered_averages
from .errors import InconsistentFilter, NonClosure
from .hilbert import subspace
from .meanfield import derive_missing
from .operators import Create, Destroy

logger = logging.getLogger(__name__)

# Safety ceiling on closure scans; overridable per call.
MAX_ITERATIONS = 100


def find_missing(eqs: EquationSet) -> list:
    """Right-hand-side averages without an equation (up to renaming and adjoint)."""
    return eqs.find_missing()


def substitute_adjoints(eqs: EquationSet) -> EquationSet:
    """Replace every rhs average covered only through its adjoint by conjugate(<X†>)."""
    rules = {}
    for rhs in eqs.rhs:
        for avg in ordered_averages(rhs):
            if avg in rules or eqs.is_fixed(avg) or eqs.lookup(avg) is not None:
                continue
            if mixes_times(avg):
                continue
            adj = adjoint_of(avg)
            if adj is not None and eqs.lookup(adj) is not None:
                rules[avg] = sp.conjugate(adj)
    if not rules:
        return eqs
    return _rewrite(eqs, rules)


def _rewrite(eqs: EquationSet, rules) -> EquationSet:
    new = [Equation(eq.lhs, sp.expand(eq.rhs.xreplace(rules))) for eq in eqs]
    return eqs.copy(new)


def _check_seeds(eqs: EquationSet, filter_func):
    for lhs in eqs.states:
        if not filter_func(lhs):
            raise InconsistentFilter("the filter rejects an equation of the set", lhs)


def complete(eqs: EquationSet, filter_func: Optional[Callable] = None,
             max_iterations: Optional[int] = None) -> EquationSet:
    """
    Closed copy of `eqs`. The original equations come first; new ones are
    appended in the order their averages are discovered.
    """
    if max_iterations is None:
        max_iterations = MAX_ITERATIONS
    if filter_func is None:
        filter_func = eqs.filter_func
    out = eqs.copy(filter_func=filter_func)
    if filter_func is not None:
        _check_seeds(out, filter_func)
    dropped = list(out.dropped)

    for n in range(max_iterations):
        out = substitute_adjoints(out)
        uncovered = out.uncovered()
        rejected = []
        if filter_func is not None:
            rejected = [avg for avg in uncovered if not filter_func(avg)]
            for avg in rejected:
                adj = None if mixes_times(avg) else adjoint_of(avg)
                if adj is not None and out.lookup(adj) is not None:
                    raise InconsistentFilter(
                        "the filter rejects the adjoint of a retained average", avg)
        if rejected:
            out = _rewrite(out, {avg: sp.S.Zero for avg in rejected})
            dropped.extend(a for a in rejected if a not in dropped)
        missing = out.find_missing()
        logger.debug("closure scan %d: %d new averages, %d dropped",
                     n + 1, len(missing), len(rejected))
        if not missing:
            out.dropped = dropped
            _check_filter(out, filter_func)
            logger.info("closed equation set with %d equations after %d scans",
                        len(out), n + 1)
            return out
        for avg in missing:
            eq = derive_missing(out, avg)
            if out.lookup(eq.lhs) is None:
                out.append(eq)
    raise NonClosure(f"no fixed point after {max_iterations} scans",
                     out.find_missing(), iterations=max_iterations)


def _check_filter(eqs: EquationSet, filter_func):
    if filter_func is None:
        return
    for rhs in eqs.rhs:
        for avg in ordered_averages(rhs):
            if eqs.is_fixed(avg):
                continue
            if not filter_func(avg):
                raise InconsistentFilter("a rejected average remains on a right-hand side", avg)


# --------------------------- Filters -----------------------------------------

def _level_phase(op) -> int:
    return op.levels.index(op.j) - op.levels.index(op.i)


def phase(avg: Average, aons=None) -> int:
    """
    U(1) phase of an average: +1 per annihilator, -1 per creator, and
    pos(j) - pos(i) per transition σ(i,j). Only subsystems in `aons` count
    when it is given.
    """
    total = 0
    for op in avg.operator:
        if aons is not None and op.aon not in aons:
            continue
        if isinstance(op, Destroy):
            total += 1
        elif isinstance(op, Create):
            total -= 1
        else:
            total += _level_phase(op)
    return total


def phase_invariant(*spaces) -> Callable:
    """
    Filter keeping averages of zero phase. With `spaces` (subsystems or
    their positions) only operators on those subsystems are counted.
    Combine with other predicates through ordinary lambdas.
    """
    def keep(avg) -> bool:
        if not isinstance(avg, Average):
            return all(keep(a) for a in sp.sympify(avg).atoms(Average))
        aons = None
        if spaces:
            h = avg.operator[0].hilbert
            aons = {subspace(h, s)[1] for s in spaces}
        return phase(avg, aons) == 0
    return keep
