# averages.py
# Expectation values as sympy atoms, and deferred index sums over them.
#
# An Average wraps one canonical operator product. Right-hand sides of the
# equations are ordinary sympy expressions in Averages, parameters and
# IndexedSum nodes, so sympy does all the scalar bookkeeping.
#
# Requires: sympy

from __future__ import annotations
from dataclasses import replace
from typing import Dict

import sympy as sp

from .errors import IndexBindingConflict, InvalidOperator
from .index import Index
from .operators import (QAdd, QSum, as_qadd, dagger, monomial_key, monomial_label,
                        normal_order)


class Average(sp.Symbol):
    """⟨X⟩ for a canonical product X (a tuple of elementary operators)."""

    __slots__ = ("operator", "_key")

    def __new__(cls, ops):
        ops = tuple(ops)
        if not ops:
            raise InvalidOperator("the average of the identity is 1", ops)
        obj = sp.Symbol.__xnew__(cls, "⟨" + monomial_label(ops) + "⟩")
        obj.operator = ops
        obj._key = monomial_key(ops)
        return obj

    def __getnewargs_ex__(self):
        return ((self.operator,), {})

    def _hashable_content(self):
        return sp.Symbol._hashable_content(self) + (self._key,)

    @property
    def indices(self) -> tuple:
        """Index values (Index symbols or integer labels) in order of appearance."""
        seen = []
        for op in self.operator:
            if op.index is not None and op.index not in seen:
                seen.append(op.index)
        return tuple(seen)


def get_order(avg) -> int:
    """Number of elementary operators inside the average."""
    if isinstance(avg, Average):
        return len(avg.operator)
    return max((len(a.operator) for a in sp.sympify(avg).atoms(Average)), default=0)


class IndexedSum(sp.Expr):
    """
    Σ_{index ∉ excluded} term, kept unevaluated.

    Canonical form: distributes over Add, factors that do not depend on the
    index are pulled out, an index-free term becomes
    (range - len(excluded)) * term.
    """

    is_commutative = True

    def __new__(cls, term, index, excluded=()):
        if not isinstance(index, Index):
            raise TypeError(f"sum index must be an Index, got {index!r}")
        term = sp.expand(sp.sympify(term))
        excluded = tuple(sorted(set(sp.sympify(e) for e in excluded), key=str))
        if index in excluded:
            raise IndexBindingConflict("sum index cannot exclude itself", index)
        if term == 0:
            return sp.S.Zero
        if term.is_Add:
            return sp.Add(*[cls(t, index, excluded) for t in term.args])
        if not depends_on(term, index):
            return (index.range - len(excluded)) * term
        factors = term.args if term.is_Mul else (term,)
        outside = [f for f in factors if not depends_on(f, index)]
        inside = [f for f in factors if depends_on(f, index)]
        if outside:
            return sp.Mul(*outside) * cls(sp.Mul(*inside), index, excluded)
        return sp.Expr.__new__(cls, term, index, sp.Tuple(*excluded))

    @property
    def term(self):
        return self.args[0]

    @property
    def index(self):
        return self.args[1]

    @property
    def excluded(self):
        return tuple(self.args[2])

    @property
    def free_symbols(self):
        inner = self.term.free_symbols - {self.index}
        return inner | sp.Tuple(*self.excluded).free_symbols

    def _eval_conjugate(self):
        return IndexedSum(sp.conjugate(self.term), self.index, self.excluded)

    def _sympystr(self, printer):
        excl = ""
        if self.excluded:
            excl = "≠" + ",".join(printer._print(e) for e in self.excluded)
        return f"Σ_{self.index}{excl}({printer._print(self.term)})"


def average(op) -> sp.Expr:
    """Map an operator expression linearly onto averages."""
    q = as_qadd(op)
    total = sp.S.Zero
    for key, c in q.terms:
        if isinstance(key, QSum):
            total += c * IndexedSum(average(key.term), key.index, key.non_equal)
        elif key:
            total += c * Average(key)
        else:
            total += c
    return total


def undo_average(avg: Average) -> QAdd:
    """Operator inside an Average."""
    return QAdd(((tuple(avg.operator), 1),))


def average_adjoint(avg: Average) -> sp.Expr:
    """⟨X†⟩ as an expression in averages."""
    return average(dagger(undo_average(avg)))


# --------------------------- Index inspection --------------------------------

def average_indices(avg: Average) -> set:
    return {op.index for op in avg.operator if isinstance(op.index, Index)}


def depends_on(expr, index) -> bool:
    expr = sp.sympify(expr)
    if index in expr.free_symbols:
        return True
    return any(index in average_indices(a) for a in expr.atoms(Average))


# --------------------------- Substitution ------------------------------------

def relabel_average(avg: Average, mapping) -> sp.Expr:
    ops = tuple(replace(op, index=mapping[op.index]) if op.index in mapping else op
                for op in avg.operator)
    if ops == avg.operator:
        return avg
    total = sp.S.Zero
    for m, c in normal_order(ops).items():
        total += c * (Average(m) if m else 1)
    return total


def substitute_index(expr, mapping: Dict) -> sp.Expr:
    """
    Replace free indices by other indices or integer labels inside averages,
    indexed variables and sums. Sum indices shadow the mapping.
    """
    mapping = {k: sp.sympify(v) for k, v in mapping.items() if k != v}
    if not mapping:
        return sp.sympify(expr)
    return _subs(sp.sympify(expr), mapping)


def _subs(expr, mapping):
    if isinstance(expr, Average):
        return relabel_average(expr, {k: int(v) if v.is_Integer else v
                                      for k, v in mapping.items()})
    if isinstance(expr, IndexedSum):
        inner = {k: v for k, v in mapping.items() if k != expr.index}
        if expr.index in inner.values():
            raise IndexBindingConflict("substitution captures a sum index", expr.index)
        excluded = [inner.get(e, e) for e in expr.excluded]
        return IndexedSum(_subs(expr.term, inner), expr.index, excluded)
    if isinstance(expr, Index):
        return mapping.get(expr, expr)
    if not expr.args:
        return expr
    return expr.func(*[_subs(a, mapping) for a in expr.args])


# --------------------------- Materialization ---------------------------------

def _limit(index: Index, limits) -> int:
    value = limits.get(index, index.range)
    value = sp.sympify(value).xreplace({k: sp.sympify(v) for k, v in limits.items()})
    if not value.is_Integer:
        raise IndexBindingConflict(f"no numeric range for index '{index}'", index)
    return int(value)


def evaluate(expr, limits: Dict) -> sp.Expr:
    """
    Expand every IndexedSum into explicit terms for numeric index ranges,
    e.g. evaluate(rhs, {N: 3}). Excluded values are skipped; free indices
    must already be replaced by integer labels.
    """
    expr = sp.sympify(expr)
    if isinstance(expr, IndexedSum):
        excluded = set()
        for e in expr.excluded:
            if not e.is_Integer:
                raise IndexBindingConflict("cannot expand a sum that excludes a free index", e)
            excluded.add(int(e))
        total = sp.S.Zero
        for v in range(1, _limit(expr.index, limits) + 1):
            if v not in excluded:
                total += evaluate(substitute_index(expr.term, {expr.index: v}), limits)
        return total
    if not expr.args or isinstance(expr, Average):
        return expr.xreplace({k: sp.sympify(v) for k, v in limits.items()
                              if not isinstance(k, Index)})
    return expr.func(*[evaluate(a, limits) for a in expr.args])

