# operators.py
# Operator algebra: bosonic ladder operators, N-level transition operators,
# their canonical (normal-ordered) products, linear combinations and
# deferred index sums.
#
# Products are stored as tuples of elementary operators sorted by
#   (time-0 flag, subsystem position, index, kind, name)
# with, inside one bosonic mode, all creators left of all annihilators and,
# inside one N-level subsystem and index, at most one transition operator.
# Different index symbols on one subsystem denote different subsystems.
#
# Requires: sympy

from __future__ import annotations
from dataclasses import dataclass, field, replace
from functools import lru_cache
from typing import Dict, Iterable, Tuple

import sympy as sp

from .errors import IndexBindingConflict, InvalidOperator
from .hilbert import FockSpace, NLevelSpace, subspace
from .index import Index, fresh_index


# --------------------------- Arithmetic mixin --------------------------------

class QOperator:
    """Operator arithmetic shared by elementary operators and QAdd."""

    def __add__(self, other):
        return add(self, other)

    def __radd__(self, other):
        return add(other, self)

    def __sub__(self, other):
        return add(self, mul(-1, other))

    def __rsub__(self, other):
        return add(other, mul(-1, self))

    def __neg__(self):
        return mul(-1, self)

    def __mul__(self, other):
        return mul(self, other)

    def __rmul__(self, other):
        return mul(other, self)

    def dagger(self):
        return dagger(self)


def _check_index(op, pos):
    index = op.index
    if index is None:
        return
    if isinstance(index, Index):
        if index.aon != pos:
            raise IndexBindingConflict(
                f"index '{index.name}' runs over subsystem {index.aon}, operator acts on {pos}", op)
        return
    if isinstance(index, (int, sp.Integer)) and int(index) >= 1:
        object.__setattr__(op, "index", int(index))
        return
    raise IndexBindingConflict("index must be an Index or a positive integer", index)


# --------------------------- Elementary operators ----------------------------

@dataclass(frozen=True)
class Destroy(QOperator):
    """Bosonic annihilation operator a."""
    hilbert: object = field(compare=False, repr=False)
    name: str = "a"
    aon: object = None
    index: object = None
    t0: bool = False

    def __post_init__(self):
        space, pos = subspace(self.hilbert, self.aon)
        if not isinstance(space, FockSpace):
            raise InvalidOperator("Destroy needs a FockSpace", space)
        object.__setattr__(self, "aon", pos)
        _check_index(self, pos)


@dataclass(frozen=True)
class Create(QOperator):
    """Bosonic creation operator a†."""
    hilbert: object = field(compare=False, repr=False)
    name: str = "a"
    aon: object = None
    index: object = None
    t0: bool = False

    def __post_init__(self):
        space, pos = subspace(self.hilbert, self.aon)
        if not isinstance(space, FockSpace):
            raise InvalidOperator("Create needs a FockSpace", space)
        object.__setattr__(self, "aon", pos)
        _check_index(self, pos)


@dataclass(frozen=True)
class Transition(QOperator):
    """Transition operator σ(i,j) = |i><j| on an N-level subsystem."""
    hilbert: object = field(compare=False, repr=False)
    name: str = "σ"
    i: object = 1
    j: object = 2
    aon: object = None
    index: object = None
    t0: bool = False
    levels: tuple = field(init=False, repr=False)
    ground: object = field(init=False, repr=False)

    def __post_init__(self):
        space, pos = subspace(self.hilbert, self.aon)
        if not isinstance(space, NLevelSpace):
            raise InvalidOperator("Transition needs an NLevelSpace", space)
        space.level_position(self.i)
        space.level_position(self.j)
        object.__setattr__(self, "aon", pos)
        object.__setattr__(self, "levels", space.levels)
        object.__setattr__(self, "ground", space.ground)
        _check_index(self, pos)


ELEMENTARY = (Destroy, Create, Transition)


def op_label(op) -> str:
    if isinstance(op, Destroy):
        s = op.name
    elif isinstance(op, Create):
        s = op.name + "†"
    else:
        s = f"{op.name}{op.i}{op.j}"
    if op.index is not None:
        s += f"_{op.index}"
    if op.t0:
        s += "(0)"
    return s


def _index_key(index):
    if index is None:
        return (0, "", 0)
    if isinstance(index, Index):
        return (1, index.name, 0)
    return (2, "", index)


def _sort_key(op):
    if isinstance(op, Transition):
        rank = (0, op.levels.index(op.i), op.levels.index(op.j))
    elif isinstance(op, Create):
        rank = (0, 0, 0)
    else:
        rank = (1, 0, 0)
    return (op.t0, op.aon, _index_key(op.index), rank, op.name)


def _group(op):
    return (op.t0, op.aon, op.index)


def monomial_label(ops) -> str:
    return "*".join(op_label(op) for op in ops) if ops else "𝟙"


def monomial_key(ops) -> str:
    """Unique string for a canonical product (labels plus subsystem, range and level set)."""
    parts = []
    for op in ops:
        idx = op.index
        rng = f"/{idx.range}" if isinstance(idx, Index) else ""
        lv = f"[{','.join(map(str, op.levels))};{op.ground}]" if isinstance(op, Transition) else ""
        parts.append(f"{op_label(op)}@{op.aon}{rng}{lv}")
    return "*".join(parts)


# --------------------------- Normal ordering ---------------------------------

@lru_cache(maxsize=None)
def _normal_order(ops: tuple) -> tuple:
    for k in range(len(ops) - 1):
        x, y = ops[k], ops[k + 1]
        if _group(x) == _group(y):
            if isinstance(x, Transition):
                if x.j != y.i:
                    return ()
                return _normal_order(ops[:k] + (replace(x, j=y.j),) + ops[k + 2:])
            if isinstance(x, Destroy) and isinstance(y, Create):
                # a a† = a† a + 1
                swapped = dict(_normal_order(ops[:k] + (y, x) + ops[k + 2:]))
                for m, c in _normal_order(ops[:k] + ops[k + 2:]):
                    swapped[m] = swapped.get(m, 0) + c
                return tuple((m, c) for m, c in swapped.items() if c != 0)
            continue
        if _sort_key(x) > _sort_key(y):
            return _normal_order(ops[:k] + (y, x) + ops[k + 2:])
    for k, x in enumerate(ops):
        if isinstance(x, Transition) and x.i == x.j == x.ground:
            # σ(g,g) = 1 - Σ_{l≠g} σ(l,l)
            out = dict(_normal_order(ops[:k] + ops[k + 1:]))
            for level in x.levels:
                if level == x.ground:
                    continue
                sub = ops[:k] + (replace(x, i=level, j=level),) + ops[k + 1:]
                for m, c in _normal_order(sub):
                    out[m] = out.get(m, 0) - c
            return tuple((m, c) for m, c in out.items() if c != 0)
    return ((ops, 1),)


def normal_order(ops: Iterable) -> Dict[tuple, int]:
    """Canonical form of an operator product as {monomial: coefficient}."""
    return dict(_normal_order(tuple(ops)))


# --------------------------- Linear combinations -----------------------------

@dataclass(frozen=True)
class QSum:
    """
    Deferred sum  Σ_{index ∉ non_equal} term  over the index range.
    `term` is a QAdd with exactly one term whose coefficient carries the
    index dependence. Used only as a term key inside QAdd.
    """
    term: "QAdd"
    index: Index
    non_equal: tuple = ()


@lru_cache(maxsize=None)
def key_label(key) -> str:
    if isinstance(key, QSum):
        excl = ""
        if key.non_equal:
            excl = "≠" + ",".join(str(k) for k in key.non_equal)
        return f"Σ_{key.index}{excl}({key.term})"
    return monomial_label(key)


def _key_order(key):
    if isinstance(key, QSum):
        return (2, key_label(key))
    return (1 if key else 0, key_label(key))


@dataclass(frozen=True)
class QAdd(QOperator):
    """
    Linear combination of canonical products and deferred sums,
    terms = ((key, coefficient), ...) sorted by key.
    Identity is the empty product ().
    """
    terms: tuple = ()

    @staticmethod
    def from_dict(d) -> "QAdd":
        items = []
        for k, c in d.items():
            c = sp.expand(c)
            if c != 0:
                items.append((k, c))
        items.sort(key=lambda kc: _key_order(kc[0]))
        return QAdd(tuple(items))

    def is_zero(self) -> bool:
        return not self.terms

    def __str__(self):
        if not self.terms:
            return "0"
        parts = []
        for k, c in self.terms:
            if c == 1:
                parts.append(key_label(k))
            else:
                parts.append(f"({c})*{key_label(k)}")
        return " + ".join(parts)


def _accumulate(out, q):
    for k, c in q.terms:
        out[k] = out.get(k, 0) + c


def _is_scalar(x) -> bool:
    if isinstance(x, (QOperator, QSum)):
        return False
    try:
        sp.sympify(x, strict=True)
    except sp.SympifyError:
        return False
    return True


def as_qadd(x) -> QAdd:
    if isinstance(x, QAdd):
        return x
    if isinstance(x, ELEMENTARY):
        return QAdd.from_dict(normal_order((x,)))
    if _is_scalar(x):
        return QAdd.from_dict({(): sp.sympify(x)})
    raise TypeError(f"cannot use {x!r} as an operator")


def add(x, y) -> QAdd:
    out = {}
    _accumulate(out, as_qadd(x))
    _accumulate(out, as_qadd(y))
    return QAdd.from_dict(out)


# --------------------------- Index bookkeeping -------------------------------

def _coeff_indices(c) -> set:
    return {s for s in sp.sympify(c).free_symbols if isinstance(s, Index)}


def _delta_indices(c) -> set:
    found = set()
    for d in sp.sympify(c).atoms(sp.KroneckerDelta):
        found.update(a for a in d.args if isinstance(a, Index))
    return found


def key_free_indices(key) -> set:
    if isinstance(key, QSum):
        inner = free_indices(key.term) - {key.index}
        return inner | {k for k in key.non_equal if isinstance(k, Index)}
    return {op.index for op in key if isinstance(op.index, Index)}


def free_indices(q) -> set:
    """Free (unbound) Index symbols of an operator expression."""
    q = as_qadd(q)
    found = set()
    for k, c in q.terms:
        found |= key_free_indices(k) | _coeff_indices(c)
    return found


def bound_names(q) -> set:
    """Names of all indices bound by sums anywhere in `q`."""
    q = as_qadd(q)
    names = set()
    for k, _ in q.terms:
        if isinstance(k, QSum):
            names.add(k.index.name)
            names |= bound_names(k.term)
    return names


def _all_names(q) -> set:
    return {i.name for i in free_indices(q)} | bound_names(q)


def substitute(q, mapping) -> QAdd:
    """Replace free indices by other indices or integer labels, re-canonicalizing."""
    q = as_qadd(q)
    mapping = {k: v for k, v in mapping.items() if k != v}
    if not mapping:
        return q
    smap = {k: sp.sympify(v) for k, v in mapping.items()}
    out = {}
    for key, c in q.terms:
        c = sp.sympify(c).xreplace(smap)
        if isinstance(key, QSum):
            _accumulate(out, mul(c, _substitute_sum(key, mapping)))
        else:
            ops = tuple(replace(op, index=mapping[op.index]) if op.index in mapping else op
                        for op in key)
            for m, n in normal_order(ops).items():
                out[m] = out.get(m, 0) + c * n
    return QAdd.from_dict(out)


def _substitute_sum(s: QSum, mapping) -> QAdd:
    inner = {k: v for k, v in mapping.items() if k != s.index}
    targets = {v.name for v in inner.values() if isinstance(v, Index)}
    if s.index.name in targets:
        s = _rename_bound(s, targets | _all_names(s.term))
    non_equal = tuple(inner.get(k, k) for k in s.non_equal)
    return Sum(substitute(s.term, inner), s.index, non_equal)


def _rename_bound(s: QSum, taken) -> QSum:
    new = fresh_index(s.index, taken)
    if new == s.index:
        return s
    return QSum(substitute(s.term, {s.index: new}), new, s.non_equal)


# --------------------------- Deferred index sums -----------------------------

def _as_index_tuple(non_equal):
    if isinstance(non_equal, (Index, int)):
        non_equal = (non_equal,)
    return tuple(non_equal)


def _sort_indices(indices):
    return tuple(sorted(set(indices), key=lambda k: (isinstance(k, Index), str(k))))


def _drop_deltas(c, index, non_equal):
    """KroneckerDelta(index, k) vanishes for every excluded k."""
    excluded = set(non_equal)

    def is_excluded_delta(x):
        if not isinstance(x, sp.KroneckerDelta):
            return False
        a, b = x.args
        return (a == index and b in excluded) or (b == index and a in excluded)

    return sp.sympify(c).replace(is_excluded_delta, lambda x: sp.S.Zero)


def Sum(term, index, non_equal=()) -> QAdd:
    """
    Σ_{index ∉ non_equal} term. Distributes over the terms of `term`,
    pulls index-free factors out and turns an index-free term into a
    multiplicity. Other indices of the same subsystem that occur in the
    term are split off as separate (index = other) terms.
    """
    if not isinstance(index, Index):
        raise TypeError(f"sum index must be an Index, got {index!r}")
    non_equal = _as_index_tuple(non_equal)
    for k in non_equal:
        if k == index:
            raise IndexBindingConflict("sum index cannot exclude itself", index)
        if isinstance(k, Index) and not index.same_family(k):
            raise IndexBindingConflict(
                f"'{k}' and '{index}' run over different subsystems", k)
    term = as_qadd(term)
    if index.name in bound_names(term):
        raise IndexBindingConflict(f"index '{index.name}' is already bound in the summand", term)
    out = {}
    for key, c in term.terms:
        _accumulate(out, _sum_term(key, c, index, non_equal))
    return QAdd.from_dict(out)


def _sum_term(key, c, index, non_equal) -> QAdd:
    single = QAdd(((key, 1),))
    candidates = key_free_indices(key) | _delta_indices(c)
    others = [k for k in candidates
              if k != index and index.same_family(k) and k not in non_equal]
    out = {}
    for k in sorted(others, key=str):
        _accumulate(out, mul(sp.sympify(c).xreplace({index: k}), substitute(single, {index: k})))
    non_equal = _sort_indices(non_equal + tuple(others))
    c = _drop_deltas(c, index, non_equal)
    if c == 0:
        return QAdd.from_dict(out)
    if not (index in sp.sympify(c).free_symbols or index in key_free_indices(key)):
        _accumulate(out, mul((index.range - len(non_equal)) * c, single))
        return QAdd.from_dict(out)
    indep, dep = sp.expand(c).as_independent(index, as_Add=False)
    s = QSum(QAdd(((key, dep),)), index, non_equal)
    out[s] = out.get(s, 0) + indep
    return QAdd.from_dict(out)


def DoubleSum(term, i, j, exclude_equal=True) -> QAdd:
    """Σ_i Σ_j term, with the i = j terms removed when `exclude_equal`."""
    inner = Sum(term, j, (i,) if exclude_equal else ())
    return Sum(inner, i)


def sum_of_product(factors, sums) -> QAdd:
    """
    Σ_{i1 ∉ E1} Σ_{i2 ∉ E2} ... f1 f2 ... fn for sums = [(i1, E1), ...].
    Equal-index cases are split off before the factors are multiplied, so
    same-index operators compose in the order they are written.
    """
    if not sums:
        result = as_qadd(1)
        for f in factors:
            result = mul(result, f)
        return result
    (index, non_equal), rest = sums[0], list(sums[1:])
    non_equal = _as_index_tuple(non_equal)
    inner_bound = {s[0] for s in rest}
    present = set()
    for f in factors:
        present |= free_indices(f) | _delta_indices(f if _is_scalar(f) else 0)
    others = sorted((k for k in present
                     if k != index and k not in inner_bound and index.same_family(k)
                     and k not in non_equal), key=str)
    out = {}
    for k in others:
        sub = [_subs_factor(f, {index: k}) for f in factors]
        sub_rest = [(i, tuple(k if e == index else e for e in E)) for i, E in rest]
        _accumulate(out, sum_of_product(sub, sub_rest))
    body = sum_of_product(factors, rest)
    _accumulate(out, Sum(body, index, _sort_indices(non_equal + tuple(others))))
    return QAdd.from_dict(out)


def _subs_factor(f, mapping):
    if _is_scalar(f):
        return sp.sympify(f).xreplace({k: sp.sympify(v) for k, v in mapping.items()})
    return substitute(f, mapping)


# --------------------------- Products ----------------------------------------

def _mul_keys(ka, kb) -> QAdd:
    if isinstance(ka, QSum):
        return _sum_times(ka, QAdd(((kb, 1),)), left=True)
    if isinstance(kb, QSum):
        return _sum_times(kb, QAdd(((ka, 1),)), left=False)
    return QAdd.from_dict(normal_order(ka + kb))


def _sum_times(s: QSum, other: QAdd, left: bool) -> QAdd:
    index, non_equal = s.index, s.non_equal
    others = sorted((k for k in free_indices(other)
                     if index.same_family(k) and k not in non_equal), key=str)
    out = {}
    for k in others:
        tk = substitute(s.term, {index: k})
        _accumulate(out, mul(tk, other) if left else mul(other, tk))
    prod = mul(s.term, other) if left else mul(other, s.term)
    _accumulate(out, Sum(prod, index, _sort_indices(non_equal + tuple(others))))
    return QAdd.from_dict(out)


def _rename_clashing(q: QAdd, taken) -> QAdd:
    if not any(isinstance(k, QSum) and k.index.name in taken for k, _ in q.terms):
        return q
    taken = set(taken) | _all_names(q)
    terms = []
    for k, c in q.terms:
        if isinstance(k, QSum) and k.index.name in taken:
            k = _rename_bound(k, taken)
            taken.add(k.index.name)
        terms.append((k, c))
    return QAdd(tuple(terms))


def mul(x, y):
    """Product of operators and/or scalars in canonical form."""
    if _is_scalar(x) and _is_scalar(y):
        return sp.sympify(x) * sp.sympify(y)
    a, b = as_qadd(x), as_qadd(y)
    a = _rename_clashing(a, _all_names(b))
    b = _rename_clashing(b, _all_names(a))
    out = {}
    for ka, ca in a.terms:
        for kb, cb in b.terms:
            for k, c in _mul_keys(ka, kb).terms:
                out[k] = out.get(k, 0) + ca * cb * c
    return QAdd.from_dict(out)


def _dagger_op(op):
    if isinstance(op, Destroy):
        return Create(op.hilbert, op.name, op.aon, op.index, op.t0)
    if isinstance(op, Create):
        return Destroy(op.hilbert, op.name, op.aon, op.index, op.t0)
    return replace(op, i=op.j, j=op.i)


def dagger(x) -> QAdd:
    """Hermitian conjugate."""
    if _is_scalar(x):
        return sp.conjugate(x)
    q = as_qadd(x)
    out = {}
    for k, c in q.terms:
        if isinstance(k, QSum):
            _accumulate(out, mul(sp.conjugate(c), Sum(dagger(k.term), k.index, k.non_equal)))
        else:
            ops = tuple(_dagger_op(op) for op in reversed(k))
            for m, n in normal_order(ops).items():
                out[m] = out.get(m, 0) + sp.conjugate(c) * n
    return QAdd.from_dict(out)


def commutator(x, y) -> QAdd:
    return add(mul(x, y), mul(-1, mul(y, x)))


def simplify(x) -> QAdd:
    """Collect terms and simplify every coefficient."""
    q = as_qadd(x)
    return QAdd.from_dict({k: sp.simplify(c) for k, c in q.terms})
