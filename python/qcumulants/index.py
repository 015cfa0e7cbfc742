# index.py
# Index symbols and indexed scalar parameters.
#
# An Index is a sympy integer symbol that carries its own range and the
# subsystem it runs over, so every expression that uses it also carries the
# binding. Nothing is registered globally.

from __future__ import annotations
from typing import Dict, Iterable

import sympy as sp

from .errors import IndexBindingConflict
from .hilbert import subspace


class Index(sp.Symbol):
    """
    Index(h, name, range, space)

      h      : Hilbert space the indexed operators live in
      name   : symbol name ("i", "j", ...)
      range  : upper bound, sympy expression or int (values run 1..range)
      space  : the subsystem the index runs over (space object or position)
    """

    __slots__ = ("range", "aon", "space", "hilbert")

    def __new__(cls, h, name, range, space=None):
        sub, aon = subspace(h, space)
        obj = sp.Symbol.__xnew__(cls, str(name), integer=True)
        obj.range = sp.sympify(range)
        obj.aon = aon
        obj.space = sub
        obj.hilbert = h
        return obj

    def __getnewargs_ex__(self):
        return ((self.hilbert, self.name, self.range, self.aon), {})

    def _hashable_content(self):
        return sp.Symbol._hashable_content(self) + (self.range, self.aon)

    def same_family(self, other) -> bool:
        """True if both indices run over the same subsystem and range."""
        return (isinstance(other, Index) and self.aon == other.aon
                and self.range == other.range)

    def renamed(self, name):
        return Index(self.hilbert, name, self.range, self.aon)


def IndexedVariable(name, *indices, **assumptions):
    """Scalar parameter g[i] (or g[i, j]) as a sympy Indexed object."""
    if not indices:
        raise IndexBindingConflict("an indexed variable needs at least one index", name)
    for i in indices:
        if not isinstance(i, (Index, sp.Integer, int)):
            raise TypeError(f"index expected, got {i!r}")
    return sp.IndexedBase(name, **assumptions)[indices]


def DoubleIndexedVariable(name, i, j, identical=True, **assumptions):
    """
    Rate-matrix entry Gamma[i, j]. With identical=False the diagonal i == j
    vanishes, which is kept explicit through a Kronecker delta.
    """
    entry = IndexedVariable(name, i, j, **assumptions)
    if identical:
        return entry
    return (1 - sp.KroneckerDelta(i, j)) * entry


def check_bindings(indices: Iterable[Index]) -> Dict[str, Index]:
    """
    Map index names to indices, raising IndexBindingConflict if one name is
    bound to two different (range, space) pairs.
    """
    seen: Dict[str, Index] = {}
    for idx in indices:
        prev = seen.setdefault(idx.name, idx)
        if prev != idx:
            raise IndexBindingConflict(
                f"index '{idx.name}' bound to range {prev.range} on subsystem {prev.aon} "
                f"and to range {idx.range} on subsystem {idx.aon}", idx)
    return seen


def fresh_index(idx: Index, taken: Iterable[str]) -> Index:
    """Copy of `idx` under a name not in `taken` (i -> i_1, i_2, ...)."""
    taken = set(taken)
    if idx.name not in taken:
        return idx
    n = 1
    while f"{idx.name}_{n}" in taken:
        n += 1
    return idx.renamed(f"{idx.name}_{n}")
