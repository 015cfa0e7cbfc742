# equations.py
# Equation containers and the lookup of averages up to index renaming.
#
# Index symbols inside one average are placeholders for pairwise different
# subsystems, so <σ22_i> and <σ22_j> describe the same equation. Lookups go
# through `average_key`, which renames indices to canonical placeholders.
#
# Requires: sympy

from __future__ import annotations
import itertools as it
from dataclasses import dataclass
from typing import Callable, List, Optional

import sympy as sp

from .averages import Average, average_adjoint, relabel_average
from .index import Index

t = sp.Symbol("t", real=True)
tau = sp.Symbol("tau", real=True)


# --------------------------- Keys --------------------------------------------

def average_key(avg: Average) -> str:
    """Key of an average that is invariant under renaming its Index symbols."""
    indices = [k for k in avg.indices if isinstance(k, Index)]
    if not indices:
        return avg._key
    best = None
    for perm in it.permutations(range(len(indices))):
        mapping = {k: k.renamed(f"#{p}") for k, p in zip(indices, perm)}
        relabelled = relabel_average(avg, mapping)
        key = relabelled._key if isinstance(relabelled, Average) else sp.srepr(relabelled)
        if best is None or key < best:
            best = key
    return best


def adjoint_of(avg: Average) -> Optional[Average]:
    """⟨X†⟩ as a single average, or None when it is not one."""
    adj = average_adjoint(avg)
    return adj if isinstance(adj, Average) else None


def mixes_times(avg: Average) -> bool:
    """True for two-time averages (operators at τ and at time 0)."""
    flags = {op.t0 for op in avg.operator}
    return len(flags) > 1


def ordered_averages(expr) -> List[Average]:
    """Averages of `expr` in order of first appearance."""
    seen = []
    for node in sp.preorder_traversal(sp.sympify(expr)):
        if isinstance(node, Average) and node not in seen:
            seen.append(node)
    return seen


# --------------------------- Containers --------------------------------------

@dataclass(frozen=True)
class Equation:
    lhs: Average
    rhs: sp.Expr

    def __str__(self):
        return f"d/dt {self.lhs} = {self.rhs}"


class EquationSet:
    """
    Ordered equations d⟨X⟩/dt = rhs with pairwise distinct left-hand sides,
    plus the data they were generated from (H, jumps, rates, order, filter).

    `derive(avg)` returns the rhs for a new left-hand side; closure uses it.
    `fixed(avg)` marks averages treated as known inputs rather than states.
    """

    def __init__(self, equations=(), *, H=None, J=(), rates=(), order=None,
                 derive: Optional[Callable] = None, bound_names=frozenset(),
                 filter_func: Optional[Callable] = None, dropped=(), iv=t,
                 fixed: Optional[Callable] = None, scaled: bool = False):
        self.H = H
        self.J = tuple(J)
        self.rates = tuple(rates)
        self.order = order
        self.derive = derive
        self.bound_names = frozenset(bound_names)
        self.filter_func = filter_func
        self.dropped = list(dropped)
        self.iv = iv
        self.fixed = fixed
        self.scaled = scaled
        self._equations: List[Equation] = []
        self._keys = {}
        for eq in equations:
            self.append(eq)

    # container protocol
    def __len__(self):
        return len(self._equations)

    def __iter__(self):
        return iter(self._equations)

    def __getitem__(self, k):
        return self._equations[k]

    def __str__(self):
        return "\n".join(str(eq) for eq in self._equations)

    @property
    def states(self) -> List[Average]:
        return [eq.lhs for eq in self._equations]

    @property
    def rhs(self) -> List[sp.Expr]:
        return [eq.rhs for eq in self._equations]

    def append(self, eq: Equation):
        if not isinstance(eq, Equation):
            raise TypeError(f"Equation expected, got {eq!r}")
        key = average_key(eq.lhs)
        if key in self._keys:
            raise ValueError(f"duplicate left-hand side {eq.lhs}")
        self._keys[key] = len(self._equations)
        self._equations.append(eq)

    def copy(self, equations=None, **changes) -> "EquationSet":
        """New set with the same generating data; `changes` override fields."""
        fields = dict(H=self.H, J=self.J, rates=self.rates, order=self.order,
                      derive=self.derive, bound_names=self.bound_names,
                      filter_func=self.filter_func, dropped=self.dropped, iv=self.iv,
                      fixed=self.fixed, scaled=self.scaled)
        fields.update(changes)
        if equations is None:
            equations = list(self._equations)
        return EquationSet(equations, **fields)

    # lookups
    def lookup(self, avg: Average) -> Optional[Average]:
        """The left-hand side equal to `avg` up to index renaming, if any."""
        k = self._keys.get(average_key(avg))
        return None if k is None else self._equations[k].lhs

    def is_fixed(self, avg: Average) -> bool:
        return self.fixed is not None and self.fixed(avg)

    def is_covered(self, avg: Average) -> bool:
        """`avg` has an equation, directly or through its adjoint."""
        if self.is_fixed(avg) or self.lookup(avg) is not None:
            return True
        if mixes_times(avg):
            return False
        adj = adjoint_of(avg)
        return adj is not None and self.lookup(adj) is not None

    def uncovered(self) -> List[Average]:
        """All rhs averages without an equation, in order of appearance."""
        missing = []
        for rhs in self.rhs:
            for avg in ordered_averages(rhs):
                if avg not in missing and not self.is_covered(avg):
                    missing.append(avg)
        return missing

    def find_missing(self) -> List[Average]:
        """Uncovered averages, one per class of index renaming and adjoint."""
        found, keys = [], set()
        for avg in self.uncovered():
            key = average_key(avg)
            if key in keys:
                continue
            adj = None if mixes_times(avg) else adjoint_of(avg)
            if adj is not None and average_key(adj) in keys:
                continue
            keys.add(key)
            found.append(avg)
        return found

    def is_closed(self) -> bool:
        return not self.uncovered()

    def parameters(self) -> list:
        """
        Named symbols and indexed variables in the rhs, in order of first
        appearance; averages, index symbols and the time variable excluded.
        """
        params = []
        for rhs in self.rhs:
            _collect_parameters(sp.sympify(rhs), params, self.iv)
        return params


def _collect_parameters(expr, params, iv):
    if isinstance(expr, sp.Indexed):
        if expr not in params:
            params.append(expr)
        return
    if isinstance(expr, sp.Symbol):
        if not isinstance(expr, (Average, Index)) and expr != iv and expr not in params:
            params.append(expr)
        return
    for a in expr.args:
        _collect_parameters(a, params, iv)
