# cumulants.py
# Moment closure: (i) Möbius inversion on set partitions (joint cumulants of
#                 operator products), (ii) truncation of averages above a
#                 given order in terms of lower-order averages.
#
# Requires: sympy

from __future__ import annotations
from math import factorial

import sympy as sp

from .averages import Average

# Toggle: True -> pass every expansion through sympy.simplify; False -> sympy.expand.
SIMPLIFY = False


# ---------- Set partitions ----------
def set_partitions(n: int):
    """
    Yield all partitions of {0,...,n-1} into non-empty blocks.
    Each partition is a tuple of blocks; each block is a sorted tuple of positions.
    Example (n=3): ((0,1,2),), ((0,), (1,2)), ((0,1), (2,)), ((0,2), (1,)), ((0,), (1,), (2,))
    """
    if n <= 0:
        yield tuple()
        return
    for smaller in set_partitions(n - 1):
        # new element n-1 as its own block
        yield smaller + ((n - 1,),)
        # or appended to one of the existing blocks
        for k in range(len(smaller)):
            yield smaller[:k] + (smaller[k] + (n - 1,),) + smaller[k + 1:]


# ---------- Möbius function on the partition lattice ----------
def mobius_weight(partition) -> int:
    """
    Möbius function μ(π, 1̂) on the lattice of set partitions:
        μ(π) = (-1)^{k-1} (k-1)!,   k = number of blocks in π
    """
    k = len(partition)
    return (-1) ** (k - 1) * factorial(k - 1) if k >= 1 else 0


# ---------- Averages of blocks ----------
def block_average(ops, block) -> sp.Expr:
    """⟨X_B⟩ for the sub-product of `ops` at positions `block` (order kept)."""
    return Average(tuple(ops[p] for p in block))


def moment_product(ops, partition) -> sp.Expr:
    """Product over blocks of their averages."""
    expr = sp.Integer(1)
    for B in partition:
        expr *= block_average(ops, B)
    return expr


# ---------- Joint cumulant via Möbius inversion ----------
def cumulant(ops) -> sp.Expr:
    """
    κ(X1,...,Xn) = Σ_{π} μ(π) ∏_{B in π} ⟨X_B⟩ over all set partitions π,
    for the canonical product `ops` (an Average or a tuple of operators).
    """
    if isinstance(ops, Average):
        ops = ops.operator
    ops = tuple(ops)
    total = sp.Integer(0)
    for pi in set_partitions(len(ops)):
        total += mobius_weight(pi) * moment_product(ops, pi)
    return sp.expand(total)


def _truncated_moment(ops, order: int) -> sp.Expr:
    """⟨X1...Xn⟩ with every cumulant of more than `order` operators set to zero."""
    total = sp.Integer(0)
    for pi in set_partitions(len(ops)):
        if any(len(B) > order for B in pi):
            continue
        term = sp.Integer(1)
        for B in pi:
            block = tuple(ops[p] for p in B)
            term *= Average(block) if len(block) == 1 else cumulant(block)
        total += term
    return sp.expand(total)


def cumulant_expansion(expr, order, simplify=None) -> sp.Expr:
    """
    Replace every average of more than `order` operators by its order-`order`
    cumulant approximation. Works inside IndexedSums and conjugates.
    """
    if order is None:
        return sp.expand(expr)
    if order < 1:
        raise ValueError("cumulant order must be >= 1")
    expr = sp.sympify(expr)
    rules = {avg: _truncated_moment(avg.operator, order)
             for avg in expr.atoms(Average) if len(avg.operator) > order}
    if rules:
        expr = expr.xreplace(rules)
    simplify = SIMPLIFY if simplify is None else simplify
    return sp.simplify(expr) if simplify else sp.expand(expr)


# ---------- Tiny self-checks (python -m qcumulants.cumulants) ----------
if __name__ == "__main__":
    from .hilbert import FockSpace, NLevelSpace, ProductSpace
    from .operators import Create, Destroy, Transition

    h = ProductSpace(FockSpace("cavity"), NLevelSpace("atom", 2))
    a = Destroy(h, "a", 0)
    s = Transition(h, "σ", 1, 2, 1)
    ad_a_s = Average((Create(h, "a", 0), a, s))

    print("partitions of 3:", list(set_partitions(3)))
    print("κ3 =", cumulant(ad_a_s))
    print("⟨a†aσ⟩ at order 2 =", cumulant_expansion(ad_a_s, 2))
    print("⟨a†aσ⟩ at order 1 =", cumulant_expansion(ad_a_s, 1))
