"""
Numeric boundary: matrices, initial values and right-hand-side callables.

Everything here is plain numpy on a truncated basis: each bosonic mode gets
a Fock cutoff, each N-level subsystem its level count. Operators embed by
Kronecker products in subsystem order; density matrices are vectorized
column-wise, so vec(A ρ B) = (Bᵀ ⊗ A) vec(ρ).

The exact Lindblad superoperator is the reference the generated equations
are checked against when no cumulant truncation applies.
"""
from __future__ import annotations

from typing import Sequence

import numpy as np
import sympy as sp

from .averages import Average, IndexedSum, undo_average
from .equations import EquationSet
from .errors import InvalidOperator
from .operators import Create, Destroy, QSum, Transition, as_qadd

# --------------------------- Linear algebra helpers --------------------------

def dagger(A: np.ndarray) -> np.ndarray:
    return A.conj().T

def L_left(A: np.ndarray) -> np.ndarray:
    n = A.shape[0]
    return np.kron(np.eye(n), A)

def L_right(B: np.ndarray) -> np.ndarray:
    n = B.shape[0]
    return np.kron(B.T, np.eye(n))

def comm_super(O: np.ndarray) -> np.ndarray:
    """Superoperator for [O,·] as a Kronecker matrix."""
    return L_left(O) - L_right(O)

def vec(rho: np.ndarray) -> np.ndarray:
    return rho.reshape(-1, order="F")

def unvec(v: np.ndarray) -> np.ndarray:
    n = int(round(np.sqrt(v.size)))
    return v.reshape((n, n), order="F")

# --------------------------- Operators as matrices ---------------------------

def _local(op, dim: int) -> np.ndarray:
    if isinstance(op, Destroy):
        return np.diag(np.sqrt(np.arange(1, dim)), k=1).astype(complex)
    if isinstance(op, Create):
        return np.diag(np.sqrt(np.arange(1, dim)), k=-1).astype(complex)
    m = np.zeros((dim, dim), dtype=complex)
    m[op.levels.index(op.i), op.levels.index(op.j)] = 1
    return m

def _embed(local: np.ndarray, pos: int, dims: Sequence[int]) -> np.ndarray:
    out = np.eye(1, dtype=complex)
    for k, d in enumerate(dims):
        out = np.kron(out, local if k == pos else np.eye(d))
    return out

def to_matrix(op, dims: Sequence[int]) -> np.ndarray:
    """
    Dense matrix of an operator expression. `dims[k]` is the dimension of
    subsystem k. Coefficients must be numbers; indexed operators and sums
    have no matrix and are rejected.
    """
    dims = list(dims)
    q = as_qadd(op)
    n = int(np.prod(dims))
    out = np.zeros((n, n), dtype=complex)
    for key, c in q.terms:
        if isinstance(key, QSum):
            raise InvalidOperator("materialize sums before building matrices", key)
        m = np.eye(n, dtype=complex)
        for o in key:
            if o.index is not None:
                raise InvalidOperator("indexed operator has no matrix", o)
            if isinstance(o, Transition) and dims[o.aon] != len(o.levels):
                raise InvalidOperator(f"subsystem {o.aon} has {len(o.levels)} levels", dims)
            m = m @ _embed(_local(o, dims[o.aon]), o.aon, dims)
        out += complex(sp.sympify(c)) * m
    return out

# --------------------------- Averages ----------------------------------------

def numeric_average(expr, rho: np.ndarray, dims: Sequence[int]) -> complex:
    """Tr(X ρ) for an Average, or for any expression in averages with numeric coefficients."""
    if isinstance(expr, Average):
        return complex(np.trace(to_matrix(undo_average(expr), dims) @ rho))
    expr = sp.sympify(expr)
    if expr.atoms(IndexedSum):
        raise InvalidOperator("evaluate sums before taking numeric averages", expr)
    values = {a: numeric_average(a, rho, dims) for a in expr.atoms(Average)}
    return complex(expr.xreplace(values))

def initial_values(eqs: EquationSet, rho: np.ndarray, dims: Sequence[int]) -> np.ndarray:
    """State vector Tr(X ρ) ordered like eqs.states."""
    return np.array([numeric_average(lhs, rho, dims) for lhs in eqs.states], dtype=complex)

# --------------------------- Lindblad superoperator --------------------------

def liouvillian(H, J: Sequence, rates: Sequence, dims: Sequence[int]) -> np.ndarray:
    """
    L with dρ/dt = -i[H, ρ] + Σ_ab R_ab (J_b ρ J_a† - ½{J_a† J_b, ρ}),
    acting on vec(ρ). `rates` is a vector (R_aa) or a matrix.
    """
    Hm = to_matrix(H, dims)
    Js = [to_matrix(j, dims) for j in J]
    R = np.asarray(rates, dtype=complex)
    if R.ndim == 1:
        R = np.diag(R)
    L = -1j * comm_super(Hm)
    for a, Ja in enumerate(Js):
        for b, Jb in enumerate(Js):
            if R[a, b] == 0:
                continue
            JdJ = dagger(Ja) @ Jb
            L += R[a, b] * (L_left(Jb) @ L_right(dagger(Ja))
                            - 0.5 * L_left(JdJ) - 0.5 * L_right(JdJ))
    return L

# --------------------------- Right-hand sides --------------------------------

def rhs_function(eqs: EquationSet, parameters: Sequence = ()):
    """
    f(u, p, t) -> du/dt for the states of `eqs`, via sympy.lambdify (numpy).
    `u` follows eqs.states, `p` follows `parameters`.
    """
    states = eqs.states
    parameters = list(parameters)
    u = sp.symbols(f"u0:{len(states)}")
    p = sp.symbols(f"p0:{len(parameters)}")
    rules = dict(zip(states, u))
    rules.update(dict(zip(parameters, p)))
    exprs = []
    for rhs in eqs.rhs:
        expr = sp.sympify(rhs)
        if expr.atoms(IndexedSum):
            raise InvalidOperator("scale or evaluate sums before building a numeric rhs", expr)
        exprs.append(expr.xreplace(rules))
    free = set().union(set(), *(e.free_symbols for e in exprs)) - set(u) - set(p) - {eqs.iv}
    if free:
        raise ValueError(f"no values for {sorted(map(str, free))}")
    f = sp.lambdify(list(u) + list(p) + [eqs.iv], exprs, "numpy")

    def rhs(uv, pv=(), t=0.0):
        out = f(*np.asarray(uv, dtype=complex), *np.asarray(pv, dtype=complex), t)
        return np.asarray(out, dtype=complex).reshape(len(states))

    return rhs
