# correlation.py
# Two-time correlation functions <A(τ) B(0)> by quantum regression, and
# their spectra.
#
# B is copied with every operator marked as acting at time 0; those copies
# commute with everything at time τ, so d/dτ <X(τ) B(0)> = <(L†X)(τ) B(0)>
# follows from the one-time generator. One-time averages (only τ operators,
# or only time-0 operators) are inputs, not states.
#
# Requires: sympy, numpy

from __future__ import annotations
import logging
from dataclasses import replace
from typing import Callable, Optional, Sequence

import numpy as np
import sympy as sp

from .averages import Average, IndexedSum, average
from .closure import complete
from .cumulants import cumulant_expansion
from .equations import Equation, EquationSet, adjoint_of, ordered_averages, tau
from .errors import InvalidOperator, NonClosure, ScalingPrecondition
from .meanfield import _as_target, _channels, _lindblad_adjoint
from .operators import QAdd, QSum, as_qadd, mul
from .scaling import orbit_representative, scale, scale_expression

logger = logging.getLogger(__name__)


def _at_time_zero(op, flag=True) -> QAdd:
    """Copy of an operator expression with all operators marked t0=flag."""
    q = as_qadd(op)
    terms = []
    for key, c in q.terms:
        if isinstance(key, QSum):
            raise InvalidOperator("the time-0 operator cannot contain a sum", key)
        terms.append((tuple(replace(o, t0=flag) for o in key), c))
    return QAdd(tuple(terms))


def is_one_time(avg: Average) -> bool:
    """True when all operators of `avg` act at the same time."""
    return len({op.t0 for op in avg.operator}) == 1


def _only_time_zero(avg: Average) -> bool:
    return all(op.t0 for op in avg.operator)


def strip_time_zero(avg: Average) -> Average:
    return Average(tuple(replace(op, t0=False) for op in avg.operator))


def _split(avg: Average):
    later = tuple(op for op in avg.operator if not op.t0)
    zero = tuple(op for op in avg.operator if op.t0)
    return later, zero


def _as_base(avg: Average, base: EquationSet) -> sp.Expr:
    """Express a one-time average through the states of `base`."""
    if avg.operator[0].t0:
        avg = strip_time_zero(avg)
    lhs = base.lookup(avg)
    if lhs is not None:
        return lhs
    adj = adjoint_of(avg)
    if adj is not None and base.lookup(adj) is not None:
        return sp.conjugate(base.lookup(adj))
    if base.filter_func is not None and not base.filter_func(avg):
        return sp.S.Zero
    return avg


class CorrelationFunction:
    """
    Equations in τ for <A(τ) B(0)>, closed with the generator of `base`.

    `initial` holds the equal-time values <X B> of every state, written in
    the averages of `base`. With steady_state=False the base equations are
    appended so one-time averages evolve along with the correlations.
    """

    def __init__(self, A, B, base: EquationSet, steady_state: bool = True,
                 filter_func: Optional[Callable] = None, max_iterations=None):
        if base.H is None:
            raise ValueError("the base equation set carries no Hamiltonian")
        self.A = A
        self.B = B
        self.base = base
        self.steady_state = steady_state
        self.B0 = _at_time_zero(B)
        channels = _channels(base.J, base.rates)
        H, order = base.H, base.order

        def derive(avg: Average) -> sp.Expr:
            later, zero = _split(avg)
            dX = _lindblad_adjoint(QAdd(((later, 1),)), H, channels)
            rhs = average(mul(dX, QAdd(((zero, 1),))))
            return cumulant_expansion(rhs, order)

        seed = _as_target(mul(as_qadd(A), self.B0))
        eqs = EquationSet(H=H, J=base.J, rates=base.rates, order=order, derive=derive,
                          bound_names=base.bound_names, iv=tau, fixed=is_one_time)
        eqs.append(Equation(seed, derive(seed)))
        eqs = complete(eqs, filter_func=filter_func, max_iterations=max_iterations)
        if not steady_state:
            eqs = eqs.copy(list(eqs) + list(base), fixed=_only_time_zero)
        self.eqs = eqs
        self.initial = [self._initial_value(lhs) for lhs in self.states]
        logger.info("correlation function with %d equations", len(eqs))

    def _initial_value(self, lhs: Average) -> sp.Expr:
        if is_one_time(lhs):
            return lhs
        later, zero = _split(lhs)
        B = _at_time_zero(QAdd(((zero, 1),)), flag=False)
        value = cumulant_expansion(average(mul(QAdd(((later, 1),)), B)), self.base.order)
        rules = {a: _as_base(a, self.base) for a in sp.sympify(value).atoms(Average)}
        return sp.expand(sp.sympify(value).xreplace(rules))

    # EquationSet views
    @property
    def states(self):
        return self.eqs.states

    @property
    def rhs(self):
        return self.eqs.rhs

    def __len__(self):
        return len(self.eqs)

    def __iter__(self):
        return iter(self.eqs)

    def __str__(self):
        return str(self.eqs)

    def scaled(self, base: Optional[EquationSet] = None, identical=None) -> "CorrelationFunction":
        """
        Copy with the correlation equations scaled. `base` is the scaled
        one-time set the initial values and one-time averages refer to.
        """
        out = object.__new__(CorrelationFunction)
        out.__dict__.update(self.__dict__)
        out.eqs = scale(self.eqs, identical)
        if base is not None:
            out.base = base
        initial = []
        for lhs, value in zip(self.states, self.initial):
            rep, mapping = orbit_representative(lhs)
            if out.eqs.lookup(rep) is None:
                continue
            value = scale_expression(value, mapping)
            rules = {a: _as_base(a, out.base) for a in sp.sympify(value).atoms(Average)}
            initial.append((rep, sp.expand(sp.sympify(value).xreplace(rules))))
        values = dict(initial)
        out.initial = [values[lhs] for lhs in out.eqs.states]
        return out


# --------------------------- Spectrum ----------------------------------------

class Spectrum:
    """
    S(ω) = 2 Re x_0(ω) with (iω I - M) x = c + b/(iω), where d x/dτ = M x + b
    are the correlation equations and c their initial values.

    Call as spec(ω, u, p): `u` the steady-state values of the base states,
    `p` the values of `parameters`.
    """

    def __init__(self, corr: CorrelationFunction, parameters: Sequence = (), wtol: float = 0.0):
        if not corr.steady_state:
            raise ValueError("a spectrum needs a correlation function at steady state")
        eqs = corr.eqs
        if not eqs.is_closed():
            raise NonClosure("the correlation equations are not closed", eqs.find_missing())
        for expr in list(eqs.rhs) + list(corr.initial):
            if sp.sympify(expr).atoms(IndexedSum):
                raise ScalingPrecondition("scale the correlation function before its spectrum", expr)
        self.corr = corr
        self.parameters = list(parameters)
        self.wtol = wtol

        states = eqs.states
        M, rest = sp.linear_eq_to_matrix([sp.expand(r) for r in eqs.rhs], states)
        b = -rest
        c = sp.Matrix(corr.initial)

        base_states = corr.base.states
        u = sp.symbols(f"u0:{len(base_states)}")
        p = sp.symbols(f"p0:{len(self.parameters)}")
        rules = {}
        for expr in list(M) + list(b) + list(c):
            for avg in ordered_averages(expr):
                if avg in rules:
                    continue
                rules[avg] = self._input(avg, corr.base, base_states, u)
        rules.update(dict(zip(self.parameters, p)))
        M, b, c = (m.xreplace(rules) for m in (M, b, c))
        free = set().union(*(m.free_symbols for m in (M, b, c))) - set(u) - set(p)
        if free:
            raise ValueError(f"no values for {sorted(map(str, free))}")
        args = list(u) + list(p)
        self._M = sp.lambdify(args, M, "numpy")
        self._b = sp.lambdify(args, b, "numpy")
        self._c = sp.lambdify(args, c, "numpy")
        self.size = len(states)

    @staticmethod
    def _input(avg, base, base_states, u):
        base_avg = _as_base(avg, base)
        if isinstance(base_avg, sp.conjugate):
            return sp.conjugate(u[base_states.index(base_avg.args[0])])
        if base_avg == 0:
            return sp.S.Zero
        if base_avg in base_states:
            return u[base_states.index(base_avg)]
        raise NonClosure("one-time average missing from the base equations", avg)

    def __call__(self, omega, u, p=()):
        args = list(np.asarray(u, dtype=complex)) + list(np.asarray(p, dtype=complex))
        M = np.asarray(self._M(*args), dtype=complex).reshape(self.size, self.size)
        b = np.asarray(self._b(*args), dtype=complex).reshape(self.size)
        c = np.asarray(self._c(*args), dtype=complex).reshape(self.size)
        eye = np.eye(self.size)
        out = []
        for w in np.atleast_1d(np.asarray(omega, dtype=float)):
            if w == 0 and self.wtol:
                w = self.wtol
            rhs = c + b / (1j * w) if np.any(b) else c
            x = np.linalg.solve(1j * w * eye - M, rhs)
            out.append(2 * x[0].real)
        out = np.array(out)
        return out if np.ndim(omega) else float(out[0])
