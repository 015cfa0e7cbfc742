import pytest
import sympy as sp

from qcumulants import Create, Destroy, FockSpace, Index, NLevelSpace, Transition


class CavityAtoms:
    """One cavity mode and an ensemble of identical two-level atoms."""

    def __init__(self):
        self.h = FockSpace("cavity") * NLevelSpace("atom", 2)
        self.N = sp.Symbol("N", positive=True, integer=True)
        self.a = Destroy(self.h, "a", 0)
        self.ad = Create(self.h, "a", 0)

    def s(self, i, j, index=None):
        return Transition(self.h, "σ", i, j, 1, index)

    def index(self, name):
        return Index(self.h, name, self.N, 1)


@pytest.fixture
def jc():
    return CavityAtoms()


@pytest.fixture
def params():
    return sp.symbols("Δ g κ Γ")
