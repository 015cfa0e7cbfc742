"""qcumulants: symbolic mean-field equations for quantum operator averages."""

from .averages import Average, IndexedSum, average, evaluate, get_order, substitute_index
from .closure import complete, find_missing, phase_invariant
from .correlation import CorrelationFunction, Spectrum
from .cumulants import cumulant, cumulant_expansion
from .equations import Equation, EquationSet
from .errors import (CumulantError, InconsistentFilter, IndexBindingConflict, InvalidOperator,
                     NonClosure, ScalingPrecondition)
from .hilbert import FockSpace, NLevelSpace, ProductSpace
from .index import DoubleIndexedVariable, Index, IndexedVariable
from .meanfield import meanfield
from .operators import (Create, Destroy, DoubleSum, Sum, Transition, commutator, dagger,
                        normal_order, simplify)
from .scaling import orbit_representative, scale

__version__ = "0.1.0"


def version():
    return __version__


__all__ = [
    "Average", "IndexedSum", "average", "evaluate", "get_order", "substitute_index",
    "complete", "find_missing", "phase_invariant",
    "CorrelationFunction", "Spectrum",
    "cumulant", "cumulant_expansion",
    "Equation", "EquationSet",
    "CumulantError", "InconsistentFilter", "IndexBindingConflict", "InvalidOperator",
    "NonClosure", "ScalingPrecondition",
    "FockSpace", "NLevelSpace", "ProductSpace",
    "DoubleIndexedVariable", "Index", "IndexedVariable",
    "meanfield",
    "Create", "Destroy", "DoubleSum", "Sum", "Transition", "commutator", "dagger",
    "normal_order", "simplify",
    "orbit_representative", "scale",
    "version",
]
