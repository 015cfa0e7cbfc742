"""
Error classes raised by the symbolic engine.

Each error carries the object that triggered it (an operator, an average,
an equation, ...) in ``culprit`` so callers can inspect it.
"""


class CumulantError(Exception):
    """Base class for misuse of the symbolic model."""

    def __init__(self, message: str, culprit=None):
        self.message = message
        self.culprit = culprit
        if culprit is None:
            super().__init__(message)
        else:
            super().__init__(f"{message}: {culprit}")


class InvalidOperator(CumulantError):
    """Operator on an undeclared subsystem or with out-of-range levels."""


class IndexBindingConflict(CumulantError):
    """Index symbol reused with a different range/space or bound twice."""


class NonClosure(CumulantError):
    """Closure did not reach a fixed point within the iteration ceiling."""

    def __init__(self, message: str, culprit=None, iterations: int = -1):
        self.iterations = iterations
        super().__init__(message, culprit)


class InconsistentFilter(CumulantError):
    """Filter rejects an average that a retained equation depends on."""


class ScalingPrecondition(CumulantError):
    """Scaling on an open system or on indices that are not interchangeable."""
