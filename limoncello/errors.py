class LimoncelloError(Exception):
    """Base class for errors raised by the engine."""


class GeometryError(LimoncelloError):
    """The mesh cannot be built: too few points, qhull failure or degenerate cells. Fatal."""


class NumericalInstabilityError(LimoncelloError):
    """The rate equations of a single vertex gave negative populations or were singular.

    Recovered by the solver with an LTE fallback for that vertex and iteration.
    """

    def __init__(self, message: str, condition: float | None = None):
        super().__init__(message)
        self.condition = condition


class ConvergenceFailure(RuntimeWarning):
    """The iteration cap was reached before the convergence goal; populations are best-effort."""


class RayTraceDegenerate(LimoncelloError):
    """No sight-line of an image entered the mesh."""
