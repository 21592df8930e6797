"""Exception taxonomy for qfluct.

Every error carries the parameters that triggered it so callers can report
them without re-deriving the failing inputs.
"""

from __future__ import annotations


class QfluctError(Exception):
    """Base class for all qfluct errors."""


class DimensionMismatch(QfluctError, ValueError):
    """Operators (or states) disagree in size."""

    def __init__(self, message: str, shapes=()):
        super().__init__(f"{message} (shapes: {list(shapes)})")
        self.shapes = tuple(shapes)


class LevelCountExceeded(QfluctError, ValueError):
    """More eigenlevels were requested than the matrix dimension."""

    def __init__(self, requested: int, dimension: int):
        super().__init__(
            f"Requested {requested} levels but the Hamiltonian has dimension {dimension}."
        )
        self.requested = requested
        self.dimension = dimension

    def __reduce__(self):
        return (self.__class__, (self.requested, self.dimension))


class InvalidScheduleOrder(QfluctError, ValueError):
    """Pulse times are not strictly increasing or fall outside the span."""

    def __init__(self, message: str, times=(), span=None):
        super().__init__(message)
        self.times = tuple(times)
        self.span = span


class IntegrationDivergence(QfluctError, RuntimeError):
    """A trajectory produced a non-finite state or the ODE solver gave up."""

    def __init__(self, t_start: float, t_end: float, message: str = ""):
        detail = f": {message}" if message else ""
        super().__init__(
            f"Integration failed on [{t_start:.6g}, {t_end:.6g}]{detail}"
        )
        self.t_start = t_start
        self.t_end = t_end
        self.solver_message = message

    def __reduce__(self):
        return (self.__class__, (self.t_start, self.t_end, self.solver_message))


class SolverContractViolation(QfluctError, RuntimeError):
    """An eigen-solver strategy returned output breaking the strategy contract."""

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.details = details


class EnsembleFailure(QfluctError, RuntimeError):
    """One or more trajectories in an ensemble failed."""

    def __init__(self, failures, n_trajectories: int):
        super().__init__(
            f"{len(failures)} of {n_trajectories} trajectories failed "
            f"(first: {failures[0].error if failures else 'n/a'})"
        )
        self.failures = list(failures)
        self.n_trajectories = n_trajectories
