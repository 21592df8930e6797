"""qfluct – Stochastic trajectories of quantum systems under telegraph noise and pulses."""

__version__ = "0.1.0"

from .config import SolverOptions, setup_logging
from .eigen import (
    EigenResult,
    HamiltonianCache,
    dense_eigen_solver,
    lanczos_eigen_solver,
    qutip_eigen_solver,
    sparse_eigen_solver,
)
from .ensemble import (
    EnsembleAggregator,
    EnsembleResult,
    EnsembleStatistics,
    ExecutionMode,
    RunningStatistics,
    TrajectoryFailure,
    expectation,
    overlap,
    population,
)
from .errors import (
    DimensionMismatch,
    EnsembleFailure,
    IntegrationDivergence,
    InvalidScheduleOrder,
    LevelCountExceeded,
    QfluctError,
    SolverContractViolation,
)
from .hamiltonian import Constant, HamiltonianModel, eigen_decompose
from .integrator import IntegratorStatus, Trajectory, TrajectoryIntegrator
from .noise import FluctuatorEnsemble, FluctuatorRealization, TelegraphRealization, log_uniform
from .pulses import PulseSchedule, unitary_pulse, x_pulse, z_pulse
from .units import unit_scale

__all__ = [
    "SolverOptions",
    "setup_logging",
    "EigenResult",
    "HamiltonianCache",
    "dense_eigen_solver",
    "lanczos_eigen_solver",
    "qutip_eigen_solver",
    "sparse_eigen_solver",
    "EnsembleAggregator",
    "EnsembleResult",
    "EnsembleStatistics",
    "ExecutionMode",
    "RunningStatistics",
    "TrajectoryFailure",
    "expectation",
    "overlap",
    "population",
    "DimensionMismatch",
    "EnsembleFailure",
    "IntegrationDivergence",
    "InvalidScheduleOrder",
    "LevelCountExceeded",
    "QfluctError",
    "SolverContractViolation",
    "Constant",
    "HamiltonianModel",
    "eigen_decompose",
    "IntegratorStatus",
    "Trajectory",
    "TrajectoryIntegrator",
    "FluctuatorEnsemble",
    "FluctuatorRealization",
    "TelegraphRealization",
    "log_uniform",
    "PulseSchedule",
    "unitary_pulse",
    "x_pulse",
    "z_pulse",
    "unit_scale",
]
