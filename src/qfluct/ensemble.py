"""Ensembles of independent noise trajectories and their statistics.

Trajectories are embarrassingly parallel: each one owns its random generator
(spawned from a single :class:`numpy.random.SeedSequence`), its noise
realization, its pulse cursor and its output buffer. Trajectories are grouped
into fixed-size chunks, and each chunk reduces its observable values into a
:class:`RunningStatistics` accumulator. The partial accumulators are merged in
chunk order, so serial, thread and process execution give identical
statistics for the same seed.
"""

from __future__ import annotations

import copy
import enum
import logging
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

import numpy as np
from qutip import Qobj

from qfluct.errors import EnsembleFailure, IntegrationDivergence
from qfluct.integrator import Trajectory, TrajectoryIntegrator, as_state, observable_series

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, NDArray

logger = logging.getLogger(__name__)

__all__ = [
    "EnsembleAggregator",
    "EnsembleResult",
    "EnsembleStatistics",
    "ExecutionMode",
    "RunningStatistics",
    "TrajectoryFailure",
    "expectation",
    "overlap",
    "population",
]


class ExecutionMode(str, enum.Enum):
    SERIAL = "serial"
    THREADS = "threads"
    PROCESSES = "processes"


# ==================================================================
# OBSERVABLES
# ==================================================================


class Expectation:
    """Real expectation value ``⟨ψ|O|ψ⟩`` or ``Tr(Oρ)``."""

    def __init__(self, op):
        self.op = op.full() if isinstance(op, Qobj) else np.asarray(op, dtype=np.complex128)

    def __call__(self, state) -> float:
        if state.ndim == 1:
            return float(np.real(state.conj() @ self.op @ state))
        return float(np.real(np.trace(self.op @ state)))


class Population:
    """Occupation of one basis state."""

    def __init__(self, index: int):
        self.index = int(index)

    def __call__(self, state) -> float:
        if state.ndim == 1:
            return float(np.abs(state[self.index]) ** 2)
        return float(np.real(state[self.index, self.index]))


class Overlap:
    """Overlap ``⟨target|ψ⟩`` (complex) or its squared modulus."""

    def __init__(self, target, squared: bool = True):
        if isinstance(target, Qobj):
            target = target.full()
        self.target = np.asarray(target, dtype=np.complex128).ravel()
        self.squared = squared

    def __call__(self, state):
        if state.ndim == 1:
            amplitude = self.target.conj() @ state
            return float(np.abs(amplitude) ** 2) if self.squared else complex(amplitude)
        if not self.squared:
            raise ValueError("A complex overlap is undefined for density matrices.")
        return float(np.real(self.target.conj() @ state @ self.target))


def expectation(op) -> Expectation:
    return Expectation(op)


def population(index: int) -> Population:
    return Population(index)


def overlap(target, squared: bool = True) -> Overlap:
    return Overlap(target, squared)


# ==================================================================
# STATISTICS
# ==================================================================


@dataclass(frozen=True, eq=False)
class EnsembleStatistics:
    """Per-time mean and standard error of a scalar observable.

    Attributes
    ----------
    times : NDArray[np.floating]
        Output times.
    mean : NDArray[np.floating]
        Sample mean over trajectories.
    std : NDArray[np.floating]
        Bessel-corrected sample standard deviation.
    standard_error : NDArray[np.floating]
        ``std / sqrt(n_trajectories)``; NaN when only one trajectory exists.
    n_trajectories : int
        Number of trajectories reduced.
    """

    times: "NDArray[np.floating]"
    mean: "NDArray[np.floating]"
    std: "NDArray[np.floating]"
    standard_error: "NDArray[np.floating]"
    n_trajectories: int


class RunningStatistics:
    """Mergeable mean/variance accumulator (Welford updates, Chan merges)."""

    def __init__(self):
        self.count = 0
        self.mean = None
        self.m2 = None

    def update(self, values: "ArrayLike") -> "RunningStatistics":
        values = _real_values(values)
        if self.count == 0:
            self.mean = np.zeros_like(values)
            self.m2 = np.zeros_like(values)
        elif values.shape != self.mean.shape:
            raise ValueError(
                f"Observable shape changed from {self.mean.shape} to {values.shape}."
            )
        self.count += 1
        delta = values - self.mean
        self.mean = self.mean + delta / self.count
        self.m2 = self.m2 + delta * (values - self.mean)
        return self

    def merge(self, other: "RunningStatistics") -> "RunningStatistics":
        """Return a new accumulator combining ``self`` and ``other``."""
        merged = RunningStatistics()
        if other.count == 0:
            merged.count, merged.mean, merged.m2 = self.count, self.mean, self.m2
            return merged
        if self.count == 0:
            merged.count, merged.mean, merged.m2 = other.count, other.mean, other.m2
            return merged
        n = self.count + other.count
        delta = other.mean - self.mean
        merged.count = n
        merged.mean = self.mean + delta * (other.count / n)
        merged.m2 = self.m2 + other.m2 + delta**2 * (self.count * other.count / n)
        return merged

    def statistics(self, times: "ArrayLike") -> EnsembleStatistics:
        if self.count == 0:
            raise ValueError("No trajectories have been accumulated.")
        if self.count > 1:
            std = np.sqrt(self.m2 / (self.count - 1))
            sem = std / np.sqrt(self.count)
        else:
            std = np.full_like(self.mean, np.nan)
            sem = np.full_like(self.mean, np.nan)
        return EnsembleStatistics(
            times=np.asarray(times, dtype=float),
            mean=self.mean.copy(),
            std=std,
            standard_error=sem,
            n_trajectories=self.count,
        )


def _real_values(values) -> "NDArray[np.floating]":
    values = np.asarray(values)
    if np.iscomplexobj(values):
        if np.any(np.abs(values.imag) > 1e-12 * np.maximum(1.0, np.abs(values.real))):
            raise ValueError("Ensemble observables must be real-valued.")
        values = values.real
    return np.array(values, dtype=float)


# ==================================================================
# RESULTS
# ==================================================================


@dataclass
class TrajectoryFailure:
    """A trajectory excluded from the ensemble."""

    index: int
    error: IntegrationDivergence


@dataclass
class EnsembleResult:
    """Reduced ensemble output.

    Attributes
    ----------
    statistics : EnsembleStatistics
        Mean and standard error over successful trajectories.
    n_trajectories : int
        Number of trajectories requested.
    n_failed : int
        Number of trajectories excluded after an integration failure.
    failures : list of TrajectoryFailure
        Per-trajectory failure records.
    """

    statistics: EnsembleStatistics
    n_trajectories: int
    n_failed: int = 0
    failures: "list[TrajectoryFailure]" = field(default_factory=list)


# ==================================================================
# WORKERS (module level so they pickle for process pools)
# ==================================================================


def _run_one(integrator, initial_state, t_eval, t_span, seed, index):
    # private copy so concurrent runs never share the status field
    integrator = copy.copy(integrator)
    rng = np.random.default_rng(seed)
    try:
        traj = integrator.run(initial_state, t_eval, t_span=t_span, rng=rng)
    except IntegrationDivergence as err:
        logger.error("Trajectory %s failed: %s", index, err)
        return index, None, TrajectoryFailure(index=index, error=err)
    return index, traj, None


def _run_chunk(integrator, initial_state, t_eval, t_span, jobs, observable):
    accumulator = RunningStatistics()
    failures = []
    for index, seed in jobs:
        _, traj, failure = _run_one(integrator, initial_state, t_eval, t_span, seed, index)
        if failure is not None:
            failures.append(failure)
            continue
        accumulator.update(observable_series(traj.states, observable))
    return accumulator, failures


# ==================================================================
# AGGREGATOR
# ==================================================================


class EnsembleAggregator:
    """Run many independent trajectories and reduce them.

    Parameters
    ----------
    integrator : TrajectoryIntegrator
        Integrator holding the Hamiltonian, couplings, noise and pulses.
    n_trajectories : int
        Number of trajectories ``N``.
    mode : {'serial', 'threads', 'processes'}, default='serial'
        Execution strategy. Process pools require every model component
        (coefficient functions, transforms, observables) to be picklable,
        i.e. defined at module level.
    max_workers : int, optional
        Pool size for parallel modes.
    on_failure : {'raise', 'skip'}, default='raise'
        ``'raise'`` aborts the ensemble with :class:`EnsembleFailure` once all
        trajectories have finished if any of them diverged. ``'skip'``
        excludes diverged trajectories and reports their count. If every
        trajectory fails, :class:`EnsembleFailure` is raised in both modes.
    chunk_size : int, default=16
        Trajectories reduced per work item.

    Examples
    --------
    >>> agg = EnsembleAggregator(integrator, n_trajectories=200, mode="threads")
    >>> result = agg.run(psi0, tlist, observable=population(0), seed=7)
    >>> result.statistics.mean, result.statistics.standard_error
    """

    def __init__(
        self,
        integrator: TrajectoryIntegrator,
        n_trajectories: int,
        mode: str | ExecutionMode = ExecutionMode.SERIAL,
        max_workers: int | None = None,
        on_failure: str = "raise",
        chunk_size: int = 16,
    ) -> None:
        if n_trajectories < 1:
            raise ValueError(f"n_trajectories must be positive, got {n_trajectories}.")
        if on_failure not in ("raise", "skip"):
            raise ValueError("on_failure must be 'raise' or 'skip'.")
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive.")
        self.integrator = integrator
        self.n_trajectories = int(n_trajectories)
        self.mode = ExecutionMode(mode)
        self.max_workers = max_workers
        self.on_failure = on_failure
        self.chunk_size = int(chunk_size)

    def _seeds(self, seed):
        return np.random.SeedSequence(seed).spawn(self.n_trajectories)

    def _map(self, func, argument_lists):
        if self.mode is ExecutionMode.SERIAL:
            return [func(*args) for args in argument_lists]
        executor_cls = (
            ThreadPoolExecutor if self.mode is ExecutionMode.THREADS else ProcessPoolExecutor
        )
        with executor_cls(max_workers=self.max_workers) as pool:
            futures = [pool.submit(func, *args) for args in argument_lists]
            return [f.result() for f in futures]

    def _check_failures(self, failures, n_success):
        if not failures:
            return
        logger.warning(
            "%s of %s trajectories failed (policy: %s)",
            len(failures),
            self.n_trajectories,
            self.on_failure,
        )
        if self.on_failure == "raise" or n_success == 0:
            raise EnsembleFailure(failures, self.n_trajectories)

    def run_trajectories(
        self,
        initial_state,
        t_eval: "ArrayLike",
        seed: int | None = None,
        t_span: tuple[float, float] | None = None,
    ) -> "tuple[list[Trajectory], list[TrajectoryFailure]]":
        """Return the per-trajectory state sequences and any failures."""
        initial_state = as_state(initial_state, self.integrator.dimension)
        t_eval = np.asarray(t_eval, dtype=float)
        args = [
            (self.integrator, initial_state, t_eval, t_span, s, i)
            for i, s in enumerate(self._seeds(seed))
        ]
        logger.info("Running %s trajectories (%s)", self.n_trajectories, self.mode.value)
        results = self._map(_run_one, args)

        trajectories = [traj for _, traj, failure in results if failure is None]
        failures = [failure for _, _, failure in results if failure is not None]
        self._check_failures(failures, len(trajectories))
        return trajectories, failures

    def run(
        self,
        initial_state,
        t_eval: "ArrayLike",
        observable: Callable | object,
        seed: int | None = None,
        t_span: tuple[float, float] | None = None,
    ) -> EnsembleResult:
        """Run the ensemble and reduce ``observable`` to mean and standard error.

        Parameters
        ----------
        initial_state : array_like or qutip.Qobj
            Common initial ket or density matrix.
        t_eval : array_like
            Output time grid.
        observable : callable or operator
            ``state -> float`` map, or an operator whose expectation is taken.
        seed : int, optional
            Root seed; each trajectory receives an independent child stream.
        t_span : (float, float), optional
            Evolution interval, defaults to the ends of ``t_eval``.

        Returns
        -------
        EnsembleResult
        """
        initial_state = as_state(initial_state, self.integrator.dimension)
        t_eval = np.asarray(t_eval, dtype=float)
        jobs = list(enumerate(self._seeds(seed)))
        chunks = [jobs[i : i + self.chunk_size] for i in range(0, len(jobs), self.chunk_size)]
        args = [
            (self.integrator, initial_state, t_eval, t_span, chunk, observable)
            for chunk in chunks
        ]
        logger.info(
            "Running %s trajectories in %s chunks (%s)",
            self.n_trajectories,
            len(chunks),
            self.mode.value,
        )
        partials = self._map(_run_chunk, args)

        total = RunningStatistics()
        failures = []
        for accumulator, chunk_failures in partials:
            total = total.merge(accumulator)
            failures.extend(chunk_failures)
        self._check_failures(failures, total.count)

        return EnsembleResult(
            statistics=total.statistics(t_eval),
            n_trajectories=self.n_trajectories,
            n_failed=len(failures),
            failures=failures,
        )
