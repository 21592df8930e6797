"""Single-trajectory integration of a Hamiltonian driven by telegraph noise.

The state obeys the Schrödinger (ket) or von Neumann (density matrix) equation
with generator

    G(t) = scale · (H(t) + Σ_k n_k(t) · C_k)

where ``C_k`` are coupling operators and ``n_k`` independent fluctuator-noise
realizations. The noise is piecewise constant, so the span is split at every
switching time and every pulse time; inside each segment SciPy's adaptive
Runge-Kutta solver integrates a smooth right-hand side.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Sequence

import numpy as np
from qutip import Qobj
from scipy import integrate, sparse

from qfluct.config import SolverOptions
from qfluct.errors import DimensionMismatch, IntegrationDivergence
from qfluct.hamiltonian import HamiltonianModel
from qfluct.noise import FluctuatorEnsemble, FluctuatorRealization
from qfluct.pulses import PulseSchedule

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, NDArray

logger = logging.getLogger(__name__)

__all__ = [
    "IntegratorStatus",
    "Trajectory",
    "TrajectoryIntegrator",
    "as_state",
    "observable_series",
]


class IntegratorStatus(enum.Enum):
    IDLE = "idle"
    INTEGRATING = "integrating"
    PULSE_BOUNDARY = "pulse_boundary"
    COMPLETED = "completed"
    FAILED = "failed"


def as_state(state, dimension: int) -> "NDArray[np.complexfloating]":
    """Normalise a ket ``(d,)``/``(d, 1)`` or density matrix ``(d, d)`` to an array."""
    if isinstance(state, Qobj):
        state = state.full()
    state = np.array(state, dtype=np.complex128)
    if state.ndim == 2 and state.shape == (dimension, 1):
        state = state.ravel()
    if state.shape not in ((dimension,), (dimension, dimension)):
        raise DimensionMismatch(
            f"State must be a ket or density matrix of dimension {dimension}",
            [state.shape],
        )
    return state


def _all_finite(matrix) -> bool:
    if sparse.issparse(matrix):
        matrix = matrix.data
    return bool(np.all(np.isfinite(matrix)))


def observable_series(states, observable) -> "NDArray":
    # Qobj is callable in qutip 5, so operators are checked first
    if isinstance(observable, Qobj):
        op = observable.full()
    elif callable(observable):
        return np.array([observable(s) for s in states])
    else:
        op = np.asarray(observable)
    if states.ndim == 2:
        return np.real(np.einsum("ti,ij,tj->t", states.conj(), op, states))
    return np.real(np.einsum("ij,tji->t", op, states))


@dataclass
class Trajectory:
    """State sequence of one noise realization on the output grid.

    Attributes
    ----------
    times : NDArray[np.floating]
        Output times.
    states : NDArray[np.complexfloating]
        States of shape ``(n_t, d)`` (kets) or ``(n_t, d, d)`` (density
        matrices).
    realizations : list of FluctuatorRealization
        Noise realization driving each coupling.
    status : IntegratorStatus
        Final integrator state.
    pulses_fired : int
        Number of pulses applied.
    """

    times: "NDArray[np.floating]"
    states: "NDArray[np.complexfloating]"
    realizations: "list[FluctuatorRealization]" = field(default_factory=list)
    status: IntegratorStatus = IntegratorStatus.COMPLETED
    pulses_fired: int = 0

    def expect(self, observable) -> "NDArray":
        """Scalar series of ``observable`` (callable or operator) over time."""
        return observable_series(self.states, observable)


class TrajectoryIntegrator:
    """Adaptive-step integrator for one stochastic trajectory at a time.

    Parameters
    ----------
    hamiltonian : HamiltonianModel
        Deterministic part of the dynamics.
    couplings : sequence of operators, default=()
        Operators multiplied by noise; each receives an independent
        realization of ``noise``.
    noise : FluctuatorEnsemble, optional
        Noise source. ``None`` means noise-free evolution.
    pulses : PulseSchedule, optional
        Instantaneous transforms applied at their scheduled times.
    options : SolverOptions, optional
        ODE method and tolerances.

    Attributes
    ----------
    status : IntegratorStatus
        ``IDLE → INTEGRATING → (PULSE_BOUNDARY)* → COMPLETED``, or ``FAILED``
        after a divergence.

    Notes
    -----
    An output time equal to a pulse time reports the post-pulse state. Each
    call to :meth:`run` uses its own noise realizations and pulse cursor, but
    ``status`` is per-instance, so parallel workers should not share one
    integrator object when they need to inspect it.
    """

    def __init__(
        self,
        hamiltonian: HamiltonianModel,
        couplings: Sequence = (),
        noise: FluctuatorEnsemble | None = None,
        pulses: PulseSchedule | None = None,
        options: SolverOptions | None = None,
    ) -> None:
        self.hamiltonian = hamiltonian
        self.couplings = [
            hamiltonian.check_operator(c, name=f"coupling {i}")
            for i, c in enumerate(couplings)
        ]
        self.noise = noise
        self.pulses = pulses
        self.options = options or SolverOptions()
        self.status = IntegratorStatus.IDLE

    @property
    def dimension(self) -> int:
        return self.hamiltonian.dimension

    def sample_realizations(
        self, t_f: float, rng: np.random.Generator | None = None
    ) -> "list[FluctuatorRealization]":
        """One independent realization per coupling operator."""
        if self.noise is None or not self.couplings:
            return []
        rng = rng or np.random.default_rng()
        return [self.noise.sample_realization(t_f, rng) for _ in self.couplings]

    def _segment_generator(self, realizations, t_mid: float):
        static = [n(t_mid) for n in realizations]
        scale = self.hamiltonian.scale
        couplings = self.couplings
        H = self.hamiltonian

        def generator(t: float):
            G = H.evaluate(t)
            for value, C in zip(static, couplings):
                if value != 0:
                    G = G + value * C
            return scale * G

        return generator

    @staticmethod
    def _rhs(generator: Callable, shape: tuple):
        if len(shape) == 1:

            def fun(t, y):
                return -1j * (generator(t) @ y)

        else:

            def fun(t, y):
                rho = y.reshape(shape)
                G = generator(t)
                # (G.T @ rho.T).T keeps sparse G on the left of the product
                return (-1j * (G @ rho - (G.T @ rho.T).T)).ravel()

        return fun

    def _boundaries(self, t0: float, t_f: float, realizations) -> "NDArray[np.floating]":
        points = [np.array([t0, t_f])]
        for n in realizations:
            points.append(n.breakpoints)
        if self.pulses is not None:
            points.append(self.pulses.times)
        bounds = np.unique(np.concatenate(points))
        return bounds[(bounds >= t0) & (bounds <= t_f)]

    def _fail(self, t_start: float, t_end: float, message: str):
        self.status = IntegratorStatus.FAILED
        logger.error("Trajectory diverged on [%s, %s]: %s", t_start, t_end, message)
        return IntegrationDivergence(t_start, t_end, message)

    def run(
        self,
        initial_state,
        t_eval: "ArrayLike",
        t_span: tuple[float, float] | None = None,
        rng: np.random.Generator | None = None,
        realizations: "Sequence[FluctuatorRealization] | None" = None,
    ) -> Trajectory:
        """Integrate one trajectory and sample it on ``t_eval``.

        Parameters
        ----------
        initial_state : array_like or qutip.Qobj
            Ket ``(d,)`` or density matrix ``(d, d)``.
        t_eval : array_like
            Non-decreasing output times inside ``t_span``.
        t_span : (float, float), optional
            Evolution interval, defaults to ``(t_eval[0], t_eval[-1])``.
        rng : numpy.random.Generator, optional
            Source for the noise realizations of this trajectory.
        realizations : sequence of FluctuatorRealization, optional
            Pre-sampled noise, one per coupling. Overrides ``rng``.

        Returns
        -------
        Trajectory

        Raises
        ------
        IntegrationDivergence
            If the solver fails or the state becomes non-finite; carries the
            time range that could not be completed.
        InvalidScheduleOrder
            If a pulse lies outside ``t_span``.
        """
        state = as_state(initial_state, self.dimension)
        t_eval = np.array(t_eval, dtype=float).ravel()
        if t_eval.size == 0:
            raise ValueError("t_eval must contain at least one time.")
        if np.any(np.diff(t_eval) < 0):
            raise ValueError("t_eval must be non-decreasing.")
        t0, t_f = (float(t_eval[0]), float(t_eval[-1])) if t_span is None else map(float, t_span)
        if t_f < t0:
            raise ValueError(f"Invalid time span ({t0}, {t_f}).")
        if t_eval[0] < t0 or t_eval[-1] > t_f:
            raise ValueError(f"t_eval must lie inside the span [{t0}, {t_f}].")

        if realizations is None:
            realizations = self.sample_realizations(t_f, rng)
        else:
            realizations = list(realizations)
            if len(realizations) != len(self.couplings):
                raise ValueError(
                    f"Expected {len(self.couplings)} realizations, got {len(realizations)}."
                )

        cursor = None
        if self.pulses is not None:
            self.pulses.validate_span(t0, t_f)
            cursor = self.pulses.cursor()

        shape = state.shape
        n_out = t_eval.size
        out = np.empty((n_out,) + shape, dtype=np.complex128)
        k = 0
        fired_total = 0
        bounds = self._boundaries(t0, t_f, realizations)
        logger.debug("Integrating [%s, %s] over %s segments", t0, t_f, max(bounds.size - 1, 1))

        self.status = IntegratorStatus.INTEGRATING
        for a, b in zip(bounds[:-1], bounds[1:]):
            if cursor is not None:
                state, fired = cursor.fire_due(a, state)
                if fired:
                    self.status = IntegratorStatus.PULSE_BOUNDARY
                    fired_total += fired
                    if not np.all(np.isfinite(state)):
                        raise self._fail(a, t_f, "non-finite state after pulse")
                    self.status = IntegratorStatus.INTEGRATING
            while k < n_out and t_eval[k] <= a:
                out[k] = state
                k += 1

            inner_end = k + np.searchsorted(t_eval[k:], b, side="left")
            inner = t_eval[k:inner_end]
            generator = self._segment_generator(realizations, 0.5 * (a + b))
            # a NaN right-hand side at the step start stalls the step-size control
            if not _all_finite(generator(a)):
                raise self._fail(a, t_f, "non-finite generator")
            sol = integrate.solve_ivp(
                self._rhs(generator, shape),
                (a, b),
                state.ravel(),
                t_eval=np.append(inner, b),
                **self.options.as_kwargs(),
            )
            if not sol.success:
                raise self._fail(a, t_f, sol.message)
            if not np.all(np.isfinite(sol.y)):
                raise self._fail(a, t_f, "non-finite state")

            for j in range(inner.size):
                out[k + j] = sol.y[:, j].reshape(shape)
            k = inner_end
            state = sol.y[:, -1].reshape(shape)

        if cursor is not None:
            state, fired = cursor.fire_due(t_f, state)
            fired_total += fired
            if fired and not np.all(np.isfinite(state)):
                raise self._fail(t_f, t_f, "non-finite state after pulse")
        while k < n_out:
            out[k] = state
            k += 1

        self.status = IntegratorStatus.COMPLETED
        return Trajectory(
            times=t_eval,
            states=out,
            realizations=list(realizations),
            status=self.status,
            pulses_fired=fired_total,
        )
