"""Instantaneous control pulses applied at scheduled times during integration."""

from __future__ import annotations

import logging
from typing import Callable, Sequence

import numpy as np
from qutip import Qobj, sigmax, sigmaz

from qfluct.errors import InvalidScheduleOrder

logger = logging.getLogger(__name__)

__all__ = ["PulseCursor", "PulseSchedule", "unitary_pulse", "x_pulse", "z_pulse"]


class UnitaryPulse:
    """State transform ``ψ → Uψ`` for kets and ``ρ → UρU†`` for density matrices."""

    def __init__(self, U):
        if isinstance(U, Qobj):
            U = U.full()
        self.U = np.array(U, dtype=np.complex128)
        if self.U.ndim != 2 or self.U.shape[0] != self.U.shape[1]:
            raise ValueError(f"Pulse unitary must be square, got shape {self.U.shape}.")

    def __call__(self, state):
        if state.ndim == 2 and state.shape[1] == state.shape[0] and state.shape[0] > 1:
            return self.U @ state @ self.U.conj().T
        return self.U @ state

    def __repr__(self) -> str:
        return f"UnitaryPulse(dimension={self.U.shape[0]})"


def unitary_pulse(U) -> UnitaryPulse:
    return UnitaryPulse(U)


def x_pulse() -> UnitaryPulse:
    """π rotation about x (Pauli X) on a qubit."""
    return UnitaryPulse(sigmax())


def z_pulse() -> UnitaryPulse:
    """π rotation about z (Pauli Z) on a qubit."""
    return UnitaryPulse(sigmaz())


class PulseSchedule:
    """Strictly increasing pulse times with their state transforms.

    Parameters
    ----------
    times : sequence of float
        Pulse instants, finite and strictly increasing.
    transform : callable or sequence of callables
        ``state -> state`` map applied at every pulse, or one map per pulse.

    Raises
    ------
    InvalidScheduleOrder
        If times are not finite and strictly increasing.
    """

    def __init__(self, times: Sequence[float], transform: Callable | Sequence[Callable]):
        times = np.array(times, dtype=float).ravel()
        if np.any(~np.isfinite(times)):
            raise InvalidScheduleOrder("Pulse times must be finite.", times)
        if np.any(np.diff(times) <= 0):
            raise InvalidScheduleOrder("Pulse times must be strictly increasing.", times)

        if callable(transform):
            transforms = [transform] * times.size
        else:
            transforms = list(transform)
            if len(transforms) != times.size:
                raise ValueError(
                    f"Got {len(transforms)} transforms for {times.size} pulse times."
                )
            if not all(callable(tr) for tr in transforms):
                raise TypeError("Every pulse transform must be callable.")

        times.setflags(write=False)
        self.times = times
        self._transforms = tuple(transforms)

    def __len__(self) -> int:
        return self.times.size

    def __repr__(self) -> str:
        return f"PulseSchedule(times={self.times.tolist()})"

    def validate_span(self, t0: float, t_f: float) -> None:
        """Ensure every pulse lies within ``[t0, t_f]``."""
        outside = (self.times < t0) | (self.times > t_f)
        if np.any(outside):
            raise InvalidScheduleOrder(
                f"Pulse times {self.times[outside].tolist()} lie outside the span [{t0}, {t_f}].",
                self.times,
                (t0, t_f),
            )

    def apply_at(self, t: float, state):
        """Apply the transform scheduled at exactly ``t``."""
        matches = np.flatnonzero(self.times == t)
        if matches.size == 0:
            raise InvalidScheduleOrder(f"No pulse is scheduled at t={t}.", self.times)
        return self._transforms[matches[0]](state)

    def cursor(self) -> "PulseCursor":
        return PulseCursor(self)


class PulseCursor:
    """Per-trajectory progress through a :class:`PulseSchedule`.

    Each pulse fires exactly once, in ascending order, at the first boundary
    that reaches its time.
    """

    def __init__(self, schedule: PulseSchedule):
        self.schedule = schedule
        self.position = 0

    @property
    def next_time(self) -> float | None:
        if self.position < len(self.schedule):
            return float(self.schedule.times[self.position])
        return None

    def fire_due(self, t: float, state):
        """Apply all pending pulses with ``time <= t``; return the new state and count."""
        fired = 0
        while self.position < len(self.schedule) and self.schedule.times[self.position] <= t:
            pulse_time = self.schedule.times[self.position]
            state = self.schedule._transforms[self.position](state)
            logger.debug("Pulse %s fired at t=%s", self.position, pulse_time)
            self.position += 1
            fired += 1
        return state, fired
