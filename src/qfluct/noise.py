"""Classical 1/f-like noise from ensembles of independent telegraph fluctuators.

Each fluctuator is a random telegraph process switching between ``+b`` and
``-b`` at exponentially distributed intervals with rate ``γ``. The sum over an
ensemble with log-uniformly distributed rates approximates a 1/f power
spectral density between the smallest and largest rate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Sequence

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, NDArray

logger = logging.getLogger(__name__)

__all__ = [
    "FluctuatorEnsemble",
    "FluctuatorRealization",
    "TelegraphRealization",
    "log_uniform",
]


def log_uniform(low: float, high: float, n: int, rng: np.random.Generator | None = None):
    """Sample ``n`` values whose logarithm is uniform on ``[log low, log high]``."""
    if low <= 0 or high <= 0:
        raise ValueError("log_uniform bounds must be positive.")
    if high < low:
        raise ValueError("log_uniform requires low <= high.")
    rng = rng or np.random.default_rng()
    return np.exp(rng.uniform(np.log(low), np.log(high), size=n))


@dataclass(frozen=True, eq=False)
class TelegraphRealization:
    """One sampled telegraph process on ``[0, t_f]``.

    Attributes
    ----------
    amplitude : float
        Switching amplitude ``b``; values are ``±b``.
    initial_sign : int
        Sign of the process at ``t = 0``.
    switch_times : NDArray[np.floating]
        Strictly increasing switching instants in ``(0, t_f]``.
    t_f : float
        End of the sampled interval.
    """

    amplitude: float
    initial_sign: int
    switch_times: "NDArray[np.floating]"
    t_f: float

    def __call__(self, t: "ArrayLike"):
        # number of switches at or before t fixes the sign
        flips = np.searchsorted(self.switch_times, t, side="right")
        value = self.initial_sign * self.amplitude * (1 - 2 * (flips % 2))
        return float(value) if np.ndim(value) == 0 else value


@dataclass(frozen=True, eq=False)
class FluctuatorRealization:
    """Sum of independent telegraph realizations, a noise function of time."""

    telegraphs: "tuple[TelegraphRealization, ...]"
    t_f: float

    @property
    def breakpoints(self) -> "NDArray[np.floating]":
        """Sorted union of all switching times."""
        if not self.telegraphs:
            return np.empty(0)
        return np.unique(np.concatenate([tg.switch_times for tg in self.telegraphs]))

    def __call__(self, t: "ArrayLike"):
        if not self.telegraphs:
            return 0.0 if np.ndim(t) == 0 else np.zeros(np.shape(t))
        total = self.telegraphs[0](t)
        for tg in self.telegraphs[1:]:
            total = total + tg(t)
        return total


class FluctuatorEnsemble:
    """Ensemble of independent two-state fluctuators.

    Parameters
    ----------
    b : sequence of float
        Switching amplitudes, all positive.
    gamma : sequence of float
        Switching rates, all positive, same length as ``b``.

    Notes
    -----
    The ensemble is immutable. Every call to :meth:`sample_realization` draws
    a fresh, independent realization from the generator it is given, so no
    random state is shared between trajectories.

    Examples
    --------
    >>> ens = FluctuatorEnsemble.one_over_f(10, b=0.01, gamma_min=1e-2, gamma_max=10)
    >>> S = ens.spectral_density(np.logspace(-3, 2, 50))
    >>> noise = ens.sample_realization(5.0, rng=np.random.default_rng(1))
    >>> noise(2.5)
    """

    def __init__(self, b: Sequence[float], gamma: Sequence[float]) -> None:
        b = np.array(b, dtype=float).ravel()
        gamma = np.array(gamma, dtype=float).ravel()
        if b.shape != gamma.shape:
            raise ValueError(
                f"Amplitudes and rates must have equal length, got {b.size} and {gamma.size}."
            )
        if np.any(~np.isfinite(b)) or np.any(b <= 0):
            raise ValueError("All fluctuator amplitudes b must be positive.")
        if np.any(~np.isfinite(gamma)) or np.any(gamma <= 0):
            raise ValueError("All fluctuator switching rates gamma must be positive.")
        b.setflags(write=False)
        gamma.setflags(write=False)
        self.b = b
        self.gamma = gamma

    @classmethod
    def one_over_f(
        cls,
        n: int,
        b: float,
        gamma_min: float,
        gamma_max: float,
        rng: np.random.Generator | None = None,
    ) -> "FluctuatorEnsemble":
        """Equal-amplitude ensemble with log-uniform rates (1/f spectrum)."""
        gamma = log_uniform(gamma_min, gamma_max, n, rng)
        return cls(np.full(n, b), gamma)

    def __len__(self) -> int:
        return self.b.size

    def __repr__(self) -> str:
        return f"FluctuatorEnsemble(n={len(self)})"

    def spectral_density(self, omega: "ArrayLike"):
        """Closed-form Lorentzian sum ``S(ω) = Σ 4 b² γ / (γ² + ω²)``.

        Parameters
        ----------
        omega : float or array_like
            Angular frequencies.

        Returns
        -------
        float or ndarray
            Spectral density with the shape of ``omega``.
        """
        w = np.asarray(omega, dtype=float)
        s = np.sum(
            4 * self.b**2 * self.gamma
            / (self.gamma**2 + w[..., np.newaxis] ** 2),
            axis=-1,
        )
        return float(s) if s.ndim == 0 else s

    def _sample_switch_times(self, gamma: float, t_f: float, rng: np.random.Generator):
        times = []
        t = rng.exponential(1 / gamma)
        while t <= t_f:
            times.append(t)
            t += rng.exponential(1 / gamma)
        return np.array(times, dtype=float)

    def sample_realization(
        self, t_f: float, rng: np.random.Generator | None = None
    ) -> FluctuatorRealization:
        """Draw one summed telegraph realization on ``[0, t_f]``.

        Initial signs are uniform on ``{+1, -1}`` and switching times form a
        Poisson arrival process with rate ``γ_i``, continued until ``t_f`` is
        exceeded.
        """
        if t_f < 0:
            raise ValueError(f"t_f must be non-negative, got {t_f}.")
        rng = rng or np.random.default_rng()
        telegraphs = []
        for b, gamma in zip(self.b, self.gamma):
            sign = int(rng.choice((-1, 1)))
            switches = self._sample_switch_times(gamma, t_f, rng)
            switches.setflags(write=False)
            telegraphs.append(
                TelegraphRealization(
                    amplitude=float(b),
                    initial_sign=sign,
                    switch_times=switches,
                    t_f=float(t_f),
                )
            )
        logger.debug(
            "Sampled %s fluctuators with %s switches on [0, %s]",
            len(telegraphs),
            sum(tg.switch_times.size for tg in telegraphs),
            t_f,
        )
        return FluctuatorRealization(telegraphs=tuple(telegraphs), t_f=float(t_f))
