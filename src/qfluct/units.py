"""Unit conventions shared by Hamiltonians, noise and integrators.

Energies are expressed either as ordinary frequencies (unit ``"h"``, GHz with
time in ns) or as angular frequencies (unit ``"hbar"``). The Schrödinger
equation always consumes angular frequencies, so ``"h"`` quantities are
multiplied by 2π before entering the dynamics.
"""

import numpy as np
from scipy.constants import h, k as kB

UNIT_SCALES = {"h": 2 * np.pi, "hbar": 1.0}


def unit_scale(unit):
    """Return the factor converting ``unit`` energies to angular frequencies."""
    try:
        return UNIT_SCALES[unit]
    except KeyError:
        raise ValueError(
            f"Unknown unit '{unit}'. Choose from {list(UNIT_SCALES)}."
        ) from None


def to_angular(value, unit):
    return value * unit_scale(unit)


def from_angular(value, unit):
    return value / unit_scale(unit)


def temperature_to_freq(T):
    """Convert temperature in mK to the thermal frequency k_B T / h in GHz."""
    return kB * T * 1e-3 / h / 1e9


def freq_to_temperature(f):
    """Convert a frequency in GHz to the equivalent temperature in mK."""
    return h * f * 1e9 / kB * 1e3


def temperature_to_beta(T):
    """Inverse temperature in 1/GHz (i.e. ns) for a temperature in mK."""
    return 1 / temperature_to_freq(T)


def beta_to_temperature(beta):
    """Temperature in mK for an inverse temperature in 1/GHz."""
    return freq_to_temperature(1 / beta)
