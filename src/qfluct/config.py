"""Logging and solver configuration module."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass


def setup_logging() -> None:
    """Configure logging based on environment variables.

    Control log level via QFLUCT_LOG_LEVEL environment variable.

    Examples:
        # Default (WARNING level)
        python run.py

        # Per-trajectory progress and solver diagnostics
        QFLUCT_LOG_LEVEL=DEBUG python run.py
    """
    level_name = os.environ.get("QFLUCT_LOG_LEVEL", "WARNING").upper()
    level = getattr(logging, level_name, logging.WARNING)

    logging.basicConfig(
        level=level,
        format="%(name)s - %(levelname)s - %(message)s",
    )


@dataclass(frozen=True)
class SolverOptions:
    """Adaptive ODE solver settings passed to ``scipy.integrate.solve_ivp``.

    Attributes
    ----------
    method : str
        Explicit Runge-Kutta method name. Must support complex states.
    rtol, atol : float
        Relative and absolute error tolerances.
    max_step : float
        Upper bound on the adaptive step size.
    """

    method: str = "DOP853"
    rtol: float = 1e-8
    atol: float = 1e-12
    max_step: float = float("inf")

    def __post_init__(self):
        if self.rtol <= 0 or self.atol <= 0:
            raise ValueError("rtol and atol must be positive.")
        if self.max_step <= 0:
            raise ValueError("max_step must be positive.")

    def as_kwargs(self) -> dict:
        return {
            "method": self.method,
            "rtol": self.rtol,
            "atol": self.atol,
            "max_step": self.max_step,
        }
