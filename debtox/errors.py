"""
Exception types raised by the DEBtox core.

All of them derive from `DEBtoxError`, so a batch driver can catch a single
type per run. The more specific classes also inherit from the matching
built-in (ValueError / RuntimeError).
"""

from __future__ import annotations


class DEBtoxError(Exception):
    """Base class for every error raised by this package."""
    pass


class InvalidParameter(DEBtoxError, ValueError):
    """A model scalar, switch vector or solver control is missing or not finite."""
    pass


class InvalidScenarioTable(DEBtoxError, ValueError):
    """An exposure scenario table cannot be used for a concentration lookup."""
    pass


class SolverDivergence(DEBtoxError, RuntimeError):
    """
    The adaptive stepper could not meet the tolerances within its step-size floor.

    `t_reached` is the last time the solver had successfully advanced to.
    """

    def __init__(self, t_reached: float, message: str) -> None:
        self.t_reached = float(t_reached)
        self.message = message
        super().__init__(f"ODE solver failed at t={self.t_reached:g}: {message}")
