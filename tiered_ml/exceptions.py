"""
Error taxonomy for the experiment harness.

Structural errors (schema, insufficient data, leakage) propagate to the caller.
Convergence errors are raised per unit (one imputation draw, one hyperparameter
configuration) and absorbed by the stage that owns the unit.
"""


class HarnessError(Exception):
    """Base class for all harness errors."""


class SchemaMismatchError(HarnessError, ValueError):
    """A referenced column (feature tier, label) is missing or malformed."""


class InsufficientDataError(HarnessError, ValueError):
    """A class or stratum is too small to split, impute or score."""


class NonConvergenceError(HarnessError, RuntimeError):
    """The chained-equations imputation did not stabilise."""


class ConvergenceError(HarnessError, RuntimeError):
    """A model optimiser did not converge for one configuration."""


class LeakageViolation(HarnessError, AssertionError):
    """Validation rows were offered to a fitting step."""
