"""Error and warning types raised by the BACI analysis pipeline."""
from __future__ import annotations


class BatBaciError(Exception):
    """Base class for analysis errors."""


class MalformedCategoryError(BatBaciError, ValueError):
    """A raw category string falls outside the known Before/After or Control/Impact mapping."""


class DegenerateCovarianceError(BatBaciError, ValueError):
    """A numeric covariate is constant, so it cannot be standardized."""


class InvalidObservationError(BatBaciError, ValueError):
    """A raw observation row is missing identifiers or carries an invalid count."""


class InsufficientGroupsError(BatBaciError, ValueError):
    """The random-intercept grouping variable has fewer than two observed levels."""


class ModelSelectionError(BatBaciError, RuntimeError):
    """No candidate model in a selection could be fitted."""


class ConvergenceWarning(UserWarning):
    """The optimizer stopped before convergence; estimates are provisional."""
