# metagenome_tools/errors.py

"""Exceptions raised when a screening run's inputs violate a precondition."""


class ScreeningError(ValueError):
    """Base class for association screening errors."""


class InvalidGroupingError(ScreeningError):
    """The grouping variable does not have exactly two levels."""


class InvalidCovariateError(ScreeningError):
    """The covariate is non-numeric, has missing values or does not vary."""


class EmptyInputError(ScreeningError):
    """No features passed the abundance filter."""


class DimensionMismatchError(ScreeningError):
    """Abundance matrix samples and metadata entries disagree."""
