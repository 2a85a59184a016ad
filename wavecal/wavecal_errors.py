"""
Wavenumber Calibration Exceptions
---------------------------------
Every failure of the calibration engine is raised as a subclass of
CalibrationError at the point of detection. Nothing is retried.
"""


class CalibrationError(Exception):
    """Base exception for wavenumber calibration errors."""

    pass


class NegativeValueError(CalibrationError, ValueError):
    """Raised when a line field or setting is given a negative value."""

    def __init__(self, field, value):
        self.field = field
        self.value = value
        super().__init__(f"Cannot set {field} to {value}: the {field} must be positive.")


class NoDataError(CalibrationError):
    """Raised when an input list is empty or the fit set is too small."""

    pass


class InsufficientLinesError(NoDataError):
    """Raised when the fit set holds too few lines to fit the correction."""

    def __init__(self, n_lines, n_required):
        self.n_lines = n_lines
        self.n_required = n_required
        super().__init__(
            f"{n_lines} line(s) left in the fit set, at least {n_required} required."
        )


class NoOverlapError(CalibrationError):
    """Raised when no line pairs fall within the discriminator."""

    pass


class SolverDivergenceError(CalibrationError):
    """Raised when the least-squares solve or reject loop does not converge.

    The best correction found so far is kept so a caller can decide to carry
    on with a warning.
    """

    def __init__(self, message, best_correction, iterations):
        self.best_correction = best_correction
        self.iterations = iterations
        super().__init__(f"{message} (best correction {best_correction:.6e} after {iterations} iterations)")


class InvalidStateError(CalibrationError):
    """Raised when a session step is called out of order."""

    pass


class ConfigurationError(CalibrationError):
    """Raised when the configuration file is invalid."""

    pass


class LineListFormatError(CalibrationError):
    """Raised when a writelines line list cannot be read."""

    pass
