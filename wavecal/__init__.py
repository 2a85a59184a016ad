"""
FTS Wavenumber Calibration Package
----------------------------------
Calibrates the wavenumber scale of a measured emission line list against a
list of standard lines with a single multiplicative correction factor.

Modules:
    run_calibration: Command-line script.
    wavecal_pipeline: Calibration session and pipeline controller.
    wavecal_core: Least-squares fitter and per-line error estimates.
    wavecal_matching: Line matching between the two lists.
    wavecal_io: writelines line-list and report I/O.
"""

from .wavecal_core import FitState, LineError, WavenumberFitter, estimate_line_error
from .wavecal_errors import (
    CalibrationError,
    InsufficientLinesError,
    InvalidStateError,
    NegativeValueError,
    NoDataError,
    NoOverlapError,
    SolverDivergenceError,
)
from .wavecal_lines import Line, LineList, LinePair
from .wavecal_matching import find_common_lines
from .wavecal_pipeline import CalibrationConfig, CalibrationPipeline, CalibrationSession

__version__ = "1.0.0"
