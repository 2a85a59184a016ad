"""
Wavenumber Calibration Core Logic
---------------------------------
- WavenumberFitter: least-squares fit of the scale correction eps such that
  L * (1 + eps) matches S for every fitted pair, plus residual statistics and
  the outlier band used by the reject/refit loop.
- estimate_line_error: per-line uncertainty from the fit statistics and the
  Brault centroid estimate.

Residuals are dSig/Sig = (L(1+eps) - S) / S and are reported scaled by
RESIDUAL_SCALE (1e6) throughout.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy.optimize import least_squares

from .wavecal_errors import InsufficientLinesError, SolverDivergenceError
from .wavecal_lines import Line

logger = logging.getLogger(__name__)

RESIDUAL_SCALE = 1.0e6
SOLVER_TOL = 1.0e-12
SOLVER_MAX_ITERATIONS = 500
# One parameter plus one degree of freedom for the chi^2 scaling
MIN_FIT_LINES = 2


@dataclass
class FitState:
    """Current solution of the calibration and its residual statistics."""

    correction: float = 0.0
    correction_error: float = 0.0
    residual_mean: float = 0.0
    residual_std_dev: float = 0.0
    residual_std_err: float = 0.0
    n_fitted: int = 0
    chi_squared: float = 0.0
    iterations: int = 0
    converged: bool = False

    @property
    def reduced_chi_squared(self) -> float:
        dof = self.n_fitted - 1
        return self.chi_squared / dof if dof > 0 else 0.0


def scaled_residuals(
    list_wn: np.ndarray, std_wn: np.ndarray, correction: float
) -> np.ndarray:
    """dSig/Sig x RESIDUAL_SCALE for each pair."""
    list_wn = np.asarray(list_wn, dtype=float)
    std_wn = np.asarray(std_wn, dtype=float)
    return (list_wn * (1.0 + correction) - std_wn) / std_wn * RESIDUAL_SCALE


def closed_form_correction(list_wn: np.ndarray, std_wn: np.ndarray) -> float:
    """Analytic optimum of the (linear) least-squares problem."""
    ratio = np.asarray(list_wn, dtype=float) / np.asarray(std_wn, dtype=float)
    return float(np.sum(ratio * (1.0 - ratio)) / np.sum(ratio**2))


class WavenumberFitter:
    def __init__(
        self,
        tol: float = SOLVER_TOL,
        max_iterations: int = SOLVER_MAX_ITERATIONS,
    ):
        self.tol = tol
        self.max_iterations = max_iterations

    def fit(
        self,
        list_wn: np.ndarray,
        std_wn: np.ndarray,
        initial_correction: float = 0.0,
    ) -> FitState:
        """
        Fit the correction factor to the given pairs with Levenberg-Marquardt.

        Returns a new FitState holding the correction, its 1-sigma error
        (covariance scaled by the reduced chi^2) and the residual statistics.
        """
        list_wn = np.asarray(list_wn, dtype=float)
        std_wn = np.asarray(std_wn, dtype=float)
        n_lines = len(list_wn)
        if n_lines < MIN_FIT_LINES:
            raise InsufficientLinesError(n_lines, MIN_FIT_LINES)

        ratio = list_wn / std_wn

        def residual_fn(params):
            return scaled_residuals(list_wn, std_wn, params[0])

        def jacobian_fn(params):
            return (ratio * RESIDUAL_SCALE)[:, None]

        result = least_squares(
            residual_fn,
            x0=np.array([initial_correction], dtype=float),
            jac=jacobian_fn,
            method="lm",
            xtol=self.tol,
            ftol=self.tol,
            max_nfev=self.max_iterations,
        )
        correction = float(result.x[0])
        if result.status == 0:
            raise SolverDivergenceError(
                "Least-squares solver did not converge",
                best_correction=correction,
                iterations=result.nfev,
            )

        jac = result.jac
        chi_squared = float(np.sum(result.fun**2))
        dof = n_lines - 1
        covariance = np.linalg.pinv(jac.T @ jac)
        correction_error = float(np.sqrt(covariance[0, 0]) * np.sqrt(chi_squared / dof))

        state = FitState(
            correction=correction,
            correction_error=correction_error,
            n_fitted=n_lines,
            chi_squared=chi_squared,
            iterations=result.nfev,
        )
        self.compute_statistics(state, list_wn, std_wn)

        logger.info(
            "Correction factor: %.6e +/- %.6e (reduced chi^2 = %.4g, lines fitted = %d)",
            state.correction,
            state.correction_error,
            state.reduced_chi_squared,
            n_lines,
        )
        logger.info(
            "dSig/Sig Mean Residual: %.4e, StdDev: %.4e, StdErr: %.4e",
            state.residual_mean / RESIDUAL_SCALE,
            state.residual_std_dev / RESIDUAL_SCALE,
            state.residual_std_err / RESIDUAL_SCALE,
        )
        return state

    def compute_statistics(
        self, state: FitState, list_wn: np.ndarray, std_wn: np.ndarray
    ) -> np.ndarray:
        """Fill the residual mean / population std dev / std err of `state`."""
        diffs = scaled_residuals(list_wn, std_wn, state.correction)
        n_lines = len(diffs)
        if n_lines == 0:
            raise InsufficientLinesError(0, MIN_FIT_LINES)
        state.residual_mean = float(np.mean(diffs))
        state.residual_std_dev = float(np.sqrt(np.mean((diffs - state.residual_mean) ** 2)))
        state.residual_std_err = state.residual_std_dev / np.sqrt(n_lines)
        return diffs

    def outlier_mask(
        self,
        state: FitState,
        list_wn: np.ndarray,
        std_wn: np.ndarray,
        discard_limit: float,
    ) -> np.ndarray:
        """True for every pair outside |mean| + discard_limit * std dev."""
        diffs = scaled_residuals(list_wn, std_wn, state.correction)
        limit = abs(state.residual_mean) + discard_limit * state.residual_std_dev
        return np.abs(diffs) > limit


@dataclass(frozen=True)
class LineError:
    """Uncertainty decomposition of one calibrated line (all in cm^-1)."""

    index: int
    wavenumber: float
    scale_error: float
    std_dev_error: float
    brault_error: float
    global_error: float
    centroid_total_error: float
    total_error: float


def estimate_line_error(
    line: Line,
    state: FitState,
    point_spacing: float,
    wavenumber: Optional[float] = None,
) -> LineError:
    """
    Combine the two 1-sigma estimates for a line and keep the larger.

    A: the line's wavenumber times the quadrature sum of the correction error
       and the residual std dev.
    B: the quadrature sum of the scale error and the Brault centroid error.
    """
    wn = line.corrected_wavenumber if wavenumber is None else wavenumber
    rel_std_dev = state.residual_std_dev / RESIDUAL_SCALE
    global_rel = np.sqrt(state.correction_error**2 + rel_std_dev**2)
    error_a = wn * global_rel

    brault = line.centroid_error(point_spacing)
    scale_error = wn * state.correction_error
    error_b = np.sqrt(scale_error**2 + brault**2)

    return LineError(
        index=line.index,
        wavenumber=wn,
        scale_error=scale_error,
        std_dev_error=wn * rel_std_dev,
        brault_error=brault,
        global_error=float(error_a),
        centroid_total_error=float(error_b),
        total_error=float(max(error_a, error_b)),
    )
