"""
Wavenumber Calibration Pipeline Controller
------------------------------------------
This module orchestrates the calibration of one line list:
1. Matches the uncalibrated list against the standard list.
2. Selects the strong common lines as the fit set.
3. Iteratively fits the correction factor and discards outliers until a
   round discards nothing.
4. Writes the calibrated list, the error report, a summary and plots.

CalibrationSession holds the state of a single run and enforces the order
of the steps; CalibrationPipeline wraps it with file handling.
"""

import datetime
import logging
import os
from dataclasses import dataclass, fields
from enum import Enum
from typing import Dict, List, Optional

import numpy as np
import yaml

from .wavecal_core import (
    RESIDUAL_SCALE,
    FitState,
    LineError,
    WavenumberFitter,
    estimate_line_error,
    scaled_residuals,
)
from .wavecal_errors import (
    ConfigurationError,
    InvalidStateError,
    NegativeValueError,
    SolverDivergenceError,
)
from .wavecal_io import read_line_list, write_calibration_report, write_line_list
from .wavecal_lines import DEFAULT_POINT_SPACING, LineList, LinePair
from .wavecal_matching import find_common_lines
from .wavecal_plotting import plot_differences

logger = logging.getLogger(__name__)

DEFAULT_DISCRIMINATOR = 0.1  # K
DEFAULT_AMPLITUDE_THRESHOLD = 50.0  # SNR if the spectrum is normalised
DEFAULT_DISCARD_LIMIT = 2.0  # residual std devs


@dataclass
class CalibrationConfig:
    """Configuration parameters for the calibration pipeline."""

    working_dir: str
    file_root: str  # Stem for output filenames (e.g., "FeNe_0415")
    discriminator: float = DEFAULT_DISCRIMINATOR
    amplitude_threshold: float = DEFAULT_AMPLITUDE_THRESHOLD
    discard_limit: float = DEFAULT_DISCARD_LIMIT
    point_spacing: float = DEFAULT_POINT_SPACING
    initial_correction: float = 0.0
    max_rounds: Optional[int] = None
    report_all_lines: bool = False
    make_plots: bool = True

    def __post_init__(self):
        for name in ("discriminator", "amplitude_threshold", "discard_limit", "point_spacing"):
            if getattr(self, name) < 0.0:
                raise NegativeValueError(name, getattr(self, name))
        self.plot_dir = os.path.join(self.working_dir, "plots")
        self.res_dir = os.path.join(self.working_dir, "results")
        os.makedirs(self.plot_dir, exist_ok=True)
        os.makedirs(self.res_dir, exist_ok=True)


def load_config(filename: str) -> Dict:
    """
    Reads calibration settings from a YAML file.

    Expected layout::

        paths:
          working_dir: ./calibration
          file_root: FeNe_0415
        calibration:
          discriminator: 0.1
          amplitude_threshold: 50.0

    Returns a flat dict of CalibrationConfig keywords. Keys in either
    section that CalibrationConfig does not take raise ConfigurationError.
    """
    with open(filename, "r") as f:
        cfg = yaml.safe_load(f) or {}
    if not isinstance(cfg, dict):
        raise ConfigurationError(f"{filename} does not contain a mapping.")

    known = {f.name for f in fields(CalibrationConfig)}
    settings = {}
    for section in ("paths", "calibration"):
        for key, value in (cfg.get(section) or {}).items():
            if key not in known:
                raise ConfigurationError(f"Unknown {section} setting '{key}' in {filename}.")
            settings[key] = value
    return settings


class SessionState(Enum):
    CREATED = "created"
    MATCHED = "matched"
    FIT_SET_SELECTED = "fit_set_selected"
    FITTING = "fitting"
    CONVERGED = "converged"


class CalibrationSession:
    """
    State of a single calibration run.

    The session is built once for one pair of input lists. The steps must be
    called in order: match(), select_fit_set(), then fit() until it returns 0.
    """

    def __init__(
        self,
        line_list: LineList,
        standard: LineList,
        discriminator: float = DEFAULT_DISCRIMINATOR,
        amplitude_threshold: float = DEFAULT_AMPLITUDE_THRESHOLD,
        discard_limit: float = DEFAULT_DISCARD_LIMIT,
        point_spacing: float = DEFAULT_POINT_SPACING,
        initial_correction: float = 0.0,
        max_rounds: Optional[int] = None,
        fitter: Optional[WavenumberFitter] = None,
    ):
        for name, value in (
            ("discriminator", discriminator),
            ("amplitude_threshold", amplitude_threshold),
            ("discard_limit", discard_limit),
            ("point_spacing", point_spacing),
        ):
            if value < 0.0:
                raise NegativeValueError(name, value)

        self.line_list = line_list
        self.standard = standard
        self.discriminator = discriminator
        self.amplitude_threshold = amplitude_threshold
        self.discard_limit = discard_limit
        self.point_spacing = point_spacing
        self.initial_correction = initial_correction
        self.max_rounds = max_rounds
        self.fitter = fitter if fitter is not None else WavenumberFitter()
        self.reset()

    @classmethod
    def from_config(cls, config: CalibrationConfig, line_list, standard):
        return cls(
            line_list,
            standard,
            discriminator=config.discriminator,
            amplitude_threshold=config.amplitude_threshold,
            discard_limit=config.discard_limit,
            point_spacing=config.point_spacing,
            initial_correction=config.initial_correction,
            max_rounds=config.max_rounds,
        )

    def reset(self):
        """Clears all derived state; the session returns to CREATED."""
        self.state = SessionState.CREATED
        self.common_pairs: List[LinePair] = []
        self.fit_set: List[LinePair] = []
        self.discarded_set: List[LinePair] = []
        self.fit_state = FitState(correction=self.initial_correction)
        self.match_info: Dict = {}
        self.rounds = 0
        self.best_correction: Optional[float] = None
        self.history = {"correction": [], "residual_std_dev": [], "n_fitted": []}

    def _require(self, *states):
        if self.state not in states:
            allowed = ", ".join(s.name for s in states)
            raise InvalidStateError(
                f"Session is {self.state.name}; this step requires {allowed}."
            )

    def _pair_wavenumbers(self, pairs):
        list_wn = np.array([self.line_list[p.list_index].corrected_wavenumber for p in pairs])
        std_wn = np.array([self.standard[p.standard_index].corrected_wavenumber for p in pairs])
        return list_wn, std_wn

    def match(self) -> List[LinePair]:
        """Finds the lines common to both lists."""
        self._require(SessionState.CREATED)
        self.common_pairs, self.match_info = find_common_lines(
            self.line_list, self.standard, self.discriminator
        )
        self.state = SessionState.MATCHED
        return self.common_pairs

    def select_fit_set(self) -> List[LinePair]:
        """Keeps the common lines with amplitude >= amplitude_threshold."""
        self._require(SessionState.MATCHED)
        self.fit_set = [
            pair
            for pair in self.common_pairs
            if self.line_list[pair.list_index].amplitude >= self.amplitude_threshold
        ]
        logger.info(
            "%d of %d common lines have amplitude %.2f or greater.",
            len(self.fit_set),
            len(self.common_pairs),
            self.amplitude_threshold,
        )
        self.state = SessionState.FIT_SET_SELECTED
        return self.fit_set

    def fit(self) -> int:
        """
        One fit round: refit the correction, update the residual statistics
        and discard outliers. Returns the number of pairs discarded; the
        session is CONVERGED once this is 0.
        """
        self._require(
            SessionState.FIT_SET_SELECTED, SessionState.FITTING, SessionState.CONVERGED
        )
        if self.state is SessionState.CONVERGED:
            return self._discard_outliers()
        if self.max_rounds is not None and self.rounds >= self.max_rounds:
            self.best_correction = self.fit_state.correction
            raise SolverDivergenceError(
                f"Outlier rejection did not settle within {self.max_rounds} rounds",
                best_correction=self.fit_state.correction,
                iterations=self.rounds,
            )

        list_wn, std_wn = self._pair_wavenumbers(self.fit_set)
        try:
            self.fit_state = self.fitter.fit(
                list_wn, std_wn, initial_correction=self.fit_state.correction
            )
        except SolverDivergenceError as e:
            self.best_correction = e.best_correction
            raise
        self.best_correction = self.fit_state.correction
        self.rounds += 1
        self.history["correction"].append(self.fit_state.correction)
        self.history["residual_std_dev"].append(self.fit_state.residual_std_dev)
        self.history["n_fitted"].append(self.fit_state.n_fitted)
        self.state = SessionState.FITTING
        return self._discard_outliers()

    def reject_outliers(self) -> int:
        """
        Re-applies the discard band to a converged fit set.

        Allowed only once converged. Before that the statistics may belong
        to a larger fit set; fit() refits and rejects in one step.
        """
        self._require(SessionState.CONVERGED)
        return self._discard_outliers()

    def _discard_outliers(self) -> int:
        """Moves fit-set pairs outside the discard band to the discarded set."""
        list_wn, std_wn = self._pair_wavenumbers(self.fit_set)
        mask = self.fitter.outlier_mask(self.fit_state, list_wn, std_wn, self.discard_limit)
        diffs = scaled_residuals(list_wn, std_wn, self.fit_state.correction)
        limit = abs(self.fit_state.residual_mean) + self.discard_limit * self.fit_state.residual_std_dev

        kept = []
        for pair, is_outlier, diff in zip(self.fit_set, mask, diffs):
            if is_outlier:
                line = self.line_list[pair.list_index]
                logger.info(
                    "Removing line %d: %.6f K (residual dSig/Sig = %.4e, limit = +/-%.4e)",
                    line.index,
                    line.corrected_wavenumber,
                    diff / RESIDUAL_SCALE,
                    limit / RESIDUAL_SCALE,
                )
                self.discarded_set.append(pair)
            else:
                kept.append(pair)
        self.fit_set = kept

        n_removed = int(np.sum(mask))
        if n_removed == 0:
            self.state = SessionState.CONVERGED
            self.fit_state.converged = True
            logger.info(
                "All lines are within %.2f standard deviations of the mean.",
                self.discard_limit,
            )
        return n_removed

    def is_converged(self) -> bool:
        return self.state is SessionState.CONVERGED

    def run(self) -> FitState:
        """Runs every step until the fit set stops changing."""
        if self.state is SessionState.CREATED:
            self.match()
        if self.state is SessionState.MATCHED:
            self.select_fit_set()
        while not self.is_converged():
            n_removed = self.fit()
            if n_removed:
                logger.info("Removed %d bad line(s) from the fit. Refining...", n_removed)
        return self.fit_state

    @property
    def total_correction(self) -> float:
        """Fitted correction composed with the one already applied to the list."""
        applied = self.line_list.header.correction
        return (1.0 + applied) * (1.0 + self.fit_state.correction) - 1.0

    def calibrated_list(self) -> LineList:
        self._require(SessionState.CONVERGED)
        return self.line_list.with_correction(self.total_correction)

    def line_errors(self, all_lines: bool = False) -> List[LineError]:
        """Per-line uncertainty for the fit set (or every line in the list)."""
        calibrated = self.calibrated_list()
        if all_lines:
            lines = list(calibrated)
        else:
            lines = [calibrated[p.list_index] for p in self.fit_set]
        return [estimate_line_error(line, self.fit_state, self.point_spacing) for line in lines]

    def plot_points(self):
        """
        Coordinates for the residual plot.

        Returns (fitted, discarded, band): two (N, 2) arrays of
        (standard wavenumber, scaled residual) and the half-width of the
        rejection band.
        """
        self._require(SessionState.FITTING, SessionState.CONVERGED)

        def points(pairs):
            if not pairs:
                return np.empty((0, 2))
            list_wn, std_wn = self._pair_wavenumbers(pairs)
            diffs = scaled_residuals(list_wn, std_wn, self.fit_state.correction)
            return np.column_stack([std_wn, diffs])

        band = self.discard_limit * self.fit_state.residual_std_dev
        return points(self.fit_set), points(self.discarded_set), band


class CalibrationPipeline:
    def __init__(self, config: CalibrationConfig):
        self.config = config
        self.line_list = None
        self.standard = None
        self.session = None

    def prepare_and_load_lists(self, list_file, standard_file):
        """Loads the uncalibrated and standard writelines files."""
        self.line_list = read_line_list(list_file)
        self.standard = read_line_list(standard_file)
        logger.info(
            "Loaded %d lines from %s and %d standards from %s",
            len(self.line_list),
            list_file,
            len(self.standard),
            standard_file,
        )

    def run(self) -> FitState:
        """Main execution loop for the iterative calibration."""
        if self.line_list is None or self.standard is None:
            raise InvalidStateError("Load line lists first.")

        logger.info("%s\nCALIBRATING: %s\n%s", "=" * 60, self.config.file_root, "=" * 60)
        self.session = CalibrationSession.from_config(
            self.config, self.line_list, self.standard
        )
        state = self.session.run()
        logger.info(
            "Convergence achieved in %d round(s): correction %.6e +/- %.6e (N=%d, %d discarded)",
            self.session.rounds,
            state.correction,
            state.correction_error,
            len(self.session.fit_set),
            len(self.session.discarded_set),
        )
        self.finalize()
        return state

    def output_path(self, suffix):
        return os.path.join(self.config.res_dir, f"{self.config.file_root}{suffix}")

    def finalize(self):
        """Saves the calibrated list, error report, summary and plots."""
        session = self.session
        logger.info("Saving results to %s", self.config.working_dir)
        write_line_list(session.calibrated_list(), self.output_path(".cln"))
        write_calibration_report(
            self.output_path(".cal"),
            session,
            session.line_errors(all_lines=self.config.report_all_lines),
        )
        self.write_summary_file(self.output_path("_summary.txt"))

        if self.config.make_plots:
            fitted, discarded, band = session.plot_points()
            plot_differences(
                fitted,
                discarded,
                band,
                self.config.plot_dir,
                self.config.file_root,
                correction=session.fit_state.correction,
            )

    def write_summary_file(self, filename):
        """Writes a concise diagnostic summary to an ASCII file."""
        session = self.session
        state = session.fit_state
        with open(filename, "w") as f:
            f.write("FTS WAVENUMBER CALIBRATION SUMMARY\n")
            f.write("=" * 40 + "\n")
            f.write(f"Line list:      {self.line_list.name}\n")
            f.write(f"Standard list:  {self.standard.name}\n")
            f.write(f"Generated:      {datetime.datetime.now().isoformat()}\n")
            f.write("-" * 40 + "\n")
            f.write(f"Discriminator:  {session.discriminator:.4f} K\n")
            f.write(f"Min Amplitude:  {session.amplitude_threshold:.2f}\n")
            f.write(f"Discard Limit:  {session.discard_limit:.2f}\n")
            f.write(f"Point Spacing:  {session.point_spacing:.4f} K\n")
            f.write("-" * 40 + "\n")
            f.write(f"Rounds:         {session.rounds}\n")
            f.write(f"Converged:      {session.is_converged()}\n")
            f.write("-" * 40 + "\n")
            f.write(f"Lines in List:  {len(self.line_list)}\n")
            f.write(f"Lines Matched:  {len(session.common_pairs)}\n")
            f.write(f"Lines in Fit:   {len(session.fit_set)}\n")
            f.write(f"Discarded:      {len(session.discarded_set)}\n")
            f.write("-" * 40 + "\n")
            f.write(f"Correction:     {state.correction:.6e} +/- {state.correction_error:.6e}\n")
            f.write(f"Total wavcorr:  {session.total_correction:.6e}\n")
            f.write(f"Mean dSig/Sig:  {state.residual_mean / RESIDUAL_SCALE:.4e}\n")
            f.write(f"StdDev dSig/Sig:{state.residual_std_dev / RESIDUAL_SCALE:.4e}\n")
            f.write(f"StdErr dSig/Sig:{state.residual_std_err / RESIDUAL_SCALE:.4e}\n")
            f.write("=" * 40 + "\n")
        logger.info("Summary saved to: %s", filename)
