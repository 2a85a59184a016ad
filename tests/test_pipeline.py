import dataclasses

import numpy as np
import pytest

from wavecal.wavecal_errors import (
    InsufficientLinesError,
    InvalidStateError,
    NegativeValueError,
    NoDataError,
    NoOverlapError,
    SolverDivergenceError,
)
from wavecal.wavecal_core import WavenumberFitter
from wavecal.wavecal_lines import Line, LineList
from wavecal.wavecal_pipeline import CalibrationConfig, CalibrationSession, SessionState


def _session(line_list, standard, **kwargs):
    kwargs.setdefault("discriminator", 5.0)
    kwargs.setdefault("amplitude_threshold", 0.0)
    return CalibrationSession(line_list, standard, **kwargs)


@pytest.mark.parametrize("discard_limit", [0.0, 1.0, 2.0, 10.0])
def test_exact_scale_discards_nothing(discard_limit):
    line_list = LineList.from_wavenumbers([100.0, 200.0])
    standard = LineList.from_wavenumbers([101.0, 202.0])
    session = _session(line_list, standard, discard_limit=discard_limit)

    state = session.run()

    assert state.correction == pytest.approx(0.01, abs=1e-12)
    assert state.residual_std_dev == 0.0
    assert session.discarded_set == []
    assert session.rounds == 1
    assert session.is_converged()


def test_outlier_is_discarded_and_refit_converges(scaled_pair_lists):
    line_list, standard = scaled_pair_lists
    session = _session(line_list, standard, discard_limit=1.0)
    session.match()
    session.select_fit_set()

    assert session.fit() == 1
    first_correction = session.fit_state.correction
    assert first_correction != pytest.approx(0.01, abs=1e-4)
    assert [p.list_index for p in session.discarded_set] == [2]
    assert not session.is_converged()

    assert session.fit() == 0
    assert session.is_converged()
    assert session.rounds == 2
    assert session.fit_state.correction == pytest.approx(0.01, abs=1e-12)
    assert session.fit_state.residual_std_dev == 0.0
    assert session.history["n_fitted"] == [3, 2]


def test_three_pairs_never_exceed_two_sigma(scaled_pair_lists):
    # Population std dev bounds any of n residuals to sqrt(n - 1) sigma
    line_list, standard = scaled_pair_lists
    session = _session(line_list, standard, discard_limit=2.0)

    session.run()

    assert session.rounds == 1
    assert session.discarded_set == []


def test_outlier_rejected_at_two_sigma_with_more_lines():
    wavenumbers = [100.0, 200.0, 400.0, 800.0, 1600.0, 3200.0]
    line_list = LineList.from_wavenumbers(wavenumbers + [5000.0])
    standard = LineList.from_wavenumbers([wn * 1.01 for wn in wavenumbers] + [5000.0])
    session = _session(line_list, standard, discriminator=50.0, discard_limit=2.0)

    state = session.run()

    assert session.rounds == 2
    assert [p.list_index for p in session.discarded_set] == [6]
    assert len(session.fit_set) == 6
    assert state.correction == pytest.approx(0.01, abs=1e-12)


def test_reject_step_requires_a_refit_first(scaled_pair_lists):
    line_list, standard = scaled_pair_lists
    session = _session(line_list, standard, discard_limit=1.0)
    session.match()
    session.select_fit_set()
    assert session.fit() == 1

    with pytest.raises(InvalidStateError):
        session.reject_outliers()
    assert not session.is_converged()

    assert session.fit() == 0
    assert session.fit_state.n_fitted == len(session.fit_set) == 2
    assert session.fit_state.correction == pytest.approx(0.01, abs=1e-12)
    assert session.best_correction == session.fit_state.correction


def test_converged_session_is_a_fixed_point(scaled_pair_lists):
    line_list, standard = scaled_pair_lists
    session = _session(line_list, standard, discard_limit=1.0)
    session.run()
    before = dataclasses.asdict(session.fit_state)
    fit_set = list(session.fit_set)

    assert session.reject_outliers() == 0
    assert session.fit() == 0
    assert dataclasses.asdict(session.fit_state) == before
    assert session.fit_set == fit_set
    assert session.rounds == 2


def test_scatter_with_outliers_terminates():
    rng = np.random.default_rng(5)
    std_wn = np.linspace(10000.0, 40000.0, 60)
    noise = rng.normal(0.0, 3e-8, std_wn.size)
    noise[[10, 30, 50]] = 2e-6
    list_wn = std_wn * (1.0 - 3e-6) * (1.0 + noise)
    session = _session(
        LineList.from_wavenumbers(list_wn),
        LineList.from_wavenumbers(std_wn),
        discriminator=1.0,
        discard_limit=2.0,
    )

    session.run()

    assert session.is_converged()
    assert {10, 30, 50} <= {p.list_index for p in session.discarded_set}
    assert len(session.fit_set) + len(session.discarded_set) == 60
    assert session.history["n_fitted"] == sorted(session.history["n_fitted"], reverse=True)
    assert session.fit_state.correction == pytest.approx(3e-6, abs=2e-8)


def test_steps_out_of_order_raise(scaled_pair_lists):
    line_list, standard = scaled_pair_lists
    session = _session(line_list, standard)

    with pytest.raises(InvalidStateError):
        session.fit()
    with pytest.raises(InvalidStateError):
        session.select_fit_set()
    with pytest.raises(InvalidStateError):
        session.calibrated_list()

    session.match()
    with pytest.raises(InvalidStateError):
        session.match()
    with pytest.raises(InvalidStateError):
        session.fit()
    with pytest.raises(InvalidStateError):
        session.reject_outliers()


def test_reset_clears_derived_state(scaled_pair_lists):
    line_list, standard = scaled_pair_lists
    session = _session(line_list, standard, discard_limit=1.0, initial_correction=1e-3)
    session.run()

    session.reset()

    assert session.state is SessionState.CREATED
    assert session.common_pairs == []
    assert session.fit_set == []
    assert session.discarded_set == []
    assert session.fit_state.correction == 1e-3
    session.run()
    assert session.is_converged()


def test_amplitude_threshold_selects_fit_set():
    lines = [
        Line(wavenumber=wn, amplitude=amp, width=30.0, index=i + 1)
        for i, (wn, amp) in enumerate([(100.0, 80.0), (200.0, 10.0), (400.0, 60.0)])
    ]
    standard = LineList.from_wavenumbers([101.0, 202.0, 404.0])
    session = _session(LineList(lines), standard, amplitude_threshold=50.0)
    session.match()

    fit_set = session.select_fit_set()

    assert len(session.common_pairs) == 3
    assert [p.list_index for p in fit_set] == [0, 2]


def test_empty_fit_set_raises_insufficient_lines(scaled_pair_lists):
    line_list, standard = scaled_pair_lists
    session = _session(line_list, standard, amplitude_threshold=1000.0)
    session.match()
    session.select_fit_set()

    with pytest.raises(InsufficientLinesError):
        session.fit()


def test_single_pair_is_too_few_to_fit():
    session = _session(LineList.from_wavenumbers([100.0]), LineList.from_wavenumbers([101.0]))
    with pytest.raises(NoDataError):
        session.run()


def test_match_errors_propagate():
    with pytest.raises(NoDataError):
        _session(LineList.from_wavenumbers([10.0]), LineList()).match()
    with pytest.raises(NoOverlapError):
        _session(
            LineList.from_wavenumbers([10.0, 20.0]),
            LineList.from_wavenumbers([40.0, 50.0]),
        ).match()


def test_negative_settings_are_rejected(scaled_pair_lists, tmp_path):
    line_list, standard = scaled_pair_lists
    with pytest.raises(NegativeValueError) as exc:
        CalibrationSession(line_list, standard, discard_limit=-1.0)
    assert exc.value.field == "discard_limit"
    with pytest.raises(NegativeValueError):
        CalibrationConfig(working_dir=str(tmp_path), file_root="x", point_spacing=-0.01)


def test_round_cap_reports_best_correction(scaled_pair_lists):
    line_list, standard = scaled_pair_lists
    session = _session(line_list, standard, discard_limit=1.0, max_rounds=1)

    with pytest.raises(SolverDivergenceError) as exc:
        session.run()
    assert exc.value.best_correction == session.fit_state.correction
    assert exc.value.iterations == 1
    assert session.best_correction == exc.value.best_correction


class StallingFitter(WavenumberFitter):
    def fit(self, list_wn, std_wn, initial_correction=0.0):
        raise SolverDivergenceError("stalled", best_correction=0.0099, iterations=500)


def test_solver_divergence_keeps_best_correction_on_session(scaled_pair_lists):
    line_list, standard = scaled_pair_lists
    session = _session(line_list, standard, fitter=StallingFitter())

    with pytest.raises(SolverDivergenceError):
        session.run()

    assert session.best_correction == 0.0099
    assert session.rounds == 0
    session.reset()
    assert session.best_correction is None


def test_calibrated_list_and_errors(scaled_pair_lists):
    line_list, standard = scaled_pair_lists
    session = _session(line_list, standard, discard_limit=1.0, point_spacing=0.03)
    session.run()

    calibrated = session.calibrated_list()
    assert list(calibrated.wavenumbers) == pytest.approx([101.0, 202.0, 303.0])

    errors = session.line_errors()
    assert [e.index for e in errors] == [1, 2]
    assert errors[0].wavenumber == pytest.approx(101.0)
    assert all(e.total_error == max(e.global_error, e.centroid_total_error) for e in errors)
    assert len(session.line_errors(all_lines=True)) == 3


def test_total_correction_composes_with_applied_correction():
    line_list = LineList.from_wavenumbers([100.0, 200.0]).with_correction(0.005)
    standard = LineList.from_wavenumbers([101.0, 202.0])
    session = _session(line_list, standard)
    session.run()

    assert list(session.calibrated_list().wavenumbers) == pytest.approx([101.0, 202.0])
    assert session.total_correction == pytest.approx(0.01, abs=1e-12)


def test_plot_points(scaled_pair_lists):
    line_list, standard = scaled_pair_lists
    session = _session(line_list, standard, discard_limit=1.0)
    session.run()

    fitted, discarded, band = session.plot_points()

    assert fitted.shape == (2, 2)
    assert discarded.shape == (1, 2)
    assert list(fitted[:, 0]) == [101.0, 202.0]
    assert discarded[0, 0] == 300.0
    assert discarded[0, 1] == pytest.approx(1e4, rel=1e-6)
    assert band == 0.0
