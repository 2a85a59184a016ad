import matplotlib
import pytest

matplotlib.use("Agg")

from wavecal.wavecal_lines import LineList


@pytest.fixture
def scaled_pair_lists():
    """Two lines scaled by exactly 1.01 plus an unscaled third line."""
    line_list = LineList.from_wavenumbers([100.0, 200.0, 300.0], name="list")
    standard = LineList.from_wavenumbers([101.0, 202.0, 300.0], name="standard")
    return line_list, standard
