"""
Wavenumber Calibration Line Model
---------------------------------
Value types shared by the matcher, the fitter and the line-list I/O:

- Line: one fitted emission line. The stored wavenumber and width are the
  uncorrected values; the correction factor is applied on access.
- LineList: the owning container of Lines plus the header carried with them.
- LinePair: a match between two LineLists, stored as indices.
"""

from dataclasses import dataclass, replace
from typing import Iterator, List, NamedTuple, Optional, Sequence

import numpy as np

from .wavecal_errors import NegativeValueError

# Spacing between spectrum data points (cm^-1) used by the Brault estimate
DEFAULT_POINT_SPACING = 0.03

NO_CORRECTION_HEADER = "  NO WAVENUMBER CORRECTION APPLIED"
AIR_HEADER = "  NO AIR CORRECTION APPLIED"
INTENSITY_HEADER = "  NO INTENSITY CALIBRATION APPLIED"
COLUMN_HEADER = (
    "  line    wavenumber      peak    width      dmp     eq width   itn   H tags"
    "     epstot     epsevn     epsodd     epsran  identification              "
    "   wavelength"
)


@dataclass(frozen=True)
class Line:
    """A spectral line. `wavenumber` and `width` are uncorrected."""

    wavenumber: float
    amplitude: float
    width: float
    identifier: str = ""
    correction: float = 0.0
    index: int = 0
    damping: float = 0.0
    eq_width: float = 0.0
    iterations: int = 0
    hold: int = 0
    tags: str = "."
    eps_total: float = 0.0
    eps_even: float = 0.0
    eps_odd: float = 0.0
    eps_random: float = 0.0
    # Stored without the correction, like wavenumber and width
    wavelength: float = 0.0

    def __post_init__(self):
        for name in ("wavenumber", "amplitude", "width", "wavelength"):
            if getattr(self, name) < 0.0:
                raise NegativeValueError(name, getattr(self, name))

    @property
    def corrected_wavenumber(self) -> float:
        return self.wavenumber * (1.0 + self.correction)

    @property
    def corrected_width(self) -> float:
        return self.width * (1.0 + self.correction)

    @property
    def corrected_wavelength(self) -> float:
        """Wavelength (nm) as listed, scaled inversely to the wavenumber."""
        return self.wavelength / (1.0 + self.correction)

    def with_correction(self, correction: float) -> "Line":
        return replace(self, correction=correction)

    def centroid_error(self, point_spacing: float = DEFAULT_POINT_SPACING) -> float:
        """
        Brault estimate of the centroid uncertainty (cm^-1).

        Uses the stored width (mK), so the number of points across the line
        is width / (1000 * point_spacing).
        """
        width = self.width
        if width == 0.0:
            return 0.0
        points_in_fwhm = width / (1000.0 * point_spacing)
        with np.errstate(divide="ignore"):
            return float(np.divide(width, 1000.0 * np.sqrt(points_in_fwhm) * self.amplitude))


@dataclass(frozen=True)
class ListHeader:
    """The four header rows of a writelines file."""

    correction: float = 0.0
    correction_row: str = NO_CORRECTION_HEADER
    air_row: str = AIR_HEADER
    intensity_row: str = INTENSITY_HEADER
    column_row: str = COLUMN_HEADER


class LinePair(NamedTuple):
    """Indices of a matched line in the uncalibrated and standard lists."""

    list_index: int
    standard_index: int


class LineList:
    """
    Ordered, owning sequence of Lines (ascending corrected wavenumber).

    The order is the producer's responsibility; it is never re-sorted here.
    """

    def __init__(
        self,
        lines: Sequence[Line] = (),
        header: Optional[ListHeader] = None,
        name: str = "",
    ):
        self._lines: List[Line] = list(lines)
        self.header = header if header is not None else ListHeader()
        self.name = name

    def __len__(self) -> int:
        return len(self._lines)

    def __getitem__(self, idx):
        return self._lines[idx]

    def __iter__(self) -> Iterator[Line]:
        return iter(self._lines)

    def __repr__(self) -> str:
        return f"LineList(name={self.name!r}, n_lines={len(self)})"

    @classmethod
    def from_wavenumbers(cls, wavenumbers, amplitude=100.0, width=30.0, name=""):
        """Builds a list of identical-shape lines, mostly for tests and scripts."""
        lines = [
            Line(
                wavenumber=float(wn),
                amplitude=amplitude,
                width=width,
                index=i + 1,
                wavelength=1.0e7 / wn if wn > 0.0 else 0.0,
            )
            for i, wn in enumerate(wavenumbers)
        ]
        return cls(lines, name=name)

    @property
    def wavenumbers(self) -> np.ndarray:
        return np.array([line.corrected_wavenumber for line in self._lines], dtype=float)

    def with_correction(self, correction: float) -> "LineList":
        """Copy with every line (and the header) carrying `correction`."""
        header = replace(self.header, correction=correction)
        return LineList(
            [line.with_correction(correction) for line in self._lines],
            header=header,
            name=self.name,
        )
