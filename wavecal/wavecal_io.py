"""
Wavenumber Calibration Line-List I/O
------------------------------------
Reads and writes line lists in the XGremlin 'writelines' text format and
writes/reads the calibration error report.

writelines files carry four header rows followed by one row per line:
    index wavenumber peak width dmp eqwidth itn H tags
    epstot epsevn epsodd epsran identification wavelength
The values in the file already include the correction given in the first
header row; it is removed on reading and stored as the line correction.
The wavelength column is kept as read and scaled with the correction.
"""

import logging
import os

from astropy.io import ascii
from astropy.table import Table

from .wavecal_core import RESIDUAL_SCALE
from .wavecal_errors import LineListFormatError
from .wavecal_lines import NO_CORRECTION_HEADER, Line, LineList, ListHeader

logger = logging.getLogger(__name__)

HEADER_ROWS = 4
OVERLOAD = "**********"
ID_FIELD_WIDTH = 30
N_NUMERIC_FIELDS = 13

REPORT_COLUMNS = [
    "index",
    "wavenumber",
    "scale_error",
    "std_dev_error",
    "brault_error",
    "total_error",
]


def parse_correction_header(row: str) -> float:
    """Reads the wavenumber correction from the first header row."""
    tokens = row.split()
    if tokens and tokens[0] == "NO":
        return 0.0
    if tokens and tokens[0] == "WAVENUMBER":
        value = row.rsplit("=", 1)[-1] if "=" in row else tokens[-1]
        try:
            return float(value)
        except ValueError:
            pass
    raise LineListFormatError(
        f"Unable to read the wavenumber correction from the header row: {row!r}"
    )


def _read_field(token, name, cast, row_number):
    if token == OVERLOAD:
        logger.warning(
            "%s found in the %s column of row %d. A value of zero has been taken instead.",
            OVERLOAD,
            name,
            row_number,
        )
        return cast(0)
    try:
        return cast(token)
    except ValueError:
        raise LineListFormatError(f"Error reading {name} from row {row_number}: {token!r}")


def parse_line_record(row: str, correction: float = 0.0, row_number: int = 0) -> Line:
    """Creates a Line from one writelines record."""
    parts = row.split(None, N_NUMERIC_FIELDS)
    if len(parts) <= N_NUMERIC_FIELDS:
        raise LineListFormatError(
            f"Row {row_number} has {len(parts)} fields, expected at least {N_NUMERIC_FIELDS + 1}."
        )

    index = _read_field(parts[0], "index", int, row_number)
    wavenumber = _read_field(parts[1], "wavenumber", float, row_number)
    peak = _read_field(parts[2], "peak height", float, row_number)
    width = _read_field(parts[3], "width", float, row_number)
    damping = _read_field(parts[4], "dmp", float, row_number)
    eq_width = _read_field(parts[5], "eqwidth", float, row_number)
    iterations = _read_field(parts[6], "itn", int, row_number)
    hold = _read_field(parts[7], "h", int, row_number)
    tags = parts[8]
    eps = [
        _read_field(parts[9 + k], name, float, row_number)
        for k, name in enumerate(("epstot", "epsevn", "epsodd", "epsran"))
    ]

    # Identification may hold spaces; the wavelength is always the last token
    rest = parts[N_NUMERIC_FIELDS].rsplit(None, 1)
    identifier = rest[0].strip() if len(rest) == 2 else ""
    wavelength = _read_field(rest[-1], "wavelength", float, row_number)

    return Line(
        wavenumber=wavenumber / (1.0 + correction),
        amplitude=peak,
        width=width / (1.0 + correction),
        identifier=identifier,
        correction=correction,
        index=index,
        damping=damping,
        eq_width=eq_width,
        iterations=iterations,
        hold=hold,
        tags=tags,
        eps_total=eps[0],
        eps_even=eps[1],
        eps_odd=eps[2],
        eps_random=eps[3],
        wavelength=wavelength * (1.0 + correction),
    )


def read_line_list(filename) -> LineList:
    """Loads a writelines file into a LineList (order as in the file)."""
    with open(filename, "r") as f:
        rows = f.read().splitlines()

    if len(rows) < HEADER_ROWS:
        raise LineListFormatError(
            f"{filename} has no writelines header. Check the file was written with "
            "XGremlin's 'writelines' command, or insert 4 blank lines at the top of the file."
        )
    header_rows = rows[:HEADER_ROWS]
    correction = 0.0 if not header_rows[0].strip() else parse_correction_header(header_rows[0])
    header = ListHeader(
        correction=correction,
        correction_row=header_rows[0],
        air_row=header_rows[1],
        intensity_row=header_rows[2],
        column_row=header_rows[3],
    )

    lines = []
    for row_number, row in enumerate(rows[HEADER_ROWS:], start=HEADER_ROWS + 1):
        if not row.strip():
            continue
        lines.append(parse_line_record(row, correction, row_number))
    return LineList(lines, header=header, name=os.path.basename(str(filename)))


def format_line_record(line: Line) -> str:
    """One writelines record with the line's correction applied."""
    ident = line.identifier[:ID_FIELD_WIDTH].ljust(ID_FIELD_WIDTH)
    return (
        f"{line.index:6d}  {line.corrected_wavenumber:12.6f}{line.amplitude:10.3e}"
        f"{line.corrected_width:9.2f}{line.damping:9.4f}{line.eq_width:11.4e}"
        f"{line.iterations:6d}{line.hold:4d}{line.tags:>5s}"
        f"{line.eps_total:11.4e}{line.eps_even:11.4e}{line.eps_odd:11.4e}{line.eps_random:11.4e}"
        f" {ident}{line.corrected_wavelength:11.6f}"
    )


def write_line_list(line_list: LineList, filename):
    """Writes a LineList in writelines format."""
    header = line_list.header
    if header.correction != 0.0:
        correction_row = f"  WAVENUMBER CORRECTION APPLIED: wavcorr =   {header.correction:.9e}"
    else:
        correction_row = NO_CORRECTION_HEADER
    with open(filename, "w") as f:
        f.write(f"{correction_row}\n")
        f.write(f"{header.air_row}\n")
        f.write(f"{header.intensity_row}\n")
        f.write(f"{header.column_row}\n")
        for line in line_list:
            f.write(format_line_record(line) + "\n")
    logger.info("Calibrated line list saved to: %s", filename)


def line_errors_table(errors) -> Table:
    """Per-line error decomposition as an astropy Table."""
    return Table(
        rows=[
            (e.index, e.wavenumber, e.scale_error, e.std_dev_error, e.brault_error, e.total_error)
            for e in errors
        ],
        names=REPORT_COLUMNS,
        dtype=[int, float, float, float, float, float],
    )


def write_calibration_report(filename, session, errors):
    """
    Writes the calibration settings, the fit summary and the calibrated
    wavenumber of each line with its error components (all in cm^-1).
    """
    state = session.fit_state
    table = line_errors_table(errors)
    with open(filename, "w") as f:
        f.write(
            f"# Fitted lines from {session.line_list.name} against standards in "
            f"{session.standard.name}\n"
        )
        f.write(f"# Discriminator / K : {session.discriminator:f}\n")
        f.write(f"# Peak Amp Threshold: {session.amplitude_threshold:f}\n")
        f.write(f"# Discard Limit     : {session.discard_limit:f}\n")
        f.write(f"# Point Spacing     : {session.point_spacing:f}\n#\n")
        f.write(f"# Correction factor : {state.correction:e} +/- {state.correction_error:e}\n")
        f.write(f"# Mean fit residual : {state.residual_mean / RESIDUAL_SCALE:e}\n")
        f.write(f"# Residual std dev  : {state.residual_std_dev / RESIDUAL_SCALE:e}\n#\n")
        f.write("#  n  Wavenumber    Scale Error   StdDev Error  Brault Error  Full Error\n")
        for row in table:
            f.write(
                f"{row['index']:4d}  {row['wavenumber']:11.6f}  {row['scale_error']:11.6e}  "
                f"{row['std_dev_error']:11.6e}  {row['brault_error']:11.6e}  "
                f"{row['total_error']:11.6e}\n"
            )
    logger.info("Calibration report saved to: %s", filename)


def read_calibration_report(filename) -> Table:
    """Reads a report written by write_calibration_report."""
    return ascii.read(filename, format="no_header", comment="#", names=REPORT_COLUMNS)
