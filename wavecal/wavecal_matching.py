"""
Wavenumber Calibration Line Matching
------------------------------------
Pairs lines of an uncalibrated list with lines of a standard list.

Both lists must already be sorted by ascending corrected wavenumber. The
match is a greedy two-pointer merge: the first standard line inside the
discriminator of a list line is taken, and each line is used at most once.
"""

import logging
from typing import Dict, List, Tuple

from .wavecal_errors import NoDataError, NoOverlapError
from .wavecal_lines import LineList, LinePair

logger = logging.getLogger(__name__)


def find_common_lines(
    line_list: LineList,
    standard: LineList,
    discriminator: float,
) -> Tuple[List[LinePair], Dict]:
    """
    Merge both lists and return the matched pairs.

    Returns
    -------
    pairs : list of LinePair
        Index pairs into `line_list` and `standard`, in ascending order.
    info : dict
        Match statistics: n_matches, n_unmatched_list, n_unmatched_standard.
    """
    if len(line_list) == 0 or len(standard) == 0:
        raise NoDataError("Both the line list and the standard list must contain lines.")

    list_wn = line_list.wavenumbers
    std_wn = standard.wavenumbers

    pairs = []
    n_unmatched_list = 0
    n_unmatched_std = 0
    i = j = 0
    while i < len(list_wn) and j < len(std_wn):
        diff = std_wn[j] - list_wn[i]
        if abs(diff) < discriminator:
            pairs.append(LinePair(i, j))
            i += 1
            j += 1
        elif std_wn[j] < list_wn[i]:
            logger.debug(
                "Reference line %d (%.6f K) is absent from the experiment.",
                standard[j].index,
                std_wn[j],
            )
            n_unmatched_std += 1
            j += 1
        else:
            n_unmatched_list += 1
            i += 1

    if not pairs:
        raise NoOverlapError(
            "No common lines were found between the experimental and reference line lists."
        )

    info = {
        "n_matches": len(pairs),
        "n_unmatched_list": n_unmatched_list + (len(list_wn) - i),
        "n_unmatched_standard": n_unmatched_std + (len(std_wn) - j),
    }
    logger.info(
        "Matched %d lines (discriminator %.4f K); %d list and %d standard lines unmatched.",
        info["n_matches"],
        discriminator,
        info["n_unmatched_list"],
        info["n_unmatched_standard"],
    )
    return pairs, info
