"""
Wavenumber Calibration Plotting Module
--------------------------------------
Residual plot of the fitted and discarded lines with the rejection band.
"""

import os

import matplotlib.pyplot as plt
import numpy as np

from .wavecal_core import RESIDUAL_SCALE


def plot_differences(fitted, discarded, band, output_dir, label, correction=0.0):
    """
    Plots dSig/Sig x 1e6 against standard wavenumber.

    `fitted` and `discarded` are (N, 2) arrays of (wavenumber, residual);
    `band` is the half-width of the discard band. Returns the output path.
    """
    fitted = np.asarray(fitted, dtype=float).reshape(-1, 2)
    discarded = np.asarray(discarded, dtype=float).reshape(-1, 2)

    fig, ax = plt.subplots(figsize=(10, 5))
    ax.plot(
        fitted[:, 0],
        fitted[:, 1],
        "o",
        color="#0000FF",
        ms=4,
        label=f"Fitted Lines ({len(fitted)})",
    )
    if len(discarded) > 0:
        ax.plot(
            discarded[:, 0],
            discarded[:, 1],
            "o",
            color="#FF0000",
            ms=4,
            label=f"Discarded Lines ({len(discarded)})",
        )
    ax.axhline(band, color="#909090", linestyle=":", linewidth=0.8)
    ax.axhline(-band, color="#909090", linestyle=":", linewidth=0.8)
    ax.axhline(0, color="k", linestyle="-", alpha=0.3, linewidth=0.8)

    ax.set_xlabel(r"Line Wavenumber (cm$^{-1}$)", fontsize=12)
    ax.set_ylabel(rf"$\Delta\sigma/\sigma$ $\times$ {RESIDUAL_SCALE:.0e}", fontsize=12)
    ax.set_title(f"{label}: correction = {correction:.3e}", fontsize=12)
    ax.grid(True, alpha=0.2, linestyle=":")
    ax.legend(loc="best", frameon=True)

    out_file = os.path.join(output_dir, f"{label}_residuals.pdf")
    plt.savefig(out_file, bbox_inches="tight")
    plt.close(fig)
    return out_file
