"""
FTS Line List Calibration Script
================================
Calibrates the wavenumbers of an XGremlin writelines line list against a
list of standard lines.

Usage:
    python -m wavecal.run_calibration <list> <standards> <output root>
        [--discriminator K] [--threshold AMP] [--discard-limit N]
        [--spacing K] [--config config.yml]

Outputs (in <working dir>/results):
    <root>.cln          calibrated line list (writelines format)
    <root>.cal          per-line calibrated wavenumbers and errors
    <root>_summary.txt  fit summary
"""

import argparse
import logging
import os
import sys

from . import __version__
from .wavecal_errors import CalibrationError
from .wavecal_pipeline import (
    DEFAULT_AMPLITUDE_THRESHOLD,
    DEFAULT_DISCARD_LIMIT,
    DEFAULT_DISCRIMINATOR,
    CalibrationConfig,
    CalibrationPipeline,
    load_config,
)
from .wavecal_lines import DEFAULT_POINT_SPACING

logger = logging.getLogger("wavecal")


def build_parser():
    parser = argparse.ArgumentParser(
        description="Calibrates the wavenumbers of lines saved in an XGremlin ASCII (writelines) line list."
    )
    parser.add_argument("list_file", help="Line list to be calibrated (writelines format)")
    parser.add_argument("standard_file", help="Line list of calibration standards")
    parser.add_argument("output", help="Root name of the calibrated outputs")
    parser.add_argument(
        "--discriminator",
        type=float,
        default=None,
        help=f"Max wavenumber difference (cm^-1) when matching lines [{DEFAULT_DISCRIMINATOR}]",
    )
    parser.add_argument(
        "--threshold",
        type=float,
        default=None,
        help=f"Minimum line amplitude (S/N) used in the fit [{DEFAULT_AMPLITUDE_THRESHOLD}]",
    )
    parser.add_argument(
        "--discard-limit",
        type=float,
        default=None,
        help=f"Discard lines beyond this many residual std devs [{DEFAULT_DISCARD_LIMIT}]",
    )
    parser.add_argument(
        "--spacing",
        type=float,
        default=None,
        help=f"Separation of spectrum data points in cm^-1 [{DEFAULT_POINT_SPACING}]",
    )
    parser.add_argument("--config", default=None, help="YAML file with calibration settings")
    parser.add_argument("--working-dir", default=None, help="Output directory [output dir]")
    parser.add_argument("--all-lines", action="store_true", help="Report errors for every line")
    parser.add_argument("--no-plot", action="store_true", help="Skip the residual plot")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def config_from_args(args) -> CalibrationConfig:
    """CLI flags override the YAML settings, which override the defaults."""
    settings = load_config(args.config) if args.config else {}

    overrides = {
        "discriminator": args.discriminator,
        "amplitude_threshold": args.threshold,
        "discard_limit": args.discard_limit,
        "point_spacing": args.spacing,
        "working_dir": args.working_dir,
    }
    settings.update({k: v for k, v in overrides.items() if v is not None})
    if args.all_lines:
        settings["report_all_lines"] = True
    if args.no_plot:
        settings["make_plots"] = False

    settings.setdefault("working_dir", os.path.dirname(os.path.abspath(args.output)))
    settings["file_root"] = os.path.basename(args.output)
    return CalibrationConfig(**settings)


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(message)s",
    )

    print(f"FTS Line List Calibrator v{__version__}\n")
    try:
        config = config_from_args(args)
        print(f"Line list to be calibrated: {args.list_file}")
        print(f"Calibration standard list : {args.standard_file}")
        print(f"Discriminator             : {config.discriminator}")
        print(f"Minimum line amplitude    : {config.amplitude_threshold}")
        print(f"Discard beyond x Std Dev  : {config.discard_limit}")
        print(f"Calibrated list saved to  : {config.res_dir}")

        pipeline = CalibrationPipeline(config)
        pipeline.prepare_and_load_lists(args.list_file, args.standard_file)
        state = pipeline.run()
    except CalibrationError as e:
        logger.error("Calibration FAILED: %s", e)
        return 1

    print("-" * 50)
    print(f"Optimal dSig/Sig : {state.correction:.6e} +/- {state.correction_error:.6e}")
    print("-" * 50)
    return 0


if __name__ == "__main__":
    sys.exit(main())
