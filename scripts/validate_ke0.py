"""
Validate ke0 over the Reference Patient Battery
================================================

Computes exact and regression ke0 for each reference patient and reports
band membership and agreement between the two methods.

Usage:
    python scripts/validate_ke0.py --band wide --tolerance 0.15
"""

import sys
from pathlib import Path
sys.path.append(str(Path(__file__).parent.parent))

import argparse

from remimazolam_tci.utils.config import EngineConfig, load_config, WIDE_KE0_BAND
from remimazolam_tci.utils.diagnostics import RecordingSink
from remimazolam_tci.utils.logger import setup_logging
from remimazolam_tci.validation import validate_reference_battery, AGREEMENT_TOLERANCE


def main():
    parser = argparse.ArgumentParser(description='Validate ke0 over reference patients')
    parser.add_argument('--config', type=str, default=None,
                        help='Path to engine YAML config (default: config/engine.yaml)')
    parser.add_argument('--band', choices=['default', 'wide'], default='default',
                        help='Safe ke0 band (default: 0.05-0.5 /min)')
    parser.add_argument('--tolerance', type=float, default=AGREEMENT_TOLERANCE,
                        help='Accepted relative difference between methods (default: 0.15)')
    parser.add_argument('--log_level', type=str, default='INFO',
                        help='Logging level (default: INFO)')

    args = parser.parse_args()
    setup_logging(log_level=args.log_level)

    config = EngineConfig.from_dict(load_config(config_path=args.config))
    if args.band == 'wide':
        config.ke0.safe_band = WIDE_KE0_BAND
        config.ke0.validation_band = WIDE_KE0_BAND

    sink = RecordingSink()
    entries = validate_reference_battery(
        config=config.ke0, sink=sink, tolerance=args.tolerance, progress=True
    )

    print("=" * 78)
    print(f"{'Patient':<24} {'Exact':>10} {'Regression':>11} {'Diff %':>8} {'Method':>11}  Result")
    print("=" * 78)
    for entry in entries:
        exact = f"{entry.exact:.6f}" if entry.exact is not None else "n/a"
        diff = f"{entry.relative_difference * 100:.2f}" if entry.relative_difference is not None else "n/a"
        status = "PASS" if entry.passed else "FAIL"
        print(f"{entry.name:<24} {exact:>10} {entry.regression:>11.6f} {diff:>8} "
              f"{entry.method.value:>11}  {status}")
    print("=" * 78)

    failed = [entry for entry in entries if not entry.passed]
    print(f"Passed: {len(entries) - len(failed)}/{len(entries)}")
    print(f"Diagnostics: {sink.summary()}")
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
