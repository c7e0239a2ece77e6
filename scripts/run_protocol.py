"""
Run Induction Optimization and Step-Down Protocol
==================================================

Optimizes the induction bolus and rate for a target effect-site
concentration, then runs the step-down maintenance protocol.

Usage:
    python scripts/run_protocol.py --age 45 --weight 70 --height 170 --sex M --target 1.0
"""

import sys
from pathlib import Path
sys.path.append(str(Path(__file__).parent.parent))

import argparse

from remimazolam_tci import PatientParameters, TCISession
from remimazolam_tci.utils.config import EngineConfig, load_config
from remimazolam_tci.utils.diagnostics import CompositeSink, LoggingSink, RecordingSink
from remimazolam_tci.utils.logger import setup_logging, log_config, get_logger, SimulationLogger


def main():
    parser = argparse.ArgumentParser(description='Remimazolam TCI induction and step-down protocol')
    parser.add_argument('--age', type=float, default=45, help='Age in years (default: 45)')
    parser.add_argument('--weight', type=float, default=70, help='Weight in kg (default: 70)')
    parser.add_argument('--height', type=float, default=170, help='Height in cm (default: 170)')
    parser.add_argument('--sex', type=str, default='M', choices=['M', 'F'], help='Sex (default: M)')
    parser.add_argument('--asa', type=int, default=0, choices=[0, 1],
                        help='ASA class: 0 = I-II, 1 = III-IV (default: 0)')
    parser.add_argument('--target', type=float, default=1.0,
                        help='Target effect-site concentration in μg/mL (default: 1.0)')
    parser.add_argument('--target_time', type=float, default=None,
                        help='Time to reach the target in min (default: from config)')
    parser.add_argument('--bolus', type=float, default=None,
                        help='Induction bolus in mg (default: category recommendation)')
    parser.add_argument('--config', type=str, default=None,
                        help='Path to engine YAML config (default: config/engine.yaml)')
    parser.add_argument('--log_dir', type=str, default=None,
                        help='Directory for run logs and CSV summaries')
    parser.add_argument('--log_level', type=str, default='INFO',
                        help='Logging level (default: INFO)')

    args = parser.parse_args()
    setup_logging(log_dir=args.log_dir, log_level=args.log_level, run_name='protocol')
    logger = get_logger('run_protocol')

    raw_config = load_config(config_path=args.config)
    config = EngineConfig.from_dict(raw_config)
    log_config(logger, config.to_dict(), "Engine configuration")

    patient = PatientParameters(age=args.age, weight=args.weight, height=args.height,
                                sex=args.sex, asa_ps=args.asa)
    recorder = RecordingSink()
    sink = CompositeSink(recorder, LoggingSink(logger))
    sim_logger = SimulationLogger(args.log_dir) if args.log_dir else None

    session = TCISession(patient, config=config, sink=sink, sim_logger=sim_logger)
    plan = session.run_complete_optimization(args.target, args.target_time, args.bolus)
    optimization = plan.optimization

    print("=" * 70)
    print(f"Patient: {patient.to_dict()}")
    print(f"ke0: {session.ke0:.6f} /min ({session.ke0_result.method.value})")
    print("=" * 70)
    print(f"Bolus: {optimization.bolus:.2f} mg")
    print(f"Rate: {optimization.rate:.3f} mg/kg/hr")
    print(f"Predicted Ce at {optimization.target_time:.0f} min: {optimization.predicted_ce:.4f} μg/mL "
          f"({optimization.relative_error * 100:.2f}% error, converged: {optimization.converged})")
    for warning in optimization.warnings:
        print(f"WARNING: {warning}")

    if plan.protocol is not None:
        performance = plan.protocol.performance
        print("\nSchedule:")
        for entry in plan.schedule:
            print(f"  {entry.time:6.1f} min  {entry.description}")
        print("\nMaintenance performance:")
        print(f"  Final Ce: {performance.final_ce:.3f} μg/mL")
        print(f"  Max Ce: {performance.max_ce:.3f} μg/mL")
        print(f"  Average deviation: {performance.avg_deviation:.3f} μg/mL")
        print(f"  Within ±10%: {performance.target_accuracy:.1f}%")
        print(f"  MDPE: {performance.mdpe:.2f}%  MDAPE: {performance.mdape:.2f}%  "
              f"Wobble: {performance.wobble:.2f}%")

    print(f"\nDiagnostics: {recorder.summary()}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
