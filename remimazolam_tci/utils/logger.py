"""
Logging Utilities for the Remimazolam TCI Engine
=================================================

Provides consistent logging across the engine with coloured console output
and optional file handlers.

Usage:
------
    from remimazolam_tci.utils.logger import get_logger

    logger = get_logger(__name__)
    logger.info("Simulation started")
    logger.debug("State: %s", state)
    logger.warning("ke0 fell back to regression: %.4f", ke0)

Features:
---------
- Colored console output
- Run log and error log files
- Configurable log levels
- Simulation/optimization summary logger with CSV records
"""

import logging
import sys
from pathlib import Path
from typing import Optional
from datetime import datetime
import colorlog


# Default log format
DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
COLOR_FORMAT = '%(log_color)s%(levelname)-8s%(reset)s %(blue)s%(name)s%(reset)s - %(message)s'

# Log colors
LOG_COLORS = {
    'DEBUG': 'cyan',
    'INFO': 'green',
    'WARNING': 'yellow',
    'ERROR': 'red',
    'CRITICAL': 'red,bg_white',
}


def setup_logging(
    log_dir: Optional[Path] = None,
    log_level: str = 'INFO',
    run_name: Optional[str] = None
) -> None:
    """
    Setup global logging configuration.

    Args:
        log_dir: Directory for log files. If None, only console logging is enabled.
        log_level: Logging level ('DEBUG', 'INFO', 'WARNING', 'ERROR')
        run_name: Name of the run for log file naming

    Example:
        >>> setup_logging(log_dir=Path('logs/run1'), log_level='DEBUG')
    """
    level = getattr(logging, log_level.upper())

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    # Console handler with colors
    console_handler = colorlog.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_formatter = colorlog.ColoredFormatter(
        COLOR_FORMAT,
        log_colors=LOG_COLORS,
        reset=True,
        style='%'
    )
    console_handler.setFormatter(console_formatter)
    root_logger.addHandler(console_handler)

    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)

        if run_name:
            log_file = log_dir / f"{run_name}.log"
        else:
            timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
            log_file = log_dir / f"tci_{timestamp}.log"

        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_formatter = logging.Formatter(DEFAULT_FORMAT)
        file_handler.setFormatter(file_formatter)
        root_logger.addHandler(file_handler)

        # Errors and critical only
        error_handler = logging.FileHandler(log_dir / "errors.log")
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(file_formatter)
        root_logger.addHandler(error_handler)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a module.

    Args:
        name: Logger name (typically __name__ of the module)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


class SimulationLogger:
    """
    Summary logger for simulation and optimization runs.

    Writes one console line per run and appends a CSV row to the log
    directory so that a batch of runs can be reviewed afterwards.

    Example:
        >>> sim_logger = SimulationLogger(log_dir='logs/run1')
        >>> sim_logger.log_simulation(duration=120, max_cp=2.1, max_ce=1.4, method='adams')
        >>> sim_logger.log_optimization(target=1.0, bolus=5.0, rate=1.1,
        ...                             predicted=0.98, relative_error=2.0, converged=True)
    """

    def __init__(self, log_dir: Path, run_name: str = "tci"):
        """
        Initialize the simulation logger.

        Args:
            log_dir: Directory for CSV files
            run_name: Name used for the logger hierarchy
        """
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self.logger = get_logger(f"{__name__}.{run_name}")

        self.simulation_log = self.log_dir / "simulations.csv"
        self.optimization_log = self.log_dir / "optimizations.csv"

        if not self.simulation_log.exists():
            with open(self.simulation_log, 'w') as f:
                f.write("timestamp,duration,max_cp,max_ce,method,steps,rejected\n")

        if not self.optimization_log.exists():
            with open(self.optimization_log, 'w') as f:
                f.write("timestamp,target,bolus,rate,predicted,relative_error,converged,evaluations\n")

    def log_simulation(
        self,
        duration: float,
        max_cp: float,
        max_ce: float,
        method: str,
        steps: int = 0,
        rejected: int = 0
    ) -> None:
        """Log a monitoring simulation summary."""
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')

        self.logger.info(
            f"Simulation {duration:6.1f} min | Cp max: {max_cp:6.3f} μg/mL | "
            f"Ce max: {max_ce:6.3f} μg/mL | Method: {method} | Steps: {steps}"
        )

        with open(self.simulation_log, 'a') as f:
            f.write(f"{timestamp},{duration:.2f},{max_cp:.6f},{max_ce:.6f},"
                    f"{method},{steps},{rejected}\n")

    def log_optimization(
        self,
        target: float,
        bolus: float,
        rate: float,
        predicted: float,
        relative_error: float,
        converged: bool,
        evaluations: int = 0
    ) -> None:
        """Log a dose optimization summary."""
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')

        self.logger.info(
            f"Target {target:5.2f} μg/mL | Bolus: {bolus:5.2f} mg | "
            f"Rate: {rate:6.3f} mg/kg/hr | Predicted: {predicted:6.4f} | "
            f"Error: {relative_error:5.2f}% | Converged: {'yes' if converged else 'no'}"
        )

        with open(self.optimization_log, 'a') as f:
            f.write(f"{timestamp},{target:.4f},{bolus:.4f},{rate:.6f},{predicted:.6f},"
                    f"{relative_error:.4f},{int(converged)},{evaluations}\n")

    def log_phase(self, phase: str, message: str) -> None:
        """
        Log run phase transitions.

        Args:
            phase: Phase name ('Induction', 'Maintenance', 'Step-down')
            message: Phase message
        """
        separator = "=" * 70
        self.logger.info(separator)
        self.logger.info(f"{phase}: {message}")
        self.logger.info(separator)


def log_config(logger: logging.Logger, config: dict, config_name: str = "Configuration") -> None:
    """
    Log configuration dictionary in a readable format.

    Args:
        logger: Logger instance
        config: Configuration dictionary
        config_name: Name for the configuration section
    """
    logger.info(f"{config_name}:")

    def log_dict(d: dict, indent: int = 2):
        for key, value in d.items():
            if isinstance(value, dict):
                logger.info(f"{' ' * indent}{key}:")
                log_dict(value, indent + 2)
            else:
                logger.info(f"{' ' * indent}{key}: {value}")

    log_dict(config)
