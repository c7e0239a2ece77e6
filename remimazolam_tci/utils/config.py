"""
Engine Configuration
====================

Typed defaults for every tunable of the engine, plus the YAML loader.

Configuration is always handed to the engine explicitly; nothing is read
from the environment at runtime.

Usage:
------
    from remimazolam_tci.utils.config import EngineConfig, load_config

    config = EngineConfig.from_dict(load_config(config_path='config/engine.yaml'))
    config.integrator.rtol
"""

import sys
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from .exceptions import ConfigurationError


# Two safe ke0 bands appear in the model's validation material. The narrow
# band is the default; the wide band is available for research use.
DEFAULT_KE0_BAND: Tuple[float, float] = (0.05, 0.5)
WIDE_KE0_BAND: Tuple[float, float] = (0.01, 1.0)

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent / 'config' / 'engine.yaml'


@dataclass
class Ke0SolverConfig:
    """
    Settings for the exact and regression ke0 computation.

    Attributes:
        t_peak: Time to peak effect-site concentration after a bolus (min)
        safe_band: Band a reconciled ke0 must fall in (1/min)
        validation_band: Band an exact root must fall in to be accepted (1/min)
        singular_threshold: |ke0 - λ| below which the Taylor substitute is used
        stable_threshold: |ke0 - λ| below which expm1 evaluation is used
        newton_iterations: Newton refinements of the initial guess
        brent_half_width: Half width of the narrow Brent bracket
        brent_tol: Brent tolerance for the narrow bracket
        brent_max_iter: Brent iteration limit
        bisection_bracket: Default bisection bracket
        bisection_tol: Bisection tolerance
        bisection_max_iter: Bisection iteration limit
        wide_bracket: Widened Brent bracket
        wide_tol: Widened Brent tolerance
    """
    t_peak: float = 2.6
    safe_band: Tuple[float, float] = DEFAULT_KE0_BAND
    validation_band: Tuple[float, float] = DEFAULT_KE0_BAND
    singular_threshold: float = 1e-8
    stable_threshold: float = 0.01
    newton_iterations: int = 3
    brent_half_width: float = 0.05
    brent_tol: float = 1e-15
    brent_max_iter: int = 200
    bisection_bracket: Tuple[float, float] = (0.15, 0.26)
    bisection_tol: float = 1e-10
    bisection_max_iter: int = 100
    wide_bracket: Tuple[float, float] = (0.05, 0.5)
    wide_tol: float = 1e-10

    def validate(self) -> None:
        if self.t_peak <= 0:
            raise ConfigurationError(f"t_peak must be positive, got {self.t_peak}")
        for name in ('safe_band', 'validation_band', 'bisection_bracket', 'wide_bracket'):
            low, high = getattr(self, name)
            if not (0 < low < high):
                raise ConfigurationError(f"{name} must satisfy 0 < low < high, got {(low, high)}")
        if self.brent_tol < 4 * sys.float_info.epsilon:
            raise ConfigurationError(f"brent_tol below 4*eps: {self.brent_tol}")
        if self.newton_iterations < 0:
            raise ConfigurationError("newton_iterations must be >= 0")


@dataclass
class IntegratorConfig:
    """
    Settings for the adaptive Adams integrator and the RK4 fallback.

    Attributes:
        rtol: Relative error tolerance
        atol: Absolute error tolerance (mg)
        max_order: Highest Adams order used
        mxstep: Maximum attempted steps per output interval
        h_max: Largest step (min)
        h_min_factor: Step floor as a multiple of machine epsilon
        initial_step: Upper limit of the first step (min)
        stiffness_rejection_limit: Consecutive rejections reported as stiffness
        negative_tolerance: Negative mass magnitude logged as an anomaly
        rk4_step: Fixed RK4 step (min)
        output_step: Output grid spacing for simulations (min)
    """
    rtol: float = 1e-6
    atol: float = 1e-10
    max_order: int = 5
    mxstep: int = 500
    h_max: float = 1.0
    h_min_factor: float = 100.0
    initial_step: float = 0.1
    stiffness_rejection_limit: int = 10
    negative_tolerance: float = 1e-10
    rk4_step: float = 0.01
    output_step: float = 0.1

    def validate(self) -> None:
        if self.rtol <= 0 or self.atol <= 0:
            raise ConfigurationError("rtol and atol must be positive")
        if not (1 <= self.max_order <= 12):
            raise ConfigurationError(f"max_order must be in 1..12, got {self.max_order}")
        if self.mxstep < 1:
            raise ConfigurationError("mxstep must be >= 1")
        if self.h_max <= 0 or self.initial_step <= 0:
            raise ConfigurationError("h_max and initial_step must be positive")
        if self.rk4_step <= 0 or self.output_step <= 0:
            raise ConfigurationError("rk4_step and output_step must be positive")


@dataclass
class SafetyLimits:
    """Absolute safety limits used for warnings and search bounds."""
    max_bolus: float = 10.0               # mg
    max_continuous_rate: float = 20.0     # mg/kg/hr
    max_plasma_concentration: float = 10.0  # μg/mL

    def validate(self) -> None:
        if min(self.max_bolus, self.max_continuous_rate, self.max_plasma_concentration) <= 0:
            raise ConfigurationError("safety limits must be positive")


@dataclass
class OptimizerConfig:
    """
    Settings for the infusion-rate search.

    Attributes:
        tolerance: Relative error accepted as converged (0.10 = ±10 %)
        target_time: Default time at which the target must be reached (min)
        coarse_points: Grid points across the full search bounds
        fine_points: Grid points across the refined window
        fine_span: Refined window half width in coarse grid steps
        polish_iterations: Bisection steps after the fine grid
        max_evaluations: Cap on forward simulations per optimization
        time_step: Output grid spacing of each forward simulation (min)
        bolus_range: Dynamic bolus range (mg)
    """
    tolerance: float = 0.10
    target_time: float = 20.0
    coarse_points: int = 30
    fine_points: int = 21
    fine_span: float = 1.5
    polish_iterations: int = 30
    max_evaluations: int = 150
    time_step: float = 0.1
    bolus_range: Tuple[float, float] = (2.0, 7.0)

    def validate(self) -> None:
        if not (0 < self.tolerance < 1):
            raise ConfigurationError(f"tolerance must be in (0, 1), got {self.tolerance}")
        if self.coarse_points < 2 or self.fine_points < 2:
            raise ConfigurationError("grids need at least two points")
        if self.max_evaluations < self.coarse_points:
            raise ConfigurationError("max_evaluations must cover the coarse grid")
        if self.target_time <= 0 or self.time_step <= 0:
            raise ConfigurationError("target_time and time_step must be positive")


@dataclass
class StepDownConfig:
    """
    Settings for the step-down maintenance protocol.

    Attributes:
        upper_threshold_ratio: Ce/target ratio that triggers a reduction
        reduction_factor: Multiplier applied to the rate at each reduction
        adjustment_interval: Minimum time between reductions (min)
        minimum_rate: Rate floor (mg/kg/hr)
        time_step: Simulation grid spacing (min)
        duration: Protocol length (min)
        maintenance_start: Start of the performance window (min)
        accuracy_band: Relative band counted as on target
        max_adjustments: Cap on reductions (and re-simulations)
    """
    upper_threshold_ratio: float = 1.2
    reduction_factor: float = 0.70
    adjustment_interval: float = 5.0
    minimum_rate: float = 0.1
    time_step: float = 0.1
    duration: float = 120.0
    maintenance_start: float = 60.0
    accuracy_band: float = 0.10
    max_adjustments: int = 50

    def validate(self) -> None:
        if self.upper_threshold_ratio <= 1.0:
            raise ConfigurationError("upper_threshold_ratio must exceed 1.0")
        if not (0 < self.reduction_factor < 1):
            raise ConfigurationError("reduction_factor must be in (0, 1)")
        if self.adjustment_interval < 0 or self.minimum_rate < 0:
            raise ConfigurationError("adjustment_interval and minimum_rate must be >= 0")
        if self.time_step <= 0 or self.duration <= self.time_step:
            raise ConfigurationError("duration must exceed a positive time_step")


@dataclass
class EngineConfig:
    """All engine settings grouped by component."""
    ke0: Ke0SolverConfig = field(default_factory=Ke0SolverConfig)
    integrator: IntegratorConfig = field(default_factory=IntegratorConfig)
    optimizer: OptimizerConfig = field(default_factory=OptimizerConfig)
    step_down: StepDownConfig = field(default_factory=StepDownConfig)
    safety: SafetyLimits = field(default_factory=SafetyLimits)

    def validate(self) -> None:
        for section in (self.ke0, self.integrator, self.optimizer, self.step_down, self.safety):
            section.validate()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, config: Optional[Dict[str, Any]]) -> 'EngineConfig':
        """
        Build a configuration by overlaying a nested dict on the defaults.

        Raises:
            ConfigurationError: On unknown sections or keys, or invalid values
        """
        engine = cls()
        for section_name, values in (config or {}).items():
            if section_name not in {f.name for f in fields(cls)}:
                raise ConfigurationError(f"Unknown configuration section: {section_name}")
            if values is None:
                continue
            if not isinstance(values, dict):
                raise ConfigurationError(f"Section {section_name} must be a mapping")
            section = getattr(engine, section_name)
            known = {f.name: f for f in fields(section)}
            for key, value in values.items():
                if key not in known:
                    raise ConfigurationError(f"Unknown key {section_name}.{key}")
                # YAML has no tuples
                if isinstance(value, list):
                    value = tuple(value)
                setattr(section, key, value)
        engine.validate()
        return engine


def load_config(
    config: Optional[Dict] = None,
    config_path: Optional[str] = None
) -> Dict:
    """Load configuration from dictionary or YAML file."""
    if config is not None:
        return config

    if config_path is not None:
        with open(config_path, 'r') as f:
            return yaml.safe_load(f) or {}

    # Try to load default config
    if DEFAULT_CONFIG_PATH.exists():
        with open(DEFAULT_CONFIG_PATH, 'r') as f:
            return yaml.safe_load(f) or {}

    return {}
