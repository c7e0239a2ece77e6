"""
TCI Session
===========

Per-patient entry point. A session derives the PK parameters and ke0 once
and hands them to the simulator, optimizer and step-down protocol.

Usage:
------
    from remimazolam_tci import PatientParameters, TCISession

    session = TCISession(PatientParameters(age=45, weight=70, height=170, sex='M'))
    plan = session.run_complete_optimization(target_ce=1.0)
    plan.protocol.adjustments
"""

from dataclasses import dataclass
from typing import Dict, Hashable, List, Optional, Sequence

from .dosing import DoseEvent
from .monitoring import MethodComparison, MonitoringSimulator, SimulationResult
from ..models.pharmacodynamics.ke0_solver import Ke0Result, Ke0Solver
from ..models.pharmacokinetics.base import PatientParameters
from ..models.pharmacokinetics.masui_model import MasuiParameters
from ..optimization.dose_optimizer import DoseOptimizer, OptimizationResult
from ..optimization.step_down import ProtocolResult, StepDownProtocol
from ..utils.config import EngineConfig
from ..utils.diagnostics import DiagnosticSink, ensure_sink
from ..utils.logger import get_logger, SimulationLogger

logger = get_logger(__name__)


class Ke0Cache:
    """
    Keyed store of ke0 results.

    Keys come from `Ke0Solver.cache_key`: the patient demographics together
    with the solver settings and Masui parameters, so sessions with
    different configurations never share an entry.
    A cache may be shared between sessions by passing it explicitly.
    """

    def __init__(self):
        self._entries: Dict[Hashable, Ke0Result] = {}
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable) -> Optional[Ke0Result]:
        result = self._entries.get(key)
        if result is None:
            self.misses += 1
        else:
            self.hits += 1
        return result

    def put(self, key: Hashable, result: Ke0Result) -> None:
        self._entries[key] = result

    def clear(self) -> None:
        self._entries.clear()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries


@dataclass
class CompletePlan:
    """Induction optimization followed by the step-down protocol."""
    optimization: OptimizationResult
    protocol: Optional[ProtocolResult]

    @property
    def schedule(self) -> List:
        return self.protocol.schedule if self.protocol is not None else []


class TCISession:
    """
    Simulation session for one patient.

    Args:
        patient: Validated patient demographics
        config: Engine configuration (defaults if None)
        sink: Diagnostics sink (discarding if None)
        cache: ke0 cache, possibly shared (a private one if None)
        sim_logger: Optional run summary logger
        params: Masui population parameters (published values if None)

    Raises:
        SafetyError: If ke0 cannot be placed inside the safe band
    """

    def __init__(
        self,
        patient: PatientParameters,
        config: Optional[EngineConfig] = None,
        sink: Optional[DiagnosticSink] = None,
        cache: Optional[Ke0Cache] = None,
        sim_logger: Optional[SimulationLogger] = None,
        params: Optional[MasuiParameters] = None
    ):
        self.patient = patient
        self.config = config or EngineConfig()
        self.sink = ensure_sink(sink)
        self.cache = cache if cache is not None else Ke0Cache()
        self.sim_logger = sim_logger
        self.solver = Ke0Solver(self.config.ke0, self.sink, params)

        key = self.solver.cache_key(patient)
        result = self.cache.get(key)
        if result is None:
            result = self.solver.solve(patient)
            self.cache.put(key, result)
        else:
            logger.debug(f"ke0 cache hit for {patient.cache_key()}")
        self.ke0_result = result

        logger.info(
            f"Session ready: ke0 {result.ke0:.4f} /min ({result.method.value}), "
            f"V1 {result.pk.v1:.3f} L, CL {result.pk.cl:.4f} L/min"
        )

    @property
    def ke0(self) -> float:
        return self.ke0_result.ke0

    @property
    def pk(self):
        return self.ke0_result.pk

    @property
    def rate_constants(self):
        return self.ke0_result.rate_constants

    def simulator(self) -> MonitoringSimulator:
        return MonitoringSimulator(
            self.pk, self.rate_constants, self.ke0, self.patient.weight,
            self.config, self.sink, self.sim_logger
        )

    def simulate(
        self,
        dose_events: Sequence[DoseEvent],
        duration: Optional[float] = None,
        time_step: Optional[float] = None
    ) -> SimulationResult:
        """Simulate Cp and Ce for dose events from t=0."""
        return self.simulator().run(dose_events, duration, time_step)

    def compare_methods(
        self,
        dose_events: Sequence[DoseEvent],
        duration: Optional[float] = None
    ) -> Dict[str, MethodComparison]:
        return self.simulator().compare_methods(dose_events, duration)

    def optimize(
        self,
        target_ce: float,
        target_time: Optional[float] = None,
        bolus_mg: Optional[float] = None
    ) -> OptimizationResult:
        """Optimize the induction bolus and rate for a target Ce."""
        optimizer = DoseOptimizer(
            self.pk, self.rate_constants, self.ke0, self.patient.weight,
            self.config, self.sink, self.sim_logger
        )
        return optimizer.optimize(target_ce, target_time, bolus_mg)

    def run_step_down(self, target_ce: float, bolus: float, initial_rate: float) -> ProtocolResult:
        """Run the step-down maintenance protocol."""
        protocol = StepDownProtocol(
            self.pk, self.rate_constants, self.ke0, self.patient.weight,
            self.config, self.sink
        )
        return protocol.generate(target_ce, bolus, initial_rate)

    def run_complete_optimization(
        self,
        target_ce: float,
        target_time: Optional[float] = None,
        bolus_mg: Optional[float] = None
    ) -> CompletePlan:
        """
        Optimize induction, then run the step-down protocol from its result.

        A zero target skips the protocol.
        """
        if self.sim_logger is not None:
            self.sim_logger.log_phase("Induction", f"target {target_ce} μg/mL")
        optimization = self.optimize(target_ce, target_time, bolus_mg)
        if optimization.zero_target_bypass:
            return CompletePlan(optimization, None)

        if self.sim_logger is not None:
            self.sim_logger.log_phase(
                "Step-down", f"bolus {optimization.bolus:.2f} mg, rate {optimization.rate:.3f} mg/kg/hr"
            )
        protocol = self.run_step_down(target_ce, optimization.bolus, optimization.rate)
        return CompletePlan(optimization, protocol)
