"""
Reference Patient Battery
=========================

Computes exact (Method A) and regression (Method B) ke0 for a fixed set of
reference patients and checks each against the safe band and the expected
agreement between the two methods.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from tqdm import tqdm

from .models.pharmacodynamics.ke0_solver import Ke0Method, Ke0Solver
from .models.pharmacokinetics.base import PatientParameters
from .utils.config import Ke0SolverConfig
from .utils.diagnostics import DiagnosticSink
from .utils.logger import get_logger

logger = get_logger(__name__)

# Maximum |exact - regression| / exact accepted as agreement
AGREEMENT_TOLERANCE = 0.15

REFERENCE_PATIENTS: Tuple[Dict, ...] = (
    {'name': 'standard adult', 'age': 50, 'weight': 70, 'height': 170, 'sex': 0, 'asa_ps': 0},
    {'name': 'default adult', 'age': 45, 'weight': 70, 'height': 170, 'sex': 0, 'asa_ps': 0},
    {'name': 'small adult', 'age': 40, 'weight': 60, 'height': 160, 'sex': 0, 'asa_ps': 0},
    {'name': 'young large male', 'age': 25, 'weight': 90, 'height': 185, 'sex': 0, 'asa_ps': 0},
    {'name': 'elderly female ASA III', 'age': 75, 'weight': 45, 'height': 155, 'sex': 1, 'asa_ps': 1},
    {'name': 'young female', 'age': 30, 'weight': 55, 'height': 160, 'sex': 1, 'asa_ps': 0},
    {'name': 'older male ASA III', 'age': 65, 'weight': 80, 'height': 175, 'sex': 0, 'asa_ps': 1},
    {'name': 'minimum adult', 'age': 18, 'weight': 40, 'height': 150, 'sex': 1, 'asa_ps': 0},
    {'name': 'obese elderly male', 'age': 90, 'weight': 120, 'height': 190, 'sex': 0, 'asa_ps': 1},
    {'name': 'upper extreme', 'age': 100, 'weight': 200, 'height': 220, 'sex': 1, 'asa_ps': 1},
    {'name': 'lower extreme', 'age': 18, 'weight': 30, 'height': 120, 'sex': 0, 'asa_ps': 0},
)


@dataclass
class BatteryEntry:
    """Outcome for one reference patient."""
    name: str
    patient: PatientParameters
    exact: Optional[float]
    regression: Optional[float]
    ke0: float
    method: Ke0Method
    relative_difference: Optional[float]
    in_band: bool
    agrees: bool

    @property
    def passed(self) -> bool:
        return self.in_band and self.agrees


def patient_from_reference(entry: Dict) -> PatientParameters:
    return PatientParameters(
        age=entry['age'], weight=entry['weight'], height=entry['height'],
        sex=entry['sex'], asa_ps=entry['asa_ps'],
    )


def validate_reference_battery(
    patients: Sequence[Dict] = REFERENCE_PATIENTS,
    config: Optional[Ke0SolverConfig] = None,
    sink: Optional[DiagnosticSink] = None,
    tolerance: float = AGREEMENT_TOLERANCE,
    progress: bool = False
) -> List[BatteryEntry]:
    """
    Run the ke0 solver over reference patients.

    Args:
        patients: Dicts with name, age, weight, height, sex, asa_ps
        config: ke0 solver settings
        sink: Diagnostics sink
        tolerance: Agreement tolerance between the two methods
        progress: Show a tqdm progress bar

    Returns:
        One BatteryEntry per patient, in input order
    """
    solver = Ke0Solver(config, sink)
    low, high = solver.config.safe_band
    entries = []

    for reference in tqdm(patients, desc="ke0 battery", disable=not progress):
        patient = patient_from_reference(reference)
        result = solver.solve(patient)
        difference = result.relative_difference
        entry = BatteryEntry(
            name=reference.get('name', ''),
            patient=patient,
            exact=result.exact.value,
            regression=result.regression.value,
            ke0=result.ke0,
            method=result.method,
            relative_difference=difference,
            in_band=low <= result.ke0 <= high,
            agrees=difference is not None and difference <= tolerance,
        )
        if not entry.passed:
            logger.warning(
                f"Reference patient '{entry.name}' failed: ke0 {entry.ke0:.6f}, "
                f"difference {difference}"
            )
        entries.append(entry)

    passed = sum(entry.passed for entry in entries)
    logger.info(f"Reference battery: {passed}/{len(entries)} patients passed")
    return entries
