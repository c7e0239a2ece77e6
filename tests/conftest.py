"""
Test Configuration and Fixtures
================================

Provides pytest configuration and shared fixtures for testing.
"""

import pytest
from pathlib import Path
import sys

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from remimazolam_tci.models.pharmacokinetics.base import PatientParameters
from remimazolam_tci.simulation.session import TCISession
from remimazolam_tci.utils.config import EngineConfig
from remimazolam_tci.utils.diagnostics import RecordingSink


@pytest.fixture
def sample_patient_params():
    """Sample patient parameters for testing."""
    return {
        'age': 45,
        'weight': 70,
        'height': 170,
        'sex': 'M',
        'asa_ps': 0
    }


@pytest.fixture
def standard_patient_params():
    """Standard reference patient (50 y, 70 kg, 170 cm, male, ASA I-II)."""
    return {
        'age': 50,
        'weight': 70,
        'height': 170,
        'sex': 0,
        'asa_ps': 0
    }


@pytest.fixture
def patient(sample_patient_params):
    return PatientParameters(**sample_patient_params)


@pytest.fixture
def standard_patient(standard_patient_params):
    return PatientParameters(**standard_patient_params)


@pytest.fixture
def engine_config():
    """Default engine configuration."""
    return EngineConfig()


@pytest.fixture
def recording_sink():
    """Sink that keeps every diagnostic for inspection."""
    return RecordingSink()


@pytest.fixture
def session(patient, engine_config, recording_sink):
    """Fresh session for the sample patient."""
    return TCISession(patient, config=engine_config, sink=recording_sink)


@pytest.fixture
def temp_log_dir(tmp_path):
    """Temporary directory for logs."""
    log_dir = tmp_path / "logs"
    log_dir.mkdir()
    return log_dir
