"""
Unit Tests for Patient Parameters and the Masui PK Model
=========================================================

Tests demographic validation, body-size helpers and the Masui covariate
model for remimazolam.
"""

import pytest
import numpy as np

from remimazolam_tci.models.pharmacokinetics.base import (
    PatientParameters,
    Sex,
    ASAClass,
    calculate_ideal_body_weight,
    calculate_adjusted_body_weight,
)
from remimazolam_tci.models.pharmacokinetics.masui_model import (
    MasuiModel,
    MasuiParameters,
    PKParameters,
    derive_pk_parameters,
    derive_rate_constants,
)
from remimazolam_tci.utils.exceptions import ValidationError
from remimazolam_tci.validation import REFERENCE_PATIENTS, patient_from_reference


class TestPatientParameters:
    """Test suite for PatientParameters."""

    def test_initialization(self, sample_patient_params):
        """Test construction with valid parameters."""
        patient = PatientParameters(**sample_patient_params)

        assert patient.age == 45
        assert patient.weight == 70
        assert patient.height == 170
        assert patient.sex is Sex.MALE
        assert patient.asa_ps is ASAClass.I_II

    def test_sex_coercion(self):
        """Test that strings and ints are accepted for sex."""
        assert PatientParameters(sex='F').sex is Sex.FEMALE
        assert PatientParameters(sex='male').sex is Sex.MALE
        assert PatientParameters(sex=1).sex is Sex.FEMALE

    def test_invalid_age(self):
        """Test that out-of-range ages raise instead of clamping."""
        with pytest.raises(ValidationError):
            PatientParameters(age=17)
        with pytest.raises(ValidationError):
            PatientParameters(age=101)

    def test_invalid_weight(self):
        """Test that out-of-range weights raise."""
        with pytest.raises(ValidationError):
            PatientParameters(weight=29)
        with pytest.raises(ValidationError):
            PatientParameters(weight=201, height=220)

    def test_invalid_height(self):
        """Test that out-of-range heights raise."""
        with pytest.raises(ValidationError):
            PatientParameters(height=119)
        with pytest.raises(ValidationError):
            PatientParameters(height=221)

    def test_invalid_bmi(self):
        """Test that the BMI range is enforced."""
        # 150 kg at 160 cm is BMI 58.6
        with pytest.raises(ValidationError):
            PatientParameters(weight=150, height=160)

    def test_invalid_categoricals(self):
        """Test that sex and ASA must be two-valued."""
        with pytest.raises(ValidationError):
            PatientParameters(sex=2)
        with pytest.raises(ValidationError):
            PatientParameters(sex='X')
        with pytest.raises(ValidationError):
            PatientParameters(asa_ps=3)

    def test_nan_rejected(self):
        """Test that NaN inputs are rejected."""
        with pytest.raises(ValidationError):
            PatientParameters(age=float('nan'))

    def test_immutable(self, patient):
        """Test that patients cannot be mutated."""
        with pytest.raises(AttributeError):
            patient.age = 50

    def test_body_weights(self):
        """Test IBW and ABW formulas."""
        assert calculate_ideal_body_weight(170, Sex.MALE) == pytest.approx(65.564)
        assert calculate_ideal_body_weight(170, Sex.FEMALE) == pytest.approx(61.064)
        assert calculate_adjusted_body_weight(70, 170, Sex.MALE) == pytest.approx(67.3384)

    def test_cache_key(self, sample_patient_params):
        """Test that equal demographics share a cache key."""
        a = PatientParameters(**sample_patient_params)
        b = PatientParameters(**sample_patient_params)
        c = PatientParameters(**{**sample_patient_params, 'asa_ps': 1})

        assert a.cache_key() == b.cache_key()
        assert a.cache_key() != c.cache_key()


class TestMasuiModel:
    """Test suite for the Masui covariate model."""

    def test_standard_patient_values(self, standard_patient):
        """Test PK parameters for the standard reference patient."""
        pk = derive_pk_parameters(standard_patient)

        assert pk.ibw == pytest.approx(65.564)
        assert pk.abw == pytest.approx(67.3384)
        assert pk.v1 == pytest.approx(3.5720, abs=1e-4)
        assert pk.cl == pytest.approx(1.03044, abs=1e-5)

    def test_covariate_effects(self):
        """Test sex, ASA and age effects on clearance and V3."""
        base = derive_pk_parameters(PatientParameters(age=54, weight=70, height=170, sex='M'))
        female = derive_pk_parameters(PatientParameters(age=54, weight=70, height=170, sex='F'))
        asa = derive_pk_parameters(PatientParameters(age=54, weight=70, height=170, asa_ps=1))
        older = derive_pk_parameters(PatientParameters(age=74, weight=70, height=170))

        # Female ABW differs, so compare the covariate term after size scaling
        female_size = (female.abw / 67.3) ** 0.75
        assert female.cl / female_size == pytest.approx(1.03 + 0.146)
        base_size = (base.abw / 67.3) ** 0.75
        assert asa.cl / base_size == pytest.approx(1.03 - 0.184)
        assert older.v3 - base.v3 == pytest.approx(0.308 * 20 * base.abw / 67.3)

    @pytest.mark.parametrize("reference", REFERENCE_PATIENTS, ids=lambda r: r['name'])
    def test_parameters_positive(self, reference):
        """Test that every derived parameter is positive across the battery."""
        pk = derive_pk_parameters(patient_from_reference(reference))
        rc = derive_rate_constants(pk)

        assert all(value > 0 for value in pk.to_dict().values())
        assert all(value > 0 for value in rc.to_dict().values())

    def test_non_positive_parameter_rejected(self):
        """Test that PKParameters refuses non-positive values."""
        with pytest.raises(ValidationError):
            PKParameters(ibw=65, abw=67, v1=3.5, v2=11, v3=-1.0, cl=1.0, q2=1.1, q3=0.4)

    def test_custom_population_parameters(self, standard_patient):
        """Test that population parameters can be overridden."""
        params = MasuiParameters(theta_1=7.14)
        pk = derive_pk_parameters(standard_patient, params)

        assert pk.v1 == pytest.approx(2 * derive_pk_parameters(standard_patient).v1)

    def test_rate_constants(self, standard_patient):
        """Test rate constants are volume-normalized clearances."""
        pk = derive_pk_parameters(standard_patient)
        rc = derive_rate_constants(pk)

        assert rc.k10 == pytest.approx(pk.cl / pk.v1)
        assert rc.k12 == pytest.approx(pk.q2 / pk.v1)
        assert rc.k13 == pytest.approx(pk.q3 / pk.v1)
        assert rc.k21 == pytest.approx(pk.q2 / pk.v2)
        assert rc.k31 == pytest.approx(pk.q3 / pk.v3)

    def test_state_space_matrices(self, standard_patient):
        """Test the mass-based state-space form."""
        model = MasuiModel(standard_patient)
        A, B = model.get_state_space_matrices()

        assert A.shape == (3, 3)
        assert B.shape == (3,)
        np.testing.assert_array_equal(B, [1.0, 0.0, 0.0])
        # Only elimination leaves the system
        np.testing.assert_allclose(A.sum(axis=0), [-model.rate_constants.k10, 0.0, 0.0], atol=1e-12)

    def test_model_accessors(self, standard_patient):
        """Test dictionary accessors and concentration conversion."""
        model = MasuiModel(standard_patient)

        assert set(model.get_rate_constants()) == {'k10', 'k12', 'k13', 'k21', 'k31'}
        assert set(model.get_volumes()) == {'V1', 'V2', 'V3'}
        assert model.plasma_concentration(model.pk.v1) == pytest.approx(1.0)

    def test_derivation_is_pure(self, standard_patient):
        """Test that repeated derivations give identical parameters."""
        first = derive_pk_parameters(standard_patient)
        second = derive_pk_parameters(standard_patient)

        assert first == second
        assert derive_rate_constants(first) == derive_rate_constants(second)
