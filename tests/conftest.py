"""Test configuration and fixtures."""

import pytest
import pandas as pd
import numpy as np
import tempfile
from pathlib import Path

from copd_ed_risk.pipeline.config import PipelineConfig

DEMOGRAPHICS = {
    'age_range': '50-64',
    'gender': 'F',
    'line_of_business': 'Medicare',
    'deprivation_index': 20.0,
    'service_location': 'North',
    'deceased_flag': 'N',
    'terminated_flag': 'N',
}


def make_claim(patient_id, month, code, ed=True, **overrides):
    """Build one raw claim row."""
    claim = {
        'patient_id': patient_id,
        'claim_month': month,
        'diagnosis_code': code,
        'procedure_location_code': '23' if ed else '11',
        'financial_subcategory': 'ER' if ed else 'PROF',
        **DEMOGRAPHICS,
    }
    claim.update(overrides)
    return claim


@pytest.fixture
def claim_factory():
    """Expose the raw claim builder to tests."""
    return make_claim


@pytest.fixture
def three_patient_claims():
    """Patients A (costly), B (not costly), C (injury claims only) and a minor D.

    Every patient's latest month is 2020-12, so the feature window is
    2019-01..2020-12 and the label window ends at 2018-12.
    """
    rows = []
    # A: 12 label-window ED claims, 2 COPD ED claims + 1 office visit in the feature window
    rows += [make_claim('A', '2018-06-01', 'J44.1') for _ in range(12)]
    rows += [make_claim('A', '2020-06-01', 'J44.9') for _ in range(2)]
    rows.append(make_claim('A', '2020-12-01', 'I10', ed=False))

    # B: 3 label-window ED claims, 1 respiratory (non-COPD) ED claim in the feature window
    rows += [make_claim('B', '2018-01-01', 'J18.9', gender='M', line_of_business='Medicaid')
             for _ in range(3)]
    rows.append(make_claim('B', '2020-12-01', 'J20.9', gender='M', line_of_business='Medicaid'))

    # C: only injury claims, all excluded after categorization
    rows.append(make_claim('C', '2017-05-01', 'S72.001A', service_location='South'))
    rows.append(make_claim('C', '2020-12-01', 'W19.XXXA', service_location='South'))

    # D: under 18, never reaches the patient table
    rows += [make_claim('D', '2020-12-01', 'J44.1', age_range='<18') for _ in range(3)]

    return pd.DataFrame(rows)


@pytest.fixture
def synthetic_claims():
    """Small synthetic claim extract with both label classes well represented."""
    from copd_ed_risk.data_generation.generate_claims_data import ClaimsDataGenerator

    generator = ClaimsDataGenerator(seed=7, high_utilizer_rate=0.3)
    return generator.generate_dataset(num_patients=160, batch_size=40)


@pytest.fixture
def patient_table():
    """Patient-level table in the shape produced by aggregation."""
    rng = np.random.default_rng(0)
    n = 80
    ed_label = rng.poisson(8, size=n)
    return pd.DataFrame({
        'patient_id': [f'P{i:03d}' for i in range(n)],
        'age_range': rng.choice(['18-34', '50-64', '65+'], size=n),
        'gender': rng.choice(['M', 'F'], size=n),
        'line_of_business': rng.choice(['Medicare', 'Medicaid'], size=n),
        'service_location': rng.choice(['North', 'South'], size=n),
        'deprivation_index': rng.gamma(2.0, 15.0, size=n),
        'deceased_flag': rng.choice([0.0, 1.0], size=n, p=[0.95, 0.05]),
        'terminated_flag': rng.choice([0.0, 1.0], size=n, p=[0.9, 0.1]),
        'copd_ed_count': rng.poisson(1, size=n),
        'ed_count_feature': rng.poisson(2, size=n) + (ed_label >= 10) * 3,
        'total_claims_feature': rng.poisson(20, size=n),
        'respiratory_claims_feature': rng.poisson(8, size=n),
        'distinct_diagnoses_feature': rng.poisson(4, size=n),
        'ed_count_label': ed_label,
        'label': np.where(ed_label >= 10, 'Costly', 'NonCostly'),
    })


@pytest.fixture
def fast_config():
    """Configuration with tiny grids and tracking disabled."""
    return PipelineConfig(
        cv_folds=2,
        param_grids={
            'logistic_regression': {'C': [0.1, 1.0]},
            'random_forest': {'max_features': [2], 'n_estimators': [20]},
            'svm': {'C': [1.0], 'gamma': [0.1]},
        },
        mlflow={'backend': 'none'},
    )


@pytest.fixture
def temp_directory():
    """Create temporary directory for testing."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)
