"""
Pipeline configuration.

All stage parameters (seed, window span, ED codes, label threshold, model grids,
leakage mode) live on a single ``PipelineConfig`` that is threaded through every
stage instead of relying on library defaults or module globals.
"""

from __future__ import annotations

import copy
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml


class ConfigurationError(ValueError):
    """Raised when input data or configuration cannot support a pipeline run."""


REQUIRED_COLUMNS = [
    'patient_id',
    'claim_month',
    'diagnosis_code',
    'procedure_location_code',
    'financial_subcategory',
    'age_range',
    'gender',
    'line_of_business',
    'deprivation_index',
    'service_location',
    'deceased_flag',
    'terminated_flag',
]

DEMOGRAPHIC_COLUMNS = [
    'age_range',
    'gender',
    'line_of_business',
    'service_location',
    'deprivation_index',
    'deceased_flag',
    'terminated_flag',
]

CATEGORICAL_COLUMNS = ['age_range', 'gender', 'line_of_business', 'service_location']

COUNT_COLUMNS = [
    'copd_ed_count',
    'ed_count_feature',
    'total_claims_feature',
    'respiratory_claims_feature',
    'distinct_diagnoses_feature',
]

SUPPORTED_FAMILIES = ['logistic_regression', 'random_forest', 'svm']
SUPPORTED_METRICS = ['accuracy', 'roc_auc', 'f1']


def default_param_grids() -> Dict[str, Dict[str, List[Any]]]:
    """Hyperparameter grids searched for each model family."""
    return {
        'logistic_regression': {'C': [0.001, 0.01, 0.1, 1.0, 10.0, 100.0]},
        'random_forest': {'max_features': [3, 5, 7], 'n_estimators': [300, 500, 700]},
        'svm': {'C': [0.1, 1.0, 10.0], 'gamma': [0.01, 0.1, 1.0]},
    }


@dataclass
class PipelineConfig:
    """Explicit configuration for every stage of the ED-utilization pipeline."""

    random_seed: int = 42

    # Claim store / cleaning
    column_map: Dict[str, str] = field(default_factory=dict)
    drop_columns: List[str] = field(
        default_factory=lambda: ['service_count', 'diagnosis_description', 'procedure_description']
    )
    min_age: int = 18
    global_statistics: bool = True

    # Windowing & aggregation
    window_days: int = 730
    ed_location_code: str = '23'
    ed_financial_subcategory: str = 'ER'
    costly_threshold: int = 10
    n_partitions: int = 1

    # Clamping & encoding
    iqr_multiplier: float = 1.5
    clamp_columns: List[str] = field(default_factory=lambda: COUNT_COLUMNS + ['deprivation_index'])
    categorical_columns: List[str] = field(default_factory=lambda: list(CATEGORICAL_COLUMNS))

    # Split & resampling
    test_size: float = 0.3
    oversample_percent: int = 200
    undersample_percent: int = 100
    k_neighbors: int = 5
    scaling_method: str = 'standard'

    # Model search
    cv_folds: int = 5
    opt_metric: str = 'accuracy'
    families: List[str] = field(default_factory=lambda: list(SUPPORTED_FAMILIES))
    param_grids: Dict[str, Dict[str, List[Any]]] = field(default_factory=default_param_grids)
    n_jobs: int = 1

    # Experiment tracking
    mlflow: Dict[str, Any] = field(default_factory=lambda: {
        'backend': 'mlflow',
        'experiment_name': 'copd_ed_risk',
        'tracking_uri': 'file:./mlruns',
    })

    def __post_init__(self):
        # Claim codes are compared as cleaned strings ('23', 'ER')
        self.ed_location_code = self._normalize_code(self.ed_location_code)
        self.ed_financial_subcategory = self._normalize_code(self.ed_financial_subcategory)
        self.validate()

    @staticmethod
    def _normalize_code(value) -> str:
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        return str(value).strip().upper()

    def validate(self):
        """Reject configurations that would silently produce a meaningless run."""
        if not 0.0 < self.test_size < 1.0:
            raise ConfigurationError(f"test_size must be in (0, 1), got {self.test_size}")
        if self.window_days <= 0:
            raise ConfigurationError(f"window_days must be positive, got {self.window_days}")
        if self.costly_threshold < 0:
            raise ConfigurationError(f"costly_threshold must be >= 0, got {self.costly_threshold}")
        if self.cv_folds < 2:
            raise ConfigurationError(f"cv_folds must be at least 2, got {self.cv_folds}")
        if self.oversample_percent < 0 or self.undersample_percent < 0:
            raise ConfigurationError("Resampling percentages must be non-negative")
        unknown = [f for f in self.families if f not in SUPPORTED_FAMILIES]
        if unknown:
            raise ConfigurationError(
                f"Unknown model families {unknown}; supported: {SUPPORTED_FAMILIES}"
            )
        if self.opt_metric not in SUPPORTED_METRICS:
            raise ConfigurationError(
                f"Unknown opt_metric '{self.opt_metric}'; supported: {SUPPORTED_METRICS}"
            )
        if not self.families:
            raise ConfigurationError("At least one model family must be configured")
        missing_grids = [f for f in self.families if not self.param_grids.get(f)]
        if missing_grids:
            raise ConfigurationError(f"No hyperparameter grid configured for {missing_grids}")

    # ---------- (de)serialization ----------
    @classmethod
    def from_dict(cls, config: Optional[Dict[str, Any]]) -> 'PipelineConfig':
        """Build a config from the nested YAML layout used in ``config/training_config.yaml``."""
        config = config or {}
        data_cfg = config.get('data', {})
        window_cfg = config.get('windowing', {})
        pre_cfg = config.get('preprocessing', {})
        imb_cfg = config.get('imbalance', {})
        cv_cfg = config.get('cross_validation', {})
        model_cfg = config.get('models', {})
        proc_cfg = config.get('processing', {})

        kwargs: Dict[str, Any] = {}

        def _take(section: Dict[str, Any], key: str, target: Optional[str] = None):
            if key in section:
                kwargs[target or key] = section[key]

        if 'random_seed' in config:
            kwargs['random_seed'] = config['random_seed']

        for key in ('column_map', 'drop_columns', 'min_age'):
            _take(data_cfg, key)

        for key in ('window_days', 'ed_location_code', 'ed_financial_subcategory', 'costly_threshold'):
            _take(window_cfg, key)

        for key in ('global_statistics', 'iqr_multiplier', 'clamp_columns',
                    'categorical_columns', 'scaling_method'):
            _take(pre_cfg, key)

        _take(imb_cfg, 'oversample_percent')
        _take(imb_cfg, 'undersample_percent')
        _take(imb_cfg, 'k_neighbors')

        _take(cv_cfg, 'n_splits', 'cv_folds')
        _take(cv_cfg, 'test_size')
        _take(cv_cfg, 'opt_metric')

        _take(model_cfg, 'families')
        if 'param_grids' in model_cfg:
            grids = default_param_grids()
            grids.update(model_cfg['param_grids'] or {})
            kwargs['param_grids'] = grids

        _take(proc_cfg, 'n_partitions')
        _take(proc_cfg, 'n_jobs')

        if 'mlflow' in config:
            kwargs['mlflow'] = dict(config['mlflow'] or {})

        return cls(**kwargs)

    @classmethod
    def from_yaml(cls, path: str) -> 'PipelineConfig':
        with open(path, 'r', encoding='utf-8') as f:
            return cls.from_dict(yaml.safe_load(f))

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(asdict(self))

    def save(self, path: Path):
        Path(path).write_text(yaml.dump(self.to_dict()), encoding='utf-8')
