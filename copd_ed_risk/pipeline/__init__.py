"""Pipeline stages and shared components."""

from .config import ConfigurationError, PipelineConfig

from .feature_engineering import (
    ClaimCategory,
    ClaimCategorizer,
    PatientWindowSplitter,
    PatientAggregator,
    OutlierClamper,
    CategoricalEncoder,
    categorize,
    assign_label,
    create_preprocessing_pipeline
)

from .preprocessing import (
    ClaimsCleaner,
    MissingValueHandler,
    DataValidator,
    DataScaler,
)

from .resampling import MinorityOversampler, ResamplingError

__all__ = [
    'ConfigurationError',
    'PipelineConfig',
    'ClaimCategory',
    'ClaimCategorizer',
    'PatientWindowSplitter',
    'PatientAggregator',
    'OutlierClamper',
    'CategoricalEncoder',
    'categorize',
    'assign_label',
    'create_preprocessing_pipeline',
    'ClaimsCleaner',
    'MissingValueHandler',
    'DataValidator',
    'DataScaler',
    'MinorityOversampler',
    'ResamplingError',
]
