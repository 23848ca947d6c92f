"""
Claim-level cleaning: schema validation, month normalization, adult filter,
missing value imputation, and scaling of the final model matrix.
"""

import re
import pandas as pd
import numpy as np
import logging
import time
from typing import Dict, List, Optional
from sklearn.base import BaseEstimator, TransformerMixin
from sklearn.preprocessing import StandardScaler, MinMaxScaler
from sklearn.impute import SimpleImputer

from .config import ConfigurationError, PipelineConfig, REQUIRED_COLUMNS

logger = logging.getLogger(__name__)

CODE_COLUMNS = ['diagnosis_code', 'procedure_location_code', 'financial_subcategory']
FLAG_COLUMNS = ['deceased_flag', 'terminated_flag']

_FLAG_VALUES = {
    'Y': 1, 'YES': 1, 'TRUE': 1, 'T': 1,
    'N': 0, 'NO': 0, 'FALSE': 0, 'F': 0,
}


def normalize_code(value) -> Optional[str]:
    """Canonical string form of a claim code (``23.0`` -> ``'23'``, ``' j44.1'`` -> ``'J44.1'``)."""
    if pd.isna(value):
        return np.nan
    if isinstance(value, (float, np.floating)) and float(value).is_integer():
        return str(int(value))
    text = str(value).strip().upper()
    return text if text else np.nan


def coerce_flag(series: pd.Series) -> pd.Series:
    """Map Y/N, True/False and numeric flags onto 0/1, leaving unknowns missing."""
    numeric = pd.to_numeric(series, errors='coerce')
    mapped = series.map(lambda v: np.nan if pd.isna(v) else _FLAG_VALUES.get(str(v).strip().upper(), np.nan))
    return numeric.where(numeric.notna(), mapped).astype(float)


def age_bucket_lower_bound(bucket) -> float:
    """Lower age bound of a bucket label such as ``'18-34'``, ``'65+'`` or ``'<18'``."""
    if pd.isna(bucket):
        return np.nan
    text = str(bucket).strip().lower()
    match = re.search(r'\d+', text)
    if not match:
        return np.nan
    if text.startswith('<') or text.startswith('under'):
        return 0.0
    return float(match.group())


class MissingValueHandler(BaseEstimator, TransformerMixin):
    """Handle missing values with different strategies for numeric and categorical features."""

    def __init__(self,
                 numeric_strategy: str = 'median',
                 categorical_strategy: str = 'most_frequent',
                 add_indicator: bool = False,
                 exclude: Optional[List[str]] = None):
        """
        Initialize missing value handler.

        Args:
            numeric_strategy: Strategy for numeric features ('mean', 'median', 'constant')
            categorical_strategy: Strategy for categorical features ('most_frequent', 'constant')
            add_indicator: Whether to add binary indicator for missing values
            exclude: Columns that are never imputed (identifiers, dates)
        """
        self.numeric_strategy = numeric_strategy
        self.categorical_strategy = categorical_strategy
        self.add_indicator = add_indicator
        self.exclude = exclude
        self.numeric_imputer_ = None
        self.categorical_imputer_ = None
        self.numeric_features_ = []
        self.categorical_features_ = []
        self.missing_indicators_ = []

    def fit(self, X: pd.DataFrame, y=None):
        """Fit the missing value handler."""
        start_time = time.time()
        logger.info("Fitting missing value handler...")
        excluded = set(self.exclude or [])

        self.numeric_features_ = [c for c in X.select_dtypes(include=[np.number]).columns
                                  if c not in excluded]
        self.categorical_features_ = [c for c in X.select_dtypes(include=['object', 'category', 'string']).columns
                                      if c not in excluded]

        if self.numeric_features_:
            self.numeric_imputer_ = SimpleImputer(strategy=self.numeric_strategy, keep_empty_features=True)
            self.numeric_imputer_.fit(X[self.numeric_features_])

        if self.categorical_features_:
            self.categorical_imputer_ = SimpleImputer(strategy=self.categorical_strategy, keep_empty_features=True)
            self.categorical_imputer_.fit(self._as_object(X[self.categorical_features_]))

        if self.add_indicator:
            self.missing_indicators_ = [col for col in X.columns
                                        if col not in excluded and X[col].isnull().any()]

        elapsed_time = time.time() - start_time
        logger.info(f"Fitted missing value handler for {len(self.numeric_features_)} numeric "
                   f"and {len(self.categorical_features_)} categorical features in {elapsed_time:.2f} seconds")
        return self

    def transform(self, X: pd.DataFrame) -> pd.DataFrame:
        """Transform by handling missing values."""
        start_time = time.time()
        logger.info("Transforming missing values...")

        X_transformed = X.copy()

        if self.add_indicator:
            for col in self.missing_indicators_:
                if col in X_transformed.columns:
                    X_transformed[f'{col}_was_missing'] = X_transformed[col].isnull().astype(int)

        if self.numeric_features_ and self.numeric_imputer_:
            available_numeric = [col for col in self.numeric_features_ if col in X_transformed.columns]
            if len(available_numeric) == len(self.numeric_features_):
                X_transformed[available_numeric] = self.numeric_imputer_.transform(X_transformed[available_numeric])

        if self.categorical_features_ and self.categorical_imputer_:
            available_categorical = [col for col in self.categorical_features_ if col in X_transformed.columns]
            if len(available_categorical) == len(self.categorical_features_):
                X_transformed[available_categorical] = self.categorical_imputer_.transform(
                    self._as_object(X_transformed[available_categorical])
                )

        elapsed_time = time.time() - start_time
        logger.info(f"Missing value transformation completed in {elapsed_time:.2f} seconds")
        return X_transformed

    @staticmethod
    def _as_object(frame: pd.DataFrame) -> pd.DataFrame:
        # sklearn expects np.nan, not None / pd.NA, in object columns
        frame = frame.astype(object)
        return frame.where(frame.notna(), np.nan)


class DataValidator:
    """Validate claim table schema and data quality."""

    def __init__(self):
        self.validation_rules = {}

    @staticmethod
    def validate_schema(df: pd.DataFrame, required_columns: Optional[List[str]] = None):
        """Fail fast when the claim table cannot feed the pipeline."""
        required = required_columns or REQUIRED_COLUMNS
        missing = [col for col in required if col not in df.columns]
        if missing:
            raise ConfigurationError(
                f"Claims table is missing required columns: {missing}. "
                f"Available columns: {sorted(df.columns.tolist())}"
            )
        if df.empty:
            raise ConfigurationError("Claims table is empty")

    def add_rule(self, feature: str, rule_type: str, **kwargs):
        """Add validation rule for a feature."""
        if feature not in self.validation_rules:
            self.validation_rules[feature] = []

        self.validation_rules[feature].append({
            'type': rule_type,
            'params': kwargs
        })

    def validate(self, df: pd.DataFrame) -> Dict[str, List[str]]:
        """Validate dataframe against rules."""
        violations = {}

        for feature, rules in self.validation_rules.items():
            if feature not in df.columns:
                continue

            feature_violations = []

            for rule in rules:
                if rule['type'] == 'range':
                    min_val = rule['params'].get('min')
                    max_val = rule['params'].get('max')
                    values = pd.to_numeric(df[feature], errors='coerce')

                    if min_val is not None:
                        violation_count = (values < min_val).sum()
                        if violation_count > 0:
                            feature_violations.append(f"{violation_count} values below minimum {min_val}")

                    if max_val is not None:
                        violation_count = (values > max_val).sum()
                        if violation_count > 0:
                            feature_violations.append(f"{violation_count} values above maximum {max_val}")

                elif rule['type'] == 'categorical':
                    allowed_values = rule['params'].get('allowed_values', [])
                    invalid_mask = df[feature].notna() & ~df[feature].isin(allowed_values)
                    violation_count = invalid_mask.sum()

                    if violation_count > 0:
                        feature_violations.append(f"{violation_count} invalid categorical values")

                elif rule['type'] == 'missing_rate':
                    max_missing_rate = rule['params'].get('max_rate', 0.1)
                    missing_rate = df[feature].isnull().mean()

                    if missing_rate > max_missing_rate:
                        feature_violations.append(f"Missing rate {missing_rate:.2%} exceeds {max_missing_rate:.2%}")

            if feature_violations:
                violations[feature] = feature_violations

        return violations

    def setup_claims_rules(self):
        """Setup validation rules for claim-level data."""
        self.add_rule('deprivation_index', 'range', min=0)

        for flag in FLAG_COLUMNS:
            self.add_rule(flag, 'categorical', allowed_values=[0, 1, 0.0, 1.0, 'Y', 'N', True, False])

        for feature in ['patient_id', 'claim_month']:
            self.add_rule(feature, 'missing_rate', max_rate=0.0)
        self.add_rule('diagnosis_code', 'missing_rate', max_rate=0.05)


class ClaimsCleaner:
    """Turn a raw claim extract into the cleaned claim record store."""

    def __init__(self, config: PipelineConfig):
        self.config = config
        self.imputer_: Optional[MissingValueHandler] = None

    def transform(self, df: pd.DataFrame) -> pd.DataFrame:
        start_time = time.time()
        logger.info(f"Cleaning claims table with {len(df)} rows")

        claims = df.rename(columns=self.config.column_map) if self.config.column_map else df.copy()
        DataValidator.validate_schema(claims)

        claims['claim_month'] = self.normalize_month(claims['claim_month'])
        unusable = claims['patient_id'].isna() | claims['claim_month'].isna()
        if unusable.any():
            logger.warning(f"Dropping {int(unusable.sum())} rows without patient id or parseable claim month")
            claims = claims.loc[~unusable].copy()

        for col in CODE_COLUMNS:
            claims[col] = claims[col].map(normalize_code)
        for col in FLAG_COLUMNS:
            claims[col] = coerce_flag(claims[col])
        claims['deprivation_index'] = pd.to_numeric(claims['deprivation_index'], errors='coerce')
        claims['patient_id'] = claims['patient_id'].astype(str)

        to_drop = [col for col in self.config.drop_columns if col in claims.columns]
        if to_drop:
            claims = claims.drop(columns=to_drop)
            logger.info(f"Dropped unused columns: {to_drop}")

        claims = self.filter_adults(claims)
        if claims.empty:
            raise ConfigurationError(
                f"No claims left after excluding patients younger than {self.config.min_age}"
            )

        if self.config.global_statistics:
            # Population-wide medians/modes, computed before any patient split
            self.imputer_ = MissingValueHandler(exclude=['patient_id', 'claim_month'])
            claims = self.imputer_.fit(claims).transform(claims)

        claims = claims.reset_index(drop=True)
        elapsed_time = time.time() - start_time
        logger.info(f"Cleaned claims: {len(claims)} rows, {claims['patient_id'].nunique()} patients "
                    f"in {elapsed_time:.2f} seconds")
        return claims

    @staticmethod
    def normalize_month(values: pd.Series) -> pd.Series:
        """Parse claim months and snap them to the first day of the month."""
        parsed = pd.to_datetime(values, errors='coerce')
        return parsed.dt.to_period('M').dt.to_timestamp()

    def filter_adults(self, claims: pd.DataFrame) -> pd.DataFrame:
        """Drop every patient with any claim in an age bucket below ``min_age``."""
        lower_bounds = claims['age_range'].map(age_bucket_lower_bound)
        minor_ids = claims.loc[lower_bounds < self.config.min_age, 'patient_id'].unique()
        excluded = claims['patient_id'].isin(minor_ids)
        if excluded.any():
            logger.info(f"Excluding {len(minor_ids)} patients "
                        f"under {self.config.min_age} ({int(excluded.sum())} claims)")
        return claims.loc[~excluded].copy()


class DataScaler(BaseEstimator, TransformerMixin):
    """Scale numeric features while preserving categorical features."""

    def __init__(self, method: str = 'standard'):
        """
        Initialize scaler.

        Args:
            method: Scaling method ('standard', 'minmax')
        """
        self.method = method
        self.scaler_ = None
        self.numeric_features_ = []

    def fit(self, X: pd.DataFrame, y=None):
        """Fit the scaler."""
        start_time = time.time()
        logger.info(f"Fitting data scaler with method: {self.method}")

        self.numeric_features_ = X.select_dtypes(include=[np.number, 'bool']).columns.tolist()

        if self.method == 'standard':
            self.scaler_ = StandardScaler()
        elif self.method == 'minmax':
            self.scaler_ = MinMaxScaler()
        else:
            raise ValueError(f"Unknown scaling method: {self.method}")

        if self.numeric_features_:
            self.scaler_.fit(X[self.numeric_features_].astype(float))

        elapsed_time = time.time() - start_time
        logger.info(f"Fitted scaler for {len(self.numeric_features_)} numeric features in {elapsed_time:.2f} seconds")
        return self

    def transform(self, X: pd.DataFrame) -> pd.DataFrame:
        """Transform by scaling numeric features."""
        start_time = time.time()
        logger.info(f"Scaling numeric features using {self.method} scaling...")

        X_transformed = X.copy()

        if self.numeric_features_ and self.scaler_:
            available_numeric = [col for col in self.numeric_features_ if col in X_transformed.columns]
            if available_numeric:
                X_transformed[available_numeric] = self.scaler_.transform(
                    X_transformed[available_numeric].astype(float)
                )

        elapsed_time = time.time() - start_time
        logger.info(f"Scaling completed in {elapsed_time:.2f} seconds")
        return X_transformed
