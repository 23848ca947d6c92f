"""
Test suite for the claims-to-patient pipeline stages.
"""

import pytest
import pandas as pd
import numpy as np
import yaml

from copd_ed_risk.pipeline.config import ConfigurationError, PipelineConfig, COUNT_COLUMNS
from copd_ed_risk.pipeline.feature_engineering import (
    COSTLY,
    NON_COSTLY,
    CategoricalEncoder,
    ClaimCategorizer,
    ClaimCategory,
    OutlierClamper,
    PatientAggregator,
    PatientWindowSplitter,
    assign_label,
    categorize,
    categorize_codes,
)
from copd_ed_risk.pipeline.preprocessing import (
    ClaimsCleaner,
    DataValidator,
    MissingValueHandler,
    age_bucket_lower_bound,
    normalize_code,
)
from copd_ed_risk.pipeline.resampling import MinorityOversampler, ResamplingError
from copd_ed_risk.pipeline.training_pipeline import EDRiskPipeline


# Test configuration
class TestPipelineConfig:
    """Test configuration loading and validation."""

    def test_defaults(self):
        config = PipelineConfig()
        assert config.window_days == 730
        assert config.costly_threshold == 10
        assert config.ed_location_code == '23'
        assert config.ed_financial_subcategory == 'ER'
        assert config.families == ['logistic_regression', 'random_forest', 'svm']

    def test_from_dict_nested_sections(self):
        config = PipelineConfig.from_dict({
            'random_seed': 7,
            'windowing': {'window_days': 365, 'ed_location_code': 23, 'costly_threshold': 5},
            'cross_validation': {'n_splits': 3, 'test_size': 0.25},
            'models': {'param_grids': {'svm': {'C': [1.0], 'gamma': [0.1]}}},
        })
        assert config.random_seed == 7
        assert config.window_days == 365
        assert config.ed_location_code == '23'
        assert config.cv_folds == 3
        assert config.param_grids['svm'] == {'C': [1.0], 'gamma': [0.1]}
        # Grids not overridden keep their defaults
        assert config.param_grids['logistic_regression']['C'][0] == 0.001

    def test_codes_normalized_on_construction(self):
        config = PipelineConfig(ed_location_code=23.0, ed_financial_subcategory=' er ')
        assert config.ed_location_code == '23'
        assert config.ed_financial_subcategory == 'ER'

    def test_yaml_round_trip(self, temp_directory):
        config = PipelineConfig(costly_threshold=4, global_statistics=False)
        path = temp_directory / 'config.yaml'
        config.save(path)
        with open(path) as f:
            saved = yaml.safe_load(f)
        assert saved['costly_threshold'] == 4
        assert saved['global_statistics'] is False

    @pytest.mark.parametrize('kwargs', [
        {'test_size': 1.5},
        {'test_size': 0.0},
        {'cv_folds': 1},
        {'families': ['gradient_boosting']},
        {'families': []},
        {'opt_metric': 'pr_auc'},
        {'oversample_percent': -100},
    ])
    def test_invalid_configuration(self, kwargs):
        with pytest.raises(ConfigurationError):
            PipelineConfig(**kwargs)


# Test cleaning
class TestClaimsCleaner:
    """Test claim-level cleaning."""

    def test_normalize_code(self):
        assert normalize_code(23.0) == '23'
        assert normalize_code(' j44.1 ') == 'J44.1'
        assert pd.isna(normalize_code(None))

    def test_age_bucket_lower_bound(self):
        assert age_bucket_lower_bound('18-34') == 18
        assert age_bucket_lower_bound('65+') == 65
        assert age_bucket_lower_bound('<18') == 0
        assert np.isnan(age_bucket_lower_bound(None))

    def test_minors_excluded(self, three_patient_claims):
        cleaned = ClaimsCleaner(PipelineConfig()).transform(three_patient_claims)
        assert 'D' not in set(cleaned['patient_id'])
        assert set(cleaned['patient_id']) == {'A', 'B', 'C'}

    def test_month_normalization_and_flags(self, three_patient_claims):
        raw = three_patient_claims.copy()
        raw.loc[0, 'claim_month'] = '2018-06-17'
        raw['procedure_location_code'] = raw['procedure_location_code'].map(
            lambda v: 23.0 if v == '23' else v
        )
        cleaned = ClaimsCleaner(PipelineConfig()).transform(raw)
        assert (cleaned['claim_month'].dt.day == 1).all()
        assert set(cleaned['procedure_location_code']) <= {'23', '11'}
        assert set(cleaned['deceased_flag']) == {0.0}

    def test_missing_column_fails_fast(self, three_patient_claims):
        with pytest.raises(ConfigurationError, match='financial_subcategory'):
            ClaimsCleaner(PipelineConfig()).transform(
                three_patient_claims.drop(columns=['financial_subcategory'])
            )

    def test_column_map(self, three_patient_claims):
        raw = three_patient_claims.rename(columns={'diagnosis_code': 'DX1'})
        config = PipelineConfig(column_map={'DX1': 'diagnosis_code'})
        cleaned = ClaimsCleaner(config).transform(raw)
        assert 'diagnosis_code' in cleaned.columns

    def test_drop_columns(self, three_patient_claims):
        raw = three_patient_claims.assign(service_count=1, diagnosis_description='x')
        cleaned = ClaimsCleaner(PipelineConfig()).transform(raw)
        assert 'service_count' not in cleaned.columns
        assert 'diagnosis_description' not in cleaned.columns

    def test_patient_with_any_minor_bucket_excluded(self, three_patient_claims):
        raw = pd.concat([
            three_patient_claims,
            pd.DataFrame([
                {**three_patient_claims.iloc[0].to_dict(), 'patient_id': 'E',
                 'claim_month': '2017-01-01', 'age_range': '<18'},
                {**three_patient_claims.iloc[0].to_dict(), 'patient_id': 'E',
                 'claim_month': '2020-01-01', 'age_range': '18-34'},
            ]),
        ], ignore_index=True)
        cleaned = ClaimsCleaner(PipelineConfig()).transform(raw)
        assert 'E' not in set(cleaned['patient_id'])

    def test_all_minors_raises(self, three_patient_claims):
        raw = three_patient_claims.assign(age_range='<18')
        with pytest.raises(ConfigurationError):
            ClaimsCleaner(PipelineConfig()).transform(raw)

    def test_global_imputation(self, three_patient_claims):
        raw = three_patient_claims.copy()
        raw.loc[0, 'deprivation_index'] = np.nan
        raw.loc[1, 'gender'] = None
        cleaned = ClaimsCleaner(PipelineConfig(global_statistics=True)).transform(raw)
        assert not cleaned['deprivation_index'].isnull().any()
        assert not cleaned['gender'].isnull().any()

        untouched = ClaimsCleaner(PipelineConfig(global_statistics=False)).transform(raw)
        assert untouched['deprivation_index'].isnull().sum() == 1


class TestMissingValueHandler:
    """Test missing value handling."""

    def test_fit_transform(self):
        df = pd.DataFrame({
            'numeric_col': [1.0, 2.0, np.nan, 4.0],
            'categorical_col': ['A', 'B', None, 'A'],
            'patient_id': ['P1', 'P2', None, 'P4'],
        })

        handler = MissingValueHandler(add_indicator=True, exclude=['patient_id'])
        df_transformed = handler.fit(df).transform(df)

        assert not df_transformed[['numeric_col', 'categorical_col']].isnull().any().any()
        assert df_transformed.loc[2, 'numeric_col'] == 2.0
        assert df_transformed.loc[2, 'categorical_col'] == 'A'
        assert df_transformed['patient_id'].isnull().sum() == 1
        assert 'numeric_col_was_missing' in df_transformed.columns


class TestDataValidator:
    """Test data validation."""

    def test_claims_rules(self):
        validator = DataValidator()
        validator.setup_claims_rules()

        df = pd.DataFrame({
            'patient_id': ['P1', None, 'P3'],
            'claim_month': ['2020-01-01', '2020-02-01', '2020-03-01'],
            'deprivation_index': [10.0, -5.0, 3.0],
            'deceased_flag': ['N', 'maybe', 'Y'],
        })

        violations = validator.validate(df)

        assert 'patient_id' in violations
        assert 'deprivation_index' in violations
        assert 'deceased_flag' in violations
        assert 'claim_month' not in violations


# Test categorization
class TestCategorization:
    """Test diagnosis code categorization."""

    @pytest.mark.parametrize('code,expected', [
        ('J44.1', ClaimCategory.COPD),
        ('J40', ClaimCategory.COPD),
        ('J47.9', ClaimCategory.COPD),
        ('J48', ClaimCategory.RESPIRATORY_NON_COPD),
        ('J18.9', ClaimCategory.RESPIRATORY_NON_COPD),
        ('I10', ClaimCategory.NON_RESPIRATORY),
        ('', ClaimCategory.NON_RESPIRATORY),
        (None, ClaimCategory.NON_RESPIRATORY),
    ])
    def test_categorize(self, code, expected):
        assert categorize(code) == expected

    def test_vectorized_matches_scalar(self):
        codes = pd.Series(['J44.1', 'J45', 'J18.9', 'I10', None, 'S72.001A', 'XJ44'])
        vectorized = categorize_codes(codes)
        assert vectorized.tolist() == [categorize(code).value for code in codes]

    def test_copd_is_respiratory(self):
        # Every COPD code also starts with J
        for code in ['J40', 'J41.0', 'J42', 'J43.9', 'J44.1', 'J45.909', 'J46', 'J47.1']:
            assert code.startswith('J')
            assert categorize(code) == ClaimCategory.COPD

    def test_injury_exclusion_anchored(self):
        claims = pd.DataFrame({
            'diagnosis_code': ['S72.001A', 'T78.40XA', 'V43.52XA', 'W19.XXXA', 'X58.XXXA',
                               'Y92.009', 'J44.1', 'I10', 'ZS1', None],
        })
        kept = ClaimCategorizer().transform(claims)
        assert kept['diagnosis_code'].tolist()[:3] == ['J44.1', 'I10', 'ZS1']
        assert len(kept) == 4
        assert 'claim_category' in kept.columns


# Test windowing
class TestPatientWindowSplitter:
    """Test per-patient feature/label windows."""

    def test_window_assignment(self):
        claims = pd.DataFrame({
            'patient_id': ['A'] * 4 + ['B'],
            'claim_month': pd.to_datetime(['2018-11-01', '2018-12-01', '2019-01-01',
                                           '2020-12-01', '2016-03-01']),
        })
        windowed = PatientWindowSplitter(window_days=730).transform(claims)

        a = windowed[windowed['patient_id'] == 'A']
        # 2020-12-01 minus 730 days is 2018-12-02
        assert a['in_label_window'].tolist() == [True, True, False, False]
        assert a['in_feature_window'].tolist() == [False, False, True, True]

        # A single-claim patient has only a feature window
        b = windowed[windowed['patient_id'] == 'B']
        assert b['in_feature_window'].all()
        assert not b['in_label_window'].any()

    def test_windows_partition_claims(self, synthetic_claims):
        config = PipelineConfig()
        claims = ClaimsCleaner(config).transform(synthetic_claims)
        windowed = PatientWindowSplitter().transform(ClaimCategorizer().transform(claims))
        assert (windowed['in_feature_window'] ^ windowed['in_label_window']).all()


# Test aggregation
class TestPatientAggregator:
    """Test claim-to-patient aggregation."""

    def test_three_patient_scenario(self, three_patient_claims, fast_config):
        features = EDRiskPipeline(fast_config).build_patient_table(three_patient_claims)
        features = features.set_index('patient_id')

        assert features.index.tolist() == ['A', 'B', 'C']

        a = features.loc['A']
        assert a['copd_ed_count'] == 2
        assert a['ed_count_feature'] == 2
        assert a['ed_count_label'] == 12
        assert a['total_claims_feature'] == 3
        assert a['respiratory_claims_feature'] == 2
        assert a['distinct_diagnoses_feature'] == 2
        assert a['label'] == COSTLY

        b = features.loc['B']
        assert b['copd_ed_count'] == 0
        assert b['ed_count_feature'] == 1
        assert b['ed_count_label'] == 3
        assert b['respiratory_claims_feature'] == 1
        assert b['label'] == NON_COSTLY
        assert b['gender'] == 'M'

        c = features.loc['C']
        for col in COUNT_COLUMNS + ['ed_count_label']:
            assert c[col] == 0
        assert c['label'] == NON_COSTLY
        assert c['service_location'] == 'South'

    def test_counts_match_feature_window(self, synthetic_claims, fast_config):
        pipeline = EDRiskPipeline(fast_config)
        features = pipeline.build_patient_table(synthetic_claims)
        claims = pipeline.claims_

        assert features['patient_id'].is_unique
        assert features['total_claims_feature'].sum() == int(claims['in_feature_window'].sum())
        assert (features[COUNT_COLUMNS + ['ed_count_label']] >= 0).all().all()
        assert (features['copd_ed_count'] <= features['ed_count_feature']).all()
        assert (features['respiratory_claims_feature'] <= features['total_claims_feature']).all()
        assert set(features['label']) == {COSTLY, NON_COSTLY}

    def test_partitioned_matches_single(self, synthetic_claims):
        single = EDRiskPipeline(PipelineConfig(mlflow={'backend': 'none'}))
        partitioned = EDRiskPipeline(PipelineConfig(n_partitions=4, mlflow={'backend': 'none'}))
        pd.testing.assert_frame_equal(
            single.build_patient_table(synthetic_claims),
            partitioned.build_patient_table(synthetic_claims),
        )

    def test_custom_ed_codes(self, three_patient_claims):
        config = PipelineConfig(ed_location_code='11', ed_financial_subcategory='PROF',
                                mlflow={'backend': 'none'})
        features = EDRiskPipeline(config).build_patient_table(three_patient_claims)
        a = features.set_index('patient_id').loc['A']
        # Only the office visit matches the custom ED definition
        assert a['ed_count_feature'] == 1
        assert a['ed_count_label'] == 0

    def test_only_injury_claims_raises(self, fast_config, claim_factory):
        raw = pd.DataFrame([
            claim_factory('A', '2020-06-01', 'S72.001A'),
            claim_factory('B', '2020-12-01', 'W19.XXXA'),
        ])
        with pytest.raises(ConfigurationError, match='diagnosis filtering'):
            EDRiskPipeline(fast_config).build_patient_table(raw)

    def test_numeric_ed_code_in_config(self, three_patient_claims):
        config = PipelineConfig(ed_location_code=23, mlflow={'backend': 'none'})
        assert config.ed_location_code == '23'
        features = EDRiskPipeline(config).build_patient_table(three_patient_claims)
        a = features.set_index('patient_id').loc['A']
        assert a['ed_count_feature'] == 2
        assert a['ed_count_label'] == 12

    def test_requires_windowed_claims(self):
        with pytest.raises(ValueError):
            PatientAggregator(PipelineConfig()).transform(pd.DataFrame({'patient_id': ['A']}))


class TestLabeling:
    """Test costly labeling."""

    def test_threshold(self):
        assert assign_label(10) == COSTLY
        assert assign_label(9) == NON_COSTLY
        assert assign_label(0) == NON_COSTLY
        assert assign_label(3, threshold=3) == COSTLY

    def test_monotonic(self):
        labels = [assign_label(n) for n in range(30)]
        first_costly = labels.index(COSTLY)
        assert all(label == COSTLY for label in labels[first_costly:])


# Test clamping and encoding
class TestOutlierClamper:
    """Test IQR clamping."""

    def test_fences(self):
        df = pd.DataFrame({'x': [1.0, 2.0, 3.0, 4.0, 100.0]})
        clamper = OutlierClamper(columns=['x'], multiplier=1.5).fit(df)
        bounds = clamper.get_bounds()['x']
        # Q1 = 2, Q3 = 4, IQR = 2
        assert bounds == {'lower': -1.0, 'upper': 7.0}
        assert clamper.transform(df)['x'].max() == 7.0

    def test_idempotent(self, patient_table):
        clamper = OutlierClamper(columns=COUNT_COLUMNS).fit(patient_table)
        once = clamper.transform(patient_table)
        twice = clamper.transform(once)
        pd.testing.assert_frame_equal(once, twice)
        for col, bound in clamper.get_bounds().items():
            assert once[col].between(bound['lower'], bound['upper']).all()


class TestCategoricalEncoder:
    """Test categorical encoding."""

    def test_one_hot_sums_to_one(self, patient_table):
        columns = ['age_range', 'gender', 'line_of_business', 'service_location']
        encoder = CategoricalEncoder(method='one_hot', columns=columns).fit(patient_table)
        encoded = encoder.transform(patient_table)

        for col in columns:
            assert col not in encoded.columns
            indicators = [c for c in encoded.columns if c.startswith(f'{col}_')]
            assert len(indicators) == patient_table[col].nunique()
            assert (encoded[indicators].sum(axis=1) == 1).all()

    def test_unseen_category(self):
        train = pd.DataFrame({'gender': ['M', 'F']})
        encoder = CategoricalEncoder(columns=['gender']).fit(train)
        encoded = encoder.transform(pd.DataFrame({'gender': ['U']}))
        assert encoded[['gender_F', 'gender_M']].sum(axis=1).tolist() == [0]
        assert encoder.get_feature_names_out() == ['gender_F', 'gender_M']

    def test_label_encoding(self):
        train = pd.DataFrame({'gender': ['M', 'F', 'M']})
        encoder = CategoricalEncoder(method='label_encoding', columns=['gender']).fit(train)
        encoded = encoder.transform(pd.DataFrame({'gender': ['F', 'U']}))
        assert encoded['gender'].tolist() == [0, -1]


# Test resampling
class TestMinorityOversampler:
    """Test SMOTE over-sampling with majority under-sampling."""

    def _imbalanced(self, n_min=10, n_maj=60):
        rng = np.random.default_rng(1)
        X = pd.DataFrame(rng.normal(size=(n_min + n_maj, 3)), columns=['a', 'b', 'c'])
        y = pd.Series([1] * n_min + [0] * n_maj, name='costly')
        return X, y

    def test_target_counts(self):
        X, y = self._imbalanced()
        X_res, y_res = MinorityOversampler(perc_over=200, perc_under=100).fit_resample(X, y)
        counts = y_res.value_counts()
        assert counts[1] == 30
        assert counts[0] == 30
        assert list(X_res.columns) == ['a', 'b', 'c']

    def test_majority_never_grows(self):
        X, y = self._imbalanced(n_min=10, n_maj=20)
        _, y_res = MinorityOversampler(perc_over=200, perc_under=200).fit_resample(X, y)
        assert y_res.value_counts()[0] == 20

    def test_too_few_minority_rows(self):
        X, y = self._imbalanced(n_min=5)
        with pytest.raises(ResamplingError):
            MinorityOversampler(k_neighbors=5).fit_resample(X, y)

    def test_single_class(self):
        X, y = self._imbalanced()
        with pytest.raises(ResamplingError):
            MinorityOversampler().fit_resample(X, pd.Series([0] * len(y)))


# Test model data preparation
class TestPrepareModelData:
    """Test split, preprocessing and leakage modes."""

    def test_split_reproducible(self, patient_table, fast_config):
        first = EDRiskPipeline(fast_config).prepare_model_data(patient_table)
        second = EDRiskPipeline(fast_config).prepare_model_data(patient_table)
        pd.testing.assert_frame_equal(first.X_test, second.X_test)
        pd.testing.assert_series_equal(first.y_test, second.y_test)

    def test_no_leaking_columns(self, patient_table, fast_config):
        data = EDRiskPipeline(fast_config).prepare_model_data(patient_table)
        for col in ['patient_id', 'label', 'ed_count_label']:
            assert col not in data.X_train.columns
        assert list(data.X_train.columns) == list(data.X_test.columns)

    def test_resampling_only_touches_train(self, patient_table, fast_config):
        data = EDRiskPipeline(fast_config).prepare_model_data(patient_table)
        assert len(data.X_test) == int(np.ceil(len(patient_table) * fast_config.test_size))

        n_costly_train = int((patient_table['label'] == COSTLY).sum()) - int(data.y_test.sum())
        n_other_train = len(patient_table) - len(data.y_test) - n_costly_train
        counts = data.y_train.value_counts()
        # perc_over=200 triples the minority; perc_under=100 caps the majority at that size
        assert counts[1] == 3 * n_costly_train
        assert counts[0] == min(n_other_train, 3 * n_costly_train)

    def test_train_only_statistics(self, patient_table):
        table = patient_table.copy()
        table.loc[:5, 'deprivation_index'] = np.nan
        table.loc[:3, 'gender'] = None
        config = PipelineConfig(global_statistics=False, mlflow={'backend': 'none'})
        pipeline = EDRiskPipeline(config)
        data = pipeline.prepare_model_data(table)

        assert pipeline.patient_imputer is not None
        assert not data.X_train.isnull().any().any()
        assert not data.X_test.isnull().any().any()

    def test_single_class_rejected(self, patient_table, fast_config):
        table = patient_table.assign(label=NON_COSTLY)
        with pytest.raises(ConfigurationError):
            EDRiskPipeline(fast_config).prepare_model_data(table)
