"""
Synthetic Claims Data Generator with Dask

Generates a monthly claim extract for a respiratory-heavy population so the
training pipeline can be exercised end to end without protected health data.
A share of patients are frequent ED users in the older part of their history,
which is what the pipeline later labels as costly.
"""

import argparse
import logging
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np
import pandas as pd
import yaml
import dask.dataframe as dd
from dask.delayed import delayed
from faker import Faker
from tqdm import tqdm

logger = logging.getLogger(__name__)

CLAIM_COLUMNS = [
    'patient_id', 'claim_month', 'diagnosis_code', 'procedure_location_code',
    'financial_subcategory', 'age_range', 'gender', 'line_of_business',
    'deprivation_index', 'service_location', 'deceased_flag', 'terminated_flag',
    'service_count', 'diagnosis_description',
]


class ClaimsDataGenerator:
    """Generate synthetic monthly claims, one row per claim line."""

    def __init__(self, seed: int = 42,
                 missing_value_rates: Optional[Dict[str, float]] = None,
                 high_utilizer_rate: float = 0.2):
        """
        Args:
            seed: Random seed for reproducibility
            missing_value_rates: Per-column share of values blanked out.
                Default: {'deprivation_index': 0.05, 'gender': 0.02, 'diagnosis_code': 0.01}
            high_utilizer_rate: Share of patients with heavy ED use in their early history
        """
        self.seed = seed
        self.high_utilizer_rate = high_utilizer_rate
        self.fake = Faker()
        Faker.seed(seed)

        self.missing_value_rates = missing_value_rates or {
            'deprivation_index': 0.05,
            'gender': 0.02,
            'diagnosis_code': 0.01,
        }

        self.copd_codes = {'J44.1': 'COPD with exacerbation', 'J44.9': 'COPD, unspecified',
                           'J43.9': 'Emphysema, unspecified', 'J45.909': 'Asthma, uncomplicated'}
        self.respiratory_codes = {'J18.9': 'Pneumonia, unspecified', 'J20.9': 'Acute bronchitis',
                                  'J96.01': 'Acute respiratory failure with hypoxia', 'J06.9': 'Acute URI'}
        self.other_codes = {'I10': 'Essential hypertension', 'E11.9': 'Type 2 diabetes',
                            'N18.3': 'Chronic kidney disease, stage 3', 'F17.210': 'Nicotine dependence',
                            'I50.9': 'Heart failure, unspecified', 'Z51.11': 'Antineoplastic chemotherapy'}
        self.injury_codes = {'S72.001A': 'Fracture of femoral neck', 'T78.40XA': 'Allergy, unspecified',
                             'W19.XXXA': 'Unspecified fall', 'V43.52XA': 'Car driver injured',
                             'X58.XXXA': 'Exposure to other factors', 'Y92.009': 'Unspecified place in home'}

        self.age_ranges = ['<18', '18-34', '35-49', '50-64', '65+']
        self.age_weights = [0.03, 0.12, 0.20, 0.30, 0.35]
        self.lines_of_business = ['Medicare', 'Medicaid', 'Commercial', 'Dual']
        self.service_locations = ['North', 'South', 'East', 'West']
        # Non-ED (place of service, financial subcategory) pairs
        self.other_settings = [('11', 'PROF'), ('21', 'IP'), ('22', 'OP'), ('81', 'LAB'), ('01', 'RX')]

    def generate_patient_ids(self, num_patients: int) -> List[str]:
        self.fake.unique.clear()
        return [self.fake.unique.bothify(text='PT-########') for _ in range(num_patients)]

    def _diagnosis(self, rng: np.random.Generator, respiratory_share: float):
        draw = rng.random()
        if draw < 0.05:
            pool = self.injury_codes
        elif draw < 0.05 + respiratory_share * 0.6:
            pool = self.copd_codes
        elif draw < 0.05 + respiratory_share:
            pool = self.respiratory_codes
        else:
            pool = self.other_codes
        code = rng.choice(list(pool))
        return code, pool[code]

    def _patient_claims(self, patient_id: str, index: int, end_month: pd.Timestamp) -> List[Dict]:
        rng = np.random.default_rng([self.seed, index])

        demographics = {
            'age_range': rng.choice(self.age_ranges, p=self.age_weights),
            'gender': rng.choice(['M', 'F']),
            'line_of_business': rng.choice(self.lines_of_business, p=[0.45, 0.25, 0.2, 0.1]),
            'deprivation_index': round(float(rng.gamma(2.0, 15.0)), 1),
            'service_location': rng.choice(self.service_locations),
            'deceased_flag': 'Y' if rng.random() < 0.03 else 'N',
            'terminated_flag': 'Y' if rng.random() < 0.08 else 'N',
        }

        high_utilizer = rng.random() < self.high_utilizer_rate
        respiratory_share = rng.uniform(0.3, 0.8)
        history_months = int(rng.integers(30, 60))
        latest = end_month - pd.DateOffset(months=int(rng.integers(0, 6)))
        first = latest - pd.DateOffset(months=history_months)
        boundary = latest - pd.Timedelta(days=730)

        label_months = pd.date_range(first, boundary, freq='MS')
        feature_months = pd.date_range(boundary + pd.Timedelta(days=1), latest, freq='MS')

        plan = []
        # (months, ED claim rate, other claim rate)
        for months, ed_rate, other_rate in (
            (label_months, 14.0 if high_utilizer else 2.0, 12.0),
            (feature_months, 6.0 if high_utilizer else 1.0, 12.0),
        ):
            if len(months) == 0:
                continue
            plan += [(rng.choice(months), True) for _ in range(rng.poisson(ed_rate))]
            plan += [(rng.choice(months), False) for _ in range(rng.poisson(other_rate))]
        # Anchor the patient's latest claim month
        plan.append((latest, False))

        records = []
        for month, is_ed in plan:
            code, description = self._diagnosis(rng, respiratory_share)
            if is_ed:
                location, subcategory = '23', 'ER'
            else:
                location, subcategory = self.other_settings[rng.integers(len(self.other_settings))]
            records.append({
                'patient_id': patient_id,
                'claim_month': pd.Timestamp(month).strftime('%Y-%m-01'),
                'diagnosis_code': code,
                'procedure_location_code': location,
                'financial_subcategory': subcategory,
                **demographics,
                'service_count': int(rng.integers(1, 4)),
                'diagnosis_description': description,
            })
        return records

    def _apply_missing_values(self, df: pd.DataFrame, rng: np.random.Generator) -> pd.DataFrame:
        df = df.copy()
        for column, rate in self.missing_value_rates.items():
            if column in df.columns and rate > 0:
                mask = rng.random(len(df)) < rate
                df[column] = df[column].astype(object).where(~mask, np.nan)
        return df

    def _generate_batch(self, patient_batch: List[str], offset: int, end_month: pd.Timestamp) -> pd.DataFrame:
        """Generate all claims for a batch of patients."""
        records = []
        for i, patient_id in enumerate(patient_batch):
            records.extend(self._patient_claims(patient_id, offset + i, end_month))
        if not records:
            return pd.DataFrame(columns=CLAIM_COLUMNS)

        df = pd.DataFrame(records, columns=CLAIM_COLUMNS)
        df = self._apply_missing_values(df, np.random.default_rng([self.seed, offset, 7]))
        df['deprivation_index'] = pd.to_numeric(df['deprivation_index'], errors='coerce')
        return df

    def generate_dask_dataset(self, num_patients: int, end_month: str = '2019-12-01',
                              batch_size: int = 500) -> dd.DataFrame:
        """Generate the claim extract as a Dask DataFrame, one partition per patient batch."""
        logger.info(f"Generating claims for {num_patients:,} patients (batch size {batch_size})")
        patient_ids = self.generate_patient_ids(num_patients)
        end = pd.Timestamp(end_month)

        delayed_batches = []
        for start in tqdm(range(0, len(patient_ids), batch_size), desc="Scheduling batches"):
            batch_ids = patient_ids[start:start + batch_size]
            delayed_batches.append(delayed(self._generate_batch)(batch_ids, start, end))

        logger.info(f"Created {len(delayed_batches)} delayed tasks")
        meta = pd.DataFrame({col: pd.Series(dtype=object) for col in CLAIM_COLUMNS})
        meta = meta.astype({'deprivation_index': 'f8', 'service_count': 'i8'})
        # String dtype inference differs across pandas versions
        return dd.from_delayed(delayed_batches, meta=meta, verify_meta=False)

    def generate_dataset(self, num_patients: int, end_month: str = '2019-12-01',
                         batch_size: int = 500) -> pd.DataFrame:
        """Generate the claim extract as an in-memory pandas DataFrame."""
        df = self.generate_dask_dataset(num_patients, end_month, batch_size).compute()
        return df.reset_index(drop=True)

    def generate_and_save_to_parquet(self, num_patients: int, output_path: str,
                                     end_month: str = '2019-12-01', batch_size: int = 500) -> None:
        """Generate claims and write them straight to parquet."""
        logger.info(f"Generating and saving dataset to {output_path}")
        dask_df = self.generate_dask_dataset(num_patients, end_month, batch_size)
        dask_df.to_parquet(
            output_path,
            engine='pyarrow',
            write_index=False,
            compression='snappy',
        )
        logger.info(f"Dataset saved to {output_path}")


def main():
    """Main function for command-line usage."""
    logging.basicConfig(level=logging.INFO)
    parser = argparse.ArgumentParser(description="Generate synthetic claims data with Dask")
    parser.add_argument("--num_patients", type=int, default=5000,
                        help="Number of patients to generate")
    parser.add_argument("--end_month", type=str, default="2019-12-01",
                        help="Latest claim month in the extract")
    parser.add_argument("--output_dir", type=str, default="./data/raw",
                        help="Output directory for generated data")
    parser.add_argument("--batch_size", type=int, default=500,
                        help="Patients per Dask partition")
    parser.add_argument("--seed", type=int, default=42, help="Random seed")
    args = parser.parse_args()

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    output_path = output_dir / "claims.parquet"

    generator = ClaimsDataGenerator(seed=args.seed)
    generator.generate_and_save_to_parquet(
        num_patients=args.num_patients,
        output_path=str(output_path),
        end_month=args.end_month,
        batch_size=args.batch_size,
    )

    logger.info("Reading back for summary statistics...")
    df = dd.read_parquet(str(output_path)).compute()
    ed = (df['procedure_location_code'] == '23') & (df['financial_subcategory'] == 'ER')
    summary = {
        'total_claims': int(len(df)),
        'unique_patients': int(df['patient_id'].nunique()),
        'ed_claims': int(ed.sum()),
        'months_covered': [str(df['claim_month'].min()), str(df['claim_month'].max())],
        'features': list(df.columns),
        'missing_values': {k: int(v) for k, v in df.isnull().sum().items()},
        'missing_value_configuration': generator.missing_value_rates,
        'seed': generator.seed,
    }

    summary_path = output_dir / "data_summary.yaml"
    with open(summary_path, 'w') as f:
        yaml.dump(summary, f, default_flow_style=False)

    logger.info(f"Summary saved to {summary_path}")


if __name__ == "__main__":
    main()
