#!/usr/bin/env python
"""
Setup script for the COPD ED risk pipeline.
"""

from pathlib import Path

from setuptools import find_packages, setup

readme = Path(__file__).parent / "README.md"

setup(
    name="copd-ed-risk",
    version="1.0.0",
    description="Per-patient claims features and ED high-cost classifiers for COPD patients",
    long_description=readme.read_text(encoding="utf-8") if readme.exists() else "",
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=[
        "pandas>=1.5",
        "numpy>=1.23",
        "scikit-learn>=1.2",
        "imbalanced-learn>=0.11",
        "optuna>=3.0",
        "mlflow>=2.0",
        "dask[dataframe]>=2023.1",
        "pyarrow>=10.0",
        "pyyaml>=6.0",
        "joblib>=1.2",
        "faker>=18.0",
        "tqdm>=4.64",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "copd-ed-train=copd_ed_risk.pipeline.training_pipeline:main",
            "copd-ed-generate=copd_ed_risk.data_generation.generate_claims_data:main",
        ],
    },
)
