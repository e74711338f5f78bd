"""Test configuration and fixtures."""

import copy
import tempfile
from pathlib import Path

import numpy as np
import pytest

from tiered_ml.data_generation.generate_synthetic_data import (
    SyntheticCohortGenerator,
    balanced_two_feature_dataset,
    cohort_config,
    single_feature_config,
    two_feature_config,
)
from tiered_ml.pipeline.feature_tiers import FeatureTierRegistry
from tiered_ml.pipeline.preprocessing import DatasetSchema


@pytest.fixture
def cohort_data():
    """Imbalanced cohort (172 positive / 364 negative) with missing values in four columns."""
    return SyntheticCohortGenerator(seed=7).generate_dataset(n_records=536, prevalence=172 / 536)


@pytest.fixture
def cohort_schema():
    return DatasetSchema.from_config(cohort_config()["schema"])


@pytest.fixture
def cohort_tiers():
    return FeatureTierRegistry.from_config(cohort_config()["feature_tiers"])


@pytest.fixture
def two_feature_data():
    return balanced_two_feature_dataset(n_records=100, n_missing=5, seed=504)


@pytest.fixture
def two_feature_schema():
    return DatasetSchema.from_config(two_feature_config()["schema"])


@pytest.fixture
def single_feature_schema():
    return DatasetSchema.from_config(single_feature_config()["schema"])


def _fast_settings(config):
    config.update({
        "partition": {"train_fraction": 0.7, "seed": 504},
        "imputation": {"m": 2, "max_iter": 30, "tol": 0.1, "seed": 11},
        "cross_validation": {"n_splits": 3, "target_metric": "roc_auc"},
        "models": {
            "algorithms": ["logistic", "elastic_net", "random_forest"],
            "elastic_net": {"grid": {"alpha": [0.5, 1.0], "lambda": [0.01]}},
            "random_forest": {
                "n_estimators": 50,
                "grid": {"max_features": [1], "min_samples_leaf": [5], "criterion": ["gini"]},
            },
        },
        "evaluation": {"threshold": 0.5},
        "processing": {"scheduler": "synchronous", "progress_bar": False},
        "experiment_tracking": {"backend": "none"},
        "random_seed": 42,
    })
    return config


@pytest.fixture
def harness_config():
    """Small, fast configuration for the two-feature dataset."""
    return _fast_settings(copy.deepcopy(two_feature_config()))


@pytest.fixture
def cohort_harness_config():
    """Small, fast configuration for the synthetic cohort."""
    return _fast_settings(copy.deepcopy(cohort_config()))


@pytest.fixture
def temp_directory():
    """Create temporary directory for testing."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def binary_predictions():
    """Hand-checked labels and probabilities: TP=3, FN=1, TN=4, FP=2."""
    y_true = np.array([1, 1, 1, 1, 0, 0, 0, 0, 0, 0])
    y_proba = np.array([0.9, 0.8, 0.6, 0.3, 0.1, 0.2, 0.4, 0.45, 0.7, 0.55])
    return y_true, y_proba
