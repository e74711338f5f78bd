"""
Tiered ML - experiment harness for binary classification

Partitions a labeled cohort, imputes the training partition with type-aware
multiple imputation, trains every algorithm family on every nested feature
tier with cross-validated tuning, and compares the validation metrics.
"""

__version__ = "1.0.0"

from .exceptions import (
    HarnessError,
    SchemaMismatchError,
    InsufficientDataError,
    NonConvergenceError,
    ConvergenceError,
    LeakageViolation,
)
from .pipeline import (
    ColumnType,
    DatasetSchema,
    FeatureTier,
    FeatureTierRegistry,
    MultipleImputer,
    ModelTrainer,
    TrainingConfig,
    Predictor,
    Evaluator,
    MetricBundle,
    ComparisonTable,
    ExperimentHarness,
    split,
)

__all__ = [
    'HarnessError',
    'SchemaMismatchError',
    'InsufficientDataError',
    'NonConvergenceError',
    'ConvergenceError',
    'LeakageViolation',
    'ColumnType',
    'DatasetSchema',
    'FeatureTier',
    'FeatureTierRegistry',
    'MultipleImputer',
    'ModelTrainer',
    'TrainingConfig',
    'Predictor',
    'Evaluator',
    'MetricBundle',
    'ComparisonTable',
    'ExperimentHarness',
    'split',
]
