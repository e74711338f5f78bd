"""Pipeline stages: partitioning, imputation, tiers, training, evaluation, comparison."""

from .preprocessing import (
    ColumnType,
    DatasetSchema,
    build_feature_encoder,
)
from .partitioning import Partition, StratifiedSplitter, split
from .feature_tiers import FeatureTier, FeatureTierRegistry
from .imputation import IMPUTATION_METHODS, ImputationModel, MultipleImputer, imputation_spread
from .training import (
    AlgorithmFamily,
    LogisticRegressionFamily,
    ElasticNetFamily,
    RandomForestFamily,
    ModelTrainer,
    Predictor,
    TrainingConfig,
    select_forest_size,
)
from .evaluation import Evaluator, MetricBundle, evaluate
from .comparison import CellResult, ComparisonTable, aggregate, compare_variant
from .harness import ExperimentHarness, HarnessResult, SensitivityReport, load_predictor

__all__ = [
    'ColumnType',
    'DatasetSchema',
    'build_feature_encoder',
    'Partition',
    'StratifiedSplitter',
    'split',
    'FeatureTier',
    'FeatureTierRegistry',
    'IMPUTATION_METHODS',
    'ImputationModel',
    'MultipleImputer',
    'imputation_spread',
    'AlgorithmFamily',
    'LogisticRegressionFamily',
    'ElasticNetFamily',
    'RandomForestFamily',
    'ModelTrainer',
    'Predictor',
    'TrainingConfig',
    'select_forest_size',
    'Evaluator',
    'MetricBundle',
    'evaluate',
    'CellResult',
    'ComparisonTable',
    'aggregate',
    'compare_variant',
    'ExperimentHarness',
    'HarnessResult',
    'SensitivityReport',
    'load_predictor',
]
