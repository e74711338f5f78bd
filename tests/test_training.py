"""
Tests for cross-validated training and fitted predictors.
"""

from dataclasses import dataclass

import numpy as np
import pandas as pd
import pytest
from sklearn.linear_model import LogisticRegression

from tiered_ml.exceptions import (
    ConvergenceError,
    InsufficientDataError,
    LeakageViolation,
    SchemaMismatchError,
)
from tiered_ml.pipeline.imputation import MultipleImputer
from tiered_ml.pipeline.partitioning import split
from tiered_ml.pipeline.training import (
    ElasticNetFamily,
    LogisticRegressionFamily,
    ModelTrainer,
    Predictor,
    RandomForestFamily,
    TrainingConfig,
    algorithms_from_config,
    get_algorithm,
    select_forest_size,
    with_forest_size,
)


@dataclass(frozen=True)
class IterationLimitedFamily(LogisticRegressionFamily):
    """Logistic regression whose iteration budget is a tuning parameter."""

    name: str = "iteration_limited"

    def build_estimator(self, params, n_samples, seed):
        return LogisticRegression(max_iter=params["iterations"])


@dataclass(frozen=True)
class ParameterBlindFamily(LogisticRegressionFamily):
    """Ignores its configuration, so every configuration scores the same."""

    name: str = "parameter_blind"

    def build_estimator(self, params, n_samples, seed):
        return LogisticRegression(max_iter=1000)


@pytest.fixture
def cohort_partition(cohort_data):
    return split(cohort_data, "outcome", 0.7, seed=21)


@pytest.fixture
def completed_train(cohort_schema, cohort_partition):
    _, completed = MultipleImputer(cohort_schema, m=1, seed=5).fit_complete(cohort_partition.train)
    return completed


@pytest.fixture
def trainer(cohort_schema):
    return ModelTrainer(cohort_schema, TrainingConfig(cv_folds=3, seed=13))


class TestTrainingConfig:
    """Test shared training settings."""

    def test_from_config(self):
        config = TrainingConfig.from_config({
            "cross_validation": {"n_splits": 4, "n_repeats": 2, "target_metric": "f1"},
            "evaluation": {"threshold": 0.4},
            "random_seed": 7,
        })

        assert config.cv_folds == 4
        assert config.cv_repeats == 2
        assert config.target_metric == "f1"
        assert config.threshold == 0.4
        assert config.seed == 7

    def test_invalid_settings(self):
        with pytest.raises(ValueError):
            TrainingConfig(cv_folds=1)
        with pytest.raises(ValueError):
            TrainingConfig(target_metric="log_loss")


class TestAlgorithmFamilies:
    """Test the algorithm family implementations."""

    def test_elastic_net_penalty_mapping(self):
        estimator = ElasticNetFamily().build_estimator({"alpha": 0.25, "lambda": 0.01}, n_samples=200, seed=0)

        assert estimator.l1_ratio == 0.25
        assert estimator.C == pytest.approx(0.5)
        assert estimator.solver == "saga"

    @pytest.mark.filterwarnings("error::FutureWarning")
    def test_elastic_net_fits_without_deprecation_warning(self):
        rng = np.random.default_rng(0)
        X = rng.normal(size=(60, 3))
        y = (X[:, 0] + rng.normal(scale=0.5, size=60) > 0).astype(int)
        estimator = ElasticNetFamily().build_estimator({"alpha": 0.5, "lambda": 0.01}, n_samples=60, seed=0)

        estimator.fit(X, y)

        assert estimator.coef_.shape == (1, 3)

    def test_elastic_net_rejects_bad_parameters(self):
        with pytest.raises(ValueError):
            ElasticNetFamily().build_estimator({"alpha": 1.5, "lambda": 0.01}, 100, 0)
        with pytest.raises(ValueError):
            ElasticNetFamily().build_estimator({"alpha": 0.5, "lambda": 0.0}, 100, 0)

    def test_random_forest_default_grid(self):
        grid = RandomForestFamily().default_grid(n_features=4)

        assert grid["max_features"] == [1, 2, 4]
        assert grid["min_samples_leaf"] == [1, 5, 10]
        assert grid["criterion"] == ["gini", "entropy"]

    def test_logistic_has_single_configuration(self):
        assert LogisticRegressionFamily().default_grid(5) == {}

    def test_get_algorithm(self):
        assert isinstance(get_algorithm("random_forest"), RandomForestFamily)
        with pytest.raises(ValueError):
            get_algorithm("gradient_boosting")

    def test_algorithms_from_config(self):
        families = algorithms_from_config({
            "models": {
                "algorithms": ["random_forest", "logistic"],
                "random_forest": {"n_estimators": 50, "leaf_sizes": [2, 4], "grid": {"max_features": [1]}},
            }
        })

        assert list(families) == ["random_forest", "logistic"]
        assert families["random_forest"].n_estimators == 50
        assert families["random_forest"].leaf_sizes == (2, 4)

    def test_with_forest_size(self):
        assert with_forest_size(RandomForestFamily(), 250).n_estimators == 250
        with pytest.raises(TypeError):
            with_forest_size(LogisticRegressionFamily(), 250)


class TestModelTrainer:
    """Test the generic cross-validated grid search."""

    def test_train_logistic(self, trainer, completed_train, cohort_tiers):
        predictor = trainer.train(completed_train, cohort_tiers["examination"], "logistic")

        assert predictor.algorithm == "logistic"
        assert predictor.tier.name == "examination"
        assert predictor.params == {}
        assert 0.0 <= predictor.cv_score <= 1.0
        assert len(predictor.cv_results) == 1
        assert predictor.n_train == len(completed_train)

    def test_deterministic(self, trainer, completed_train, cohort_tiers):
        family = RandomForestFamily(n_estimators=30)
        grid = {"max_features": [1, 2], "min_samples_leaf": [5], "criterion": ["gini"]}
        first = trainer.train(completed_train, cohort_tiers["history"], family, tuning_grid=grid)
        second = trainer.train(completed_train, cohort_tiers["history"], family, tuning_grid=grid)

        assert first.params == second.params
        assert first.cv_score == second.cv_score
        np.testing.assert_array_equal(
            first.predict_probability(completed_train), second.predict_probability(completed_train)
        )

    def test_grid_order_and_ties(self, trainer, completed_train, cohort_tiers):
        predictor = trainer.train(completed_train, cohort_tiers["history"], ParameterBlindFamily(),
                                  tuning_grid={"dummy": [3, 1, 2]})

        assert predictor.params == {"dummy": 3}
        assert predictor.cv_results["param_dummy"].tolist() == [3, 1, 2]
        assert predictor.cv_results["mean_roc_auc"].nunique() == 1

    def test_non_converged_configuration_excluded(self, trainer, completed_train, cohort_tiers):
        predictor = trainer.train(completed_train, cohort_tiers["history"], IterationLimitedFamily(),
                                  tuning_grid={"iterations": [1, 1000]})

        assert predictor.params == {"iterations": 1000}
        errors = predictor.cv_results.set_index("param_iterations")["error"]
        assert predictor.cv_results["error"].dtype == object
        assert isinstance(errors[1], str)
        assert errors[1000] is None

    def test_all_configurations_fail(self, trainer, completed_train, cohort_tiers):
        with pytest.raises(ConvergenceError):
            trainer.train(completed_train, cohort_tiers["history"], IterationLimitedFamily(),
                          tuning_grid={"iterations": [1]})

    def test_elastic_net_search(self, trainer, completed_train, cohort_tiers):
        grid = {"alpha": [0.0, 1.0], "lambda": [0.01, 0.1]}
        predictor = trainer.train(completed_train, cohort_tiers["laboratory"], "elastic_net", tuning_grid=grid)

        assert predictor.params["alpha"] in (0.0, 1.0)
        assert predictor.params["lambda"] in (0.01, 0.1)
        assert len(predictor.cv_results) == 4
        assert predictor.cv_score == predictor.cv_results["mean_roc_auc"].max()

    def test_class_balanced_training(self, trainer, completed_train, cohort_tiers):
        predictor = trainer.train(completed_train, cohort_tiers["history"], "logistic", balance_classes=True)

        n_minority = int(completed_train["outcome"].value_counts().min())
        assert predictor.n_train == 2 * n_minority

    def test_missing_values_rejected(self, trainer, cohort_partition, cohort_tiers):
        with pytest.raises(ValueError):
            trainer.train(cohort_partition.train, cohort_tiers["imaging"], "logistic")

    def test_unknown_tier_column_rejected(self, trainer, completed_train, cohort_tiers):
        with pytest.raises(SchemaMismatchError):
            trainer.train(completed_train.drop(columns=["age"]), cohort_tiers["history"], "logistic")

    def test_validation_frame_refused(self, trainer, cohort_partition, cohort_tiers):
        validation = cohort_partition.validation.dropna()
        validation.attrs["partition_role"] = "validation"

        with pytest.raises(LeakageViolation):
            trainer.train(validation, cohort_tiers["history"], "logistic")

    def test_too_few_records_per_class(self, cohort_schema, cohort_tiers):
        df = pd.DataFrame({
            "age": [25.0, 31.0, 28.0, 40.0, 35.0, 22.0, 30.0, 33.0],
            "gravidity": [1.0, 2.0, 1.0, 3.0, 2.0, 1.0, 2.0, 4.0],
            "prior_ectopic": ["No", "Yes", "No", "No", "Yes", "No", "No", "No"],
            "outcome": ["Yes", "Yes", "No", "No", "No", "No", "No", "No"],
        })
        trainer = ModelTrainer(cohort_schema, TrainingConfig(cv_folds=5))

        with pytest.raises(InsufficientDataError):
            trainer.train(df, cohort_tiers["history"], "logistic")


class TestPredictor:
    """Test fitted predictors."""

    @pytest.fixture
    def predictor(self, trainer, completed_train, cohort_tiers):
        return trainer.train(completed_train, cohort_tiers["examination"], "logistic")

    def test_predict_single_record(self, predictor, completed_train):
        record = completed_train.iloc[0][list(predictor.tier.columns)].to_dict()

        probability = predictor.predict_probability(record)
        label = predictor.predict(record)

        assert isinstance(probability, float)
        assert 0.0 <= probability <= 1.0
        assert label == ("Yes" if probability >= 0.5 else "No")

    def test_predict_frame(self, predictor, completed_train):
        probabilities = predictor.predict_probability(completed_train)
        labels = predictor.predict(completed_train)

        assert probabilities.shape == (len(completed_train),)
        assert set(labels) <= {"Yes", "No"}
        np.testing.assert_array_equal(labels == "Yes", probabilities >= 0.5)

    def test_missing_tier_column(self, predictor):
        with pytest.raises(SchemaMismatchError):
            predictor.predict({"age": 30.0})

    def test_missing_value_in_record(self, predictor, completed_train):
        record = completed_train.iloc[0][list(predictor.tier.columns)].to_dict()
        record["age"] = np.nan

        with pytest.raises(ValueError):
            predictor.predict_probability(record)

    def test_variable_importance(self, predictor):
        importance = predictor.variable_importance()
        features = [name for name, _ in importance]
        scores = [score for _, score in importance]

        assert sorted(features) == sorted(predictor.tier.columns)
        assert scores == sorted(scores, reverse=True)
        assert all(score >= 0 for score in scores)

    def test_save_and_load(self, predictor, completed_train, temp_directory):
        path = predictor.save(temp_directory / "models" / "logistic__examination.joblib")
        loaded = Predictor.load(path)

        assert loaded.params == predictor.params
        assert loaded.tier == predictor.tier
        np.testing.assert_allclose(
            loaded.predict_probability(completed_train), predictor.predict_probability(completed_train)
        )

    def test_load_missing_file(self, temp_directory):
        with pytest.raises(FileNotFoundError):
            Predictor.load(temp_directory / "absent.joblib")


class TestForestSize:
    """Test the once-per-run forest size check."""

    def test_stops_when_gain_below_margin(self, trainer, completed_train, cohort_tiers):
        size, scores = select_forest_size(trainer, completed_train, cohort_tiers["history"],
                                          candidates=(20, 10, 40), margin=1.0)

        assert size == 10
        assert list(scores) == [10, 20]

    def test_adopts_larger_forest_when_it_helps(self, trainer, completed_train, cohort_tiers):
        size, scores = select_forest_size(trainer, completed_train, cohort_tiers["history"],
                                          candidates=(10, 20, 40), margin=-1.0)

        assert size == 40
        assert list(scores) == [10, 20, 40]
