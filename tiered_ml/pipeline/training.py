"""
Cross-validated model training over algorithm families and feature tiers.

One generic routine runs stratified k-fold grid search for any algorithm
family. Families only describe how to build an estimator from a configuration,
their default tuning grid and how to read variable importance off the fit.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import sklearn
from imblearn.under_sampling import RandomUnderSampler
from sklearn.ensemble import RandomForestClassifier
from sklearn.linear_model import LogisticRegression
from sklearn.model_selection import ParameterGrid, RepeatedStratifiedKFold, StratifiedKFold
from sklearn.pipeline import Pipeline
from sklearn.utils.fixes import parse_version

from tiered_ml.exceptions import ConvergenceError, InsufficientDataError, SchemaMismatchError
from tiered_ml.pipeline.feature_tiers import FeatureTier
from tiered_ml.pipeline.partitioning import ensure_not_validation
from tiered_ml.pipeline.preprocessing import DatasetSchema, build_feature_encoder, source_columns
from tiered_ml.utils.model_utils import TARGET_METRICS, load_model, save_model, score_metric

logger = logging.getLogger(__name__)

Folds = List[Tuple[np.ndarray, np.ndarray]]

# scikit-learn 1.8 deprecated `penalty`; l1_ratio alone selects the elastic-net mix
_L1_RATIO_SELECTS_PENALTY = parse_version(sklearn.__version__).release >= (1, 8)


@dataclass(frozen=True)
class TrainingConfig:
    """Training settings shared by every (algorithm, tier) cell."""

    cv_folds: int = 5
    cv_repeats: int = 1
    target_metric: str = "roc_auc"
    threshold: float = 0.5
    seed: int = 42
    balance_classes: bool = False

    def __post_init__(self):
        if self.cv_folds < 2:
            raise ValueError(f"cv_folds must be at least 2, got {self.cv_folds}")
        if self.target_metric not in TARGET_METRICS:
            raise ValueError(f"Unknown target metric: {self.target_metric}")

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "TrainingConfig":
        cv_cfg = config.get("cross_validation", {})
        return cls(
            cv_folds=int(cv_cfg.get("n_splits", 5)),
            cv_repeats=int(cv_cfg.get("n_repeats", 1)),
            target_metric=cv_cfg.get("target_metric", "roc_auc"),
            threshold=float(config.get("evaluation", {}).get("threshold", 0.5)),
            seed=int(config.get("random_seed", 42)),
        )


# =====================
# Algorithm families
# =====================
class AlgorithmFamily(ABC):
    """Capability interface implemented by every algorithm family."""

    name: str = ""
    scale_features: bool = True

    def default_grid(self, n_features: int) -> Dict[str, List[Any]]:
        return {}

    @abstractmethod
    def build_estimator(self, params: Dict[str, Any], n_samples: int, seed: int):
        """Return an unfitted scikit-learn classifier for one configuration."""

    def converged(self, estimator) -> bool:
        return True

    @abstractmethod
    def importance(self, estimator) -> np.ndarray:
        """Importance score of every encoded feature."""


@dataclass(frozen=True)
class LogisticRegressionFamily(AlgorithmFamily):
    """Unpenalised logistic regression; a single configuration."""

    max_iter: int = 1000
    name: str = "logistic"

    def build_estimator(self, params: Dict[str, Any], n_samples: int, seed: int):
        return LogisticRegression(C=np.inf, max_iter=self.max_iter)

    def converged(self, estimator) -> bool:
        return bool(np.all(np.asarray(estimator.n_iter_) < estimator.max_iter))

    def importance(self, estimator) -> np.ndarray:
        return np.abs(estimator.coef_[0])


@dataclass(frozen=True)
class ElasticNetFamily(LogisticRegressionFamily):
    """Elastic-net logistic regression tuned over mixing ``alpha`` and strength ``lambda``.

    ``lambda`` follows the glmnet convention (penalty on the mean loss), so the
    scikit-learn inverse strength is ``C = 1 / (n_samples * lambda)``.
    """

    max_iter: int = 5000
    alphas: Tuple[float, ...] = (0.0, 0.25, 0.5, 0.75, 1.0)
    lambdas: Tuple[float, ...] = (0.0001, 0.001, 0.01, 0.1)
    name: str = "elastic_net"

    def default_grid(self, n_features: int) -> Dict[str, List[Any]]:
        return {"alpha": list(self.alphas), "lambda": list(self.lambdas)}

    def build_estimator(self, params: Dict[str, Any], n_samples: int, seed: int):
        alpha = float(params.get("alpha", 0.5))
        lam = float(params.get("lambda", 0.01))
        if not 0.0 <= alpha <= 1.0:
            raise ValueError(f"alpha must be in [0, 1], got {alpha}")
        if lam <= 0:
            raise ValueError(f"lambda must be positive, got {lam}")
        options = {} if _L1_RATIO_SELECTS_PENALTY else {"penalty": "elasticnet"}
        return LogisticRegression(
            solver="saga",
            l1_ratio=alpha,
            C=1.0 / (n_samples * lam),
            max_iter=self.max_iter,
            random_state=seed,
            **options,
        )


@dataclass(frozen=True)
class RandomForestFamily(AlgorithmFamily):
    """Random forest tuned over candidate features per split and leaf size.

    The forest size is fixed per run (see :func:`select_forest_size`).
    """

    n_estimators: int = 500
    leaf_sizes: Tuple[int, ...] = (1, 5, 10)
    criteria: Tuple[str, ...] = ("gini", "entropy")
    name: str = "random_forest"
    scale_features: bool = False

    def default_grid(self, n_features: int) -> Dict[str, List[Any]]:
        mtry = sorted({1, max(1, int(np.sqrt(n_features))), max(1, n_features // 2), n_features})
        return {
            "max_features": mtry,
            "min_samples_leaf": list(self.leaf_sizes),
            "criterion": list(self.criteria),
        }

    def build_estimator(self, params: Dict[str, Any], n_samples: int, seed: int):
        return RandomForestClassifier(
            n_estimators=self.n_estimators,
            max_features=params.get("max_features", "sqrt"),
            min_samples_leaf=params.get("min_samples_leaf", 1),
            criterion=params.get("criterion", "gini"),
            random_state=seed,
            n_jobs=1,
        )

    def importance(self, estimator) -> np.ndarray:
        return estimator.feature_importances_


# Per-family config keys consumed by the harness rather than the family itself
RUN_LEVEL_KEYS = ("grid", "size_candidates", "size_margin")

ALGORITHMS: Dict[str, type] = {
    "logistic": LogisticRegressionFamily,
    "elastic_net": ElasticNetFamily,
    "random_forest": RandomForestFamily,
}


def get_algorithm(name: str, **kwargs) -> AlgorithmFamily:
    if name not in ALGORITHMS:
        raise ValueError(f"Unknown algorithm: {name}")
    return ALGORITHMS[name](**kwargs)


def algorithms_from_config(config: Dict[str, Any]) -> Dict[str, AlgorithmFamily]:
    """Instantiate the configured families, in declared order."""
    model_cfg = config.get("models", {})
    names = model_cfg.get("algorithms", list(ALGORITHMS))
    families: Dict[str, AlgorithmFamily] = {}
    for name in names:
        options = {k: (tuple(v) if isinstance(v, list) else v)
                   for k, v in model_cfg.get(name, {}).items() if k not in RUN_LEVEL_KEYS}
        families[name] = get_algorithm(name, **options)
    return families


# =====================
# Predictor
# =====================
@dataclass(frozen=True)
class Predictor:
    """Fitted model for one (algorithm, tier, configuration).

    Holds the fitted encoder + estimator pipeline and the tier's columns; no
    training data is retained.
    """

    algorithm: str
    tier: FeatureTier
    params: Dict[str, Any]
    pipeline: Pipeline
    classes: Tuple[Any, Any]
    target_metric: str
    cv_score: float
    cv_results: pd.DataFrame
    importance: Tuple[Tuple[str, float], ...]
    n_train: int
    seed: int
    threshold: float = 0.5

    def _frame(self, records: Union[Dict[str, Any], pd.DataFrame, Sequence[Dict[str, Any]]]) -> pd.DataFrame:
        df = pd.DataFrame([records]) if isinstance(records, dict) else pd.DataFrame(records)
        missing = [c for c in self.tier.columns if c not in df.columns]
        if missing:
            raise SchemaMismatchError(f"Records lack tier '{self.tier.name}' columns: {missing}")
        X = df[list(self.tier.columns)]
        if X.isnull().any().any():
            raise ValueError(f"Records have missing values in tier '{self.tier.name}' columns")
        return X

    def predict_probability(self, records):
        """P(positive class) for one record (dict) or many (frame / list of dicts)."""
        proba = self.pipeline.predict_proba(self._frame(records))[:, 1]
        return float(proba[0]) if isinstance(records, dict) else proba

    def predict(self, records):
        """Predicted label value(s) at the predictor's threshold."""
        proba = np.atleast_1d(self.predict_probability(records))
        labels = np.where(proba >= self.threshold, self.classes[1], self.classes[0])
        return labels[0].item() if isinstance(records, dict) else labels

    def variable_importance(self) -> List[Tuple[str, float]]:
        return list(self.importance)

    def save(self, path: Union[str, Path]) -> Path:
        return save_model(self, path)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "Predictor":
        predictor = load_model(path)
        if not isinstance(predictor, cls):
            raise TypeError(f"{path} does not contain a Predictor")
        return predictor


def _rank_importance(scores: np.ndarray, sources: List[str]) -> Tuple[Tuple[str, float], ...]:
    """Fold encoded-feature scores back onto source columns and rank them."""
    totals: Dict[str, float] = {}
    for col, score in zip(sources, scores):
        totals[col] = totals.get(col, 0.0) + float(score)
    return tuple(sorted(totals.items(), key=lambda kv: kv[1], reverse=True))


# =====================
# Trainer
# =====================
@dataclass
class ConfigurationResult:
    params: Dict[str, Any]
    fold_scores: List[float] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def mean_score(self) -> float:
        return float(np.mean(self.fold_scores)) if self.error is None else float("nan")


class ModelTrainer:
    """Trains one predictor per (completed training table, tier, algorithm)."""

    def __init__(self, schema: DatasetSchema, config: Optional[TrainingConfig] = None):
        self.schema = schema
        self.config = config or TrainingConfig()

    def make_folds(self, y: np.ndarray, cv_folds: int, seed: int) -> Folds:
        counts = np.bincount(y, minlength=2)
        if counts.min() < cv_folds:
            raise InsufficientDataError(
                f"{cv_folds}-fold stratified CV needs at least {cv_folds} records per class, got {counts.tolist()}"
            )
        if self.config.cv_repeats > 1:
            splitter = RepeatedStratifiedKFold(n_splits=cv_folds, n_repeats=self.config.cv_repeats, random_state=seed)
        else:
            splitter = StratifiedKFold(n_splits=cv_folds, shuffle=True, random_state=seed)
        return list(splitter.split(np.zeros(len(y)), y))

    def _pipeline(self, family: AlgorithmFamily, columns: Sequence[str], params: Dict[str, Any],
                  n_samples: int, seed: int) -> Pipeline:
        return Pipeline([
            ("encode", build_feature_encoder(self.schema, columns, scale=family.scale_features)),
            ("model", family.build_estimator(params, n_samples, seed)),
        ])

    def fit_configuration(self, family: AlgorithmFamily, X: pd.DataFrame, y: np.ndarray,
                          params: Dict[str, Any], seed: int) -> Pipeline:
        """Fit one configuration, raising ConvergenceError if the optimiser gave up."""
        pipeline = self._pipeline(family, list(X.columns), params, len(X), seed)
        pipeline.fit(X, y)
        if not family.converged(pipeline.named_steps["model"]):
            raise ConvergenceError(f"{family.name} did not converge with {params}")
        return pipeline

    def cross_validate(self, family: AlgorithmFamily, X: pd.DataFrame, y: np.ndarray,
                       params: Dict[str, Any], folds: Folds, target_metric: str, seed: int) -> ConfigurationResult:
        result = ConfigurationResult(params=dict(params))
        for train_idx, test_idx in folds:
            pipeline = self.fit_configuration(family, X.iloc[train_idx], y[train_idx], params, seed)
            proba = pipeline.predict_proba(X.iloc[test_idx])[:, 1]
            result.fold_scores.append(score_metric(target_metric, y[test_idx], proba, self.config.threshold))
        return result

    def search(self, family: AlgorithmFamily, X: pd.DataFrame, y: np.ndarray, grid: Dict[str, List[Any]],
               folds: Folds, target_metric: str, seed: int, tier_name: str = "") -> Tuple[Dict[str, Any], List[ConfigurationResult]]:
        """Grid search with fixed folds; the first best configuration wins."""
        results: List[ConfigurationResult] = []
        best: Optional[ConfigurationResult] = None
        for params in ParameterGrid(grid):
            try:
                result = self.cross_validate(family, X, y, params, folds, target_metric, seed)
            except ConvergenceError as e:
                logger.warning(
                    f"Excluded configuration: algorithm={family.name} tier={tier_name} "
                    f"params={params} seed={seed}: {e}"
                )
                results.append(ConfigurationResult(params=dict(params), error=str(e)))
                continue
            results.append(result)
            if best is None or result.mean_score > best.mean_score:
                best = result
        if best is None:
            raise ConvergenceError(
                f"All {len(results)} configurations failed for algorithm={family.name} tier={tier_name}"
            )
        return best.params, results

    def _training_frame(self, completed_train: pd.DataFrame, tier: FeatureTier,
                        balance_classes: bool, seed: int) -> Tuple[pd.DataFrame, np.ndarray]:
        ensure_not_validation(completed_train, "Model training")
        missing = [c for c in tier.columns if c not in completed_train.columns]
        if missing:
            raise SchemaMismatchError(f"Tier '{tier.name}' columns missing from training table: {missing}")
        X = completed_train[list(tier.columns)]
        if X.isnull().any().any():
            raise ValueError(f"Training table has missing values in tier '{tier.name}'; impute or drop first")
        y = self.schema.encode_label(completed_train[self.schema.label])
        if balance_classes:
            sampler = RandomUnderSampler(random_state=seed)
            sampler.fit_resample(np.arange(len(y)).reshape(-1, 1), y)
            keep = np.sort(sampler.sample_indices_)
            logger.info(f"Down-sampled majority class: {len(y)} -> {len(keep)} records")
            X, y = X.iloc[keep], y[keep]
        return X, y

    def train(self,
              completed_train: pd.DataFrame,
              tier: FeatureTier,
              algorithm: Union[str, AlgorithmFamily],
              tuning_grid: Optional[Dict[str, List[Any]]] = None,
              cv_folds: Optional[int] = None,
              target_metric: Optional[str] = None,
              seed: Optional[int] = None,
              balance_classes: Optional[bool] = None) -> Predictor:
        """Select a configuration by cross-validation and refit it on the whole table.

        Args:
            completed_train: training table without missing values in the tier
            tier: feature tier restricting the columns
            algorithm: family name or instance
            tuning_grid: hyperparameter axes; the family default when None
            cv_folds: number of stratified folds
            target_metric: metric maximised by the search
            seed: seed of fold assignment and stochastic estimators
            balance_classes: down-sample the majority class before CV

        Returns:
            Fitted Predictor
        """
        start_time = time.time()
        family = get_algorithm(algorithm) if isinstance(algorithm, str) else algorithm
        cv_folds = cv_folds or self.config.cv_folds
        target_metric = target_metric or self.config.target_metric
        seed = self.config.seed if seed is None else seed
        balance = self.config.balance_classes if balance_classes is None else balance_classes
        if target_metric not in TARGET_METRICS:
            raise ValueError(f"Unknown target metric: {target_metric}")

        X, y = self._training_frame(completed_train, tier, balance, seed)
        grid = family.default_grid(len(tier)) if tuning_grid is None else tuning_grid
        folds = self.make_folds(y, cv_folds, seed)
        logger.info(
            f"Training {family.name} on tier '{tier.name}' ({len(tier)} columns, {len(y)} records, "
            f"{len(ParameterGrid(grid))} configurations x {len(folds)} folds)"
        )

        best_params, results = self.search(family, X, y, grid, folds, target_metric, seed, tier.name)
        pipeline = self.fit_configuration(family, X, y, best_params, seed)
        scores = family.importance(pipeline.named_steps["model"])
        importance = _rank_importance(scores, source_columns(pipeline.named_steps["encode"]))

        cv_results = pd.DataFrame([
            {**{f"param_{k}": v for k, v in r.params.items()},
             f"mean_{target_metric}": r.mean_score,
             f"std_{target_metric}": float(np.std(r.fold_scores)) if r.error is None else float("nan")}
            for r in results
        ])
        cv_results["error"] = pd.Series([r.error for r in results], index=cv_results.index, dtype=object)
        best_score = next(r.mean_score for r in results if r.params == best_params and r.error is None)

        elapsed_time = time.time() - start_time
        logger.info(
            f"Selected {family.name}/{tier.name} params={best_params} "
            f"cv_{target_metric}={best_score:.4f} in {elapsed_time:.2f} seconds"
        )
        return Predictor(
            algorithm=family.name,
            tier=tier,
            params=dict(best_params),
            pipeline=pipeline,
            classes=(self.schema.negative_label, self.schema.positive_label),
            target_metric=target_metric,
            cv_score=best_score,
            cv_results=cv_results,
            importance=importance,
            n_train=int(len(y)),
            seed=seed,
            threshold=self.config.threshold,
        )


def select_forest_size(trainer: ModelTrainer,
                       completed_train: pd.DataFrame,
                       tier: FeatureTier,
                       candidates: Sequence[int] = (100, 250, 500, 1000),
                       margin: float = 0.005,
                       seed: Optional[int] = None) -> Tuple[int, Dict[int, float]]:
    """Pick the smallest forest whose larger alternatives gain less than ``margin``.

    Sizes are tried in increasing order; a larger forest is adopted only when
    its cross-validated target metric beats the current choice by more than
    ``margin``. The first size that fails to do so ends the search.
    """
    seed = trainer.config.seed if seed is None else seed
    X, y = trainer._training_frame(completed_train, tier, False, seed)
    folds = trainer.make_folds(y, trainer.config.cv_folds, seed)
    scores: Dict[int, float] = {}
    sizes = sorted(candidates)
    chosen = sizes[0]
    for size in sizes:
        family = RandomForestFamily(n_estimators=size)
        result = trainer.cross_validate(family, X, y, {}, folds, trainer.config.target_metric, seed)
        scores[size] = result.mean_score
        logger.info(f"Forest size {size}: cv_{trainer.config.target_metric}={scores[size]:.4f}")
        if size == chosen:
            continue
        if scores[size] - scores[chosen] > margin:
            chosen = size
        else:
            break
    logger.info(f"Selected forest size {chosen} (margin={margin})")
    return chosen, scores


def with_forest_size(family: AlgorithmFamily, n_estimators: int) -> AlgorithmFamily:
    if not isinstance(family, RandomForestFamily):
        raise TypeError(f"{family.name} has no forest size")
    return replace(family, n_estimators=n_estimators)
