"""
Multiple imputation by chained equations for the training partition.

Every incomplete column is imputed with a method chosen from its semantic type:

    continuous / ordinal   -> predictive mean matching ("pmm")
    binary                 -> logistic regression ("logreg")
    categorical            -> multinomial logistic regression ("polyreg")
    ordered categorical    -> cumulative-logit ordinal regression ("polr")

Each of the ``m`` draws runs its own chain from an independent seed. A chain
sweeps the incomplete columns until the point predictions for the missing
cells stop moving; chains that never settle are reported and excluded.
"""

import hashlib
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from sklearn.linear_model import LogisticRegression

from tiered_ml.exceptions import LeakageViolation, NonConvergenceError
from tiered_ml.pipeline.partitioning import ensure_not_validation
from tiered_ml.pipeline.preprocessing import ColumnType, DatasetSchema, design_matrix

logger = logging.getLogger(__name__)

IMPUTATION_METHODS: Dict[ColumnType, str] = {
    ColumnType.CONTINUOUS: "pmm",
    ColumnType.ORDINAL: "pmm",
    ColumnType.BINARY: "logreg",
    ColumnType.CATEGORICAL: "polyreg",
    ColumnType.ORDERED_CATEGORICAL: "polr",
}

_RIDGE = 1e-5


@dataclass
class ColumnDraw:
    """Imputed values for one column plus the chain statistic of this sweep."""

    values: np.ndarray
    statistic: np.ndarray


def _impute_pmm(y_obs: np.ndarray, X_obs: np.ndarray, X_mis: np.ndarray,
                rng: np.random.Generator, donors: int, **_) -> ColumnDraw:
    """Predictive mean matching with a Bayesian linear-regression draw."""
    y = y_obs.astype(float)
    X1 = np.column_stack([np.ones(len(X_obs)), X_obs])
    Xm = np.column_stack([np.ones(len(X_mis)), X_mis])
    xtx = X1.T @ X1
    v = np.linalg.inv(xtx + np.diag(_RIDGE * np.maximum(np.diag(xtx), 1.0)))
    coef = v @ X1.T @ y

    residuals = y - X1 @ coef
    dof = max(len(y) - X1.shape[1], 1)
    sigma_star = np.sqrt(residuals @ residuals / rng.chisquare(dof))
    chol = np.linalg.cholesky((v + v.T) / 2)
    beta_star = coef + sigma_star * (chol @ rng.standard_normal(X1.shape[1]))

    yhat_obs = X1 @ coef
    yhat_mis = Xm @ beta_star
    k = min(donors, len(y))
    values = np.empty(len(X_mis))
    for i, target in enumerate(yhat_mis):
        nearest = np.argsort(np.abs(yhat_obs - target), kind="stable")[:k]
        values[i] = y[rng.choice(nearest)]

    scale = y.std() if y.std() > 0 else 1.0
    point = Xm @ coef
    return ColumnDraw(values=values, statistic=np.array([point.mean() / scale]))


def _class_probabilities(X_fit: np.ndarray, y_fit: np.ndarray, X_mis: np.ndarray, n_classes: int) -> np.ndarray:
    """Predicted probabilities over codes 0..n_classes-1 (absent codes get zero)."""
    present = np.unique(y_fit)
    probs = np.zeros((len(X_mis), n_classes))
    if len(present) == 1:
        probs[:, present[0]] = 1.0
        return probs
    model = LogisticRegression(max_iter=1000)
    model.fit(X_fit, y_fit)
    probs[:, model.classes_] = model.predict_proba(X_mis)
    return probs


def _draw_codes(probs: np.ndarray, rng: np.random.Generator) -> np.ndarray:
    u = rng.random(len(probs))
    codes = (probs.cumsum(axis=1) < u[:, None]).sum(axis=1)
    return np.minimum(codes, probs.shape[1] - 1)


def _bootstrap(n: int, rng: np.random.Generator) -> np.ndarray:
    return rng.integers(0, n, size=n)


def _impute_logistic(y_obs: np.ndarray, X_obs: np.ndarray, X_mis: np.ndarray,
                     rng: np.random.Generator, n_classes: int, **_) -> ColumnDraw:
    """Binary or multinomial logistic imputation fitted on a bootstrap resample."""
    boot = _bootstrap(len(y_obs), rng)
    if len(np.unique(y_obs[boot])) < min(2, len(np.unique(y_obs))):
        boot = np.arange(len(y_obs))
    draw_probs = _class_probabilities(X_obs[boot], y_obs[boot], X_mis, n_classes)
    point_probs = _class_probabilities(X_obs, y_obs, X_mis, n_classes)
    return ColumnDraw(values=_draw_codes(draw_probs, rng), statistic=point_probs.mean(axis=0))


def _ordinal_probabilities(X_fit: np.ndarray, y_fit: np.ndarray, X_mis: np.ndarray, n_levels: int) -> np.ndarray:
    """Cumulative-logit probabilities from one binary model per threshold P(y > k)."""
    exceed = np.zeros((len(X_mis), n_levels - 1))
    for k in range(n_levels - 1):
        target = (y_fit > k).astype(int)
        exceed[:, k] = _class_probabilities(X_fit, target, X_mis, 2)[:, 1]
    exceed = np.minimum.accumulate(exceed, axis=1)
    probs = np.empty((len(X_mis), n_levels))
    probs[:, 0] = 1.0 - exceed[:, 0]
    probs[:, 1:-1] = exceed[:, :-1] - exceed[:, 1:]
    probs[:, -1] = exceed[:, -1]
    probs = np.clip(probs, 0.0, None)
    totals = probs.sum(axis=1, keepdims=True)
    return probs / np.where(totals > 0, totals, 1.0)


def _impute_ordinal(y_obs: np.ndarray, X_obs: np.ndarray, X_mis: np.ndarray,
                    rng: np.random.Generator, n_classes: int, **_) -> ColumnDraw:
    boot = _bootstrap(len(y_obs), rng)
    draw_probs = _ordinal_probabilities(X_obs[boot], y_obs[boot], X_mis, n_classes)
    point_probs = _ordinal_probabilities(X_obs, y_obs, X_mis, n_classes)
    return ColumnDraw(values=_draw_codes(draw_probs, rng), statistic=point_probs.mean(axis=0))


STRATEGIES: Dict[str, Callable[..., ColumnDraw]] = {
    "pmm": _impute_pmm,
    "logreg": _impute_logistic,
    "polyreg": _impute_logistic,
    "polr": _impute_ordinal,
}


def frame_fingerprint(df: pd.DataFrame, columns: List[str]) -> str:
    hashed = pd.util.hash_pandas_object(df[columns], index=True).to_numpy()
    return hashlib.sha256(hashed.tobytes()).hexdigest()


@dataclass
class ImputationModel:
    """Fit artifact of :class:`MultipleImputer`, bound to one training frame.

    ``draws`` holds, for every successful chain, the imputed values of each
    incomplete column keyed by row index.
    """

    methods: Dict[str, str]
    fingerprint: str
    fingerprint_columns: List[str]
    draws: List[Dict[str, pd.Series]]
    sweeps: List[int]
    chain_statistics: List[List[Dict[str, List[float]]]]
    seeds: List[int]
    primary_draw: int = 0
    failed_draws: Dict[int, str] = field(default_factory=dict)

    @property
    def m(self) -> int:
        return len(self.draws)

    @property
    def incomplete_columns(self) -> List[str]:
        return list(self.methods)

    def spread(self) -> pd.DataFrame:
        """Per (row, column) spread of the imputed values across draws."""
        rows = []
        for col in self.incomplete_columns:
            stacked = pd.concat([draw[col] for draw in self.draws], axis=1)
            numeric = self.methods[col] == "pmm"
            for idx, values in stacked.iterrows():
                rows.append({
                    "row": idx,
                    "column": col,
                    "method": self.methods[col],
                    "n_draws": len(values),
                    "n_distinct": int(values.nunique()),
                    "mean": float(values.astype(float).mean()) if numeric else np.nan,
                    "std": float(values.astype(float).std(ddof=0)) if numeric else np.nan,
                    "min": float(values.astype(float).min()) if numeric else np.nan,
                    "max": float(values.astype(float).max()) if numeric else np.nan,
                    "modal_share": float(values.value_counts(normalize=True).iloc[0]),
                })
        return pd.DataFrame(rows, columns=["row", "column", "method", "n_draws", "n_distinct",
                                           "mean", "std", "min", "max", "modal_share"])


class MultipleImputer:
    """Type-aware multiple imputation fitted on the training partition only."""

    def __init__(self,
                 schema: DatasetSchema,
                 m: int = 5,
                 max_iter: int = 30,
                 tol: float = 0.1,
                 donors: int = 5,
                 primary_draw: int = 0,
                 use_label_as_predictor: bool = True,
                 seed: int = 42):
        """
        Args:
            schema: dataset schema; decides the method of every column
            m: number of independent completed tables
            max_iter: maximum number of sweeps per chain
            tol: largest change of the chain statistic accepted as converged
            donors: candidate donors for predictive mean matching
            primary_draw: draw used as the analysis table
            use_label_as_predictor: include the label in every imputation model
            seed: root seed; each draw gets an independent child seed
        """
        if m < 1:
            raise ValueError(f"m must be at least 1, got {m}")
        self.schema = schema
        self.m = m
        self.max_iter = max_iter
        self.tol = tol
        self.donors = donors
        self.primary_draw = primary_draw
        self.use_label_as_predictor = use_label_as_predictor
        self.seed = seed

    @classmethod
    def from_config(cls, schema: DatasetSchema, config: Dict[str, Any]) -> "MultipleImputer":
        imp_cfg = config.get("imputation", {})
        return cls(
            schema,
            m=int(imp_cfg.get("m", 5)),
            max_iter=int(imp_cfg.get("max_iter", 30)),
            tol=float(imp_cfg.get("tol", 0.1)),
            donors=int(imp_cfg.get("donors", 5)),
            primary_draw=int(imp_cfg.get("primary_draw", 0)),
            use_label_as_predictor=bool(imp_cfg.get("use_label_as_predictor", True)),
            seed=int(imp_cfg.get("seed", config.get("random_seed", 42))),
        )

    def _fingerprint_columns(self, df: pd.DataFrame) -> List[str]:
        return [c for c in self.schema.feature_columns + [self.schema.label] if c in df.columns]

    def fit(self, train: pd.DataFrame) -> ImputationModel:
        """Run ``m`` chained-equation chains on the training frame."""
        ensure_not_validation(train, "Imputation")
        start_time = time.time()
        features = [c for c in self.schema.feature_columns if c in train.columns]
        incomplete = [c for c in features if train[c].isnull().any()]
        methods = {c: IMPUTATION_METHODS[self.schema.columns[c]] for c in incomplete}
        for col in incomplete:
            if train[col].isnull().all():
                raise NonConvergenceError(f"Column '{col}' has no observed values to impute from")
        logger.info(f"Fitting imputation for {len(incomplete)} incomplete columns: {methods}")

        child_seeds = np.random.SeedSequence(self.seed).spawn(self.m)
        seeds = [int(s.generate_state(1)[0]) for s in child_seeds]
        draws: List[Dict[str, pd.Series]] = []
        sweeps: List[int] = []
        statistics: List[List[Dict[str, List[float]]]] = []
        kept_seeds: List[int] = []
        failed: Dict[int, str] = {}
        for i, draw_seed in enumerate(seeds):
            try:
                imputed, n_sweeps, chain = self._run_chain(train, features, incomplete, methods, draw_seed)
            except NonConvergenceError as e:
                logger.warning(f"Imputation draw {i + 1}/{self.m} (seed={draw_seed}) excluded: {e}")
                failed[i] = str(e)
                continue
            draws.append(imputed)
            sweeps.append(n_sweeps)
            statistics.append(chain)
            kept_seeds.append(draw_seed)
            logger.info(f"Imputation draw {i + 1}/{self.m} converged after {n_sweeps} sweeps")

        if not draws:
            raise NonConvergenceError(f"All {self.m} imputation draws failed to converge")

        primary = self.primary_draw
        if primary >= len(draws):
            logger.warning(f"Primary draw {primary} unavailable, using draw 0 of {len(draws)}")
            primary = 0

        fp_cols = self._fingerprint_columns(train)
        elapsed_time = time.time() - start_time
        logger.info(f"Fitted {len(draws)}/{self.m} imputation draws in {elapsed_time:.2f} seconds")
        return ImputationModel(
            methods=methods,
            fingerprint=frame_fingerprint(train, fp_cols),
            fingerprint_columns=fp_cols,
            draws=draws,
            sweeps=sweeps,
            chain_statistics=statistics,
            seeds=kept_seeds,
            primary_draw=primary,
            failed_draws=failed,
        )

    def _run_chain(self, train: pd.DataFrame, features: List[str], incomplete: List[str],
                   methods: Dict[str, str], seed: int) -> Tuple[Dict[str, pd.Series], int, List[Dict[str, List[float]]]]:
        rng = np.random.default_rng(seed)
        current = train[features].copy()
        missing = {c: train[c].isnull().to_numpy() for c in incomplete}
        codebooks = {c: self._codebook(train[c]) for c in incomplete}

        for col in incomplete:
            observed = train[col].dropna().to_numpy()
            current.loc[missing[col], col] = rng.choice(observed, size=int(missing[col].sum()))

        label = self.schema.encode_label(train[self.schema.label]).astype(float) if self.use_label_as_predictor else None
        chain: List[Dict[str, List[float]]] = []
        previous: Optional[Dict[str, np.ndarray]] = None
        for sweep in range(1, self.max_iter + 1):
            stats: Dict[str, np.ndarray] = {}
            for col in incomplete:
                others = [c for c in features if c != col]
                X = design_matrix(current, self.schema, others)
                if label is not None:
                    X = np.column_stack([X, label])
                mis = missing[col]
                codes = codebooks[col]
                if codes is None:
                    y_obs = train.loc[~mis, col].to_numpy(dtype=float)
                    n_classes = 0
                else:
                    y_obs = train.loc[~mis, col].map(codes).to_numpy(dtype=int)
                    n_classes = len(codes)
                result = STRATEGIES[methods[col]](
                    y_obs, X[~mis], X[mis], rng, donors=self.donors, n_classes=n_classes
                )
                if codes is None:
                    current.loc[mis, col] = result.values
                else:
                    inverse = list(codes)
                    current.loc[mis, col] = [inverse[c] for c in result.values]
                stats[col] = result.statistic
            chain.append({c: s.tolist() for c, s in stats.items()})

            if not incomplete:
                return {}, sweep, chain
            if previous is not None:
                delta = max(float(np.max(np.abs(stats[c] - previous[c]))) for c in incomplete)
                if delta < self.tol:
                    imputed = {c: current.loc[missing[c], c] for c in incomplete}
                    return imputed, sweep, chain
            previous = stats

        raise NonConvergenceError(
            f"Chain did not stabilise within {self.max_iter} sweeps (tol={self.tol}, seed={seed})"
        )

    def _codebook(self, values: pd.Series) -> Optional[Dict[Any, int]]:
        """Value -> integer code for categorical columns; None for numeric ones."""
        col_type = self.schema.columns[values.name]
        if col_type.is_numeric:
            return None
        if col_type == ColumnType.ORDERED_CATEGORICAL:
            levels = self.schema.levels[values.name]
        else:
            levels = sorted(values.dropna().unique(), key=str)
        return {level: code for code, level in enumerate(levels)}

    def complete(self, model: ImputationModel, train: pd.DataFrame, draw: Optional[int] = None) -> pd.DataFrame:
        """Fill the training frame with one draw (the primary draw by default)."""
        fingerprint = frame_fingerprint(train, model.fingerprint_columns)
        if fingerprint != model.fingerprint:
            raise LeakageViolation("Imputation model applied to a frame it was not fitted on")
        draw = model.primary_draw if draw is None else draw
        completed = train.copy()
        for col, values in model.draws[draw].items():
            if completed[col].dtype.kind in "iufb":
                completed.loc[values.index, col] = values.astype(float)
            else:
                completed.loc[values.index, col] = values
        return completed

    def complete_all(self, model: ImputationModel, train: pd.DataFrame) -> List[pd.DataFrame]:
        """All ``m`` completed tables, for checking imputation stability."""
        return [self.complete(model, train, draw=i) for i in range(model.m)]

    def fit_complete(self, train: pd.DataFrame) -> Tuple[ImputationModel, pd.DataFrame]:
        model = self.fit(train)
        return model, self.complete(model, train)


def imputation_spread(model: ImputationModel, train: pd.DataFrame) -> pd.DataFrame:
    """Spread of the imputed values of ``train`` across the ``m`` draws."""
    if frame_fingerprint(train, model.fingerprint_columns) != model.fingerprint:
        raise LeakageViolation("Imputation model does not belong to this training frame")
    return model.spread()
