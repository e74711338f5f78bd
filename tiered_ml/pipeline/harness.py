"""
Experiment harness: partition -> impute -> train (algorithm x tier) -> evaluate -> compare.
"""

from __future__ import annotations

import argparse
import logging
import time
from contextlib import nullcontext
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import dask
import numpy as np
import pandas as pd
import yaml
from dask.diagnostics.progress import ProgressBar

from tiered_ml.exceptions import ConvergenceError, HarnessError, InsufficientDataError
from tiered_ml.pipeline.comparison import CellKey, CellResult, ComparisonTable, aggregate, skipped
from tiered_ml.pipeline.evaluation import Evaluator
from tiered_ml.pipeline.feature_tiers import FeatureTier, FeatureTierRegistry
from tiered_ml.pipeline.imputation import ImputationModel, MultipleImputer
from tiered_ml.pipeline.partitioning import Partition, StratifiedSplitter
from tiered_ml.pipeline.preprocessing import DatasetSchema
from tiered_ml.pipeline.training import (
    AlgorithmFamily,
    ModelTrainer,
    Predictor,
    RandomForestFamily,
    TrainingConfig,
    algorithms_from_config,
    select_forest_size,
    with_forest_size,
)
from tiered_ml.utils.experiment_tracking import setup_experiment_tracking

logger = logging.getLogger(__name__)

PRIMARY = "primary"
COMPLETE_CASE = "complete_case"
CLASS_BALANCED = "class_balanced"
VARIANTS = (PRIMARY, COMPLETE_CASE, CLASS_BALANCED)
SCHEDULERS = ("synchronous", "threads", "processes")


@dataclass
class HarnessResult:
    variant: str
    partition: Partition
    imputation_model: Optional[ImputationModel]
    training_table: pd.DataFrame
    predictors: Dict[CellKey, Predictor]
    table: ComparisonTable


@dataclass
class SensitivityReport:
    primary: HarnessResult
    variants: Dict[str, HarnessResult]
    deltas: Dict[str, pd.DataFrame]


def _run_cell(trainer: ModelTrainer, evaluator: Evaluator, training_table: pd.DataFrame,
              validation: pd.DataFrame, tier: FeatureTier, family: AlgorithmFamily,
              grid: Optional[Dict[str, List[Any]]], balance_classes: bool) -> Tuple[CellResult, Optional[Predictor]]:
    """Train and evaluate one (algorithm, tier) cell; unit-level failures become skipped cells."""
    try:
        predictor = trainer.train(training_table, tier, family, tuning_grid=grid, balance_classes=balance_classes)
        bundle = evaluator.evaluate(predictor, validation)
    except (ConvergenceError, InsufficientDataError) as e:
        logger.warning(f"Skipping cell algorithm={family.name} tier={tier.name} seed={trainer.config.seed}: {e}")
        return skipped(family.name, tier.name, f"{type(e).__name__}: {e}"), None
    row = CellResult(
        algorithm=family.name,
        tier=tier.name,
        bundle=bundle,
        params=dict(predictor.params),
        cv_score=predictor.cv_score,
    )
    return row, predictor


def convert_numpy_types(obj):
    """Convert numpy types to native Python types for YAML serialization."""
    if isinstance(obj, dict):
        return {k: convert_numpy_types(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [convert_numpy_types(v) for v in obj]
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if hasattr(obj, "item"):
        return obj.item()
    return obj


class ExperimentHarness:
    """Runs the full (algorithm x feature tier) experiment and its sensitivity variants."""

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.schema = DatasetSchema.from_config(config.get("schema", {}))
        self.tiers = FeatureTierRegistry.from_config(config.get("feature_tiers", []))
        self.tiers.validate_against(self.schema)

        self.training_config = TrainingConfig.from_config(config)
        self.families = algorithms_from_config(config)
        model_cfg = config.get("models", {})
        self.grids = {name: model_cfg.get(name, {}).get("grid") for name in self.families}

        self.splitter = StratifiedSplitter.from_config(self.schema.label, config)
        self.imputer = MultipleImputer.from_config(self.schema, config)
        self.evaluator = Evaluator(self.schema.label, self.schema.positive_label, self.training_config.threshold)

        processing = config.get("processing", {})
        self.scheduler = processing.get("scheduler", "synchronous")
        if self.scheduler not in SCHEDULERS:
            raise ValueError(f"Unknown scheduler '{self.scheduler}', expected one of {SCHEDULERS}")
        self.show_progress = bool(processing.get("progress_bar", False))
        self.experiment_tracker = setup_experiment_tracking(config)

    # ---------- Data ----------
    def validate_data(self, df: pd.DataFrame) -> None:
        logger.info("Validating dataset against schema...")
        self.schema.validate(df)

    def prepare_training_table(self, partition: Partition, variant: str) -> Tuple[pd.DataFrame, Optional[ImputationModel]]:
        """Completed training table for a variant, plus the imputation model when one was fitted."""
        partition.check_training_rows(partition.train)
        if variant == COMPLETE_CASE:
            columns = list(self.tiers.all_columns)
            table = partition.train.dropna(subset=columns)
            logger.info(f"Complete-case training table: kept {len(table)}/{len(partition.train)} records")
            return table, None
        model, table = self.imputer.fit_complete(partition.train)
        return table, model

    def calibrate_families(self, training_table: pd.DataFrame) -> Dict[str, AlgorithmFamily]:
        """Fix each forest's size once per run when candidate sizes are configured."""
        families = dict(self.families)
        model_cfg = self.config.get("models", {})
        for name, family in self.families.items():
            candidates = model_cfg.get(name, {}).get("size_candidates")
            if not isinstance(family, RandomForestFamily) or not candidates:
                continue
            trainer = ModelTrainer(self.schema, self.training_config)
            margin = float(model_cfg[name].get("size_margin", 0.005))
            size, _ = select_forest_size(trainer, training_table, self.tiers[self.tiers.names[-1]],
                                         candidates=candidates, margin=margin)
            families[name] = with_forest_size(family, size)
        return families

    # ---------- Orchestration ----------
    def run(self, dataset: pd.DataFrame, variant: str = PRIMARY) -> HarnessResult:
        """Run the pipeline once with the given variant."""
        if variant not in VARIANTS:
            raise ValueError(f"Unknown variant '{variant}', expected one of {VARIANTS}")
        start_time = time.time()
        logger.info(f"Starting harness run (variant={variant})")

        self.validate_data(dataset)
        partition = self.splitter.split(dataset)
        training_table, imputation_model = self.prepare_training_table(partition, variant)
        partition.check_training_rows(training_table)
        families = self.calibrate_families(training_table)

        trainer = ModelTrainer(self.schema, self.training_config)
        balance = variant == CLASS_BALANCED
        tasks = [
            dask.delayed(_run_cell)(trainer, self.evaluator, training_table, partition.validation,
                                    tier, family, self.grids.get(name), balance)
            for name, family in families.items()
            for tier in self.tiers
        ]
        with ProgressBar() if self.show_progress else nullcontext():
            outcomes = dask.compute(*tasks, scheduler=self.scheduler)

        rows = [row for row, _ in outcomes]
        predictors = {row.key: predictor for row, predictor in outcomes if predictor is not None}
        if not predictors:
            reasons = "; ".join(f"{r.algorithm}/{r.tier}: {r.reason}" for r in rows)
            raise HarnessError(f"Every (algorithm, tier) cell failed: {reasons}")

        table = aggregate(rows)
        if self.experiment_tracker is not None:
            for row in table.succeeded:
                self.experiment_tracker.log_cell(variant, row.algorithm, row.tier, row.bundle.as_dict())

        elapsed_time = time.time() - start_time
        logger.info(f"Harness run (variant={variant}) completed in {elapsed_time:.2f} seconds")
        return HarnessResult(
            variant=variant,
            partition=partition,
            imputation_model=imputation_model,
            training_table=training_table,
            predictors=predictors,
            table=table,
        )

    def run_sensitivity(self, dataset: pd.DataFrame,
                        variants: Sequence[str] = (COMPLETE_CASE, CLASS_BALANCED)) -> SensitivityReport:
        """Primary run plus each variant, with per-cell deltas against the primary table."""
        primary = self.run(dataset, PRIMARY)
        results: Dict[str, HarnessResult] = {}
        deltas: Dict[str, pd.DataFrame] = {}
        for variant in variants:
            if variant == PRIMARY:
                continue
            results[variant] = self.run(dataset, variant)
            deltas[variant] = primary.table.diff(results[variant].table)
        return SensitivityReport(primary=primary, variants=results, deltas=deltas)

    # ---------- Artifacts ----------
    def save_artifacts(self, result: HarnessResult, output_dir: str) -> Path:
        out = Path(output_dir)
        out.mkdir(parents=True, exist_ok=True)
        logger.info(f"Saving artifacts to {out}")

        params: Dict[str, Dict[str, Any]] = {}
        importance: Dict[str, Dict[str, Any]] = {}
        for (algorithm, tier), predictor in result.predictors.items():
            stem = f"{algorithm}__{tier}"
            predictor.save(out / "models" / f"{stem}.joblib")
            (out / "cv_results").mkdir(exist_ok=True)
            predictor.cv_results.to_csv(out / "cv_results" / f"{stem}.csv", index=False)
            params.setdefault(algorithm, {})[tier] = dict(predictor.params)
            importance.setdefault(tier, {})[algorithm] = [list(pair) for pair in predictor.variable_importance()]

        metrics = {
            f"{row.algorithm}/{row.tier}": (row.bundle.as_dict() if row.succeeded
                                             else {"status": row.status, "reason": row.reason})
            for row in result.table
        }
        result.table.to_frame().to_csv(out / "comparison.csv", index=False)
        (out / "metrics.yaml").write_text(yaml.dump(convert_numpy_types(metrics)), encoding="utf-8")
        (out / "selected_hyperparameters.yaml").write_text(yaml.dump(convert_numpy_types(params)), encoding="utf-8")
        (out / "variable_importance.yaml").write_text(yaml.dump(convert_numpy_types(importance)), encoding="utf-8")
        (out / "harness_config.yaml").write_text(yaml.dump(convert_numpy_types(self.config)), encoding="utf-8")
        if result.imputation_model is not None:
            result.imputation_model.spread().to_csv(out / "imputation_spread.csv", index=False)

        if self.experiment_tracker is not None:
            self.experiment_tracker.log_dict(convert_numpy_types(metrics), f"{result.variant}/metrics.yaml")
            self.experiment_tracker.log_artifacts(str(out))

        logger.info("Artifacts saved successfully")
        return out


def load_predictor(path: str) -> Predictor:
    """Reload a saved predictor for ``predict`` / ``predict_probability``."""
    return Predictor.load(path)


def load_dataset(data_path: str) -> pd.DataFrame:
    p = Path(data_path)
    logger.info(f"Loading data from {p}")
    df = pd.read_csv(p) if p.suffix.lower() == ".csv" else pd.read_parquet(p)
    logger.info(f"Loaded data shape: {df.shape}")
    return df


# =====================
# CLI entrypoint
# =====================

def main():
    logging.basicConfig(level=logging.INFO)
    parser = argparse.ArgumentParser(description="Run the tiered classification experiment")
    parser.add_argument("--config", type=str, required=True, help="Path to harness configuration file")
    parser.add_argument("--data", type=str, required=True, help="Path to cleaned dataset (CSV or parquet)")
    parser.add_argument("--output", type=str, default="./results", help="Output directory for artifacts")
    parser.add_argument("--variants", nargs="*", default=[], choices=[COMPLETE_CASE, CLASS_BALANCED],
                        help="Sensitivity variants to run after the primary pipeline")
    args = parser.parse_args()

    with open(args.config, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f)

    harness = ExperimentHarness(config)
    dataset = load_dataset(args.data)
    output = Path(args.output)

    tracker = harness.experiment_tracker
    with tracker.start_run(config.get("run_name")) if tracker is not None else nullcontext():
        if tracker is not None:
            tracker.log_params(config)
        report = harness.run_sensitivity(dataset, args.variants)
        harness.save_artifacts(report.primary, str(output / PRIMARY))
        for variant, result in report.variants.items():
            harness.save_artifacts(result, str(output / variant))
            report.deltas[variant].to_csv(output / f"deltas_{variant}.csv", index=False)

    print(report.primary.table.to_frame().to_string(index=False))
    print("Experiment completed! Artifacts in:", args.output)


if __name__ == "__main__":
    main()
