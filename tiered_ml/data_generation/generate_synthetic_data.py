"""
Synthetic Cohort Generator

Generates cleaned, labeled cohorts with every semantic column type, a
controllable positive-class prevalence and injected missing values. Also
provides the small single-feature datasets used to sanity-check the harness
(perfectly separable, pure noise, balanced two-feature).
"""

import argparse
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np
import pandas as pd
import yaml

logger = logging.getLogger(__name__)

PAIN_LOCATIONS = ["none", "left", "right", "bilateral"]
PAIN_SEVERITY = ["none", "mild", "moderate", "severe"]


class SyntheticCohortGenerator:
    """Generate one-row-per-subject cohorts with a Yes/No outcome."""

    def __init__(self, seed: int = 42, missing_value_rates: Optional[Dict[str, float]] = None):
        """
        Args:
            seed: Random seed for reproducibility
            missing_value_rates: column -> share of values set to missing.
                Default: {'bhcg_repeat': 0.15, 'endometrial_thickness': 0.10,
                'pain_severity': 0.05, 'prior_ectopic': 0.03}
        """
        self.seed = seed
        self.missing_value_rates = missing_value_rates if missing_value_rates is not None else {
            "bhcg_repeat": 0.15,
            "endometrial_thickness": 0.10,
            "pain_severity": 0.05,
            "prior_ectopic": 0.03,
        }

    def generate_features(self, n_records: int, rng: np.random.Generator) -> pd.DataFrame:
        age = np.clip(rng.normal(30, 6, n_records), 16, 48).round(1)
        gravidity = rng.poisson(1.5, n_records) + 1
        prior_ectopic = rng.random(n_records) < 0.08
        bleeding = rng.random(n_records) < 0.45
        pain_location = rng.choice(PAIN_LOCATIONS, size=n_records, p=[0.35, 0.25, 0.25, 0.15])
        severity_codes = rng.choice(len(PAIN_SEVERITY), size=n_records, p=[0.3, 0.3, 0.25, 0.15])
        bhcg_initial = np.exp(rng.normal(7.0, 1.2, n_records)).round(0)
        bhcg_repeat = (bhcg_initial * np.exp(rng.normal(0.4, 0.5, n_records))).round(0)
        thickness = np.clip(rng.normal(9, 3, n_records), 1, 25).round(1)

        return pd.DataFrame({
            "subject_id": [f"S{i:05d}" for i in range(n_records)],
            "age": age,
            "gravidity": gravidity.astype(float),
            "prior_ectopic": np.where(prior_ectopic, "Yes", "No"),
            "vaginal_bleeding": np.where(bleeding, "Yes", "No"),
            "pain_location": pain_location,
            "pain_severity": np.array(PAIN_SEVERITY)[severity_codes],
            "bhcg_initial": bhcg_initial,
            "bhcg_repeat": bhcg_repeat,
            "endometrial_thickness": thickness,
        })

    def generate_target_variable(self, data: pd.DataFrame, prevalence: float,
                                 rng: np.random.Generator) -> pd.Series:
        """Outcome from a logistic risk score, with exactly round(prevalence * n) positives."""
        severity = data["pain_severity"].map({level: i for i, level in enumerate(PAIN_SEVERITY)})
        ratio = np.log(data["bhcg_repeat"] / data["bhcg_initial"])
        risk = (
            0.04 * (data["age"] - 30)
            + 1.2 * (data["prior_ectopic"] == "Yes")
            + 0.6 * (data["vaginal_bleeding"] == "Yes")
            + 0.8 * data["pain_location"].isin(["left", "right"])
            + 0.5 * severity
            - 1.5 * ratio
            - 0.15 * (data["endometrial_thickness"] - 9)
        ).to_numpy(dtype=float)
        score = risk + rng.logistic(0, 1, len(data))

        n_positive = int(round(len(data) * prevalence))
        target = pd.Series("No", index=data.index)
        if n_positive > 0:
            target.iloc[np.argsort(score, kind="stable")[-n_positive:]] = "Yes"
        logger.info(f"Assigned {n_positive} positives out of {len(data)} records")
        return target

    def inject_missing_values(self, data: pd.DataFrame, rng: np.random.Generator) -> pd.DataFrame:
        data = data.copy()
        for col, rate in self.missing_value_rates.items():
            if col not in data.columns or rate <= 0:
                continue
            mask = rng.random(len(data)) < rate
            data.loc[mask, col] = np.nan
            logger.info(f"  {col}: {int(mask.sum())} missing ({rate:.1%} target rate)")
        return data

    def generate_dataset(self, n_records: int = 500, prevalence: float = 0.32) -> pd.DataFrame:
        rng = np.random.default_rng(self.seed)
        logger.info(f"Generating {n_records} records with {prevalence:.1%} prevalence (seed={self.seed})")
        data = self.generate_features(n_records, rng)
        data["outcome"] = self.generate_target_variable(data, prevalence, rng)
        return self.inject_missing_values(data, rng)


def cohort_config() -> Dict[str, Any]:
    """Schema and nested feature tiers matching :class:`SyntheticCohortGenerator`."""
    return {
        "schema": {
            "label": "outcome",
            "identifier": "subject_id",
            "positive_label": "Yes",
            "negative_label": "No",
            "columns": {
                "age": "continuous",
                "gravidity": "ordinal",
                "prior_ectopic": "binary",
                "vaginal_bleeding": "binary",
                "pain_location": "categorical",
                "pain_severity": "ordered_categorical",
                "bhcg_initial": "continuous",
                "bhcg_repeat": "continuous",
                "endometrial_thickness": "continuous",
            },
            "levels": {"pain_severity": list(PAIN_SEVERITY)},
        },
        "feature_tiers": [
            {"name": "history", "columns": ["age", "gravidity", "prior_ectopic"]},
            {"name": "examination", "add": ["vaginal_bleeding", "pain_location", "pain_severity"]},
            {"name": "laboratory", "add": ["bhcg_initial", "bhcg_repeat"]},
            {"name": "imaging", "add": ["endometrial_thickness"]},
        ],
    }


def _single_feature_frame(x: np.ndarray, y: np.ndarray) -> pd.DataFrame:
    return pd.DataFrame({
        "subject_id": [f"S{i:05d}" for i in range(len(x))],
        "x": x,
        "outcome": np.where(y == 1, "Yes", "No"),
    })


def separable_dataset(n_records: int = 200, seed: int = 0) -> pd.DataFrame:
    """One numeric feature that splits the classes perfectly (No < 0 < Yes)."""
    rng = np.random.default_rng(seed)
    y = np.arange(n_records) % 2
    x = np.where(y == 1, rng.uniform(1, 3, n_records), rng.uniform(-3, -1, n_records))
    return _single_feature_frame(x, y)


def noise_dataset(n_records: int = 400, seed: int = 0) -> pd.DataFrame:
    """One numeric feature drawn independently of a balanced label."""
    rng = np.random.default_rng(seed)
    y = rng.permutation(np.arange(n_records) % 2)
    return _single_feature_frame(rng.normal(0, 1, n_records), y)


def single_feature_config() -> Dict[str, Any]:
    return {
        "schema": {"label": "outcome", "identifier": "subject_id", "columns": {"x": "continuous"}},
        "feature_tiers": [{"name": "x_only", "columns": ["x"]}],
    }


def balanced_two_feature_dataset(n_records: int = 100, n_missing: int = 5, seed: int = 0) -> pd.DataFrame:
    """Balanced label, one numeric feature with ``n_missing`` gaps and one complete binary feature."""
    rng = np.random.default_rng(seed)
    y = rng.permutation(np.arange(n_records) % 2)
    numeric = rng.normal(0, 1, n_records) + 0.8 * y
    binary = np.where(rng.random(n_records) < 0.3 + 0.4 * y, "Yes", "No")
    numeric[rng.choice(n_records, size=n_missing, replace=False)] = np.nan
    return pd.DataFrame({
        "subject_id": [f"S{i:05d}" for i in range(n_records)],
        "marker": numeric,
        "symptom": binary,
        "outcome": np.where(y == 1, "Yes", "No"),
    })


def two_feature_config() -> Dict[str, Any]:
    return {
        "schema": {
            "label": "outcome",
            "identifier": "subject_id",
            "columns": {"marker": "continuous", "symptom": "binary"},
        },
        "feature_tiers": [
            {"name": "symptom_only", "columns": ["symptom"]},
            {"name": "with_marker", "add": ["marker"]},
        ],
    }


def main():
    logging.basicConfig(level=logging.INFO)
    parser = argparse.ArgumentParser(description="Generate a synthetic cohort and matching harness config")
    parser.add_argument("--n_records", type=int, default=536, help="Number of records")
    parser.add_argument("--prevalence", type=float, default=0.32, help="Share of positive outcomes")
    parser.add_argument("--seed", type=int, default=42, help="Random seed")
    parser.add_argument("--output_dir", type=str, default="./data", help="Output directory")
    args = parser.parse_args()

    out = Path(args.output_dir)
    out.mkdir(parents=True, exist_ok=True)
    df = SyntheticCohortGenerator(seed=args.seed).generate_dataset(args.n_records, args.prevalence)
    df.to_csv(out / "cohort.csv", index=False)
    (out / "cohort_schema.yaml").write_text(yaml.dump(cohort_config(), sort_keys=False), encoding="utf-8")
    print(f"Wrote {len(df)} records to {out / 'cohort.csv'}")


if __name__ == "__main__":
    main()
