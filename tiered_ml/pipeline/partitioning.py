"""
Stratified train/validation partitioning.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List

import numpy as np
import pandas as pd

from tiered_ml.exceptions import InsufficientDataError, LeakageViolation, SchemaMismatchError

logger = logging.getLogger(__name__)

ROLE_ATTR = "partition_role"
TRAIN_ROLE = "train"
VALIDATION_ROLE = "validation"


def ensure_not_validation(df: pd.DataFrame, stage: str) -> None:
    """Refuse to fit anything on a frame tagged as validation data."""
    if df.attrs.get(ROLE_ATTR) == VALIDATION_ROLE:
        raise LeakageViolation(f"{stage} was given validation rows")


@dataclass(frozen=True)
class Partition:
    """Immutable (train, validation) pair produced by :func:`split`."""

    train: pd.DataFrame
    validation: pd.DataFrame
    seed: int
    train_fraction: float

    def __iter__(self) -> Iterator[pd.DataFrame]:
        return iter((self.train, self.validation))

    def check_training_rows(self, df: pd.DataFrame) -> None:
        ensure_not_validation(df, "Training")
        overlap = df.index.intersection(self.validation.index)
        if len(overlap) > 0:
            raise LeakageViolation(f"{len(overlap)} validation rows offered for fitting")


def _train_count(class_size: int, train_fraction: float) -> int:
    n_train = int(np.floor(train_fraction * class_size + 0.5))
    return min(max(n_train, 1), class_size - 1)


def split(dataset: pd.DataFrame, label_column: str, train_fraction: float, seed: int) -> Partition:
    """Split a dataset into training and validation subsets, stratified on the label.

    Within every label class, ``round(train_fraction * class_size)`` records are
    drawn without replacement for training; the rest go to validation. Both
    subsets keep the original row order and index.

    Args:
        dataset: cleaned dataset
        label_column: name of the label column
        train_fraction: share of each class assigned to training, in (0, 1)
        seed: seed of the sampling stream

    Returns:
        Partition with tagged ``train`` and ``validation`` frames
    """
    if not 0.0 < train_fraction < 1.0:
        raise ValueError(f"train_fraction must be in (0, 1), got {train_fraction}")
    # rows are tracked by index label from here on
    if not dataset.index.is_unique:
        raise SchemaMismatchError("Dataset index is not unique; reset it before partitioning")
    if label_column not in dataset.columns:
        raise SchemaMismatchError(f"Label column '{label_column}' not found")
    labels = dataset[label_column]
    if labels.isnull().any():
        raise SchemaMismatchError(f"Label column '{label_column}' contains missing values")

    counts = labels.value_counts()
    if len(counts) < 2:
        raise InsufficientDataError(f"Need two label classes to stratify, found {list(counts.index)}")
    small = counts[counts < 2]
    if len(small) > 0:
        raise InsufficientDataError(f"Classes with fewer than 2 records: {small.to_dict()}")

    rng = np.random.default_rng(seed)
    label_values = labels.to_numpy()
    train_positions: List[np.ndarray] = []
    for cls in sorted(counts.index, key=str):
        positions = np.flatnonzero(label_values == cls)
        n_train = _train_count(len(positions), train_fraction)
        train_positions.append(rng.permutation(positions)[:n_train])

    is_train = np.zeros(len(dataset), dtype=bool)
    is_train[np.concatenate(train_positions)] = True

    train = dataset.iloc[np.flatnonzero(is_train)].copy()
    validation = dataset.iloc[np.flatnonzero(~is_train)].copy()
    train.attrs[ROLE_ATTR] = TRAIN_ROLE
    validation.attrs[ROLE_ATTR] = VALIDATION_ROLE

    logger.info(
        f"Partitioned {len(dataset)} records into {len(train)} train / {len(validation)} validation "
        f"(fraction={train_fraction}, seed={seed}); train classes {train[label_column].value_counts().to_dict()}"
    )
    return Partition(train=train, validation=validation, seed=seed, train_fraction=train_fraction)


@dataclass
class StratifiedSplitter:
    """Config-driven wrapper around :func:`split`."""

    label_column: str
    train_fraction: float = 0.7
    seed: int = 42

    @classmethod
    def from_config(cls, label_column: str, config: Dict[str, Any]) -> "StratifiedSplitter":
        part_cfg = config.get("partition", {})
        return cls(
            label_column=label_column,
            train_fraction=float(part_cfg.get("train_fraction", 0.7)),
            seed=int(part_cfg.get("seed", config.get("random_seed", 42))),
        )

    def split(self, dataset: pd.DataFrame) -> Partition:
        return split(dataset, self.label_column, self.train_fraction, self.seed)
