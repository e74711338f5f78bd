"""
Dataset schema, validation and feature encoding.

The schema maps each column to a semantic type. The type decides both how a
column is imputed and how it is encoded for the classifiers.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from sklearn.compose import ColumnTransformer
from sklearn.preprocessing import OneHotEncoder, StandardScaler

from tiered_ml.exceptions import SchemaMismatchError

logger = logging.getLogger(__name__)


class ColumnType(str, Enum):
    """Semantic type of a feature column."""

    CONTINUOUS = "continuous"
    ORDINAL = "ordinal"
    BINARY = "binary"
    CATEGORICAL = "categorical"
    ORDERED_CATEGORICAL = "ordered_categorical"

    @property
    def is_numeric(self) -> bool:
        return self in (ColumnType.CONTINUOUS, ColumnType.ORDINAL)


@dataclass(frozen=True)
class DatasetSchema:
    """Column schema of a cleaned dataset.

    Args:
        columns: feature column name -> semantic type, in declared order
        label: name of the binary label column
        identifier: optional per-record identifier, never a feature
        positive_label: label value of the positive class
        negative_label: label value of the negative class
        levels: level order of each ordered categorical column
    """

    columns: Dict[str, ColumnType]
    label: str
    identifier: Optional[str] = None
    positive_label: Any = "Yes"
    negative_label: Any = "No"
    levels: Dict[str, List[Any]] = field(default_factory=dict)

    def __post_init__(self):
        for name in (self.label, self.identifier):
            if name is not None and name in self.columns:
                raise SchemaMismatchError(f"Column '{name}' cannot be both a feature and label/identifier")
        for name, col_type in self.columns.items():
            if col_type == ColumnType.ORDERED_CATEGORICAL and len(self.levels.get(name, [])) < 2:
                raise SchemaMismatchError(f"Ordered categorical column '{name}' needs its level order")

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "DatasetSchema":
        """Build a schema from the ``schema`` section of the harness config."""
        if "label" not in config:
            raise SchemaMismatchError("Schema configuration must name the label column")
        try:
            columns = {name: ColumnType(kind) for name, kind in config.get("columns", {}).items()}
        except ValueError as e:
            raise SchemaMismatchError(f"Unknown column type in schema: {e}") from e
        return cls(
            columns=columns,
            label=config["label"],
            identifier=config.get("identifier"),
            positive_label=config.get("positive_label", "Yes"),
            negative_label=config.get("negative_label", "No"),
            levels={k: list(v) for k, v in config.get("levels", {}).items()},
        )

    @property
    def feature_columns(self) -> List[str]:
        return list(self.columns)

    @property
    def classes(self) -> List[Any]:
        """Label vocabulary ordered (negative, positive)."""
        return [self.negative_label, self.positive_label]

    def columns_of(self, names: Sequence[str], numeric: bool) -> List[str]:
        return [c for c in names if self.columns[c].is_numeric == numeric]

    def encode_label(self, y: pd.Series) -> np.ndarray:
        """Map label values to 0/1 with the positive class as 1."""
        return (y == self.positive_label).to_numpy(dtype=int)

    def validate(self, df: pd.DataFrame) -> None:
        """Check a dataset against the schema, raising on the first mismatch."""
        if self.label not in df.columns:
            raise SchemaMismatchError(f"Label column '{self.label}' not found")
        if not df.index.is_unique:
            raise SchemaMismatchError("Dataset index is not unique; reset it before running the harness")
        missing = [c for c in self.columns if c not in df.columns]
        if missing:
            raise SchemaMismatchError(f"Schema columns missing from dataset: {missing}")
        if df[self.label].isnull().any():
            raise SchemaMismatchError(f"Label column '{self.label}' contains missing values")
        unknown = set(df[self.label].unique()) - set(self.classes)
        if unknown:
            raise SchemaMismatchError(f"Label values {sorted(map(str, unknown))} are not in {self.classes}")
        if self.identifier is not None:
            if self.identifier not in df.columns:
                raise SchemaMismatchError(f"Identifier column '{self.identifier}' not found")
            if df[self.identifier].duplicated().any():
                raise SchemaMismatchError(f"Identifier column '{self.identifier}' is not unique")
        for name, order in self.levels.items():
            if name not in self.columns:
                continue
            observed = set(df[name].dropna().unique())
            if not observed <= set(order):
                raise SchemaMismatchError(f"Column '{name}' has values outside its level order: {observed - set(order)}")
        logger.info(f"Schema validated: {len(df)} records, {len(self.columns)} feature columns")


def build_feature_encoder(schema: DatasetSchema, columns: Sequence[str], scale: bool = True) -> ColumnTransformer:
    """Encoder for a feature subset: numeric columns scaled, the rest one-hot encoded."""
    numeric = schema.columns_of(columns, numeric=True)
    categorical = schema.columns_of(columns, numeric=False)
    transformers = []
    if numeric:
        transformers.append(("num", StandardScaler() if scale else "passthrough", numeric))
    if categorical:
        transformers.append(
            ("cat", OneHotEncoder(handle_unknown="ignore", drop="if_binary", sparse_output=False), categorical)
        )
    return ColumnTransformer(transformers, remainder="drop")


def source_columns(encoder: ColumnTransformer) -> List[str]:
    """Source column of every output feature of a fitted encoder."""
    sources: List[str] = []
    for name, trans, cols in encoder.transformers_:
        if name == "remainder":
            continue
        if isinstance(trans, OneHotEncoder):
            drop_idx = trans.drop_idx_
            for i, col in enumerate(cols):
                n_out = len(trans.categories_[i])
                if drop_idx is not None and drop_idx[i] is not None:
                    n_out -= 1
                sources.extend([col] * n_out)
        else:
            sources.extend(cols)
    return sources


def design_matrix(df: pd.DataFrame, schema: DatasetSchema, columns: Sequence[str]) -> np.ndarray:
    """Dense numeric design matrix (dummy-coded categoricals) for imputation models."""
    parts = []
    for col in columns:
        if schema.columns[col].is_numeric:
            values = df[col].astype(float)
            std = values.std()
            parts.append(((values - values.mean()) / (std if std > 0 else 1.0)).to_frame(col))
        else:
            parts.append(pd.get_dummies(df[col].astype("category"), prefix=col, drop_first=True, dtype=float))
    if not parts:
        return np.empty((len(df), 0))
    return pd.concat(parts, axis=1).to_numpy(dtype=float)
