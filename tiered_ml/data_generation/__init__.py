"""Synthetic cohorts for examples and tests."""

from .generate_synthetic_data import SyntheticCohortGenerator, cohort_config

__all__ = ['SyntheticCohortGenerator', 'cohort_config']
