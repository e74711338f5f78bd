"""
Test suite for utilities and experiment tracking.
"""

from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from tiered_ml.utils.experiment_tracking import ExperimentTracker, setup_experiment_tracking
from tiered_ml.utils.model_utils import load_model, save_model

TRACKING_CONFIG = {
    'tracking_uri': 'file:./test_mlruns',
    'experiment_name': 'test_experiment'
}


@pytest.fixture
def tracker():
    with patch('mlflow.set_tracking_uri'), \
         patch('mlflow.create_experiment', return_value="exp_id"), \
         patch('mlflow.set_experiment'):
        yield ExperimentTracker(TRACKING_CONFIG)


class TestExperimentTracker:
    """Test experiment tracking functionality."""

    @patch('mlflow.create_experiment')
    @patch('mlflow.get_experiment_by_name')
    @patch('mlflow.set_experiment')
    @patch('mlflow.set_tracking_uri')
    def test_init(self, mock_set_uri, mock_set_exp, mock_get_exp, mock_create_exp):
        """Test ExperimentTracker initialization."""
        mock_create_exp.return_value = "test_exp_id"

        tracker = ExperimentTracker(TRACKING_CONFIG)

        assert tracker.tracking_uri == 'file:./test_mlruns'
        assert tracker.experiment_name == 'test_experiment'
        mock_set_uri.assert_called_once_with('file:./test_mlruns')
        mock_set_exp.assert_called_once_with(experiment_id="test_exp_id")
        mock_get_exp.assert_not_called()

    @patch('mlflow.create_experiment')
    @patch('mlflow.get_experiment_by_name')
    @patch('mlflow.set_experiment')
    @patch('mlflow.set_tracking_uri')
    def test_init_existing_experiment(self, mock_set_uri, mock_set_exp, mock_get_exp, mock_create_exp):
        """An existing experiment is reused."""
        mock_create_exp.side_effect = Exception("already exists")
        mock_get_exp.return_value = MagicMock(experiment_id="existing_id", lifecycle_stage="active")

        tracker = ExperimentTracker(TRACKING_CONFIG)

        assert tracker.experiment_name == 'test_experiment'
        mock_set_exp.assert_called_once_with(experiment_id="existing_id")

    @patch('mlflow.create_experiment')
    @patch('mlflow.get_experiment_by_name')
    @patch('mlflow.set_experiment')
    @patch('mlflow.set_tracking_uri')
    def test_init_deleted_experiment(self, mock_set_uri, mock_set_exp, mock_get_exp, mock_create_exp):
        """A deleted experiment name gets a timestamp suffix."""
        mock_create_exp.side_effect = [Exception("already exists"), "new_id"]
        mock_get_exp.return_value = MagicMock(experiment_id="old_id", lifecycle_stage="deleted")

        tracker = ExperimentTracker(TRACKING_CONFIG)

        assert tracker.experiment_name.startswith('test_experiment_')
        mock_set_exp.assert_called_once_with(experiment_id="new_id")

    @patch('mlflow.start_run')
    def test_start_run(self, mock_start_run, tracker):
        """Test starting MLflow run."""
        tracker.start_run("test_run")

        mock_start_run.assert_called_once_with(run_name="test_run", nested=False)

    @patch('mlflow.log_param')
    def test_log_params(self, mock_log_param, tracker):
        """Nested parameters are flattened with dotted keys."""
        tracker.log_params({'cross_validation': {'n_splits': 5}, 'random_seed': 42})

        mock_log_param.assert_any_call('cross_validation.n_splits', '5')
        mock_log_param.assert_any_call('random_seed', '42')
        assert mock_log_param.call_count == 2

    @patch('mlflow.log_param', side_effect=Exception("tracking server down"))
    def test_log_params_failure_is_logged(self, mock_log_param, tracker):
        tracker.log_params({'random_seed': 42})

        mock_log_param.assert_called_once()

    @patch('mlflow.log_metric')
    def test_log_cell(self, mock_log_metric, tracker):
        """Only finite numeric metrics are logged, keyed by variant, algorithm and tier."""
        tracker.log_cell("primary", "logistic", "history",
                         {'auc': 0.8, 'n': 30, 'sensitivity': float('nan'), 'status': 'ok'})

        mock_log_metric.assert_any_call('primary.logistic.history.auc', 0.8, step=None)
        mock_log_metric.assert_any_call('primary.logistic.history.n', 30.0, step=None)
        assert mock_log_metric.call_count == 2

    @patch('mlflow.log_dict')
    def test_log_dict(self, mock_log_dict, tracker):
        tracker.log_dict({'a': 1}, 'primary/metrics.yaml')

        mock_log_dict.assert_called_once_with({'a': 1}, 'primary/metrics.yaml')

    @patch('mlflow.log_artifacts')
    def test_log_artifacts(self, mock_log_artifacts, tracker):
        tracker.log_artifacts('./results')

        mock_log_artifacts.assert_called_once_with('./results')


class TestSetupExperimentTracking:
    """Test tracker construction from the harness config."""

    def test_disabled_by_default(self):
        assert setup_experiment_tracking({}) is None

    def test_unknown_backend(self):
        assert setup_experiment_tracking({'experiment_tracking': {'backend': 'wandb'}}) is None

    @patch('tiered_ml.utils.experiment_tracking.ExperimentTracker')
    def test_mlflow_backend(self, mock_tracker):
        config = {'experiment_tracking': {'backend': 'mlflow', 'mlflow': TRACKING_CONFIG}}

        tracker = setup_experiment_tracking(config)

        assert tracker is mock_tracker.return_value
        mock_tracker.assert_called_once_with(TRACKING_CONFIG)


class TestModelPersistence:
    """Test joblib persistence helpers."""

    def test_save_and_load(self, temp_directory):
        path = save_model({'weights': np.arange(3)}, temp_directory / "nested" / "model.joblib")

        assert path.exists()
        np.testing.assert_array_equal(load_model(path)['weights'], np.arange(3))

    def test_load_missing(self, temp_directory):
        with pytest.raises(FileNotFoundError):
            load_model(temp_directory / "missing.joblib")
