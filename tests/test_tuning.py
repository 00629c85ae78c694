"""
Tests for the cross-validated grid search, selection and final fit.
"""

import time
from unittest.mock import patch

import pytest
import pandas as pd
import numpy as np

from flu_modeling.pipeline import tuning
from flu_modeling.pipeline.exceptions import (
    GridError, LeakageError, PipelineError, SelectionError, UnresolvedParameterError,
)
from flu_modeling.pipeline.metrics import REGRESSION, CLASSIFICATION
from flu_modeling.pipeline.splitting import initial_split, vfold_cv
from flu_modeling.pipeline.tuning import CancellationToken, TuneControl, tune_grid, last_fit, worker_pool
from flu_modeling.pipeline.workflow import make_workflow

PENALTIES = [0.01, 0.1, 1.0]
RMSE_BY_PENALTY = {0.01: 1.2, 0.1: 0.9, 1.0: 0.95}


def fails_on_second_fold(workflow, data, fold, params, metric_set):
    if params['penalty'] == 0.1 and fold.id == 'Fold02':
        raise ValueError("singular matrix")
    return {'rmse': 1.0}


def fixed_scores(workflow, data, fold, params, metric_set):
    return {'rmse': RMSE_BY_PENALTY[params['penalty']]}


def equal_scores(workflow, data, fold, params, metric_set):
    return {'rmse': 1.0}


def noisy_scores(workflow, data, fold, params, metric_set):
    base = {0.01: 1.1, 0.1: 1.0, 1.0: 1.05}[params['penalty']]
    return {'rmse': base + (0.1 if fold.fold % 2 == 0 else -0.1)}


def smallest_penalty_always_fails(workflow, data, fold, params, metric_set):
    if params['penalty'] == 0.01:
        raise RuntimeError("did not converge")
    return {'rmse': params['penalty']}


def always_fails(workflow, data, fold, params, metric_set):
    raise RuntimeError("did not converge")


def slow_first_pair(workflow, data, fold, params, metric_set):
    if params['penalty'] == 0.01 and fold.id == 'Fold01':
        time.sleep(2.0)
    return {'rmse': 1.0}


@pytest.fixture
def lasso_workflow(model_data):
    return make_workflow(model_data, 'BodyTemp', 'lasso', REGRESSION, {'tune': ['penalty']}, seed=1)


@pytest.fixture
def four_folds(model_data):
    return vfold_cv(model_data, v=4, seed=1)


@pytest.fixture
def penalty_grid():
    return pd.DataFrame({'penalty': PENALTIES})


def run(workflow, resamples, grid, client, **control):
    return tune_grid(workflow, resamples, grid=grid, metrics=['rmse'],
                     control=TuneControl(**control), client=client)


class TestTuneGrid:
    """Test grid evaluation."""

    def test_real_fits(self, lasso_workflow, four_folds, penalty_grid, dask_client):
        results = tune_grid(lasso_workflow, four_folds, grid=penalty_grid,
                            control=TuneControl(n_workers=2), client=dask_client)
        summary = results.collect_metrics()

        assert set(summary['config']) == {'Model01', 'Model02', 'Model03'}
        assert set(summary['metric']) == {'rmse', 'mae', 'rsq'}
        rmse = summary[summary['metric'] == 'rmse']
        assert (rmse['n'] == 4).all()
        assert (rmse['n_failed'] == 0).all()
        assert (rmse['mean'] > 0).all()
        assert results.n_dispatched == 12

    def test_failed_fold_is_counted(self, monkeypatch, lasso_workflow, four_folds, penalty_grid, dask_client):
        monkeypatch.setattr(tuning, 'evaluate_pair', fails_on_second_fold)
        results = run(lasso_workflow, four_folds, penalty_grid, dask_client, n_workers=2)
        summary = results.collect_metrics().set_index('penalty')

        assert summary.loc[0.1, 'n'] == 3
        assert summary.loc[0.1, 'n_failed'] == 1
        assert summary.loc[0.01, 'n'] == 4
        assert summary.loc[0.01, 'n_failed'] == 0
        assert results.failure_counts().to_dict() == {'Model01': 0, 'Model02': 1, 'Model03': 0}
        failures = results.failures()
        assert failures['fold'].tolist() == ['Fold02']
        assert 'singular matrix' in failures['error'].iloc[0]

    def test_select_best(self, monkeypatch, lasso_workflow, four_folds, penalty_grid, dask_client):
        monkeypatch.setattr(tuning, 'evaluate_pair', fixed_scores)
        results = run(lasso_workflow, four_folds, penalty_grid, dask_client)

        assert results.select_best('rmse') == {'penalty': 0.1}
        assert results.show_best('rmse')['penalty'].tolist() == [0.1, 1.0, 0.01]
        assert results.best_config() == 'Model02'

    def test_ties_go_to_simpler_configuration(self, monkeypatch, lasso_workflow, four_folds,
                                              penalty_grid, dask_client):
        monkeypatch.setattr(tuning, 'evaluate_pair', equal_scores)
        results = run(lasso_workflow, four_folds, penalty_grid, dask_client)
        # a larger penalty is the simpler model
        assert results.select_best() == {'penalty': 1.0}

    def test_one_standard_error_rule(self, monkeypatch, lasso_workflow, four_folds, penalty_grid, dask_client):
        monkeypatch.setattr(tuning, 'evaluate_pair', noisy_scores)
        results = run(lasso_workflow, four_folds, penalty_grid, dask_client)

        assert results.select_best() == {'penalty': 0.1}
        assert results.select_by_one_std_err() == {'penalty': 1.0}

    def test_all_failed_configuration_excluded(self, monkeypatch, lasso_workflow, four_folds,
                                               penalty_grid, dask_client, caplog):
        monkeypatch.setattr(tuning, 'evaluate_pair', smallest_penalty_always_fails)
        results = run(lasso_workflow, four_folds, penalty_grid, dask_client)
        summary = results.collect_metrics().set_index('penalty')

        assert summary.loc[0.01, 'n'] == 0
        assert summary.loc[0.01, 'n_failed'] == 4
        assert np.isnan(summary.loc[0.01, 'mean'])
        assert results.select_best() == {'penalty': 0.1}
        assert 'excluded from selection' in caplog.text

    def test_no_valid_configuration(self, monkeypatch, lasso_workflow, four_folds, penalty_grid, dask_client):
        monkeypatch.setattr(tuning, 'evaluate_pair', always_fails)
        results = run(lasso_workflow, four_folds, penalty_grid, dask_client)

        assert results.failure_counts().sum() == 12
        with pytest.raises(SelectionError):
            results.select_best()

    def test_timeout_recorded_as_failure(self, monkeypatch, lasso_workflow, four_folds,
                                         penalty_grid, dask_client):
        monkeypatch.setattr(tuning, 'evaluate_pair', slow_first_pair)
        results = run(lasso_workflow, four_folds, penalty_grid, dask_client,
                      n_workers=2, fit_timeout=0.5)
        failures = results.failures()

        assert len(failures) == 1
        assert failures['config'].iloc[0] == 'Model01'
        assert failures['fold'].iloc[0] == 'Fold01'
        assert 'timed out' in failures['error'].iloc[0]
        assert len(results.outcomes) == 12

    def test_timeout_on_single_worker_fails_only_the_slow_pair(self, monkeypatch, lasso_workflow, four_folds,
                                                              penalty_grid, dask_client):
        """Pairs queued behind a timed-out fit are not charged for the wait."""
        monkeypatch.setattr(tuning, 'evaluate_pair', slow_first_pair)
        results = run(lasso_workflow, four_folds, penalty_grid, dask_client,
                      n_workers=1, fit_timeout=0.5)
        failures = results.failures()

        assert len(results.outcomes) == 12
        assert failures[['config', 'fold']].values.tolist() == [['Model01', 'Fold01']]
        summary = results.collect_metrics().set_index('config')
        assert summary.loc['Model01', 'n'] == 3
        assert summary.loc['Model01', 'n_failed'] == 1
        assert summary['n'].tolist() == [3, 4, 4]

    def test_cancellation_keeps_completed_results(self, monkeypatch, model_data, dask_client):
        monkeypatch.setattr(tuning, 'evaluate_pair', equal_scores)
        workflow = make_workflow(model_data, 'BodyTemp', 'lasso', REGRESSION, {'tune': ['penalty']})
        resamples = vfold_cv(model_data, v=5, seed=1)
        grid = pd.DataFrame({'penalty': [0.01, 0.1]})

        token = CancellationToken()
        seen = []

        def cancel_after_two(outcome):
            seen.append(outcome)
            if len(seen) == 2:
                token.cancel()

        results = run(workflow, resamples, grid, dask_client, n_workers=1,
                      cancel_token=token, on_result=cancel_after_two)

        assert results.cancelled
        assert len(results.outcomes) == 2
        assert results.n_dispatched == 2
        assert results.n_skipped == 8
        # no configuration has all of its folds, so nothing is aggregated
        assert results.collect_metrics().empty

    def test_null_model_single_configuration(self, model_data, four_folds, dask_client):
        workflow = make_workflow(model_data, 'BodyTemp', 'null', REGRESSION)
        results = tune_grid(workflow, four_folds, client=dask_client)

        assert results.grid['config'].tolist() == ['Model01']
        assert results.select_best() == {}

    def test_private_worker_pool(self, model_data):
        workflow = make_workflow(model_data, 'BodyTemp', 'linear', REGRESSION)
        resamples = vfold_cv(model_data, v=3, seed=1)
        results = tune_grid(workflow, resamples, metrics='rmse', control=TuneControl(n_workers=1))
        assert results.collect_metrics()['n'].tolist() == [3]

    @patch('flu_modeling.pipeline.tuning.Client')
    def test_private_pool_uses_free_dashboard_port(self, mock_client):
        with worker_pool(3) as pool:
            assert pool is mock_client.return_value

        mock_client.assert_called_once_with(processes=False, n_workers=1, threads_per_worker=3,
                                            dashboard_address=':0')
        mock_client.return_value.close.assert_called_once()

    def test_unresolved_parameter(self, model_data, four_folds, dask_client):
        workflow = make_workflow(model_data, 'BodyTemp', 'random_forest', REGRESSION,
                                 {'tune': ['mtry'], 'fixed': {'trees': 10}})
        with pytest.raises(UnresolvedParameterError):
            tune_grid(workflow, four_folds, grid=3, client=dask_client)

    def test_grid_must_match_tunables(self, lasso_workflow, four_folds, dask_client):
        with pytest.raises(GridError):
            tune_grid(lasso_workflow, four_folds, grid=pd.DataFrame({'trees': [10]}), client=dask_client)

    def test_invalid_control(self):
        with pytest.raises(ValueError):
            TuneControl(n_workers=0)
        with pytest.raises(ValueError):
            TuneControl(fit_timeout=0)


class TestLastFit:
    """Test the final fit on the training partition."""

    def test_regression(self, model_data):
        split = initial_split(model_data, prop=0.7, strata='BodyTemp', seed=123)
        with pytest.raises(LeakageError):
            split.testing()

        workflow = make_workflow(model_data, 'BodyTemp', 'lasso', REGRESSION, {'tune': ['penalty']})
        result = last_fit(workflow.finalize({'penalty': 0.01}), split)

        assert set(result.metrics['metric']) == {'rmse', 'mae', 'rsq'}
        assert result.predictions['.row'].tolist() == split.test_rows.tolist()
        assert np.allclose(result.predictions['.resid'],
                           result.predictions['truth'] - result.predictions['.pred'])
        assert len(result.train_predictions) == split.n_train
        assert result.params == {'penalty': 0.01}
        assert result.metric('rmse') > 0
        assert len(split.testing()) == split.n_test

    def test_baseline_training_rmse_is_population_sd(self, model_data):
        split = initial_split(model_data, prop=0.7, strata='BodyTemp', seed=123)
        workflow = make_workflow(model_data, 'BodyTemp', 'null', REGRESSION)
        result = last_fit(workflow, split, metrics=['rmse'])

        y_train = split.training()['BodyTemp'].to_numpy()
        assert np.isclose(result.metric('rmse', partition='train'), np.std(y_train, ddof=0))
        assert np.allclose(result.predictions['.pred'], y_train.mean())

    def test_classification(self, model_data):
        split = initial_split(model_data, prop=0.7, strata='Nausea', seed=123)
        workflow = make_workflow(model_data, 'Nausea', 'linear', CLASSIFICATION)
        result = last_fit(workflow, split)

        assert set(result.metrics['metric']) == {'roc_auc', 'accuracy', 'mn_log_loss'}
        assert {'.pred_class', '.pred_prob'} <= set(result.predictions.columns)
        assert 0 <= result.metric('roc_auc') <= 1

    def test_unbound_parameters(self, model_data):
        split = initial_split(model_data, prop=0.7, seed=123)
        workflow = make_workflow(model_data, 'BodyTemp', 'lasso', REGRESSION, {'tune': ['penalty']})
        with pytest.raises(PipelineError):
            last_fit(workflow, split)
        with pytest.raises(LeakageError):
            split.testing()
