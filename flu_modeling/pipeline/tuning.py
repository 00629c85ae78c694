"""
Cross-validated grid search, selection and the final fit.

Every (configuration, fold) pair is an independent task. Tasks run on a
dask.distributed client with at most ``n_workers`` pairs in flight; the
training table is scattered to the workers once and shared read-only.
A pair that raises or exceeds the per-fit timeout is recorded as a failure
and never aborts the search.

The timeout is counted from the moment a pair starts running on a worker,
reported through worker events. A worker thread cannot be interrupted, so a
timed-out pair keeps its slot until it actually returns.
"""

import logging
import threading
import time
import uuid
from contextlib import contextmanager
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd
from dask.distributed import Client, get_worker
from tqdm import tqdm

from .exceptions import PipelineError, SelectionError
from .grid import Parameter, build_grid, grid_latin_hypercube, validate_grid
from .metrics import CLASSIFICATION, MetricSet, as_metric_set
from .splitting import DataSplit, Fold, ResampleSet
from .workflow import FittedWorkflow, Workflow

logger = logging.getLogger(__name__)


class CancellationToken:
    """Thread-safe flag used to stop a running search."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class PairOutcome:
    """Result of scoring one configuration on one fold."""
    config: str
    fold: str
    params: Dict[str, Any]
    estimates: Dict[str, float]
    error: Optional[str] = None
    elapsed: float = 0.0

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class TuneControl:
    """
    Execution settings for ``tune_grid``.

    Attributes:
        n_workers: Maximum number of pairs evaluated concurrently
        fit_timeout: Seconds a single pair may run, counted from its start on a
            worker, before it is abandoned
        poll_interval: Seconds between checks of the in-flight pairs
        verbose: Show a progress bar
        cancel_token: Token that stops dispatch when cancelled
        on_result: Called in the calling thread with each ``PairOutcome``
    """
    n_workers: int = 2
    fit_timeout: Optional[float] = None
    poll_interval: float = 0.05
    verbose: bool = False
    cancel_token: Optional[CancellationToken] = None
    on_result: Optional[Callable[[PairOutcome], None]] = None

    def __post_init__(self):
        if self.n_workers < 1:
            raise ValueError(f"n_workers must be at least 1, got {self.n_workers}")
        if self.fit_timeout is not None and self.fit_timeout <= 0:
            raise ValueError(f"fit_timeout must be positive, got {self.fit_timeout}")

    @classmethod
    def from_config(cls, config: Dict) -> 'TuneControl':
        tuning = config.get('tuning', {})
        return cls(
            n_workers=tuning.get('n_workers', 2),
            fit_timeout=tuning.get('fit_timeout_sec'),
            poll_interval=tuning.get('poll_interval_sec', 0.05),
            verbose=tuning.get('progress_bar', False),
        )


@contextmanager
def worker_pool(n_workers: int, client: Optional[Client] = None) -> Iterator[Client]:
    """Yield ``client``, or an in-process client that is closed on exit."""
    if client is not None:
        yield client
        return
    own_client = Client(processes=False, n_workers=1, threads_per_worker=n_workers,
                        dashboard_address=':0')
    logger.info(f"Started worker pool with {n_workers} threads")
    try:
        yield own_client
    finally:
        own_client.close()
        logger.info("Worker pool closed")


def score_predictions(fitted: FittedWorkflow, data: pd.DataFrame, metric_set: MetricSet) -> Dict[str, float]:
    """Compute ``metric_set`` for the predictions of ``fitted`` on ``data``."""
    y_true = fitted.outcome(data)
    y_pred = fitted.predict(data)
    y_prob = None
    positive_class = None
    if metric_set.mode == CLASSIFICATION:
        positive_class = fitted.positive_class
        if any(m.needs_probability for m in metric_set):
            y_prob = fitted.predict_proba(data)
    return metric_set.compute(y_true, y_pred, y_prob, positive_class=positive_class)


def evaluate_pair(workflow: Workflow, data: pd.DataFrame, fold: Fold,
                  params: Mapping[str, Any], metric_set: MetricSet) -> Dict[str, float]:
    """Fit on the fold's analysis rows and score its assessment rows."""
    fitted = workflow.fit(fold.analysis_data(data), params)
    return score_predictions(fitted, fold.assessment_data(data), metric_set)


def run_pair(evaluate: Callable, topic: str, pair: str, *args) -> Dict[str, float]:
    """Run ``evaluate(*args)`` on a worker, logging start and end events under ``topic``."""
    worker = get_worker()
    worker.log_event(topic, {'pair': pair, 'state': 'started'})
    try:
        return evaluate(*args)
    finally:
        worker.log_event(topic, {'pair': pair, 'state': 'done'})


def _python_value(value):
    return value.item() if hasattr(value, 'item') else value


def _config_ids(n: int) -> List[str]:
    width = max(2, len(str(n)))
    return [f"Model{i + 1:0{width}d}" for i in range(n)]


def _resolve_grid(grid, parameters: Sequence[Parameter], seed: Optional[int]) -> pd.DataFrame:
    if isinstance(grid, pd.DataFrame):
        if grid.shape[1] == 0 and not parameters:
            return pd.DataFrame(index=[0])
        return validate_grid(grid, parameters)
    if grid is None:
        grid = 10
    if isinstance(grid, int):
        return grid_latin_hypercube(parameters, size=grid, seed=seed)
    if isinstance(grid, Mapping):
        return build_grid(parameters, grid, seed=seed)
    raise TypeError(f"Unsupported grid specification: {type(grid).__name__}")


def tune_grid(workflow: Workflow,
              resamples: ResampleSet,
              grid: Union[None, int, Mapping, pd.DataFrame] = None,
              metrics: Union[None, str, Sequence[str], MetricSet] = None,
              control: Optional[TuneControl] = None,
              client: Optional[Client] = None,
              param_info: Optional[Sequence[Parameter]] = None) -> 'TuneResults':
    """
    Score every grid configuration on every resample.

    Args:
        workflow: Recipe + model specification
        resamples: Folds of the training data
        grid: Explicit grid, a grid size (latin hypercube) or a grid config block
        metrics: Metric names; the first is used for ranking
        control: Concurrency, timeout and cancellation settings
        client: Existing dask client; a private one is created otherwise
        param_info: Finalized parameter domains (defaults to the workflow's)

    Returns:
        TuneResults
    """
    control = control or TuneControl()
    metric_set = as_metric_set(metrics, workflow.mode)
    parameters = list(param_info) if param_info is not None else workflow.tunable_parameters()
    grid = _resolve_grid(grid, parameters, resamples.seed)
    config_ids = _config_ids(len(grid))
    configs = {
        config: {col: _python_value(grid[col].iloc[i]) for col in grid.columns}
        for i, config in enumerate(config_ids)
    }
    pending = deque((config, fold) for config in config_ids for fold in resamples.folds)
    n_pairs = len(pending)
    cancel_token = control.cancel_token

    logger.info(f"Tuning {workflow.label}: {len(config_ids)} configurations x {len(resamples)} resamples "
                f"= {n_pairs} fits on {control.n_workers} workers")
    start_time = time.time()
    outcomes: List[PairOutcome] = []
    n_dispatched = 0

    def record(outcome: PairOutcome):
        outcomes.append(outcome)
        if outcome.failed:
            logger.warning(f"{workflow.label} {outcome.config}/{outcome.fold} failed: {outcome.error}")
        progress.update(1)
        if control.on_result is not None:
            control.on_result(outcome)

    with worker_pool(control.n_workers, client) as pool, \
            tqdm(total=n_pairs, desc=f"Tuning {workflow.label}", disable=not control.verbose) as progress:
        data_future = pool.scatter(resamples.data, broadcast=True)
        topic = f"flu-tuning-{uuid.uuid4().hex}"
        started: Dict[str, float] = {}
        done = set()
        # timed-out pairs whose worker thread has not returned yet
        abandoned = set()

        def read_events():
            for _, event in pool.get_events(topic):
                pair = event['pair']
                if event['state'] == 'started':
                    started.setdefault(pair, time.monotonic())
                else:
                    done.add(pair)
                    abandoned.discard(pair)

        in_flight = []
        try:
            while pending or in_flight:
                if cancel_token is not None and cancel_token.cancelled and pending:
                    logger.warning(f"Tuning of {workflow.label} cancelled; "
                                   f"{len(pending)} pairs will not be dispatched")
                    pending.clear()
                read_events()
                while pending and len(in_flight) + len(abandoned) < control.n_workers:
                    config, fold = pending.popleft()
                    pair = f"{config}/{fold.id}"
                    future = pool.submit(run_pair, evaluate_pair, topic, pair, workflow, data_future, fold,
                                         configs[config], metric_set, pure=False)
                    in_flight.append((future, config, fold, pair, time.monotonic()))
                    n_dispatched += 1

                still_running = []
                for future, config, fold, pair, submitted in in_flight:
                    now = time.monotonic()
                    elapsed = now - started.get(pair, submitted)
                    params = configs[config]
                    if future.status == 'finished':
                        record(PairOutcome(config, fold.id, params, future.result(), elapsed=elapsed))
                    elif future.status == 'error':
                        error = future.exception()
                        record(PairOutcome(config, fold.id, params, {},
                                           error=f"{type(error).__name__}: {error}", elapsed=elapsed))
                    elif future.status in ('cancelled', 'lost'):
                        record(PairOutcome(config, fold.id, params, {}, error=f"task {future.status}", elapsed=elapsed))
                    elif (control.fit_timeout is not None and pair in started
                          and elapsed > control.fit_timeout):
                        future.cancel()
                        if pair not in done:
                            abandoned.add(pair)
                            logger.warning(f"{workflow.label} {pair} is still running after the timeout; "
                                           f"its worker slot stays occupied until it returns")
                        record(PairOutcome(config, fold.id, params, {},
                                           error=f"timed out after {control.fit_timeout} seconds",
                                           elapsed=elapsed))
                    else:
                        still_running.append((future, config, fold, pair, submitted))
                in_flight = still_running
                if in_flight or (pending and abandoned):
                    time.sleep(control.poll_interval)
        finally:
            for future, _, _, _, _ in in_flight:
                future.cancel()
            data_future.release()

    elapsed_time = time.time() - start_time
    cancelled = cancel_token is not None and cancel_token.cancelled
    results = TuneResults(
        workflow=workflow,
        grid=grid.assign(config=config_ids)[['config'] + list(grid.columns)],
        parameters=parameters,
        metric_set=metric_set,
        outcomes=outcomes,
        fold_ids=[fold.id for fold in resamples.folds],
        n_dispatched=n_dispatched,
        n_skipped=n_pairs - n_dispatched,
        cancelled=cancelled,
        elapsed=elapsed_time,
    )
    n_failed = sum(o.failed for o in outcomes)
    logger.info(f"Tuned {workflow.label} in {elapsed_time:.2f} seconds "
                f"({len(outcomes)} fits, {n_failed} failed, {results.n_skipped} skipped)")
    return results


@dataclass
class TuneResults:
    """Per-fold results of a grid search, with aggregation and selection."""
    workflow: Workflow
    grid: pd.DataFrame
    parameters: List[Parameter]
    metric_set: MetricSet
    outcomes: List[PairOutcome]
    fold_ids: List[str]
    n_dispatched: int = 0
    n_skipped: int = 0
    cancelled: bool = False
    elapsed: float = 0.0

    @property
    def param_names(self) -> List[str]:
        return [c for c in self.grid.columns if c != 'config']

    def fold_metrics(self) -> pd.DataFrame:
        """Long table: one row per (config, fold, metric); failures have a NaN estimate."""
        rows = []
        for outcome in self.outcomes:
            for name in self.metric_set.names:
                rows.append({
                    'config': outcome.config,
                    'fold': outcome.fold,
                    'metric': name,
                    'estimate': outcome.estimates.get(name, np.nan),
                    'error': outcome.error,
                })
        frame = pd.DataFrame(rows, columns=['config', 'fold', 'metric', 'estimate', 'error'])
        return frame.sort_values(['config', 'fold', 'metric']).reset_index(drop=True)

    def failures(self) -> pd.DataFrame:
        rows = [{'config': o.config, 'fold': o.fold, 'error': o.error} for o in self.outcomes if o.failed]
        return pd.DataFrame(rows, columns=['config', 'fold', 'error'])

    def failure_counts(self) -> pd.Series:
        """Failed folds per configuration."""
        counts = pd.Series(0, index=self.grid['config'].tolist(), name='n_failed')
        for outcome in self.outcomes:
            if outcome.failed:
                counts[outcome.config] += 1
        return counts

    def complete_configs(self) -> List[str]:
        """Configurations whose every fold has been scored or recorded as failed."""
        seen: Dict[str, set] = {}
        for outcome in self.outcomes:
            seen.setdefault(outcome.config, set()).add(outcome.fold)
        expected = set(self.fold_ids)
        return [c for c in self.grid['config'] if seen.get(c, set()) >= expected]

    def collect_metrics(self, summarize: bool = True) -> pd.DataFrame:
        """
        Aggregate fold estimates per configuration and metric.

        Returns ``mean``, ``n`` (scored folds), ``std_err`` (sd / sqrt(n)) and
        ``n_failed`` alongside the parameter values. Only configurations with
        every fold accounted for are included.
        """
        folds = self.fold_metrics()
        if not summarize:
            return folds.merge(self.grid, on='config', how='left')
        columns = ['config'] + self.param_names + ['metric', 'mean', 'n', 'std_err', 'n_failed']
        complete = self.complete_configs()
        folds = folds[folds['config'].isin(complete)]
        if folds.empty:
            return pd.DataFrame(columns=columns)

        def _summarize(group: pd.DataFrame) -> pd.Series:
            values = group['estimate'].dropna()
            n = len(values)
            return pd.Series({
                'mean': values.mean() if n else np.nan,
                'n': n,
                'std_err': values.std(ddof=1) / np.sqrt(n) if n > 1 else np.nan,
                'n_failed': int(group['error'].notna().sum()),
            })

        summary = (folds.groupby(['config', 'metric'], sort=True)[['estimate', 'error']]
                   .apply(_summarize)
                   .reset_index())
        summary['n'] = summary['n'].astype(int)
        summary['n_failed'] = summary['n_failed'].astype(int)
        summary = summary.merge(self.grid, on='config', how='left')
        return summary[columns]

    def _ranked(self, metric: Optional[str] = None) -> pd.DataFrame:
        """Selectable configurations for ``metric``, best first."""
        metric_def = self.metric_set.get(metric)
        summary = self.collect_metrics()
        summary = summary[summary['metric'] == metric_def.name]
        excluded = summary.loc[summary['n'] == 0, 'config'].tolist()
        if excluded:
            logger.warning(f"{self.workflow.label}: configurations {excluded} have no scored folds "
                           f"for {metric_def.name} and are excluded from selection")
        summary = summary[summary['n'] > 0]
        if summary.empty:
            raise SelectionError(
                f"No configuration of {self.workflow.label} has a successfully scored fold "
                f"for {metric_def.name}"
            )
        by = ['mean']
        ascending = [not metric_def.larger_is_better]
        by, ascending = self._simplicity_order(by, ascending)
        return summary.sort_values(by + ['config'], ascending=ascending + [True], kind='mergesort')

    def _simplicity_order(self, by: List[str], ascending: List[bool]):
        by, ascending = list(by), list(ascending)
        for param in self.parameters:
            if param.name in self.param_names:
                by.append(param.name)
                ascending.append(param.simpler == 'lower')
        return by, ascending

    def show_best(self, metric: Optional[str] = None, n: int = 5) -> pd.DataFrame:
        """Top ``n`` configurations for ``metric`` (default: the first metric)."""
        return self._ranked(metric).head(n).reset_index(drop=True)

    def best_config(self, metric: Optional[str] = None) -> str:
        return self._ranked(metric)['config'].iloc[0]

    def _params_of(self, config: str) -> Dict[str, Any]:
        row = self.grid[self.grid['config'] == config].iloc[0]
        return {name: _python_value(self.grid.loc[row.name, name]) for name in self.param_names}

    def select_best(self, metric: Optional[str] = None) -> Dict[str, Any]:
        """
        Parameter values of the best configuration.

        Ties on the metric mean go to the simpler configuration, then to the
        lower configuration id.
        """
        return self._params_of(self.best_config(metric))

    def select_by_one_std_err(self, metric: Optional[str] = None) -> Dict[str, Any]:
        """Simplest configuration whose mean is within one standard error of the best."""
        metric_def = self.metric_set.get(metric)
        ranked = self._ranked(metric)
        best = ranked.iloc[0]
        margin = best['std_err'] if pd.notna(best['std_err']) else 0.0
        if metric_def.larger_is_better:
            candidates = ranked[ranked['mean'] >= best['mean'] - margin]
        else:
            candidates = ranked[ranked['mean'] <= best['mean'] + margin]
        by, ascending = self._simplicity_order([], [])
        if by:
            candidates = candidates.sort_values(by + ['config'], ascending=ascending + [True], kind='mergesort')
        return self._params_of(candidates['config'].iloc[0])


@dataclass
class LastFitResult:
    """Final model refit on the training partition and evaluated once on the test partition."""
    fitted: FittedWorkflow
    metrics: pd.DataFrame
    train_metrics: pd.DataFrame
    predictions: pd.DataFrame
    train_predictions: pd.DataFrame
    params: Dict[str, Any] = field(default_factory=dict)

    def metric(self, name: str, partition: str = 'test') -> float:
        frame = self.metrics if partition == 'test' else self.train_metrics
        return float(frame.loc[frame['metric'] == name, 'estimate'].iloc[0])


def _metric_frame(values: Dict[str, float]) -> pd.DataFrame:
    return pd.DataFrame({'metric': list(values), 'estimate': list(values.values())})


def _predictions(fitted: FittedWorkflow, data: pd.DataFrame, rows: np.ndarray) -> pd.DataFrame:
    frame = fitted.augment(data).reset_index(drop=True)
    frame.insert(0, '.row', rows)
    return frame


def last_fit(workflow: Workflow, split: DataSplit,
             metrics: Union[None, str, Sequence[str], MetricSet] = None) -> LastFitResult:
    """
    Fit a finalized workflow on the training partition and score it on the test partition.

    This is the only step that reads the test partition.

    Args:
        workflow: Workflow with every tunable parameter bound
        split: Initial train/test split
        metrics: Metric names (defaults to the mode's defaults)

    Returns:
        LastFitResult with test and training metrics and per-row predictions
    """
    unbound = workflow.unbound_parameters()
    if unbound:
        raise PipelineError(f"Workflow {workflow.label} still has unbound parameters {unbound}; "
                            f"call finalize() with the selected values first")
    metric_set = as_metric_set(metrics, workflow.mode)
    start_time = time.time()
    training = split.training()
    fitted = workflow.fit(training)
    testing = split.release_test()

    result = LastFitResult(
        fitted=fitted,
        metrics=_metric_frame(score_predictions(fitted, testing, metric_set)),
        train_metrics=_metric_frame(score_predictions(fitted, training, metric_set)),
        predictions=_predictions(fitted, testing, split.test_rows),
        train_predictions=_predictions(fitted, training, split.train_rows),
        params=dict(workflow.bound),
    )
    elapsed_time = time.time() - start_time
    summary = ", ".join(f"{m}={v:.4f}" for m, v in zip(result.metrics['metric'], result.metrics['estimate']))
    logger.info(f"Final fit of {workflow.label} in {elapsed_time:.2f} seconds: test {summary}")
    return result
