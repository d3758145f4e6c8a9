"""
swarm_search/services/runner.py

Model evaluation runner.

The runner drives one model to completion against an external evaluator:
1. Step the evaluator record by record
2. Every update_interval_records, persist progress (this is the model's
   heartbeat) and poll for stop requests and job cancellation
3. Optionally detect model-level maturity and stop matured models that are
   not the job's current best
4. Complete the model with its result and completion reason

Evaluator errors never propagate past the runner; they become an ERROR
completion. Losing ownership of the model to another worker (an orphan
adoption) aborts the run and discards the result.
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

import numpy as np

from swarm_search.errors import EvaluationError, OrphanRace

from .store import CompletionReason, JobStore, Model, ModelStatus, StopReason

if TYPE_CHECKING:
    from .config import SearchConfig

logger = logging.getLogger(__name__)


class Evaluator(ABC):
    """
    The predictive model under evaluation, seen as a black box.

    The engine never looks inside: it steps the evaluator, asks for the
    current metric value and may cancel it.
    """

    @abstractmethod
    def step(self) -> bool:
        """Process one record. Returns True when there are no records left."""
        pass

    @abstractmethod
    def cancel(self) -> None:
        """Stop early; score() must still return the metric so far."""
        pass

    @abstractmethod
    def score(self) -> float:
        """Current value of the optimized metric."""
        pass


@dataclass
class RunnerConfig:
    """Configuration for model evaluation runs."""
    # Records between progress writes and stop-request polls
    update_interval_records: int = 100

    # Model-level maturity (copied from the search config by default)
    enable_model_maturity: bool = False
    maturity_pct_change: float = 0.005
    maturity_num_points: int = 10

    @classmethod
    def from_search_config(cls, config: "SearchConfig", **overrides: Any) -> "RunnerConfig":
        values = {
            "enable_model_maturity": config.enable_model_maturity,
            "maturity_pct_change": config.maturity_pct_change,
            "maturity_num_points": config.maturity_num_points,
        }
        values.update(overrides)
        return cls(**values)


def is_metric_matured(values: List[float], num_points: int, max_pct_change: float) -> bool:
    """
    True when the metric's trend over the last num_points values is flat.

    The change is the fitted slope across the window, relative to the mean.
    """
    if len(values) < num_points:
        return False
    window = np.asarray(values[-num_points:], dtype=float)
    if not np.all(np.isfinite(window)):
        return False
    slope, _ = np.polyfit(np.arange(num_points), window, 1)
    mean = abs(float(window.mean()))
    change = abs(float(slope)) * (num_points - 1)
    if mean == 0.0:
        return change == 0.0
    return change / mean < max_pct_change


class ModelEvaluationRunner:
    """
    Runs models for one worker of one job.

    Args:
        store: job store
        job_id: job the models belong to
        worker_id: owner name used for every model update
        maximize: whether larger metric values are better
        config: runner settings
    """

    def __init__(
        self,
        store: JobStore,
        job_id: int,
        worker_id: str,
        maximize: bool = False,
        config: Optional[RunnerConfig] = None,
    ):
        self.store = store
        self.job_id = job_id
        self.worker_id = worker_id
        self.maximize = maximize
        self.config = config or RunnerConfig()

    def run(self, model: Model, evaluator: Evaluator) -> Tuple[Optional[float], CompletionReason]:
        """
        Evaluate a model and record its completion.

        Returns:
            (result, completion_reason). The result is None for ERROR and
            ORPHANED completions.
        """
        start_time = time.time()
        model_id = model.model_id
        logger.info(f"Worker {self.worker_id} running model {model_id} (swarm {model.swarm_id})")

        try:
            reason, result, message = self._evaluate(model, evaluator)
        except OrphanRace as e:
            logger.warning(f"Abandoning model {model_id}: {e}")
            return None, CompletionReason.ORPHANED

        if not self.store.complete_model(model_id, self.worker_id, reason, result=result, message=message):
            logger.warning(
                f"Model {model_id} was completed or adopted elsewhere; discarding result {result}"
            )
            return None, CompletionReason.ORPHANED

        elapsed = time.time() - start_time
        logger.info(
            f"Model {model_id} completed ({reason.value}) in {elapsed:.2f}s with result {result}"
        )

        if result is not None and reason in (CompletionReason.EOF, CompletionReason.STOPPED):
            self._update_job_results(model, result)

        return (None if reason == CompletionReason.ERROR else result), reason

    def _evaluate(
        self, model: Model, evaluator: Evaluator
    ) -> Tuple[CompletionReason, Optional[float], Optional[str]]:
        """Step the evaluator to the end; raises OrphanRace on lost ownership."""
        num_records = 0
        history: List[float] = []
        matured = False

        try:
            while True:
                done = self._guard(model, evaluator.step)
                num_records += 1
                if done:
                    return CompletionReason.EOF, self._guard(model, evaluator.score), None

                if num_records % self.config.update_interval_records != 0:
                    continue

                score = self._guard(model, evaluator.score)
                if self.config.enable_model_maturity and not matured:
                    history.append(score)
                    matured = is_metric_matured(
                        history, self.config.maturity_num_points, self.config.maturity_pct_change
                    )
                    if matured:
                        logger.info(f"Model {model.model_id} matured at record {num_records}")

                self.store.update_model_progress(
                    model.model_id,
                    self.worker_id,
                    num_records,
                    result=score,
                    matured=matured or None,
                )

                stop = self._check_stop(model, matured, score)
                if stop is not None:
                    self._guard(model, evaluator.cancel)
                    return stop, self._guard(model, evaluator.score), None
        except EvaluationError as error:
            logger.error(str(error))
            return CompletionReason.ERROR, None, str(error)

    @staticmethod
    def _guard(model: Model, call):
        """Invoke an evaluator method, wrapping anything it raises."""
        try:
            return call()
        except Exception as e:
            raise EvaluationError(model.model_id, str(e)) from e

    def _check_stop(self, model: Model, matured: bool, score: float) -> Optional[CompletionReason]:
        """Poll stop requests: killed, then job cancel, then stopped/maturity."""
        current = self.store.get_model(model.model_id)
        if current.eng_stop == StopReason.KILLED:
            logger.info(f"Model {model.model_id} killed by the engine")
            return CompletionReason.KILLED

        job = self.store.get_job(self.job_id)
        if job.cancel:
            logger.info(f"Model {model.model_id} stopping: job {self.job_id} cancelled")
            return CompletionReason.KILLED

        if current.eng_stop == StopReason.STOPPED:
            logger.info(f"Model {model.model_id} stopped by the engine")
            return CompletionReason.STOPPED

        if matured and not self._is_best_model(model, score):
            logger.info(f"Model {model.model_id} matured and is not the best so far; stopping")
            return CompletionReason.STOPPED
        return None

    def _is_best_model(self, model: Model, score: float) -> bool:
        """
        Whether the model leads every other model of the job that has a
        settled result: finished ones and running ones that already matured.
        """
        err = self._err(score)
        for other in self.store.list_models(self.job_id):
            if other.model_id == model.model_id or other.result is None:
                continue
            if other.status == ModelStatus.COMPLETED:
                settled = other.completion_reason in (CompletionReason.EOF, CompletionReason.STOPPED)
            else:
                settled = other.matured
            if not settled:
                continue
            other_err = self._err(other.result)
            if other_err < err or (other_err == err and other.model_id < model.model_id):
                return False
        return True

    def _err(self, value: float) -> float:
        return -value if self.maximize else value

    def _update_job_results(self, model: Model, result: float) -> None:
        """Record the model as the job's best if it beats the current best."""
        while True:
            job = self.store.get_job(self.job_id)
            results: Dict[str, Any] = json.loads(job.results) if job.results else {}

            best_value = results.get("best_value")
            if best_value is not None and self._err(result) >= self._err(best_value):
                return

            results.update({
                "best_model_id": model.model_id,
                "best_value": result,
                "best_params": model.structured_params,
            })
            if self.store.set_job_results_if_equal(self.job_id, job.results, json.dumps(results)):
                logger.info(f"Job {self.job_id}: model {model.model_id} is the new best ({result})")
                return
