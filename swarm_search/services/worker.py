"""
swarm_search/services/worker.py

Search worker service.

Each worker process runs one WorkerLoop for one job:
1. Ask its SwarmController for the next model (or an orphan to adopt)
2. Build an evaluator for the model's parameters
3. Run it to completion with the ModelEvaluationRunner
4. Tell the controller, which updates swarm statuses, and repeat

Workers share nothing but the job store. Add more workers for a faster
search; a worker that dies has its running model adopted by another.
"""

from __future__ import annotations

import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from swarm_search.errors import ConfigurationError

from .controller import SwarmController
from .evaluators import EvaluatorFactory, load_evaluator_factory
from .runner import ModelEvaluationRunner, RunnerConfig
from .store import CompletionReason, JobStore, Model, create_job_store

logger = logging.getLogger(__name__)


@dataclass
class WorkerConfig:
    """Configuration for search workers."""
    # Worker identity
    worker_id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])

    # Job to work on
    job_id: Optional[int] = None

    # Store configuration
    store_backend: str = "memory"  # "memory", "redis" or "postgres"
    redis_url: str = "redis://localhost:6379"

    # Evaluator factory as "module:attribute"
    evaluator_factory: Optional[str] = None

    # Records between progress writes
    update_interval_records: int = 100

    # Worker behavior
    heartbeat_interval: float = 30.0  # Seconds between status log lines

    @classmethod
    def from_env(cls) -> "WorkerConfig":
        """Create config from environment variables."""
        job_id = os.environ.get("SWARM_JOB_ID")
        config = cls(
            job_id=int(job_id) if job_id else None,
            store_backend=os.environ.get("SWARM_STORE_BACKEND", "redis"),
            redis_url=os.environ.get("REDIS_URL", "redis://localhost:6379"),
            evaluator_factory=os.environ.get("SWARM_EVALUATOR"),
            update_interval_records=int(os.environ.get("SWARM_UPDATE_INTERVAL", "100")),
        )
        worker_id = os.environ.get("SWARM_WORKER_ID")
        if worker_id:
            config.worker_id = worker_id
        return config


class WorkerLoop:
    """
    Runs models for one job until the search needs nothing more.

    Args:
        config: worker settings
        store: job store (created from the config if not given)
        evaluator_factory: builds an evaluator per model (loaded from
            config.evaluator_factory if not given)
        sleep: back-off function passed to the controller
    """

    def __init__(
        self,
        config: WorkerConfig,
        store: Optional[JobStore] = None,
        evaluator_factory: Optional[EvaluatorFactory] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if config.job_id is None:
            raise ConfigurationError("WorkerConfig.job_id is required")

        self.config = config
        self.worker_id = config.worker_id
        self.job_id = config.job_id

        self.store = store or create_job_store(
            backend=config.store_backend,
            redis_url=config.redis_url,
        )

        if evaluator_factory is None:
            if not config.evaluator_factory:
                raise ConfigurationError("No evaluator factory configured")
            evaluator_factory = load_evaluator_factory(config.evaluator_factory)
        self.evaluator_factory = evaluator_factory

        self.controller = SwarmController(self.store, self.job_id, self.worker_id, sleep=sleep)
        self.runner = ModelEvaluationRunner(
            self.store,
            self.job_id,
            self.worker_id,
            maximize=self.controller.config.maximize,
            config=RunnerConfig.from_search_config(
                self.controller.config,
                update_interval_records=config.update_interval_records,
            ),
        )

        # Status
        self.running = False
        self.models_completed = 0
        self.models_failed = 0
        self.models_orphaned = 0
        self.models_adopted = 0
        self.last_heartbeat = time.time()

        logger.info(f"Worker {self.worker_id} initialized for job {self.job_id}")

    def process_one(self) -> bool:
        """
        Run the next model, if there is one.

        Returns False once the worker should leave the job.
        """
        next_model = self.controller.get_next_model()
        if next_model.exit:
            return False
        if next_model.model is None:
            return True

        model = next_model.model
        if next_model.adopted:
            self.models_adopted += 1

        reason = self._run_model(model)
        if reason == CompletionReason.ERROR:
            self.models_failed += 1
        elif reason == CompletionReason.ORPHANED:
            self.models_orphaned += 1
        else:
            self.models_completed += 1

        self.controller.on_model_completed(model.model_id)
        return True

    def _run_model(self, model: Model) -> CompletionReason:
        try:
            evaluator = self.evaluator_factory(model.structured_params, model)
        except Exception as e:
            message = f"Evaluator construction failed: {e}"
            logger.error(f"Model {model.model_id}: {message}")
            self.store.complete_model(
                model.model_id, self.worker_id, CompletionReason.ERROR, message=message
            )
            return CompletionReason.ERROR

        _, reason = self.runner.run(model, evaluator)
        return reason

    def complete_job(self) -> None:
        """Record the job outcome; only the first worker to finish succeeds."""
        job = self.store.get_job(self.job_id)
        if self.store.mark_job_complete(
            self.job_id, job.worker_completion_reason, job.worker_completion_msg
        ):
            logger.info(
                f"Job {self.job_id} completed ({job.worker_completion_reason.value}) "
                f"by worker {self.worker_id}"
            )

    def run(self) -> None:
        """Run until the search is over or the worker is stopped."""
        self.running = True
        logger.info(f"Worker {self.worker_id} starting on job {self.job_id}")

        try:
            while self.running:
                if not self.process_one():
                    self.complete_job()
                    break

                now = time.time()
                if now - self.last_heartbeat >= self.config.heartbeat_interval:
                    logger.info(
                        f"Worker {self.worker_id} heartbeat: {self.models_completed} completed, "
                        f"{self.models_failed} failed, {self.models_adopted} adopted"
                    )
                    self.last_heartbeat = now

        except KeyboardInterrupt:
            logger.info("Worker interrupted by user")

        finally:
            self.running = False
            logger.info(
                f"Worker {self.worker_id} stopped: "
                f"{self.models_completed} completed, {self.models_failed} failed"
            )

    def stop(self) -> None:
        """Stop after the current model."""
        self.running = False

    def get_status(self) -> Dict[str, Any]:
        """Get current worker status."""
        return {
            "worker_id": self.worker_id,
            "job_id": self.job_id,
            "running": self.running,
            "models_completed": self.models_completed,
            "models_failed": self.models_failed,
            "models_orphaned": self.models_orphaned,
            "models_adopted": self.models_adopted,
            "controller": self.controller.get_status(),
        }


def run_worker(config: Optional[WorkerConfig] = None) -> None:
    """
    Run the worker as a standalone service.

    This is the entry point for the worker container.
    """
    import argparse
    import signal
    import sys

    parser = argparse.ArgumentParser(description="Swarm search worker")
    parser.add_argument("--job-id", type=int, required=config is None)
    parser.add_argument("--worker-id", default=None)
    parser.add_argument("--backend", default="redis", choices=["redis", "postgres"])
    parser.add_argument("--redis-url", default="redis://localhost:6379")
    parser.add_argument("--evaluator", default=None, help="Evaluator factory, module:attribute")
    parser.add_argument("--update-interval", type=int, default=100)

    args = parser.parse_args()

    if config is None:
        config = WorkerConfig(
            worker_id=args.worker_id or str(uuid.uuid4())[:8],
            job_id=args.job_id,
            store_backend=args.backend,
            redis_url=args.redis_url,
            evaluator_factory=args.evaluator,
            update_interval_records=args.update_interval,
        )

    worker = WorkerLoop(config)

    # Handle signals for graceful shutdown
    def signal_handler(sig, frame):
        logger.info("Received shutdown signal")
        worker.stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    worker.run()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run_worker()
