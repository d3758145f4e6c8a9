"""
swarm_search/services/jobs.py

Job submission and results.

A search starts by inserting a job carrying its SearchConfig; workers
started with that job id do the rest. get_search_results() gathers what a
caller wants to know once (or while) the search runs.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .config import SearchConfig
from .state import SwarmEngineState
from .store import CompletionReason, JobCompletionReason, JobStatus, JobStore, ModelStatus

logger = logging.getLogger(__name__)


def submit_search(store: JobStore, config: SearchConfig) -> int:
    """
    Insert a new search job.

    The config is validated on construction, so an invalid search never
    reaches the store.
    """
    job_id = store.insert_job(config.to_dict())
    logger.info(
        f"Submitted search job {job_id} over encoders {config.search_space.encoder_names}"
    )
    return job_id


def cancel_search(store: JobStore, job_id: int, message: Optional[str] = None) -> bool:
    """Ask every worker of a job to stop; running models finish as killed."""
    recorded = store.cancel_job(job_id, JobCompletionReason.CANCELLED, message or "Cancelled by user")
    logger.info(f"Cancel requested for job {job_id}")
    return recorded


@dataclass
class SearchResults:
    """Outcome of a search job."""
    job_id: int
    status: JobStatus
    completion_reason: Optional[JobCompletionReason]
    completion_msg: Optional[str]

    best_model_id: Optional[int] = None
    best_value: Optional[float] = None
    best_params: Optional[Dict[str, Any]] = None

    field_contributions: Dict[str, float] = field(default_factory=dict)
    absolute_field_contributions: Dict[str, float] = field(default_factory=dict)
    terminated_swarms: Dict[str, Any] = field(default_factory=dict)

    num_models: int = 0
    num_completed_models: int = 0
    num_error_models: int = 0
    swarms: Dict[str, str] = field(default_factory=dict)  # swarm_id -> status

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "completion_reason": self.completion_reason.value if self.completion_reason else None,
            "completion_msg": self.completion_msg,
            "best_model_id": self.best_model_id,
            "best_value": self.best_value,
            "best_params": self.best_params,
            "field_contributions": self.field_contributions,
            "absolute_field_contributions": self.absolute_field_contributions,
            "terminated_swarms": self.terminated_swarms,
            "num_models": self.num_models,
            "num_completed_models": self.num_completed_models,
            "num_error_models": self.num_error_models,
            "swarms": self.swarms,
        }


def get_search_results(store: JobStore, job_id: int) -> SearchResults:
    """Collect a job's best model, field contributions and progress."""
    job = store.get_job(job_id)
    results = json.loads(job.results) if job.results else {}
    models = store.list_models(job_id)

    best_value = results.get("best_value")
    if best_value is not None and not math.isfinite(best_value):
        best_value = None

    swarms: Dict[str, str] = {}
    if job.engine_state:
        state = SwarmEngineState.from_json(job.engine_state)
        swarms = {swarm_id: info.status.value for swarm_id, info in sorted(state.swarms.items())}

    completed = [m for m in models if m.status == ModelStatus.COMPLETED]
    return SearchResults(
        job_id=job_id,
        status=job.status,
        completion_reason=job.completion_reason,
        completion_msg=job.completion_msg,
        best_model_id=results.get("best_model_id"),
        best_value=best_value,
        best_params=results.get("best_params"),
        field_contributions=results.get("field_contributions", {}),
        absolute_field_contributions=results.get("absolute_field_contributions", {}),
        terminated_swarms=results.get("terminated_swarms", {}),
        num_models=len(models),
        num_completed_models=len(completed),
        num_error_models=sum(1 for m in completed if m.completion_reason == CompletionReason.ERROR),
        swarms=swarms,
    )


def run_submit() -> None:
    """
    Submit a search from a JSON description.

    Prints the new job id; start workers with it.
    """
    import argparse

    from .store import create_job_store

    parser = argparse.ArgumentParser(description="Submit a swarm search job")
    parser.add_argument("config", nargs="?", help="Path to the JSON search description")
    parser.add_argument("--backend", default="redis", choices=["redis", "postgres"])
    parser.add_argument("--redis-url", default="redis://localhost:6379")
    parser.add_argument("--results", type=int, default=None, metavar="JOB_ID",
                        help="Print the results of an existing job instead")

    args = parser.parse_args()

    store = create_job_store(backend=args.backend, redis_url=args.redis_url)

    if args.results is not None:
        print(json.dumps(get_search_results(store, args.results).to_dict(), indent=2))
        return

    if args.config is None:
        parser.error("a search description is required")
    job_id = submit_search(store, SearchConfig.from_file(args.config))
    print(job_id)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run_submit()
