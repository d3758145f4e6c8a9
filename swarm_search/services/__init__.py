"""
swarm_search/services/

Distributed services for hyperparameter search.

Architecture:
- Store: jobs and models, with atomic state transitions (memory, Redis, PostgreSQL)
- Controller: per-worker search engine that picks the next model
- Runner: drives one model to completion against an evaluator
- Worker: loops controller -> runner -> controller until the search is over

There is no central coordinator. Every worker runs the same controller
logic against the shared store and races on conditional writes; the
store's atomicity is what keeps the search consistent.
"""

from .config import SearchConfig
from .store import (
    CompletionReason,
    Job,
    JobCompletionReason,
    JobStatus,
    JobStore,
    InMemoryJobStore,
    RedisJobStore,
    Model,
    ModelStatus,
    StopReason,
    create_job_store,
)
from .runner import Evaluator, ModelEvaluationRunner, RunnerConfig
from .controller import NextModel, SwarmController
from .evaluators import FunctionEvaluator, load_evaluator_factory
from .worker import WorkerConfig, WorkerLoop
from .jobs import SearchResults, cancel_search, get_search_results, submit_search

__all__ = [
    "SearchConfig",
    "CompletionReason",
    "Job",
    "JobCompletionReason",
    "JobStatus",
    "JobStore",
    "InMemoryJobStore",
    "RedisJobStore",
    "Model",
    "ModelStatus",
    "StopReason",
    "create_job_store",
    "Evaluator",
    "ModelEvaluationRunner",
    "RunnerConfig",
    "NextModel",
    "SwarmController",
    "FunctionEvaluator",
    "load_evaluator_factory",
    "WorkerConfig",
    "WorkerLoop",
    "SearchResults",
    "cancel_search",
    "get_search_results",
    "submit_search",
]
