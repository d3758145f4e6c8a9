"""
swarm_search/services/dashboard.py

Read-only HTTP API over search jobs.

Provides visibility into:
- Jobs and their status
- Models of a job (parameters, results, completion reasons)
- Search results (best model, field contributions, swarm statuses)
- Engine state (sprints and swarms)

The dashboard never writes to the job store and does not control searches.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from swarm_search.errors import JobNotFoundError

from .jobs import get_search_results
from .store import JobStore, create_job_store

logger = logging.getLogger(__name__)


@dataclass
class DashboardConfig:
    """Configuration for the dashboard service."""

    store_backend: str = "redis"  # "redis" or "postgres"
    redis_url: str = "redis://localhost:6379"
    host: str = "0.0.0.0"
    port: int = 8082
    models_limit: int = 1000  # Max models per page

    @classmethod
    def from_env(cls) -> "DashboardConfig":
        """Create config from environment variables."""
        return cls(
            store_backend=os.environ.get("SWARM_STORE_BACKEND", "redis"),
            redis_url=os.environ.get("REDIS_URL", "redis://localhost:6379"),
            host=os.environ.get("SWARM_DASHBOARD_HOST", "0.0.0.0"),
            port=int(os.environ.get("SWARM_DASHBOARD_PORT", "8082")),
        )


def _job_summary(job) -> Dict[str, Any]:
    results = json.loads(job.results) if job.results else {}
    return {
        "job_id": job.job_id,
        "status": job.status.value,
        "completion_reason": job.completion_reason.value if job.completion_reason else None,
        "cancel": job.cancel,
        "eng_status": job.eng_status,
        "best_model_id": results.get("best_model_id"),
        "best_value": results.get("best_value"),
        "created_at": job.created_at,
        "ended_at": job.ended_at,
    }


def create_app(config: Optional[DashboardConfig] = None, store: Optional[JobStore] = None) -> Any:
    """
    Create the FastAPI application.

    Pass a store to serve it directly; otherwise one is created from the
    config.
    """
    from fastapi import FastAPI, HTTPException

    config = config or DashboardConfig()
    if store is None:
        store = create_job_store(backend=config.store_backend, redis_url=config.redis_url)

    app = FastAPI(
        title="Swarm Search Dashboard",
        description="Read-only view of distributed hyperparameter searches",
        version="0.1.0",
    )

    def load_job(job_id: int):
        try:
            return store.get_job(job_id)
        except JobNotFoundError as e:
            raise HTTPException(status_code=404, detail=f"Job {job_id} not found") from e

    @app.get("/api/jobs")
    async def list_jobs() -> List[Dict[str, Any]]:
        """List every job."""
        return [_job_summary(job) for job in store.list_jobs()]

    @app.get("/api/jobs/{job_id}")
    async def get_job(job_id: int) -> Dict[str, Any]:
        """Get one job, including its engine state."""
        job = load_job(job_id)
        summary = _job_summary(job)
        summary["completion_msg"] = job.completion_msg
        summary["config"] = job.config
        summary["engine_state"] = json.loads(job.engine_state) if job.engine_state else None
        return summary

    @app.get("/api/jobs/{job_id}/models")
    async def list_models(job_id: int, limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
        """List a job's models with pagination."""
        load_job(job_id)
        limit = max(0, min(limit, config.models_limit))
        models = store.list_models(job_id)[offset:offset + limit]
        return [
            {
                "model_id": m.model_id,
                "swarm_id": m.swarm_id,
                "gen_idx": m.gen_idx,
                "params": m.structured_params,
                "status": m.status.value,
                "completion_reason": m.completion_reason.value if m.completion_reason else None,
                "completion_msg": m.completion_msg,
                "result": m.result,
                "num_records": m.num_records,
                "owner": m.owner,
                "adoptions": m.adoptions,
            }
            for m in models
        ]

    @app.get("/api/jobs/{job_id}/results")
    async def get_results(job_id: int) -> Dict[str, Any]:
        """Get a job's search results."""
        load_job(job_id)
        return get_search_results(store, job_id).to_dict()

    @app.on_event("startup")
    async def startup() -> None:
        """Log startup."""
        logger.info(f"Dashboard starting on {config.host}:{config.port}")

    return app


def run_dashboard(config: Optional[DashboardConfig] = None) -> None:
    """
    Run the dashboard as a standalone service.

    This is the entry point for the dashboard container.
    """
    import argparse

    parser = argparse.ArgumentParser(description="Swarm Search Dashboard")
    parser.add_argument("--backend", default="redis", choices=["redis", "postgres"])
    parser.add_argument("--redis-url", default="redis://localhost:6379")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8082)

    args = parser.parse_args()

    if config is None:
        config = DashboardConfig(
            store_backend=args.backend,
            redis_url=args.redis_url,
            host=args.host,
            port=args.port,
        )

    app = create_app(config)

    import uvicorn

    uvicorn.run(app, host=config.host, port=config.port)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run_dashboard()
