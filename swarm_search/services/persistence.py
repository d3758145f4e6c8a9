"""
swarm_search/services/persistence.py

PostgreSQL job store.

Jobs and models live in two tables. Uniqueness of models within a job is
enforced by the database (UNIQUE constraints on params_hash and
particle_hash), and every racing transition is a single conditional
UPDATE whose row count says who won.

Unlike the in-memory and Redis stores this one survives a full restart of
every worker, which is what long searches need.
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Callable

from swarm_search.errors import JobNotFoundError, ModelNotFoundError, OrphanRace

from .store import (
    CompletionReason,
    Job,
    JobCompletionReason,
    JobStatus,
    JobStore,
    Model,
    ModelStatus,
    StopReason,
)

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS hs_jobs (
    job_id SERIAL PRIMARY KEY,
    config JSONB NOT NULL,
    status TEXT NOT NULL DEFAULT 'running',
    completion_reason TEXT,
    completion_msg TEXT,
    worker_completion_reason TEXT NOT NULL DEFAULT 'success',
    worker_completion_msg TEXT,
    cancel BOOLEAN NOT NULL DEFAULT FALSE,
    engine_state TEXT,
    results TEXT,
    eng_status TEXT,
    created_at DOUBLE PRECISION NOT NULL,
    ended_at DOUBLE PRECISION
);

CREATE TABLE IF NOT EXISTS hs_models (
    model_id SERIAL PRIMARY KEY,
    job_id INTEGER NOT NULL REFERENCES hs_jobs(job_id),
    swarm_id TEXT NOT NULL,
    params JSONB NOT NULL,
    params_hash TEXT NOT NULL,
    particle_hash TEXT NOT NULL,
    owner TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'running',
    completion_reason TEXT,
    completion_msg TEXT,
    result DOUBLE PRECISION,
    num_records INTEGER NOT NULL DEFAULT 0,
    last_update_time DOUBLE PRECISION NOT NULL,
    eng_stop TEXT,
    matured BOOLEAN NOT NULL DEFAULT FALSE,
    update_counter INTEGER NOT NULL DEFAULT 0,
    adoptions INTEGER NOT NULL DEFAULT 0,
    UNIQUE (job_id, params_hash),
    UNIQUE (job_id, particle_hash)
);

CREATE INDEX IF NOT EXISTS hs_models_job_idx ON hs_models (job_id, model_id);
"""

JOB_COLUMNS = (
    "job_id, config, status, completion_reason, completion_msg, "
    "worker_completion_reason, worker_completion_msg, cancel, engine_state, "
    "results, eng_status, created_at, ended_at"
)

MODEL_COLUMNS = (
    "model_id, job_id, swarm_id, params, params_hash, particle_hash, owner, "
    "status, completion_reason, completion_msg, result, num_records, "
    "last_update_time, eng_stop, matured, update_counter, adoptions"
)


@dataclass
class PersistenceConfig:
    """Configuration for the PostgreSQL job store."""

    # Connection settings
    host: str = "localhost"
    port: int = 5432
    database: str = "swarm_search"
    user: str = "postgres"
    password: str = ""

    # Behavior settings
    create_schema: bool = True  # CREATE TABLE IF NOT EXISTS on first connect

    @classmethod
    def from_env(cls) -> PersistenceConfig:
        """Create config from environment variables."""
        return cls(
            host=os.environ.get("POSTGRES_HOST", "localhost"),
            port=int(os.environ.get("POSTGRES_PORT", "5432")),
            database=os.environ.get("POSTGRES_DB", "swarm_search"),
            user=os.environ.get("POSTGRES_USER", "postgres"),
            password=os.environ.get("POSTGRES_PASSWORD", ""),
            create_schema=os.environ.get("SWARM_CREATE_SCHEMA", "true").lower() == "true",
        )

    @property
    def connection_string(self) -> str:
        """Get PostgreSQL connection string."""
        return (
            f"postgresql://{self.user}:{self.password}@"
            f"{self.host}:{self.port}/{self.database}"
        )


def _job_from_row(row: tuple) -> Job:
    return Job(
        job_id=row[0],
        config=row[1],
        status=JobStatus(row[2]),
        completion_reason=None if row[3] is None else JobCompletionReason(row[3]),
        completion_msg=row[4],
        worker_completion_reason=JobCompletionReason(row[5]),
        worker_completion_msg=row[6],
        cancel=row[7],
        engine_state=row[8],
        results=row[9],
        eng_status=row[10],
        created_at=row[11],
        ended_at=row[12],
    )


def _model_from_row(row: tuple) -> Model:
    return Model(
        model_id=row[0],
        job_id=row[1],
        swarm_id=row[2],
        params=row[3],
        params_hash=row[4],
        particle_hash=row[5],
        owner=row[6],
        status=ModelStatus(row[7]),
        completion_reason=None if row[8] is None else CompletionReason(row[8]),
        completion_msg=row[9],
        result=row[10],
        num_records=row[11],
        last_update_time=row[12],
        eng_stop=None if row[13] is None else StopReason(row[13]),
        matured=row[14],
        update_counter=row[15],
        adoptions=row[16],
    )


class PostgresJobStore(JobStore):
    """
    Job store backed by PostgreSQL.

    Lazy connection in autocommit mode: every statement is its own
    transaction, so each conditional UPDATE is atomic on its own.
    """

    def __init__(self, config: PersistenceConfig, clock: Callable[[], float] = time.time):
        self.config = config
        self.clock = clock
        self._conn = None

    def _get_connection(self) -> Any:
        """Get or create database connection."""
        if self._conn is None:
            try:
                import psycopg2
            except ImportError as err:
                raise ImportError(
                    "psycopg2 package required for PostgresJobStore. "
                    "Install with: pip install psycopg2-binary"
                ) from err

            try:
                self._conn = psycopg2.connect(
                    host=self.config.host,
                    port=self.config.port,
                    database=self.config.database,
                    user=self.config.user,
                    password=self.config.password,
                )
                self._conn.autocommit = True
                logger.info(
                    f"Database connection established to {self.config.host}:{self.config.port}"
                )
            except Exception as e:
                logger.error(f"Failed to connect to database: {e}")
                raise

            if self.config.create_schema:
                with self._conn.cursor() as cur:
                    cur.execute(SCHEMA)

        return self._conn

    def close(self) -> None:
        """Close database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            logger.info("Database connection closed")

    def _execute(self, sql: str, params: tuple = ()) -> int:
        """Run a statement and return the affected row count."""
        with self._get_connection().cursor() as cur:
            cur.execute(sql, params)
            return cur.rowcount

    def _fetchone(self, sql: str, params: tuple = ()) -> tuple | None:
        with self._get_connection().cursor() as cur:
            cur.execute(sql, params)
            return cur.fetchone()

    def _fetchall(self, sql: str, params: tuple = ()) -> list[tuple]:
        with self._get_connection().cursor() as cur:
            cur.execute(sql, params)
            return cur.fetchall()

    def _require_job(self, job_id: int) -> None:
        if self._fetchone("SELECT 1 FROM hs_jobs WHERE job_id = %s", (job_id,)) is None:
            raise JobNotFoundError(job_id)

    def _require_model(self, model_id: int) -> None:
        if self._fetchone("SELECT 1 FROM hs_models WHERE model_id = %s", (model_id,)) is None:
            raise ModelNotFoundError(model_id)

    # -------------------- Jobs --------------------

    def insert_job(self, config: dict[str, Any]) -> int:
        row = self._fetchone(
            """
            INSERT INTO hs_jobs (config, status, created_at)
            VALUES (%s, 'running', %s)
            RETURNING job_id
            """,
            (json.dumps(config), self.now()),
        )
        job_id = row[0]
        logger.info(f"Inserted job {job_id}")
        return job_id

    def get_job(self, job_id: int) -> Job:
        row = self._fetchone(f"SELECT {JOB_COLUMNS} FROM hs_jobs WHERE job_id = %s", (job_id,))
        if row is None:
            raise JobNotFoundError(job_id)
        return _job_from_row(row)

    def list_jobs(self) -> list[Job]:
        rows = self._fetchall(f"SELECT {JOB_COLUMNS} FROM hs_jobs ORDER BY job_id")
        return [_job_from_row(row) for row in rows]

    def update_job_results(self, job_id: int, results: str) -> None:
        if not self._execute(
            "UPDATE hs_jobs SET results = %s WHERE job_id = %s", (results, job_id)
        ):
            raise JobNotFoundError(job_id)

    def set_job_results_if_equal(self, job_id: int, expected: str | None, new: str) -> bool:
        updated = self._execute(
            """
            UPDATE hs_jobs SET results = %s
            WHERE job_id = %s AND results IS NOT DISTINCT FROM %s
            """,
            (new, job_id, expected),
        )
        if not updated:
            self._require_job(job_id)
        return updated == 1

    def update_job_engine_state(
        self, job_id: int, new_state: str, expected_state: str | None
    ) -> bool:
        updated = self._execute(
            """
            UPDATE hs_jobs SET engine_state = %s
            WHERE job_id = %s AND engine_state IS NOT DISTINCT FROM %s
            """,
            (new_state, job_id, expected_state),
        )
        if not updated:
            self._require_job(job_id)
        return updated == 1

    def set_job_status_message(self, job_id: int, message: str) -> None:
        if not self._execute(
            "UPDATE hs_jobs SET eng_status = %s WHERE job_id = %s", (message, job_id)
        ):
            raise JobNotFoundError(job_id)

    def cancel_job(
        self, job_id: int, reason: JobCompletionReason, message: str | None
    ) -> bool:
        if not self._execute("UPDATE hs_jobs SET cancel = TRUE WHERE job_id = %s", (job_id,)):
            raise JobNotFoundError(job_id)
        recorded = self._execute(
            """
            UPDATE hs_jobs
            SET worker_completion_reason = %s, worker_completion_msg = %s
            WHERE job_id = %s AND worker_completion_reason = 'success'
            """,
            (reason.value, message, job_id),
        )
        return recorded == 1

    def mark_job_complete(
        self, job_id: int, reason: JobCompletionReason, message: str | None = None
    ) -> bool:
        updated = self._execute(
            """
            UPDATE hs_jobs
            SET status = 'completed', completion_reason = %s,
                completion_msg = %s, ended_at = %s
            WHERE job_id = %s AND status = 'running'
            """,
            (reason.value, message, self.now(), job_id),
        )
        if not updated:
            self._require_job(job_id)
        return updated == 1

    # -------------------- Models --------------------

    def insert_model(
        self,
        job_id: int,
        swarm_id: str,
        params: dict[str, Any],
        owner: str,
        params_hash: str,
        particle_hash: str,
    ) -> tuple[int, bool]:
        self._require_job(job_id)
        row = self._fetchone(
            """
            INSERT INTO hs_models (
                job_id, swarm_id, params, params_hash, particle_hash, owner,
                status, last_update_time
            ) VALUES (%s, %s, %s, %s, %s, %s, 'running', %s)
            ON CONFLICT DO NOTHING
            RETURNING model_id
            """,
            (job_id, swarm_id, json.dumps(params), params_hash, particle_hash, owner, self.now()),
        )
        if row is not None:
            return row[0], True

        row = self._fetchone(
            """
            SELECT model_id FROM hs_models
            WHERE job_id = %s AND (params_hash = %s OR particle_hash = %s)
            ORDER BY model_id
            LIMIT 1
            """,
            (job_id, params_hash, particle_hash),
        )
        return row[0], False

    def get_model(self, model_id: int) -> Model:
        row = self._fetchone(
            f"SELECT {MODEL_COLUMNS} FROM hs_models WHERE model_id = %s", (model_id,)
        )
        if row is None:
            raise ModelNotFoundError(model_id)
        return _model_from_row(row)

    def list_models(self, job_id: int) -> list[Model]:
        rows = self._fetchall(
            f"SELECT {MODEL_COLUMNS} FROM hs_models WHERE job_id = %s ORDER BY model_id",
            (job_id,),
        )
        if not rows:
            self._require_job(job_id)
        return [_model_from_row(row) for row in rows]

    def update_model_progress(
        self,
        model_id: int,
        owner: str,
        num_records: int,
        result: float | None = None,
        matured: bool | None = None,
    ) -> None:
        updated = self._execute(
            """
            UPDATE hs_models
            SET num_records = %s,
                result = COALESCE(%s, result),
                matured = COALESCE(%s, matured),
                last_update_time = %s,
                update_counter = update_counter + 1
            WHERE model_id = %s AND status = 'running' AND owner = %s
            """,
            (num_records, result, matured, self.now(), model_id, owner),
        )
        if not updated:
            self._require_model(model_id)
            raise OrphanRace(model_id, owner)

    def complete_model(
        self,
        model_id: int,
        owner: str,
        reason: CompletionReason,
        result: float | None = None,
        message: str | None = None,
    ) -> bool:
        updated = self._execute(
            """
            UPDATE hs_models
            SET status = 'completed', completion_reason = %s, completion_msg = %s,
                result = COALESCE(%s, result),
                last_update_time = %s,
                update_counter = update_counter + 1
            WHERE model_id = %s AND status = 'running' AND owner = %s
            """,
            (reason.value, message, result, self.now(), model_id, owner),
        )
        if not updated:
            self._require_model(model_id)
        return updated == 1

    def claim_orphan(self, model_id: int, new_owner: str, orphan_interval_secs: float) -> bool:
        now = self.now()
        updated = self._execute(
            """
            UPDATE hs_models
            SET owner = %s, num_records = 0, result = NULL, matured = FALSE,
                eng_stop = NULL, last_update_time = %s,
                adoptions = adoptions + 1, update_counter = update_counter + 1
            WHERE model_id = %s AND status = 'running' AND last_update_time <= %s
            """,
            (new_owner, now, model_id, now - orphan_interval_secs),
        )
        if not updated:
            self._require_model(model_id)
        return updated == 1

    def request_model_stop(self, model_id: int, stop_reason: StopReason) -> bool:
        updated = self._execute(
            """
            UPDATE hs_models
            SET eng_stop = %s, update_counter = update_counter + 1
            WHERE model_id = %s AND status = 'running'
              AND eng_stop IS DISTINCT FROM %s
              AND eng_stop IS DISTINCT FROM 'killed'
            """,
            (stop_reason.value, model_id, stop_reason.value),
        )
        if not updated:
            self._require_model(model_id)
        return updated == 1
