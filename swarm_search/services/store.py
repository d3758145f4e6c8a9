"""
swarm_search/services/store.py

Job store: the only channel between search workers.

The store holds:
- Jobs: the search config, the versioned engine state and the results
- Models: one row per evaluated parameter set, with owner and progress

Every state transition a worker races on is a conditional update:
- insert_model is unique on (job_id, params_hash) and (job_id, particle_hash)
- complete_model only succeeds for the current owner of a running model
- claim_orphan only succeeds for a running model that stopped updating
- update_job_engine_state / set_job_results_if_equal are compare-and-swap

Backends: in-memory (tests, single host), Redis (WATCH/MULTI transactions)
and PostgreSQL (see persistence.py).
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
import copy
import json
import logging
import threading
import time

from swarm_search.errors import JobNotFoundError, ModelNotFoundError, OrphanRace

logger = logging.getLogger(__name__)


class JobStatus(Enum):
    """Lifecycle status of a search job."""
    RUNNING = "running"
    COMPLETED = "completed"


class JobCompletionReason(Enum):
    """Why a job (or the workers of a job) finished."""
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


class ModelStatus(Enum):
    """Lifecycle status of a model."""
    RUNNING = "running"
    COMPLETED = "completed"


class CompletionReason(Enum):
    """Why a model finished."""
    EOF = "eof"  # Evaluator ran out of records
    STOPPED = "stopped"  # Matured early, or the job is winding down
    KILLED = "killed"  # Swarm killed or job cancelled
    ERROR = "error"  # Evaluator raised
    ORPHANED = "orphaned"  # Another worker adopted the model


class StopReason(Enum):
    """Stop request the engine posts to a running model."""
    STOPPED = "stopped"
    KILLED = "killed"


def _enum_or_none(enum_cls, value):
    return None if value is None else enum_cls(value)


@dataclass
class Job:
    """A search job and its shared engine state."""
    job_id: int
    config: Dict[str, Any]
    status: JobStatus = JobStatus.RUNNING
    completion_reason: Optional[JobCompletionReason] = None
    completion_msg: Optional[str] = None
    worker_completion_reason: JobCompletionReason = JobCompletionReason.SUCCESS
    worker_completion_msg: Optional[str] = None
    cancel: bool = False
    engine_state: Optional[str] = None  # JSON of SwarmEngineState
    results: Optional[str] = None  # JSON
    eng_status: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    ended_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "config": self.config,
            "status": self.status.value,
            "completion_reason": None if self.completion_reason is None else self.completion_reason.value,
            "completion_msg": self.completion_msg,
            "worker_completion_reason": self.worker_completion_reason.value,
            "worker_completion_msg": self.worker_completion_msg,
            "cancel": self.cancel,
            "engine_state": self.engine_state,
            "results": self.results,
            "eng_status": self.eng_status,
            "created_at": self.created_at,
            "ended_at": self.ended_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Job":
        return cls(
            job_id=int(d["job_id"]),
            config=d["config"],
            status=JobStatus(d["status"]),
            completion_reason=_enum_or_none(JobCompletionReason, d.get("completion_reason")),
            completion_msg=d.get("completion_msg"),
            worker_completion_reason=JobCompletionReason(
                d.get("worker_completion_reason", JobCompletionReason.SUCCESS.value)
            ),
            worker_completion_msg=d.get("worker_completion_msg"),
            cancel=bool(d.get("cancel", False)),
            engine_state=d.get("engine_state"),
            results=d.get("results"),
            eng_status=d.get("eng_status"),
            created_at=d.get("created_at", time.time()),
            ended_at=d.get("ended_at"),
        )


@dataclass
class Model:
    """
    One evaluated parameter set.

    params holds {"particle_state": ..., "structured_params": ...}; the
    particle state is what lets any worker evolve the particle further.
    """
    model_id: int
    job_id: int
    swarm_id: str
    params: Dict[str, Any]
    params_hash: str
    particle_hash: str
    owner: str
    status: ModelStatus = ModelStatus.RUNNING
    completion_reason: Optional[CompletionReason] = None
    completion_msg: Optional[str] = None
    result: Optional[float] = None
    num_records: int = 0
    last_update_time: float = field(default_factory=time.time)
    eng_stop: Optional[StopReason] = None
    matured: bool = False
    update_counter: int = 0
    adoptions: int = 0

    @property
    def particle_state(self) -> Dict[str, Any]:
        return self.params["particle_state"]

    @property
    def structured_params(self) -> Dict[str, Any]:
        return self.params["structured_params"]

    @property
    def gen_idx(self) -> int:
        return self.params["particle_state"]["gen_idx"]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model_id": self.model_id,
            "job_id": self.job_id,
            "swarm_id": self.swarm_id,
            "params": self.params,
            "params_hash": self.params_hash,
            "particle_hash": self.particle_hash,
            "owner": self.owner,
            "status": self.status.value,
            "completion_reason": None if self.completion_reason is None else self.completion_reason.value,
            "completion_msg": self.completion_msg,
            "result": self.result,
            "num_records": self.num_records,
            "last_update_time": self.last_update_time,
            "eng_stop": None if self.eng_stop is None else self.eng_stop.value,
            "matured": self.matured,
            "update_counter": self.update_counter,
            "adoptions": self.adoptions,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Model":
        return cls(
            model_id=int(d["model_id"]),
            job_id=int(d["job_id"]),
            swarm_id=d["swarm_id"],
            params=d["params"],
            params_hash=d["params_hash"],
            particle_hash=d["particle_hash"],
            owner=d["owner"],
            status=ModelStatus(d["status"]),
            completion_reason=_enum_or_none(CompletionReason, d.get("completion_reason")),
            completion_msg=d.get("completion_msg"),
            result=d.get("result"),
            num_records=int(d.get("num_records", 0)),
            last_update_time=float(d.get("last_update_time", 0.0)),
            eng_stop=_enum_or_none(StopReason, d.get("eng_stop")),
            matured=bool(d.get("matured", False)),
            update_counter=int(d.get("update_counter", 0)),
            adoptions=int(d.get("adoptions", 0)),
        )


class JobStore(ABC):
    """
    Abstract base for job store implementations.

    All operations are safe under concurrent access from many workers.
    """

    clock: Callable[[], float] = time.time

    def now(self) -> float:
        """Store time, used for model heartbeats and orphan detection."""
        return self.clock()

    # -------------------- Jobs --------------------

    @abstractmethod
    def insert_job(self, config: Dict[str, Any]) -> int:
        """Create a running job and return its id."""
        pass

    @abstractmethod
    def get_job(self, job_id: int) -> Job:
        """Return a job. Raises JobNotFoundError."""
        pass

    @abstractmethod
    def list_jobs(self) -> List[Job]:
        """Return all jobs, oldest first."""
        pass

    @abstractmethod
    def update_job_results(self, job_id: int, results: str) -> None:
        """Overwrite the results JSON."""
        pass

    @abstractmethod
    def set_job_results_if_equal(self, job_id: int, expected: Optional[str], new: str) -> bool:
        """Compare-and-swap on the results JSON."""
        pass

    @abstractmethod
    def update_job_engine_state(
        self, job_id: int, new_state: str, expected_state: Optional[str]
    ) -> bool:
        """Compare-and-swap on the engine state JSON."""
        pass

    @abstractmethod
    def set_job_status_message(self, job_id: int, message: str) -> None:
        """Set the human-readable engine status line."""
        pass

    @abstractmethod
    def cancel_job(self, job_id: int, reason: JobCompletionReason, message: Optional[str]) -> bool:
        """
        Ask every worker of the job to stop.

        The worker completion reason is only recorded while it is still
        success. Returns True if this call recorded it.
        """
        pass

    @abstractmethod
    def mark_job_complete(
        self, job_id: int, reason: JobCompletionReason, message: Optional[str] = None
    ) -> bool:
        """Complete a running job. Returns False if it was already complete."""
        pass

    # -------------------- Models --------------------

    @abstractmethod
    def insert_model(
        self,
        job_id: int,
        swarm_id: str,
        params: Dict[str, Any],
        owner: str,
        params_hash: str,
        particle_hash: str,
    ) -> Tuple[int, bool]:
        """
        Insert a running model owned by the caller.

        Returns (model_id, ours). On a duplicate params_hash or
        particle_hash the existing model id is returned with ours=False.
        """
        pass

    @abstractmethod
    def get_model(self, model_id: int) -> Model:
        """Return a model. Raises ModelNotFoundError."""
        pass

    @abstractmethod
    def list_models(self, job_id: int) -> List[Model]:
        """Return every model of a job in insertion order."""
        pass

    @abstractmethod
    def update_model_progress(
        self,
        model_id: int,
        owner: str,
        num_records: int,
        result: Optional[float] = None,
        matured: Optional[bool] = None,
    ) -> None:
        """Record progress and refresh the heartbeat. Raises OrphanRace."""
        pass

    @abstractmethod
    def complete_model(
        self,
        model_id: int,
        owner: str,
        reason: CompletionReason,
        result: Optional[float] = None,
        message: Optional[str] = None,
    ) -> bool:
        """Complete a running model owned by the caller. False if not."""
        pass

    @abstractmethod
    def claim_orphan(self, model_id: int, new_owner: str, orphan_interval_secs: float) -> bool:
        """
        Take over a running model whose heartbeat is older than the interval.

        The model restarts from scratch under the new owner.
        """
        pass

    @abstractmethod
    def request_model_stop(self, model_id: int, stop_reason: StopReason) -> bool:
        """Post a stop request to a running model."""
        pass


# ==================== Shared transition logic ====================

def _apply_progress(model: Model, owner: str, num_records: int, result, matured, now: float) -> None:
    if model.status != ModelStatus.RUNNING or model.owner != owner:
        raise OrphanRace(model.model_id, owner)
    model.num_records = num_records
    if result is not None:
        model.result = result
    if matured is not None:
        model.matured = matured
    model.last_update_time = now
    model.update_counter += 1


def _apply_complete(model: Model, owner: str, reason, result, message, now: float) -> bool:
    if model.status != ModelStatus.RUNNING or model.owner != owner:
        return False
    model.status = ModelStatus.COMPLETED
    model.completion_reason = reason
    model.completion_msg = message
    if result is not None:
        model.result = result
    model.last_update_time = now
    model.update_counter += 1
    return True


def _apply_claim(model: Model, new_owner: str, orphan_interval_secs: float, now: float) -> bool:
    if model.status != ModelStatus.RUNNING:
        return False
    if now - model.last_update_time < orphan_interval_secs:
        return False
    model.owner = new_owner
    model.num_records = 0
    model.result = None
    model.matured = False
    model.eng_stop = None
    model.last_update_time = now
    model.adoptions += 1
    model.update_counter += 1
    return True


def _apply_stop(model: Model, stop_reason: StopReason) -> bool:
    if model.status != ModelStatus.RUNNING or model.eng_stop in (stop_reason, StopReason.KILLED):
        return False
    model.eng_stop = stop_reason
    model.update_counter += 1
    return True


def _apply_cancel(job: Job, reason: JobCompletionReason, message: Optional[str]) -> bool:
    job.cancel = True
    if job.worker_completion_reason != JobCompletionReason.SUCCESS:
        return False
    job.worker_completion_reason = reason
    job.worker_completion_msg = message
    return True


def _apply_job_complete(job: Job, reason: JobCompletionReason, message, now: float) -> bool:
    if job.status != JobStatus.RUNNING:
        return False
    job.status = JobStatus.COMPLETED
    job.completion_reason = reason
    job.completion_msg = message
    job.ended_at = now
    return True


class InMemoryJobStore(JobStore):
    """
    In-memory job store for testing and single-machine use.

    Thread-safe: every operation runs under one lock and returns copies.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._lock = threading.Lock()
        self._jobs: Dict[int, Job] = {}
        self._models: Dict[int, Model] = {}
        self._job_models: Dict[int, List[int]] = {}
        self._params_hashes: Dict[Tuple[int, str], int] = {}
        self._particle_hashes: Dict[Tuple[int, str], int] = {}
        self._next_job_id = 1
        self._next_model_id = 1

    def _job(self, job_id: int) -> Job:
        try:
            return self._jobs[job_id]
        except KeyError:
            raise JobNotFoundError(job_id) from None

    def _model(self, model_id: int) -> Model:
        try:
            return self._models[model_id]
        except KeyError:
            raise ModelNotFoundError(model_id) from None

    def insert_job(self, config: Dict[str, Any]) -> int:
        with self._lock:
            job_id = self._next_job_id
            self._next_job_id += 1
            self._jobs[job_id] = Job(job_id=job_id, config=copy.deepcopy(config), created_at=self.now())
            self._job_models[job_id] = []
        logger.info(f"Inserted job {job_id}")
        return job_id

    def get_job(self, job_id: int) -> Job:
        with self._lock:
            return copy.deepcopy(self._job(job_id))

    def list_jobs(self) -> List[Job]:
        with self._lock:
            return [copy.deepcopy(job) for _, job in sorted(self._jobs.items())]

    def update_job_results(self, job_id: int, results: str) -> None:
        with self._lock:
            self._job(job_id).results = results

    def set_job_results_if_equal(self, job_id: int, expected: Optional[str], new: str) -> bool:
        with self._lock:
            job = self._job(job_id)
            if job.results != expected:
                return False
            job.results = new
            return True

    def update_job_engine_state(
        self, job_id: int, new_state: str, expected_state: Optional[str]
    ) -> bool:
        with self._lock:
            job = self._job(job_id)
            if job.engine_state != expected_state:
                return False
            job.engine_state = new_state
            return True

    def set_job_status_message(self, job_id: int, message: str) -> None:
        with self._lock:
            self._job(job_id).eng_status = message

    def cancel_job(self, job_id: int, reason: JobCompletionReason, message: Optional[str]) -> bool:
        with self._lock:
            return _apply_cancel(self._job(job_id), reason, message)

    def mark_job_complete(
        self, job_id: int, reason: JobCompletionReason, message: Optional[str] = None
    ) -> bool:
        with self._lock:
            return _apply_job_complete(self._job(job_id), reason, message, self.now())

    def insert_model(
        self,
        job_id: int,
        swarm_id: str,
        params: Dict[str, Any],
        owner: str,
        params_hash: str,
        particle_hash: str,
    ) -> Tuple[int, bool]:
        with self._lock:
            self._job(job_id)
            existing = self._params_hashes.get((job_id, params_hash))
            if existing is None:
                existing = self._particle_hashes.get((job_id, particle_hash))
            if existing is not None:
                return existing, False

            model_id = self._next_model_id
            self._next_model_id += 1
            self._models[model_id] = Model(
                model_id=model_id,
                job_id=job_id,
                swarm_id=swarm_id,
                params=copy.deepcopy(params),
                params_hash=params_hash,
                particle_hash=particle_hash,
                owner=owner,
                last_update_time=self.now(),
            )
            self._job_models[job_id].append(model_id)
            self._params_hashes[(job_id, params_hash)] = model_id
            self._particle_hashes[(job_id, particle_hash)] = model_id
            return model_id, True

    def get_model(self, model_id: int) -> Model:
        with self._lock:
            return copy.deepcopy(self._model(model_id))

    def list_models(self, job_id: int) -> List[Model]:
        with self._lock:
            self._job(job_id)
            return [copy.deepcopy(self._models[m]) for m in self._job_models[job_id]]

    def update_model_progress(
        self,
        model_id: int,
        owner: str,
        num_records: int,
        result: Optional[float] = None,
        matured: Optional[bool] = None,
    ) -> None:
        with self._lock:
            _apply_progress(self._model(model_id), owner, num_records, result, matured, self.now())

    def complete_model(
        self,
        model_id: int,
        owner: str,
        reason: CompletionReason,
        result: Optional[float] = None,
        message: Optional[str] = None,
    ) -> bool:
        with self._lock:
            return _apply_complete(self._model(model_id), owner, reason, result, message, self.now())

    def claim_orphan(self, model_id: int, new_owner: str, orphan_interval_secs: float) -> bool:
        with self._lock:
            return _apply_claim(self._model(model_id), new_owner, orphan_interval_secs, self.now())

    def request_model_stop(self, model_id: int, stop_reason: StopReason) -> bool:
        with self._lock:
            return _apply_stop(self._model(model_id), stop_reason)


class RedisJobStore(JobStore):
    """
    Redis-backed job store for multi-host searches.

    Jobs and models are JSON documents; uniqueness indexes are hashes.
    Conditional updates use optimistic WATCH/MULTI transactions.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        key_prefix: str = "swarm_search:",
        clock: Callable[[], float] = time.time,
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.clock = clock
        self._redis = None

    def _get_redis(self):
        """Lazy connection to Redis."""
        if self._redis is None:
            try:
                import redis
                self._redis = redis.from_url(self.redis_url, decode_responses=True)
                self._redis.ping()
                logger.info(f"Connected to Redis at {self.redis_url}")
            except ImportError as err:
                raise ImportError(
                    "redis package required for RedisJobStore. "
                    "Install with: pip install redis"
                ) from err
            except Exception as e:
                logger.error(f"Failed to connect to Redis: {e}")
                raise
        return self._redis

    # Keys
    def _job_key(self, job_id: int) -> str:
        return f"{self.key_prefix}jobs:{job_id}"

    def _model_key(self, model_id: int) -> str:
        return f"{self.key_prefix}models:{model_id}"

    def _job_models_key(self, job_id: int) -> str:
        return f"{self.key_prefix}jobs:{job_id}:models"

    def _params_hash_key(self, job_id: int) -> str:
        return f"{self.key_prefix}jobs:{job_id}:params_hashes"

    def _particle_hash_key(self, job_id: int) -> str:
        return f"{self.key_prefix}jobs:{job_id}:particle_hashes"

    def _load_job(self, r, job_id: int) -> Job:
        data = r.get(self._job_key(job_id))
        if data is None:
            raise JobNotFoundError(job_id)
        return Job.from_dict(json.loads(data))

    def _load_model(self, r, model_id: int) -> Model:
        data = r.get(self._model_key(model_id))
        if data is None:
            raise ModelNotFoundError(model_id)
        return Model.from_dict(json.loads(data))

    def _transact(self, key: str, load: Callable, mutate: Callable) -> Any:
        """
        Read-modify-write one document under WATCH.

        mutate(obj) changes obj in place and returns a value; when it returns
        False the write is skipped. Exceptions from mutate propagate.
        """
        from redis.exceptions import WatchError

        r = self._get_redis()
        with r.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key)
                    obj = load(pipe)
                    outcome = mutate(obj)
                    if outcome is False:
                        pipe.unwatch()
                        return outcome
                    pipe.multi()
                    pipe.set(key, json.dumps(obj.to_dict()))
                    pipe.execute()
                    return outcome
                except WatchError:
                    logger.debug(f"Concurrent update on {key}, retrying")
                    continue

    def _update_job(self, job_id: int, mutate: Callable[[Job], Any]) -> Any:
        return self._transact(self._job_key(job_id), lambda p: self._load_job(p, job_id), mutate)

    def _update_model(self, model_id: int, mutate: Callable[[Model], Any]) -> Any:
        return self._transact(
            self._model_key(model_id), lambda p: self._load_model(p, model_id), mutate
        )

    def insert_job(self, config: Dict[str, Any]) -> int:
        r = self._get_redis()
        job_id = int(r.incr(f"{self.key_prefix}job_counter"))
        job = Job(job_id=job_id, config=config, created_at=self.now())
        pipe = r.pipeline()
        pipe.set(self._job_key(job_id), json.dumps(job.to_dict()))
        pipe.rpush(f"{self.key_prefix}job_ids", job_id)
        pipe.execute()
        logger.info(f"Inserted job {job_id}")
        return job_id

    def get_job(self, job_id: int) -> Job:
        return self._load_job(self._get_redis(), job_id)

    def list_jobs(self) -> List[Job]:
        r = self._get_redis()
        return [self._load_job(r, int(j)) for j in r.lrange(f"{self.key_prefix}job_ids", 0, -1)]

    def update_job_results(self, job_id: int, results: str) -> None:
        def mutate(job: Job) -> None:
            job.results = results
        self._update_job(job_id, mutate)

    def set_job_results_if_equal(self, job_id: int, expected: Optional[str], new: str) -> bool:
        def mutate(job: Job) -> bool:
            if job.results != expected:
                return False
            job.results = new
            return True
        return self._update_job(job_id, mutate)

    def update_job_engine_state(
        self, job_id: int, new_state: str, expected_state: Optional[str]
    ) -> bool:
        def mutate(job: Job) -> bool:
            if job.engine_state != expected_state:
                return False
            job.engine_state = new_state
            return True
        return self._update_job(job_id, mutate)

    def set_job_status_message(self, job_id: int, message: str) -> None:
        def mutate(job: Job) -> None:
            job.eng_status = message
        self._update_job(job_id, mutate)

    def cancel_job(self, job_id: int, reason: JobCompletionReason, message: Optional[str]) -> bool:
        recorded = []

        def mutate(job: Job) -> None:
            recorded[:] = [_apply_cancel(job, reason, message)]
        self._update_job(job_id, mutate)
        return recorded[0]

    def mark_job_complete(
        self, job_id: int, reason: JobCompletionReason, message: Optional[str] = None
    ) -> bool:
        return self._update_job(
            job_id, lambda job: _apply_job_complete(job, reason, message, self.now())
        )

    def insert_model(
        self,
        job_id: int,
        swarm_id: str,
        params: Dict[str, Any],
        owner: str,
        params_hash: str,
        particle_hash: str,
    ) -> Tuple[int, bool]:
        from redis.exceptions import WatchError

        r = self._get_redis()
        self._load_job(r, job_id)
        params_key = self._params_hash_key(job_id)
        particle_key = self._particle_hash_key(job_id)

        with r.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(params_key, particle_key)
                    existing = pipe.hget(params_key, params_hash)
                    if existing is None:
                        existing = pipe.hget(particle_key, particle_hash)
                    if existing is not None:
                        pipe.unwatch()
                        return int(existing), False

                    model_id = int(r.incr(f"{self.key_prefix}model_counter"))
                    model = Model(
                        model_id=model_id,
                        job_id=job_id,
                        swarm_id=swarm_id,
                        params=params,
                        params_hash=params_hash,
                        particle_hash=particle_hash,
                        owner=owner,
                        last_update_time=self.now(),
                    )
                    pipe.multi()
                    pipe.hset(params_key, params_hash, model_id)
                    pipe.hset(particle_key, particle_hash, model_id)
                    pipe.set(self._model_key(model_id), json.dumps(model.to_dict()))
                    pipe.rpush(self._job_models_key(job_id), model_id)
                    pipe.execute()
                    return model_id, True
                except WatchError:
                    logger.debug(f"Concurrent model insert in job {job_id}, retrying")
                    continue

    def get_model(self, model_id: int) -> Model:
        return self._load_model(self._get_redis(), model_id)

    def list_models(self, job_id: int) -> List[Model]:
        r = self._get_redis()
        model_ids = r.lrange(self._job_models_key(job_id), 0, -1)
        if not model_ids:
            self._load_job(r, job_id)
            return []
        documents = r.mget([self._model_key(int(m)) for m in model_ids])
        return [Model.from_dict(json.loads(d)) for d in documents if d is not None]

    def update_model_progress(
        self,
        model_id: int,
        owner: str,
        num_records: int,
        result: Optional[float] = None,
        matured: Optional[bool] = None,
    ) -> None:
        def mutate(model: Model) -> None:
            _apply_progress(model, owner, num_records, result, matured, self.now())
        self._update_model(model_id, mutate)

    def complete_model(
        self,
        model_id: int,
        owner: str,
        reason: CompletionReason,
        result: Optional[float] = None,
        message: Optional[str] = None,
    ) -> bool:
        return self._update_model(
            model_id,
            lambda model: _apply_complete(model, owner, reason, result, message, self.now()),
        )

    def claim_orphan(self, model_id: int, new_owner: str, orphan_interval_secs: float) -> bool:
        return self._update_model(
            model_id,
            lambda model: _apply_claim(model, new_owner, orphan_interval_secs, self.now()),
        )

    def request_model_stop(self, model_id: int, stop_reason: StopReason) -> bool:
        return self._update_model(model_id, lambda model: _apply_stop(model, stop_reason))


def create_job_store(
    backend: str = "memory",
    redis_url: str = "redis://localhost:6379",
    **kwargs
) -> JobStore:
    """
    Factory function to create a job store.

    Args:
        backend: "memory", "redis" or "postgres"
        redis_url: Redis connection URL (for redis backend)
        **kwargs: Additional backend-specific options (clock, config, key_prefix)

    Returns:
        JobStore instance
    """
    if backend == "memory":
        return InMemoryJobStore(**kwargs)
    elif backend == "redis":
        return RedisJobStore(redis_url=redis_url, **kwargs)
    elif backend == "postgres":
        from .persistence import PersistenceConfig, PostgresJobStore
        config = kwargs.pop("config", None) or PersistenceConfig.from_env()
        return PostgresJobStore(config, **kwargs)
    else:
        raise ValueError(f"Unknown backend: {backend}")
