"""
Tests for swarm_search/services/store.py and persistence.py

Tests job and model transitions, orphan claiming and store factories.
"""

import json
import threading
from unittest.mock import MagicMock

import pytest

from swarm_search.errors import JobNotFoundError, ModelNotFoundError, OrphanRace
from swarm_search.services.persistence import PersistenceConfig, PostgresJobStore
from swarm_search.services.store import (
    CompletionReason,
    InMemoryJobStore,
    Job,
    JobCompletionReason,
    JobStatus,
    Model,
    ModelStatus,
    RedisJobStore,
    StopReason,
    create_job_store,
)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _params(particle_id: str = "w.0", gen_idx: int = 0):
    return {
        "particle_state": {"id": particle_id, "gen_idx": gen_idx, "swarm_id": "A", "var_states": {}},
        "structured_params": {"encoders": {"A": {}}, "model_params": {}},
    }


def _store_with_model(clock=None):
    store = InMemoryJobStore(clock=clock or FakeClock())
    job_id = store.insert_job({"encoders": {"A": {}}})
    model_id, ours = store.insert_model(job_id, "A", _params(), "w1", "ph", "pa")
    assert ours
    return store, job_id, model_id


# ==================== Job Tests ====================

class TestJobs:
    """Tests for job records."""

    def test_insert_and_get(self):
        """Jobs start running with the submitted config."""
        store = InMemoryJobStore()
        job_id = store.insert_job({"max_models": 3})

        job = store.get_job(job_id)
        assert job.status == JobStatus.RUNNING
        assert job.config == {"max_models": 3}
        assert job.worker_completion_reason == JobCompletionReason.SUCCESS
        assert [j.job_id for j in store.list_jobs()] == [job_id]

    def test_missing_job_raises(self):
        """Unknown job ids raise JobNotFoundError (a KeyError)."""
        store = InMemoryJobStore()
        with pytest.raises(JobNotFoundError):
            store.get_job(99)
        with pytest.raises(KeyError):
            store.get_job(99)

    def test_results_compare_and_swap(self):
        """Results only change when the expected value matches."""
        store = InMemoryJobStore()
        job_id = store.insert_job({})

        assert store.set_job_results_if_equal(job_id, None, '{"a": 1}')
        assert not store.set_job_results_if_equal(job_id, None, '{"a": 2}')
        assert store.set_job_results_if_equal(job_id, '{"a": 1}', '{"a": 3}')
        assert store.get_job(job_id).results == '{"a": 3}'

    def test_engine_state_compare_and_swap(self):
        """Engine state follows compare-and-swap."""
        store = InMemoryJobStore()
        job_id = store.insert_job({})

        assert store.update_job_engine_state(job_id, "v1", None)
        assert not store.update_job_engine_state(job_id, "v2", None)
        assert store.get_job(job_id).engine_state == "v1"

    def test_cancel_keeps_first_reason(self):
        """The first non-success worker completion reason sticks."""
        store = InMemoryJobStore()
        job_id = store.insert_job({})

        assert store.cancel_job(job_id, JobCompletionReason.ERROR, "too many errors")
        assert not store.cancel_job(job_id, JobCompletionReason.CANCELLED, "user")

        job = store.get_job(job_id)
        assert job.cancel
        assert job.worker_completion_reason == JobCompletionReason.ERROR
        assert job.worker_completion_msg == "too many errors"

    def test_mark_complete_once(self):
        """Only the first completion is recorded."""
        store = InMemoryJobStore(clock=FakeClock(5.0))
        job_id = store.insert_job({})

        assert store.mark_job_complete(job_id, JobCompletionReason.SUCCESS)
        assert not store.mark_job_complete(job_id, JobCompletionReason.ERROR, "late")

        job = store.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.completion_reason == JobCompletionReason.SUCCESS
        assert job.ended_at == 5.0

    def test_job_dict_round_trip(self):
        """Jobs serialize to dicts and back."""
        job = Job(job_id=3, config={"a": 1}, cancel=True, results='{"x": 1}')
        assert Job.from_dict(job.to_dict()) == job


# ==================== Model Tests ====================

class TestModels:
    """Tests for model records."""

    def test_duplicate_params_hash_rejected(self):
        """A second insert with the same params hash returns the first id."""
        store, job_id, model_id = _store_with_model()

        other_id, ours = store.insert_model(job_id, "A", _params("w.1"), "w2", "ph", "other")

        assert other_id == model_id
        assert not ours
        assert len(store.list_models(job_id)) == 1

    def test_duplicate_particle_hash_rejected(self):
        """A second insert with the same particle hash returns the first id."""
        store, job_id, model_id = _store_with_model()

        other_id, ours = store.insert_model(job_id, "A", _params(), "w2", "other", "pa")

        assert other_id == model_id
        assert not ours

    def test_progress_updates_heartbeat(self):
        """Progress refreshes last_update_time and the update counter."""
        clock = FakeClock()
        store, _, model_id = _store_with_model(clock)
        clock.now = 50.0

        store.update_model_progress(model_id, "w1", 100, result=0.4, matured=True)

        model = store.get_model(model_id)
        assert model.num_records == 100
        assert model.result == 0.4
        assert model.matured
        assert model.last_update_time == 50.0
        assert model.update_counter == 1

    def test_progress_by_non_owner_raises(self):
        """Only the owner may report progress."""
        store, _, model_id = _store_with_model()
        with pytest.raises(OrphanRace):
            store.update_model_progress(model_id, "someone-else", 10)

    def test_complete_model_idempotent(self):
        """Completing twice keeps the first outcome."""
        store, _, model_id = _store_with_model()

        assert store.complete_model(model_id, "w1", CompletionReason.EOF, result=0.25)
        assert not store.complete_model(model_id, "w1", CompletionReason.ERROR, message="again")

        model = store.get_model(model_id)
        assert model.status == ModelStatus.COMPLETED
        assert model.completion_reason == CompletionReason.EOF
        assert model.result == 0.25

    def test_complete_by_non_owner_fails(self):
        """A worker that lost the model cannot complete it."""
        store, _, model_id = _store_with_model()
        assert not store.complete_model(model_id, "w2", CompletionReason.EOF, result=1.0)
        assert store.get_model(model_id).status == ModelStatus.RUNNING

    def test_stop_request(self):
        """Stop requests land on running models and kills are not downgraded."""
        store, _, model_id = _store_with_model()

        assert store.request_model_stop(model_id, StopReason.KILLED)
        assert not store.request_model_stop(model_id, StopReason.KILLED)
        assert not store.request_model_stop(model_id, StopReason.STOPPED)
        assert store.get_model(model_id).eng_stop == StopReason.KILLED

    def test_missing_model_raises(self):
        """Unknown model ids raise ModelNotFoundError."""
        store = InMemoryJobStore()
        with pytest.raises(ModelNotFoundError):
            store.get_model(7)

    def test_model_dict_round_trip(self):
        """Models serialize to dicts and back."""
        model = Model(
            model_id=1, job_id=2, swarm_id="A", params=_params(), params_hash="h",
            particle_hash="p", owner="w", completion_reason=CompletionReason.STOPPED,
            eng_stop=StopReason.STOPPED, result=0.5,
        )
        assert Model.from_dict(json.loads(json.dumps(model.to_dict()))) == model
        assert model.gen_idx == 0


# ==================== Orphan Tests ====================

class TestClaimOrphan:
    """Tests for orphan adoption."""

    def test_fresh_model_not_claimable(self):
        """A model with a recent heartbeat cannot be claimed."""
        clock = FakeClock()
        store, _, model_id = _store_with_model(clock)
        clock.now = 100.0

        assert not store.claim_orphan(model_id, "w2", 180.0)

    def test_claim_resets_progress(self):
        """Claiming restarts the model under the new owner."""
        clock = FakeClock()
        store, _, model_id = _store_with_model(clock)
        store.update_model_progress(model_id, "w1", 300, result=0.9, matured=True)
        store.request_model_stop(model_id, StopReason.STOPPED)
        clock.now = 500.0

        assert store.claim_orphan(model_id, "w2", 180.0)

        model = store.get_model(model_id)
        assert model.owner == "w2"
        assert model.num_records == 0
        assert model.result is None
        assert not model.matured
        assert model.eng_stop is None
        assert model.adoptions == 1
        assert model.last_update_time == 500.0

    def test_old_owner_loses_after_claim(self):
        """The previous owner gets OrphanRace and cannot complete."""
        clock = FakeClock()
        store, _, model_id = _store_with_model(clock)
        clock.now = 500.0
        store.claim_orphan(model_id, "w2", 180.0)

        with pytest.raises(OrphanRace):
            store.update_model_progress(model_id, "w1", 10)
        assert not store.complete_model(model_id, "w1", CompletionReason.EOF, result=0.1)

    def test_completed_model_not_claimable(self):
        """Only running models can be adopted."""
        clock = FakeClock()
        store, _, model_id = _store_with_model(clock)
        store.complete_model(model_id, "w1", CompletionReason.EOF, result=1.0)
        clock.now = 1000.0

        assert not store.claim_orphan(model_id, "w2", 180.0)

    def test_concurrent_claims_one_winner(self):
        """Exactly one of many racing claimers wins."""
        clock = FakeClock()
        store, _, model_id = _store_with_model(clock)
        clock.now = 1000.0

        barrier = threading.Barrier(8)
        wins = []

        def claim(worker_id):
            barrier.wait()
            if store.claim_orphan(model_id, worker_id, 180.0):
                wins.append(worker_id)

        threads = [threading.Thread(target=claim, args=(f"w{i}",)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(wins) == 1
        assert store.get_model(model_id).owner == wins[0]
        assert store.get_model(model_id).adoptions == 1


# ==================== Backend Tests ====================

class TestCreateJobStore:
    """Tests for the store factory."""

    def test_create_memory_store(self):
        """Factory creates memory store."""
        assert isinstance(create_job_store(backend="memory"), InMemoryJobStore)

    def test_create_redis_store_is_lazy(self):
        """The Redis store does not connect until first use."""
        store = create_job_store(backend="redis", redis_url="redis://example:6379")
        assert isinstance(store, RedisJobStore)
        assert store._redis is None

    def test_create_postgres_store(self):
        """Factory passes the persistence config through."""
        config = PersistenceConfig(database="search_test")
        store = create_job_store(backend="postgres", config=config)
        assert isinstance(store, PostgresJobStore)
        assert store.config.database == "search_test"

    def test_create_unknown_backend_raises(self):
        """Unknown backend raises ValueError."""
        with pytest.raises(ValueError):
            create_job_store(backend="unknown")


class TestPersistenceConfig:
    """Tests for PersistenceConfig."""

    def test_from_env(self, monkeypatch):
        """Settings come from POSTGRES_* variables."""
        monkeypatch.setenv("POSTGRES_HOST", "db")
        monkeypatch.setenv("POSTGRES_PORT", "6543")
        monkeypatch.setenv("POSTGRES_DB", "searches")
        monkeypatch.setenv("SWARM_CREATE_SCHEMA", "false")

        config = PersistenceConfig.from_env()

        assert config.host == "db"
        assert config.port == 6543
        assert not config.create_schema
        assert config.connection_string.endswith("@db:6543/searches")


class TestPostgresJobStore:
    """Tests for PostgresJobStore SQL plumbing with a mocked connection."""

    def _store(self, rowcount=1, fetchone=None):
        store = PostgresJobStore(PersistenceConfig(create_schema=False), clock=lambda: 1000.0)
        cursor = MagicMock()
        cursor.rowcount = rowcount
        cursor.fetchone.return_value = fetchone
        conn = MagicMock()
        conn.cursor.return_value.__enter__.return_value = cursor
        store._conn = conn
        return store, cursor

    def test_claim_orphan_conditional_update(self):
        """Claiming is one conditional UPDATE on status and heartbeat."""
        store, cursor = self._store(rowcount=1)

        assert store.claim_orphan(5, "w2", 180.0)

        sql, params = cursor.execute.call_args[0]
        assert "status = 'running'" in sql
        assert params == ("w2", 1000.0, 5, 820.0)

    def test_claim_orphan_lost(self):
        """A zero row count means someone else won."""
        store, _ = self._store(rowcount=0, fetchone=(1,))
        assert not store.claim_orphan(5, "w2", 180.0)

    def test_missing_model_raises(self):
        """A zero row count on an unknown model raises."""
        store, _ = self._store(rowcount=0, fetchone=None)
        with pytest.raises(ModelNotFoundError):
            store.request_model_stop(5, StopReason.KILLED)
