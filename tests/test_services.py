"""
Tests for swarm_search/services/

Tests config, runner, controller, evaluators, worker, jobs and dashboard
components.
"""

import json

import pytest

from swarm_search.errors import ConfigurationError
from swarm_search.optimizer.dimensions import Choice, Fixed, FloatRange, IntRange, SearchSpace
from swarm_search.services.config import SearchConfig
from swarm_search.services.controller import SwarmController, params_hash_of, particle_hash_of
from swarm_search.services.evaluators import FunctionEvaluator, load_evaluator_factory
from swarm_search.services.jobs import cancel_search, get_search_results, submit_search
from swarm_search.services.runner import (
    ModelEvaluationRunner,
    RunnerConfig,
    is_metric_matured,
)
from swarm_search.services.state import SwarmStatus
from swarm_search.services.store import (
    CompletionReason,
    InMemoryJobStore,
    JobCompletionReason,
    JobStatus,
    ModelStatus,
    StopReason,
)
from swarm_search.services.worker import WorkerConfig, WorkerLoop


class FakeClock:
    """Store clock that only moves when told to."""

    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _space():
    return SearchSpace(
        encoders={"A": {"x": IntRange(0, 4)}, "B": {"y": Choice(("p", "q"))}},
        model_params={"lr": Fixed(0.1)},
    )


def _error_fn(params, record):
    """Best at x=3 with y='q'; each encoder helps."""
    encoders = params["encoders"]
    err = (encoders["A"]["x"] - 3) ** 2 if "A" in encoders else 5.0
    if "B" in encoders:
        err += 0.0 if encoders["B"]["y"] == "q" else 1.0
    else:
        err += 0.5
    return err


def _factory(params, model):
    return FunctionEvaluator(params, range(3), _error_fn)


def _insert_model(store, job_id, swarm_id="A", owner="w1", tag="1"):
    params = {
        "particle_state": {"id": f"{owner}.{tag}", "gen_idx": 0, "swarm_id": swarm_id, "var_states": {}},
        "structured_params": {"encoders": {swarm_id: {"x": 1}}, "model_params": {}},
    }
    model_id, ours = store.insert_model(job_id, swarm_id, params, owner, f"h{tag}", f"p{tag}")
    assert ours
    return model_id


def _job(store, **kwargs):
    config = SearchConfig(search_space=_space(), **kwargs)
    return submit_search(store, config)


# ==================== Config Tests ====================

class TestSearchConfig:
    """Tests for SearchConfig."""

    def test_dict_round_trip(self):
        """Config survives to_dict/from_dict."""
        config = SearchConfig(search_space=_space(), max_models=10, seed=3, fixed_fields=["A"])
        restored = SearchConfig.from_dict(json.loads(config.to_json()))

        assert restored == config

    def test_search_space_at_top_level(self):
        """Encoders and model params are top-level keys."""
        data = SearchConfig(search_space=_space()).to_dict()

        assert data["encoders"]["A"]["x"]["type"] == "int"
        assert data["model_params"]["lr"] == {"type": "fixed", "value": 0.1}

    def test_unknown_key_raises(self):
        """Typos in a search description are rejected."""
        data = SearchConfig(search_space=_space()).to_dict()
        data["max_modles"] = 5

        with pytest.raises(ConfigurationError):
            SearchConfig.from_dict(data)

    def test_invalid_values_raise(self):
        """Out-of-range settings are rejected on construction."""
        with pytest.raises(ConfigurationError):
            SearchConfig(search_space=_space(), min_particles_per_swarm=0)
        with pytest.raises(ConfigurationError):
            SearchConfig(search_space=_space(), max_pct_err_models=1.5)
        with pytest.raises(ConfigurationError):
            SearchConfig(search_space=_space(), fixed_fields=["Z"])

    def test_from_file(self, tmp_path):
        """A JSON description file loads."""
        path = tmp_path / "search.json"
        path.write_text(json.dumps({
            "encoders": {"A": {"x": {"type": "float", "min_value": 0.0, "max_value": 1.0}}},
            "max_models": 4,
        }))

        config = SearchConfig.from_file(path)

        assert config.max_models == 4
        assert config.search_space.encoder_names == ["A"]


# ==================== Evaluator Tests ====================

class TestFunctionEvaluator:
    """Tests for FunctionEvaluator."""

    def test_mean_error(self):
        """Score is the mean per-record error."""
        evaluator = FunctionEvaluator({}, [1.0, 2.0, 6.0], lambda p, r: r)

        while not evaluator.step():
            pass

        assert evaluator.score() == 3.0
        assert evaluator.num_records == 3

    def test_max_records(self):
        """max_records ends the stream early."""
        evaluator = FunctionEvaluator({}, range(100), lambda p, r: r, max_records=2)

        steps = 0
        while not evaluator.step():
            steps += 1

        assert steps == 2
        assert evaluator.score() == 0.5

    def test_cancel(self):
        """A cancelled evaluator reports done and keeps its score."""
        evaluator = FunctionEvaluator({}, range(100), lambda p, r: 1.0)
        evaluator.step()
        evaluator.cancel()

        assert evaluator.step()
        assert evaluator.score() == 1.0

    def test_empty_score_is_infinite(self):
        """No records means no usable score."""
        assert FunctionEvaluator({}, [], lambda p, r: r).score() == float("inf")


class TestLoadEvaluatorFactory:
    """Tests for load_evaluator_factory."""

    def test_loads_attribute(self):
        """module:attribute resolves to the callable."""
        factory = load_evaluator_factory("swarm_search.services.evaluators:FunctionEvaluator")
        assert factory is FunctionEvaluator

    def test_malformed_path_raises(self):
        """A path without a colon is rejected."""
        with pytest.raises(ConfigurationError):
            load_evaluator_factory("swarm_search.services.evaluators")

    def test_missing_module_raises(self):
        """An unknown module is a configuration error."""
        with pytest.raises(ConfigurationError):
            load_evaluator_factory("no_such_module_here:factory")

    def test_missing_attribute_raises(self):
        """An unknown attribute is a configuration error."""
        with pytest.raises(ConfigurationError):
            load_evaluator_factory("swarm_search.services.evaluators:no_such_factory")


# ==================== Runner Tests ====================

class TestIsMetricMatured:
    """Tests for model-level maturity detection."""

    def test_needs_enough_points(self):
        """Too few values are never matured."""
        assert not is_metric_matured([1.0, 1.0], num_points=3, max_pct_change=0.01)

    def test_flat_is_matured(self):
        """A flat trend is matured."""
        assert is_metric_matured([5.0, 2.0, 2.0, 2.0], num_points=3, max_pct_change=0.01)

    def test_trend_is_not_matured(self):
        """A rising trend is not matured."""
        assert not is_metric_matured([1.0, 2.0, 3.0], num_points=3, max_pct_change=0.01)

    def test_zero_mean(self):
        """All-zero values are matured."""
        assert is_metric_matured([0.0, 0.0, 0.0], num_points=3, max_pct_change=0.01)

    def test_non_finite_is_not_matured(self):
        """Infinite values never mature."""
        assert not is_metric_matured([1.0, float("inf"), 1.0], num_points=3, max_pct_change=0.01)


class TestModelEvaluationRunner:
    """Tests for ModelEvaluationRunner."""

    def setup_method(self):
        self.clock = FakeClock(0.0)
        self.store = InMemoryJobStore(clock=self.clock)
        self.job_id = _job(self.store)
        self.model_id = _insert_model(self.store, self.job_id)
        self.runner = ModelEvaluationRunner(
            self.store, self.job_id, "w1", config=RunnerConfig(update_interval_records=2)
        )

    def _run(self, evaluator):
        return self.runner.run(self.store.get_model(self.model_id), evaluator)

    def test_runs_to_eof(self):
        """A finished stream completes as EOF and becomes the job's best."""
        result, reason = self._run(FunctionEvaluator({}, [1.0, 2.0, 3.0], lambda p, r: r))

        assert (result, reason) == (2.0, CompletionReason.EOF)
        model = self.store.get_model(self.model_id)
        assert model.status == ModelStatus.COMPLETED
        assert model.result == 2.0

        results = json.loads(self.store.get_job(self.job_id).results)
        assert results["best_model_id"] == self.model_id
        assert results["best_value"] == 2.0
        assert results["best_params"] == model.structured_params

    def test_progress_is_recorded(self):
        """Progress writes carry the record count and current score."""
        seen = []

        def error_fn(params, record):
            seen.append(self.store.get_model(self.model_id).num_records)
            return float(record)

        self._run(FunctionEvaluator({}, range(5), error_fn))

        # Progress lands after every second record
        assert seen == [0, 0, 2, 2, 4]

    def test_evaluator_error(self):
        """An exception from the evaluator completes the model as ERROR."""
        def error_fn(params, record):
            raise ValueError("bad record")

        result, reason = self._run(FunctionEvaluator({}, [1.0], error_fn))

        assert (result, reason) == (None, CompletionReason.ERROR)
        model = self.store.get_model(self.model_id)
        assert model.completion_reason == CompletionReason.ERROR
        assert model.completion_msg == f"Model {self.model_id} failed: bad record"
        assert self.store.get_job(self.job_id).results is None

    def test_killed_by_engine(self):
        """A kill request stops the model without updating the job's best."""
        self.store.request_model_stop(self.model_id, StopReason.KILLED)

        result, reason = self._run(FunctionEvaluator({}, range(10), lambda p, r: 1.0))

        assert (result, reason) == (1.0, CompletionReason.KILLED)
        assert self.store.get_job(self.job_id).results is None

    def test_job_cancel_kills(self):
        """Job cancellation stops running models as killed."""
        cancel_search(self.store, self.job_id)

        _, reason = self._run(FunctionEvaluator({}, range(10), lambda p, r: 1.0))

        assert reason == CompletionReason.KILLED

    def test_stopped_by_engine(self):
        """A stop request keeps the result eligible as the job's best."""
        self.store.request_model_stop(self.model_id, StopReason.STOPPED)

        result, reason = self._run(FunctionEvaluator({}, range(10), lambda p, r: 4.0))

        assert (result, reason) == (4.0, CompletionReason.STOPPED)
        assert json.loads(self.store.get_job(self.job_id).results)["best_value"] == 4.0

    def test_adopted_mid_run(self):
        """Losing the model to another worker abandons the run."""
        self.clock.now = 1000.0
        assert self.store.claim_orphan(self.model_id, "w2", 180.0)

        result, reason = self._run(FunctionEvaluator({}, range(10), lambda p, r: 1.0))

        assert (result, reason) == (None, CompletionReason.ORPHANED)
        model = self.store.get_model(self.model_id)
        assert model.status == ModelStatus.RUNNING
        assert model.owner == "w2"

    def test_adopted_before_completion(self):
        """A result for a model owned elsewhere is discarded."""
        self.clock.now = 1000.0
        assert self.store.claim_orphan(self.model_id, "w2", 180.0)

        _, reason = self._run(FunctionEvaluator({}, [1.0], lambda p, r: r))

        assert reason == CompletionReason.ORPHANED
        assert self.store.get_job(self.job_id).results is None

    def _maturing_runner(self):
        return ModelEvaluationRunner(
            self.store,
            self.job_id,
            "w1",
            config=RunnerConfig(
                update_interval_records=1,
                enable_model_maturity=True,
                maturity_num_points=3,
                maturity_pct_change=0.01,
            ),
        )

    def test_matured_best_model_runs_to_eof(self):
        """The only model of a job keeps running after it matures."""
        result, reason = self._maturing_runner().run(
            self.store.get_model(self.model_id),
            FunctionEvaluator({}, range(50), lambda p, r: 1.0),
        )

        assert (result, reason) == (1.0, CompletionReason.EOF)
        model = self.store.get_model(self.model_id)
        assert model.matured
        assert json.loads(self.store.get_job(self.job_id).results)["best_model_id"] == self.model_id

    def test_matured_model_stops(self):
        """A matured model trailing a finished model is stopped."""
        other_id = _insert_model(self.store, self.job_id, tag="2")
        assert self.store.complete_model(other_id, "w1", CompletionReason.EOF, result=0.5)

        result, reason = self._maturing_runner().run(
            self.store.get_model(self.model_id),
            FunctionEvaluator({}, range(50), lambda p, r: 1.0),
        )

        assert (result, reason) == (1.0, CompletionReason.STOPPED)
        model = self.store.get_model(self.model_id)
        assert model.matured
        assert model.num_records == 3

    def test_maximize_keeps_largest(self):
        """With maximize the larger result is the best."""
        runner = ModelEvaluationRunner(self.store, self.job_id, "w1", maximize=True)
        other_id = _insert_model(self.store, self.job_id, tag="2")

        runner.run(self.store.get_model(self.model_id), FunctionEvaluator({}, [0.8], lambda p, r: r))
        runner.run(self.store.get_model(other_id), FunctionEvaluator({}, [0.5], lambda p, r: r))

        results = json.loads(self.store.get_job(self.job_id).results)
        assert results["best_model_id"] == self.model_id
        assert results["best_value"] == 0.8


# ==================== Controller Tests ====================

class TestSwarmController:
    """Tests for SwarmController."""

    def setup_method(self):
        self.store = InMemoryJobStore()
        self.job_id = _job(self.store, min_particles_per_swarm=2, seed=7)
        self.controller = SwarmController(
            self.store, self.job_id, "w1", sleep=lambda s: None
        )

    def test_hashes(self):
        """Parameter hashes ignore key order; particle hashes include the generation."""
        assert params_hash_of({"a": 1, "b": 2}) == params_hash_of({"b": 2, "a": 1})
        assert particle_hash_of("w1.0", 0) != particle_hash_of("w1.0", 1)

    def test_reads_config_from_job(self):
        """The config comes from the job when not given."""
        assert self.controller.config.min_particles_per_swarm == 2
        assert self.controller.state.get_all_swarms(0) == ["A", "B"]

    def test_first_models_fill_sprint_zero(self):
        """New models go to the swarm with the fewest models."""
        first = self.controller.get_next_model()
        second = self.controller.get_next_model()

        assert not first.exit and not second.exit
        assert {first.model.swarm_id, second.model.swarm_id} == {"A", "B"}
        assert first.model.owner == "w1"
        assert first.model.particle_state["id"] == "w1.0"
        assert self.controller.models_created == 2

    def test_structured_params_only_swarm_encoders(self):
        """A swarm's model carries its own encoders and the model params."""
        model = self.controller.get_next_model().model

        params = model.structured_params
        assert list(params["encoders"]) == [model.swarm_id]
        assert params["model_params"] == {"lr": 0.1}

    def test_cancelled_job_exits(self):
        """Workers leave a cancelled job."""
        cancel_search(self.store, self.job_id)

        assert self.controller.get_next_model().exit

    def test_completed_job_exits(self):
        """Workers leave a completed job."""
        self.store.mark_job_complete(self.job_id, JobCompletionReason.SUCCESS)

        assert self.controller.get_next_model().exit

    def test_kill_swarm_particles(self):
        """Killing a swarm posts stop requests to its running models."""
        model = self.controller.get_next_model().model

        self.controller.kill_swarm_particles(model.swarm_id)

        assert self.store.get_model(model.model_id).eng_stop == StopReason.KILLED

    def test_waits_for_running_models_before_exit(self):
        """ok_to_exit is False while models are still unmatured."""
        self.controller.get_next_model()

        assert not self.controller.ok_to_exit()

    def test_completed_swarm_spares_running_best(self):
        """A completing swarm kills its running models except the job's best."""
        job_id = _job(self.store, min_particles_per_swarm=2, swarm_maturity_window=1, seed=7)
        controller = SwarmController(self.store, job_id, "w1", sleep=lambda s: None)
        first = controller.get_next_model().model
        controller.get_next_model()
        third = controller.get_next_model().model
        assert first.swarm_id == third.swarm_id

        self.store.update_model_progress(first.model_id, "w1", 2, result=1.0, matured=True)
        self.store.update_model_progress(third.model_id, "w1", 2, result=2.0, matured=True)
        controller.on_model_completed(first.model_id)

        assert controller.state.get_swarm_status(first.swarm_id) == SwarmStatus.COMPLETED
        assert self.store.get_model(first.model_id).eng_stop is None
        assert self.store.get_model(third.model_id).eng_stop == StopReason.KILLED

    def test_get_status(self):
        """Status reports the controller's view."""
        self.controller.get_next_model()
        status = self.controller.get_status()

        assert status["worker_id"] == "w1"
        assert status["num_models"] == 1
        assert status["active_swarms"] == ["A", "B"]
        assert status["best_err_score"] is None


# ==================== Worker Tests ====================

class TestWorkerConfig:
    """Tests for WorkerConfig."""

    def test_from_env(self, monkeypatch):
        """Config is read from the environment."""
        monkeypatch.setenv("SWARM_JOB_ID", "12")
        monkeypatch.setenv("SWARM_WORKER_ID", "node-3")
        monkeypatch.setenv("SWARM_EVALUATOR", "pkg.mod:factory")
        monkeypatch.setenv("SWARM_UPDATE_INTERVAL", "50")

        config = WorkerConfig.from_env()

        assert config.job_id == 12
        assert config.worker_id == "node-3"
        assert config.evaluator_factory == "pkg.mod:factory"
        assert config.update_interval_records == 50

    def test_default_worker_ids_differ(self):
        """Each worker gets its own id."""
        assert WorkerConfig().worker_id != WorkerConfig().worker_id


class TestWorkerLoop:
    """Tests for WorkerLoop."""

    def test_requires_job_id(self):
        """A worker needs a job."""
        with pytest.raises(ConfigurationError):
            WorkerLoop(WorkerConfig(), store=InMemoryJobStore(), evaluator_factory=_factory)

    def test_requires_evaluator_factory(self):
        """A worker needs a way to evaluate models."""
        store = InMemoryJobStore()
        job_id = _job(store)

        with pytest.raises(ConfigurationError):
            WorkerLoop(WorkerConfig(job_id=job_id), store=store)

    def test_factory_failure_is_model_error(self):
        """A factory that raises fails the model, not the worker."""
        store = InMemoryJobStore()
        job_id = _job(store)

        def broken_factory(params, model):
            raise RuntimeError("no such dataset")

        worker = WorkerLoop(
            WorkerConfig(worker_id="w1", job_id=job_id),
            store=store,
            evaluator_factory=broken_factory,
            sleep=lambda s: None,
        )

        assert worker.process_one()
        model = store.list_models(job_id)[0]
        assert model.completion_reason == CompletionReason.ERROR
        assert "no such dataset" in model.completion_msg
        assert worker.get_status()["models_failed"] == 1

    def test_max_models(self):
        """The search stops after max_models models."""
        store = InMemoryJobStore()
        job_id = _job(store, max_models=3, seed=1)
        worker = WorkerLoop(
            WorkerConfig(worker_id="w1", job_id=job_id),
            store=store,
            evaluator_factory=_factory,
            sleep=lambda s: None,
        )

        worker.run()

        job = store.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.completion_reason == JobCompletionReason.SUCCESS
        assert len(store.list_models(job_id)) == 3
        assert worker.models_completed == 3

    def test_orphan_adopted_past_max_models(self):
        """A stale model is adopted and finished even with max_models reached."""
        clock = FakeClock(0.0)
        store = InMemoryJobStore(clock=clock)
        job_id = _job(store, max_models=1, seed=1)

        dead = SwarmController(store, job_id, "dead", sleep=lambda s: None)
        orphan = dead.get_next_model().model
        clock.now = 1000.0

        worker = WorkerLoop(
            WorkerConfig(worker_id="live", job_id=job_id),
            store=store,
            evaluator_factory=_factory,
            sleep=lambda s: None,
        )

        assert worker.process_one()
        assert not worker.process_one()

        models = store.list_models(job_id)
        assert [m.model_id for m in models] == [orphan.model_id]
        assert models[0].status == ModelStatus.COMPLETED
        assert models[0].owner == "live"
        assert models[0].adoptions == 1
        assert worker.models_adopted == 1
        assert worker.controller.models_created == 0


class TestSearchEndToEnd:
    """Full searches with the in-memory store."""

    def _config(self, **kwargs):
        values = dict(
            min_particles_per_swarm=2,
            swarm_maturity_window=2,
            max_field_branching=0,
            min_field_contribution=-1000.0,
            seed=11,
        )
        values.update(kwargs)
        return SearchConfig(search_space=_space(), **values)

    def _drain(self, worker, max_steps=500):
        for _ in range(max_steps):
            if not worker.process_one():
                worker.complete_job()
                return
        pytest.fail("search did not finish")

    def test_search_adopts_orphan_and_completes(self):
        """A dead worker's model is adopted and the search runs to the end."""
        clock = FakeClock(0.0)
        store = InMemoryJobStore(clock=clock)
        job_id = submit_search(store, self._config())

        dead = SwarmController(store, job_id, "dead", sleep=lambda s: None)
        orphan = dead.get_next_model().model
        clock.now = 1000.0

        worker = WorkerLoop(
            WorkerConfig(worker_id="live", job_id=job_id),
            store=store,
            evaluator_factory=_factory,
            sleep=lambda s: None,
        )
        self._drain(worker)

        job = store.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.completion_reason == JobCompletionReason.SUCCESS

        adopted = store.get_model(orphan.model_id)
        assert adopted.status == ModelStatus.COMPLETED
        assert adopted.owner == "live"
        assert adopted.adoptions == 1
        assert worker.models_adopted == 1

        models = store.list_models(job_id)
        assert all(m.status == ModelStatus.COMPLETED for m in models)
        assert len({m.params_hash for m in models}) == len(models)

        results = get_search_results(store, job_id)
        scored = [
            m.result for m in models
            if m.completion_reason in (CompletionReason.EOF, CompletionReason.STOPPED)
        ]
        assert results.best_value == min(scored)
        assert set(results.field_contributions) == {"A", "B"}
        assert results.num_error_models == 0
        assert results.swarms["A"] in ("completed", "killed")

    def test_maximize_search_completes(self):
        """A maximized metric runs to a normal finish and keeps the largest result."""
        store = InMemoryJobStore()
        job_id = submit_search(store, self._config(maximize=True))

        def factory(params, model):
            return FunctionEvaluator(params, range(3), lambda p, r: 10.0 - _error_fn(p, r))

        worker = WorkerLoop(
            WorkerConfig(worker_id="w1", job_id=job_id),
            store=store,
            evaluator_factory=factory,
            sleep=lambda s: None,
        )
        self._drain(worker)

        job = store.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.completion_reason == JobCompletionReason.SUCCESS

        models = store.list_models(job_id)
        scored = [
            m.result for m in models
            if m.completion_reason in (CompletionReason.EOF, CompletionReason.STOPPED)
        ]
        assert get_search_results(store, job_id).best_value == max(scored)

    def test_error_budget_cancels_job(self):
        """Too many failing models end the job with an error."""
        store = InMemoryJobStore()
        space = SearchSpace(encoders={"A": {"x": FloatRange(0.0, 10.0)}})
        config = SearchConfig(
            search_space=space,
            min_particles_per_swarm=2,
            swarm_maturity_window=2,
            max_err_models=2,
            seed=5,
        )
        job_id = submit_search(store, config)

        def failing_error_fn(params, record):
            raise RuntimeError("diverged")

        def factory(params, model):
            if model.model_id == 1:
                return FunctionEvaluator(params, range(3), lambda p, r: 1.0)
            return FunctionEvaluator(params, range(3), failing_error_fn)

        worker = WorkerLoop(
            WorkerConfig(worker_id="w1", job_id=job_id),
            store=store,
            evaluator_factory=factory,
            sleep=lambda s: None,
        )
        self._drain(worker)

        job = store.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.completion_reason == JobCompletionReason.ERROR
        assert "too many models failing" in job.completion_msg
        assert "diverged" in job.completion_msg

        results = get_search_results(store, job_id)
        assert results.best_model_id == 1
        assert results.num_error_models == 3


# ==================== Jobs Tests ====================

class TestJobs:
    """Tests for job submission and results."""

    def test_new_job_results(self):
        """A fresh job has no best model yet."""
        store = InMemoryJobStore()
        job_id = _job(store)

        results = get_search_results(store, job_id)

        assert results.status == JobStatus.RUNNING
        assert results.best_model_id is None
        assert results.num_models == 0
        assert results.swarms == {}
        assert results.to_dict()["status"] == "running"

    def test_cancel_recorded_once(self):
        """Only the first cancel sets the completion reason."""
        store = InMemoryJobStore()
        job_id = _job(store)

        assert cancel_search(store, job_id)
        assert not cancel_search(store, job_id, "again")

        job = store.get_job(job_id)
        assert job.cancel
        assert job.worker_completion_reason == JobCompletionReason.CANCELLED
        assert job.worker_completion_msg == "Cancelled by user"


# ==================== Dashboard Tests ====================

class TestDashboard:
    """Tests for the dashboard API."""

    def setup_method(self):
        from fastapi.testclient import TestClient

        from swarm_search.services.dashboard import create_app

        self.store = InMemoryJobStore()
        self.job_id = _job(self.store)
        _insert_model(self.store, self.job_id)
        self.client = TestClient(create_app(store=self.store))

    def test_list_jobs(self):
        """Jobs are listed with their status."""
        response = self.client.get("/api/jobs")

        assert response.status_code == 200
        jobs = response.json()
        assert [job["job_id"] for job in jobs] == [self.job_id]
        assert jobs[0]["status"] == "running"

    def test_get_job(self):
        """A job includes its config."""
        response = self.client.get(f"/api/jobs/{self.job_id}")

        assert response.status_code == 200
        assert "A" in response.json()["config"]["encoders"]

    def test_unknown_job_is_404(self):
        """Unknown jobs are not found."""
        assert self.client.get("/api/jobs/999").status_code == 404
        assert self.client.get("/api/jobs/999/models").status_code == 404

    def test_list_models(self):
        """Models are listed with pagination."""
        response = self.client.get(f"/api/jobs/{self.job_id}/models?limit=10&offset=0")

        assert response.status_code == 200
        models = response.json()
        assert len(models) == 1
        assert models[0]["status"] == "running"
        assert models[0]["params"]["encoders"] == {"A": {"x": 1}}

        assert self.client.get(f"/api/jobs/{self.job_id}/models?offset=1").json() == []

    def test_results(self):
        """Results are served as JSON."""
        response = self.client.get(f"/api/jobs/{self.job_id}/results")

        assert response.status_code == 200
        assert response.json()["num_models"] == 1
