"""
swarm_search/services/controller.py

Swarm controller: decides what each worker evaluates next.

Every worker runs its own controller. Controllers never talk to each other;
they read the job store, rebuild the same view of the search from it, and
race on the store's conditional writes. The controller:
1. Adopts orphaned models (running models whose worker went silent)
2. Enforces max_models, job cancellation, the error budget and the end of
   the search
3. Picks the next particle: a new particle for an under-populated swarm, or
   the next generation of a matured particle
4. Makes sure the parameters have never been evaluated, agitating the
   particle if needed, and inserts the model
5. After each completion, feeds matured swarm generations to the
   terminator and writes any swarm status changes to the engine state
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
import zlib
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import numpy as np

from swarm_search.optimizer.dimensions import is_encoder_var
from swarm_search.optimizer.particle import Particle

from .config import SearchConfig
from .results import ResultsDB
from .state import EngineStateManager, SwarmStatus
from .store import (
    JobCompletionReason,
    JobStatus,
    JobStore,
    Model,
    ModelStatus,
    StopReason,
)
from .terminator import SwarmTerminator

logger = logging.getLogger(__name__)

# The error budget only applies once this many models have completed
MIN_COMPLETED_FOR_ERR_BUDGET = 5

# Longest wait in ok_to_exit while models finish
EXIT_WAIT_SECS_MAX = 5.0


@dataclass
class NextModel:
    """
    What a worker should do next.

    exit=True: the worker is done with this job.
    model set: run it (adopted=True if it was another worker's orphan).
    Neither: nothing to do right now, ask again.
    """
    exit: bool
    model: Optional[Model] = None
    adopted: bool = False


def params_hash_of(structured_params: Dict[str, Any]) -> str:
    return hashlib.md5(json.dumps(structured_params, sort_keys=True).encode("utf-8")).hexdigest()


def particle_hash_of(particle_id: str, gen_idx: int) -> str:
    return hashlib.md5(f"{particle_id}.{gen_idx}".encode("utf-8")).hexdigest()


class SwarmController:
    """
    Per-worker search engine for one job.

    Args:
        store: job store shared by all workers
        job_id: job to work on
        worker_id: this worker's name; model owner and particle id prefix
        config: search config (read from the job when not given)
        rng: random generator (seeded from config.seed and worker_id by default)
        sleep: called to back off while waiting for other workers
    """

    def __init__(
        self,
        store: JobStore,
        job_id: int,
        worker_id: str,
        config: Optional[SearchConfig] = None,
        rng: Optional[np.random.Generator] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.job_id = job_id
        self.worker_id = worker_id
        self.config = config or SearchConfig.from_dict(store.get_job(job_id).config)
        self._sleep = sleep

        if rng is None:
            seed = None
            if self.config.seed is not None:
                seed = [self.config.seed, zlib.crc32(worker_id.encode("utf-8"))]
            rng = np.random.default_rng(seed)
        self.rng = rng

        self.pso = self.config.pso_settings()
        self.results_db = ResultsDB(
            min_particles_per_swarm=self.config.min_particles_per_swarm,
            maximize=self.config.maximize,
        )
        self.terminator = SwarmTerminator(
            maturity_window=self.config.swarm_maturity_window,
            max_generations=self.config.swarm_max_generations,
            max_slope=self.config.maturity_max_slope,
            termination_enabled=self.config.enable_swarm_termination,
        )
        self.state = EngineStateManager(
            store,
            job_id,
            self.config,
            self.results_db,
            on_swarm_killed=self.kill_swarm_particles,
        )

        self._models: List[Model] = []
        self._next_particle_num = 0
        self.models_created = 0
        self.models_adopted = 0

        self.state.read_state_from_db()
        self._sync()
        logger.info(f"Controller for job {job_id} initialized on worker {worker_id}")

    # -------------------- Store access --------------------

    def _sync(self) -> None:
        """Refresh the results index from the store."""
        self._models = self.store.list_models(self.job_id)
        self.results_db.sync(self._models)

    def _update_job_results(self, update: Callable[[Dict[str, Any]], None]) -> None:
        """Apply a change to the job results by compare-and-swap."""
        while True:
            results_json = self.store.get_job(self.job_id).results
            results = json.loads(results_json) if results_json else {}
            update(results)
            new_json = json.dumps(results)
            if new_json == results_json:
                return
            if self.store.set_job_results_if_equal(self.job_id, results_json, new_json):
                return

    def _best_job_model_id(self) -> Optional[int]:
        results_json = self.store.get_job(self.job_id).results
        if not results_json:
            return None
        return json.loads(results_json).get("best_model_id")

    def kill_swarm_particles(self, swarm_id: str) -> None:
        """Ask every running model of a swarm to stop as killed."""
        for info in self.results_db.get_particle_infos(swarm_id, completed=False):
            if self.store.request_model_stop(info.model_id, StopReason.KILLED):
                logger.info(f"Killing model {info.model_id} of swarm {swarm_id}")

    # -------------------- Orphans --------------------

    def _adopt_orphan(self) -> Optional[Model]:
        """Claim one running model whose heartbeat is older than the orphan interval."""
        interval = self.config.model_orphan_interval_secs
        now = self.store.now()
        for model in self._models:
            if model.status != ModelStatus.RUNNING or now - model.last_update_time < interval:
                continue
            if self.store.claim_orphan(model.model_id, self.worker_id, interval):
                self.models_adopted += 1
                logger.info(
                    f"Worker {self.worker_id} adopted orphaned model {model.model_id} "
                    f"(previous owner {model.owner})"
                )
                adopted = self.store.get_model(model.model_id)
                self.results_db.update(adopted)
                return adopted
        return None

    # -------------------- Swarm bookkeeping --------------------

    def _periodic_update(self, exhausted_swarm_id: Optional[str] = None) -> None:
        """
        Bring the engine state up to date with what has matured.

        Swarms complete when exhausted, when their last in-flight model of a
        completing swarm finishes, or when the terminator matures or kills
        them.
        """
        self.state.read_state_from_db()

        completed_swarms: Set[str] = set()
        exhausted_status = None
        if exhausted_swarm_id is not None:
            if self.results_db.get_particle_infos(exhausted_swarm_id, matured=False):
                exhausted_status = SwarmStatus.COMPLETING
            else:
                exhausted_status = SwarmStatus.COMPLETED

        if self.config.kill_useless_swarms:
            self.state.kill_useless_swarms()

        for swarm_id in self.state.get_completing_swarms():
            if not self.results_db.get_particle_infos(swarm_id, matured=False):
                completed_swarms.add(swarm_id)

        prior_completed = set(self.state.get_completed_swarms())
        for swarm_id, gen_idx, err_score in self.results_db.get_matured_swarm_generations():
            if swarm_id in prior_completed:
                continue
            terminated = self.terminator.record_data_point(swarm_id, gen_idx, err_score)

            status_msg = (
                f"Completed generation #{gen_idx} of swarm '{swarm_id}' "
                f"with a best error score of {err_score:g}"
            )
            if terminated:
                status_msg = f"{status_msg}. Matured swarm(s): {sorted(terminated)}"
                self._record_terminated_swarms(terminated, gen_idx)
            logger.info(status_msg)
            self.store.set_job_status_message(self.job_id, status_msg)
            completed_swarms |= terminated

        if not completed_swarms and exhausted_swarm_id is None and not self.state.is_dirty():
            return

        while True:
            if exhausted_swarm_id is not None \
                    and self.state.get_swarm_status(exhausted_swarm_id) != SwarmStatus.KILLED:
                self.state.set_swarm_state(exhausted_swarm_id, exhausted_status)
            for swarm_id in sorted(completed_swarms):
                if self.state.get_swarm_status(swarm_id) != SwarmStatus.KILLED:
                    self.state.set_swarm_state(swarm_id, SwarmStatus.COMPLETED)

            if not self.state.is_dirty() or self.state.write_state_to_db():
                break
            logger.debug(f"Retrying swarm status update for job {self.job_id}")

        # Stop what is still running in completed swarms, except the job's best.
        # A running best is only known to the results db until it completes.
        spared = {self._best_job_model_id(), self.results_db.best_model_id_and_err_score()[0]}
        for swarm_id in sorted(completed_swarms):
            if self.state.get_swarm_status(swarm_id) != SwarmStatus.COMPLETED:
                continue
            model_ids = [
                info.model_id
                for info in self.results_db.get_particle_infos(swarm_id, completed=False)
                if info.model_id not in spared
            ]
            if model_ids:
                logger.info(
                    f"Killing models {model_ids} of swarm '{swarm_id}' because the swarm completed"
                )
            for model_id in model_ids:
                self.store.request_model_stop(model_id, StopReason.KILLED)

    def _record_terminated_swarms(self, terminated: Set[str], gen_idx: int) -> None:
        def update(results: Dict[str, Any]) -> None:
            recorded = results.setdefault("terminated_swarms", {})
            for swarm_id in sorted(terminated):
                if swarm_id not in recorded:
                    best = self.terminator.swarm_bests[swarm_id][-1]
                    recorded[swarm_id] = {
                        "generation": gen_idx,
                        "best_err_score": best if np.isfinite(best) else None,
                    }
        self._update_job_results(update)

    # -------------------- Candidate selection --------------------

    def _new_particle_id(self) -> str:
        while True:
            particle_id = f"{self.worker_id}.{self._next_particle_num}"
            self._next_particle_num += 1
            if not self.results_db.has_particle(particle_id):
                return particle_id

    def _err_budget_exceeded(self) -> Optional[str]:
        if self.config.ignore_err_models:
            return None
        error_models = self.results_db.get_error_models()
        num_errors = len(error_models)
        num_completed = self.results_db.get_num_completed_models()
        too_many = (
            self.config.max_err_models is not None and num_errors > self.config.max_err_models
        ) or (
            num_completed > MIN_COMPLETED_FOR_ERR_BUDGET
            and num_errors / num_completed > self.config.max_pct_err_models
        )
        if not too_many:
            return None
        return (
            f"Exiting due to receiving too many models failing from exceptions "
            f"({num_errors} out of {num_completed}). "
            f"Model Exception: {error_models[-1].completion_msg}"
        )

    def _exit_with_message(self, message: str) -> Tuple[bool, None]:
        logger.info(f"Job {self.job_id}: {message}")
        self.store.set_job_status_message(self.job_id, message)
        return True, None

    def _get_candidate_particle(
        self, exhausted_swarm_id: Optional[str] = None
    ) -> Tuple[bool, Optional[Particle]]:
        """
        Choose the particle to evaluate next.

        Returns:
            (exit, particle). exit means the search needs nothing more from
            this worker; (False, None) means wait and ask again.
        """
        if self.store.get_job(self.job_id).cancel:
            logger.info(f"Job {self.job_id} was cancelled")
            return True, None

        self._periodic_update(exhausted_swarm_id)

        err_message = self._err_budget_exceeded()
        if err_message is not None:
            logger.error(err_message)
            self.store.cancel_job(self.job_id, JobCompletionReason.ERROR, err_message)
            return True, None

        if self.state.is_search_over():
            return self._exit_with_message(
                "Exiting because results did not improve in most recently completed sprint."
            )

        speculative = self.config.speculative_particles
        sprint_idx = -1
        while True:
            sprint_idx += 1
            active, end_of_sprints = self.state.is_sprint_active(sprint_idx)

            if end_of_sprints:
                if self.state.any_good_sprints_active():
                    return False, None
                return self._exit_with_message(
                    "Exiting because we've evaluated all possible field combinations"
                )

            if not active:
                if not speculative and not self.state.is_sprint_completed(sprint_idx):
                    return False, None
                continue

            swarm_ids = sorted(
                self.state.get_active_swarms(sprint_idx),
                key=lambda s: (self.results_db.num_models(s), s),
            )
            for swarm_id in swarm_ids:
                particle = self._particle_for_swarm(swarm_id, sprint_idx)
                if particle is not None:
                    return False, particle

            if not speculative:
                return False, None

    def _particle_for_swarm(self, swarm_id: str, sprint_idx: int) -> Optional[Particle]:
        existing = self.results_db.get_particle_infos(swarm_id, last_descendent=True)

        if len(existing) < self.config.min_particles_per_swarm:
            all_states = [info.particle_state for info in self.results_db.get_particle_infos(swarm_id)]
            particle = Particle.new(
                self.config.search_space,
                self.results_db,
                swarm_id,
                self._new_particle_id(),
                self.rng,
                far_from=all_states,
                pso=self.pso,
                speculative=self.config.speculative_particles,
            )

            # Later sprints start from what worked best in sprint 0
            if sprint_idx >= 1:
                best_model_id, _ = self.state.best_model_in_sprint(0)
                if best_model_id is not None:
                    best_state = self.results_db.get_particle_info(best_model_id).particle_state
                    particle.copy_encoder_states_from(best_state)
                    particle.new_position(
                        which_vars=[name for name in particle.permute_vars if is_encoder_var(name)]
                    )
            return particle

        ready = self.results_db.get_particle_infos(swarm_id, matured=True, last_descendent=True)
        if not ready:
            return None

        min_gen = min(info.gen_idx for info in ready)
        if not self.config.speculative_particles and self.results_db.get_particle_infos(
            swarm_id, gen_idx=min_gen, matured=False
        ):
            return None

        candidates = [info for info in ready if info.gen_idx == min_gen]
        chosen = candidates[int(self.rng.integers(len(candidates)))]
        return Particle.evolve(
            self.config.search_space,
            self.results_db,
            chosen.particle_state,
            self.rng,
            pso=self.pso,
            speculative=self.config.speculative_particles,
        )

    # -------------------- Public API --------------------

    def get_next_model(self) -> NextModel:
        """
        Produce the next model for this worker to run.

        Orphans are adopted first, even past max_models.
        """
        job = self.store.get_job(self.job_id)
        if job.status == JobStatus.COMPLETED:
            return NextModel(exit=True)

        self._sync()
        adopted = self._adopt_orphan()
        if adopted is not None:
            return NextModel(exit=False, model=adopted, adopted=True)

        max_models = self.config.max_models
        if max_models is not None:
            num_models = self.results_db.num_models() - self.results_db.get_num_error_models()
            if num_models >= max_models:
                logger.info(f"Job {self.job_id}: reached max_models ({max_models})")
                return NextModel(exit=self.ok_to_exit())

        exhausted_swarm_id = None
        while True:
            exit_now, particle = self._get_candidate_particle(exhausted_swarm_id)
            exhausted_swarm_id = None

            if particle is None:
                if exit_now:
                    return NextModel(exit=self.ok_to_exit())
                self._sleep(self.rng.random() * self.config.speculative_wait_secs_max)
                return NextModel(exit=False)

            structured_params = self._unique_params(particle)
            if structured_params is None:
                logger.info(
                    f"Swarm {particle.swarm_id} exhausted: no new position after "
                    f"{self.config.max_unique_model_attempts} attempts"
                )
                exhausted_swarm_id = particle.swarm_id
                continue

            model = self._insert(particle, structured_params)
            if model is not None:
                return NextModel(exit=False, model=model)
            self._sync()

    def _unique_params(self, particle: Particle) -> Optional[Dict[str, Any]]:
        """Agitate until the parameters are new; None if they never are."""
        for attempt in range(self.config.max_unique_model_attempts):
            if attempt > 0:
                particle.agitate()
            structured_params = self.config.search_space.structured_params(
                particle.get_position(), particle.swarm_id
            )
            if self.results_db.get_model_id_from_params_hash(params_hash_of(structured_params)) is None:
                return structured_params
        return None

    def _insert(self, particle: Particle, structured_params: Dict[str, Any]) -> Optional[Model]:
        params = {
            "particle_state": particle.get_state(),
            "structured_params": structured_params,
        }
        model_id, ours = self.store.insert_model(
            self.job_id,
            particle.swarm_id,
            params,
            self.worker_id,
            params_hash_of(structured_params),
            particle_hash_of(particle.particle_id, particle.gen_idx),
        )
        if not ours:
            logger.info(
                f"Model for particle {particle.particle_id} gen {particle.gen_idx} "
                f"already exists as {model_id}; choosing again"
            )
            return None

        self.models_created += 1
        model = self.store.get_model(model_id)
        self.results_db.update(model)
        logger.debug(f"Created model {model_id} in swarm {particle.swarm_id}: {structured_params}")
        return model

    def on_model_completed(self, model_id: int) -> None:
        """Re-sync after a model finished and update swarm statuses."""
        self._sync()
        logger.debug(f"Model {model_id} completed; updating swarm state")
        self._periodic_update()

    def ok_to_exit(self) -> bool:
        """
        Whether this worker may leave the job.

        Waits (returns False) while unmatured models are still running,
        unless the job was cancelled. On exit, stops all running models and
        records the final field contributions.
        """
        self._sync()
        if not self.store.get_job(self.job_id).cancel:
            unmatured = self.results_db.get_particle_infos(matured=False)
            if unmatured:
                logger.info(
                    f"Ready to end the search, waiting for {len(unmatured)} models to mature"
                )
                self._sleep(EXIT_WAIT_SECS_MAX * self.rng.random())
                return False

        for info in self.results_db.get_particle_infos(completed=False):
            if self.store.request_model_stop(info.model_id, StopReason.STOPPED):
                logger.info(f"Stopping model {info.model_id} because the search has ended")

        self._periodic_update()
        pct_contributions, abs_contributions = self.state.get_field_contributions()

        def update(results: Dict[str, Any]) -> None:
            results["field_contributions"] = pct_contributions
            results["absolute_field_contributions"] = abs_contributions
        self._update_job_results(update)
        return True

    def get_status(self) -> Dict[str, Any]:
        """Get current controller status."""
        best_model_id, best_err = self.results_db.best_model_id_and_err_score()
        return {
            "job_id": self.job_id,
            "worker_id": self.worker_id,
            "num_models": self.results_db.num_models(),
            "models_created": self.models_created,
            "models_adopted": self.models_adopted,
            "active_swarms": list(self.state.state.active_swarms),
            "num_sprints": len(self.state.state.sprints),
            "search_over": self.state.is_search_over(),
            "best_model_id": best_model_id,
            "best_err_score": best_err if np.isfinite(best_err) else None,
        }
