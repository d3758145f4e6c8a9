"""
swarm_search/services/results.py

Per-worker index of every model in a search job.

Each worker keeps its own ResultsDB and re-syncs it from the job store.
Only models whose update counter moved are re-indexed. Every swarm decision
(global bests, matured generations, field contributions) is computed from
this index, so workers that have seen the same store state reach the same
decisions.

Scores are stored as error scores: lower is better. When the search
maximizes its metric the metric is negated.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple
import logging
import math

from .store import CompletionReason, Model, ModelStatus

logger = logging.getLogger(__name__)

# Only these completions produce a usable score
SCORED_REASONS = (CompletionReason.EOF, CompletionReason.STOPPED)


@dataclass
class ModelEntry:
    """What the search engine needs to know about one model."""
    model_id: int
    swarm_id: str
    particle_id: str
    gen_idx: int
    particle_state: Dict[str, Any]
    params_hash: str
    err: float
    result: Optional[float]
    completed: bool
    matured: bool
    completion_reason: Optional[CompletionReason]
    completion_msg: Optional[str]
    num_records: int
    update_counter: int


class ResultsDB:
    """
    Incrementally maintained view of a job's models.

    Args:
        min_particles_per_swarm: particles that must mature before a swarm
            generation counts as matured
        maximize: negate metric values into error scores
    """

    def __init__(self, min_particles_per_swarm: int, maximize: bool = False):
        self.min_particles_per_swarm = min_particles_per_swarm
        self.maximize = maximize

        self._entries: Dict[int, ModelEntry] = {}
        self._model_order: List[int] = []
        self._swarm_models: Dict[str, List[int]] = {}
        self._params_hashes: Dict[str, int] = {}

        self._particle_best: Dict[str, Tuple[float, Dict[str, Any]]] = {}
        self._particle_latest_gen: Dict[str, int] = {}

        # swarm_id -> gen_idx -> (model_id, err)
        self._swarm_gen_best: Dict[str, Dict[int, Tuple[Optional[int], float]]] = {}
        self._modified_swarm_gens: Set[Tuple[str, int]] = set()
        self._matured_swarm_gens: Set[Tuple[str, int]] = set()

        self._best_model_id: Optional[int] = None
        self._best_err = math.inf

    def __len__(self) -> int:
        return len(self._entries)

    # -------------------- Updates --------------------

    def sync(self, models: Iterable[Model]) -> int:
        """
        Index every model whose update counter changed.

        Returns:
            Number of models (re-)indexed
        """
        updated = 0
        for model in models:
            entry = self._entries.get(model.model_id)
            if entry is not None and entry.update_counter == model.update_counter:
                continue
            self.update(model)
            updated += 1
        return updated

    def _err_score(self, result: Optional[float], matured: bool, reason) -> float:
        if result is None or not matured or (reason is not None and reason not in SCORED_REASONS):
            return math.inf
        return -result if self.maximize else result

    def update(self, model: Model) -> None:
        """Insert or refresh one model."""
        completed = model.status == ModelStatus.COMPLETED
        matured = model.matured or completed
        err = self._err_score(model.result, matured, model.completion_reason)

        state = model.particle_state
        entry = ModelEntry(
            model_id=model.model_id,
            swarm_id=model.swarm_id,
            particle_id=state["id"],
            gen_idx=state["gen_idx"],
            particle_state=state,
            params_hash=model.params_hash,
            err=err,
            result=model.result,
            completed=completed,
            matured=matured,
            completion_reason=model.completion_reason,
            completion_msg=model.completion_msg,
            num_records=model.num_records,
            update_counter=model.update_counter,
        )

        if model.model_id not in self._entries:
            self._model_order.append(model.model_id)
            self._swarm_models.setdefault(entry.swarm_id, []).append(model.model_id)
            self._params_hashes[entry.params_hash] = model.model_id
        self._entries[model.model_id] = entry

        # Personal best
        if matured and err < math.inf:
            prior = self._particle_best.get(entry.particle_id)
            if prior is None or err < prior[0]:
                position = {
                    name: var_state["position"]
                    for name, var_state in state["var_states"].items()
                }
                self._particle_best[entry.particle_id] = (err, position)

        latest = self._particle_latest_gen.get(entry.particle_id, -1)
        self._particle_latest_gen[entry.particle_id] = max(latest, entry.gen_idx)

        self._refresh_swarm_gen_best(entry.swarm_id, entry.gen_idx)
        self._refresh_best()

        key = (entry.swarm_id, entry.gen_idx)
        if key not in self._matured_swarm_gens:
            self._modified_swarm_gens.add(key)

    def _refresh_swarm_gen_best(self, swarm_id: str, gen_idx: int) -> None:
        best: Tuple[Optional[int], float] = (None, math.inf)
        for model_id in self._swarm_models.get(swarm_id, []):
            entry = self._entries[model_id]
            if entry.gen_idx != gen_idx:
                continue
            if entry.err < best[1] or (entry.err == best[1] and best[0] is not None
                                       and model_id < best[0]):
                best = (model_id, entry.err)
        self._swarm_gen_best.setdefault(swarm_id, {})[gen_idx] = best

    def _refresh_best(self) -> None:
        best_model_id, best_err = None, math.inf
        for gens in self._swarm_gen_best.values():
            for model_id, err in gens.values():
                if err < best_err or (err == best_err and model_id is not None
                                      and best_model_id is not None and model_id < best_model_id):
                    best_model_id, best_err = model_id, err

        if best_model_id is not None and best_err < self._best_err:
            logger.info(f"New best model: {best_model_id} with error score {best_err}")
        self._best_model_id, self._best_err = best_model_id, best_err

    # -------------------- Queries --------------------

    def num_models(self, swarm_id: Optional[str] = None) -> int:
        if swarm_id is None:
            return len(self._entries)
        return len(self._swarm_models.get(swarm_id, []))

    def get_model_ids(self, swarm_id: Optional[str] = None) -> List[int]:
        if swarm_id is None:
            return list(self._model_order)
        return list(self._swarm_models.get(swarm_id, []))

    def get_particle_info(self, model_id: int) -> ModelEntry:
        return self._entries[model_id]

    def get_model_id_from_params_hash(self, params_hash: str) -> Optional[int]:
        return self._params_hashes.get(params_hash)

    def has_particle(self, particle_id: str) -> bool:
        return particle_id in self._particle_latest_gen

    def get_particle_best(self, particle_id: str) -> Optional[Tuple[float, Dict[str, Any]]]:
        """Return (err, position) of the particle's best matured model."""
        return self._particle_best.get(particle_id)

    def get_particle_infos(
        self,
        swarm_id: Optional[str] = None,
        gen_idx: Optional[int] = None,
        completed: Optional[bool] = None,
        matured: Optional[bool] = None,
        last_descendent: bool = False,
    ) -> List[ModelEntry]:
        """
        Filter models. None means "don't filter on this".

        last_descendent keeps only each particle's latest generation.
        """
        model_ids = self.get_model_ids(swarm_id)
        infos = []
        for model_id in model_ids:
            entry = self._entries[model_id]
            if gen_idx is not None and entry.gen_idx != gen_idx:
                continue
            if completed is not None and entry.completed != completed:
                continue
            if matured is not None and entry.matured != matured:
                continue
            if last_descendent and self._particle_latest_gen[entry.particle_id] != entry.gen_idx:
                continue
            infos.append(entry)
        return infos

    def get_results_per_choice(
        self, swarm_id: str, max_gen_idx: Optional[int], var_name: str
    ) -> List[Tuple[Any, List[float]]]:
        """
        Error scores of matured models grouped by the value of one variable.

        Returns:
            list of (choice value, list of error scores), in first-seen order
        """
        results: Dict[Any, List[float]] = {}
        for entry in self.get_particle_infos(swarm_id, matured=True):
            if max_gen_idx is not None and entry.gen_idx > max_gen_idx:
                continue
            if entry.err == math.inf:
                continue
            var_state = entry.particle_state["var_states"].get(var_name)
            if var_state is None:
                continue
            results.setdefault(var_state["position"], []).append(entry.err)
        return list(results.items())

    def best_model_id_and_err_score(
        self, swarm_id: Optional[str] = None, gen_idx: Optional[int] = None
    ) -> Tuple[Optional[int], float]:
        """
        Best model of a swarm up to and including a generation.

        With no swarm, the best model of the whole job.
        """
        if swarm_id is None:
            return self._best_model_id, self._best_err

        best: Tuple[Optional[int], float] = (None, math.inf)
        for gen, (model_id, err) in self._swarm_gen_best.get(swarm_id, {}).items():
            if gen_idx is not None and gen > gen_idx:
                continue
            if err < best[1] or (err == best[1] and model_id is not None
                                 and best[0] is not None and model_id < best[0]):
                best = (model_id, err)
        return best

    def get_matured_swarm_generations(self) -> List[Tuple[str, int, float]]:
        """
        Swarm generations that matured since the last call.

        A generation is matured when its previous generation is matured and
        at least min_particles_per_swarm of its particles exist, all matured.
        Each generation is reported once.

        Returns:
            list of (swarm_id, gen_idx, best error score), sorted
        """
        result = []
        for key in sorted(self._modified_swarm_gens):
            swarm_id, gen_idx = key
            if key in self._matured_swarm_gens:
                self._modified_swarm_gens.discard(key)
                continue
            if gen_idx >= 1 and (swarm_id, gen_idx - 1) not in self._matured_swarm_gens:
                continue

            self._modified_swarm_gens.discard(key)
            infos = self.get_particle_infos(swarm_id, gen_idx=gen_idx)
            num_matured = sum(1 for info in infos if info.matured)
            if num_matured >= self.min_particles_per_swarm and num_matured == len(infos):
                best_err = min(info.err for info in infos)
                self._matured_swarm_gens.add(key)
                result.append((swarm_id, gen_idx, best_err))
        return result

    def get_num_completed_models(self) -> int:
        return sum(1 for entry in self._entries.values() if entry.completed)

    def get_error_models(self) -> List[ModelEntry]:
        return [
            self._entries[m] for m in self._model_order
            if self._entries[m].completion_reason == CompletionReason.ERROR
        ]

    def get_num_error_models(self) -> int:
        return len(self.get_error_models())
