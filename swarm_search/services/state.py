"""
swarm_search/services/state.py

Shared engine state of a search job and the rules that evolve it.

The engine state records which swarms (field combinations) exist, which
sprint each belongs to and whether it is active, completing, completed or
killed. It is one JSON document on the job, versioned and written by
compare-and-swap: a worker changes its local copy, tries to write it, and
on conflict re-reads the winner's state and re-applies its change.

Sprint rules:
- Sprint 0 has one swarm per candidate encoder (or a single fixed swarm)
- Sprint N+1 adds one field to the best swarm of sprint N, drawing fields
  from the best sprint-0 swarms and dropping fields that contribute little
- While sprint N is still running, sprint N+1 is built speculatively from
  every live swarm of sprint N, one new swarm per call
- The search is over once a completed sprint fails to beat earlier ones
  and no good sprint is still active
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple
import json
import logging
import math

from swarm_search.optimizer.dimensions import SWARM_SEPARATOR

if TYPE_CHECKING:
    from .config import SearchConfig
    from .results import ResultsDB
    from .store import JobStore

logger = logging.getLogger(__name__)


class SwarmStatus(Enum):
    """Lifecycle status of a swarm or sprint."""
    ACTIVE = "active"
    COMPLETING = "completing"  # No new positions, models still in flight
    COMPLETED = "completed"
    KILLED = "killed"


@dataclass
class SwarmInfo:
    """One field combination under search."""
    status: SwarmStatus = SwarmStatus.ACTIVE
    best_model_id: Optional[int] = None
    best_err_score: Optional[float] = None
    sprint_idx: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "best_model_id": self.best_model_id,
            "best_err_score": self.best_err_score,
            "sprint_idx": self.sprint_idx,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "SwarmInfo":
        return cls(
            status=SwarmStatus(d["status"]),
            best_model_id=d.get("best_model_id"),
            best_err_score=d.get("best_err_score"),
            sprint_idx=d.get("sprint_idx", 0),
        )


@dataclass
class SprintInfo:
    """A group of swarms with the same number of fields."""
    status: SwarmStatus = SwarmStatus.ACTIVE
    best_model_id: Optional[int] = None
    best_err_score: Optional[float] = None
    best_swarm_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "best_model_id": self.best_model_id,
            "best_err_score": self.best_err_score,
            "best_swarm_id": self.best_swarm_id,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "SprintInfo":
        return cls(
            status=SwarmStatus(d["status"]),
            best_model_id=d.get("best_model_id"),
            best_err_score=d.get("best_err_score"),
            best_swarm_id=d.get("best_swarm_id"),
        )


@dataclass
class SwarmEngineState:
    """The engine state document stored on the job."""
    version: int = 0
    last_update_time: float = 0.0
    last_good_sprint: Optional[int] = None
    search_over: bool = False
    active_swarms: List[str] = field(default_factory=list)
    swarms: Dict[str, SwarmInfo] = field(default_factory=dict)
    sprints: List[SprintInfo] = field(default_factory=list)
    blacklisted_encoders: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "last_update_time": self.last_update_time,
            "last_good_sprint": self.last_good_sprint,
            "search_over": self.search_over,
            "active_swarms": list(self.active_swarms),
            "swarms": {swarm_id: info.to_dict() for swarm_id, info in sorted(self.swarms.items())},
            "sprints": [sprint.to_dict() for sprint in self.sprints],
            "blacklisted_encoders": list(self.blacklisted_encoders),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "SwarmEngineState":
        return cls(
            version=d.get("version", 0),
            last_update_time=d.get("last_update_time", 0.0),
            last_good_sprint=d.get("last_good_sprint"),
            search_over=d.get("search_over", False),
            active_swarms=list(d.get("active_swarms", [])),
            swarms={
                swarm_id: SwarmInfo.from_dict(info)
                for swarm_id, info in d.get("swarms", {}).items()
            },
            sprints=[SprintInfo.from_dict(s) for s in d.get("sprints", [])],
            blacklisted_encoders=list(d.get("blacklisted_encoders", [])),
        )

    @classmethod
    def from_json(cls, data: str) -> "SwarmEngineState":
        return cls.from_dict(json.loads(data))


def _score_key(score: Optional[float]) -> float:
    return math.inf if score is None else score


class EngineStateManager:
    """
    A worker's local view of the engine state, with the sprint rules.

    Args:
        store: job store holding the state document
        job_id: job whose state this is
        config: search configuration
        results_db: this worker's results index
        on_swarm_killed: called with a swarm id when a swarm is killed, so
            its running models can be told to stop
    """

    def __init__(
        self,
        store: "JobStore",
        job_id: int,
        config: "SearchConfig",
        results_db: "ResultsDB",
        on_swarm_killed: Optional[Callable[[str], None]] = None,
    ):
        self.store = store
        self.job_id = job_id
        self.config = config
        self.results_db = results_db
        self.on_swarm_killed = on_swarm_killed

        self.state = SwarmEngineState()
        self._prior_state_json: Optional[str] = None
        self._dirty = False

    # -------------------- Persistence --------------------

    def _initial_state(self) -> SwarmEngineState:
        if self.config.fixed_fields is not None:
            swarm_ids = [SWARM_SEPARATOR.join(sorted(self.config.fixed_fields))]
        else:
            swarm_ids = self.config.search_space.encoder_names

        return SwarmEngineState(
            version=1,
            last_update_time=self.store.now(),
            active_swarms=list(swarm_ids),
            swarms={swarm_id: SwarmInfo(sprint_idx=0) for swarm_id in swarm_ids},
            sprints=[SprintInfo()],
        )

    def read_state_from_db(self) -> None:
        """Load the latest state, creating the initial state if there is none."""
        self._prior_state_json = self.store.get_job(self.job_id).engine_state

        if self._prior_state_json is None:
            initial = self._initial_state()
            # No-op unless the state is still unset
            if self.store.update_job_engine_state(self.job_id, initial.to_json(), None):
                logger.info(f"Job {self.job_id}: initialized engine state with swarms {initial.active_swarms}")
            self._prior_state_json = self.store.get_job(self.job_id).engine_state

        self.state = SwarmEngineState.from_json(self._prior_state_json)
        self._dirty = False

    def write_state_to_db(self) -> bool:
        """
        Write local changes by compare-and-swap.

        Returns:
            True if there was nothing to write or the write won. False if
            another worker changed the state first; the local state is then
            replaced by theirs.
        """
        if not self._dirty:
            return True

        self.state.version += 1
        self.state.last_update_time = self.store.now()
        new_state_json = self.state.to_json()
        success = self.store.update_job_engine_state(
            self.job_id, new_state_json, self._prior_state_json
        )

        if success:
            logger.debug(f"Job {self.job_id}: engine state now at version {self.state.version}")
            self._prior_state_json = new_state_json
            self._dirty = False
        else:
            self.read_state_from_db()
            logger.info(
                f"Job {self.job_id}: engine state was changed by another worker "
                f"(now version {self.state.version})"
            )

        return success

    def is_dirty(self) -> bool:
        return self._dirty

    def is_search_over(self) -> bool:
        return self.state.search_over

    # -------------------- Queries --------------------

    def get_all_swarms(self, sprint_idx: int) -> List[str]:
        return sorted(
            swarm_id for swarm_id, info in self.state.swarms.items()
            if info.sprint_idx == sprint_idx
        )

    def get_active_swarms(self, sprint_idx: Optional[int] = None) -> List[str]:
        return sorted(
            swarm_id for swarm_id, info in self.state.swarms.items()
            if info.status == SwarmStatus.ACTIVE
            and (sprint_idx is None or info.sprint_idx == sprint_idx)
        )

    def get_non_killed_swarms(self, sprint_idx: int) -> List[str]:
        return sorted(
            swarm_id for swarm_id, info in self.state.swarms.items()
            if info.sprint_idx == sprint_idx and info.status != SwarmStatus.KILLED
        )

    def get_completed_swarms(self) -> List[str]:
        return sorted(
            swarm_id for swarm_id, info in self.state.swarms.items()
            if info.status == SwarmStatus.COMPLETED
        )

    def get_completing_swarms(self) -> List[str]:
        return sorted(
            swarm_id for swarm_id, info in self.state.swarms.items()
            if info.status == SwarmStatus.COMPLETING
        )

    def get_swarm_status(self, swarm_id: str) -> SwarmStatus:
        return self.state.swarms[swarm_id].status

    def best_model_in_completed_swarm(self, swarm_id: str) -> Tuple[Optional[int], Optional[float]]:
        info = self.state.swarms[swarm_id]
        return info.best_model_id, info.best_err_score

    def best_model_in_completed_sprint(self, sprint_idx: int) -> Tuple[Optional[int], Optional[float]]:
        sprint = self.state.sprints[sprint_idx]
        return sprint.best_model_id, sprint.best_err_score

    def best_model_in_sprint(self, sprint_idx: int) -> Tuple[Optional[int], float]:
        """Best matured model so far among all swarms of a sprint."""
        best_model_id, best_err = None, math.inf
        for swarm_id in self.get_all_swarms(sprint_idx):
            model_id, err = self.results_db.best_model_id_and_err_score(swarm_id)
            if err < best_err:
                best_model_id, best_err = model_id, err
        return best_model_id, best_err

    def is_sprint_completed(self, sprint_idx: int) -> bool:
        return (
            sprint_idx < len(self.state.sprints)
            and self.state.sprints[sprint_idx].status == SwarmStatus.COMPLETED
        )

    def any_good_sprints_active(self) -> bool:
        """True if a sprint up to the last good one is still active."""
        if self.state.last_good_sprint is not None:
            good_sprints = self.state.sprints[:self.state.last_good_sprint + 1]
        else:
            good_sprints = self.state.sprints
        return any(sprint.status == SwarmStatus.ACTIVE for sprint in good_sprints)

    def get_field_contributions(self) -> Tuple[Dict[str, float], Dict[str, float]]:
        """
        How much better each single field did than the baseline field.

        The baseline is the worst field among the top max_field_branching+1
        single-field swarms (the worst of all when branching is unlimited).

        Returns:
            (percent contributions, absolute contributions) keyed by encoder
        """
        if self.config.fixed_fields is not None:
            return {}, {}

        field_scores: List[Tuple[float, str]] = []
        for swarm_id, info in self.state.swarms.items():
            if SWARM_SEPARATOR in swarm_id:
                continue
            score = info.best_err_score
            if score is None:
                _, score = self.results_db.best_model_id_and_err_score(swarm_id)
            field_scores.append((score, swarm_id))

        scored = sorted(
            ((score, name) for score, name in field_scores if math.isfinite(score)),
            reverse=True,
        )
        if not scored:
            return {}, {}

        max_branching = self.config.max_field_branching
        if max_branching > 0 and len(scored) > max_branching:
            base_err = scored[-max_branching - 1][0]
        else:
            base_err = scored[0][0]
        if abs(base_err) < 0.00001:
            base_err = 0.00001

        pct_contributions: Dict[str, float] = {}
        abs_contributions: Dict[str, float] = {}
        for score, name in sorted(field_scores, key=lambda s: s[1]):
            if math.isfinite(score):
                pct_contributions[name] = (base_err - score) * 100.0 / base_err
                abs_contributions[name] = base_err - score
            else:
                pct_contributions[name] = 0.0
                abs_contributions[name] = 0.0
        return pct_contributions, abs_contributions

    # -------------------- Transitions --------------------

    def set_swarm_state(self, swarm_id: str, new_status: SwarmStatus) -> None:
        """
        Change a swarm's status and roll the change up into its sprint.

        Completing a swarm records its best model. Completing the last swarm
        of a sprint records the sprint's best and may end the search.
        """
        info = self.state.swarms[swarm_id]
        if info.status == new_status:
            return
        # Another worker already saw it complete
        if info.status == SwarmStatus.COMPLETED and new_status == SwarmStatus.COMPLETING:
            return

        self._dirty = True
        info.status = new_status
        if new_status == SwarmStatus.COMPLETED:
            info.best_model_id, info.best_err_score = (
                self.results_db.best_model_id_and_err_score(swarm_id)
            )
            if not math.isfinite(info.best_err_score):
                info.best_err_score = None
            logger.info(
                f"Swarm {swarm_id} completed with best model {info.best_model_id} "
                f"(error score {info.best_err_score})"
            )

        if new_status != SwarmStatus.ACTIVE and swarm_id in self.state.active_swarms:
            self.state.active_swarms.remove(swarm_id)

        if new_status == SwarmStatus.KILLED:
            logger.info(f"Swarm {swarm_id} killed")
            if self.on_swarm_killed is not None:
                self.on_swarm_killed(swarm_id)

        # Give the next sprint a chance to start now that this swarm changed
        sprint_idx = info.sprint_idx
        self.is_sprint_active(sprint_idx)

        statuses = [self.state.swarms[s].status for s in self.get_all_swarms(sprint_idx)]
        if SwarmStatus.ACTIVE in statuses:
            sprint_status = SwarmStatus.ACTIVE
        elif SwarmStatus.COMPLETING in statuses:
            sprint_status = SwarmStatus.COMPLETING
        else:
            sprint_status = SwarmStatus.COMPLETED

        sprint = self.state.sprints[sprint_idx]
        if sprint.status != sprint_status:
            self._dirty = True
        sprint.status = sprint_status

        if sprint_status != SwarmStatus.COMPLETED:
            return

        completed = [
            (_score_key(self.state.swarms[s].best_err_score), s)
            for s in self.get_all_swarms(sprint_idx)
            if self.state.swarms[s].status == SwarmStatus.COMPLETED
        ]
        if completed:
            best_err, best_swarm_id = min(completed)
            sprint.best_swarm_id = best_swarm_id
            sprint.best_model_id = self.state.swarms[best_swarm_id].best_model_id
            sprint.best_err_score = best_err if math.isfinite(best_err) else None
        else:
            best_err = math.inf
            sprint.best_swarm_id = None
            sprint.best_model_id = None
            sprint.best_err_score = None
        logger.info(
            f"Sprint {sprint_idx} completed; best swarm {sprint.best_swarm_id} "
            f"(error score {sprint.best_err_score})"
        )

        best_prior = math.inf
        for idx in range(sprint_idx):
            if self.state.sprints[idx].status == SwarmStatus.COMPLETED:
                best_prior = min(best_prior, _score_key(self.state.sprints[idx].best_err_score))

        if best_err >= best_prior:
            self.state.last_good_sprint = sprint_idx - 1
            logger.info(
                f"Sprint {sprint_idx} did not improve on earlier sprints "
                f"(best prior {best_prior}); last good sprint is {sprint_idx - 1}"
            )

        if self.state.last_good_sprint is not None and not self.any_good_sprints_active():
            self.state.search_over = True
            logger.info(f"Job {self.job_id}: search is over")

    def kill_useless_swarms(self) -> None:
        """
        Kill swarms built on a sprint whose best swarm they don't contain.

        Once a sprint has nothing left running, only swarms of the next
        sprint that extend its best swarm are worth continuing.
        """
        num_sprints = len(self.state.sprints)
        if num_sprints <= 1:
            return

        completed_by_sprint: List[List[Tuple[float, str]]] = [[] for _ in range(num_sprints)]
        for swarm_id in self.get_completed_swarms():
            info = self.state.swarms[swarm_id]
            completed_by_sprint[info.sprint_idx].append((_score_key(info.best_err_score), swarm_id))
        for swarms in completed_by_sprint:
            swarms.sort()

        running_by_sprint: List[List[str]] = [[] for _ in range(num_sprints)]
        for swarm_id in self.get_active_swarms() + self.get_completing_swarms():
            running_by_sprint[self.state.swarms[swarm_id].sprint_idx].append(swarm_id)

        to_kill = []
        for i in range(1, num_sprints):
            if running_by_sprint[i - 1] or not completed_by_sprint[i - 1]:
                continue
            best_encoders = completed_by_sprint[i - 1][0][1].split(SWARM_SEPARATOR)
            for swarm_id in sorted(running_by_sprint[i]):
                encoders = swarm_id.split(SWARM_SEPARATOR)
                if any(encoder not in encoders for encoder in best_encoders):
                    to_kill.append(swarm_id)

        if to_kill:
            logger.info(f"Killing useless swarms: {to_kill}")
        for swarm_id in to_kill:
            self.set_swarm_state(swarm_id, SwarmStatus.KILLED)

    def _num_unmatured(self, swarm_id: str) -> int:
        return len(self.results_db.get_particle_infos(swarm_id, matured=False))

    def is_sprint_active(self, sprint_idx: int) -> Tuple[bool, bool]:
        """
        Whether a sprint can take new models, creating its swarms if needed.

        Returns:
            (active, end_of_sprints). end_of_sprints means there is no such
            sprint and none will be created.
        """
        while True:
            num_sprints = len(self.state.sprints)
            exists = sprint_idx < num_sprints

            if exists:
                active = self.state.sprints[sprint_idx].status == SwarmStatus.ACTIVE
                if not self.config.speculative_particles or not active:
                    return active, False
                # Keep filling swarms that still lack enough models in flight
                for swarm_id in self.get_active_swarms(sprint_idx):
                    if self._num_unmatured(swarm_id) < self.config.min_particles_per_swarm:
                        return True, False

            # No more sprints once one failed to improve, or in a fixed search
            if self.state.last_good_sprint is not None or self.config.fixed_fields is not None:
                return (True, False) if exists else (False, True)

            # Base sets: what the new swarms extend
            prev_idx = sprint_idx - 1
            if sprint_idx > 0 and self.is_sprint_completed(prev_idx) \
                    and self.state.sprints[prev_idx].best_swarm_id is not None:
                base_sets = [self.state.sprints[prev_idx].best_swarm_id.split(SWARM_SEPARATOR)]
            elif sprint_idx > 0:
                base_sets = [s.split(SWARM_SEPARATOR) for s in self.get_non_killed_swarms(prev_idx)]
            else:
                base_sets = []

            add_encoders = self._encoders_to_add(sprint_idx)

            speculating = len(self.get_active_swarms(prev_idx)) > 0 if sprint_idx > 0 else False
            new_swarm_ids: List[str] = []
            for base in base_sets:
                for encoder in add_encoders:
                    if encoder in self.state.blacklisted_encoders or encoder in base:
                        continue
                    swarm_id = SWARM_SEPARATOR.join(sorted(base + [encoder]))
                    if swarm_id in self.state.swarms or swarm_id in new_swarm_ids:
                        continue
                    new_swarm_ids.append(swarm_id)
                    # While the previous sprint runs, grow one swarm at a time
                    if speculating:
                        break
            new_swarm_ids.sort()

            if not new_swarm_ids:
                if self.get_all_swarms(sprint_idx):
                    return True, False
                return False, True

            self._dirty = True
            if len(self.state.sprints) == sprint_idx:
                self.state.sprints.append(SprintInfo())
            for swarm_id in new_swarm_ids:
                self.state.swarms[swarm_id] = SwarmInfo(sprint_idx=sprint_idx)
            self.state.active_swarms = self.get_active_swarms()
            logger.info(f"Sprint {sprint_idx}: adding swarms {new_swarm_ids}")

            if self.write_state_to_db():
                return True, False
            # Lost the race; re-evaluate against the winner's state

    def _encoders_to_add(self, sprint_idx: int) -> List[str]:
        """Fields that may extend a base set in the given sprint."""
        max_branching = self.config.max_field_branching
        min_contribution = self.config.min_field_contribution
        limit_fields = sprint_idx >= 1 and (max_branching > 0 or min_contribution >= 0)
        if not limit_fields:
            return self.config.search_space.encoder_names

        pct_contributions, _ = self.get_field_contributions()
        to_remove = sorted(
            encoder for encoder, pct in pct_contributions.items() if pct < min_contribution
        )

        # Blacklist only on final sprint-0 scores
        if self.is_sprint_completed(0):
            for encoder in to_remove:
                if encoder not in self.state.blacklisted_encoders:
                    self.state.blacklisted_encoders.append(encoder)
                    self._dirty = True
                    logger.info(f"Blacklisting encoder {encoder} (contribution below {min_contribution}%)")

        base_sprint_swarms = sorted(
            (_score_key(self.state.swarms[s].best_err_score), s) for s in self.get_all_swarms(0)
        )
        if max_branching > 0:
            base_sprint_swarms = base_sprint_swarms[:max_branching]

        add_encoders = set()
        for _, swarm_id in base_sprint_swarms:
            add_encoders.update(swarm_id.split(SWARM_SEPARATOR))
        add_encoders.difference_update(to_remove)
        return sorted(add_encoders)
