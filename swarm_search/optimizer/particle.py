"""
swarm_search/optimizer/particle.py

A particle is one member of a swarm's population.

It holds one ParticleVariable per searched dimension of the swarm (encoders
outside the swarm are filtered out) and moves through generations: every
model the search runs is one particle at one generation index.

Particles are created three ways:
- new: generation 0, optionally pushed away from existing particles
- evolve: from a matured particle's saved state, generation + 1, with the
  personal best taken from the results database
- seeded: a new particle whose encoder variables are copied from the best
  model of an earlier sprint
"""

from __future__ import annotations
import copy
import logging
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

import numpy as np

from .dimensions import SearchSpace, is_encoder_var
from .variables import ParticleVariable, PermuteChoices, PsoSettings

if TYPE_CHECKING:
    from swarm_search.services.results import ResultsDB

logger = logging.getLogger(__name__)


class Particle:
    """
    A point in a swarm's search space, tracked across generations.

    State format (persisted with each model):
        {"id": str, "gen_idx": int, "swarm_id": str,
         "var_states": {var_name: variable state}}
    """

    def __init__(
        self,
        search_space: SearchSpace,
        results_db: "ResultsDB",
        swarm_id: str,
        particle_id: str,
        gen_idx: int,
        rng: np.random.Generator,
        pso: PsoSettings | None = None,
        speculative: bool = True,
    ):
        self.search_space = search_space
        self.results_db = results_db
        self.swarm_id = swarm_id
        self.particle_id = particle_id
        self.gen_idx = gen_idx
        self.rng = rng
        self.speculative = speculative

        self.permute_vars: Dict[str, ParticleVariable] = search_space.create_variables(
            allowed_encoders=swarm_id.split("."),
            pso=pso,
        )

        # Categorical variables sample from what the swarm has seen so far
        max_gen_idx = None if speculative else gen_idx - 1
        for var_name, var in self.permute_vars.items():
            if isinstance(var, PermuteChoices):
                var.set_results_per_choice(
                    results_db.get_results_per_choice(swarm_id, max_gen_idx, var_name)
                )

    @classmethod
    def new(
        cls,
        search_space: SearchSpace,
        results_db: "ResultsDB",
        swarm_id: str,
        particle_id: str,
        rng: np.random.Generator,
        far_from: Optional[List[Dict[str, Any]]] = None,
        pso: PsoSettings | None = None,
        speculative: bool = True,
    ) -> "Particle":
        """Create a generation-0 particle, away from the given particle states."""
        particle = cls(
            search_space,
            results_db,
            swarm_id,
            particle_id,
            gen_idx=0,
            rng=rng,
            pso=pso,
            speculative=speculative,
        )

        if far_from:
            for var_name, var in particle.permute_vars.items():
                other_positions = [
                    state["var_states"][var_name]["position"]
                    for state in far_from
                    if var_name in state["var_states"]
                ]
                var.push_away_from(other_positions, rng)

        logger.debug(f"Created particle: {particle}")
        return particle

    @classmethod
    def evolve(
        cls,
        search_space: SearchSpace,
        results_db: "ResultsDB",
        state: Dict[str, Any],
        rng: np.random.Generator,
        pso: PsoSettings | None = None,
        speculative: bool = True,
    ) -> "Particle":
        """Move a matured particle to its next generation."""
        particle = cls(
            search_space,
            results_db,
            state["swarm_id"],
            state["id"],
            gen_idx=state["gen_idx"] + 1,
            rng=rng,
            pso=pso,
            speculative=speculative,
        )
        particle._init_state_from(state)
        particle.new_position()

        logger.debug(f"Evolved particle: {particle}")
        return particle

    def __repr__(self) -> str:
        variables = "\n".join(f"  {name}: {var}" for name, var in self.permute_vars.items())
        return (
            f"Particle(swarm_id={self.swarm_id}) [particle_id={self.particle_id}, "
            f"gen_idx={self.gen_idx}, permute_vars=\n{variables}]"
        )

    def _init_state_from(self, state: Dict[str, Any]) -> None:
        """Restore variables from a prior generation with this particle's best."""
        best = self.results_db.get_particle_best(self.particle_id)
        best_result, best_position = best if best is not None else (None, None)

        for var_name, var_state in state["var_states"].items():
            if var_name not in self.permute_vars:
                continue
            var_state = copy.deepcopy(var_state)
            var_state["best_result"] = best_result
            if best_position is not None:
                var_state["best_position"] = best_position[var_name]
            self.permute_vars[var_name].set_state(var_state)

    def get_state(self) -> Dict[str, Any]:
        return {
            "id": self.particle_id,
            "gen_idx": self.gen_idx,
            "swarm_id": self.swarm_id,
            "var_states": {
                var_name: var.get_state() for var_name, var in self.permute_vars.items()
            },
        }

    def get_position(self) -> Dict[str, Any]:
        return {var_name: var.get_position() for var_name, var in self.permute_vars.items()}

    @staticmethod
    def get_position_from_state(state: Dict[str, Any]) -> Dict[str, Any]:
        return {
            var_name: var_state["position"]
            for var_name, var_state in state["var_states"].items()
        }

    def copy_encoder_states_from(self, state: Dict[str, Any]) -> None:
        """
        Adopt the encoder positions of another particle as our own best.

        Velocities are reset so the particle still explores around them.
        """
        for var_name, var_state in state["var_states"].items():
            if not is_encoder_var(var_name) or var_name not in self.permute_vars:
                continue
            var_state = copy.deepcopy(var_state)
            var_state["raw_position"] = var_state["position"]
            var_state["best_position"] = var_state["position"]
            self.permute_vars[var_name].set_state(var_state)
            self.permute_vars[var_name].reset_velocity(self.rng)

    def agitate(self) -> None:
        """Perturb every variable, then step to a new position."""
        for var in self.permute_vars.values():
            var.agitate()
        self.new_position()

    def new_position(self, which_vars: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        """
        Advance one PSO step, pulled toward the swarm's global best.

        Args:
            which_vars: restrict the step to these variable names

        Returns:
            The new position
        """
        gen_idx = self.gen_idx if self.speculative else self.gen_idx - 1
        global_best: Optional[Dict[str, Any]] = None
        if gen_idx >= 0:
            best_model_id, _ = self.results_db.best_model_id_and_err_score(self.swarm_id, gen_idx)
            if best_model_id is not None:
                info = self.results_db.get_particle_info(best_model_id)
                global_best = self.get_position_from_state(info.particle_state)

        selected = None if which_vars is None else set(which_vars)
        for var_name, var in self.permute_vars.items():
            if selected is not None and var_name not in selected:
                continue
            best = None if global_best is None else global_best.get(var_name)
            var.new_position(best, self.rng)

        position = self.get_position()
        logger.debug(f"New particle position: {position}")
        return position
