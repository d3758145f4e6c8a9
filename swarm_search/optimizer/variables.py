"""
swarm_search/optimizer/variables.py

Permutation variables for particle swarm optimization.

Each variable is one dimension of a particle's position:
- PermuteFloat / PermuteInt move with the classic PSO velocity rule
- PermuteChoices samples a categorical value weighted by how well each
  choice has scored so far

Variables are stateless between processes except through get_state() and
set_state(), which is how a particle's convergence progress is persisted
with every model it produces.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging

import numpy as np

from swarm_search.errors import ConfigurationError

logger = logging.getLogger(__name__)


# Random multipliers on the cognitive and social terms are drawn from this range
RANDOM_LOWER_BOUND = 0.8
RANDOM_UPPER_BOUND = 1.2

DEFAULT_COG_RATE = 0.25
DEFAULT_SOC_RATE = 1.0

# Inertia schedule used when no explicit inertia is configured
INERTIA_START = 0.9
INERTIA_END = 0.25
INERTIA_DECAY_UPDATES = 30

# Sharpening exponent per result per choice in fix-early mode
FIX_EARLY_FACTOR = 0.7


@dataclass
class PsoSettings:
    """PSO coefficients shared by all numeric variables of a search."""
    inertia: Optional[float] = None  # None = decaying schedule
    cog_rate: float = DEFAULT_COG_RATE
    soc_rate: float = DEFAULT_SOC_RATE


def validate_range(min_value: float, max_value: float, step_size: Optional[float]) -> None:
    """Raise ConfigurationError for an unusable numeric range."""
    if min_value > max_value:
        raise ConfigurationError(
            f"min_value ({min_value}) must not be greater than max_value ({max_value})"
        )
    if step_size is not None and step_size <= 0:
        raise ConfigurationError(f"step_size must be positive, got {step_size}")


class ParticleVariable(ABC):
    """
    Abstract base for one dimension of a particle.

    A variable must support:
    - State round-tripping (get_state, set_state) for persistence
    - One PSO step (new_position)
    - Perturbation when a position collides with an existing model
    """

    @abstractmethod
    def get_state(self) -> Dict[str, Any]:
        """Return the variable state as a JSON-compatible dict."""
        pass

    @abstractmethod
    def set_state(self, state: Dict[str, Any]) -> None:
        """Restore the variable from a state produced by get_state()."""
        pass

    @abstractmethod
    def get_position(self) -> Any:
        """Return the current (snapped) position."""
        pass

    @abstractmethod
    def agitate(self) -> None:
        """Perturb the velocity so the next step lands somewhere new."""
        pass

    @abstractmethod
    def new_position(self, global_best_position: Any, rng: np.random.Generator) -> Any:
        """Advance one step and return the new position."""
        pass

    @abstractmethod
    def push_away_from(self, other_positions: List[Any], rng: np.random.Generator) -> None:
        """Move to the position least crowded by other_positions."""
        pass

    @abstractmethod
    def reset_velocity(self, rng: np.random.Generator) -> None:
        """Reset the velocity to its initial magnitude with a random sign."""
        pass


class PermuteFloat(ParticleVariable):
    """
    A float dimension in [min_value, max_value], optionally on a step grid.

    velocity' = inertia*v + cog*r1*(best - pos) + soc*r2*(gbest - pos)
    """

    def __init__(
        self,
        min_value: float,
        max_value: float,
        step_size: Optional[float] = None,
        inertia: Optional[float] = None,
        cog_rate: Optional[float] = None,
        soc_rate: Optional[float] = None,
    ):
        validate_range(min_value, max_value, step_size)
        self.min = min_value
        self.max = max_value
        self.step_size = step_size

        self._inertia = inertia
        self._cog_rate = DEFAULT_COG_RATE if cog_rate is None else cog_rate
        self._soc_rate = DEFAULT_SOC_RATE if soc_rate is None else soc_rate

        # Start in the middle of the range with a fifth of the range as speed
        self._raw_position = (max_value + min_value) / 2.0
        self._velocity = (max_value - min_value) / 5.0
        self._best_position = self.get_position()
        self._best_result: Optional[float] = None
        self._updates = 0

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(min={self.min}, max={self.max}, "
            f"step_size={self.step_size}) [position={self.get_position()}, "
            f"velocity={self._velocity}, best_position={self._best_position}, "
            f"best_result={self._best_result}]"
        )

    def _current_inertia(self) -> float:
        if self._inertia is not None:
            return self._inertia
        progress = min(1.0, self._updates / INERTIA_DECAY_UPDATES)
        return INERTIA_START + (INERTIA_END - INERTIA_START) * progress

    def get_state(self) -> Dict[str, Any]:
        return {
            "raw_position": self._raw_position,
            "position": self.get_position(),
            "velocity": self._velocity,
            "best_position": self._best_position,
            "best_result": self._best_result,
            "updates": self._updates,
        }

    def set_state(self, state: Dict[str, Any]) -> None:
        self._raw_position = float(state["raw_position"])
        self._velocity = float(state["velocity"])
        self._best_position = state["best_position"]
        self._best_result = state["best_result"]
        self._updates = int(state.get("updates", 0))

    def get_position(self) -> Any:
        if self.step_size is None:
            return self._raw_position

        num_steps = int(round((self._raw_position - self.min) / self.step_size))
        position = self.min + num_steps * self.step_size
        # Stay on the grid when max is not a whole number of steps from min
        tolerance = self.step_size * 1e-9
        while position > self.max + tolerance and num_steps > 0:
            num_steps -= 1
            position = self.min + num_steps * self.step_size
        return min(max(self.min, position), self.max)

    def agitate(self) -> None:
        if self._velocity == 0.0:
            # Velocity is zeroed when a move is clamped at a bound
            self._velocity = (self.max - self.min) / 5.0

        self._velocity *= 1.5 / self._current_inertia()

        max_velocity = (self.max - self.min) / 2.0
        if self._velocity > max_velocity:
            self._velocity = max_velocity
        elif self._velocity < -max_velocity:
            self._velocity = -max_velocity

        if self._raw_position >= self.max and self._velocity > 0:
            self._velocity *= -1
        if self._raw_position <= self.min and self._velocity < 0:
            self._velocity *= -1

    def new_position(self, global_best_position: Any, rng: np.random.Generator) -> Any:
        position = self.get_position()

        velocity = self._velocity * self._current_inertia()
        velocity += (
            rng.uniform(RANDOM_LOWER_BOUND, RANDOM_UPPER_BOUND)
            * self._cog_rate
            * (self._best_position - position)
        )
        if global_best_position is not None:
            velocity += (
                rng.uniform(RANDOM_LOWER_BOUND, RANDOM_UPPER_BOUND)
                * self._soc_rate
                * (global_best_position - position)
            )
        self._velocity = float(velocity)

        raw_position = self._raw_position + self._velocity
        if raw_position > self.max:
            raw_position = self.max
            self._velocity = 0.0
        elif raw_position < self.min:
            raw_position = self.min
            self._velocity = 0.0

        self._raw_position = float(raw_position)
        self._updates += 1
        return self.get_position()

    def push_away_from(self, other_positions: List[Any], rng: np.random.Generator) -> None:
        if self.max == self.min:
            return

        num_positions = len(other_positions) * 4
        if num_positions == 0:
            return

        # Candidate grid, each scored by Gaussian crowding from other particles
        step_size = float(self.max - self.min) / num_positions
        positions = np.arange(self.min, self.max + step_size, step_size)
        positions = positions[positions <= self.max + 1e-12]
        weights = np.zeros(len(positions))

        max_distance_sq = -1 * (step_size ** 2)
        for other in other_positions:
            distances = other - positions
            weights += np.exp(np.power(distances, 2) / max_distance_sq)

        position_idx = int(weights.argmin())
        self._raw_position = float(min(positions[position_idx], self.max))
        self._best_position = self.get_position()
        self._velocity *= int(rng.choice([1, -1]))

    def reset_velocity(self, rng: np.random.Generator) -> None:
        max_velocity = (self.max - self.min) / 5.0
        self._velocity = max_velocity * int(rng.choice([1, -1]))


class PermuteInt(PermuteFloat):
    """An integer dimension; positions are rounded after snapping."""

    def __init__(
        self,
        min_value: int,
        max_value: int,
        step_size: int = 1,
        inertia: Optional[float] = None,
        cog_rate: Optional[float] = None,
        soc_rate: Optional[float] = None,
    ):
        super().__init__(
            min_value,
            max_value,
            step_size=step_size,
            inertia=inertia,
            cog_rate=cog_rate,
            soc_rate=soc_rate,
        )

    def get_position(self) -> int:
        return int(round(super().get_position()))


class PermuteChoices(ParticleVariable):
    """
    A categorical dimension.

    Selection weight of a choice is inversely related to its mean observed
    error. Choices never evaluated get the best observed mean so they are
    still tried. In fix-early mode the weights are raised to a power that
    grows with the number of results, collapsing onto the best choice.
    """

    def __init__(self, choices: Sequence[Any], fix_early: bool = False):
        if len(choices) == 0:
            raise ConfigurationError("PermuteChoices requires at least one choice")
        self.choices = list(choices)
        self.fix_early = fix_early

        self._position_idx = 0
        self._best_position_idx = 0
        self._best_result: Optional[float] = None
        self._results_per_choice: List[List[float]] = [[] for _ in self.choices]

    def __repr__(self) -> str:
        return (
            f"PermuteChoices(choices={self.choices}, fix_early={self.fix_early}) "
            f"[position={self.get_position()}, "
            f"best_position={self.choices[self._best_position_idx]}, "
            f"best_result={self._best_result}]"
        )

    def get_state(self) -> Dict[str, Any]:
        return {
            "raw_position": self.get_position(),
            "position": self.get_position(),
            "velocity": None,
            "best_position": self.choices[self._best_position_idx],
            "best_result": self._best_result,
            "updates": 0,
        }

    def set_state(self, state: Dict[str, Any]) -> None:
        self._position_idx = self.choices.index(state["raw_position"])
        self._best_position_idx = self.choices.index(state["best_position"])
        self._best_result = state["best_result"]

    def get_position(self) -> Any:
        return self.choices[self._position_idx]

    def set_results_per_choice(self, results_per_choice: List[Tuple[Any, List[float]]]) -> None:
        """
        Load the error scores observed so far.

        Args:
            results_per_choice: list of (choice value, list of error scores)
        """
        self._results_per_choice = [[] for _ in self.choices]
        for choice_value, values in results_per_choice:
            self._results_per_choice[self.choices.index(choice_value)] = list(values)

    def agitate(self) -> None:
        # No velocity on categorical dimensions
        pass

    def choice_probabilities(self) -> np.ndarray:
        """Selection probability of each choice given the results so far."""
        num_choices = len(self.choices)

        means: List[Optional[float]] = []
        num_results = 0
        for results in self._results_per_choice:
            if results:
                data = np.asarray(results, dtype=float)
                means.append(float(data.mean()))
                num_results += data.size
            else:
                means.append(None)

        observed = [m for m in means if m is not None]
        optimistic = min(observed) if observed else 1.0
        scores = np.array([optimistic if m is None else m for m in means])

        ceiling = scores.max() + 0.1 * abs(scores.max())
        weights = ceiling - scores
        if self.fix_early and weights.max() > 0:
            # Best choice stays at 1.0 so the power can't under- or overflow it
            weights = np.power(weights / weights.max(), num_results * FIX_EARLY_FACTOR / num_choices)

        total = weights.sum()
        if total <= 0 or not np.isfinite(total):
            return np.full(num_choices, 1.0 / num_choices)
        return weights / total

    def new_position(self, global_best_position: Any, rng: np.random.Generator) -> Any:
        distribution = np.cumsum(self.choice_probabilities())
        r = rng.random() * distribution[-1]
        self._position_idx = int(np.where(r < distribution)[0][0])
        return self.get_position()

    def push_away_from(self, other_positions: List[Any], rng: np.random.Generator) -> None:
        areas = np.zeros(len(self.choices))
        for position in other_positions:
            areas[self.choices.index(position)] += 1

        candidates = np.where(areas == areas.min())[0]
        self._position_idx = int(rng.choice(candidates))
        self._best_position_idx = self._position_idx

    def reset_velocity(self, rng: np.random.Generator) -> None:
        pass
