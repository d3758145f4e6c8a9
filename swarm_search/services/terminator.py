"""
swarm_search/services/terminator.py

Swarm maturity and termination decisions.

The terminator receives the best error score of every matured swarm
generation, in generation order, and decides which swarms should stop:
- a swarm matures when its cumulative best stops improving over a window
- a swarm matures when it runs past a maximum number of generations
- with termination enabled, a swarm that trails the best swarm of the same
  generation by more than a shrinking milestone tolerance is killed
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence, Set

logger = logging.getLogger(__name__)

DEFAULT_MILESTONES = [1.0 / (x + 1) for x in range(12)]


class SwarmTerminator:
    """
    Per-swarm record of generation scores.

    Args:
        maturity_window: generations before a swarm may mature or be killed
        max_generations: generation count after which a swarm always matures
        max_slope: largest per-generation improvement still counted as flat
        termination_enabled: kill swarms that trail the generation best
        milestones: per-generation tolerance above the generation best
    """

    def __init__(
        self,
        maturity_window: int = 5,
        max_generations: Optional[int] = None,
        max_slope: float = 0.0,
        termination_enabled: bool = True,
        milestones: Optional[Sequence[float]] = None,
    ):
        if maturity_window < 1:
            raise ValueError(f"maturity_window must be at least 1, got {maturity_window}")
        self.maturity_window = maturity_window
        self.max_generations = None if max_generations is not None and max_generations < 0 else max_generations
        self.max_slope = max_slope
        self.termination_enabled = termination_enabled
        self.milestones = list(milestones) if milestones is not None else list(DEFAULT_MILESTONES)

        self.swarm_scores: Dict[str, List[float]] = {}
        self.swarm_bests: Dict[str, List[float]] = {}
        self.terminated_swarms: Set[str] = set()

    def _milestone(self, generation: int) -> float:
        return self.milestones[min(generation, len(self.milestones) - 1)]

    def record_data_point(self, swarm_id: str, generation: int, err_score: float) -> Set[str]:
        """
        Record the best score of a swarm generation.

        Returns:
            Swarm ids that should stop now
        """
        if swarm_id in self.swarm_scores:
            scores = self.swarm_scores[swarm_id]
            if len(scores) != generation:
                raise ValueError(
                    f"Swarm {swarm_id}: expected generation {len(scores)}, got {generation}"
                )
            scores.append(err_score)
            bests = self.swarm_bests[swarm_id]
            bests.append(min(err_score, bests[-1]))
        else:
            if generation != 0:
                raise ValueError(f"Swarm {swarm_id}: first generation must be 0, got {generation}")
            self.swarm_scores[swarm_id] = [err_score]
            self.swarm_bests[swarm_id] = [err_score]

        # Early generations are too noisy to judge
        terminated: Set[str] = set()
        if generation + 1 < self.maturity_window:
            return terminated

        if self.max_generations is not None and generation > self.max_generations:
            logger.info(
                f"Swarm {swarm_id} has matured (more than {self.max_generations} generations)"
            )
            terminated.add(swarm_id)

        if self.termination_enabled:
            terminated |= self._poor_performers(generation)

        bests = self.swarm_bests[swarm_id]
        latest, earlier = bests[-1], bests[-self.maturity_window]
        span = max(self.maturity_window - 1, 1)
        if latest == earlier or (earlier - latest) / span <= self.max_slope:
            logger.info(
                f"Swarm {swarm_id} has matured (no improvement over "
                f"{self.maturity_window} generations)"
            )
            terminated.add(swarm_id)

        self.terminated_swarms |= terminated
        return terminated

    def _poor_performers(self, generation: int) -> Set[str]:
        generation_scores = {
            swarm_id: scores[generation]
            for swarm_id, scores in self.swarm_scores.items()
            if len(scores) > generation and swarm_id not in self.terminated_swarms
        }
        if not generation_scores:
            return set()

        best_score = min(generation_scores.values())
        tolerance = self._milestone(generation)

        poor = set()
        for swarm_id, score in sorted(generation_scores.items()):
            # Measured against the best's magnitude so negated scores compare the same way
            if score - best_score > tolerance * abs(best_score):
                logger.info(
                    f"Swarm {swarm_id} is doing poorly at generation {generation}: "
                    f"score {score}, best {best_score}, tolerance {tolerance}"
                )
                poor.add(swarm_id)
        return poor

    def num_data_points(self, swarm_id: str) -> int:
        return len(self.swarm_scores.get(swarm_id, []))
