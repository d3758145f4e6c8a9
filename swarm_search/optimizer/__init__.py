"""
swarm_search/optimizer/

Particle swarm optimizer for hyperparameter search.

Key insight: each dimension moves on its own.
- Numeric dimensions follow the PSO velocity rule
- Categorical dimensions sample by observed score
- A particle is just the bundle of its dimensions plus a generation index

Everything needed to continue a particle lives in its state dict, so any
worker can evolve a particle that another worker created.
"""

from .variables import (
    ParticleVariable,
    PermuteChoices,
    PermuteFloat,
    PermuteInt,
    PsoSettings,
)
from .dimensions import (
    Choice,
    Fixed,
    FloatRange,
    IntRange,
    SearchDimension,
    SearchSpace,
    dimension_from_dict,
)
from .particle import Particle

__all__ = [
    "ParticleVariable",
    "PermuteChoices",
    "PermuteFloat",
    "PermuteInt",
    "PsoSettings",
    "Choice",
    "Fixed",
    "FloatRange",
    "IntRange",
    "SearchDimension",
    "SearchSpace",
    "dimension_from_dict",
    "Particle",
]
