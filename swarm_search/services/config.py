"""
swarm_search/services/config.py

Search job configuration.

A SearchConfig is stored with the job when it is submitted and read back
by every worker, so it must round-trip through JSON unchanged.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

from swarm_search.errors import ConfigurationError
from swarm_search.optimizer.dimensions import SearchSpace
from swarm_search.optimizer.variables import (
    DEFAULT_COG_RATE,
    DEFAULT_SOC_RATE,
    PsoSettings,
)

logger = logging.getLogger(__name__)


@dataclass
class SearchConfig:
    """Configuration for one hyperparameter search job."""
    search_space: SearchSpace

    # What to optimize
    predicted_field: str = ""
    optimize_metric: str = "error"
    maximize: bool = False

    # Search limits
    max_models: Optional[int] = None  # None = until the search is over
    min_particles_per_swarm: int = 5
    max_field_branching: int = 5  # 0 = every field may be added
    min_field_contribution: float = 0.2  # Percent; fields below it are not branched on
    swarm_maturity_window: int = 5  # Generations
    swarm_max_generations: Optional[int] = None
    maturity_max_slope: float = 0.0
    enable_swarm_termination: bool = True
    kill_useless_swarms: bool = True
    fixed_fields: Optional[List[str]] = None  # Single fast swarm, sprint 0 only

    # Speculation
    speculative_particles: bool = True
    speculative_wait_secs_max: float = 10.0

    # Errors and orphans
    model_orphan_interval_secs: float = 180.0
    max_unique_model_attempts: int = 10
    max_pct_err_models: float = 0.2
    max_err_models: Optional[int] = None
    ignore_err_models: bool = False

    # Model-level maturity
    enable_model_maturity: bool = False
    maturity_pct_change: float = 0.005
    maturity_num_points: int = 10

    # PSO coefficients
    inertia: Optional[float] = None  # None = decaying schedule
    cog_rate: float = DEFAULT_COG_RATE
    soc_rate: float = DEFAULT_SOC_RATE

    # Random seed (None = random per worker)
    seed: Optional[int] = None

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Raise ConfigurationError for settings the engine cannot run with."""
        if self.max_models is not None and self.max_models < 1:
            raise ConfigurationError(f"max_models must be at least 1, got {self.max_models}")
        if self.min_particles_per_swarm < 1:
            raise ConfigurationError(
                f"min_particles_per_swarm must be at least 1, got {self.min_particles_per_swarm}"
            )
        if self.max_field_branching < 0:
            raise ConfigurationError(
                f"max_field_branching must not be negative, got {self.max_field_branching}"
            )
        if self.swarm_maturity_window < 1:
            raise ConfigurationError(
                f"swarm_maturity_window must be at least 1, got {self.swarm_maturity_window}"
            )
        if self.swarm_max_generations is not None and self.swarm_max_generations < 0:
            raise ConfigurationError(
                f"swarm_max_generations must not be negative, got {self.swarm_max_generations}"
            )
        if self.max_unique_model_attempts < 1:
            raise ConfigurationError(
                f"max_unique_model_attempts must be at least 1, got {self.max_unique_model_attempts}"
            )
        if not 0.0 <= self.max_pct_err_models <= 1.0:
            raise ConfigurationError(
                f"max_pct_err_models must be in [0, 1], got {self.max_pct_err_models}"
            )
        if self.model_orphan_interval_secs <= 0:
            raise ConfigurationError(
                f"model_orphan_interval_secs must be positive, got {self.model_orphan_interval_secs}"
            )
        if self.maturity_num_points < 2:
            raise ConfigurationError(
                f"maturity_num_points must be at least 2, got {self.maturity_num_points}"
            )
        if self.inertia is not None and self.inertia <= 0:
            raise ConfigurationError(f"inertia must be positive, got {self.inertia}")
        if self.fixed_fields is not None:
            if not self.fixed_fields:
                raise ConfigurationError("fixed_fields must not be empty when given")
            unknown = set(self.fixed_fields) - set(self.search_space.encoders)
            if unknown:
                raise ConfigurationError(f"fixed_fields names unknown encoders: {sorted(unknown)}")

    def pso_settings(self) -> PsoSettings:
        return PsoSettings(inertia=self.inertia, cog_rate=self.cog_rate, soc_rate=self.soc_rate)

    def to_dict(self) -> Dict[str, Any]:
        """Flatten to a JSON-compatible dict (search space at the top level)."""
        data = {
            f.name: getattr(self, f.name) for f in fields(self) if f.name != "search_space"
        }
        data.update(self.search_space.to_dict())
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SearchConfig":
        data = dict(data)
        search_space = SearchSpace.from_dict({
            "encoders": data.pop("encoders", {}),
            "model_params": data.pop("model_params", {}),
        })
        known = {f.name for f in fields(cls) if f.name != "search_space"}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown search config keys: {sorted(unknown)}")
        return cls(search_space=search_space, **data)

    @classmethod
    def from_json(cls, data: str) -> "SearchConfig":
        return cls.from_dict(json.loads(data))

    @classmethod
    def from_file(cls, path: str | Path) -> "SearchConfig":
        """Load a JSON search description."""
        with open(path) as f:
            config = cls.from_dict(json.load(f))
        logger.info(f"Loaded search config from {path}")
        return config
