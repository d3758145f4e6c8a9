"""
swarm_search/optimizer/dimensions.py

Typed search-space description.

A search dimension is one of four tagged variants:
- Fixed(value): not searched, copied verbatim into model parameters
- IntRange / FloatRange: numeric ranges explored by PSO
- Choice: categorical values

A SearchSpace groups dimensions into per-encoder parameters (one encoder per
candidate input field) and model-level parameters. Variable names are
"<param>" for model parameters and "<encoder>:<param>" for encoder
parameters, which is how particles filter dimensions by swarm.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Tuple, Union

from swarm_search.errors import ConfigurationError

from .variables import (
    ParticleVariable,
    PermuteChoices,
    PermuteFloat,
    PermuteInt,
    PsoSettings,
    validate_range,
)

ENCODER_SEPARATOR = ":"
SWARM_SEPARATOR = "."


@dataclass(frozen=True)
class Fixed:
    """A parameter held at a constant value."""
    value: Any

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "fixed", "value": self.value}


@dataclass(frozen=True)
class IntRange:
    """An integer parameter searched on [min_value, max_value]."""
    min_value: int
    max_value: int
    step_size: int = 1

    def __post_init__(self):
        validate_range(self.min_value, self.max_value, self.step_size)

    def create_variable(self, pso: PsoSettings) -> ParticleVariable:
        return PermuteInt(
            self.min_value,
            self.max_value,
            step_size=self.step_size,
            inertia=pso.inertia,
            cog_rate=pso.cog_rate,
            soc_rate=pso.soc_rate,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "int",
            "min_value": self.min_value,
            "max_value": self.max_value,
            "step_size": self.step_size,
        }


@dataclass(frozen=True)
class FloatRange:
    """A float parameter searched on [min_value, max_value]."""
    min_value: float
    max_value: float
    step_size: Optional[float] = None

    def __post_init__(self):
        validate_range(self.min_value, self.max_value, self.step_size)

    def create_variable(self, pso: PsoSettings) -> ParticleVariable:
        return PermuteFloat(
            self.min_value,
            self.max_value,
            step_size=self.step_size,
            inertia=pso.inertia,
            cog_rate=pso.cog_rate,
            soc_rate=pso.soc_rate,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "float",
            "min_value": self.min_value,
            "max_value": self.max_value,
            "step_size": self.step_size,
        }


@dataclass(frozen=True)
class Choice:
    """A categorical parameter."""
    choices: Tuple[Any, ...]
    fix_early: bool = False

    def __post_init__(self):
        object.__setattr__(self, "choices", tuple(self.choices))
        if not self.choices:
            raise ConfigurationError("Choice dimension requires at least one choice")

    def create_variable(self, pso: PsoSettings) -> ParticleVariable:
        return PermuteChoices(self.choices, fix_early=self.fix_early)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "choice", "choices": list(self.choices), "fix_early": self.fix_early}


SearchDimension = Union[Fixed, IntRange, FloatRange, Choice]


def dimension_from_dict(data: Any) -> SearchDimension:
    """
    Build a dimension from its dict form.

    Anything without a "type" key is treated as a fixed value.
    """
    if not isinstance(data, dict) or "type" not in data:
        return Fixed(data)

    kind = data["type"]
    if kind == "fixed":
        return Fixed(data["value"])
    elif kind == "int":
        return IntRange(
            int(data["min_value"]),
            int(data["max_value"]),
            step_size=int(data.get("step_size", 1)),
        )
    elif kind == "float":
        step_size = data.get("step_size")
        return FloatRange(
            float(data["min_value"]),
            float(data["max_value"]),
            step_size=None if step_size is None else float(step_size),
        )
    elif kind == "choice":
        return Choice(tuple(data["choices"]), fix_early=bool(data.get("fix_early", False)))
    else:
        raise ConfigurationError(f"Unknown dimension type: {kind}")


def encoder_var_name(encoder: str, param: str) -> str:
    return f"{encoder}{ENCODER_SEPARATOR}{param}"


def is_encoder_var(var_name: str) -> bool:
    return ENCODER_SEPARATOR in var_name


def encoder_of(var_name: str) -> str:
    return var_name.split(ENCODER_SEPARATOR, 1)[0]


@dataclass
class SearchSpace:
    """
    Candidate encoders and model parameters of a search.

    encoders maps an encoder name (one per candidate input field) to that
    encoder's parameters. model_params are shared by every swarm.
    """
    encoders: Dict[str, Dict[str, SearchDimension]] = field(default_factory=dict)
    model_params: Dict[str, SearchDimension] = field(default_factory=dict)

    def __post_init__(self):
        if not self.encoders:
            raise ConfigurationError("Search space needs at least one encoder")
        for name, params in self.encoders.items():
            if ENCODER_SEPARATOR in name or SWARM_SEPARATOR in name:
                raise ConfigurationError(
                    f"Encoder name {name!r} may not contain "
                    f"{ENCODER_SEPARATOR!r} or {SWARM_SEPARATOR!r}"
                )
            for param in params:
                if ENCODER_SEPARATOR in param:
                    raise ConfigurationError(
                        f"Parameter name {param!r} of encoder {name!r} "
                        f"may not contain {ENCODER_SEPARATOR!r}"
                    )
        for name in self.model_params:
            if ENCODER_SEPARATOR in name:
                raise ConfigurationError(
                    f"Model parameter name {name!r} may not contain {ENCODER_SEPARATOR!r}"
                )

    @property
    def encoder_names(self) -> list[str]:
        return sorted(self.encoders)

    def create_variables(
        self,
        allowed_encoders: Iterable[str],
        pso: PsoSettings | None = None,
    ) -> Dict[str, ParticleVariable]:
        """Create one variable per searched dimension visible to a swarm."""
        pso = pso or PsoSettings()
        allowed = set(allowed_encoders)
        variables: Dict[str, ParticleVariable] = {}

        for name, dim in sorted(self.model_params.items()):
            if not isinstance(dim, Fixed):
                variables[name] = dim.create_variable(pso)

        for encoder in sorted(allowed):
            for param, dim in sorted(self.encoders.get(encoder, {}).items()):
                if not isinstance(dim, Fixed):
                    variables[encoder_var_name(encoder, param)] = dim.create_variable(pso)

        return variables

    def structured_params(self, position: Dict[str, Any], swarm_id: str) -> Dict[str, Any]:
        """
        Build the concrete model parameters for a particle position.

        Only the encoders that make up the swarm are included.
        """
        encoders: Dict[str, Dict[str, Any]] = {}
        for encoder in sorted(swarm_id.split(SWARM_SEPARATOR)):
            params = {}
            for param, dim in sorted(self.encoders[encoder].items()):
                if isinstance(dim, Fixed):
                    params[param] = dim.value
                else:
                    params[param] = position[encoder_var_name(encoder, param)]
            encoders[encoder] = params

        model_params = {}
        for name, dim in sorted(self.model_params.items()):
            model_params[name] = dim.value if isinstance(dim, Fixed) else position[name]

        return {"encoders": encoders, "model_params": model_params}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "encoders": {
                name: {param: dim.to_dict() for param, dim in params.items()}
                for name, params in self.encoders.items()
            },
            "model_params": {name: dim.to_dict() for name, dim in self.model_params.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SearchSpace":
        return cls(
            encoders={
                name: {param: dimension_from_dict(dim) for param, dim in (params or {}).items()}
                for name, params in data.get("encoders", {}).items()
            },
            model_params={
                name: dimension_from_dict(dim)
                for name, dim in data.get("model_params", {}).items()
            },
        )
