"""
swarm_search/errors.py

Exception hierarchy for the search engine.

Only configuration problems and missing records surface to callers.
Evaluation errors and orphan races are absorbed at the runner boundary
and translated into a model completion reason.
"""


class SwarmSearchError(Exception):
    """Base class for all search engine errors."""


class ConfigurationError(SwarmSearchError, ValueError):
    """Invalid search configuration (bad bounds, step sizes, choices)."""


class EvaluationError(SwarmSearchError):
    """The external evaluator raised while running a model."""

    def __init__(self, model_id: int, message: str):
        super().__init__(f"Model {model_id} failed: {message}")
        self.model_id = model_id
        self.message = message


class OrphanRace(SwarmSearchError):
    """
    The caller no longer owns the model it is trying to update.

    Raised when another worker adopted the model, or when it was already
    completed. The losing worker discards its result.
    """

    def __init__(self, model_id: int, owner: str):
        super().__init__(f"Worker {owner} no longer owns model {model_id}")
        self.model_id = model_id
        self.owner = owner


class JobNotFoundError(SwarmSearchError, KeyError):
    """No job with the given id."""


class ModelNotFoundError(SwarmSearchError, KeyError):
    """No model with the given id."""
