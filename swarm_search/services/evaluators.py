"""
swarm_search/services/evaluators.py

Reference evaluators and evaluator factory loading.

Workers build one evaluator per model with a factory:

    factory(structured_params, model) -> Evaluator

FunctionEvaluator covers the common case of a metric that is the mean of a
per-record error over a finite record stream.
"""

from __future__ import annotations

import importlib
import logging
from typing import Any, Callable, Dict, Iterable, Iterator, Optional

import numpy as np

from swarm_search.errors import ConfigurationError

from .runner import Evaluator
from .store import Model

logger = logging.getLogger(__name__)

EvaluatorFactory = Callable[[Dict[str, Any], Model], Evaluator]


class FunctionEvaluator(Evaluator):
    """
    Scores parameters by the mean of error_fn(params, record) over records.

    Args:
        params: structured parameters of the model
        records: the record stream (consumed once)
        error_fn: per-record error; may raise, which fails the model
        max_records: stop with EOF after this many records
    """

    def __init__(
        self,
        params: Dict[str, Any],
        records: Iterable[Any],
        error_fn: Callable[[Dict[str, Any], Any], float],
        max_records: Optional[int] = None,
    ):
        self.params = params
        self.error_fn = error_fn
        self.max_records = max_records
        self._records: Iterator[Any] = iter(records)
        self._errors = []
        self.cancelled = False

    def step(self) -> bool:
        if self.cancelled:
            return True
        if self.max_records is not None and len(self._errors) >= self.max_records:
            return True
        try:
            record = next(self._records)
        except StopIteration:
            return True
        self._errors.append(float(self.error_fn(self.params, record)))
        return False

    def cancel(self) -> None:
        self.cancelled = True

    def score(self) -> float:
        if not self._errors:
            return float("inf")
        return float(np.mean(self._errors))

    @property
    def num_records(self) -> int:
        return len(self._errors)


def load_evaluator_factory(path: str) -> EvaluatorFactory:
    """
    Import an evaluator factory given as "package.module:attribute".

    Raises:
        ConfigurationError: malformed path, missing module or attribute
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigurationError(
            f"Evaluator factory must look like 'module:attribute', got {path!r}"
        )

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import evaluator module {module_name!r}: {e}") from e

    factory = module
    for part in attr.split("."):
        try:
            factory = getattr(factory, part)
        except AttributeError as e:
            raise ConfigurationError(f"{module_name!r} has no attribute {attr!r}") from e

    if not callable(factory):
        raise ConfigurationError(f"Evaluator factory {path!r} is not callable")

    logger.info(f"Loaded evaluator factory {path}")
    return factory
