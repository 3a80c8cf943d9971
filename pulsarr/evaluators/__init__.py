from typing import Dict, Iterable, List, Optional, Type

from ..interpreter import ConditionInterpreter
from .base import FieldInfo, OperatorInfo, RoutingEvaluator
from .certification import CertificationEvaluator
from .conditional import ConditionalEvaluator
from .genre import GenreEvaluator
from .language import LanguageEvaluator
from .season import SeasonEvaluator
from .user import UserEvaluator
from .year import YearEvaluator

EVALUATOR_REGISTRY: Dict[str, Type[RoutingEvaluator]] = {
    'conditional': ConditionalEvaluator,
    'genre': GenreEvaluator,
    'user': UserEvaluator,
    'year': YearEvaluator,
    'season': SeasonEvaluator,
    'language': LanguageEvaluator,
    'certification': CertificationEvaluator,
}

RULE_TYPES = tuple(EVALUATOR_REGISTRY)


def create_evaluators(store, families: Optional[Iterable[str]] = None) -> List[RoutingEvaluator]:
    """
    Instantiate evaluators from the registry, highest priority first.

    The conditional evaluator is wired to an interpreter over the
    field evaluators so that its condition trees can reach them.
    """
    names = list(families) if families is not None else list(EVALUATOR_REGISTRY)
    evaluators = [EVALUATOR_REGISTRY[name](store) for name in names]
    evaluators.sort(key=lambda e: e.priority, reverse=True)

    interpreter = ConditionInterpreter(e for e in evaluators if not isinstance(e, ConditionalEvaluator))
    for evaluator in evaluators:
        if isinstance(evaluator, ConditionalEvaluator):
            evaluator.interpreter = interpreter
    return evaluators


def build_interpreter(store=None) -> ConditionInterpreter:
    """Interpreter over every field evaluator, for validating condition trees."""
    return ConditionInterpreter(
        cls(store) for name, cls in EVALUATOR_REGISTRY.items() if cls is not ConditionalEvaluator
    )


def get_loaded_evaluators(evaluators: Iterable) -> List[str]:
    """Names of the evaluators (or plugins) in the order they run."""
    return [e.name for e in evaluators]


def get_evaluators_metadata(evaluators: Iterable[RoutingEvaluator]) -> List[dict]:
    return [e.metadata() for e in evaluators]


__all__ = [
    'EVALUATOR_REGISTRY',
    'RULE_TYPES',
    'FieldInfo',
    'OperatorInfo',
    'RoutingEvaluator',
    'CertificationEvaluator',
    'ConditionalEvaluator',
    'GenreEvaluator',
    'LanguageEvaluator',
    'SeasonEvaluator',
    'UserEvaluator',
    'YearEvaluator',
    'create_evaluators',
    'build_interpreter',
    'get_evaluators_metadata',
    'get_loaded_evaluators',
]
