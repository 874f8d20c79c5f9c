"""Shared domain types for the CAT engine.

This package is the single source of truth for enums used across the engine,
the HTTP surface, and the command-line scripts.

Usage:
    from libs.domain_types import IRTModel, TerminationReason
"""

import enum


class IRTModel(str, enum.Enum):
    """Logistic item response models supported by the engine."""

    RASCH = "1PL"
    TWO_PL = "2PL"
    THREE_PL = "3PL"


class EstimationMethod(str, enum.Enum):
    """Ability estimation methods."""

    MLE = "MLE"
    EAP = "EAP"


class AttemptStatus(str, enum.Enum):
    """Lifecycle status of an adaptive attempt."""

    ACTIVE = "active"
    TERMINATED = "terminated"


class TerminationReason(str, enum.Enum):
    """Outcome of the termination evaluator."""

    CONTINUE = "continue"
    STOP_PRECISION = "stop_precision"
    STOP_MAX_ITEMS = "stop_max_items"
    STOP_POOL_EXHAUSTED = "stop_pool_exhausted"
    STOP_EXTERNAL = "stop_external"

    @property
    def is_terminal(self) -> bool:
        return self is not TerminationReason.CONTINUE


class ExposureMethod(str, enum.Enum):
    """Item exposure control strategies."""

    SYMPSON_HETTER = "sympson_hetter"
    RANDOMESQUE = "randomesque"


class PerformanceLevel(str, enum.Enum):
    """Coarse performance bands reported alongside the score."""

    LOW = "Low"
    BELOW_AVERAGE = "Below Average"
    AVERAGE = "Average"
    ABOVE_AVERAGE = "Above Average"
    HIGH = "High"


__all__ = [
    "IRTModel",
    "EstimationMethod",
    "AttemptStatus",
    "TerminationReason",
    "ExposureMethod",
    "PerformanceLevel",
]
