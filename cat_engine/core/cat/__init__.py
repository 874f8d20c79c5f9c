"""
CAT (Computerized Adaptive Testing) engine.

This module provides the adaptive loop (item selection, ability estimation,
stopping rules), exposure control and score conversion.
"""

from .ability_estimation import (
    estimate_ability,
    estimate_ability_eap,
    estimate_ability_mle,
)
from .content_balancing import (
    get_priority_category,
    is_content_balanced,
    track_category_tally,
    validate_category_limits,
    validate_category_targets,
)
from .engine import (
    SessionController,
    deserialize_state,
    serialize_state,
    start,
    validate_config,
)
from .exposure_control import (
    ExposureMonitor,
    apply_randomesque,
    apply_sympson_hetter,
    recalibrate_control_parameters,
)
from .exposure_store import (
    ExposureStore,
    InMemoryExposureStore,
    RedisExposureStore,
    create_exposure_store,
)
from .item_selection import (
    PoolExhausted,
    select_next_item,
)
from .response_model import (
    fisher_information,
    probability,
)
from .score_conversion import scale_score
from .simulation import (
    SimulationConfig,
    SimulationResult,
    generate_item_bank,
    generate_report,
    run_simulation,
)
from .stopping_rules import (
    TerminationDecision,
    evaluate_termination,
)

__all__ = [
    "SessionController",
    "start",
    "serialize_state",
    "deserialize_state",
    "validate_config",
    "estimate_ability",
    "estimate_ability_mle",
    "estimate_ability_eap",
    "select_next_item",
    "PoolExhausted",
    "probability",
    "fisher_information",
    "evaluate_termination",
    "TerminationDecision",
    "track_category_tally",
    "get_priority_category",
    "is_content_balanced",
    "validate_category_limits",
    "validate_category_targets",
    "apply_sympson_hetter",
    "apply_randomesque",
    "recalibrate_control_parameters",
    "ExposureMonitor",
    "ExposureStore",
    "InMemoryExposureStore",
    "RedisExposureStore",
    "create_exposure_store",
    "scale_score",
    "SimulationConfig",
    "SimulationResult",
    "generate_item_bank",
    "run_simulation",
    "generate_report",
]
