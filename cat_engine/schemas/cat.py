"""
Pydantic schemas for the CAT engine data model.

Items and item banks are snapshots owned by the item bank collaborator.
AttemptState is the serializable, immutable per-attempt state that callers
persist between round-trips; the session controller replaces it after every
response instead of mutating it.
"""
from typing import Annotated, Any, Dict, List, Literal, Optional, Self, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, model_validator

from libs.domain_types import (
    AttemptStatus,
    EstimationMethod,
    ExposureMethod,
    IRTModel,
    PerformanceLevel,
    TerminationReason,
)

# Finite stand-in for an infinite standard error before any response.
# Kept finite so that AttemptState round-trips through JSON unchanged.
UNBOUNDED_STANDARD_ERROR = 1.0e6


class Item(BaseModel):
    """A calibrated item from the bank."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Immutable item identifier")
    discrimination: float = Field(1.0, gt=0, description="IRT a parameter")
    difficulty: float = Field(0.0, description="IRT b parameter")
    guessing: float = Field(
        0.0, ge=0, lt=1, description="IRT c parameter (0 for 1PL/2PL)"
    )
    category: Optional[str] = Field(None, description="Content category")
    enabled: bool = Field(True, description="Retired or disabled items are skipped")
    exposure_count: int = Field(
        0, ge=0, description="Lifetime exposure count at snapshot time"
    )


class ItemBank(BaseModel):
    """Read-only set of items plus category target percentages."""

    model_config = ConfigDict(frozen=True)

    items: List[Item] = Field(default_factory=list)
    category_targets: Dict[str, float] = Field(
        default_factory=dict,
        description="Category -> target percentage (0-100) of administered items",
    )

    _index: Dict[str, Item] = PrivateAttr(default_factory=dict)

    @model_validator(mode="after")
    def validate_unique_ids(self) -> Self:
        """Item ids must be unique within a bank."""
        seen = set()
        duplicates = set()
        for item in self.items:
            if item.id in seen:
                duplicates.add(item.id)
            seen.add(item.id)
        if duplicates:
            raise ValueError(f"Duplicate item ids in bank: {sorted(duplicates)}")
        return self

    def model_post_init(self, __context: Any) -> None:
        self._index = {item.id: item for item in self.items}

    def get(self, item_id: str) -> Optional[Item]:
        return self._index.get(item_id)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._index

    def __len__(self) -> int:
        return len(self.items)


# ---------------------------------------------------------------------------
# Score transforms (supplied by the exam definition)
# ---------------------------------------------------------------------------


class LinearScoreTransform(BaseModel):
    """score = intercept + slope * theta, optionally clamped and rounded."""

    method: Literal["linear"] = "linear"
    slope: float = 1.0
    intercept: float = 0.0
    min_score: Optional[float] = None
    max_score: Optional[float] = None
    decimals: int = Field(0, ge=0)
    passing_score: Optional[float] = None

    @classmethod
    def from_ranges(
        cls,
        theta_range: Tuple[float, float] = (-3.0, 3.0),
        score_range: Tuple[float, float] = (200.0, 800.0),
        passing_score: Optional[float] = None,
    ) -> "LinearScoreTransform":
        """Map theta_range linearly onto score_range, clamping outside it."""
        theta_lo, theta_hi = theta_range
        score_lo, score_hi = score_range
        if theta_hi <= theta_lo:
            raise ValueError("theta_range must be increasing")
        slope = (score_hi - score_lo) / (theta_hi - theta_lo)
        return cls(
            slope=slope,
            intercept=score_lo - slope * theta_lo,
            min_score=min(score_lo, score_hi),
            max_score=max(score_lo, score_hi),
            passing_score=passing_score,
        )


class LookupScoreTransform(BaseModel):
    """Piecewise-linear interpolation over (theta, score) points."""

    method: Literal["lookup"] = "lookup"
    points: List[Tuple[float, float]] = Field(..., min_length=2)
    decimals: int = Field(0, ge=0)
    passing_score: Optional[float] = None

    @model_validator(mode="after")
    def validate_points(self) -> Self:
        thetas = [theta for theta, _ in self.points]
        if any(b <= a for a, b in zip(thetas, thetas[1:])):
            raise ValueError("Lookup points must be strictly increasing in theta")
        return self


class PercentScoreTransform(BaseModel):
    """Probability of answering an average item correctly, as a percentage."""

    method: Literal["percent"] = "percent"
    passing_score: Optional[float] = None


class RawScoreTransform(BaseModel):
    """Report theta itself, rounded to two decimals."""

    method: Literal["raw"] = "raw"
    passing_score: Optional[float] = None


ScoreTransform = Annotated[
    Union[
        LinearScoreTransform,
        LookupScoreTransform,
        PercentScoreTransform,
        RawScoreTransform,
    ],
    Field(discriminator="method"),
]


# ---------------------------------------------------------------------------
# Exam-level CAT configuration
# ---------------------------------------------------------------------------


class CategoryLimit(BaseModel):
    """Hard bounds on how many items of one category an attempt may contain."""

    model_config = ConfigDict(frozen=True)

    min_items: int = Field(0, ge=0)
    max_items: Optional[int] = Field(None, ge=0, description="None means no cap")


class CATConfig(BaseModel):
    """
    CAT settings for one exam definition.

    Field types are enforced by pydantic; cross-field rules (item bounds,
    theta ordering, target sums) are checked by ``validate_config`` when an
    attempt starts so that they surface as ``InvalidConfiguration``.
    """

    model_config = ConfigDict(frozen=True)

    model: IRTModel = IRTModel.TWO_PL
    theta_start: float = 0.0
    theta_min: float = -4.0
    theta_max: float = 4.0
    se_target: float = 0.3
    min_items: int = 10
    max_items: int = 50

    exposure_control_enabled: bool = True
    exposure_method: ExposureMethod = ExposureMethod.SYMPSON_HETTER
    randomesque_n: int = 5
    max_exposure_rejections: int = 10

    content_balancing_enabled: bool = True
    content_balance_weight: float = 1.0
    category_targets: Dict[str, float] = Field(
        default_factory=dict,
        description="Overrides the item bank's targets when non-empty",
    )
    category_limits: Dict[str, CategoryLimit] = Field(
        default_factory=dict,
        description="Category -> min/max items per attempt",
    )

    estimation_method: EstimationMethod = EstimationMethod.MLE
    max_iterations: int = 25
    tolerance: float = 1e-6
    quadrature_points: int = 61
    prior_mean: float = 0.0
    prior_sd: float = 1.0

    score_transform: ScoreTransform = Field(default_factory=RawScoreTransform)


# ---------------------------------------------------------------------------
# Attempt state
# ---------------------------------------------------------------------------


class AbilityEstimate(BaseModel):
    """Point estimate of ability and its precision."""

    model_config = ConfigDict(frozen=True)

    theta: float
    standard_error: float = Field(..., ge=0)
    iterations: int = Field(0, ge=0)
    method: EstimationMethod = EstimationMethod.MLE


class ResponseRecord(BaseModel):
    """A scored response to one administered item."""

    model_config = ConfigDict(frozen=True)

    item_id: str
    correct: bool


class AttemptState(BaseModel):
    """Immutable, serializable state of one adaptive attempt."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    seed: int
    administered_item_ids: Tuple[str, ...] = ()
    excluded_item_ids: Tuple[str, ...] = Field(
        default=(), description="Items kept out of this attempt, e.g. seen before"
    )
    responses: Tuple[ResponseRecord, ...] = ()
    current_estimate: AbilityEstimate
    category_tally: Dict[str, int] = Field(default_factory=dict)
    status: AttemptStatus = AttemptStatus.ACTIVE
    termination_reason: TerminationReason = TerminationReason.CONTINUE

    @model_validator(mode="after")
    def validate_history(self) -> Self:
        """Administered ids are unique and line up with the responses."""
        if len(set(self.administered_item_ids)) != len(self.administered_item_ids):
            raise ValueError("administered_item_ids contains duplicates")
        if len(self.administered_item_ids) != len(self.responses):
            raise ValueError(
                f"{len(self.administered_item_ids)} administered items but "
                f"{len(self.responses)} responses"
            )
        for item_id, response in zip(self.administered_item_ids, self.responses):
            if item_id != response.item_id:
                raise ValueError(
                    f"Response for {response.item_id} recorded against {item_id}"
                )
        terminal = self.termination_reason.is_terminal
        if (self.status == AttemptStatus.TERMINATED) != terminal:
            raise ValueError(
                f"status {self.status.value} inconsistent with "
                f"termination_reason {self.termination_reason.value}"
            )
        return self

    @property
    def items_administered(self) -> int:
        return len(self.administered_item_ids)

    @property
    def correct_count(self) -> int:
        return sum(1 for r in self.responses if r.correct)

    @property
    def is_terminated(self) -> bool:
        return self.status == AttemptStatus.TERMINATED


class TerminationSignal(BaseModel):
    """Returned by next_item instead of an Item when the attempt is over."""

    model_config = ConfigDict(frozen=True)

    reason: TerminationReason


class CategoryScore(BaseModel):
    """Per-category performance summary."""

    category: str
    items_administered: int
    correct_count: int
    accuracy: float


class AttemptSummary(BaseModel):
    """Final result of an attempt."""

    session_id: str
    final_theta: float
    final_se: float
    estimation_method: EstimationMethod
    scaled_score: float
    pass_fail: Optional[bool] = Field(
        None, description="None when the exam defines no passing score"
    )
    administered_item_ids: List[str]
    termination_reason: TerminationReason
    items_administered: int
    correct_count: int
    accuracy: float
    unanswered_count: int = 0
    confidence_interval: Tuple[float, float]
    percentile: float
    performance_level: PerformanceLevel
    category_scores: Dict[str, CategoryScore] = Field(default_factory=dict)


class ExamDefinition(BaseModel):
    """An exam as registered with the HTTP surface: configuration plus bank."""

    exam_id: str = Field(..., min_length=1)
    config: CATConfig = Field(default_factory=CATConfig)
    item_bank: ItemBank
