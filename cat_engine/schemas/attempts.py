"""
Pydantic schemas for the attempt endpoints.

The service is stateless: every request carries the attempt state returned
by the previous response, and every mutating response returns the new one.
"""
from typing import List, Optional, Union

from pydantic import BaseModel, Field, field_validator

from cat_engine.schemas.cat import AttemptState, Item, TerminationSignal
from libs.domain_types import TerminationReason


class StartAttemptRequest(BaseModel):
    """Optional parameters for starting an attempt."""

    session_id: Optional[str] = Field(None, description="Generated if omitted")
    seed: Optional[int] = Field(None, description="Fixes the item sequence")
    excluded_item_ids: List[str] = Field(
        default_factory=list,
        description="Items the examinee must not see (e.g. seen previously)",
    )


class NextStep(BaseModel):
    """Either the item to present next or the reason the attempt is over."""

    item: Optional[Item] = None
    termination_reason: Optional[TerminationReason] = None

    @classmethod
    def from_result(cls, result: Union[Item, TerminationSignal]) -> "NextStep":
        if isinstance(result, TerminationSignal):
            return cls(termination_reason=result.reason)
        return cls(item=result)


class AttemptStateRequest(BaseModel):
    """Request body carrying the current attempt state."""

    state: AttemptState


class SubmitResponseRequest(BaseModel):
    """A scored response to the item currently presented."""

    state: AttemptState
    item_id: str = Field(..., min_length=1)
    correct: bool


class TerminateAttemptRequest(BaseModel):
    """Force an attempt to stop."""

    state: AttemptState
    reason: Optional[TerminationReason] = Field(
        None,
        description="Defaults to stop_pool_exhausted when nothing is left to "
        "administer, stop_external otherwise",
    )

    @field_validator("reason")
    @classmethod
    def validate_reason(
        cls, v: Optional[TerminationReason]
    ) -> Optional[TerminationReason]:
        if v is not None and not v.is_terminal:
            raise ValueError("reason must be a stop state")
        return v


class AttemptStateResponse(BaseModel):
    """The attempt state after a transition."""

    state: AttemptState


class AttemptStepResponse(BaseModel):
    """The attempt state after a transition, plus what comes next."""

    state: AttemptState
    next: NextStep


class NextStepResponse(BaseModel):
    """What comes next for an unchanged state."""

    next: NextStep
