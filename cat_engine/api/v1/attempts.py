"""
Adaptive attempt endpoints.

Stateless: the client holds the serialized AttemptState and sends it back
with every call. Engine errors are translated to HTTP responses by the
exception handlers registered in ``cat_engine.main``.
"""
import logging

from fastapi import APIRouter, Depends, Request

from cat_engine.core.cat.engine import SessionController
from cat_engine.core.error_responses import ErrorMessages, raise_not_found
from cat_engine.core.exam_registry import ExamRegistry
from cat_engine.schemas.attempts import (
    AttemptStateRequest,
    AttemptStateResponse,
    AttemptStepResponse,
    NextStep,
    NextStepResponse,
    StartAttemptRequest,
    SubmitResponseRequest,
    TerminateAttemptRequest,
)
from cat_engine.schemas.cat import AttemptSummary

logger = logging.getLogger(__name__)

router = APIRouter()


def get_registry(request: Request) -> ExamRegistry:
    return request.app.state.registry


def get_controller(
    exam_id: str, registry: ExamRegistry = Depends(get_registry)
) -> SessionController:
    controller = registry.get(exam_id)
    if controller is None:
        raise_not_found(ErrorMessages.exam_not_found(exam_id))
    return controller


@router.post("/{exam_id}/attempts", response_model=AttemptStepResponse)
def start_attempt(
    exam_id: str,
    body: StartAttemptRequest = StartAttemptRequest(),
    controller: SessionController = Depends(get_controller),
):
    """
    Start an attempt and return its initial state with the first item.
    """
    state = controller.start(
        session_id=body.session_id,
        seed=body.seed,
        excluded_item_ids=body.excluded_item_ids,
    )
    logger.info(
        f"Attempt {state.session_id} started for exam {exam_id}",
        extra={"exam_id": exam_id},
    )
    return AttemptStepResponse(
        state=state, next=NextStep.from_result(controller.next_item(state))
    )


@router.post("/{exam_id}/attempts/next", response_model=NextStepResponse)
def next_item(
    body: AttemptStateRequest,
    controller: SessionController = Depends(get_controller),
):
    """
    The item to present for a state, or why the attempt is over.
    """
    return NextStepResponse(next=NextStep.from_result(controller.next_item(body.state)))


@router.post("/{exam_id}/attempts/responses", response_model=AttemptStepResponse)
def submit_response(
    body: SubmitResponseRequest,
    controller: SessionController = Depends(get_controller),
):
    """
    Record a response to the presented item.

    Returns the new state and the next item (or the termination reason).
    """
    state = controller.submit_response(body.state, body.item_id, body.correct)
    return AttemptStepResponse(
        state=state, next=NextStep.from_result(controller.next_item(state))
    )


@router.post("/{exam_id}/attempts/terminate", response_model=AttemptStateResponse)
def terminate_attempt(
    body: TerminateAttemptRequest,
    controller: SessionController = Depends(get_controller),
):
    """
    Stop an attempt early (timeout, cancellation).
    """
    return AttemptStateResponse(state=controller.terminate(body.state, body.reason))


@router.post("/{exam_id}/attempts/finalize", response_model=AttemptSummary)
def finalize_attempt(
    body: AttemptStateRequest,
    controller: SessionController = Depends(get_controller),
):
    """
    Score an attempt. An attempt still in progress is stopped first.
    """
    return controller.finalize(body.state)
