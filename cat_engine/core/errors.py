"""
Exceptions raised by the CAT engine.

Only ``InvalidConfiguration`` and ``InvalidStateTransition`` ever reach a
caller. ``NonConvergentEstimate`` is internal to ability estimation and
``ExposureStoreError`` is absorbed by the session controller. Pool exhaustion
is not an error at all; see ``item_selection.PoolExhausted``.
"""

from typing import Any, Dict, Optional


class CATEngineError(Exception):
    """Base exception for CAT engine errors."""

    def __init__(  # noqa: D107
        self,
        message: str,
        original_error: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.original_error = original_error
        self.context = context or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        msg = self.message
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            msg = f"{msg} (context: {ctx_str})"
        if self.original_error:
            msg = f"{msg} - caused by: {str(self.original_error)}"
        return msg


class InvalidConfiguration(CATEngineError):
    """CAT configuration or item bank rejected before any item is selected."""


class InvalidStateTransition(CATEngineError):
    """A response or command is not valid for the attempt's current state."""


class NonConvergentEstimate(CATEngineError):
    """Maximum likelihood estimation did not produce a finite estimate."""


class ExposureStoreError(CATEngineError):
    """The shared exposure store could not complete an operation."""
