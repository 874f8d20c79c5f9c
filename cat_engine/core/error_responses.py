"""
Standardized error response messages and builders for the HTTP surface.

Error Message Format Guidelines:
- Use sentence case (capitalize first letter only)
- End with a period for complete sentences
- Include relevant IDs in parentheses when helpful for debugging: "(ID: abc)"

Usage:
    from cat_engine.core.error_responses import ErrorMessages, raise_not_found

    if exam is None:
        raise_not_found(ErrorMessages.exam_not_found(exam_id))
"""

from typing import NoReturn

from fastapi import HTTPException, status


class ErrorMessages:
    """Centralized error message constants and templates.

    Naming Convention:
    - Constants: SCREAMING_SNAKE_CASE for static messages
    - Methods: snake_case for templates that accept parameters
    """

    # ==========================================================================
    # Unprocessable Errors (422)
    # ==========================================================================
    INVALID_EXAM_CONFIGURATION = "The exam's adaptive testing configuration is invalid."

    # ==========================================================================
    # Template Methods for Dynamic Messages
    # ==========================================================================
    @staticmethod
    def exam_not_found(exam_id: str) -> str:
        """Message when no exam definition is registered under exam_id."""
        return f"Exam not found (ID: {exam_id})."

    @staticmethod
    def invalid_transition(reason: str) -> str:
        """Message for a response or command the attempt cannot accept."""
        return f"Invalid attempt transition: {reason}."


# ==============================================================================
# HTTPException Builder Functions
# ==============================================================================


def raise_not_found(detail: str) -> NoReturn:
    """Raise a 404 Not Found exception.

    Raises:
        HTTPException: 404 Not Found
    """
    raise HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=detail,
    )

