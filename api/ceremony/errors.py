"""Ceremony error taxonomy.

Each error carries the HTTP status the API layer answers with. Services raise
these before committing anything, so a rejected action leaves neither state
changes nor audit events behind.
"""
from fastapi import status


class CeremonyError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "ceremony_error"

    def __init__(self, detail: str = ""):
        super().__init__(detail)
        self.detail = detail or self.code


class InvalidToken(CeremonyError):
    """Token missing, malformed, revoked, expired or issued to another tenant."""

    status_code = status.HTTP_401_UNAUTHORIZED
    code = "invalid_token"


class NotYourTurn(CeremonyError):
    """Signer is not eligible yet; retry once earlier signers finish."""

    status_code = status.HTTP_403_FORBIDDEN
    code = "not_your_turn"


class NotFound(CeremonyError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class InvalidStateError(CeremonyError):
    status_code = status.HTTP_409_CONFLICT
    code = "invalid_state"


class ValidationError(CeremonyError):
    status_code = 422  # Unprocessable Content
    code = "validation_error"

    def __init__(self, detail: str = "", problems: list | None = None):
        super().__init__(detail)
        self.problems = problems or []


class SealingFailure(CeremonyError):
    """Sealing could not finish; signer completions stay in place and it can be retried."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "sealing_failure"
