import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse

import siwe_auth.schemas.auth as schemas
from siwe_auth.core.dependencies import (
    get_current_user,
    get_identity_manager,
    get_nonce_store,
    get_orchestrator,
    get_session_issuer,
    limit_verify_rate,
)
from siwe_auth.core.errors import ErrorKind, RepositoryError
from siwe_auth.core.jwt_utils import SessionIssuer
from siwe_auth.core.message import format_timestamp
from siwe_auth.services.auth_flow import AuthOrchestrator, AuthOutcome, AuthState
from siwe_auth.services.identity import IdentityManager
from siwe_auth.services.nonce_store import NonceStore

logger = logging.getLogger(__name__)

router = APIRouter()
group_tags: List[str] = ["Auth"]

REJECTED_MESSAGE = "Authentication failed"
INTERNAL_MESSAGE = "Internal authentication error"

NEXT_STEP_URLS = {
    AuthState.NEEDS_EMAIL: "/auth/email",
    AuthState.NEEDS_USERNAME: "/auth/username",
}

# step endpoints report input problems; verification failures stay generic
STEP_ERRORS = {
    ErrorKind.USERNAME_TAKEN: (status.HTTP_409_CONFLICT, "Username already taken"),
    ErrorKind.USERNAME_INVALID: (status.HTTP_422_UNPROCESSABLE_ENTITY, None),
    ErrorKind.EMAIL_TAKEN: (status.HTTP_409_CONFLICT, "Email already in use"),
    ErrorKind.LINK_INVALID: (status.HTTP_400_BAD_REQUEST, "Invalid or expired verification link"),
}


def _failure(status_code: int, outcome: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"outcome": outcome, "error": message})


def _to_response(outcome: AuthOutcome, issuer: SessionIssuer, step: bool = False):
    """Map an orchestrator outcome to the HTTP response."""
    if outcome.state == AuthState.INTERNAL_ERROR:
        return _failure(status.HTTP_500_INTERNAL_SERVER_ERROR, outcome.kind, INTERNAL_MESSAGE)
    if outcome.state == AuthState.REJECTED:
        if step and outcome.error in STEP_ERRORS:
            status_code, message = STEP_ERRORS[outcome.error]
            return _failure(status_code, outcome.kind, message or outcome.detail)
        return _failure(status.HTTP_401_UNAUTHORIZED, outcome.kind, REJECTED_MESSAGE)

    identity = schemas.IdentityResponse.from_identity(outcome.identity)
    if outcome.state == AuthState.AUTHENTICATED:
        return schemas.AuthResponse(
            outcome=outcome.kind,
            identity=identity,
            access_token=issuer.finalize(outcome.identity),
            token_type="bearer",
            name_suggestion=outcome.name_suggestion,
        )
    return schemas.AuthResponse(
        outcome=outcome.kind,
        identity=identity,
        pending_token=issuer.issue_pending(outcome.identity, outcome.kind),
        next_step_url=NEXT_STEP_URLS[outcome.state],
        name_suggestion=outcome.name_suggestion,
    )


@router.post(
    "/nonce",
    tags=group_tags,
    response_model=schemas.NonceResponse,
    status_code=status.HTTP_201_CREATED,
)
def request_nonce(nonce_store: NonceStore = Depends(get_nonce_store)) -> schemas.NonceResponse:
    """Issue a single-use nonce to embed in the sign-in message."""
    try:
        nonce = nonce_store.issue()
    except RepositoryError as e:
        logger.error("Nonce issue failed: %s", e)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Nonce store unavailable")
    return schemas.NonceResponse(nonce=nonce.value, issued_at=format_timestamp(nonce.issued_at))


@router.post(
    "/verify",
    tags=group_tags,
    response_model=schemas.AuthResponse,
    response_model_exclude_none=True,
    dependencies=[Depends(limit_verify_rate)],
)
def verify_wallet(
    body: schemas.VerifyRequest,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
    issuer: SessionIssuer = Depends(get_session_issuer),
):
    """
    Verify a signed sign-in message.

    Returns:
    - authenticated: access token and identity
    - needs_email / needs_username: pending token and the next step url
    - 401 for any verification failure, 500 for internal errors
    """
    outcome = orchestrator.verify(body.message, body.signature, body.address.strip())
    return _to_response(outcome, issuer)


@router.post(
    "/email",
    tags=group_tags,
    response_model=schemas.EmailSentResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def submit_email(
    body: schemas.EmailRequest,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
    issuer: SessionIssuer = Depends(get_session_issuer),
):
    """Record the email for a pending sign-in and send the confirmation link."""
    claims = issuer.verify_pending(body.pending_token, stage=AuthState.NEEDS_EMAIL.value)
    result = orchestrator.request_email(claims["uid"], body.email)
    if result.error == ErrorKind.INTERNAL:
        return _failure(status.HTTP_500_INTERNAL_SERVER_ERROR, AuthState.INTERNAL_ERROR.value, INTERNAL_MESSAGE)
    if not result.ok:
        status_code, message = STEP_ERRORS.get(result.error, (status.HTTP_401_UNAUTHORIZED, REJECTED_MESSAGE))
        return _failure(status_code, AuthState.REJECTED.value, message)
    return schemas.EmailSentResponse(email=result.value.pending_email)


@router.get(
    "/email/confirm/{user_id}/{timestamp}/{hash}",
    tags=group_tags,
    response_model=schemas.AuthResponse,
    response_model_exclude_none=True,
)
def confirm_email(
    user_id: int,
    timestamp: int,
    hash: str,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
    issuer: SessionIssuer = Depends(get_session_issuer),
):
    """Confirm the email link, then continue the sign-in."""
    outcome = orchestrator.confirm_email(user_id, timestamp, hash)
    return _to_response(outcome, issuer, step=True)


@router.post(
    "/username",
    tags=group_tags,
    response_model=schemas.AuthResponse,
    response_model_exclude_none=True,
)
def submit_username(
    body: schemas.UsernameRequest,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
    issuer: SessionIssuer = Depends(get_session_issuer),
):
    """Set a chosen username for a pending sign-in."""
    claims = issuer.verify_pending(body.pending_token, stage=AuthState.NEEDS_USERNAME.value)
    outcome = orchestrator.complete_username(claims["uid"], body.username)
    return _to_response(outcome, issuer, step=True)


@router.get(
    "/me",
    tags=group_tags,
    response_model=schemas.IdentityResponse,
)
def read_me(
    user: Dict[str, Any] = Depends(get_current_user),
    identities: IdentityManager = Depends(get_identity_manager),
) -> schemas.IdentityResponse:
    """Identity behind the access token."""
    record = identities.find_by_id(user["uid"])
    if record is None or record.normalized_address != user["wallet_address"]:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")
    return schemas.IdentityResponse.from_identity(record)
