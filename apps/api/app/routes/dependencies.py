"""Dependency wiring for routes."""

from __future__ import annotations

import logging
from secrets import compare_digest
from typing import Annotated
from uuid import uuid4

from fastapi import Depends, Request, Security
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

from app.adapters.auth import (
    AuthVerificationError,
    FirebaseTokenVerifier,
    MockTokenVerifier,
    TokenVerifier,
)
from app.core.clock import Clock
from app.core.config import Settings, get_settings
from app.core.logging_safety import safe_log_identifier
from app.domain.policy import MonitoringPolicy
from app.errors import ApiError
from app.repositories.base import TrackerStore
from app.schemas.auth import AuthPrincipal
from app.services.launcher import JobLauncher
from app.services.matcher import CompletionMatcher
from app.services.recovery import RecoveryCoordinator
from app.services.scheduler import MonitoringScheduler

bearer_scheme = HTTPBearer(auto_error=False, scheme_name="bearerAuth")
callback_secret_scheme = APIKeyHeader(
    name="X-Callback-Secret",
    auto_error=False,
    scheme_name="internalCallbackSecret",
)
logger = logging.getLogger(__name__)


def _auth_error(message: str) -> ApiError:
    return ApiError(status_code=401, code="UNAUTHORIZED", message=message)


def _request_id(request: Request) -> str:
    existing = getattr(request.state, "request_id", None)
    if isinstance(existing, str) and existing:
        return existing

    request_id = request.headers.get("X-Request-Id")
    if not request_id:
        request_id = f"req-{uuid4()}"
    request.state.request_id = request_id
    return request_id


def get_token_verifier(settings: Annotated[Settings, Depends(get_settings)]) -> TokenVerifier:
    """Resolve provider adapter from configuration."""
    if settings.auth_provider == "firebase":
        return FirebaseTokenVerifier(
            project_id=settings.firebase_project_id,
            audience=settings.firebase_audience,
        )
    return MockTokenVerifier()


async def get_authenticated_principal(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(bearer_scheme)],
    verifier: Annotated[TokenVerifier, Depends(get_token_verifier)],
) -> AuthPrincipal:
    """Validate bearer token and attach the principal to request context."""
    safe_request_id = safe_log_identifier(_request_id(request), prefix="rid")
    if credentials is None or credentials.scheme.lower() != "bearer" or not credentials.credentials:
        logger.warning(
            "auth.rejected request_id=%s method=%s path=%s reason=invalid_or_missing_bearer",
            safe_request_id,
            request.method,
            request.url.path,
        )
        raise _auth_error("Invalid or missing bearer token")

    try:
        principal = verifier.verify_token(credentials.credentials)
    except AuthVerificationError as exc:
        logger.warning(
            "auth.rejected request_id=%s method=%s path=%s reason=token_verification_failed",
            safe_request_id,
            request.method,
            request.url.path,
        )
        raise _auth_error(str(exc) or "Invalid bearer token") from exc

    logger.info(
        "auth.accepted request_id=%s method=%s path=%s user_id=%s role=%s",
        safe_request_id,
        request.method,
        request.url.path,
        safe_log_identifier(principal.user_id, prefix="uid"),
        principal.role,
    )
    request.state.auth_principal = principal
    return principal


async def require_callback_secret(
    request: Request,
    callback_secret: Annotated[str | None, Security(callback_secret_scheme)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> None:
    """Validate the shared secret the job runner sends on internal endpoints."""
    if callback_secret is None or not compare_digest(callback_secret, settings.callback_secret):
        logger.warning(
            "callback.auth_rejected request_id=%s method=%s path=%s reason=invalid_callback_secret",
            safe_log_identifier(_request_id(request), prefix="rid"),
            request.method,
            request.url.path,
        )
        raise _auth_error("Invalid callback authentication")


def get_store(request: Request) -> TrackerStore:
    return request.app.state.store


def get_policy(request: Request) -> MonitoringPolicy:
    return request.app.state.policy


def get_matcher(request: Request) -> CompletionMatcher:
    return request.app.state.matcher


def get_scheduler(request: Request) -> MonitoringScheduler:
    return request.app.state.scheduler


def get_launcher(request: Request) -> JobLauncher:
    return request.app.state.launcher


def get_recovery(request: Request) -> RecoveryCoordinator:
    return request.app.state.recovery


def get_clock(request: Request) -> Clock:
    return request.app.state.clock
