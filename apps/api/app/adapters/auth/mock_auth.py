"""Deterministic bearer tokens for local runs and tests."""

from app.adapters.auth.base import AuthVerificationError, TokenVerifier
from app.schemas.auth import AuthPrincipal


class MockTokenVerifier(TokenVerifier):
    """Accepts ``test:<user_id>`` or ``test:<user_id>:<role>`` only."""

    def verify_token(self, token: str) -> AuthPrincipal:
        prefix, _, rest = token.partition(":")
        if prefix != "test" or not rest:
            raise AuthVerificationError("Invalid bearer token")

        user_id, _, role = rest.partition(":")
        user_id = user_id.strip()
        role = role.strip() or "creator"
        if not user_id:
            raise AuthVerificationError("Bearer token missing user identity")

        return AuthPrincipal(user_id=user_id, role=role)


__all__ = ["MockTokenVerifier"]
