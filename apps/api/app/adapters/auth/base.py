"""Bearer token verification interface."""

from abc import ABC, abstractmethod

from app.schemas.auth import AuthPrincipal


class AuthVerificationError(Exception):
    """Raised when a bearer token cannot be verified or carries no user identity."""


class TokenVerifier(ABC):
    """Resolves a bearer token to the user whose jobs the request may touch."""

    @abstractmethod
    def verify_token(self, token: str) -> AuthPrincipal:
        """Verify ``token`` and return the tracker principal."""


__all__ = ["AuthVerificationError", "TokenVerifier"]
