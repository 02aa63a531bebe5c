"""
Exceptions raised by the gateway, token managers and adapters.
"""

from typing import Optional


class ChatFlowError(Exception):
    """Base exception for chatflow gateway errors."""

    def __init__(self, message: str, is_auth: bool = False):
        super().__init__(message)
        self.is_auth = is_auth


class ConfigurationError(ChatFlowError):
    """Raised when credentials or settings are missing. Never retried."""


class NoRefreshTokenError(ConfigurationError):
    """Raised when no refresh token is available from any source."""

    def __init__(self, provider: str):
        super().__init__(
            f"No {provider} refresh token found in request, environment or token file.",
            is_auth=True,
        )
        self.provider = provider


class OAuthConfigError(ConfigurationError):
    """Raised when the OAuth client id or secret is not configured."""

    def __init__(self, variable: str):
        super().__init__(f"{variable} environment variable is not set")
        self.variable = variable


class MissingAPIKeyError(ConfigurationError):
    """Raised when the generic provider path has no API key."""

    def __init__(self):
        super().__init__("API key is required", is_auth=True)


class UpstreamError(ChatFlowError):
    """Raised when an upstream provider answers with a non-2xx status."""

    def __init__(self, status: int, body: str, message: Optional[str] = None):
        super().__init__(
            message or f"Upstream error ({status}): {body}",
            is_auth=status in (401, 403),
        )
        self.status = status
        self.body = body


class TokenRefreshError(UpstreamError):
    """Raised when the OAuth token endpoint rejects a refresh."""

    def __init__(self, provider: str, status: int, body: str):
        super().__init__(
            status,
            body,
            message=f"Failed to refresh {provider} token: {status} {body}",
        )
        self.provider = provider


class InvalidRequestError(ChatFlowError):
    """Raised when a chat request body has the wrong shape."""
