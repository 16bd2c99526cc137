"""Exception hierarchy for the Google Workspace MCP gateway.

Errors carry a ``retryable`` flag so tool handlers can tell the calling agent
whether repeating the same call may succeed.
"""


class WorkspaceMCPError(Exception):
    """Base exception for all gateway errors."""

    retryable: bool = False

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        """Serialize the error for a tool result payload."""
        result: dict[str, object] = {"error": self.code, "message": self.message}
        if self.retryable:
            result["retryable"] = True
        return result

    @property
    def code(self) -> str:
        return "server_error"


# ========================================
# Signing Exceptions
# ========================================


class MissingSecretError(WorkspaceMCPError):
    """The shared signing secret is not configured; nothing can be issued."""

    @property
    def code(self) -> str:
        return "server_misconfigured"


# ========================================
# Upstream (Google) Exceptions
# ========================================


class NotAuthorizedError(WorkspaceMCPError):
    """No stored Google credential exists for the requested user.

    Carries the login URL the user must visit to connect their account.
    """

    def __init__(self, user_email: str, authorization_url: str) -> None:
        self.user_email = user_email
        self.authorization_url = authorization_url
        super().__init__(
            f"No tokens found for {user_email}. "
            f"User must authorize first at {authorization_url}"
        )

    @property
    def code(self) -> str:
        return "not_authorized"

    def to_dict(self) -> dict[str, object]:
        result = super().to_dict()
        result["user_email"] = self.user_email
        result["authorization_url"] = self.authorization_url
        return result


class UpstreamError(WorkspaceMCPError):
    """A call to Google failed."""

    def __init__(self, message: str, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable

    @property
    def code(self) -> str:
        return "upstream_error"


class UpstreamTimeoutError(UpstreamError):
    """A call to Google did not complete within the configured timeout."""

    def __init__(self, message: str) -> None:
        super().__init__(message, retryable=True)

    @property
    def code(self) -> str:
        return "upstream_timeout"


class UpstreamAuthError(UpstreamError):
    """Google rejected the authorization code or refresh token."""

    @property
    def code(self) -> str:
        return "upstream_unauthorized"


# ========================================
# Storage Exceptions
# ========================================


class TokenStoreError(WorkspaceMCPError):
    """Reading or writing the token store failed."""

    retryable = True

    @property
    def code(self) -> str:
        return "token_store_unavailable"
