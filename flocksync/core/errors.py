"""Exception hierarchy for ChMS integration failures.

Adapters raise these for connection-level problems. Per-record and
write-back problems are not raised: the sync engine records them in
SyncResult.errors and WriteResult.failures instead.
"""


class ChmsError(Exception):
    """Base class for all ChMS integration errors."""


class AuthenticationError(ChmsError):
    """Provider rejected the configured credentials or returned an unexpected shape."""


class ChmsApiError(ChmsError):
    """A provider request failed with a non-success HTTP status."""

    def __init__(self, provider: str, status_code: int | None, detail: str = ""):
        self.provider = provider
        self.status_code = status_code
        self.detail = detail
        message = (
            f"{provider} API error: {status_code}"
            if status_code is not None
            else f"{provider} request failed"
        )
        if detail:
            message = f"{message} {detail}"
        super().__init__(message)


class ConfigurationError(ChmsError, ValueError):
    """A connection is missing required credentials or settings."""


class UnknownProviderError(ConfigurationError):
    """No adapter is registered for the requested provider identifier."""

    def __init__(self, provider: str, supported: tuple[str, ...]):
        self.provider = provider
        self.supported = supported
        super().__init__(
            f"Unknown ChMS provider: {provider}. Supported: {', '.join(supported)}"
        )


class ConnectionNotFoundError(ChmsError, LookupError):
    """No active ChMS connection exists for the organization."""

    def __init__(self, organization_id: str):
        self.organization_id = organization_id
        super().__init__(
            f"No active ChMS connection for organization {organization_id}"
        )
