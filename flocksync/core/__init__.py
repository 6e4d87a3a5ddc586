"""Core domain logic for the flocksync ChMS integration layer.

This package contains zero external dependencies and represents
the pure business logic of the application. All adapters and
external integrations are handled by the adapters package.
"""

from .errors import (
    AuthenticationError,
    ChmsApiError,
    ChmsError,
    ConfigurationError,
    ConnectionNotFoundError,
    UnknownProviderError,
)
from .models import (
    ActivityWriteBack,
    ChmsProvider,
    ConnectionConfig,
    NormalizedFamily,
    NormalizedGroup,
    NormalizedPerson,
    ProviderCapabilities,
    SyncConfig,
    SyncResult,
    SyncState,
    TriggerMethod,
    WriteResult,
)

__all__ = [
    "ActivityWriteBack",
    "AuthenticationError",
    "ChmsApiError",
    "ChmsError",
    "ChmsProvider",
    "ConfigurationError",
    "ConnectionConfig",
    "ConnectionNotFoundError",
    "NormalizedFamily",
    "NormalizedGroup",
    "NormalizedPerson",
    "ProviderCapabilities",
    "SyncConfig",
    "SyncResult",
    "SyncState",
    "TriggerMethod",
    "UnknownProviderError",
    "WriteResult",
]
