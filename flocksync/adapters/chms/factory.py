"""Adapter factory.

The single switch point from a stored connection's provider identifier to
a concrete ChmsProviderPort. Adding a provider means adding a branch here.
"""

import httpx

from flocksync.core.errors import UnknownProviderError
from flocksync.core.models import ChmsProvider, ConnectionConfig
from flocksync.core.ports import ChmsProviderPort

from .base import DEFAULT_TIMEOUT_SECONDS
from .ccb import CcbAdapter
from .planning_center import PlanningCenterAdapter
from .rock import RockAdapter

SUPPORTED_PROVIDERS: tuple[str, ...] = tuple(p.value for p in ChmsProvider)


def create_adapter(
    connection: ConnectionConfig,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ChmsProviderPort:
    """Build the adapter for a connection.

    The adapter is not yet authenticated.

    Args:
        connection: Stored connection with provider, credentials and config.
        timeout: Per-request timeout passed to the adapter's HTTP client.
        transport: Optional httpx transport override, used by tests.

    Returns:
        A configured, unauthenticated adapter.

    Raises:
        UnknownProviderError: provider is not rock, planning_center or ccb.
        ConfigurationError: Required credentials or base URL are missing.
    """
    provider = connection.provider
    if provider == ChmsProvider.ROCK.value:
        return RockAdapter(
            base_url=connection.base_url or "",
            api_key=connection.credential("api_key"),
            sync_config=connection.sync_config,
            timeout=timeout,
            transport=transport,
        )
    elif provider == ChmsProvider.PLANNING_CENTER.value:
        return PlanningCenterAdapter(
            app_id=connection.credential("app_id"),
            secret=connection.credential("secret"),
            sync_config=connection.sync_config,
            timeout=timeout,
            transport=transport,
        )
    elif provider == ChmsProvider.CCB.value:
        return CcbAdapter(
            base_url=connection.base_url or "",
            username=connection.credential("username"),
            password=connection.credential("password"),
            sync_config=connection.sync_config,
            timeout=timeout,
            transport=transport,
        )
    raise UnknownProviderError(str(provider), SUPPORTED_PROVIDERS)


__all__ = ["SUPPORTED_PROVIDERS", "create_adapter"]
