"""HTTP webhook receiver for external triggers.

Translates manual and provider-webhook requests into sync runs on the
SyncPort. Provider webhooks never carry record payloads into the engine;
they only start the standard pull cycle for one organization.
"""

import logging
from typing import Any

from flocksync.core.models import SyncResult, TriggerMethod
from flocksync.core.ports import SyncPort

logger = logging.getLogger(__name__)


def serialize_sync_result(result: SyncResult) -> dict[str, Any]:
    """Render a SyncResult as a JSON-safe dictionary."""
    return {
        "organization_id": result.organization_id,
        "provider": result.provider,
        "trigger": result.trigger.value,
        "sync_type": result.sync_type,
        "status": result.status,
        "final_state": result.final_state.value,
        "stats": result.stats.as_dict(),
        "errors": [{"external_id": e.external_id, "error": e.error} for e in result.errors],
        "error_message": result.error_message,
        "started_at": result.started_at.isoformat(),
        "completed_at": result.completed_at.isoformat(),
    }


class WebhookReceiver:
    """Forwards HTTP-triggered operations to the SyncPort."""

    def __init__(self, sync_port: SyncPort):
        """Initialize the webhook receiver.

        Args:
            sync_port: SyncPort implementation that runs syncs.
        """
        self.sync_port = sync_port

    async def handle_sync_trigger(self, organization_id: str) -> dict[str, Any]:
        """Handle a manual "sync now" request for one organization.

        Raises:
            ConnectionNotFoundError: No active connection for the organization.
        """
        result = await self.sync_port.sync_organization(
            organization_id, TriggerMethod.MANUAL
        )
        logger.info(
            "Manual sync triggered via webhook",
            extra={"organization_id": organization_id, "status": result.status},
        )
        return {
            "status": "success",
            "operation": "sync",
            "result": serialize_sync_result(result),
        }

    async def handle_webhook_trigger(self, organization_id: str) -> dict[str, Any]:
        """Handle a provider change notification by running an incremental pull.

        Raises:
            ConnectionNotFoundError: No active connection for the organization.
        """
        result = await self.sync_port.sync_organization(
            organization_id, TriggerMethod.WEBHOOK
        )
        logger.info(
            "Webhook-triggered sync completed",
            extra={"organization_id": organization_id, "status": result.status},
        )
        return {
            "status": "success",
            "operation": "webhook",
            "result": serialize_sync_result(result),
        }

    async def handle_test_connection(self, organization_id: str) -> dict[str, Any]:
        """Handle a connection test request.

        Raises:
            ConnectionNotFoundError: No active connection for the organization.
        """
        outcome = await self.sync_port.test_connection(organization_id)
        logger.info(
            "Connection tested via webhook",
            extra={"organization_id": organization_id, "ok": outcome.ok},
        )
        return {
            "status": "success",
            "operation": "test_connection",
            "result": {"ok": outcome.ok, "error": outcome.error},
        }
