"""Webhook receiver adapters.

HTTP endpoints that let operators and ChMS webhooks start sync runs:
- Manual "sync now" pulls
- Webhook-triggered incremental pulls
- Connection tests
"""

from .http_server import WebhookHTTPServer
from .receiver import WebhookReceiver

__all__ = ["WebhookHTTPServer", "WebhookReceiver"]
