"""HTTP server adapter for webhook receiver.

Provides a simple HTTP server using Python's built-in http.server module,
bridged onto the asyncio event loop that owns the sync engine.

Supports optional API key authentication for POST endpoints via the
Authorization header (Bearer token or X-API-Key).
"""

import asyncio
import hmac
import json
import logging
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Awaitable, Callable, Coroutine
from urllib.parse import parse_qs, urlsplit

from flocksync.adapters.webhook.receiver import WebhookReceiver
from flocksync.core.errors import ConnectionNotFoundError

logger = logging.getLogger(__name__)

MAX_BODY_SIZE = 1024 * 1024
REQUEST_TIMEOUT_SECONDS = 300


def make_webhook_handler(
    webhook_receiver: WebhookReceiver,
    event_loop: asyncio.AbstractEventLoop,
    api_key: str | None,
    require_auth: bool,
) -> type[BaseHTTPRequestHandler]:
    """Factory to create a WebhookHTTPHandler class with instance-specific state.

    Args:
        webhook_receiver: Receiver for sync operations
        event_loop: Event loop the receiver's coroutines run on
        api_key: Optional API key for authentication
        require_auth: Whether authentication is required

    Returns:
        A WebhookHTTPHandler class configured with the provided dependencies
    """
    routes: dict[str, Callable[[str], Awaitable[dict[str, Any]]]] = {
        "/api/sync": webhook_receiver.handle_sync_trigger,
        "/api/webhook": webhook_receiver.handle_webhook_trigger,
        "/api/test_connection": webhook_receiver.handle_test_connection,
    }

    class WebhookHTTPHandler(BaseHTTPRequestHandler):
        """HTTP request handler for sync trigger endpoints."""

        def _check_auth(self) -> bool:
            """Check if request is authenticated.

            Supports two authentication methods:
            1. Authorization: Bearer <api_key>
            2. X-API-Key: <api_key>
            """
            if not require_auth:
                return True
            if not api_key:
                return False

            auth_header = self.headers.get("Authorization", "")
            if auth_header.startswith("Bearer "):
                return hmac.compare_digest(auth_header[7:], api_key)

            api_key_header = self.headers.get("X-API-Key", "")
            if api_key_header:
                return hmac.compare_digest(api_key_header, api_key)

            return False

        def do_POST(self) -> None:
            """Route POST requests to the receiver."""
            parts = urlsplit(self.path)
            handler = routes.get(parts.path)
            if handler is None:
                self.send_error(404, "Not found")
                return

            if not self._check_auth():
                self.send_error(401, "Unauthorized: invalid or missing API key")
                return

            try:
                content_length = int(self.headers.get("Content-Length", 0))
            except ValueError:
                self.send_error(400, "Invalid Content-Length")
                return
            if content_length < 0:
                self.send_error(400, "Invalid Content-Length")
                return
            if content_length > MAX_BODY_SIZE:
                self.send_error(413, "Request body too large")
                return

            body = self.rfile.read(content_length) if content_length > 0 else b""
            try:
                data = json.loads(body) if body else {}
            except json.JSONDecodeError:
                self.send_error(400, "Invalid JSON body")
                return

            # Provider webhooks post their own payload, so the query string wins
            query = parse_qs(parts.query)
            organization_id = (query.get("organization_id") or [None])[0]
            if not organization_id and isinstance(data, dict):
                organization_id = data.get("organization_id")
            if not organization_id:
                self.send_error(400, "Missing organization_id")
                return

            self._run_async(handler(str(organization_id)))

        def do_GET(self) -> None:
            """Health check. Always public."""
            if urlsplit(self.path).path == "/health":
                self._send_response({"status": "healthy"})
            else:
                self.send_error(404, "Not found")

        def _run_async(self, coro: Coroutine[Any, Any, dict[str, Any]]) -> None:
            """Run a receiver coroutine on the event loop and send its result."""
            future = asyncio.run_coroutine_threadsafe(coro, event_loop)
            try:
                result = future.result(timeout=REQUEST_TIMEOUT_SECONDS)
            except ConnectionNotFoundError as e:
                self.send_error(404, str(e))
                return
            except Exception as e:
                logger.error(f"Error handling webhook request: {e}", exc_info=True)
                self.send_error(500, "Internal server error")
                return
            self._send_response(result)

        def _send_response(self, data: dict[str, Any]) -> None:
            """Send JSON response."""
            payload = json.dumps(data).encode()
            self.send_response(200)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(payload)))
            self.end_headers()
            self.wfile.write(payload)

        def log_message(self, format: str, *args: Any) -> None:
            """Log HTTP request."""
            logger.debug(f"HTTP {self.client_address[0]}: {format % args}")

    return WebhookHTTPHandler


class WebhookHTTPServer:
    """Webhook HTTP server adapter.

    Exposes manual sync, webhook-triggered sync and connection tests over
    HTTP. Optionally requires API key authentication.
    """

    def __init__(
        self,
        webhook_receiver: WebhookReceiver,
        host: str = "0.0.0.0",
        port: int = 8080,
        api_key: str | None = None,
        require_auth: bool = False,
    ):
        """Initialize the HTTP server.

        Args:
            webhook_receiver: WebhookReceiver instance to handle requests.
            host: Host to listen on (default 0.0.0.0).
            port: Port to listen on (default 8080). Use 0 for an ephemeral port.
            api_key: Optional API key for authentication.
            require_auth: Whether to require authentication (default False).

        Raises:
            ValueError: require_auth is set without an api_key.
        """
        if require_auth and not api_key:
            raise ValueError("webhook api_key is required when require_auth is enabled")

        self.webhook_receiver = webhook_receiver
        self.host = host
        self.port = port
        self.api_key = api_key
        self.require_auth = require_auth
        self.server: HTTPServer | None = None
        self._server_task: asyncio.Task[None] | None = None

    @property
    def bound_port(self) -> int:
        """Port the server is actually listening on."""
        if self.server is None:
            return self.port
        return int(self.server.server_address[1])

    async def start(self) -> None:
        """Start the HTTP server."""
        handler_class = make_webhook_handler(
            webhook_receiver=self.webhook_receiver,
            event_loop=asyncio.get_running_loop(),
            api_key=self.api_key,
            require_auth=self.require_auth,
        )

        self.server = HTTPServer((self.host, self.port), handler_class)
        self._server_task = asyncio.create_task(self._run_server())
        logger.info(
            f"Webhook HTTP server started on {self.host}:{self.bound_port}"
            + (" (with API key authentication)" if self.require_auth else "")
        )

    async def _run_server(self) -> None:
        """Run the blocking server loop in a worker thread."""
        if not self.server:
            return

        try:
            await asyncio.to_thread(self.server.serve_forever)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Webhook HTTP server error: {e}", exc_info=True)

    async def stop(self) -> None:
        """Stop the HTTP server."""
        if self.server:
            await asyncio.to_thread(self.server.shutdown)
            self.server.server_close()
        if self._server_task:
            self._server_task.cancel()
            try:
                await self._server_task
            except asyncio.CancelledError:
                pass
        logger.info("Webhook HTTP server stopped")
