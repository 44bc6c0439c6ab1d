import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs, urlsplit

from donation_payments.webhooks.dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/webhooks/payment"


class _WebhookHandler(BaseHTTPRequestHandler):
    """Hands the raw request body to the dispatcher untouched."""

    def do_POST(self):
        parts = urlsplit(self.path)
        if parts.path != WEBHOOK_PATH:
            self._reply(404, {"error": "not found"})
            return

        processor = parse_qs(parts.query).get("processor", [""])[0]
        if not processor:
            self._reply(400, {"error": "missing processor"})
            return

        try:
            content_length = int(self.headers.get("Content-Length", 0))
        except ValueError:
            content_length = -1
        if content_length < 0:
            self._reply(400, {"error": "invalid Content-Length"})
            return
        body = self.rfile.read(content_length)

        dispatcher: WebhookDispatcher = self.server.dispatcher  # type: ignore[attr-defined]
        try:
            result = dispatcher.dispatch(processor, body, dict(self.headers))
        except Exception:
            logger.exception("webhook dispatch crashed for %s", processor)
            self._reply(500, {"error": "internal error"})
            return

        self._reply(result.status_code, result.body)

    def _reply(self, code: int, body: dict) -> None:
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.end_headers()
        self.wfile.write(json.dumps(body).encode())

    def log_message(self, format, *args):
        """Suppress default request logging."""
        pass


class WebhookReceiverServer:
    """Serves ``POST /webhooks/payment?processor=<id>`` for a dispatcher."""

    def __init__(self, dispatcher: WebhookDispatcher, host: str = "127.0.0.1", port: int = 0):
        self.dispatcher = dispatcher
        self._host = host
        self._port = port
        self._server: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        self._server = ThreadingHTTPServer((self._host, self._port), _WebhookHandler)
        self._server.dispatcher = self.dispatcher  # type: ignore[attr-defined]
        # Get the actual port (useful when port=0)
        self._port = self._server.server_address[1]
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()
        logger.info("webhook receiver listening on %s", self.base_url)

    def stop(self) -> None:
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None

    @property
    def base_url(self) -> str:
        return f"http://{self._host}:{self._port}"

    def url_for(self, processor: str) -> str:
        return f"{self.base_url}{WEBHOOK_PATH}?processor={processor}"

    @property
    def port(self) -> int:
        return self._port
