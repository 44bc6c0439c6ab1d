import json
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Self
from urllib.parse import parse_qs, urlsplit


@dataclass
class ScriptedResponse:
    status: int = 200
    body: dict | list | None = None
    delay: float = 0.0
    times: int | None = 1  # None repeats forever


@dataclass
class RecordedRequest:
    method: str
    path: str
    query: dict
    headers: dict
    raw_body: bytes
    form: dict = field(default_factory=dict)
    json: dict | None = None


class _ProcessorHandler(BaseHTTPRequestHandler):
    """Answers processor API calls from the server's script."""

    def _handle(self):
        content_length = int(self.headers.get("Content-Length", 0))
        raw = self.rfile.read(content_length) if content_length else b""
        parts = urlsplit(self.path)

        recorded = RecordedRequest(
            method=self.command,
            path=parts.path,
            query={k: v[0] for k, v in parse_qs(parts.query).items()},
            headers=dict(self.headers),
            raw_body=raw,
        )
        content_type = self.headers.get("Content-Type", "")
        if raw and "application/json" in content_type:
            try:
                recorded.json = json.loads(raw)
            except ValueError:
                recorded.json = None
        elif raw:
            recorded.form = {k: v[0] for k, v in parse_qs(raw.decode("utf-8"), keep_blank_values=True).items()}

        sandbox = self.server.sandbox  # type: ignore[attr-defined]
        response = sandbox._next_response(recorded)

        if response.delay > 0:
            time.sleep(response.delay)

        self.send_response(response.status)
        self.send_header("Content-Type", "application/json")
        self.end_headers()
        if response.body is not None:
            self.wfile.write(json.dumps(response.body).encode())

    do_GET = _handle
    do_POST = _handle
    do_DELETE = _handle
    do_PATCH = _handle

    def log_message(self, format, *args):
        """Suppress default request logging."""
        pass


class SandboxProcessorServer:
    """Local stand-in for a processor API with scripted responses.

    Responses are queued per ``(method, path)``; each request consumes the
    first queued response for its route, and unscripted routes answer 404.
    Every request is recorded for assertions.
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 0):
        self._host = host
        self._port = port
        self._routes: dict[tuple[str, str], deque[ScriptedResponse]] = {}
        self._requests: list[RecordedRequest] = []
        self._lock = threading.Lock()
        self._server: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None

    def respond(
        self,
        method: str,
        path: str,
        body: dict | list | None = None,
        status: int = 200,
        delay: float = 0.0,
        times: int | None = None,
    ) -> Self:
        """Script a response; ``times=None`` keeps answering with it."""
        with self._lock:
            self._routes.setdefault((method.upper(), path), deque()).append(
                ScriptedResponse(status=status, body=body, delay=delay, times=times)
            )
        return self

    def respond_once(self, method: str, path: str, body: dict | list | None = None, status: int = 200, delay: float = 0.0) -> Self:
        return self.respond(method, path, body=body, status=status, delay=delay, times=1)

    def _next_response(self, request: RecordedRequest) -> ScriptedResponse:
        with self._lock:
            self._requests.append(request)
            queue = self._routes.get((request.method, request.path))
            if not queue:
                return ScriptedResponse(status=404, body={"error": f"no route for {request.method} {request.path}"})
            response = queue[0]
            if response.times is not None:
                response.times -= 1
                if response.times <= 0:
                    queue.popleft()
            return response

    def start(self) -> None:
        self._server = ThreadingHTTPServer((self._host, self._port), _ProcessorHandler)
        self._server.sandbox = self  # type: ignore[attr-defined]
        self._port = self._server.server_address[1]
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None

    @property
    def url(self) -> str:
        return f"http://{self._host}:{self._port}"

    @property
    def port(self) -> int:
        return self._port

    def get_requests(self, method: str | None = None, path: str | None = None) -> list[RecordedRequest]:
        with self._lock:
            requests = list(self._requests)
        if method is not None:
            requests = [r for r in requests if r.method == method.upper()]
        if path is not None:
            requests = [r for r in requests if r.path == path]
        return requests

    def request_count(self, method: str | None = None, path: str | None = None) -> int:
        return len(self.get_requests(method, path))

    def reset(self) -> None:
        with self._lock:
            self._routes.clear()
            self._requests.clear()
