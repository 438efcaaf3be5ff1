"""
HTTPS admission webhook server.
"""

from __future__ import annotations

import json
import logging
import ssl
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Optional

from .admission import AdmissionController
from .review import build_response

logger = logging.getLogger(__name__)

VALIDATE_PATHS = ("/", "/validate")
VALIDATE_CONSTRAINT_PATH = "/validate-constraint"


class AdmissionHTTPServer(ThreadingHTTPServer):
    """
    One thread per connection, at most ``workers`` reviews in flight.

    Idle keep-alive connections from the API server only park their own
    thread; the review limit applies to work actually being decided.
    """

    daemon_threads = True
    block_on_close = False

    def __init__(self, server_address, handler_class, workers: int):
        super().__init__(server_address, handler_class)
        self.review_slots = threading.BoundedSemaphore(workers)

    def handle_error(self, request, client_address):
        logger.exception(f"Error while handling connection from {client_address}")


class AdmissionWebhookHandler(BaseHTTPRequestHandler):
    """HTTP handler for Kubernetes admission webhook requests."""

    protocol_version = "HTTP/1.1"
    timeout = 30
    controller: AdmissionController
    max_request_bytes: int = 3 * 1024 * 1024
    is_ready = staticmethod(lambda: True)

    def log_message(self, format, *args):
        """Override to use proper logging."""
        logger.debug(format % args)

    def _send_json(self, status: int, payload: Any):
        body = json.dumps(payload).encode()
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _read_review(self) -> Optional[Any]:
        try:
            content_length = int(self.headers.get("Content-Length", "0"))
        except ValueError:
            content_length = 0
        if content_length <= 0 or content_length > self.max_request_bytes:
            # the body is left unread, so the connection cannot be reused
            self.close_connection = True
            return None
        body = self.rfile.read(content_length)
        try:
            return json.loads(body)
        except ValueError:
            return None

    def do_POST(self):
        """Handle POST requests with AdmissionReview."""
        if self.path in VALIDATE_PATHS:
            review_func = self.controller.review
        elif self.path == VALIDATE_CONSTRAINT_PATH:
            review_func = self.controller.review_constraint
        else:
            self._send_json(404, {"error": f"unknown path {self.path}"})
            return

        review = self._read_review()
        try:
            with self.server.review_slots:
                response = review_func(review)
        except Exception:
            logger.exception("Error processing admission review")
            response = build_response("", False, "Internal error while processing admission review")
        self._send_json(200, response)

    def do_GET(self):
        if self.path == "/healthz":
            self._send_json(200, {"status": "ok"})
        elif self.path == "/readyz":
            ready = self.is_ready()
            self._send_json(200 if ready else 503, {"ready": ready})
        else:
            self._send_json(404, {"error": f"unknown path {self.path}"})


class WebhookServer:
    """Manages the webhook server lifecycle."""

    def __init__(
        self,
        controller: AdmissionController,
        host: str = "0.0.0.0",
        port: int = 8443,
        cert_file: Optional[str] = None,
        key_file: Optional[str] = None,
        workers: int = 16,
        max_request_bytes: int = 3 * 1024 * 1024,
        is_ready: Optional[Callable[[], bool]] = None,
    ):
        self.controller = controller
        self.host = host
        self.port = port
        self.cert_file = cert_file
        self.key_file = key_file
        self.workers = workers
        self.max_request_bytes = max_request_bytes
        self.is_ready = is_ready or (lambda: True)
        self.server: Optional[AdmissionHTTPServer] = None
        self.thread: Optional[threading.Thread] = None

    def _handler_class(self):
        return type(
            "BoundAdmissionWebhookHandler",
            (AdmissionWebhookHandler,),
            {
                "controller": self.controller,
                "max_request_bytes": self.max_request_bytes,
                "is_ready": staticmethod(self.is_ready),
            },
        )

    def bind(self):
        """Create the listening socket; TLS material is loaded once, here."""
        self.server = AdmissionHTTPServer((self.host, self.port), self._handler_class(), self.workers)
        if self.cert_file and self.key_file:
            context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
            context.minimum_version = ssl.TLSVersion.TLSv1_2
            context.load_cert_chain(self.cert_file, self.key_file)
            # handshakes run on the connection threads, not in the accept loop
            self.server.socket = context.wrap_socket(
                self.server.socket, server_side=True, do_handshake_on_connect=False
            )
            logger.info("Webhook server configured with TLS")
        # pick up the real port when bound to port 0
        self.port = self.server.server_address[1]

    def serve_forever(self):
        if self.server is None:
            self.bind()
        logger.info(f"Webhook server listening on {self.host}:{self.port}")
        self.server.serve_forever()

    def start(self):
        """Start the webhook server in a background thread."""
        if self.server is None:
            self.bind()
        self.thread = threading.Thread(target=self.server.serve_forever, name="webhook-server", daemon=True)
        self.thread.start()
        logger.info(f"Webhook server started on {self.host}:{self.port}")

    def stop(self):
        """Stop the webhook server."""
        if self.server:
            self.server.shutdown()
            self.server.server_close()
            logger.info("Webhook server stopped")

    @property
    def url(self) -> str:
        """Get the server URL."""
        protocol = "https" if self.cert_file else "http"
        return f"{protocol}://{self.host}:{self.port}"
