"""
Local HTTP server used by the collector to verify connectivity.

Routes:
  POST /check/  - token handshake, 200 on success and 403 otherwise
  *             - 400 for every other path
"""

import hmac
import uuid
import logging
import threading
from typing import Optional

from flask import Flask, request
from werkzeug.exceptions import HTTPException
from werkzeug.serving import WSGIRequestHandler, make_server

logger = logging.getLogger(__name__)

CHECK_PATH = "/check/"
# Seconds a connection may stay idle or half-sent before it is dropped
READ_TIMEOUT = 10.0
ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

FORBIDDEN_BODY = "<h1>Error 403: Forbidden</h1>"
BAD_REQUEST_BODY = "<h1>Error 400: Bad request</h1>"


def new_token() -> str:
    """Generate a random connection token for this server run"""
    return str(uuid.uuid4())


def _token_matches(candidate: Optional[str], token: str) -> bool:
    if not candidate:
        return False
    return hmac.compare_digest(candidate.encode("utf-8"), token.encode("utf-8"))


def create_app(token: str) -> Flask:
    """Build the handshake application around the session token"""
    app = Flask(__name__)

    def forbidden():
        logger.info("A connection test request failed")
        return FORBIDDEN_BODY, 403

    def bad_request(path=""):
        logger.error(f"invalid {request.method} request for URL: {request.full_path.rstrip('?')}")
        return BAD_REQUEST_BODY, 400

    @app.before_request
    def log_request():
        logger.info(f"Received a {request.method} request at {request.full_path.rstrip('?')}")

    def check():
        if request.method != "POST":
            return forbidden()
        try:
            candidate = request.form.get("token")
        except HTTPException:
            # Unparsable bodies fail the same way as a wrong token
            return forbidden()
        if not _token_matches(candidate, token):
            return forbidden()
        return "", 200

    app.add_url_rule(CHECK_PATH, "check", check, methods=ALL_METHODS,
                     provide_automatic_options=False)
    # Without an exact rule Flask would answer /check with a redirect to /check/
    app.add_url_rule(CHECK_PATH.rstrip("/"), "check_unslashed", bad_request, methods=ALL_METHODS,
                     provide_automatic_options=False)
    app.add_url_rule("/", "index", bad_request, methods=ALL_METHODS,
                     provide_automatic_options=False)
    app.add_url_rule("/<path:path>", "invalid", bad_request, methods=ALL_METHODS,
                     provide_automatic_options=False)

    @app.errorhandler(404)
    @app.errorhandler(405)
    def not_routed(error):
        return bad_request()

    return app


class HandshakeServer:
    """Serves the handshake application from a background thread"""

    def __init__(self, host: str = "0.0.0.0", port: int = 8080, token: Optional[str] = None,
                 read_timeout: float = READ_TIMEOUT):
        self.host = host
        self.port = port
        self.read_timeout = read_timeout
        self.token = token or new_token()
        self.app = create_app(self.token)
        self._server = None
        self._thread: Optional[threading.Thread] = None

    def start(self):
        read_timeout = self.read_timeout

        class RequestHandler(WSGIRequestHandler):
            # Applied to every accepted socket, drops clients that stall mid-request
            timeout = read_timeout

        self._server = make_server(self.host, self.port, self.app, threaded=True,
                                   request_handler=RequestHandler)
        self.port = self._server.server_port
        self._thread = threading.Thread(target=self._server.serve_forever, name="handshake-server", daemon=True)
        self._thread.start()
        logger.info(f"Server listening at {self.host}:{self.port}")

    def shutdown(self):
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        self._thread.join()
        self._server = None
        logger.info("Server stopped")

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()
        return False
