"""
Mock identity API for local runs and integration tests.

Implements the identity API contract with an in-memory store:

    GET  /token   Authorization: Basic <secret>  -> {access_token, token_type, expires_in}
    GET  /users   Authorization: <type> <token>  -> [{username, surname, last_modified}]
    POST /users   Authorization: <type> <token>  -> 201 created user

The sync core never imports this module.
"""

import json
import time
import secrets
import logging
import argparse
import threading
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Dict, List, Any, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_SECRET = 'base64'
DEFAULT_TOKEN_TTL = 900


class MockIdentityStore:
    """Thread-safe in-memory tokens and users."""

    def __init__(self, secret: str = DEFAULT_SECRET, token_ttl_seconds: int = DEFAULT_TOKEN_TTL,
                 users: Optional[List[Dict[str, Any]]] = None):
        self.secret = secret
        self.token_ttl_seconds = token_ttl_seconds
        self.tokens: Dict[str, float] = {}
        self.requests: List[Tuple[str, str]] = []
        self._lock = threading.Lock()
        if users is None:
            users = [{'username': 'testuser', 'surname': 'McTestface', 'last_modified': _now_ms()}]
        self.users = list(users)

    def record(self, method: str, path: str):
        with self._lock:
            self.requests.append((method, path))

    def count(self, method: str, path: str) -> int:
        with self._lock:
            return sum(1 for request in self.requests if request == (method, path))

    def issue_token(self, authorization: Optional[str]) -> Optional[Dict[str, Any]]:
        """Return a new token for the right Basic secret, otherwise None."""
        if authorization != f"Basic {self.secret}":
            return None

        token = {
            'access_token': str(100000 + secrets.randbelow(900000)),
            'token_type': 'Bearer',
            'expires_in': self.token_ttl_seconds
        }
        with self._lock:
            self._purge_expired()
            self.tokens[f"{token['token_type']} {token['access_token']}"] = time.time() + self.token_ttl_seconds
        logger.info(f"Added token: {token['token_type']} {token['access_token']}")
        return token

    def is_valid(self, authorization: Optional[str]) -> bool:
        with self._lock:
            expires_at = self.tokens.get(authorization or '')
            return expires_at is not None and expires_at > time.time()

    def expire_all_tokens(self):
        with self._lock:
            for key in self.tokens:
                self.tokens[key] = 0

    def _purge_expired(self):
        now = time.time()
        for key in [key for key, expires_at in self.tokens.items() if expires_at <= now]:
            logger.info(f"Token {key} has expired")
            del self.tokens[key]

    def list_users(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(user) for user in self.users]

    def add_user(self, username: str, surname: str) -> Dict[str, Any]:
        user = {'username': username, 'surname': surname, 'last_modified': _now_ms()}
        with self._lock:
            self.users.append(user)
        logger.info(f"Added User: {json.dumps(user)}")
        return dict(user)


def _now_ms() -> int:
    return int(time.time() * 1000)


class MockIdentityHandler(BaseHTTPRequestHandler):
    """Request handler bound to the server's MockIdentityStore."""

    protocol_version = 'HTTP/1.1'

    @property
    def store(self) -> MockIdentityStore:
        return self.server.store

    def log_message(self, format, *args):
        logger.debug("%s - %s", self.address_string(), format % args)

    def _send_json(self, status: int, payload: Any):
        body = json.dumps(payload).encode('utf-8')
        self.send_response(status)
        self.send_header('Content-Type', 'application/json')
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _unauthorized(self):
        self._send_json(HTTPStatus.UNAUTHORIZED, {'error_message': 'Unauthorized!'})

    def do_GET(self):
        self.store.record('GET', self.path)
        authorization = self.headers.get('Authorization')

        if self.path == '/token':
            token = self.store.issue_token(authorization)
            if token is None:
                self._unauthorized()
            else:
                self._send_json(HTTPStatus.OK, token)
        elif self.path == '/users':
            if not self.store.is_valid(authorization):
                self._unauthorized()
            else:
                self._send_json(HTTPStatus.OK, self.store.list_users())
        else:
            self._send_json(HTTPStatus.NOT_FOUND, {'error_message': 'Not found'})

    def do_POST(self):
        self.store.record('POST', self.path)
        length = int(self.headers.get('Content-Length') or 0)
        raw_body = self.rfile.read(length) if length else b''

        if self.path != '/users':
            self._send_json(HTTPStatus.NOT_FOUND, {'error_message': 'Not found'})
            return
        if not self.store.is_valid(self.headers.get('Authorization')):
            self._unauthorized()
            return

        try:
            data = json.loads(raw_body.decode('utf-8')) if raw_body else {}
        except (UnicodeDecodeError, json.JSONDecodeError):
            data = {}
        if not isinstance(data, dict):
            data = {}

        missing = [field for field in ('username', 'surname') if not data.get(field)]
        if missing:
            self._send_json(HTTPStatus.BAD_REQUEST,
                            {'error_message': 'Missing fields: ' + ' '.join(missing)})
            return

        # Only the known fields are stored
        user = self.store.add_user(str(data['username']), str(data['surname']))
        self._send_json(HTTPStatus.CREATED, user)


def make_server(host: str = '127.0.0.1', port: int = 0,
                store: Optional[MockIdentityStore] = None) -> ThreadingHTTPServer:
    """
    Create a mock identity API server without starting it.

    Port 0 picks a free port; read it back from ``server.server_address``.
    """
    server = ThreadingHTTPServer((host, port), MockIdentityHandler)
    server.daemon_threads = True
    server.store = store or MockIdentityStore()
    return server


def serve(host: str = '127.0.0.1', port: int = 3000, store: Optional[MockIdentityStore] = None):
    """Run the mock identity API until interrupted."""
    server = make_server(host, port, store)
    logger.info(f"Listening on http://{host}:{server.server_address[1]}")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down mock identity API")
    finally:
        server.server_close()


def main():
    """Entry point for the mock identity API."""
    parser = argparse.ArgumentParser(description='Mock identity API for Identity Sync')
    parser.add_argument('--host', default='127.0.0.1', help='Address to listen on')
    parser.add_argument('--port', type=int, default=3000, help='Port to listen on')
    parser.add_argument('--secret', default=DEFAULT_SECRET, help='Shared Basic secret for /token')
    parser.add_argument('--token-ttl', type=int, default=DEFAULT_TOKEN_TTL,
                        help='Token lifetime in seconds')
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format='%(asctime)s [%(levelname)s] %(message)s')
    serve(args.host, args.port, MockIdentityStore(args.secret, args.token_ttl))


if __name__ == "__main__":
    main()
