"""
Identity API client and datastore reader.

This module speaks the identity API's HTTP contract: token issuance with a
shared Basic secret, listing users and creating users with a bearer token.
"""

import json
import ssl
import time
import logging
from datetime import datetime, timezone
from typing import Dict, List, Any, Optional, Tuple, Union
from urllib.parse import urlparse, urljoin
from http.client import HTTPSConnection, HTTPConnection, HTTPException

from cryptography.hazmat.primitives.serialization import Encoding, pkcs12

from identity_sync.config import ConfigurationError
from identity_sync.credentials import CredentialCache
from identity_sync.exceptions import (
    CredentialUnavailable,
    DatastoreUnauthorized,
    DatastoreUnreachable,
    DatastoreProtocolError,
)
from identity_sync.logging_setup import security_logger
from identity_sync.models import Credential, IdentityRecord, IdentitySet

logger = logging.getLogger(__name__)


class IdentityAPIClient:
    """
    HTTP client for the identity API.

    A new connection is opened for each request so the client can be used
    from several threads at once.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize identity API client.

        Args:
            config: identity_api configuration dictionary
        """
        self.config = config
        self.base_url = config['base_url']
        self.basic_secret = config['basic_secret']
        self.timeout = config.get('timeout_seconds', 10)
        self.verify_ssl = config.get('verify_ssl', True)

        # Parse base URL
        self.parsed_url = urlparse(self.base_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        self.ssl_context = None
        self._setup_ssl_context()

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if self.parsed_url.scheme != 'https':
            return

        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.base_url}")
            return

        self.ssl_context = ssl.create_default_context()
        truststore_file = self.config.get('truststore_file') or self.config.get('ca_cert_file')
        if truststore_file:
            self._load_truststore(truststore_file)

    def _load_truststore(self, truststore_file: str):
        """Load CA certificates from a PEM file or a PKCS12 bundle."""
        truststore_type = self.config.get('truststore_type', 'PEM').upper()
        truststore_password = self.config.get('truststore_password')

        try:
            if truststore_type == 'PEM':
                self.ssl_context.load_verify_locations(cafile=truststore_file)
            elif truststore_type == 'PKCS12':
                with open(truststore_file, 'rb') as f:
                    p12_data = f.read()
                _, certificate, additional_certificates = pkcs12.load_key_and_certificates(
                    p12_data, truststore_password.encode() if truststore_password else None
                )
                ca_certs = [
                    cert.public_bytes(Encoding.PEM).decode('ascii')
                    for cert in [certificate] + list(additional_certificates or [])
                    if cert is not None
                ]
                if not ca_certs:
                    raise ValueError("no certificates in bundle")
                self.ssl_context.load_verify_locations(cadata='\n'.join(ca_certs))
            else:
                raise ValueError(f"unsupported truststore type {truststore_type}")
        except (OSError, ValueError, ssl.SSLError) as e:
            logger.error(f"Failed to load truststore {truststore_file}: {e}")
            raise ConfigurationError(f"Truststore loading failed: {e}")

        logger.info(f"Loaded {truststore_type} truststore: {truststore_file}")

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Create HTTP connection for a single request."""
        if self.parsed_url.scheme == 'https':
            return HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        return HTTPConnection(self.host, timeout=self.timeout)

    def request(self, method: str, path: str, authorization: str,
                body: Optional[Dict] = None) -> Tuple[int, Any]:
        """
        Make HTTP request to the identity API.

        Args:
            method: HTTP method
            path: API endpoint path (relative to base_url)
            authorization: Value of the Authorization header
            body: JSON request body

        Returns:
            Tuple of (status code, parsed JSON body or raw text)

        Raises:
            DatastoreUnreachable: On connection errors and timeouts
            DatastoreProtocolError: If the body is not valid UTF-8
        """
        full_path = urljoin(self.base_path + '/', path.lstrip('/'))
        headers = {
            'Authorization': authorization,
            'Accept': 'application/json'
        }

        request_body = None
        if body is not None:
            request_body = json.dumps(body)
            headers['Content-Type'] = 'application/json'

        conn = self._get_connection()
        try:
            logger.debug(f"Making {method} request to {self.host}{full_path}")
            conn.request(method, full_path, request_body, headers)
            response = conn.getresponse()
            raw_body = response.read()
            logger.debug(f"Response status: {response.status} {response.reason}")
        except (OSError, HTTPException) as e:
            raise DatastoreUnreachable(f"Connection error to {self.base_url}: {e}")
        finally:
            conn.close()

        try:
            response_data = raw_body.decode('utf-8')
        except UnicodeDecodeError as e:
            raise DatastoreProtocolError(f"Response from {self.base_url} is not valid UTF-8: {e}")

        try:
            return response.status, json.loads(response_data) if response_data else None
        except json.JSONDecodeError:
            return response.status, response_data

    def _check_status(self, status: int, data: Any, expected: Tuple[int, ...], action: str):
        """Map an HTTP status to the datastore error taxonomy."""
        if status in expected:
            return
        message = data.get('error_message') if isinstance(data, dict) else data
        if status in (401, 403):
            raise DatastoreUnauthorized(f"{action} rejected with HTTP {status}: {message}")
        if status >= 500:
            raise DatastoreUnreachable(f"{action} failed with HTTP {status}: {message}")
        raise DatastoreProtocolError(f"{action} returned unexpected HTTP {status}: {message}")

    def issue_token(self) -> Credential:
        """
        Request a new access token from the token endpoint.

        Returns:
            Newly issued Credential

        Raises:
            CredentialUnavailable: If the endpoint is unreachable or refuses the secret
        """
        issued_at = time.time()
        try:
            status, data = self.request('GET', '/token', f"Basic {self.basic_secret}")
        except DatastoreUnreachable as e:
            security_logger.log_authentication_attempt('identity_api', 'token', False)
            raise CredentialUnavailable(f"Token endpoint unreachable: {e}")
        except DatastoreProtocolError as e:
            security_logger.log_authentication_attempt('identity_api', 'token', False)
            raise CredentialUnavailable(f"Malformed token response: {e}")

        if status != 200:
            security_logger.log_authentication_attempt('identity_api', 'token', False)
            message = data.get('error_message') if isinstance(data, dict) else data
            raise CredentialUnavailable(f"Token request failed with HTTP {status}: {message}")

        try:
            credential = Credential(
                access_token=str(data['access_token']),
                token_type=str(data.get('token_type', 'Bearer')),
                issued_at=issued_at,
                ttl_seconds=int(data['expires_in'])
            )
        except (TypeError, KeyError, ValueError) as e:
            raise CredentialUnavailable(f"Malformed token response: {e}")

        security_logger.log_authentication_attempt('identity_api', 'token', True)
        return credential

    def list_users(self, credential: Credential) -> List[Dict[str, Any]]:
        """
        Get all users stored in the identity API.

        Raises:
            DatastoreUnauthorized: If the token is rejected
            DatastoreUnreachable: On network errors and 5xx
            DatastoreProtocolError: If the body is not a JSON array
        """
        status, data = self.request('GET', '/users', credential.authorization)
        self._check_status(status, data, (200,), "List users")
        if not isinstance(data, list):
            raise DatastoreProtocolError(f"Expected a JSON array of users, got {type(data).__name__}")
        return data

    def create_user(self, credential: Credential, username: str, surname: str) -> Dict[str, Any]:
        """
        Create one user in the identity API.

        Returns:
            The created user as returned by the API

        Raises:
            DatastoreUnauthorized: If the token is rejected
            DatastoreUnreachable: On network errors and 5xx
            DatastoreProtocolError: On 400 and other unexpected statuses
        """
        status, data = self.request('POST', '/users', credential.authorization,
                                    {'username': username, 'surname': surname})
        self._check_status(status, data, (200, 201), f"Create user {username}")
        return data if isinstance(data, dict) else {}


class DatastoreReader:
    """Reads the full set of identities stored in the identity API."""

    def __init__(self, client: IdentityAPIClient, credentials: CredentialCache):
        self.client = client
        self.credentials = credentials

    def fetch_all(self) -> IdentitySet:
        """
        Read every user from the identity API.

        A rejected token is reported as DatastoreUnauthorized; the reader
        never refreshes and retries on its own.

        Raises:
            CredentialUnavailable: If no token could be obtained
            DatastoreUnauthorized: If the token is rejected
            DatastoreUnreachable: On network errors and 5xx
            DatastoreProtocolError: If the response cannot be interpreted
        """
        credential = self.credentials.acquire()
        users = self.client.list_users(credential)

        identities = {}
        for user in users:
            if not isinstance(user, dict) or not user.get('username'):
                raise DatastoreProtocolError(f"User entry without username: {user!r}")
            key = str(user['username'])
            identities[key] = IdentityRecord(
                key=key,
                surname=str(user.get('surname') or ''),
                source_modified_at=parse_timestamp(user.get('last_modified'))
            )

        logger.info(f"Found {len(identities)} DB users")
        return identities


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a last_modified value.

    The identity API reports epoch milliseconds; ISO-8601 strings are
    accepted as well.

    Raises:
        DatastoreProtocolError: If the value has neither form
    """
    if value is None or value == '':
        return None
    if isinstance(value, bool):
        raise DatastoreProtocolError(f"Invalid last_modified value: {value!r}")
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            raise DatastoreProtocolError(f"Invalid last_modified value: {value!r}")
    try:
        return datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        raise DatastoreProtocolError(f"Invalid last_modified value: {value!r}")
