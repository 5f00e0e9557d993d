"""
LDAP directory reader.

This module connects to the authoritative LDAP directory, binds with the
service account and reads every person entry below the configured base DN.
"""

import logging
import ssl
from typing import Dict, Any, Iterator, Optional
from ldap3 import Server, Connection, SUBTREE, ALL, Tls
from ldap3.core.exceptions import LDAPException

from identity_sync.exceptions import DirectoryConnectError, DirectoryAuthError, DirectorySearchError
from identity_sync.models import IdentityRecord, IdentitySet

logger = logging.getLogger(__name__)


class DirectoryReader:
    """
    Reads the full set of directory identities in one pass.

    Every call to fetch_all opens its own connection and closes it before
    returning, so a reader can be shared across cycles.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize directory reader with configuration.

        Args:
            config: LDAP configuration dictionary
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.base_dn = config.get('base_dn', '')
        self.user_filter = config.get('user_filter', '(objectClass=person)')
        self.key_attribute = config.get('key_attribute', 'cn')
        self.surname_attribute = config.get('surname_attribute', 'sn')

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')

        # Connection settings
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.page_size = config.get('page_size', 500)

    def fetch_all(self, base_dn: Optional[str] = None, search_filter: Optional[str] = None) -> IdentitySet:
        """
        Read all identities matching the filter below the base DN.

        Args:
            base_dn: Search base, defaults to the configured base_dn
            search_filter: LDAP filter, defaults to the configured user_filter

        Returns:
            Dictionary mapping identity key to IdentityRecord

        Raises:
            DirectoryConnectError: If the server cannot be reached
            DirectoryAuthError: If the bind is rejected
            DirectorySearchError: If the search fails before end of results
        """
        base_dn = base_dn or self.base_dn
        search_filter = search_filter or self.user_filter
        if not base_dn:
            raise DirectorySearchError("No search base DN configured")

        connection = self._open()
        try:
            self._bind(connection)
            identities = {}
            for record in self._search(connection, base_dn, search_filter):
                identities[record.key] = record
        finally:
            self._close(connection)

        logger.info(f"Found {len(identities)} LDAP users below {base_dn}")
        return identities

    def _open(self) -> Connection:
        """Create server and connection objects and open the socket."""
        logger.debug(f"Connecting to LDAP server {self.server_url}")
        try:
            server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            connection = Connection(
                server,
                user=self.bind_dn,
                password=self.bind_password,
                auto_bind=False,
                receive_timeout=self.receive_timeout
            )
            connection.open()
        except LDAPException as e:
            raise DirectoryConnectError(f"Failed to connect to LDAP server {self.server_url}: {e}")

        if self.start_tls and not self.use_ssl:
            try:
                started = connection.start_tls()
            except LDAPException as e:
                self._close(connection)
                raise DirectoryConnectError(f"Failed to start TLS with {self.server_url}: {e}")
            if not started:
                self._close(connection)
                raise DirectoryConnectError(f"Failed to start TLS: {connection.result}")
            logger.debug("StartTLS negotiation successful")

        logger.info(f"Connected to {self.server_url}")
        return connection

    def _bind(self, connection: Connection):
        """Authenticate with the service account."""
        try:
            bound = connection.bind()
        except LDAPException as e:
            raise DirectoryAuthError(f"Bind failed for {self.bind_dn}: {e}")
        if not bound:
            raise DirectoryAuthError(f"Bind failed for {self.bind_dn}: {connection.result}")
        logger.info(f"Authenticated as {self.bind_dn}")

    def _search(self, connection: Connection, base_dn: str, search_filter: str) -> Iterator[IdentityRecord]:
        """
        Yield one IdentityRecord per search result entry.

        The paged search generator is exhausted only when the server signals
        end of results. Any error raised before that propagates, so callers
        never see a partially read directory.
        """
        logger.debug(f"Searching with filter: {search_filter} in base: {base_dn}")
        try:
            entries = connection.extend.standard.paged_search(
                search_base=base_dn,
                search_filter=search_filter,
                search_scope=SUBTREE,
                attributes=[self.key_attribute, self.surname_attribute],
                paged_size=self.page_size,
                generator=True
            )
            for entry in entries:
                if entry.get('type') != 'searchResEntry':
                    continue
                record = self._to_record(entry)
                if record:
                    yield record
        except LDAPException as e:
            raise DirectorySearchError(f"Error while searching {base_dn}: {e}")

        # The synchronous strategy reports a rejected search through the result
        result = connection.result or {}
        if result.get('result', 0) != 0:
            raise DirectorySearchError(
                f"Search rejected: {result.get('description')} {result.get('message', '')}".strip()
            )

    def _to_record(self, entry: Dict[str, Any]) -> Optional[IdentityRecord]:
        """Convert a raw search entry into an IdentityRecord."""
        attributes = entry.get('attributes', {})
        key = self._first_value(attributes.get(self.key_attribute))
        if not key:
            logger.warning(f"User entry has no {self.key_attribute}: {entry.get('dn')}")
            return None
        surname = self._first_value(attributes.get(self.surname_attribute)) or ''
        return IdentityRecord(key=str(key), surname=str(surname))

    @staticmethod
    def _first_value(value):
        if isinstance(value, (list, tuple)):
            return value[0] if value else None
        return value

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for LDAP connection.

        Returns:
            Tls configuration object or None if not needed
        """
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {}
        if not self.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning("SSL certificate verification disabled")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")

        try:
            return Tls(**tls_config)
        except LDAPException as e:
            raise DirectoryConnectError(f"Failed to create TLS configuration: {e}")

    def _close(self, connection: Connection):
        """Close LDAP connection."""
        try:
            connection.unbind()
            logger.debug("LDAP connection closed")
        except LDAPException as e:
            logger.warning(f"Error closing LDAP connection: {e}")

    def test_connection(self) -> bool:
        """
        Open, bind and close a connection without searching.

        Returns:
            True if the bind succeeded

        Raises:
            DirectoryConnectError: If the server cannot be reached
            DirectoryAuthError: If the bind is rejected
        """
        connection = self._open()
        try:
            self._bind(connection)
        finally:
            self._close(connection)
        return True
