"""
LDAP client for connecting to and querying LDAP directories.

This module provides the directory collaborator used by the synchronization engine:
service bind, credential validation through a user bind, and searches returning
DirectoryEntry snapshots.
"""

import logging
import ssl
import time
from typing import Dict, List, Any, Optional, Union
from ldap3 import Server, Connection, SUBTREE, BASE, ALL, ALL_ATTRIBUTES, NO_ATTRIBUTES, Tls
from ldap3.core.exceptions import LDAPException, LDAPSocketOpenError, LDAPBindError
from ldap3.utils.conv import escape_filter_chars

from ldap_auth_sync.config import USERNAME_MARKER
from ldap_auth_sync.models import DirectoryEntry

logger = logging.getLogger(__name__)

# noSuchObject is an empty result, not a failure
EMPTY_RESULT_CODES = (0, 32)


class LDAPConnectionError(Exception):
    """Raised when LDAP connection fails."""
    pass


class LDAPQueryError(Exception):
    """Raised when LDAP query fails."""
    pass


class LDAPClient:
    """
    LDAP client for connecting to and querying LDAP directories.

    The service connection is bound with the configured service account; user
    credentials are verified on a separate short-lived connection so that the
    service connection keeps its privileges for later searches.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize LDAP client with configuration.

        Args:
            config: LDAP configuration dictionary
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.pass_through = config.get('pass_through', False)

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.cert_file = config.get('cert_file')
        self.key_file = config.get('key_file')

        # Connection settings
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.max_retries = config.get('max_retries', 1)
        self.retry_wait = config.get('retry_wait_seconds', 2)

        self.server = None
        self.connection = None
        self._connected = False
        self._last_bind_diagnostic = ''

    @property
    def connected(self) -> bool:
        return self._connected

    def connect(self) -> bool:
        """
        Establish the service connection to the LDAP server.

        Returns:
            True if connection successful

        Raises:
            LDAPConnectionError: If connection fails after all attempts
        """
        if self._connected:
            return True

        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            logger.debug(f"Created LDAP server object for {self.server_url} (SSL: {self.use_ssl}, StartTLS: {self.start_tls})")
        except LDAPConnectionError:
            raise
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create LDAP server: {e}")

        last_exception = None
        for attempt in range(self.max_retries):
            try:
                self.connection = self._open_connection(self.bind_dn, self.bind_password)
                if not self.connection.bind():
                    raise LDAPBindError(f"Bind failed: {self.connection.result}")

                self._connected = True
                logger.info(f"Successfully connected and bound to LDAP server {self.server_url}")
                return True

            except LDAPException as e:
                last_exception = e
                logger.warning(f"LDAP connection attempt {attempt + 1}/{self.max_retries} failed: {e}")
                self._discard_connection()
                if isinstance(e, LDAPSocketOpenError) and attempt < self.max_retries - 1:
                    time.sleep(self.retry_wait)
                else:
                    break

        error_msg = f"Failed to connect to LDAP after {self.max_retries} attempts"
        if last_exception:
            error_msg += f": {last_exception}"
        raise LDAPConnectionError(error_msg)

    def _open_connection(self, user: Optional[str], password: Optional[str]) -> Connection:
        """Open (but do not bind) a connection, negotiating StartTLS if configured."""
        connection = Connection(
            self.server,
            user=user,
            password=password,
            auto_bind=False,
            receive_timeout=self.receive_timeout
        )

        if not connection.open():
            raise LDAPSocketOpenError(f"Failed to open connection: {connection.result}")

        if self.start_tls and not self.use_ssl:
            if not connection.start_tls():
                raise LDAPException(f"Failed to start TLS: {connection.result}")
            logger.debug("StartTLS negotiation successful")

        return connection

    def _discard_connection(self):
        if self.connection:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Ignoring error while discarding connection: {e}")
            self.connection = None

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

        # Client certificate for mutual TLS
        if self.cert_file and self.key_file:
            tls_config['local_certificate_file'] = self.cert_file
            tls_config['local_private_key_file'] = self.key_file
            logger.debug("Client certificate configured for mutual TLS")

        try:
            return Tls(**tls_config)
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create TLS configuration: {e}")

    def disconnect(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except Exception as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def search(self, base: str, search_filter: str = '(objectClass=*)',
               attributes: Optional[List[str]] = None, scope: str = SUBTREE) -> List[DirectoryEntry]:
        """
        Search the directory.

        Args:
            base: Search base, or the DN of a single entry with ``scope=BASE``
            search_filter: LDAP filter
            attributes: Attributes to return; every attribute when empty
            scope: ldap3 search scope

        Returns:
            Matching entries in the order returned by the server

        Raises:
            LDAPQueryError: If not connected or the query fails
        """
        if not self._connected:
            raise LDAPQueryError("Not connected to LDAP server")

        logger.debug(f"Searching with filter: {search_filter} in base: {base}")
        try:
            success = self.connection.search(
                search_base=base,
                search_filter=search_filter,
                search_scope=scope,
                attributes=attributes or ALL_ATTRIBUTES
            )
        except LDAPException as e:
            raise LDAPQueryError(f"LDAP query failed: {e}")

        if not success:
            result = self.connection.result or {}
            if result.get('result', 0) in EMPTY_RESULT_CODES:
                return []
            raise LDAPQueryError(f"Search failed: {result.get('description')} {result.get('message', '')}".strip())

        return [DirectoryEntry.from_ldap3(entry) for entry in self.connection.entries]

    def valid_user(self, username: str, password: Optional[str], base_dn: str,
                   user_filter: str) -> Union[str, bool]:
        """
        Validate a username and password against the directory.

        Args:
            username: Login name, substituted for ``{USERNAME}`` in the filter
            password: Password to verify with a user bind
            base_dn: User search base
            user_filter: User filter containing ``{USERNAME}``

        Returns:
            The user DN on success, True for a configured pass-through success,
            False otherwise (see ``get_last_bind_diagnostic``)
        """
        self._last_bind_diagnostic = ''

        if not password:
            # An empty password would be an anonymous bind and always succeed
            self._last_bind_diagnostic = 'Empty password provided'
            return False

        search_filter = user_filter.replace(USERNAME_MARKER, escape_filter_chars(username))
        try:
            entries = self.search(base_dn, search_filter, [NO_ATTRIBUTES])
        except LDAPQueryError as e:
            self._last_bind_diagnostic = str(e)
            return False

        if not entries:
            self._last_bind_diagnostic = f'User "{username}" not found in directory'
            return False

        user_dn = entries[0].dn
        user_connection = None
        try:
            user_connection = self._open_connection(user_dn, password)
            if not user_connection.bind():
                result = user_connection.result or {}
                self._last_bind_diagnostic = result.get('message') or result.get('description') or 'Bind failed'
                return False
        except LDAPException as e:
            self._last_bind_diagnostic = str(e)
            return False
        finally:
            if user_connection is not None:
                try:
                    user_connection.unbind()
                except LDAPException as e:
                    logger.debug(f"Ignoring error while closing user connection: {e}")

        if self.pass_through:
            logger.debug(f"Pass-through authentication for {user_dn}")
            return True
        return user_dn

    def get_last_bind_diagnostic(self) -> str:
        """Return the diagnostic of the last failed ``valid_user`` call (may be empty)."""
        return self._last_bind_diagnostic

    def test_connection(self) -> bool:
        """
        Test LDAP connection without throwing exceptions.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            if not self._connected:
                self.connect()

            return self.connection.search(
                search_base='',
                search_filter='(objectClass=*)',
                search_scope=BASE,
                attributes=['namingContexts'],
                size_limit=1
            )
        except (LDAPConnectionError, LDAPException) as e:
            logger.debug(f"Connection test failed: {e}")
            return False

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()
