"""
ldap3-backed connection factory.

This module connects to LDAP servers and exposes each bound connection as a
:class:`~ldap_registry.directory.DirectorySession` able to run RFC 2696 paged
subtree searches and single-entry lookups.
"""

import logging
import ssl
from typing import Dict, List, Any, Optional, Sequence

from ldap3 import Server, Connection, SUBTREE, BASE, ALL, ALL_ATTRIBUTES, NO_ATTRIBUTES, Tls
from ldap3.core.exceptions import LDAPException, LDAPBindError

from ldap_registry.directory import Attributes, ConnectionFactory, DirectorySession, ResultEnumeration, SearchResult
from ldap_registry.errors import ProtocolError
from ldap_registry.retry import MaxRetriesExceeded, create_retry_callback, is_retryable_error, retry_call

logger = logging.getLogger(__name__)

PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'


class LDAPConnectionError(Exception):
    """Raised when LDAP connection fails."""
    pass


class LDAPSession(DirectorySession):
    """
    A bound ldap3 connection.

    The paged results cookie of the last search is kept on the session, so
    searching the same base again continues with the next page.
    """

    def __init__(self, connection: Connection, batch_size: int = 0):
        self.connection = connection
        self.batch_size = batch_size
        self.cookie = None

    def search(self, search_base: str, search_filter: str,
               attributes: Optional[Sequence[str]] = None) -> ResultEnumeration:
        kwargs = {}
        if self.batch_size > 0:
            kwargs['paged_size'] = self.batch_size
            if self.cookie:
                kwargs['paged_cookie'] = self.cookie

        logger.debug(f"Searching with filter: {search_filter} in base: {search_base}")
        try:
            self.connection.search(
                search_base=search_base,
                search_filter=search_filter,
                search_scope=SUBTREE,
                attributes=self._requested(attributes),
                **kwargs
            )
        except LDAPException as e:
            self.cookie = None
            raise ProtocolError(f"Search failed in {search_base}: {e}") from e

        result = self.connection.result or {}
        if result.get('result', 0) != 0:
            self.cookie = None
            raise ProtocolError(f"Search failed in {search_base}: {result.get('description')} {result.get('message', '')}".strip())

        self.cookie = self._extract_cookie(result)
        return ResultEnumeration(self._to_results(self.connection.response))

    def get_attributes(self, dn: str, attribute_names: Sequence[str]) -> Attributes:
        try:
            self.connection.search(
                search_base=dn,
                search_filter='(objectClass=*)',
                search_scope=BASE,
                attributes=self._requested(attribute_names)
            )
        except LDAPException as e:
            raise ProtocolError(f"Failed to read {dn}: {e}") from e

        result = self.connection.result or {}
        if result.get('result', 0) != 0:
            raise ProtocolError(f"Failed to read {dn}: {result.get('description')}")

        entries = self._to_results(self.connection.response)
        if not entries:
            raise ProtocolError(f"Entry not found: {dn}")
        return entries[0].attributes

    def close(self):
        """Unbind the connection."""
        connection, self.connection = self.connection, None
        self.cookie = None
        if connection is not None:
            connection.unbind()
            logger.debug("LDAP connection closed")

    @staticmethod
    def _requested(attributes: Optional[Sequence[str]]):
        if attributes is None:
            return ALL_ATTRIBUTES
        if not attributes:
            return NO_ATTRIBUTES
        return list(attributes)

    @staticmethod
    def _extract_cookie(result: Dict[str, Any]):
        controls = result.get('controls') or {}
        control = controls.get(PAGED_RESULTS_OID) or {}
        return (control.get('value') or {}).get('cookie') or None

    @staticmethod
    def _to_results(response: Optional[List[Dict[str, Any]]]) -> List[SearchResult]:
        results = []
        for entry in response or []:
            if entry.get('type') != 'searchResEntry':
                continue
            attributes = Attributes()
            for name, values in (entry.get('attributes') or {}).items():
                # Requested but absent attributes come back empty
                if values is None or values == [] or values == '':
                    continue
                attributes.add(name, values)
            results.append(SearchResult(entry.get('dn', ''), attributes))
        return results


class LDAPConnectionFactory(ConnectionFactory):
    """
    Opens bound ldap3 connections from an ``ldap`` configuration section.

    Supports LDAPS and StartTLS, and retries connection establishment
    according to the ``error_handling`` section.
    """

    def __init__(self, config: Dict[str, Any], error_handling: Optional[Dict[str, Any]] = None):
        """
        Initialize the factory with configuration.

        Args:
            config: LDAP configuration dictionary
            error_handling: Retry settings (max_retries, retry_wait_seconds)
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']

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

        error_config = error_handling or config.get('error_handling', {})
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)

        self.server = None

    def open_session(self, batch_size: int = 0) -> LDAPSession:
        """
        Open and bind a new connection, retrying transient failures.

        Raises:
            LDAPConnectionError: If no connection could be established
        """
        if self.server is None:
            self.server = self._create_server()

        try:
            connection = retry_call(
                self._connect,
                max_attempts=self.max_retries + 1,  # +1 for initial attempt
                delay=self.retry_wait,
                exceptions=(LDAPException,),
                on_retry=create_retry_callback(f"LDAP connection to {self.server_url}"),
                retry_if=is_retryable_error
            )
        except MaxRetriesExceeded as e:
            raise LDAPConnectionError(
                f"Failed to connect to LDAP after {e.attempts} attempts: {e.last_exception}"
            ) from e.last_exception
        except LDAPException as e:
            raise LDAPConnectionError(f"Failed to connect to LDAP: {e}") from e

        return LDAPSession(connection, batch_size)

    def has_next_page(self, session: DirectorySession, batch_size: int) -> bool:
        return batch_size > 0 and bool(getattr(session, 'cookie', None))

    def _create_server(self) -> Server:
        try:
            server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
        except LDAPConnectionError:
            raise
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create LDAP server: {e}")
        logger.debug(f"Created LDAP server object for {self.server_url} (SSL: {self.use_ssl}, StartTLS: {self.start_tls})")
        return server

    def _connect(self) -> Connection:
        connection = Connection(
            self.server,
            user=self.bind_dn,
            password=self.bind_password,
            auto_bind=False,  # Manual bind for better error handling
            receive_timeout=self.receive_timeout,
            auto_range=False,
            return_empty_attributes=False
        )
        try:
            if not connection.open():
                raise LDAPBindError(f"Failed to open connection: {connection.result}")

            if self.start_tls and not self.use_ssl:
                if not connection.start_tls():
                    raise LDAPBindError(f"Failed to start TLS: {connection.result}")
                logger.debug("StartTLS negotiation successful")

            if not connection.bind():
                raise LDAPBindError(f"Bind failed: {connection.result}")
        except Exception:
            try:
                connection.unbind()
            except Exception as e:
                logger.debug(f"Error closing failed LDAP connection: {e}")
            raise

        logger.debug(f"Connected and bound to LDAP server {self.server_url}")
        return connection

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

    def test_connection(self) -> bool:
        """
        Test LDAP connectivity without throwing exceptions.

        Returns:
            True if a connection could be bound and the root DSE read
        """
        try:
            with self.open_session() as session:
                session.get_attributes('', ['namingContexts'])
            return True
        except Exception as e:
            logger.debug(f"Connection test failed: {e}")
            return False

    def get_connection_stats(self) -> Dict[str, Any]:
        """
        Get connection settings for diagnostics.

        Returns:
            Dictionary with connection information
        """
        return {
            'server_url': self.server_url,
            'use_ssl': self.use_ssl,
            'start_tls': self.start_tls,
            'verify_ssl': self.verify_ssl,
            'bind_dn': self.bind_dn,
            'max_retries': self.max_retries
        }
