import getpass
import logging
import math
import ssl
from typing import Any, Dict, Iterator, List, Optional

import keyring
from ldap3 import (
    ANONYMOUS,
    KERBEROS,
    NONE,
    SASL,
    SIMPLE,
    Connection,
    Server,
    Tls,
)
from ldap3.core.exceptions import LDAPException

from ..cancellation import CancellationToken
from ..exceptions import (
    ConfigurationError,
    DirectoryConnectionError,
    DirectorySearchError,
    SearchWarning,
)
from ..models.directory_entry import QueryAccumulator
from ..models.search_specification import AuthMode, SearchScope, SearchSpecification

logger = logging.getLogger(__name__)

# Simple Paged Results control (RFC 2696)
PAGED_RESULTS_OID = "1.2.840.113556.1.4.319"

# LDAP_SERVER_DOMAIN_SCOPE_OID: no referrals, restrict the search to this domain
DOMAIN_SCOPE_CONTROL = ("1.2.840.113556.1.4.1339", False, None)

# Result codes that end a page loop with a warning instead of an error
RECOVERABLE_RESULT_CODES = {
    3: "timeLimitExceeded",
    4: "sizeLimitExceeded",
    11: "adminLimitExceeded",
}


class LDAPAdapter:
    """
    Active Directory connection adapter.

    This class opens directory sessions with one of the supported
    authentication modes and drives paged searches over them. It does not
    keep a session of its own: callers own the connection returned by
    open_connection() and must hand it back to close_connection().
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize LDAP adapter with configuration settings.

        Args:
            config: Dictionary containing LDAP connection settings.
                   Required keys:
                   - 'server': LDAP server hostname
                   - 'search_base': Default base DN for searches

                   Optional keys with defaults:
                   - 'auth_mode': certificate, credential, kerberos or
                     current_identity (default: current_identity)
                   - 'user': Username (credential mode) or principal (kerberos)
                   - 'password': Password for credential mode
                   - 'keyring_service': Keyring service name for the password
                   - 'certificate_file' / 'private_key_file': Client certificate
                   - 'ca_certs_file': CA bundle used to validate the server
                   - 'port': LDAP port (default: 636 for SSL, 389 for non-SSL)
                   - 'use_ssl': Enable SSL/TLS (default: True)
                   - 'timeout': Connect and per-request timeout in seconds (default: 120)
                   - 'default_page_size': Page size for paged searches (default: 1000)
                   - 'size_limit': Server-side total result limit (default: 0, none)
                   - 'max_range_depth': Cap on follow-up range searches (default: 250)
                   - 'tolerate_partial_ranges': Keep partial values when a
                     range retrieval fails (default: False)
                   - 'guid_heuristic': Guess GUIDs for untyped 16 byte values (default: True)

        Raises:
            ConfigurationError: If required keys are missing or settings conflict
            TypeError: If configuration is not a dictionary
        """
        if not isinstance(config, dict):
            raise TypeError("Configuration must be a dictionary")

        required_keys = ["server", "search_base"]
        missing_keys = [key for key in required_keys if not config.get(key)]
        if missing_keys:
            raise ConfigurationError(f"Missing required configuration keys: {missing_keys}")

        self.server_hostname = config["server"]
        self.search_base = config["search_base"]

        self.auth_mode = AuthMode.from_value(config.get("auth_mode"))
        self.user = config.get("user")
        self.keyring_service = config.get("keyring_service")
        self.certificate_file = config.get("certificate_file")
        self.private_key_file = config.get("private_key_file")
        self.ca_certs_file = config.get("ca_certs_file")

        self.use_ssl = config.get("use_ssl", True)
        self.port = config.get("port", 636 if self.use_ssl else 389)
        self.timeout = config.get("timeout", 120)
        self.get_info = config.get("get_info", NONE)
        self.default_page_size = config.get("default_page_size", 1000)
        self.size_limit = config.get("size_limit", 0)
        self.max_range_depth = config.get("max_range_depth", 250)
        self.tolerate_partial_ranges = config.get("tolerate_partial_ranges", False)
        self.guid_heuristic = config.get("guid_heuristic", True)

        if not isinstance(self.port, int) or not 1 <= self.port <= 65535:
            raise ConfigurationError(f"port must be in [1, 65535], got {self.port!r}")
        if self.auth_mode is AuthMode.CERTIFICATE and not self.certificate_file:
            raise ConfigurationError("Certificate authentication requires 'certificate_file'")
        if self.auth_mode is AuthMode.CREDENTIAL and not self.user:
            raise ConfigurationError("Credential authentication requires 'user'")
        if self.auth_mode is not AuthMode.CERTIFICATE and self.certificate_file:
            raise ConfigurationError(
                f"'certificate_file' is only valid with certificate authentication, "
                f"not {self.auth_mode.value}"
            )

        self._server = None
        self._password = config.get("password")

        logger.debug(
            f"LDAP adapter initialized for server: {self.server_hostname} "
            f"({self.auth_mode.value})"
        )

    def _get_password(self) -> str:
        """
        Retrieve password from configuration, keyring or prompt user.

        Returns:
            str: The password for simple bind authentication

        Raises:
            KeyboardInterrupt: If user cancels password prompt
        """
        if self._password:
            return self._password

        if self.keyring_service:
            try:
                password = keyring.get_password(self.keyring_service, self.user)
                if password:
                    logger.debug("Using password from keyring")
                    self._password = password
                    return password
            except Exception as e:
                logger.warning(f"Could not retrieve password from keyring: {e}")

        try:
            password = getpass.getpass(f"Enter LDAP password for {self.user}: ")
            self._password = password
            return password
        except KeyboardInterrupt:
            logger.info("Password prompt cancelled by user")
            raise

    def _create_tls(self) -> Optional[Tls]:
        """Build the TLS settings, presenting the client certificate if configured."""
        if not self.use_ssl and self.auth_mode is not AuthMode.CERTIFICATE:
            return None

        return Tls(
            local_private_key_file=self.private_key_file,
            local_certificate_file=self.certificate_file,
            validate=ssl.CERT_REQUIRED if self.ca_certs_file else ssl.CERT_NONE,
            ca_certs_file=self.ca_certs_file,
        )

    def _create_server(self) -> Server:
        """
        Create LDAP server object with current configuration.

        Returns:
            Server: Configured ldap3 Server object
        """
        if not self._server:
            self._server = Server(
                self.server_hostname,
                port=self.port,
                use_ssl=self.use_ssl,
                get_info=self.get_info,
                tls=self._create_tls(),
                connect_timeout=self.timeout,
            )
            logger.debug(f"LDAP server object created: {self.server_hostname}:{self.port}")

        return self._server

    def _connection_kwargs(self) -> Dict[str, Any]:
        if self.auth_mode is AuthMode.CERTIFICATE:
            return {"authentication": ANONYMOUS}
        if self.auth_mode is AuthMode.CREDENTIAL:
            return {
                "authentication": SIMPLE,
                "user": self.user,
                "password": self._get_password(),
            }
        if self.auth_mode is AuthMode.KERBEROS and self.user:
            return {"authentication": SASL, "sasl_mechanism": KERBEROS, "user": self.user}
        # Kerberos with the ambient ticket cache
        return {"authentication": SASL, "sasl_mechanism": KERBEROS}

    def _create_connection(self) -> Connection:
        """
        Create and authenticate an LDAP connection.

        Certificate authentication skips the bind: the certificate is
        presented during the TLS handshake.

        Returns:
            Connection: Ready to query ldap3 Connection object

        Raises:
            DirectoryConnectionError: If connection or authentication fails
        """
        try:
            server = self._create_server()
            connection = Connection(
                server,
                version=3,
                auto_bind=False,
                auto_referrals=False,
                read_only=True,
                raise_exceptions=False,
                # Ranges are followed by RangeResolver, not by ldap3
                auto_range=False,
                return_empty_attributes=False,
                receive_timeout=self.timeout,
                **self._connection_kwargs(),
            )

            connection.open()
            if self.auth_mode is AuthMode.CERTIFICATE:
                if not self.use_ssl and not connection.start_tls():
                    raise DirectoryConnectionError(f"StartTLS failed: {connection.result}")
                logger.info(f"Connected to {self.server_hostname} with client certificate")
                return connection

            if not connection.bind():
                raise DirectoryConnectionError(f"Failed to bind to LDAP server: {connection.result}")

            logger.info(f"Successfully connected to {self.server_hostname}")
            return connection

        except DirectoryConnectionError as e:
            logger.error(f"LDAP connection failed: {e}")
            raise
        except Exception as e:
            logger.error(f"LDAP connection failed: {e}")
            raise DirectoryConnectionError(f"Connection failed: {e}") from e

    def open_connection(self) -> Connection:
        return self._create_connection()

    def close_connection(self, connection: Optional[Connection]) -> None:
        if connection is None:
            return
        try:
            connection.unbind()
            logger.debug("LDAP connection closed")
        except LDAPException as e:
            logger.warning(f"Error closing LDAP connection: {e}")

    def test_connection(self) -> bool:
        """
        Test LDAP connection with a minimal base-object search of the search base.

        Returns:
            bool: True if connection test succeeds, False otherwise
        """
        conn = None
        try:
            conn = self._create_connection()
            success = conn.search(
                search_base=self.search_base,
                search_filter="(objectClass=*)",
                search_scope=SearchScope.BASE.value,
                attributes=["1.1"],
            )
            if success:
                logger.info("Connection test successful")
                return True

            logger.warning(f"Search operation failed: {conn.result}")
            return False

        except LDAPException as e:
            logger.error(f"LDAP connection test failed: {e}")
            return False
        finally:
            self.close_connection(conn)

    def get_connection_info(self) -> Dict[str, Any]:
        """
        Get information about the current LDAP configuration.

        Returns:
            Dict[str, Any]: Configuration information (passwords excluded)
        """
        return {
            "server": self.server_hostname,
            "port": self.port,
            "use_ssl": self.use_ssl,
            "auth_mode": self.auth_mode.value,
            "search_base": self.search_base,
            "user": self.user,
            "keyring_service": self.keyring_service,
            "timeout": self.timeout,
            "default_page_size": self.default_page_size,
            "size_limit": self.size_limit,
            "max_range_depth": self.max_range_depth,
            "tolerate_partial_ranges": self.tolerate_partial_ranges,
        }

    def __str__(self) -> str:
        """String representation of the LDAP adapter."""
        ssl_status = "SSL" if self.use_ssl else "non-SSL"
        return (
            f"LDAPAdapter({self.server_hostname}:{self.port}, {ssl_status}, "
            f"auth={self.auth_mode.value})"
        )

    def __repr__(self) -> str:
        """Detailed string representation for debugging."""
        return (
            f"LDAPAdapter(server='{self.server_hostname}', port={self.port}, "
            f"use_ssl={self.use_ssl}, search_base='{self.search_base}', "
            f"auth_mode='{self.auth_mode.value}', user='{self.user}')"
        )

    # Core Search Infrastructure

    def build_specification(
        self,
        search_filter: str,
        search_base: Optional[str] = None,
        scope: Any = "subtree",
        attributes: Optional[List[str]] = None,
        size_limit: Optional[int] = None,
        page_size: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> SearchSpecification:
        """
        Build a SearchSpecification from call arguments and adapter defaults.

        Args:
            search_filter: LDAP filter string (e.g., '(objectClass=person)')
            search_base: Base DN for search (defaults to adapter's search_base)
            scope: Search scope - 'base', 'level', or 'subtree' (default: 'subtree')
            attributes: Attributes to retrieve, bare or range-qualified (None for all)
            size_limit: Server-side limit on total entries (defaults to adapter's size_limit)
            page_size: Entries per page (defaults to adapter's default_page_size)
            timeout: Server-side time limit in seconds (defaults to adapter's timeout)

        Raises:
            ConfigurationError: If parameters are invalid
        """
        if attributes is None:
            search_attributes = ["*"]
        elif len(attributes) == 0:
            # Empty list: fallback to minimal safe attribute that all objects have
            search_attributes = ["objectClass"]
            logger.debug("Empty attributes list provided, using 'objectClass' as safe fallback")
        else:
            search_attributes = list(attributes)

        return SearchSpecification(
            server=self.server_hostname,
            search_base=search_base if search_base is not None else self.search_base,
            search_filter=search_filter,
            attributes=tuple(search_attributes),
            scope=SearchScope.from_value(scope),
            port=self.port,
            size_limit=self.size_limit if size_limit is None else size_limit,
            page_size=page_size or self.default_page_size,
            use_ssl=self.use_ssl,
            auth_mode=self.auth_mode,
            timeout=timeout if timeout is not None else self.timeout,
        )

    @staticmethod
    def _extract_cookie(result: Dict[str, Any]) -> Optional[bytes]:
        try:
            return result["controls"][PAGED_RESULTS_OID]["value"]["cookie"] or None
        except (KeyError, TypeError):
            return None

    @staticmethod
    def _time_limit(spec: SearchSpecification, cancel_token: Optional[CancellationToken]) -> int:
        """Server-side time limit in whole seconds, capped by the token's deadline (0 for none)."""
        time_limit = math.ceil(spec.timeout) if spec.timeout else 0

        remaining = cancel_token.remaining() if cancel_token is not None else None
        if remaining is not None:
            deadline_limit = max(1, math.ceil(remaining))
            time_limit = min(time_limit, deadline_limit) if time_limit else deadline_limit

        return time_limit

    def iter_pages(
        self,
        connection: Connection,
        spec: SearchSpecification,
        accumulator: QueryAccumulator,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Iterator[List[Dict[str, Any]]]:
        """
        Drive one paged search and yield the raw entries of each page.

        The loop sends a request with the paged results and domain scope
        controls, yields the page's searchResEntry responses, then echoes
        the server's cookie in the next request until the cookie is empty.

        A time, size or admin limit result ends the loop after yielding the
        page: the condition is recorded on the accumulator as a warning and
        no further pages are requested. Any other error result raises.

        Args:
            connection: Open, authenticated ldap3 connection
            spec: The search to run
            accumulator: Receives warnings for recoverable errors
            cancel_token: Checked before every request

        Yields:
            List of raw response dictionaries ('dn', 'raw_attributes', ...)

        Raises:
            DirectorySearchError: On a non-recoverable result or transport failure
            QueryCancelledError: If the token is cancelled between pages
        """
        cookie = None
        page_num = 0
        total_entries = 0

        while True:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()

            page_num += 1
            logger.debug(
                f"Requesting page {page_num}: filter='{spec.search_filter}', "
                f"base='{spec.search_base}', scope='{spec.scope.value}', attributes={list(spec.attributes)}"
            )

            try:
                connection.search(
                    search_base=spec.search_base,
                    search_filter=spec.search_filter,
                    search_scope=spec.scope.value,
                    attributes=list(spec.attributes),
                    size_limit=spec.size_limit,
                    time_limit=self._time_limit(spec, cancel_token),
                    paged_size=spec.page_size,
                    paged_cookie=cookie,
                    controls=[DOMAIN_SCOPE_CONTROL],
                )
            except LDAPException as e:
                logger.error(f"LDAP search failed on page {page_num}: {e}")
                raise
            except Exception as e:
                logger.error(f"Unexpected error during search on page {page_num}: {e}")
                raise DirectorySearchError(f"Search operation failed: {e}") from e

            result = connection.result or {}
            result_code = result.get("result", 0)
            result_desc = result.get("description", "success")

            if result_code != 0 and result_code not in RECOVERABLE_RESULT_CODES:
                logger.error(
                    f"Page {page_num}: Search failed with code {result_code} ({result_desc})"
                )
                raise DirectorySearchError(
                    f"Search failed with code {result_code} ({result_desc}): "
                    f"{result.get('message', '')}",
                    result_code=result_code,
                )

            page_entries = [
                response
                for response in (connection.response or [])
                if response.get("type") == "searchResEntry"
            ]
            total_entries += len(page_entries)
            logger.debug(f"Page {page_num}: Got {len(page_entries)} entries")

            yield page_entries

            if result_code in RECOVERABLE_RESULT_CODES:
                accumulator.add_warning(
                    SearchWarning(
                        message=(
                            f"Search stopped on page {page_num} after {total_entries} entries: "
                            f"{RECOVERABLE_RESULT_CODES[result_code]} (code {result_code})"
                        ),
                        result_code=result_code,
                        description=result_desc,
                        dn=spec.search_base,
                    )
                )
                return

            cookie = self._extract_cookie(result)
            if not cookie:
                logger.debug(
                    f"Empty cookie received, pagination complete: {total_entries} entries "
                    f"across {page_num} pages"
                )
                return
