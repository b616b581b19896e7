import ssl
import unittest
from unittest.mock import MagicMock, patch

from ldap3 import ANONYMOUS, KERBEROS, SASL, SIMPLE
from ldap3.core.exceptions import LDAPException, LDAPSocketOpenError, LDAPSocketReceiveError

from directory_query.adapters.ldap_adapter import DOMAIN_SCOPE_CONTROL, LDAPAdapter
from directory_query.cancellation import CancellationToken
from directory_query.exceptions import (
    ConfigurationError,
    DirectoryConnectionError,
    DirectorySearchError,
    QueryCancelledError,
)
from directory_query.models.directory_entry import QueryAccumulator
from fake_directory import FakeConnection, FakeDirectory

BASE_CONFIG = {
    "server": "dc01.example.com",
    "search_base": "DC=example,DC=com",
    "auth_mode": "credential",
    "user": "EXAMPLE\\svc-directory",
    "password": "secret",
}


def _config(**overrides):
    config = dict(BASE_CONFIG)
    config.update(overrides)
    return {key: value for key, value in config.items() if value is not None}


class TestAdapterConfiguration(unittest.TestCase):
    """Test cases for LDAPAdapter configuration validation."""

    def test_defaults(self):
        adapter = LDAPAdapter(_config())
        self.assertEqual(adapter.port, 636)
        self.assertTrue(adapter.use_ssl)
        self.assertEqual(adapter.timeout, 120)
        self.assertEqual(adapter.default_page_size, 1000)
        self.assertEqual(adapter.max_range_depth, 250)
        self.assertFalse(adapter.tolerate_partial_ranges)

    def test_non_ssl_default_port(self):
        adapter = LDAPAdapter(_config(use_ssl=False))
        self.assertEqual(adapter.port, 389)

    def test_configuration_must_be_a_dict(self):
        with self.assertRaises(TypeError):
            LDAPAdapter(["dc01.example.com"])

    def test_missing_required_keys(self):
        with self.assertRaises(ConfigurationError) as context:
            LDAPAdapter(_config(server=None, search_base=None))
        self.assertIn("server", str(context.exception))
        self.assertIn("search_base", str(context.exception))

    def test_invalid_port(self):
        for port in (0, 65536, "636"):
            with self.subTest(port=port):
                with self.assertRaises(ConfigurationError):
                    LDAPAdapter(_config(port=port))

    def test_certificate_mode_requires_certificate(self):
        with self.assertRaises(ConfigurationError):
            LDAPAdapter(_config(auth_mode="certificate"))

    def test_credential_mode_requires_user(self):
        with self.assertRaises(ConfigurationError):
            LDAPAdapter(_config(user=None))

    def test_certificate_file_rejected_outside_certificate_mode(self):
        with self.assertRaises(ConfigurationError):
            LDAPAdapter(_config(certificate_file="/etc/ssl/client.pem"))

    def test_unknown_auth_mode(self):
        with self.assertRaises(ConfigurationError):
            LDAPAdapter(_config(auth_mode="smartcard"))

    def test_connection_info_excludes_password(self):
        info = LDAPAdapter(_config()).get_connection_info()
        self.assertEqual(info["server"], "dc01.example.com")
        self.assertEqual(info["auth_mode"], "credential")
        self.assertNotIn("password", info)
        self.assertNotIn("secret", repr(info))


class TestAdapterConnection(unittest.TestCase):
    """Test cases for opening connections in each authentication mode."""

    def setUp(self):
        self.server_patch = patch("directory_query.adapters.ldap_adapter.Server")
        self.connection_patch = patch("directory_query.adapters.ldap_adapter.Connection")
        self.tls_patch = patch("directory_query.adapters.ldap_adapter.Tls")

        self.mock_server = self.server_patch.start()
        self.mock_connection = self.connection_patch.start()
        self.mock_tls = self.tls_patch.start()

        self.mock_conn = self.mock_connection.return_value
        self.mock_conn.bind.return_value = True

    def tearDown(self):
        patch.stopall()

    def test_credential_mode_uses_simple_bind(self):
        adapter = LDAPAdapter(_config())
        connection = adapter.open_connection()

        self.assertIs(connection, self.mock_conn)
        kwargs = self.mock_connection.call_args.kwargs
        self.assertEqual(kwargs["authentication"], SIMPLE)
        self.assertEqual(kwargs["user"], "EXAMPLE\\svc-directory")
        self.assertEqual(kwargs["password"], "secret")
        self.assertEqual(kwargs["receive_timeout"], 120)
        self.assertTrue(kwargs["read_only"])
        self.assertFalse(kwargs["auto_referrals"])
        self.mock_conn.open.assert_called_once()
        self.mock_conn.bind.assert_called_once()

    def test_ldap3_range_retrieval_is_disabled(self):
        LDAPAdapter(_config()).open_connection()

        kwargs = self.mock_connection.call_args.kwargs
        self.assertIs(kwargs["auto_range"], False)
        self.assertIs(kwargs["return_empty_attributes"], False)

    def test_server_uses_connect_timeout(self):
        LDAPAdapter(_config(timeout=30)).open_connection()

        kwargs = self.mock_server.call_args.kwargs
        self.assertEqual(self.mock_server.call_args.args, ("dc01.example.com",))
        self.assertEqual(kwargs["port"], 636)
        self.assertTrue(kwargs["use_ssl"])
        self.assertEqual(kwargs["connect_timeout"], 30)

    def test_current_identity_uses_kerberos_ticket(self):
        adapter = LDAPAdapter(_config(auth_mode=None, user=None, password=None))
        adapter.open_connection()

        kwargs = self.mock_connection.call_args.kwargs
        self.assertEqual(kwargs["authentication"], SASL)
        self.assertEqual(kwargs["sasl_mechanism"], KERBEROS)
        self.assertNotIn("user", kwargs)
        self.mock_conn.bind.assert_called_once()

    def test_kerberos_mode_with_principal(self):
        adapter = LDAPAdapter(_config(auth_mode="kerberos", user="svc@EXAMPLE.COM", password=None))
        adapter.open_connection()

        kwargs = self.mock_connection.call_args.kwargs
        self.assertEqual(kwargs["sasl_mechanism"], KERBEROS)
        self.assertEqual(kwargs["user"], "svc@EXAMPLE.COM")

    def test_certificate_mode_skips_bind(self):
        adapter = LDAPAdapter(
            _config(
                auth_mode="certificate",
                user=None,
                password=None,
                certificate_file="/etc/ssl/client.pem",
                private_key_file="/etc/ssl/client.key",
                ca_certs_file="/etc/ssl/ca.pem",
            )
        )
        adapter.open_connection()

        self.assertEqual(self.mock_connection.call_args.kwargs["authentication"], ANONYMOUS)
        self.mock_tls.assert_called_once_with(
            local_private_key_file="/etc/ssl/client.key",
            local_certificate_file="/etc/ssl/client.pem",
            validate=ssl.CERT_REQUIRED,
            ca_certs_file="/etc/ssl/ca.pem",
        )
        self.mock_conn.bind.assert_not_called()
        self.mock_conn.start_tls.assert_not_called()

    def test_certificate_mode_without_ssl_starts_tls(self):
        adapter = LDAPAdapter(
            _config(
                auth_mode="certificate",
                user=None,
                password=None,
                use_ssl=False,
                certificate_file="/etc/ssl/client.pem",
            )
        )
        adapter.open_connection()

        self.mock_conn.start_tls.assert_called_once()
        self.mock_conn.bind.assert_not_called()

    def test_bind_failure(self):
        self.mock_conn.bind.return_value = False
        self.mock_conn.result = {"result": 49, "description": "invalidCredentials"}

        with self.assertRaises(DirectoryConnectionError) as context:
            LDAPAdapter(_config()).open_connection()
        self.assertIn("invalidCredentials", str(context.exception))

    def test_transport_failure_is_wrapped(self):
        self.mock_conn.open.side_effect = LDAPSocketOpenError("unable to open socket")

        with self.assertRaises(DirectoryConnectionError) as context:
            LDAPAdapter(_config()).open_connection()
        self.assertIsInstance(context.exception.__cause__, LDAPSocketOpenError)

    @patch("directory_query.adapters.ldap_adapter.keyring.get_password")
    def test_password_from_keyring(self, mock_get_password):
        mock_get_password.return_value = "from-keyring"
        adapter = LDAPAdapter(_config(password=None, keyring_service="directory_query"))

        adapter.open_connection()

        mock_get_password.assert_called_once_with("directory_query", "EXAMPLE\\svc-directory")
        self.assertEqual(self.mock_connection.call_args.kwargs["password"], "from-keyring")

    @patch("directory_query.adapters.ldap_adapter.getpass.getpass")
    def test_password_prompt_fallback(self, mock_getpass):
        mock_getpass.return_value = "typed"
        adapter = LDAPAdapter(_config(password=None))

        adapter.open_connection()

        mock_getpass.assert_called_once()
        self.assertEqual(self.mock_connection.call_args.kwargs["password"], "typed")

    def test_close_connection_logs_unbind_errors(self):
        connection = MagicMock()
        connection.unbind.side_effect = LDAPException("socket already closed")

        LDAPAdapter(_config()).close_connection(connection)

        connection.unbind.assert_called_once()


class TestConnectionCheck(unittest.TestCase):
    """Test cases for test_connection()."""

    def test_successful_check(self):
        directory = FakeDirectory().add("DC=example,DC=com", objectClass=["top", "domain"])
        connection = FakeConnection(directory)
        adapter = LDAPAdapter(_config())

        with patch.object(LDAPAdapter, "_create_connection", return_value=connection):
            self.assertTrue(adapter.test_connection())

        self.assertEqual(connection.search_calls[0]["attributes"], ["1.1"])
        self.assertEqual(connection.unbind_calls, 1)

    def test_failed_check(self):
        connection = FakeConnection(FakeDirectory())
        adapter = LDAPAdapter(_config())

        with patch.object(LDAPAdapter, "_create_connection", return_value=connection):
            self.assertFalse(adapter.test_connection())

        self.assertEqual(connection.unbind_calls, 1)


class TestIterPages(unittest.TestCase):
    """Test cases for the paged search loop."""

    def setUp(self):
        self.adapter = LDAPAdapter(_config())
        self.directory = FakeDirectory().add_users(25)
        self.connection = FakeConnection(self.directory)
        self.accumulator = QueryAccumulator()

    def _pages(self, **spec_args):
        spec = self.adapter.build_specification("(objectClass=user)", **spec_args)
        return list(self.adapter.iter_pages(self.connection, spec, self.accumulator))

    def test_all_pages_are_returned(self):
        pages = self._pages(page_size=10)

        self.assertEqual([len(page) for page in pages], [10, 10, 5])
        dns = [entry["dn"] for page in pages for entry in page]
        self.assertEqual(sorted(dns), sorted(self.directory.entries))
        self.assertEqual(
            [call["paged_cookie"] for call in self.connection.search_calls],
            [None, b"10", b"20"],
        )
        self.assertEqual(self.accumulator.warnings, [])

    def test_single_page_when_everything_fits(self):
        pages = self._pages(page_size=100)
        self.assertEqual(len(pages), 1)
        self.assertEqual(len(self.connection.search_calls), 1)

    def test_requests_carry_paging_and_domain_scope_controls(self):
        self._pages(page_size=10)
        for call in self.connection.search_calls:
            self.assertEqual(call["paged_size"], 10)
            self.assertIn(DOMAIN_SCOPE_CONTROL, call["controls"])

    def test_time_limit_follows_timeout(self):
        connection = MagicMock()
        connection.result = {"result": 0, "description": "success", "controls": {}}
        connection.response = []
        spec = self.adapter.build_specification("(objectClass=user)", timeout=45)

        list(self.adapter.iter_pages(connection, spec, self.accumulator))

        self.assertEqual(connection.search.call_args.kwargs["time_limit"], 45)

    def test_fractional_timeout_rounds_up(self):
        connection = MagicMock()
        connection.result = {"result": 0, "description": "success", "controls": {}}
        connection.response = []
        spec = self.adapter.build_specification("(objectClass=user)", timeout=0.5)

        list(self.adapter.iter_pages(connection, spec, self.accumulator))

        self.assertEqual(connection.search.call_args.kwargs["time_limit"], 1)

    def test_time_limit_capped_by_deadline(self):
        connection = MagicMock()
        connection.result = {"result": 0, "description": "success", "controls": {}}
        connection.response = []
        spec = self.adapter.build_specification("(objectClass=user)", timeout=120)
        token = CancellationToken.with_timeout(30)

        list(self.adapter.iter_pages(connection, spec, self.accumulator, token))

        time_limit = connection.search.call_args.kwargs["time_limit"]
        self.assertGreaterEqual(time_limit, 1)
        self.assertLessEqual(time_limit, 30)

    def test_size_limit_stops_with_warning(self):
        self.directory.add_users(15, base="OU=Staff,DC=example,DC=com")
        pages = self._pages(page_size=10, size_limit=30)

        self.assertEqual(sum(len(page) for page in pages), 30)
        self.assertEqual(len(self.accumulator.warnings), 1)
        self.assertEqual(self.accumulator.warnings[0].result_code, 4)
        self.assertEqual(self.accumulator.warnings[0].dn, "DC=example,DC=com")

    def test_non_recoverable_result_raises(self):
        spec = self.adapter.build_specification(
            "(objectClass=*)", search_base="CN=missing,DC=example,DC=com", scope="base"
        )
        with self.assertRaises(DirectorySearchError) as context:
            list(self.adapter.iter_pages(self.connection, spec, self.accumulator))
        self.assertEqual(context.exception.result_code, 32)

    def test_transport_error_propagates(self):
        connection = FakeConnection(self.directory, raise_on_search=2)
        spec = self.adapter.build_specification("(objectClass=user)", page_size=10)
        pages = self.adapter.iter_pages(connection, spec, self.accumulator)

        self.assertEqual(len(next(pages)), 10)
        with self.assertRaises(LDAPSocketReceiveError):
            next(pages)

    def test_cancelled_before_first_request(self):
        token = CancellationToken()
        token.cancel()
        spec = self.adapter.build_specification("(objectClass=user)")

        with self.assertRaises(QueryCancelledError):
            list(self.adapter.iter_pages(self.connection, spec, self.accumulator, token))
        self.assertEqual(self.connection.search_calls, [])

    def test_cancelled_between_pages(self):
        token = CancellationToken()
        spec = self.adapter.build_specification("(objectClass=user)", page_size=10)
        pages = self.adapter.iter_pages(self.connection, spec, self.accumulator, token)

        next(pages)
        token.cancel("operator abort")
        with self.assertRaises(QueryCancelledError) as context:
            next(pages)
        self.assertIn("operator abort", str(context.exception))
        self.assertEqual(len(self.connection.search_calls), 1)


class TestBuildSpecification(unittest.TestCase):
    """Test cases for building search specifications from adapter defaults."""

    def setUp(self):
        self.adapter = LDAPAdapter(_config(default_page_size=500, size_limit=0))

    def test_adapter_defaults_apply(self):
        spec = self.adapter.build_specification("(objectClass=user)")
        self.assertEqual(spec.search_base, "DC=example,DC=com")
        self.assertEqual(spec.page_size, 500)
        self.assertEqual(spec.attributes, ("*",))
        self.assertEqual(spec.timeout, 120)

    def test_empty_attribute_list_requests_object_class(self):
        spec = self.adapter.build_specification("(objectClass=user)", attributes=[])
        self.assertEqual(spec.attributes, ("objectClass",))

    def test_invalid_page_size(self):
        with self.assertRaises(ConfigurationError):
            self.adapter.build_specification("(objectClass=user)", page_size=-5)


if __name__ == "__main__":
    unittest.main()
