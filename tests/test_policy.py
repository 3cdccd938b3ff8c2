import pytest

from querysafe.data_connectors.policy import is_local_host, matches_suffix, resolve_policy
from querysafe.data_connectors.types import DatabaseType, SSLOptions
from tests.conftest import make_config


class TestProviderResolution:
    @pytest.mark.parametrize(
        "host, provider, ssl_enabled, verify, timeout",
        [
            ("db.abcd.supabase.co", "Supabase", True, False, 15.0),
            ("mydb.c9akciq32.us-east-1.rds.amazonaws.com", "AWS RDS", True, True, 20.0),
            ("server.postgres.database.azure.com", "Azure PostgreSQL", True, True, 25.0),
            ("containers-us-west-1.railway.app", "Railway", False, False, 15.0),
        ],
    )
    def test_postgres_providers(self, host, provider, ssl_enabled, verify, timeout):
        policy = resolve_policy(make_config(host=host))

        assert policy.provider == provider
        assert policy.ssl_enabled is ssl_enabled
        assert policy.verify is verify
        assert policy.connect_timeout == timeout
        assert policy.is_cloud

    def test_suffix_must_match_on_a_label_boundary(self):
        policy = resolve_policy(make_config(host="evilsupabase.co"))

        assert policy.provider == "Unknown Provider"
        assert not policy.is_cloud

    def test_unknown_remote_host_uses_unverified_tls(self):
        policy = resolve_policy(make_config(host="db.example.org"))

        assert policy.ssl_enabled
        assert not policy.verify
        assert policy.connect_timeout == 20.0

    def test_unknown_sql_server_host_gets_longer_timeout(self):
        policy = resolve_policy(make_config(db_type=DatabaseType.SQLSERVER, host="db.example.org", port=1433))

        assert policy.connect_timeout == 25.0

    @pytest.mark.parametrize("host", ["localhost", "127.0.0.1", "10.0.0.5", "192.168.1.20", "::1"])
    def test_local_hosts_never_use_tls(self, host):
        policy = resolve_policy(make_config(host=host))

        assert policy.provider == "Local"
        assert not policy.ssl_enabled
        assert policy.connect_timeout == 5.0

    def test_sqlite_is_a_local_file(self):
        policy = resolve_policy(make_config(db_type=DatabaseType.SQLITE, host=None, port=None, database="/tmp/x.db"))

        assert policy.provider == "SQLite File"
        assert not policy.ssl_enabled


class TestExplicitOverride:
    def test_false_disables_tls_for_cloud_host(self):
        policy = resolve_policy(make_config(host="db.abcd.supabase.co", ssl=False))

        assert policy.provider == "Supabase"
        assert not policy.ssl_enabled

    def test_options_force_verification(self):
        policy = resolve_policy(make_config(host="localhost", ssl=SSLOptions(verify=True)))

        assert policy.ssl_enabled
        assert policy.verify

    def test_ssl_context_skips_verification_when_asked(self):
        policy = resolve_policy(make_config(host="db.abcd.supabase.co"))

        context = policy.ssl_context()

        assert context is not None
        assert not context.check_hostname


class TestHostHelpers:
    def test_matches_suffix(self):
        assert matches_suffix("rds.amazonaws.com", "rds.amazonaws.com")
        assert matches_suffix("x.rds.amazonaws.com.", "rds.amazonaws.com")
        assert not matches_suffix("xrds.amazonaws.com", "rds.amazonaws.com")

    def test_public_address_is_not_local(self):
        assert not is_local_host("8.8.8.8")
        assert is_local_host(None)
