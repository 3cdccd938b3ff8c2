"""Provider policy table: TLS and connect-timeout defaults by hostname.

Hosts match a provider only on an exact domain suffix (``host == suffix`` or
``host.endswith("." + suffix)``). Loopback and private addresses never use
TLS. An explicit ``ssl`` value on the connection config wins over the table.
"""

import ipaddress
import ssl
from dataclasses import dataclass

from querysafe.data_connectors.types import ConnectionConfig, DatabaseType, SSLOptions

LOCAL_CONNECT_TIMEOUT = 5.0
UNKNOWN_CONNECT_TIMEOUT = 20.0
UNKNOWN_SQLSERVER_CONNECT_TIMEOUT = 25.0


@dataclass(frozen=True)
class ProviderPolicy:
    name: str
    suffixes: tuple[str, ...]
    ssl: bool
    verify: bool
    connect_timeout: float


@dataclass(frozen=True)
class ResolvedPolicy:
    """Effective connect settings for one config."""

    provider: str
    ssl_enabled: bool
    verify: bool
    connect_timeout: float
    is_cloud: bool

    def ssl_context(self) -> ssl.SSLContext | None:
        if not self.ssl_enabled:
            return None
        context = ssl.create_default_context()
        if not self.verify:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context


PROVIDER_POLICIES: dict[DatabaseType, tuple[ProviderPolicy, ...]] = {
    DatabaseType.POSTGRESQL: (
        # Supabase and Heroku present self-signed chains
        ProviderPolicy("Supabase", ("supabase.co", "supabase.com"), ssl=True, verify=False, connect_timeout=15.0),
        ProviderPolicy("AWS RDS", ("rds.amazonaws.com",), ssl=True, verify=True, connect_timeout=20.0),
        ProviderPolicy("Azure PostgreSQL", ("postgres.database.azure.com",), ssl=True, verify=True, connect_timeout=25.0),
        ProviderPolicy("Google Cloud SQL", ("sql.goog",), ssl=True, verify=True, connect_timeout=20.0),
        ProviderPolicy("Heroku", ("compute-1.amazonaws.com", "compute.amazonaws.com"), ssl=True, verify=False, connect_timeout=15.0),
        ProviderPolicy("DigitalOcean", ("ondigitalocean.com",), ssl=True, verify=True, connect_timeout=15.0),
        ProviderPolicy("Render", ("render.com",), ssl=True, verify=False, connect_timeout=15.0),
        ProviderPolicy("Railway", ("railway.app", "rlwy.net"), ssl=False, verify=False, connect_timeout=15.0),
    ),
    DatabaseType.MYSQL: (
        ProviderPolicy("AWS RDS", ("rds.amazonaws.com",), ssl=True, verify=True, connect_timeout=20.0),
        ProviderPolicy("Azure MySQL", ("mysql.database.azure.com",), ssl=True, verify=True, connect_timeout=25.0),
        ProviderPolicy("PlanetScale", ("psdb.cloud", "connect.psdb.cloud"), ssl=True, verify=True, connect_timeout=15.0),
        ProviderPolicy("Google Cloud SQL", ("sql.goog",), ssl=True, verify=True, connect_timeout=20.0),
        ProviderPolicy("DigitalOcean", ("ondigitalocean.com",), ssl=True, verify=True, connect_timeout=15.0),
        ProviderPolicy("Railway", ("railway.app", "rlwy.net"), ssl=False, verify=False, connect_timeout=15.0),
    ),
    DatabaseType.SQLSERVER: (
        ProviderPolicy("Azure SQL", ("database.windows.net",), ssl=True, verify=True, connect_timeout=30.0),
        # RDS SQL Server ships its own CA; clients trust the server certificate
        ProviderPolicy("AWS RDS", ("rds.amazonaws.com",), ssl=True, verify=False, connect_timeout=25.0),
        ProviderPolicy("Google Cloud SQL", ("sql.goog",), ssl=True, verify=False, connect_timeout=25.0),
    ),
}


def matches_suffix(host: str, suffix: str) -> bool:
    host = host.lower().rstrip(".")
    suffix = suffix.lower()
    return host == suffix or host.endswith("." + suffix)


def is_local_host(host: str | None) -> bool:
    """True for localhost, loopback, private and link-local addresses."""
    if not host:
        return True
    normalized = host.lower().strip().strip("[]")
    if normalized in ("localhost", "localhost.localdomain") or normalized.endswith(".localhost"):
        return True
    try:
        address = ipaddress.ip_address(normalized)
    except ValueError:
        return False
    return address.is_loopback or address.is_private or address.is_link_local


def find_provider(db_type: DatabaseType, host: str | None) -> ProviderPolicy | None:
    if not host:
        return None
    for policy in PROVIDER_POLICIES.get(db_type, ()):
        if any(matches_suffix(host, suffix) for suffix in policy.suffixes):
            return policy
    return None


def resolve_policy(config: ConnectionConfig) -> ResolvedPolicy:
    """Resolve TLS and connect-timeout settings for a connection config."""
    if config.db_type == DatabaseType.SQLITE:
        return ResolvedPolicy("SQLite File", False, False, LOCAL_CONNECT_TIMEOUT, False)

    if is_local_host(config.host):
        resolved = ResolvedPolicy("Local", False, False, LOCAL_CONNECT_TIMEOUT, False)
    else:
        provider = find_provider(config.db_type, config.host)
        if provider is not None:
            resolved = ResolvedPolicy(provider.name, provider.ssl, provider.verify, provider.connect_timeout, True)
        else:
            timeout = (
                UNKNOWN_SQLSERVER_CONNECT_TIMEOUT
                if config.db_type == DatabaseType.SQLSERVER
                else UNKNOWN_CONNECT_TIMEOUT
            )
            resolved = ResolvedPolicy("Unknown Provider", True, False, timeout, False)

    return _apply_override(resolved, config.ssl)


def _apply_override(resolved: ResolvedPolicy, override: bool | SSLOptions | None) -> ResolvedPolicy:
    if override is None:
        return resolved
    if isinstance(override, SSLOptions):
        return ResolvedPolicy(resolved.provider, True, override.verify, resolved.connect_timeout, resolved.is_cloud)
    if override:
        # TLS forced on; verification follows the table entry
        return ResolvedPolicy(resolved.provider, True, resolved.verify, resolved.connect_timeout, resolved.is_cloud)
    return ResolvedPolicy(resolved.provider, False, False, resolved.connect_timeout, resolved.is_cloud)
