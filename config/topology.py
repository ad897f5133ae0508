"""
Static topology configuration.

Every construct in the project is built from one of these frozen
dataclasses. Presets live at the bottom of the module; ``from_context``
picks one by the ``environment`` context key and applies ``-c key=value``
overrides on top of it.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from secure_templates.errors import ConfigurationError

DATABASE_PORT = 5432


class SubnetTier(str, Enum):
    PUBLIC = "public"
    ISOLATED = "isolated"


class SecretScope(str, Enum):
    """How far the client instance role may read Secrets Manager."""

    WILDCARD = "wildcard"
    SCOPED = "scoped"


@dataclass(frozen=True)
class SubnetTierConfig:
    name: str
    tier: SubnetTier
    cidr_mask: int
    map_public_ip: bool = False


@dataclass(frozen=True)
class NetworkConfig:
    cidr: str = "10.1.1.0/24"
    max_azs: int = 2
    nat_gateways: int = 0
    enable_dns_hostnames: bool = True
    enable_dns_support: bool = True
    s3_gateway_endpoint: bool = True
    subnet_tiers: Tuple[SubnetTierConfig, ...] = (
        SubnetTierConfig("Public", SubnetTier.PUBLIC, cidr_mask=27, map_public_ip=True),
        SubnetTierConfig("Isolated", SubnetTier.ISOLATED, cidr_mask=27),
    )


@dataclass(frozen=True)
class InstanceConfig:
    """Member template shared by the writer and every reader."""

    instance_type: str = "t4g.medium"
    auto_minor_version_upgrade: bool = True
    allow_major_version_upgrade: bool = False
    enable_performance_insights: bool = True
    ca_certificate_identifier: str = "rds-ca-rsa4096-g1"


@dataclass(frozen=True)
class CredentialsConfig:
    username: str = "postgresAdmin"
    # RDS keeps the master password in Secrets Manager itself
    managed: bool = True
    suppress_generated_secret: bool = True
    external_secret_arn: Optional[str] = None


CLUSTER_PARAMETERS = {
    "log_statement": "none",
    "pgaudit.log": "all",
    "pgaudit.role": "rds_pgaudit",
    "shared_preload_libraries": "pgaudit",
    "ssl_ciphers": "TLS_RSA_WITH_AES_256_GCM_SHA384",
}


@dataclass(frozen=True)
class DatabaseConfig:
    engine_full_version: str = "15.2"
    engine_major_version: str = "15"
    cluster_identifier: str = "db-cluster"
    default_database_name: str = "testDB"
    reader_count: int = 3
    port: int = DATABASE_PORT
    instance: InstanceConfig = field(default_factory=InstanceConfig)
    credentials: CredentialsConfig = field(default_factory=CredentialsConfig)
    cluster_parameters: Dict[str, str] = field(default_factory=lambda: dict(CLUSTER_PARAMETERS))
    backup_retention_days: int = 7
    backup_window: str = "16:00-16:30"
    maintenance_window: str = "Sat:17:00-Sat:17:30"
    log_exports: Tuple[str, ...] = ("postgresql",)
    log_retention: str = "ONE_YEAR"
    monitoring_interval_seconds: int = 60
    storage_encrypted: bool = True
    deletion_protection: bool = False
    iam_authentication: bool = False
    copy_tags_to_snapshot: bool = True


@dataclass(frozen=True)
class ProxyConfig:
    enabled: bool = True
    name: str = "db-proxy"
    require_tls: bool = False
    debug_logging: bool = True


@dataclass(frozen=True)
class ComputeConfig:
    instance_type: str = "t3.micro"
    secret_scope: SecretScope = SecretScope.WILDCARD
    # Context lookups need a concrete account/region at synth time
    cache_machine_image: bool = False
    ssm_session_permissions: bool = True


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("true", "1", "yes"):
        return True
    if text in ("false", "0", "no"):
        return False
    raise ValueError(f"not a boolean: {value!r}")


# context key -> (section, field, coercion)
CONTEXT_OVERRIDES: Dict[str, Tuple[Optional[str], str, Callable[[Any], Any]]] = {
    "project_name": (None, "project_name", str),
    "vpc_cidr": ("network", "cidr", str),
    "max_azs": ("network", "max_azs", int),
    "reader_count": ("database", "reader_count", int),
    "deletion_protection": ("database", "deletion_protection", _to_bool),
    "require_tls": ("proxy", "require_tls", _to_bool),
    "enable_proxy": ("proxy", "enabled", _to_bool),
    "client_secret_scope": ("compute", "secret_scope", SecretScope),
}


@dataclass(frozen=True)
class TopologyConfig:
    environment_name: str = "dev"
    project_name: str = "aurora"
    network: NetworkConfig = field(default_factory=NetworkConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    compute: ComputeConfig = field(default_factory=ComputeConfig)

    @property
    def is_production(self) -> bool:
        return self.environment_name == "prod"

    @property
    def stack_prefix(self) -> str:
        return f"{self.project_name}-{self.environment_name}"

    def with_overrides(self, overrides: Dict[str, Any]) -> "TopologyConfig":
        """Return a copy with CDK context overrides applied."""
        config = self
        for key, raw in overrides.items():
            if key not in CONTEXT_OVERRIDES or raw is None:
                continue
            section, name, coerce = CONTEXT_OVERRIDES[key]
            try:
                value = coerce(raw)
            except (TypeError, ValueError) as exc:
                raise ConfigurationError("context", f"invalid value for {key!r}", str(exc)) from exc
            if section is None:
                config = replace(config, **{name: value})
            else:
                config = replace(config, **{section: replace(getattr(config, section), **{name: value})})
        return config

    @classmethod
    def from_context(cls, node) -> "TopologyConfig":
        """Build the configuration from a construct node's context."""
        environment = node.try_get_context("environment") or "dev"
        if environment not in ENVIRONMENTS:
            raise ConfigurationError(
                "context",
                f"unknown environment {environment!r}",
                f"expected one of {sorted(ENVIRONMENTS)}",
            )
        overrides = {key: node.try_get_context(key) for key in CONTEXT_OVERRIDES}
        return ENVIRONMENTS[environment].with_overrides(overrides)


DEV_CONFIG = TopologyConfig(environment_name="dev")

PROD_CONFIG = TopologyConfig(
    environment_name="prod",
    database=DatabaseConfig(deletion_protection=True),
    proxy=ProxyConfig(require_tls=True),
    compute=ComputeConfig(secret_scope=SecretScope.SCOPED),
)

ENVIRONMENTS = {
    "dev": DEV_CONFIG,
    "prod": PROD_CONFIG,
}
