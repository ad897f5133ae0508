"""
Secure network template - VPC with public and isolated tiers plus the
client / server / proxy security groups.

Isolated subnets get no NAT gateway and therefore no route out of the VPC.
Ingress between the security groups is declared as data (ACCESS_RULES) and
checked before anything is created.
"""

import ipaddress
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, Tuple

import structlog
from aws_cdk import aws_ec2 as ec2
from constructs import Construct

from config.topology import DATABASE_PORT, NetworkConfig, SubnetTier
from secure_templates.errors import ConfigurationError, PlacementError

logger = structlog.get_logger(__name__)

CLIENT = "client"
SERVER = "server"
PROXY = "proxy"

# Smallest subnet EC2 accepts
MAX_SUBNET_MASK = 28
MIN_VPC_MASK = 16
# RDS subnet groups and RDS Proxy both span at least two zones
MIN_DATABASE_ZONES = 2

SUBNET_TYPES = {
    SubnetTier.PUBLIC: ec2.SubnetType.PUBLIC,
    SubnetTier.ISOLATED: ec2.SubnetType.PRIVATE_ISOLATED,
}


@dataclass(frozen=True)
class AccessRule:
    """Inbound rule on ``target`` allowing traffic from ``source``."""

    target: str
    source: str
    port: int = DATABASE_PORT
    description: str = ""


ACCESS_RULES: Tuple[AccessRule, ...] = (
    AccessRule(SERVER, CLIENT, description="Allow PostgreSQL from database clients"),
    # Also added by the proxy target binding; declared here so the matrix holds with the proxy disabled
    AccessRule(SERVER, PROXY, description="Allow PostgreSQL from RDS Proxy"),
    AccessRule(PROXY, CLIENT, description="Allow PostgreSQL from database clients to RDS Proxy"),
)

ALLOWED_SOURCES: Dict[str, FrozenSet[str]] = {
    CLIENT: frozenset(),
    SERVER: frozenset({CLIENT, PROXY}),
    PROXY: frozenset({CLIENT}),
}


def ingress_sources(rules: Iterable[AccessRule], target: str) -> FrozenSet[str]:
    return frozenset(rule.source for rule in rules if rule.target == target)


def validate_access_rules(rules: Iterable[AccessRule]) -> None:
    """Server takes database traffic from client and proxy, proxy from client, client from nobody."""
    rules = tuple(rules)
    for rule in rules:
        if rule.target not in ALLOWED_SOURCES or rule.source not in ALLOWED_SOURCES:
            raise ConfigurationError(
                f"{rule.target} access group",
                f"unknown access group in rule {rule.source} -> {rule.target}",
            )
        if rule.port != DATABASE_PORT:
            raise ConfigurationError(
                f"{rule.target} access group",
                f"ingress is limited to the database port {DATABASE_PORT}",
                f"rule from {rule.source} uses port {rule.port}",
            )
    for target, allowed in ALLOWED_SOURCES.items():
        actual = ingress_sources(rules, target)
        if actual != allowed:
            raise ConfigurationError(
                f"{target} access group",
                f"ingress sources must be exactly {sorted(allowed)}",
                f"got {sorted(actual)}",
            )


def validate_subnet_plan(config: NetworkConfig) -> None:
    try:
        network = ipaddress.ip_network(config.cidr)
    except ValueError as exc:
        raise ConfigurationError("network", f"invalid CIDR {config.cidr!r}", str(exc)) from exc

    if network.version != 4 or not MIN_VPC_MASK <= network.prefixlen <= MAX_SUBNET_MASK:
        raise ConfigurationError(
            "network",
            f"VPC CIDR must be IPv4 between /{MIN_VPC_MASK} and /{MAX_SUBNET_MASK}",
            f"got {config.cidr}",
        )
    if config.max_azs < 1:
        raise ConfigurationError("network", "at least one availability zone is required", f"max_azs={config.max_azs}")
    if config.nat_gateways != 0:
        raise ConfigurationError(
            "network",
            "isolated subnets must not have an outbound route",
            f"nat_gateways={config.nat_gateways}",
        )
    if not config.subnet_tiers:
        raise ConfigurationError("network", "at least one subnet tier is required")

    names = [tier.name for tier in config.subnet_tiers]
    if len(set(names)) != len(names):
        raise ConfigurationError("network", "subnet tier names must be unique", f"got {names}")

    for tier in config.subnet_tiers:
        if not network.prefixlen <= tier.cidr_mask <= MAX_SUBNET_MASK:
            raise ConfigurationError(
                f"{tier.name} subnets",
                f"mask must be between /{network.prefixlen} and /{MAX_SUBNET_MASK}",
                f"got /{tier.cidr_mask}",
            )
        if tier.map_public_ip != (tier.tier is SubnetTier.PUBLIC):
            raise ConfigurationError(
                f"{tier.name} subnets",
                "only public subnets auto-assign public addresses, and all of them do",
            )

    required = config.max_azs * sum(2 ** (32 - tier.cidr_mask) for tier in config.subnet_tiers)
    if required > network.num_addresses:
        raise ConfigurationError(
            "network",
            f"CIDR {config.cidr} cannot accommodate the subnet plan",
            f"{len(config.subnet_tiers)} tiers x {config.max_azs} zones need {required} addresses, "
            f"{network.num_addresses} available",
        )


class SecureNetwork(Construct):
    """
    VPC with one subnet per tier per availability zone, no NAT gateways,
    an S3 gateway endpoint and the three access groups.
    """

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        *,
        config: NetworkConfig,
        access_rules: Tuple[AccessRule, ...] = ACCESS_RULES,
    ) -> None:
        # Fail before any resource exists
        validate_subnet_plan(config)
        validate_access_rules(access_rules)

        super().__init__(scope, construct_id)
        self.config = config

        self.vpc = ec2.Vpc(
            self, "Default",
            ip_addresses=ec2.IpAddresses.cidr(config.cidr),
            enable_dns_hostnames=config.enable_dns_hostnames,
            enable_dns_support=config.enable_dns_support,
            nat_gateways=config.nat_gateways,
            max_azs=config.max_azs,
            subnet_configuration=[
                ec2.SubnetConfiguration(
                    name=tier.name,
                    subnet_type=SUBNET_TYPES[tier.tier],
                    cidr_mask=tier.cidr_mask,
                    map_public_ip_on_launch=True if tier.tier is SubnetTier.PUBLIC else None,
                )
                for tier in config.subnet_tiers
            ],
            gateway_endpoints={
                "S3": ec2.GatewayVpcEndpointOptions(
                    service=ec2.GatewayVpcEndpointAwsService.S3
                )
            } if config.s3_gateway_endpoint else None,
        )

        # ====================================================================
        # SECURITY GROUPS
        # ====================================================================
        self.security_groups: Dict[str, ec2.SecurityGroup] = {
            CLIENT: ec2.SecurityGroup(
                self, "DbClientSg",
                vpc=self.vpc,
                description="Database clients",
                allow_all_outbound=True
            ),
            SERVER: ec2.SecurityGroup(
                self, "DbServerSg",
                vpc=self.vpc,
                description="Aurora cluster members",
                allow_all_outbound=True
            ),
            PROXY: ec2.SecurityGroup(
                self, "RdsProxySg",
                vpc=self.vpc,
                description="RDS Proxy",
                allow_all_outbound=True
            ),
        }
        for rule in access_rules:
            self.security_groups[rule.target].add_ingress_rule(
                peer=self.security_groups[rule.source],
                connection=ec2.Port.tcp(rule.port),
                description=rule.description
            )

        logger.info(
            "network_defined",
            cidr=config.cidr,
            zones=config.max_azs,
            tiers=[tier.name for tier in config.subnet_tiers],
            subnets=config.max_azs * len(config.subnet_tiers),
            access_rules=len(access_rules),
        )

    @property
    def client_sg(self) -> ec2.SecurityGroup:
        return self.security_groups[CLIENT]

    @property
    def server_sg(self) -> ec2.SecurityGroup:
        return self.security_groups[SERVER]

    @property
    def proxy_sg(self) -> ec2.SecurityGroup:
        return self.security_groups[PROXY]

    def has_tier(self, tier: SubnetTier) -> bool:
        return any(t.tier is tier for t in self.config.subnet_tiers)

    def zone_count(self, tier: SubnetTier) -> int:
        """Number of availability zones holding a subnet of ``tier``."""
        if not self.has_tier(tier):
            return 0
        subnets = self.vpc.select_subnets(subnet_type=SUBNET_TYPES[tier]).subnets
        return len({subnet.availability_zone for subnet in subnets})

    def subnet_selection(
        self,
        tier: SubnetTier,
        resource: str,
        one_per_az: bool = True,
        min_zones: int = 1,
    ) -> ec2.SubnetSelection:
        """Selection over every subnet of ``tier``; ``resource`` names the caller in errors."""
        if not self.has_tier(tier):
            raise PlacementError(
                resource,
                f"requires a {tier.value} subnet",
                f"network {self.node.id} has none",
            )
        zones = self.zone_count(tier)
        if zones < min_zones:
            raise PlacementError(
                resource,
                f"requires {tier.value} subnets in at least {min_zones} availability zones",
                f"network {self.node.id} spans {zones}",
            )
        return ec2.SubnetSelection(subnet_type=SUBNET_TYPES[tier], one_per_az=one_per_az)
