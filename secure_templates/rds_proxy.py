"""
Secure RDS Proxy template - secret-based auth only, execution role limited
to reading the one secret the proxy authenticates with.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import structlog
from aws_cdk import (
    aws_ec2 as ec2,
    aws_iam as iam,
    aws_rds as rds,
    aws_secretsmanager as secretsmanager,
)
from constructs import Construct

from config.topology import ProxyConfig, SubnetTier
from secure_templates.errors import PlacementError, ScopeViolationError
from secure_templates.network import MIN_DATABASE_ZONES, SecureNetwork

logger = structlog.get_logger(__name__)

SECRET_READ_ACTIONS = (
    "secretsmanager:GetSecretValue",
    "secretsmanager:DescribeSecret",
)


@dataclass(frozen=True)
class SecretReadGrant:
    """Permission set handed to an execution role for reading secrets."""

    resources: Tuple[str, ...]
    actions: Tuple[str, ...] = SECRET_READ_ACTIONS

    @classmethod
    def for_secret(cls, secret_arn: str) -> "SecretReadGrant":
        return cls(resources=(secret_arn,))

    def ensure_scoped_to(self, secret_arn: str, resource: str) -> None:
        wildcard = any("*" in arn for arn in self.resources)
        if wildcard or self.resources != (secret_arn,):
            raise ScopeViolationError(
                resource,
                "execution role may read exactly one secret, the one it authenticates with",
                f"granted {list(self.resources)}",
            )

    def to_statement(self) -> iam.PolicyStatement:
        return iam.PolicyStatement(
            effect=iam.Effect.ALLOW,
            actions=list(self.actions),
            resources=list(self.resources)
        )


class SecureDatabaseProxy(Construct):
    """
    RDS Proxy bound to a single cluster.

    IAM auth stays disabled; clients authenticate with the credentials held
    in ``secret``. The role ignores later policy additions so the scoped
    managed policy is the only permission it ever carries.
    """

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        *,
        network: SecureNetwork,
        cluster: rds.IDatabaseCluster,
        secret: secretsmanager.ISecret,
        security_group: ec2.ISecurityGroup,
        config: ProxyConfig,
        subnet_tier: SubnetTier = SubnetTier.ISOLATED,
        grant: Optional[SecretReadGrant] = None,
    ) -> None:
        if subnet_tier is not SubnetTier.ISOLATED:
            raise PlacementError(
                construct_id,
                "connection proxy must be placed in isolated subnets",
                f"requested {subnet_tier.value}",
            )
        vpc_subnets = network.subnet_selection(
            SubnetTier.ISOLATED, construct_id, min_zones=MIN_DATABASE_ZONES
        )

        # ENFORCE LEAST PRIVILEGE on the proxy role
        grant = grant or SecretReadGrant.for_secret(secret.secret_arn)
        grant.ensure_scoped_to(secret.secret_arn, construct_id)

        super().__init__(scope, construct_id)

        self.role = iam.Role(
            self, "ProxyRole",
            assumed_by=iam.ServicePrincipal("rds.amazonaws.com"),
            managed_policies=[
                iam.ManagedPolicy(
                    self, "GetSecretValuePolicy",
                    statements=[grant.to_statement()]
                )
            ]
        )

        self.proxy = rds.DatabaseProxy(
            self, "Default",
            proxy_target=rds.ProxyTarget.from_cluster(cluster),
            secrets=[secret],
            vpc=network.vpc,
            db_proxy_name=config.name,
            debug_logging=config.debug_logging,
            iam_auth=False,
            require_tls=config.require_tls,
            security_groups=[security_group],
            vpc_subnets=vpc_subnets,
            role=self.role.without_policy_updates()
        )

        logger.info(
            "connection_proxy_defined",
            proxy=config.name,
            require_tls=config.require_tls,
            auth_scheme="SECRETS",
        )

    @property
    def endpoint(self) -> str:
        return self.proxy.endpoint
