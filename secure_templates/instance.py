"""
Client instance template - one EC2 host in the public tier that talks to the
database through the client security group.
"""

from typing import List, Optional

import structlog
from aws_cdk import (
    Annotations,
    aws_ec2 as ec2,
    aws_iam as iam,
)
from constructs import Construct

from config.topology import ComputeConfig, SecretScope, SubnetTier
from secure_templates.errors import ConfigurationError
from secure_templates.network import SecureNetwork

logger = structlog.get_logger(__name__)


class SecureClientInstance(Construct):
    """
    EC2 database client with SSM session access and permission to read
    database credentials from Secrets Manager.

    With ``SecretScope.WILDCARD`` the role can read any secret; synth emits a
    warning so the grant is reviewed rather than silently kept.
    """

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        *,
        network: SecureNetwork,
        security_group: ec2.ISecurityGroup,
        config: ComputeConfig,
        secret_arn: Optional[str] = None,
    ) -> None:
        vpc_subnets = network.subnet_selection(SubnetTier.PUBLIC, construct_id, one_per_az=False)
        resources = self._secret_resources(construct_id, config.secret_scope, secret_arn)

        super().__init__(scope, construct_id)

        # IAM Role for the client host
        self.role = iam.Role(
            self, "Role",
            assumed_by=iam.ServicePrincipal("ec2.amazonaws.com"),
            managed_policies=[
                iam.ManagedPolicy(
                    self, "GetSecretValuePolicy",
                    statements=[
                        iam.PolicyStatement(
                            effect=iam.Effect.ALLOW,
                            actions=["secretsmanager:GetSecretValue"],
                            resources=resources
                        )
                    ]
                )
            ]
        )

        self.instance = ec2.Instance(
            self, "Default",
            machine_image=ec2.MachineImage.latest_amazon_linux2023(
                cached_in_context=config.cache_machine_image
            ),
            instance_type=ec2.InstanceType(config.instance_type),
            vpc=network.vpc,
            vpc_subnets=vpc_subnets,
            propagate_tags_to_volume_on_creation=True,
            ssm_session_permissions=config.ssm_session_permissions,
            role=self.role,
            security_group=security_group
        )

        if config.secret_scope is SecretScope.WILDCARD:
            Annotations.of(self).add_warning_v2(
                "@aurora:clientSecretWildcard",
                "Client role can read every secret in the account (resource '*' wildcard); "
                "confirm this is intended or set client_secret_scope=scoped",
            )
            logger.warning("client_secret_wildcard", instance=construct_id)

        logger.info(
            "client_instance_defined",
            instance_type=config.instance_type,
            secret_scope=config.secret_scope.value,
        )

    @staticmethod
    def _secret_resources(resource: str, scope: SecretScope, secret_arn: Optional[str]) -> List[str]:
        if scope is SecretScope.WILDCARD:
            return ["*"]
        if not secret_arn:
            raise ConfigurationError(resource, "scoped secret access needs the cluster secret ARN")
        return [secret_arn]
