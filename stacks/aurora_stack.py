from typing import Optional

import structlog
from aws_cdk import (
    Stack,
    CfnOutput
)
from constructs import Construct

from config.topology import SecretScope, TopologyConfig
from secure_templates.instance import SecureClientInstance
from secure_templates.network import SecureNetwork
from secure_templates.rds import SecureAuroraCluster
from secure_templates.rds_proxy import SecureDatabaseProxy

logger = structlog.get_logger(__name__)


class AuroraStack(Stack):
    """
    Whole topology: VPC + security groups, client EC2 instance,
    Aurora PostgreSQL cluster and the RDS Proxy in front of it.

    The network and its security groups are owned here; every other
    construct only receives references to them. CloudFormation derives the
    creation order from those references.
    """

    def __init__(self, scope: Construct, construct_id: str,
                 config: TopologyConfig, **kwargs) -> None:
        super().__init__(scope, construct_id, **kwargs)

        self.config = config

        # ====================================================================
        # NETWORK - VPC (public + isolated tiers) and access groups
        # ====================================================================
        self.network = SecureNetwork(self, "Vpc", config=config.network)

        # ====================================================================
        # AURORA - writer + readers from one member template
        # ====================================================================
        self.aurora = SecureAuroraCluster(
            self, "Aurora",
            network=self.network,
            security_groups=[self.network.server_sg],
            config=config.database,
            production=config.is_production
        )

        # ====================================================================
        # RDS PROXY - authenticates with the cluster's secret
        # ====================================================================
        self.proxy: Optional[SecureDatabaseProxy] = None
        if config.proxy.enabled:
            self.proxy = SecureDatabaseProxy(
                self, "RdsProxy",
                network=self.network,
                cluster=self.aurora.cluster,
                secret=self.aurora.secret,
                security_group=self.network.proxy_sg,
                config=config.proxy
            )

        # ====================================================================
        # CLIENT EC2 INSTANCE - public subnet, client security group
        # ====================================================================
        secret_arn = None
        if config.compute.secret_scope is SecretScope.SCOPED:
            secret_arn = self.aurora.secret_arn

        self.client = SecureClientInstance(
            self, "Ec2Instance",
            network=self.network,
            security_group=self.network.client_sg,
            config=config.compute,
            secret_arn=secret_arn
        )

        # ====================================================================
        # OUTPUTS
        # ====================================================================
        CfnOutput(self, "VpcId", value=self.network.vpc.vpc_id)
        CfnOutput(self, "ClusterEndpoint", value=self.aurora.cluster.cluster_endpoint.hostname)
        CfnOutput(self, "ClusterReadEndpoint", value=self.aurora.cluster.cluster_read_endpoint.hostname)
        CfnOutput(self, "MasterUserSecretArn", value=self.aurora.secret_arn)
        CfnOutput(self, "InstanceId", value=self.client.instance.instance_id)
        if self.proxy is not None:
            CfnOutput(self, "ProxyEndpoint", value=self.proxy.endpoint)

        logger.info(
            "topology_defined",
            stack=construct_id,
            environment=config.environment_name,
            proxy=config.proxy.enabled,
            client_secret_scope=config.compute.secret_scope.value,
        )
