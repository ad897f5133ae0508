"""
Secure Aurora PostgreSQL template - enforces encryption, isolated-subnet
placement, a pinned CA on every member and a single credential store.

Every member (writer, construction-time readers and readers added later
through add_reader) is built from the same member template, so settings
such as the CA identifier cannot drift between instances.
"""

import string
from typing import List, Sequence, Tuple

import structlog
from aws_cdk import (
    Annotations,
    Duration,
    aws_ec2 as ec2,
    aws_iam as iam,
    aws_logs as logs,
    aws_rds as rds,
    aws_secretsmanager as secretsmanager,
)
from constructs import Construct

from config.topology import CredentialsConfig, DatabaseConfig, SubnetTier
from secure_templates.errors import ConfigurationError, CredentialConflictError, PlacementError
from secure_templates.network import MIN_DATABASE_ZONES, SecureNetwork

logger = structlog.get_logger(__name__)

# Aurora allows up to 15 replicas
MAX_READERS = 15


def member_names(index: int) -> Tuple[str, str]:
    """Construct id and instance identifier of the ``index``-th member (0 is the writer)."""
    letter = string.ascii_lowercase[index]
    return f"Instance{letter.upper()}", f"db-instance-{letter}"


def validate_credentials(resource: str, credentials: CredentialsConfig) -> None:
    if not credentials.managed:
        return
    if credentials.external_secret_arn:
        raise CredentialConflictError(
            resource,
            "RDS-managed master password cannot be combined with an external secret",
            f"external_secret_arn={credentials.external_secret_arn}",
        )
    if not credentials.suppress_generated_secret:
        raise CredentialConflictError(
            resource,
            "RDS-managed master password requires the generated secret to be suppressed",
        )


class SecureAuroraCluster(Construct):
    """
    Aurora PostgreSQL cluster: one writer, ``reader_count`` readers.

    Exposes the handle dependents need (``cluster``, ``secret``,
    ``secret_arn``) so nothing has to reach into the cluster's children.
    """

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        *,
        network: SecureNetwork,
        security_groups: Sequence[ec2.ISecurityGroup],
        config: DatabaseConfig,
        subnet_tier: SubnetTier = SubnetTier.ISOLATED,
        production: bool = False,
    ) -> None:
        # ENFORCE PLACEMENT: members never leave the isolated tier
        if subnet_tier is not SubnetTier.ISOLATED:
            raise PlacementError(
                construct_id,
                "database cluster must be placed in isolated subnets",
                f"requested {subnet_tier.value}",
            )
        vpc_subnets = network.subnet_selection(
            SubnetTier.ISOLATED, construct_id, min_zones=MIN_DATABASE_ZONES
        )

        if not security_groups:
            raise ConfigurationError(construct_id, "at least one access group is required")
        # ENFORCE ENCRYPTION
        if not config.storage_encrypted:
            raise ConfigurationError(construct_id, "storage must be encrypted")
        if not 0 <= config.reader_count <= MAX_READERS:
            raise ConfigurationError(
                construct_id,
                f"reader count must be between 0 and {MAX_READERS}",
                f"got {config.reader_count}",
            )
        validate_credentials(construct_id, config.credentials)

        super().__init__(scope, construct_id)
        self.config = config
        self.members: List[str] = []

        self.engine = rds.DatabaseClusterEngine.aurora_postgres(
            version=rds.AuroraPostgresEngineVersion.of(
                config.engine_full_version, config.engine_major_version
            )
        )

        # ====================================================================
        # Parameter groups - cluster level (auditing, TLS) and member level
        # ====================================================================
        self.cluster_parameter_group = rds.ParameterGroup(
            self, "DbClusterParameterGroup",
            engine=self.engine,
            description=f"aurora-postgresql{config.engine_major_version}",
            parameters=dict(config.cluster_parameters)
        )
        self.instance_parameter_group = rds.ParameterGroup(
            self, "DbParameterGroup",
            engine=self.engine,
            description=f"aurora-postgresql{config.engine_major_version}"
        )

        self.subnet_group = rds.SubnetGroup(
            self, "SubnetGroup",
            description=f"Isolated subnets for {config.cluster_identifier}",
            vpc=network.vpc,
            subnet_group_name=f"{config.cluster_identifier}-subnets",
            vpc_subnets=vpc_subnets
        )

        self.monitoring_role = iam.Role(
            self, "MonitoringRole",
            assumed_by=iam.ServicePrincipal("monitoring.rds.amazonaws.com"),
            managed_policies=[
                iam.ManagedPolicy.from_aws_managed_policy_name(
                    "service-role/AmazonRDSEnhancedMonitoringRole"
                )
            ]
        )

        writer = self._member(0)
        readers = [self._member(index) for index in range(1, config.reader_count + 1)]

        self.cluster = rds.DatabaseCluster(
            self, "Default",
            engine=self.engine,
            writer=writer,
            readers=readers,
            credentials=self._credentials(config.credentials),
            backup=rds.BackupProps(
                retention=Duration.days(config.backup_retention_days),
                preferred_window=config.backup_window
            ),
            cloudwatch_logs_exports=list(config.log_exports),
            cloudwatch_logs_retention=logs.RetentionDays[config.log_retention],
            cluster_identifier=config.cluster_identifier,
            copy_tags_to_snapshot=config.copy_tags_to_snapshot,
            default_database_name=config.default_database_name,
            deletion_protection=config.deletion_protection,
            iam_authentication=config.iam_authentication,
            monitoring_interval=Duration.seconds(config.monitoring_interval_seconds),
            monitoring_role=self.monitoring_role,
            parameter_group=self.cluster_parameter_group,
            port=config.port,
            preferred_maintenance_window=config.maintenance_window,
            storage_encrypted=True,
            vpc=network.vpc,
            security_groups=list(security_groups),
            subnet_group=self.subnet_group
        )

        if config.credentials.managed:
            self.secret = self._use_managed_master_password(config.credentials)
        else:
            self.secret = self.cluster.secret

        if production and not config.deletion_protection:
            message = (
                f"Deletion protection is disabled on {config.cluster_identifier} "
                "in a production environment"
            )
            Annotations.of(self).add_warning_v2("@aurora:deletionProtectionDisabled", message)
            logger.warning("deletion_protection_disabled", cluster=config.cluster_identifier)

        logger.info(
            "database_cluster_defined",
            cluster=config.cluster_identifier,
            engine=config.engine_full_version,
            writer=self.members[0],
            readers=len(self.members) - 1,
            managed_credentials=config.credentials.managed,
            ca_certificate=config.instance.ca_certificate_identifier,
        )

    @property
    def secret_arn(self) -> str:
        return self.secret.secret_arn

    @property
    def writer(self) -> str:
        return self.members[0]

    @property
    def readers(self) -> List[str]:
        return self.members[1:]

    def add_reader(self) -> rds.IAuroraClusterInstance:
        """Add one more reader, built from the same member template."""
        if len(self.members) > MAX_READERS:
            raise ConfigurationError(
                self.node.id,
                f"reader count must be between 0 and {MAX_READERS}",
                f"cluster already has {len(self.members) - 1} readers",
            )
        member = self._member(len(self.members))
        instance = member.bind(
            self, self.cluster,
            monitoring_interval=Duration.seconds(self.config.monitoring_interval_seconds),
            monitoring_role=self.monitoring_role,
            subnet_group=self.subnet_group
        )
        logger.info("database_reader_added", cluster=self.config.cluster_identifier, member=self.members[-1])
        return instance

    def _member(self, index: int) -> rds.IClusterInstance:
        construct_id, identifier = member_names(index)
        template = self.config.instance
        self.members.append(construct_id)
        return rds.ClusterInstance.provisioned(
            construct_id,
            instance_type=ec2.InstanceType(template.instance_type),
            allow_major_version_upgrade=template.allow_major_version_upgrade,
            auto_minor_version_upgrade=template.auto_minor_version_upgrade,
            enable_performance_insights=template.enable_performance_insights,
            performance_insight_retention=(
                rds.PerformanceInsightRetention.DEFAULT
                if template.enable_performance_insights else None
            ),
            parameter_group=self.instance_parameter_group,
            publicly_accessible=False,
            instance_identifier=identifier,
            ca_certificate=rds.CaCertificate.of(template.ca_certificate_identifier)
        )

    def _credentials(self, credentials: CredentialsConfig) -> rds.Credentials:
        if credentials.external_secret_arn:
            external = secretsmanager.Secret.from_secret_complete_arn(
                self, "ExternalSecret", credentials.external_secret_arn
            )
            return rds.Credentials.from_secret(external, credentials.username)
        return rds.Credentials.from_generated_secret(credentials.username)

    def _use_managed_master_password(self, credentials: CredentialsConfig) -> secretsmanager.ISecret:
        """Hand the master password to RDS and drop the CDK-generated secret."""
        cfn_cluster: rds.CfnDBCluster = self.cluster.node.default_child
        cfn_cluster.manage_master_user_password = True
        cfn_cluster.master_username = credentials.username
        cfn_cluster.add_property_deletion_override("MasterUserPassword")
        self.cluster.node.try_remove_child("Secret")

        return secretsmanager.Secret.from_secret_complete_arn(
            self, "MasterUserSecret", cfn_cluster.attr_master_user_secret_secret_arn
        )
