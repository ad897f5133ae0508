import aws_cdk as cdk
import pytest
from aws_cdk.assertions import Template

from config.topology import DEV_CONFIG, PROD_CONFIG, TopologyConfig
from secure_templates.errors import PlacementError
from stacks.aurora_stack import AuroraStack


def synth(config, stack_id="AuroraTest"):
    return Template.from_stack(AuroraStack(cdk.App(), stack_id, config=config))


def test_same_configuration_synthesizes_the_same_template():
    assert synth(DEV_CONFIG).to_json() == synth(DEV_CONFIG).to_json()


def test_topology_resource_counts(template):
    template.resource_count_is("AWS::EC2::VPC", 1)
    template.resource_count_is("AWS::EC2::SecurityGroup", 3)
    template.resource_count_is("AWS::RDS::DBCluster", 1)
    template.resource_count_is("AWS::RDS::DBInstance", 4)
    template.resource_count_is("AWS::RDS::DBProxy", 1)
    template.resource_count_is("AWS::EC2::Instance", 1)
    template.resource_count_is("AWS::SecretsManager::Secret", 0)


def test_stack_outputs(template):
    outputs = template.find_outputs("*")

    assert {
        "VpcId", "ClusterEndpoint", "ClusterReadEndpoint",
        "MasterUserSecretArn", "InstanceId", "ProxyEndpoint",
    } <= set(outputs)


def test_secret_output_is_the_master_user_secret(stack, refs, template):
    outputs = template.find_outputs("MasterUserSecretArn")

    assert outputs["MasterUserSecretArn"]["Value"] == refs(stack.aurora.secret_arn)


def test_production_preset_hardens_the_topology():
    template = synth(PROD_CONFIG, "AuroraProd")

    template.has_resource_properties("AWS::RDS::DBCluster", {"DeletionProtection": True})
    template.has_resource_properties("AWS::RDS::DBProxy", {"RequireTLS": True})
    for policy in template.find_resources("AWS::IAM::ManagedPolicy").values():
        for statement in policy["Properties"]["PolicyDocument"]["Statement"]:
            assert statement["Resource"] != "*"


def test_development_preset_leaves_deletion_protection_off(template):
    template.has_resource_properties("AWS::RDS::DBCluster", {"DeletionProtection": False})


def test_single_zone_network_is_rejected_before_synth():
    app = cdk.App(context={"max_azs": "1"})
    config = TopologyConfig.from_context(app.node)

    with pytest.raises(PlacementError, match="Aurora: requires isolated subnets in at least 2 availability zones"):
        AuroraStack(app, "SingleZone", config=config)
