import json
from dataclasses import replace

import aws_cdk as cdk
import pytest
from aws_cdk.assertions import Annotations, Match, Template

from config.topology import DEV_CONFIG, ComputeConfig, NetworkConfig, SecretScope, SubnetTier, SubnetTierConfig
from secure_templates.errors import ConfigurationError, PlacementError
from secure_templates.instance import SecureClientInstance
from secure_templates.network import SecureNetwork
from stacks.aurora_stack import AuroraStack

SECRET_ARN = "arn:aws:secretsmanager:us-east-1:111111111111:secret:db-credentials-AbCdEf"


def test_client_runs_in_a_public_subnet_with_the_client_group(stack, refs, template):
    public = [refs(s.subnet_id) for s in stack.network.vpc.public_subnets]

    template.resource_count_is("AWS::EC2::Instance", 1)
    (instance,) = template.find_resources("AWS::EC2::Instance").values()
    props = instance["Properties"]
    assert props["SubnetId"] in public
    assert props["SecurityGroupIds"] == [refs(stack.network.client_sg.security_group_id)]
    assert props["InstanceType"] == "t3.micro"


def test_client_role_is_assumed_by_ec2_with_session_access(stack, refs, template):
    role = template.find_resources("AWS::IAM::Role")[refs.logical_id(stack.client.role.role_arn)]

    statement = role["Properties"]["AssumeRolePolicyDocument"]["Statement"][0]
    assert statement["Principal"] == {"Service": "ec2.amazonaws.com"}
    assert any(
        "AmazonSSMManagedInstanceCore" in str(arn)
        for arn in role["Properties"]["ManagedPolicyArns"]
    )


def test_wildcard_secret_access_is_granted_and_flagged(stack, refs, template, grants_for):
    grants = grants_for(template, refs.logical_id(stack.client.role.role_arn))

    assert grants == [("secretsmanager:GetSecretValue", '"*"')]
    Annotations.from_stack(stack).has_warning(
        "/AuroraTest/Ec2Instance", Match.string_like_regexp("wildcard")
    )


def test_scoped_secret_access_names_the_cluster_secret(grants_for):
    config = replace(DEV_CONFIG, compute=ComputeConfig(secret_scope=SecretScope.SCOPED))
    stack = AuroraStack(cdk.App(), "Scoped", config=config)
    template = Template.from_stack(stack)

    grants = grants_for(template, stack.resolve(stack.client.role.role_arn)["Fn::GetAtt"][0])

    secret = stack.resolve(stack.aurora.secret_arn)
    assert grants == [
        ("secretsmanager:GetSecretValue", json.dumps(secret, sort_keys=True)),
    ]
    Annotations.from_stack(stack).has_no_warning("*", Match.string_like_regexp("wildcard"))


def test_scoped_access_without_a_secret_is_rejected(scratch_stack, network):
    with pytest.raises(ConfigurationError, match="secret ARN"):
        SecureClientInstance(
            scratch_stack, "Client",
            network=network,
            security_group=network.client_sg,
            config=ComputeConfig(secret_scope=SecretScope.SCOPED),
        )

    assert scratch_stack.node.try_find_child("Client") is None


def test_scoped_access_with_an_explicit_secret(scratch_stack, network):
    SecureClientInstance(
        scratch_stack, "Client",
        network=network,
        security_group=network.client_sg,
        config=ComputeConfig(secret_scope=SecretScope.SCOPED),
        secret_arn=SECRET_ARN,
    )

    Template.from_stack(scratch_stack).has_resource_properties("AWS::IAM::ManagedPolicy", {
        "PolicyDocument": {
            "Statement": [Match.object_like({
                "Action": "secretsmanager:GetSecretValue",
                "Resource": SECRET_ARN,
            })],
        },
    })


def test_client_needs_a_public_tier(scratch_stack):
    network = SecureNetwork(
        scratch_stack, "Vpc",
        config=NetworkConfig(subnet_tiers=(SubnetTierConfig("Isolated", SubnetTier.ISOLATED, cidr_mask=27),)),
    )

    with pytest.raises(PlacementError, match="Client: requires a public subnet"):
        SecureClientInstance(
            scratch_stack, "Client",
            network=network,
            security_group=network.client_sg,
            config=ComputeConfig(),
        )
