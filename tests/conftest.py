import json

import aws_cdk as cdk
import pytest
from aws_cdk.assertions import Template

from config.topology import DEV_CONFIG, NetworkConfig
from secure_templates.network import SecureNetwork
from stacks.aurora_stack import AuroraStack


@pytest.fixture
def config():
    return DEV_CONFIG


@pytest.fixture
def stack(config):
    return AuroraStack(cdk.App(), "AuroraTest", config=config)


@pytest.fixture
def template(stack):
    return Template.from_stack(stack)


@pytest.fixture
def scratch_stack():
    return cdk.Stack(cdk.App(), "Scratch")


@pytest.fixture
def network(scratch_stack):
    return SecureNetwork(scratch_stack, "Vpc", config=NetworkConfig())


class Refs:
    """Resolves construct attributes to the CloudFormation values a template holds."""

    def __init__(self, stack):
        self.stack = stack

    def __call__(self, token):
        return self.stack.resolve(token)

    def key(self, token):
        return json.dumps(self.stack.resolve(token), sort_keys=True)

    def logical_id(self, token):
        # {"Ref": id} or {"Fn::GetAtt": [id, attr]}
        resolved = self.stack.resolve(token)
        if "Ref" in resolved:
            return resolved["Ref"]
        return resolved["Fn::GetAtt"][0]


@pytest.fixture
def refs(stack):
    return Refs(stack)


@pytest.fixture
def scratch_refs(scratch_stack):
    return Refs(scratch_stack)


def as_list(value):
    return value if isinstance(value, list) else [value]


def policy_resources(template, role_logical_id):
    """Every (action, resource) pair granted to a role through policies in the template."""
    role = template.find_resources("AWS::IAM::Role")[role_logical_id]
    managed = template.find_resources("AWS::IAM::ManagedPolicy")
    documents = []
    for arn in role["Properties"].get("ManagedPolicyArns", []):
        if isinstance(arn, dict) and arn.get("Ref") in managed:
            documents.append(managed[arn["Ref"]]["Properties"]["PolicyDocument"])
    for policy in template.find_resources("AWS::IAM::Policy").values():
        if {"Ref": role_logical_id} in policy["Properties"].get("Roles", []):
            documents.append(policy["Properties"]["PolicyDocument"])

    grants = []
    for document in documents:
        for statement in document["Statement"]:
            for action in as_list(statement["Action"]):
                for resource in as_list(statement["Resource"]):
                    grants.append((action, json.dumps(resource, sort_keys=True)))
    return grants


@pytest.fixture
def grants_for():
    return policy_resources
