#!/usr/bin/env python3
"""
Aurora PostgreSQL Topology - AWS CDK Application
VPC with public + isolated tiers, Aurora cluster behind RDS Proxy,
and a client EC2 instance
"""

import logging
import os
import sys

import aws_cdk as cdk
import structlog

from config.topology import TopologyConfig
from stacks.aurora_stack import AuroraStack

# Structured logging on stderr; stdout belongs to the CDK CLI
logging.basicConfig(
    stream=sys.stderr,
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(message)s",
)
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)

app = cdk.App()

# Environment configuration - unset values fall back to the provider's own resolution
env = cdk.Environment(
    account=app.node.try_get_context("account") or os.environ.get("CDK_DEFAULT_ACCOUNT"),
    region=app.node.try_get_context("region") or os.environ.get("CDK_DEFAULT_REGION")
)

# Deployment context (dev/prod) plus -c overrides
config = TopologyConfig.from_context(app.node)

# Tags applied to ALL resources
tags = {
    "Project": config.project_name,
    "Environment": config.environment_name,
    "ManagedBy": "CDK",
}

logger.info(
    "synthesizing",
    environment=config.environment_name,
    account=env.account,
    region=env.region,
)

# ============================================================================
# TOPOLOGY - network, client instance, Aurora cluster, RDS Proxy
# ============================================================================
AuroraStack(
    app, f"{config.stack_prefix}-aurora",
    config=config,
    env=env,
    tags=tags
)

# ============================================================================
# SYNTHESIZE
# ============================================================================
app.synth()
