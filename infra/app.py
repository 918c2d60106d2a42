#!/usr/bin/env python3
"""CDK application entry point for the StackBox provisioning core."""

import aws_cdk as cdk

from infra.stacks.state_stack import StateStack
from infra.stacks.control_stack import ControlStack

app = cdk.App()

env = cdk.Environment(
    account=app.node.try_get_context("account"),
    region=app.node.try_get_context("region") or "us-west-2",
)

# State stack (DynamoDB tables)
state_stack = StateStack(
    app,
    "StackBoxStateStack",
    env=env,
    description="Durable state for StackBox tenant provisioning",
)

# Control stack (Lambda entry points, schedules, IAM)
control_stack = ControlStack(
    app,
    "StackBoxControlStack",
    state_stack=state_stack,
    env=env,
    description="StackBox provisioning control plane",
)

app.synth()
