"""CDK stacks for the StackBox provisioning core."""

from infra.stacks.state_stack import StateStack
from infra.stacks.control_stack import ControlStack

__all__ = ["StateStack", "ControlStack"]
