"""Tenant container stacks: rendering, deployment and health."""

from stackbox.containers.renderer import StackRenderer, load_template
from stackbox.containers.service import ContainerStackService, parse_compose_ps

__all__ = [
    "StackRenderer",
    "load_template",
    "ContainerStackService",
    "parse_compose_ps",
]
