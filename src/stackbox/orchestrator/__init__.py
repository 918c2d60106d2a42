"""Provisioning pipeline and tenant notifications."""

from stackbox.orchestrator.notifications import LoggingNotifier, Notifier, SESNotifier
from stackbox.orchestrator.pipeline import ProvisioningOrchestrator

__all__ = [
    "LoggingNotifier",
    "Notifier",
    "SESNotifier",
    "ProvisioningOrchestrator",
]
