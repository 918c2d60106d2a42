"""Wires the provisioning core together."""

from dataclasses import dataclass
from typing import Optional

from stackbox.containers import ContainerStackService, StackRenderer
from stackbox.core import PlatformSettings, get_logger
from stackbox.lifecycle import (
    EventBridgePublisher,
    EventPublisher,
    LoggingEventPublisher,
    TrialLifecycleManager,
)
from stackbox.orchestrator import (
    LoggingNotifier,
    Notifier,
    ProvisioningOrchestrator,
    SESNotifier,
)
from stackbox.provisioning import (
    ComputeAllocator,
    MigrationRunner,
    RemoteCommandRunner,
    ResourceProvisioner,
)
from stackbox.storage import DynamoDBStateStore, StateStore

logger = get_logger(__name__)


@dataclass
class Platform:
    """Every component of one running control plane."""
    settings: PlatformSettings
    store: StateStore
    allocator: ComputeAllocator
    runner: RemoteCommandRunner
    provisioner: ResourceProvisioner
    stacks: ContainerStackService
    migrations: MigrationRunner
    lifecycle: TrialLifecycleManager
    orchestrator: ProvisioningOrchestrator


def build_platform(
    settings: Optional[PlatformSettings] = None,
    store: Optional[StateStore] = None,
    publisher: Optional[EventPublisher] = None,
    notifier: Optional[Notifier] = None,
) -> Platform:
    """Build the platform from settings (``STACKBOX_*`` env vars by default)."""
    settings = settings or PlatformSettings.from_env()
    store = store or DynamoDBStateStore(settings.tenants_table, settings.pool_table)

    allocator = ComputeAllocator(settings, store)
    runner = RemoteCommandRunner(region=settings.aws_region, poll=settings.command_poll)
    provisioner = ResourceProvisioner(settings, store, allocator)
    stacks = ContainerStackService(
        settings,
        store,
        runner,
        renderer=StackRenderer(settings),
        release_compute=provisioner.release_compute,
    )
    migrations = MigrationRunner(
        settings,
        store,
        allocator,
        provisioner,
        runner,
        health_probe=stacks.probe_health,
        placement_files=stacks.placement_files,
    )
    provisioner.migrations = migrations

    if publisher is None:
        if settings.event_bus_name:
            publisher = EventBridgePublisher(settings.event_bus_name, region=settings.aws_region)
        else:
            publisher = LoggingEventPublisher()

    if notifier is None:
        if settings.email_notifications:
            notifier = SESNotifier(
                settings.from_email,
                region=settings.ses_region,
                reply_to_email=settings.reply_to_email,
            )
        else:
            notifier = LoggingNotifier()

    lifecycle = TrialLifecycleManager(
        settings,
        store,
        stacks=stacks,
        provisioner=provisioner,
        publisher=publisher,
    )
    orchestrator = ProvisioningOrchestrator(
        store,
        provisioner,
        stacks,
        lifecycle,
        notifier=notifier,
    )
    logger.info(
        "platform_built",
        base_domain=settings.base_domain,
        region=settings.aws_region,
        store=type(store).__name__,
    )
    return Platform(
        settings=settings,
        store=store,
        allocator=allocator,
        runner=runner,
        provisioner=provisioner,
        stacks=stacks,
        migrations=migrations,
        lifecycle=lifecycle,
        orchestrator=orchestrator,
    )
