"""Pydantic models for the StackBox provisioning core."""

from stackbox.models.tenant import (
    Branding,
    FEATURE_KEYS,
    FeatureFlags,
    HostnameMode,
    SignupTier,
    TenantConfig,
    utcnow,
)
from stackbox.models.compute import (
    AssignmentKind,
    ComputeAssignment,
    InstanceInfo,
    InstanceState,
    PoolInstance,
)
from stackbox.models.stack import (
    ConfigureReport,
    DeployResult,
    HealthReport,
    ServiceHealth,
    ServiceRole,
    ServiceSpec,
    StackDefinition,
    StackRecord,
    StackState,
)
from stackbox.models.provisioning import (
    AdminCredentials,
    CertificateRef,
    DeploymentStatus,
    DNSRef,
    EmailIdentityRef,
    HostedZoneRef,
    ProvisioningFailure,
    ProvisioningResult,
    ResourceBundle,
    ResultStatus,
    SETUP_DELAYED_MESSAGE,
    StorageRef,
)
from stackbox.models.trial import (
    ConversionResult,
    ReminderType,
    STATUS_ORDER,
    StatusNotice,
    SweepReport,
    TransitionEvent,
    TransitionOutcome,
    TrialState,
    TrialStatus,
)
from stackbox.models.migration import (
    MIGRATION_STEP_ORDER,
    MigrationPlan,
    MigrationStatus,
    MigrationStep,
    MigrationStepName,
)

__all__ = [
    "Branding",
    "FEATURE_KEYS",
    "FeatureFlags",
    "HostnameMode",
    "SignupTier",
    "TenantConfig",
    "utcnow",
    "AssignmentKind",
    "ComputeAssignment",
    "InstanceInfo",
    "InstanceState",
    "PoolInstance",
    "ConfigureReport",
    "DeployResult",
    "HealthReport",
    "ServiceHealth",
    "ServiceRole",
    "ServiceSpec",
    "StackDefinition",
    "StackRecord",
    "StackState",
    "AdminCredentials",
    "CertificateRef",
    "DeploymentStatus",
    "DNSRef",
    "EmailIdentityRef",
    "HostedZoneRef",
    "ProvisioningFailure",
    "ProvisioningResult",
    "ResourceBundle",
    "ResultStatus",
    "SETUP_DELAYED_MESSAGE",
    "StorageRef",
    "ConversionResult",
    "ReminderType",
    "STATUS_ORDER",
    "StatusNotice",
    "SweepReport",
    "TransitionEvent",
    "TransitionOutcome",
    "TrialState",
    "TrialStatus",
    "MIGRATION_STEP_ORDER",
    "MigrationPlan",
    "MigrationStatus",
    "MigrationStep",
    "MigrationStepName",
]
