"""Tenant configuration validation."""

from stackbox.validation.validator import (
    ConfigValidator,
    FieldValidationError,
    is_valid_dns_name,
    validate_tenant_config,
)

__all__ = [
    "ConfigValidator",
    "FieldValidationError",
    "is_valid_dns_name",
    "validate_tenant_config",
]
