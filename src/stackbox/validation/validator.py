"""Schema validation for raw tenant configurations.

Every rule is checked and every violation reported, so a caller sees the
complete list in one round trip. Validation is pure: nothing outside the
input is read or touched.
"""

import re
from dataclasses import dataclass
from typing import Any, Optional

from stackbox.core.errors import ConfigValidationError
from stackbox.models.tenant import (
    Branding,
    FEATURE_KEYS,
    FeatureFlags,
    HostnameMode,
    SignupTier,
    TenantConfig,
)


@dataclass
class FieldValidationError:
    """A validation error for a specific field."""
    field_name: str
    error_message: str
    provided_value: Optional[str] = None
    allowed_values: Optional[list[str]] = None


TENANT_ID_PATTERN = re.compile(r"^[a-z0-9]{3,30}$")
EMAIL_PATTERN = re.compile(
    r"^[A-Za-z0-9.!#$%&'*+/=?^_`{|}~-]+@"
    r"[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?"
    r"(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)+$"
)
DNS_LABEL_PATTERN = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
COLOR_PATTERN = re.compile(r"^#[0-9A-Fa-f]{6}$")
URL_PATTERN = re.compile(r"^https?://[^\s/$.?#].[^\s]*$")

TOP_LEVEL_KEYS = {
    "tenantId", "email", "hostnameMode", "domain",
    "features", "branding", "tier", "planId",
}
BRANDING_KEYS = {"displayName": "display_name", "themeColor": "theme_color", "logoUrl": "logo_url"}
MAX_DISPLAY_NAME = 50


def is_valid_dns_name(value: str) -> bool:
    """Whether ``value`` is a syntactically valid fully qualified DNS name."""
    if not value or len(value) > 253:
        return False
    name = value.lower().rstrip(".")
    labels = name.split(".")
    if len(labels) < 2:
        return False
    if not all(DNS_LABEL_PATTERN.fullmatch(label) for label in labels):
        return False
    # TLD must not be all-numeric
    return not labels[-1].isdigit()


class ConfigValidator:
    """Validates raw tenant configurations into ``TenantConfig``."""

    def validate(self, raw: Any) -> TenantConfig:
        """Validate a raw configuration.

        Args:
            raw: Mapping as submitted by the onboarding UI (camelCase keys).

        Returns:
            The immutable TenantConfig with defaults applied.

        Raises:
            ConfigValidationError: Listing every violated constraint.
        """
        if not isinstance(raw, dict):
            raise ConfigValidationError(
                "Configuration must be an object",
                failed_checks=[FieldValidationError("", "Configuration must be an object")],
            )

        errors: list[FieldValidationError] = []

        for key in sorted(set(raw) - TOP_LEVEL_KEYS):
            errors.append(FieldValidationError(key, "Unrecognized field", provided_value=key))

        tenant_id = self._check_tenant_id(raw.get("tenantId"), errors)
        email = self._check_email(raw.get("email"), errors)
        mode, domain = self._check_hostname(raw, errors)
        features = self._check_features(raw.get("features"), errors)
        branding = self._check_branding(raw.get("branding"), errors)
        tier = self._check_tier(raw.get("tier"), errors)

        plan_id = raw.get("planId")
        if plan_id is not None and (not isinstance(plan_id, str) or not plan_id.strip()):
            errors.append(FieldValidationError("planId", "Must be a non-empty string", str(plan_id)))

        if errors:
            raise ConfigValidationError(
                f"Configuration invalid: {len(errors)} violation(s)",
                tenant_id=tenant_id,
                failed_checks=errors,
            )

        return TenantConfig(
            tenant_id=tenant_id,
            email=email,
            hostname_mode=mode,
            domain=domain,
            features=features,
            branding=branding,
            tier=tier,
            plan_id=plan_id,
        )

    def _check_tenant_id(self, value: Any, errors: list) -> Optional[str]:
        if value is None:
            errors.append(FieldValidationError("tenantId", "Required"))
            return None
        if not isinstance(value, str) or not TENANT_ID_PATTERN.fullmatch(value):
            errors.append(FieldValidationError(
                "tenantId",
                "Must be 3-30 lowercase letters or digits",
                provided_value=str(value),
            ))
            return None
        return value

    def _check_email(self, value: Any, errors: list) -> Optional[str]:
        if value is None:
            errors.append(FieldValidationError("email", "Required"))
            return None
        if not isinstance(value, str) or len(value) > 254 or not EMAIL_PATTERN.fullmatch(value):
            errors.append(FieldValidationError("email", "Invalid email address", str(value)))
            return None
        return value

    def _check_hostname(self, raw: dict, errors: list):
        mode_value = raw.get("hostnameMode", HostnameMode.MANAGED_SUBDOMAIN.value)
        try:
            mode = HostnameMode(mode_value)
        except ValueError:
            errors.append(FieldValidationError(
                "hostnameMode",
                "Unknown hostname mode",
                provided_value=str(mode_value),
                allowed_values=[m.value for m in HostnameMode],
            ))
            return HostnameMode.MANAGED_SUBDOMAIN, None

        domain = raw.get("domain")

        if mode == HostnameMode.CUSTOM_DOMAIN:
            if not domain:
                errors.append(FieldValidationError("domain", "Required for custom domain mode"))
                domain = None
            elif not isinstance(domain, str) or not is_valid_dns_name(domain):
                errors.append(FieldValidationError("domain", "Invalid DNS name", str(domain)))
                domain = None
            else:
                domain = domain.lower().rstrip(".")
        elif domain:
            errors.append(FieldValidationError(
                "domain", "Only allowed with custom domain mode", str(domain)
            ))
            domain = None

        return mode, domain

    def _check_features(self, value: Any, errors: list) -> Optional[FeatureFlags]:
        if value is None:
            errors.append(FieldValidationError("features", "Required"))
            return None
        if not isinstance(value, dict):
            errors.append(FieldValidationError("features", "Must be an object", str(value)))
            return None

        flags = {}
        for key, flag in value.items():
            if key not in FEATURE_KEYS:
                errors.append(FieldValidationError(
                    f"features.{key}",
                    "Unrecognized feature",
                    provided_value=key,
                    allowed_values=sorted(FEATURE_KEYS),
                ))
            elif not isinstance(flag, bool):
                errors.append(FieldValidationError(f"features.{key}", "Must be a boolean", str(flag)))
            else:
                flags[FEATURE_KEYS[key]] = flag
        return FeatureFlags(**flags)

    def _check_branding(self, value: Any, errors: list) -> Branding:
        if value is None:
            return Branding()
        if not isinstance(value, dict):
            errors.append(FieldValidationError("branding", "Must be an object", str(value)))
            return Branding()

        fields = {}
        for key in value:
            if key not in BRANDING_KEYS:
                errors.append(FieldValidationError(f"branding.{key}", "Unrecognized field", key))

        display_name = value.get("displayName")
        if display_name is not None:
            if not isinstance(display_name, str) or not display_name.strip() \
                    or len(display_name) > MAX_DISPLAY_NAME:
                errors.append(FieldValidationError(
                    "branding.displayName",
                    f"Must be 1-{MAX_DISPLAY_NAME} characters",
                    str(display_name),
                ))
            else:
                fields["display_name"] = display_name.strip()

        color = value.get("themeColor")
        if color is not None:
            if not isinstance(color, str) or not COLOR_PATTERN.fullmatch(color):
                errors.append(FieldValidationError("branding.themeColor", "Must be #RRGGBB", str(color)))
            else:
                fields["theme_color"] = color

        logo = value.get("logoUrl")
        if logo is not None:
            if not isinstance(logo, str) or not URL_PATTERN.fullmatch(logo):
                errors.append(FieldValidationError("branding.logoUrl", "Must be an http(s) URL", str(logo)))
            else:
                fields["logo_url"] = logo

        return Branding(**fields)

    def _check_tier(self, value: Any, errors: list) -> SignupTier:
        if value is None:
            return SignupTier.TRIAL
        try:
            return SignupTier(value)
        except ValueError:
            errors.append(FieldValidationError(
                "tier",
                "Unknown tier",
                provided_value=str(value),
                allowed_values=[t.value for t in SignupTier],
            ))
            return SignupTier.TRIAL


def validate_tenant_config(raw: Any) -> TenantConfig:
    """Convenience wrapper around ``ConfigValidator().validate``."""
    return ConfigValidator().validate(raw)
