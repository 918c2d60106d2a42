"""Tests for tenant stack rendering."""

import pytest
import yaml

from stackbox.containers.renderer import StackRenderer, generate_password
from stackbox.models import ServiceRole, SignupTier
from stackbox.provisioning.compute import EDGE_NETWORK
from stackbox.validation import ConfigValidator


@pytest.fixture
def renderer(platform_settings):
    return StackRenderer(platform_settings)


@pytest.fixture
def config(raw_config):
    return ConfigValidator().validate(raw_config)


class TestServiceSelection:
    """Tests for feature-driven service selection."""

    def test_enabled_features_select_services(self, renderer, config):
        stack = renderer.render(config)

        assert set(stack.services) == {"proxy", "website", "crm", "files", "database"}
        assert sorted(stack.application_services) == ["crm", "files", "website"]
        assert stack.services["proxy"].role == ServiceRole.EDGE
        assert stack.services["database"].role == ServiceRole.SUPPORT

    def test_disabled_feature_is_removed_not_disabled(self, renderer, config):
        stack = renderer.render(config)

        rendered = yaml.safe_load(stack.files["docker-compose.yml"])
        assert "booking" not in rendered["services"]
        assert "booking" not in stack.files["docker-compose.yml"]
        assert "BOOKING_DB_PASSWORD" not in stack.secret_keys
        assert "x-stackbox" not in stack.files["docker-compose.yml"]

    def test_database_dropped_without_dependents(self, renderer, raw_config):
        raw_config["features"] = {"crm": False, "filePortal": False, "booking": False}
        stack = renderer.render(ConfigValidator().validate(raw_config))

        assert set(stack.services) == {"proxy", "website"}
        assert "DB_ROOT_PASSWORD" not in stack.secret_keys
        assert "config/mysql/init.sql" not in stack.files

    def test_service_urls(self, renderer, config):
        stack = renderer.render(config)

        assert stack.service_urls == {
            "website": "https://acme01.stackbox.io",
            "crm": "https://crm.acme01.stackbox.io",
            "files": "https://files.acme01.stackbox.io",
        }

    def test_custom_domain_hostname(self, renderer, raw_config):
        raw_config.update({"hostnameMode": "custom_domain", "domain": "shop.acme.example"})
        stack = renderer.render(ConfigValidator().validate(raw_config))

        assert stack.hostname == "shop.acme.example"
        assert stack.service_urls["crm"] == "https://crm.shop.acme.example"
        assert stack.environment["DOMAIN"] == "shop.acme.example"


class TestPlacement:
    """Tests for shared-host and dedicated-host wiring."""

    def test_trial_stack_joins_edge_network(self, renderer, config):
        stack = renderer.render(config)

        proxy = stack.compose["services"]["proxy"]
        assert "ports" not in proxy
        assert proxy["networks"] == ["default", "edge"]
        assert "stackbox.edge=true" in proxy["labels"]
        sni_rule = next(label for label in proxy["labels"] if ".tcp.routers." in label and "rule=" in label)
        assert "HostSNI(`crm.acme01.stackbox.io`)" in sni_rule
        assert "HostSNI(`acme01.stackbox.io`)" in sni_rule
        assert stack.compose["networks"]["edge"] == {"external": True, "name": EDGE_NETWORK}
        assert "network: sbx-acme01_default" in stack.files["traefik/traefik.yml"]

    def test_dedicated_stack_publishes_ports(self, renderer, config):
        paid = config.model_copy(update={"tier": SignupTier.PAID})
        stack = renderer.render(paid)

        proxy = stack.compose["services"]["proxy"]
        assert proxy["ports"] == ["80:80", "443:443"]
        assert "networks" not in stack.compose
        assert "sbx-acme01_default" not in stack.files["traefik/traefik.yml"]

    def test_explicit_placement_overrides_tier(self, renderer, config):
        stack = renderer.render(config, shared=False)
        assert "ports" in stack.compose["services"]["proxy"]

    def test_proxy_limited_to_own_containers(self, renderer, config):
        stack = renderer.render(config)
        assert "Label(`stackbox.tenant`,`acme01`)" in stack.files["traefik/traefik.yml"]


class TestSecrets:
    """Tests for generated credentials."""

    def test_secrets_generated_per_service(self, renderer, config):
        stack = renderer.render(config)

        assert set(stack.secret_keys) == {
            "ADMIN_PASSWORD", "INTERNAL_API_KEY", "DB_ROOT_PASSWORD",
            "CRM_DB_PASSWORD", "FILES_DB_PASSWORD",
        }
        assert stack.admin_password == stack.environment["ADMIN_PASSWORD"]
        assert len(stack.admin_password) == 16

    def test_existing_secrets_reused(self, renderer, config):
        first = renderer.render(config)
        kept = {key: first.environment[key] for key in first.secret_keys}

        second = renderer.render(config, existing_secrets=kept)

        assert second.admin_password == first.admin_password
        assert second.environment["CRM_DB_PASSWORD"] == first.environment["CRM_DB_PASSWORD"]

    def test_fresh_renders_get_fresh_secrets(self, renderer, config):
        assert renderer.render(config).admin_password != renderer.render(config).admin_password

    def test_secrets_carry_no_tenant_data(self, renderer, config):
        stack = renderer.render(config)

        for key in stack.secret_keys:
            value = stack.environment[key]
            assert "acme" not in value.lower()
            assert "owner" not in value.lower()

    def test_generated_passwords_are_compose_safe(self):
        for _ in range(50):
            assert generate_password().isalnum()

    def test_env_values_quoted(self, renderer, config):
        stack = renderer.render(config)
        assert "COMPANY_NAME='Acme Ltd'\n" in stack.files[".env"]

    def test_database_init_uses_service_passwords(self, renderer, config):
        stack = renderer.render(config)

        init = stack.files["config/mysql/init.sql"]
        assert f"IDENTIFIED BY '{stack.environment['CRM_DB_PASSWORD']}'" in init
        assert "CREATE DATABASE IF NOT EXISTS `nextcloud`" in init


class TestSiteFiles:
    """Tests for the generated landing page."""

    def test_landing_page_links_enabled_services(self, renderer, config):
        page = renderer.render(config).files["website/index.html"]

        assert "https://crm.acme01.stackbox.io" in page
        assert "https://files.acme01.stackbox.io" in page
        assert "booking" not in page
        assert "#112233" in page

    def test_display_name_is_escaped(self, renderer, raw_config):
        raw_config["branding"]["displayName"] = "<Acme & Co>"
        page = renderer.render(ConfigValidator().validate(raw_config)).files["website/index.html"]

        assert "&lt;Acme &amp; Co&gt;" in page
        assert "<Acme & Co>" not in page
