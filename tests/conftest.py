"""
Pytest configuration and shared fixtures for the StackBox provisioning core.
"""
import os

import pytest
import structlog
from hypothesis import HealthCheck, settings, Verbosity

from fakes import make_settings
from stackbox.storage.memory import InMemoryStateStore

# Allocator and lifecycle properties build a fresh store per example and may
# start threads, so examples are slower than pure-function ones.
settings.register_profile(
    "default",
    max_examples=50,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
    verbosity=Verbosity.normal,
)

settings.register_profile(
    "ci",
    max_examples=200,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
    verbosity=Verbosity.quiet,
)

settings.register_profile(
    "debug",
    max_examples=10,
    deadline=None,
    verbosity=Verbosity.verbose,
)

settings.load_profile(os.environ.get("HYPOTHESIS_PROFILE", "default"))


@pytest.fixture(autouse=True)
def clear_log_context():
    """Keep bound tenant context from leaking between tests."""
    structlog.contextvars.clear_contextvars()
    yield
    structlog.contextvars.clear_contextvars()


@pytest.fixture
def platform_settings():
    """Provide settings with shortened waits."""
    return make_settings()


@pytest.fixture
def store():
    """Provide a fresh in-memory state store for each test."""
    return InMemoryStateStore()


@pytest.fixture
def raw_config():
    """A valid trial submission with CRM, file portal and website."""
    return {
        "tenantId": "acme01",
        "email": "owner@acme.example",
        "hostnameMode": "managed_subdomain",
        "features": {"crm": True, "filePortal": True, "booking": False},
        "branding": {"displayName": "Acme Ltd", "themeColor": "#112233"},
    }
