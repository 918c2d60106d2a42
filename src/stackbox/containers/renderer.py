"""Renders a tenant's container composition from the packaged template.

The template declares every service the platform offers. Rendering keeps
the edge proxy, keeps each application service whose feature flag is on,
and keeps the database only while a service that needs it remains.
Everything else is deleted from the composition, not disabled.
"""

import html
import secrets
import string
from importlib import resources
from pathlib import Path
from typing import Any, Optional

import yaml

from stackbox.core.config import PlatformSettings
from stackbox.provisioning.compute import EDGE_NETWORK
from stackbox.models import (
    ServiceRole,
    ServiceSpec,
    SignupTier,
    StackDefinition,
    TenantConfig,
)

TEMPLATE_NAME = "docker-compose.template.yml"
META_KEY = "x-stackbox"
DATABASE_SERVICE = "database"

# Secrets every stack gets, whatever services it runs
BASE_SECRETS = ("ADMIN_PASSWORD", "INTERNAL_API_KEY")
DATABASE_SECRETS = ("DB_ROOT_PASSWORD",)

PASSWORD_ALPHABET = string.ascii_letters + string.digits


def generate_password(length: int = 24) -> str:
    """Random password without characters compose would interpolate."""
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def generate_key(nbytes: int = 32) -> str:
    return secrets.token_hex(nbytes)


def load_template(path: Optional[Path] = None) -> dict[str, Any]:
    """Load the compose template (packaged copy unless ``path`` is given)."""
    if path is not None:
        text = Path(path).read_text(encoding="utf-8")
    else:
        text = (
            resources.files("stackbox.containers")
            .joinpath("templates", TEMPLATE_NAME)
            .read_text(encoding="utf-8")
        )
    return yaml.safe_load(text)


def _env_value(value: str) -> str:
    # Single quotes keep compose from interpolating the value
    return "'" + str(value).replace("'", "’") + "'"


class StackRenderer:
    """Turns a TenantConfig into a concrete StackDefinition."""

    def __init__(self, settings: PlatformSettings, template_path: Optional[Path] = None):
        self.settings = settings
        self.template_path = template_path

    def render(
        self,
        config: TenantConfig,
        existing_secrets: Optional[dict[str, str]] = None,
        shared: Optional[bool] = None,
    ) -> StackDefinition:
        """Render the tenant's composition and its supporting files.

        Args:
            config: Validated tenant configuration
            existing_secrets: Secrets of an earlier render of the same
                tenant; reused so re-deploying never invalidates data that
                was initialised with them.
            shared: Whether the stack runs behind a shared host's edge
                proxy; follows the signup tier when omitted.

        Returns:
            StackDefinition with the compose document, .env values and the
            file tree to materialise in the stack directory.
        """
        template = load_template(self.template_path)
        hostname = config.hostname(self.settings.base_domain)
        project = f"sbx-{config.tenant_id}"
        enabled = set(config.features.enabled())
        if shared is None:
            shared = config.tier == SignupTier.TRIAL

        compose_services: dict[str, Any] = {}
        specs: dict[str, ServiceSpec] = {}
        metas: dict[str, dict] = {}

        for name, block in template["services"].items():
            meta = block.pop(META_KEY, {}) or {}
            feature = meta.get("feature")
            if feature is not None and feature not in enabled:
                continue
            compose_services[name] = block
            metas[name] = meta

        needs_database = any(meta.get("database") for meta in metas.values())
        if not needs_database:
            compose_services.pop(DATABASE_SERVICE, None)
            metas.pop(DATABASE_SERVICE, None)

        for name, meta in metas.items():
            subdomain = meta.get("subdomain")
            url = None
            if subdomain is not None:
                url = f"https://{subdomain + '.' if subdomain else ''}{hostname}"
            specs[name] = ServiceSpec(
                name=name,
                role=ServiceRole(meta.get("role", ServiceRole.APPLICATION.value)),
                image=compose_services[name]["image"],
                feature=meta.get("feature"),
                url=url,
            )

        if shared:
            self._attach_to_edge(compose_services, project, hostname, specs)

        secret_keys = list(BASE_SECRETS)
        if needs_database:
            secret_keys.extend(DATABASE_SECRETS)
        for meta in metas.values():
            secret_keys.extend(meta.get("secrets", []))

        reused = existing_secrets or {}
        secret_values = {key: reused.get(key) or self._new_secret(key) for key in secret_keys}

        environment = {
            "TENANT_ID": config.tenant_id,
            "PROJECT": project,
            "DOMAIN": hostname,
            "ADMIN_USERNAME": "admin",
            "COMPANY_NAME": config.display_name,
            "COMPANY_EMAIL": config.email,
            "FROM_EMAIL": self.settings.from_email,
            "BRAND_COLOR": config.branding.theme_color,
            "LOGO_URL": config.branding.logo_url or "",
        }
        environment.update(secret_values)

        compose = {"name": project, "services": compose_services}
        if shared:
            compose["networks"] = {"edge": {"external": True, "name": EDGE_NETWORK}}

        files = {
            "docker-compose.yml": yaml.safe_dump(compose, sort_keys=False, default_flow_style=False),
            ".env": "".join(f"{key}={_env_value(value)}\n" for key, value in environment.items()),
            "traefik/traefik.yml": self.traefik_config(config, shared),
        }
        if "website" in specs:
            files["config/nginx/website.conf"] = self.nginx_config(hostname)
            files["website/index.html"] = self.landing_page(config, specs)
        if needs_database:
            files["config/mysql/init.sql"] = self.database_init(metas, secret_values)

        return StackDefinition(
            tenant_id=config.tenant_id,
            hostname=hostname,
            project_name=project,
            services=specs,
            compose=compose,
            environment=environment,
            secret_keys=secret_keys,
            files=files,
            admin_username=environment["ADMIN_USERNAME"],
            admin_password=secret_values["ADMIN_PASSWORD"],
        )

    @staticmethod
    def _new_secret(key: str) -> str:
        if key.endswith("_KEY"):
            return generate_key()
        if key == "ADMIN_PASSWORD":
            return generate_password(16)
        return generate_password(32 if key == "DB_ROOT_PASSWORD" else 24)

    @staticmethod
    def _attach_to_edge(
        compose_services: dict[str, Any],
        project: str,
        hostname: str,
        specs: dict[str, ServiceSpec],
    ) -> None:
        """Route a shared host's edge proxy to this tenant's proxy.

        Shared hosts run one edge Traefik on ports 80/443 that passes TLS
        through by SNI; the tenant proxy keeps terminating TLS itself.
        """
        hosts = {hostname}
        hosts.update(spec.url.removeprefix("https://") for spec in specs.values() if spec.url)
        hosts = sorted(hosts)
        sni = " || ".join(f"HostSNI(`{host}`)" for host in hosts)
        http_hosts = " || ".join(f"Host(`{host}`)" for host in hosts)

        proxy = compose_services["proxy"]
        proxy.pop("ports", None)
        proxy["networks"] = ["default", "edge"]
        proxy["labels"] = [
            "stackbox.edge=true",
            "traefik.enable=true",
            "traefik.docker.network=" + EDGE_NETWORK,
            f"traefik.tcp.routers.{project}.rule={sni}",
            f"traefik.tcp.routers.{project}.entrypoints=websecure",
            f"traefik.tcp.routers.{project}.tls.passthrough=true",
            f"traefik.tcp.services.{project}.loadbalancer.server.port=443",
            f"traefik.http.routers.{project}-http.rule={http_hosts}",
            f"traefik.http.routers.{project}-http.entrypoints=web",
            f"traefik.http.services.{project}-http.loadbalancer.server.port=80",
        ]

    def traefik_config(self, config: TenantConfig, shared: bool) -> str:
        docker_provider = {
            "endpoint": "unix:///var/run/docker.sock",
            "exposedByDefault": False,
            # Shared hosts run other tenants' containers too
            "constraints": f"Label(`stackbox.tenant`,`{config.tenant_id}`)",
        }
        if shared:
            docker_provider["network"] = f"sbx-{config.tenant_id}_default"
        document = {
            "global": {"checkNewVersion": False, "sendAnonymousUsage": False},
            "ping": {},
            "entryPoints": {
                "web": {
                    "address": ":80",
                    "http": {"redirections": {"entryPoint": {
                        "to": "websecure", "scheme": "https", "permanent": True,
                    }}},
                },
                "websecure": {"address": ":443"},
            },
            "certificatesResolvers": {
                "letsencrypt": {"acme": {
                    "email": self.settings.acme_email,
                    "storage": "/ssl/acme.json",
                    "httpChallenge": {"entryPoint": "web"},
                }},
            },
            "providers": {"docker": docker_provider},
            "log": {"level": "INFO", "format": "json"},
            "accessLog": {},
        }
        return f"# Traefik configuration for {config.tenant_id}\n" + yaml.safe_dump(
            document, sort_keys=False
        )

    @staticmethod
    def nginx_config(hostname: str) -> str:
        return f"""server {{
    listen 80;
    server_name {hostname} www.{hostname};
    root /usr/share/nginx/html;
    index index.html;

    add_header X-Frame-Options "SAMEORIGIN" always;
    add_header X-Content-Type-Options "nosniff" always;
    add_header Referrer-Policy "strict-origin-when-cross-origin" always;

    gzip on;
    gzip_types text/plain text/css application/json application/javascript text/xml;

    location / {{
        try_files $uri $uri/ /index.html;
    }}

    location /health {{
        access_log off;
        return 200 "healthy\\n";
        add_header Content-Type text/plain;
    }}

    location ~* \\.(jpg|jpeg|png|gif|ico|css|js)$ {{
        expires 1y;
        add_header Cache-Control "public, immutable";
    }}
}}
"""

    @staticmethod
    def database_init(metas: dict[str, dict], secret_values: dict[str, str]) -> str:
        lines = ["-- StackBox tenant databases"]
        for meta in metas.values():
            db_name = meta.get("db_name")
            if not meta.get("database") or not db_name:
                continue
            password = secret_values[meta["secrets"][0]]
            lines.extend([
                f"CREATE DATABASE IF NOT EXISTS `{db_name}` CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci;",
                f"CREATE USER IF NOT EXISTS '{db_name}'@'%' IDENTIFIED BY '{password}';",
                f"GRANT ALL PRIVILEGES ON `{db_name}`.* TO '{db_name}'@'%';",
            ])
        lines.append("FLUSH PRIVILEGES;")
        return "\n".join(lines) + "\n"

    @staticmethod
    def landing_page(config: TenantConfig, specs: dict[str, ServiceSpec]) -> str:
        titles = {
            "crm": ("Customer Management", "Manage your clients and leads."),
            "files": ("File Portal", "Secure file sharing for your team."),
            "booking": ("Booking", "Let clients schedule appointments with you."),
            "newsletter": ("Email Marketing", "Create and send newsletters."),
        }
        name = html.escape(config.display_name)
        color = config.branding.theme_color
        logo = ""
        if config.branding.logo_url:
            logo = f'<img class="logo" src="{html.escape(config.branding.logo_url)}" alt="{name}">'

        cards = []
        for service, (title, blurb) in titles.items():
            spec = specs.get(service)
            if spec is None or not spec.url:
                continue
            cards.append(
                f'<div class="service"><h3>{title}</h3><p>{blurb}</p>'
                f'<a href="{spec.url}">Open {title} &rarr;</a></div>'
            )

        return f"""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>{name}</title>
  <style>
    body {{ font-family: Arial, sans-serif; margin: 0; background: {color}; color: #fff; }}
    .container {{ max-width: 1100px; margin: 0 auto; padding: 48px 20px; text-align: center; }}
    .logo {{ max-height: 80px; margin-bottom: 24px; }}
    .services {{ display: grid; grid-template-columns: repeat(auto-fit, minmax(240px, 1fr)); gap: 24px; margin-top: 40px; }}
    .service {{ background: rgba(255, 255, 255, 0.12); padding: 24px; border-radius: 10px; }}
    .service a {{ color: #fff; font-weight: bold; text-decoration: none; }}
  </style>
</head>
<body>
  <div class="container">
    {logo}
    <h1>Welcome to {name}</h1>
    <div class="services">
      {"".join(cards)}
    </div>
  </div>
</body>
</html>
"""
