"""Delivery of provisioning outcomes to the tenant contact."""

from abc import ABC, abstractmethod
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from stackbox.core import get_logger
from stackbox.core.errors import ResourceProvisioningError
from stackbox.core.resilience import translate_client_error
from stackbox.models import ProvisioningResult, TenantConfig

logger = get_logger(__name__)


class Notifier(ABC):
    """Receives the outcome of every pipeline run."""

    @abstractmethod
    def notify_ready(self, config: TenantConfig, result: ProvisioningResult) -> None:
        """Deliver service URLs and the one-time admin credentials."""
        pass

    @abstractmethod
    def notify_delayed(self, config: TenantConfig, result: ProvisioningResult) -> None:
        """Tell the tenant that setup is delayed (no infrastructure detail)."""
        pass


class LoggingNotifier(Notifier):
    """Logs notifications instead of sending them."""

    def notify_ready(self, config: TenantConfig, result: ProvisioningResult) -> None:
        logger.info(
            "tenant_notified_ready",
            tenant_id=config.tenant_id,
            email=config.email,
            hostname=result.hostname,
            service_urls=result.service_urls,
        )

    def notify_delayed(self, config: TenantConfig, result: ProvisioningResult) -> None:
        logger.info(
            "tenant_notified_delayed",
            tenant_id=config.tenant_id,
            email=config.email,
            message=result.user_message,
        )


class SESNotifier(Notifier):
    """Sends plain-text emails through SES v2 from the platform identity."""

    def __init__(
        self,
        from_email: str,
        ses_client: Optional[Any] = None,
        region: Optional[str] = None,
        reply_to_email: Optional[str] = None,
    ):
        self.from_email = from_email
        self.reply_to_email = reply_to_email
        self.region = region
        self._client = ses_client

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client("sesv2", region_name=self.region)
        return self._client

    def notify_ready(self, config: TenantConfig, result: ProvisioningResult) -> None:
        lines = [
            f"Hello {config.display_name},",
            "",
            f"Your business tools are ready at https://{result.hostname}",
            "",
        ]
        lines.extend(f"  {name}: {url}" for name, url in sorted(result.service_urls.items()))
        if result.credentials is not None:
            lines.extend([
                "",
                f"Username: {result.credentials.username}",
                f"Password: {result.credentials.password}",
                "Please change this password after your first login.",
            ])
        self._send(config, "Your StackBox services are ready", "\n".join(lines))

    def notify_delayed(self, config: TenantConfig, result: ProvisioningResult) -> None:
        body = f"Hello {config.display_name},\n\n{result.user_message}\n"
        self._send(config, "Your StackBox setup is delayed", body)

    def _send(self, config: TenantConfig, subject: str, body: str) -> None:
        request = {
            "FromEmailAddress": self.from_email,
            "Destination": {"ToAddresses": [config.email]},
            "Content": {"Simple": {
                "Subject": {"Data": subject},
                "Body": {"Text": {"Data": body}},
            }},
        }
        if self.reply_to_email:
            request["ReplyToAddresses"] = [self.reply_to_email]
        try:
            response = self.client.send_email(**request)
        except ClientError as e:
            raise translate_client_error(e, f"ses:{config.email}") from e
        except BotoCoreError as e:
            raise ResourceProvisioningError(str(e), resource=f"ses:{config.email}") from e
        logger.info(
            "tenant_email_sent",
            tenant_id=config.tenant_id,
            subject=subject,
            message_id=response.get("MessageId"),
        )
