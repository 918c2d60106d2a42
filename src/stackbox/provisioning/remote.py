"""Shell commands on compute instances through SSM Run Command."""

import base64
import posixpath
import shlex
from dataclasses import dataclass
from typing import Any, Optional

import boto3
from botocore.exceptions import ClientError

from stackbox.core import get_logger
from stackbox.core.errors import RemoteCommandError
from stackbox.core.resilience import (
    CancellationToken,
    PollConfig,
    error_code,
    poll_until,
    translate_client_error,
)

logger = get_logger(__name__)

SHELL_DOCUMENT = "AWS-RunShellScript"
TERMINAL_STATUSES = frozenset({
    "Success", "Failed", "Cancelled", "TimedOut", "Cancelling", "Undeliverable", "Terminated",
    "InvalidPlatform", "AccessDenied", "DeliveryTimedOut", "ExecutionTimedOut",
})


def file_write_commands(files: dict[str, str]) -> list[str]:
    """Shell lines that write ``files`` (relative path -> text) in the cwd."""
    commands = []
    for path, content in files.items():
        encoded = base64.b64encode(content.encode("utf-8")).decode("ascii")
        directory = posixpath.dirname(path)
        if directory:
            commands.append(f"mkdir -p {shlex.quote(directory)}")
        commands.append(f"echo {encoded} | base64 -d > {shlex.quote(path)}")
    return commands


@dataclass
class CommandOutcome:
    """Final state of one command invocation."""
    command_id: str
    instance_id: str
    status: str
    stdout: str = ""
    stderr: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == "Success"


class RemoteCommandRunner:
    """Sends shell scripts to instances and waits for their outcome."""

    def __init__(
        self,
        ssm_client: Optional[Any] = None,
        region: Optional[str] = None,
        poll: Optional[PollConfig] = None,
    ):
        self._client = ssm_client
        self.region = region
        self.poll = poll or PollConfig(interval=5.0, timeout=600.0)

    @property
    def client(self):
        """Get SSM client."""
        if self._client is None:
            self._client = boto3.client("ssm", region_name=self.region)
        return self._client

    def send(
        self,
        instance_id: str,
        commands: list[str],
        comment: Optional[str] = None,
        working_directory: Optional[str] = None,
    ) -> str:
        """Send a script and return its command id as soon as it is accepted."""
        parameters: dict[str, list[str]] = {"commands": commands}
        if working_directory:
            parameters["workingDirectory"] = [working_directory]
        try:
            response = self.client.send_command(
                InstanceIds=[instance_id],
                DocumentName=SHELL_DOCUMENT,
                Parameters=parameters,
                Comment=(comment or "stackbox")[:100],
                TimeoutSeconds=int(self.poll.timeout),
            )
        except ClientError as e:
            raise translate_client_error(e, f"ssm:{instance_id}") from e

        command_id = response["Command"]["CommandId"]
        logger.info(
            "remote_command_sent",
            instance_id=instance_id,
            command_id=command_id,
            comment=comment,
        )
        return command_id

    def get_outcome(self, command_id: str, instance_id: str) -> Optional[CommandOutcome]:
        """Return the outcome if the command finished, None while it runs."""
        try:
            response = self.client.get_command_invocation(
                CommandId=command_id,
                InstanceId=instance_id,
            )
        except ClientError as e:
            # Invocation records appear shortly after send_command returns
            if error_code(e) == "InvocationDoesNotExist":
                return None
            raise translate_client_error(e, f"ssm:{instance_id}") from e

        status = response.get("Status", "Pending")
        if status not in TERMINAL_STATUSES:
            return None
        return CommandOutcome(
            command_id=command_id,
            instance_id=instance_id,
            status=status,
            stdout=response.get("StandardOutputContent", ""),
            stderr=response.get("StandardErrorContent", ""),
        )

    def wait(
        self,
        command_id: str,
        instance_id: str,
        poll: Optional[PollConfig] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> CommandOutcome:
        """Block until the command reaches a terminal status."""
        return poll_until(
            lambda: self.get_outcome(command_id, instance_id),
            poll or self.poll,
            description=f"command {command_id}",
            cancel=cancel,
            resource_id=instance_id,
        )

    def run(
        self,
        instance_id: str,
        commands: list[str],
        comment: Optional[str] = None,
        working_directory: Optional[str] = None,
        poll: Optional[PollConfig] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> CommandOutcome:
        """Send a script, wait for it and raise if it did not succeed.

        Raises:
            RemoteCommandError: If the command finished in any state other
                than ``Success``.
        """
        command_id = self.send(instance_id, commands, comment, working_directory)
        outcome = self.wait(command_id, instance_id, poll=poll, cancel=cancel)
        if not outcome.succeeded:
            logger.warning(
                "remote_command_failed",
                instance_id=instance_id,
                command_id=command_id,
                status=outcome.status,
            )
            raise RemoteCommandError(
                f"Command {comment or command_id} finished with status {outcome.status}",
                instance_id=instance_id,
                command_id=command_id,
                status=outcome.status,
                stderr=outcome.stderr,
            )
        return outcome
