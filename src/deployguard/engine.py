"""Provisioning engine invocation.

The provisioning engine (SST on top of Pulumi by default) owns resource
creation. This module only runs it as a subprocess: build, deploy with
streamed output, and the status/unlock operations used for the engine's
own state lock.

Timeouts are enforced on every subprocess so a hung engine cannot hold a
deployment lock indefinitely.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shlex
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from .config import DEFAULT_ENGINE_STATUS_TIMEOUT_SECONDS, Config

logger = logging.getLogger(__name__)

# Tail sizes kept for deploy failure reports
STDERR_TAIL_LINES = 20
STDOUT_TAIL_LINES = 15

ANSI_ESCAPE_PATTERN = re.compile(r"\x1B\[[0-9;]*[A-Za-z]")
DISTRIBUTION_URL_PATTERN = re.compile(r"https://([a-z0-9]+)\.cloudfront\.net", re.IGNORECASE)
DISTRIBUTION_ID_FIELD_PATTERN = re.compile(r'"distributionId"\s*:\s*"([A-Z0-9]+)"')

TROUBLESHOOTING_NOTES = (
    "Check AWS credentials and permissions",
    "Review the infrastructure config for configuration errors",
    "Check CloudWatch logs for Lambda errors",
    "Verify domain and DNS settings if applicable",
)


class EngineError(Exception):
    """Raised when the provisioning engine cannot be invoked or fails."""

    pass


class BuildError(EngineError):
    """Raised when the project build fails."""

    pass


class DeployError(EngineError):
    """Raised when the engine deploy exits non-zero or times out."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        stdout_tail: Sequence[str] = (),
        stderr_tail: Sequence[str] = (),
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stdout_tail = list(stdout_tail)
        self.stderr_tail = list(stderr_tail)


@dataclass
class CommandResult:
    """Outcome of a finished subprocess."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return self.stdout + self.stderr


def strip_ansi(line: str) -> str:
    return ANSI_ESCAPE_PATTERN.sub("", line)


def extract_distribution_id(output: str) -> str | None:
    """Find a CloudFront distribution id in engine deploy output.

    Looks for a distribution URL first and falls back to a JSON
    "distributionId" field.
    """
    match = DISTRIBUTION_URL_PATTERN.search(output)
    if match:
        return match.group(1).upper()

    match = DISTRIBUTION_ID_FIELD_PATTERN.search(output)
    if match:
        return match.group(1)

    return None


def format_deploy_failure(
    stage: str,
    exit_code: int | None,
    stdout_tail: Sequence[str],
    stderr_tail: Sequence[str],
) -> str:
    """Build a readable failure report from the tail of the engine output."""
    if exit_code is None:
        parts = [f"Deployment of stage '{stage}' did not complete"]
    else:
        parts = [f"Deployment of stage '{stage}' failed (exit code {exit_code})"]

    if stderr_tail:
        parts.append("--- Error output (stderr) ---\n" + "\n".join(stderr_tail))
    if stdout_tail:
        parts.append("--- Recent deployment output ---\n" + "\n".join(stdout_tail))

    notes = "\n".join(f"- {note}" for note in TROUBLESHOOTING_NOTES)
    parts.append("--- Troubleshooting ---\n" + notes)
    return "\n\n".join(parts)


class ProvisioningEngine:
    """Runs the provisioning engine and project commands as subprocesses.

    Usage:
        engine = ProvisioningEngine(config, aws_profile="prod")
        output = await engine.deploy("staging")
        distribution_id = extract_distribution_id(output)
    """

    def __init__(
        self,
        config: Config,
        *,
        aws_profile: str | None = None,
        output_handler: Callable[[str], None] | None = None,
    ) -> None:
        """Initialize the engine invoker.

        Args:
            config: Operator configuration (engine command, timeouts, project root).
            aws_profile: AWS profile exported to subprocesses as AWS_PROFILE.
            output_handler: Called with each cleaned line of deploy output.
        """
        self._config = config
        self._aws_profile = aws_profile
        self._output_handler = output_handler

    @property
    def cwd(self) -> Path:
        return self._config.project_root

    def _env(self) -> dict[str, str]:
        env = os.environ.copy()
        if self._aws_profile:
            env["AWS_PROFILE"] = self._aws_profile
        return env

    async def _spawn(self, cmd: Sequence[str]) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(self.cwd),
                env=self._env(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise EngineError(f"Command not found: {cmd[0]}") from e

    async def run_command(self, cmd: Sequence[str], timeout_seconds: int) -> CommandResult:
        """Run a command to completion, capturing output.

        Raises:
            EngineError: If the command cannot be started or times out.
        """
        process = await self._spawn(cmd)
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=timeout_seconds
            )
        except TimeoutError as e:
            process.kill()
            await process.wait()
            raise EngineError(
                f"Command timed out after {timeout_seconds}s: {shlex.join(cmd)}"
            ) from e

        return CommandResult(
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    async def status(self, stage: str) -> CommandResult:
        """Run the engine status operation for a stage."""
        cmd = [*self._config.engine_command, "status", "--stage", stage]
        return await self.run_command(cmd, DEFAULT_ENGINE_STATUS_TIMEOUT_SECONDS)

    async def unlock(self, stage: str) -> CommandResult:
        """Run the engine unlock operation for a stage."""
        cmd = [*self._config.engine_command, "unlock", "--stage", stage]
        return await self.run_command(cmd, DEFAULT_ENGINE_STATUS_TIMEOUT_SECONDS)

    async def build(self, command: str) -> None:
        """Run the project build command.

        Raises:
            BuildError: If the build exits non-zero or cannot run.
        """
        cmd = shlex.split(command)
        logger.info("Running build", extra={"command": command})
        try:
            result = await self.run_command(cmd, self._config.build_timeout_seconds)
        except EngineError as e:
            raise BuildError(str(e)) from e

        if not result.ok:
            lines = [line for line in result.output.splitlines() if line.strip()]
            tail = lines[-STDERR_TAIL_LINES:]
            raise BuildError(
                f"Build failed (exit code {result.returncode}):\n" + "\n".join(tail)
            )

    async def deploy(self, stage: str, custom_script: str | None = None) -> str:
        """Deploy a stage, streaming output while waiting for exit.

        Args:
            stage: Engine stage name.
            custom_script: Optional script run as `bash <script> <stage>`
                instead of the engine deploy command.

        Returns:
            The full stdout of the deploy, for resource id extraction.

        Raises:
            DeployError: If the deploy exits non-zero or times out.
        """
        if custom_script:
            cmd = ["bash", custom_script, stage]
        else:
            cmd = [*self._config.engine_command, "deploy", "--stage", stage]

        logger.info("Starting deploy", extra={"stage": stage, "command": shlex.join(cmd)})

        try:
            process = await self._spawn(cmd)
        except EngineError as e:
            raise DeployError(str(e)) from e

        stdout_lines: list[str] = []
        stdout_tail: deque[str] = deque(maxlen=STDOUT_TAIL_LINES)
        stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)

        async def pump(stream: asyncio.StreamReader | None, tail: deque[str], is_err: bool) -> None:
            if stream is None:
                return
            async for raw in stream:
                line = strip_ansi(raw.decode("utf-8", errors="replace")).rstrip()
                if not is_err:
                    stdout_lines.append(line)
                if not line.strip():
                    continue
                tail.append(line)
                if self._output_handler:
                    self._output_handler(line)
                logger.debug(
                    "Engine output",
                    extra={
                        "stage": stage,
                        "stream": "stderr" if is_err else "stdout",
                        "line": line,
                    },
                )

        try:
            await asyncio.wait_for(
                asyncio.gather(
                    pump(process.stdout, stdout_tail, False),
                    pump(process.stderr, stderr_tail, True),
                    process.wait(),
                ),
                timeout=self._config.deploy_timeout_seconds,
            )
        except TimeoutError as e:
            process.kill()
            await process.wait()
            logger.error(
                "Deploy timed out",
                extra={"stage": stage, "timeout_seconds": self._config.deploy_timeout_seconds},
            )
            raise DeployError(
                format_deploy_failure(stage, None, list(stdout_tail), list(stderr_tail)),
                stdout_tail=stdout_tail,
                stderr_tail=stderr_tail,
            ) from e

        if process.returncode != 0:
            raise DeployError(
                format_deploy_failure(
                    stage, process.returncode, list(stdout_tail), list(stderr_tail)
                ),
                exit_code=process.returncode,
                stdout_tail=stdout_tail,
                stderr_tail=stderr_tail,
            )

        logger.info("Deploy finished", extra={"stage": stage, "output_lines": len(stdout_lines)})
        return "\n".join(stdout_lines)

