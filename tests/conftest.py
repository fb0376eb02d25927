"""Pytest configuration and fixtures."""

from __future__ import annotations

import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for aws_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from deployguard.config import Config  # noqa: E402
from deployguard.engine import CommandResult, EngineError  # noqa: E402
from deployguard.models import ProjectConfig  # noqa: E402

FULL_INFRA_CONFIG = """\
export default $config({
  app() {
    return { name: "shop", home: "aws" };
  },
  async run() {
    const server = new sst.aws.Function("Server", {
      handler: "src/server.handler",
      url: true,
      environment: {
        STRIPE_KEY: process.env.STRIPE_KEY,
      },
    });
    const router = new sst.aws.Router("Router", {
      domain: "staging.example.com",
      edge: {
        viewerRequest: { kvStore: store.arn },
      },
    });
  },
});
"""


class FakeEngine:
    """In-memory stand-in for ProvisioningEngine.

    Records every call. Outputs and failures are set as attributes.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, ...]] = []
        self.command_results: dict[str, CommandResult] = {}
        self.command_error: EngineError | None = None
        self.status_output = "No lock held"
        self.status_error: EngineError | None = None
        self.unlock_ok = True
        self.build_error: EngineError | None = None
        self.deploy_output = ""
        self.deploy_error: EngineError | None = None

    async def run_command(self, cmd: Sequence[str], timeout_seconds: int) -> CommandResult:
        self.calls.append(("run", *cmd))
        if self.command_error is not None:
            raise self.command_error
        return self.command_results.get(cmd[0], CommandResult(0, "", ""))

    async def status(self, stage: str) -> CommandResult:
        self.calls.append(("status", stage))
        if self.status_error is not None:
            raise self.status_error
        return CommandResult(0, self.status_output, "")

    async def unlock(self, stage: str) -> CommandResult:
        self.calls.append(("unlock", stage))
        return CommandResult(0 if self.unlock_ok else 1, "", "")

    async def build(self, command: str) -> None:
        self.calls.append(("build", command))
        if self.build_error is not None:
            raise self.build_error

    async def deploy(self, stage: str, custom_script: str | None = None) -> str:
        self.calls.append(("deploy", stage))
        if self.deploy_error is not None:
            raise self.deploy_error
        return self.deploy_output

    def called(self, name: str) -> bool:
        return any(call[0] == name for call in self.calls)


def make_project(**overrides: Any) -> ProjectConfig:
    """Project with one staging environment under example.com."""
    data: dict[str, Any] = {
        "projectName": "shop",
        "mainDomain": "example.com",
        "requireCleanGit": False,
        "runTestsBeforeDeploy": False,
        "environments": {"staging": {}, "production": {"domain": "example.com"}},
    }
    data.update(overrides)
    return ProjectConfig.model_validate(data)


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(project_root=tmp_path)


@pytest.fixture
def project() -> ProjectConfig:
    return make_project()


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()

