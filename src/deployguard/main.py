"""Process setup shared by the deployguard commands.

Loads configuration, installs structured logging and builds the pipeline
for the project in the configured project root.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime

from .config import Config
from .engine import ProvisioningEngine
from .models import ProjectConfig
from .pipeline import DeploymentPipeline
from .project_loader import load_project

# Standard LogRecord attributes; everything else came in through `extra`
_RECORD_ATTRIBUTES = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRIBUTES:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output on stderr.

    stdout is left to command output so it can be piped.
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    # Reduce noise from the AWS SDK
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("boto3").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_pipeline(
    config: Config, project: ProjectConfig, *, stream_output: bool = True
) -> DeploymentPipeline:
    """Build a pipeline whose engine echoes deploy output to stderr."""
    engine = ProvisioningEngine(
        config,
        aws_profile=project.aws_profile,
        output_handler=(lambda line: print(line, file=sys.stderr)) if stream_output else None,
    )
    return DeploymentPipeline(config, project, engine=engine)


def load(config: Config | None = None) -> tuple[Config, ProjectConfig]:
    """Load configuration and the project file.

    Raises:
        ConfigurationError: If environment configuration is invalid.
        ProjectLoadError: If the project file is missing or invalid.
    """
    config = config or Config.from_env()
    return config, load_project(config.project_file_path)
