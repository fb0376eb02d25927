"""Project file loading with validation.

All file operations enforce size limits. Input validation is performed at
the boundary so later stages can trust the ProjectConfig they receive.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .config import MAX_PROJECT_FILE_SIZE_BYTES
from .models import ProjectConfig

logger = logging.getLogger(__name__)


class ProjectLoadError(Exception):
    """Raised when project file loading or validation fails."""

    pass


def load_project(project_path: Path) -> ProjectConfig:
    """Load and validate a project file from YAML.

    Args:
        project_path: Path to the project file (usually deployguard.yaml).

    Returns:
        Validated project configuration.

    Raises:
        ProjectLoadError: If the file cannot be loaded or fails validation.
    """
    if not project_path.exists():
        raise ProjectLoadError(f"Project file not found: {project_path}")

    try:
        file_size = project_path.stat().st_size
    except OSError as e:
        raise ProjectLoadError(f"Failed to stat project file {project_path}: {e}") from e

    if file_size > MAX_PROJECT_FILE_SIZE_BYTES:
        raise ProjectLoadError(
            f"Project file exceeds maximum size of {MAX_PROJECT_FILE_SIZE_BYTES} bytes: "
            f"{project_path}"
        )

    try:
        content = project_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ProjectLoadError(f"Failed to read project file {project_path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ProjectLoadError(f"Invalid YAML in {project_path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise ProjectLoadError(f"Project file must contain a YAML mapping: {project_path}")

    try:
        project = ProjectConfig.model_validate(raw_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")

        error_list = "\n".join(errors)
        raise ProjectLoadError(f"Validation failed for {project_path}:\n{error_list}") from e

    logger.info(
        "Loaded project '%s' from %s",
        project.project_name,
        project_path,
        extra={"environments": sorted(project.environments)},
    )
    return project
