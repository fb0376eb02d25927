"""Declared intent extraction from the infrastructure config.

The infrastructure config (sst.config.ts by default) is TypeScript, so it is
not parsed. Capability markers are matched textually instead. The result is
a conservative signal: a marker hidden behind a variable or helper function
is missed (false negative), which makes the reconciler skip the matching
check rather than report a problem that does not exist.
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from .config import MAX_INFRA_CONFIG_SIZE_BYTES

logger = logging.getLogger(__name__)

FUNCTION_URL_PATTERN = re.compile(r"url:\s*true", re.IGNORECASE)
EDGE_FUNCTION_PATTERN = re.compile(r"edge:\s*\{", re.IGNORECASE)
KEY_VALUE_STORE_PATTERN = re.compile(r"kvStore:", re.IGNORECASE)
CUSTOM_DOMAIN_PATTERN = re.compile(r"\bdomain\s*:", re.IGNORECASE)


@dataclass(frozen=True)
class DeclaredIntent:
    """Capabilities the project asks for, independent of what is deployed."""

    uses_function_url: bool = False
    uses_edge_function: bool = False
    uses_key_value_store: bool = False
    uses_custom_domain: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def parse_declared_intent(text: str) -> DeclaredIntent:
    """Extract capability flags from infrastructure config text."""
    return DeclaredIntent(
        uses_function_url=bool(FUNCTION_URL_PATTERN.search(text)),
        uses_edge_function=bool(EDGE_FUNCTION_PATTERN.search(text)),
        uses_key_value_store=bool(KEY_VALUE_STORE_PATTERN.search(text)),
        uses_custom_domain=bool(CUSTOM_DOMAIN_PATTERN.search(text)),
    )


def load_declared_intent(config_path: Path) -> DeclaredIntent:
    """Read the infrastructure config and extract declared intent.

    A missing or unreadable file declares nothing, so every
    intent-conditional check is skipped.
    """
    try:
        if config_path.stat().st_size > MAX_INFRA_CONFIG_SIZE_BYTES:
            logger.warning(
                "Infrastructure config too large, treating intent as empty",
                extra={"path": str(config_path)},
            )
            return DeclaredIntent()
        text = config_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.info("No infrastructure config found", extra={"path": str(config_path)})
        return DeclaredIntent()
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(
            "Failed to read infrastructure config",
            extra={"path": str(config_path), "error": str(e)},
        )
        return DeclaredIntent()

    intent = parse_declared_intent(text)
    logger.debug("Declared intent", extra={"path": str(config_path), **intent.to_dict()})
    return intent
