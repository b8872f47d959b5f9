"""
Connector registry: auto-discovery and metadata types.

ConnectorMeta is the single source of truth for what a connector is and how
it authenticates.  The discover_connectors() function scans
backend/connectors/ at import time.
"""

from __future__ import annotations

import importlib
import logging
import pkgutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from connectors.base import BaseConnector

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class AuthType(Enum):
    """How a connector authenticates with its source system."""

    OAUTH2 = "oauth2"
    API_KEY = "api_key"


class ConnectorScope(Enum):
    """Whether a connector is account-wide or per-user."""

    ORGANIZATION = "organization"
    USER = "user"


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConnectorMeta:
    """Self-describing metadata for a connector."""

    name: str
    slug: str
    auth_type: AuthType
    scope: ConnectorScope
    entity_types: list[str] = field(default_factory=list)
    oauth_scopes: list[str] = field(default_factory=list)
    # Provider supplies a single associated contact per deal
    single_contact: bool = False
    description: str = ""


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------

_SKIP_MODULES = frozenset({"base", "registry", "models", "errors"})


def discover_connectors() -> dict[str, type[BaseConnector]]:
    """Build connector registry from in-tree modules."""
    from connectors.base import BaseConnector  # deferred to avoid circular import

    registry: dict[str, type[BaseConnector]] = {}

    connectors_dir = Path(__file__).parent
    for module_info in pkgutil.iter_modules([str(connectors_dir)]):
        if module_info.name.startswith("_") or module_info.name in _SKIP_MODULES:
            continue
        try:
            module = importlib.import_module(f"connectors.{module_info.name}")
        except Exception:
            logger.warning("Failed to import connector module %s", module_info.name, exc_info=True)
            continue

        for attr_name in dir(module):
            obj = getattr(module, attr_name)
            if (
                isinstance(obj, type)
                and issubclass(obj, BaseConnector)
                and obj is not BaseConnector
                and hasattr(obj, "meta")
            ):
                meta: ConnectorMeta = obj.meta  # type: ignore[attr-defined]
                registry[meta.slug] = obj

    return registry


_registry: dict[str, type[BaseConnector]] | None = None


def get_connector_class(provider: str) -> type[BaseConnector]:
    """Look up the data adapter for a provider slug."""
    global _registry
    if _registry is None:
        _registry = discover_connectors()
    connector_class = _registry.get(provider)
    if connector_class is None:
        raise ValueError(f"No data connector for provider: {provider}")
    return connector_class


def data_providers() -> list[str]:
    """Slugs of every provider that has a data adapter."""
    global _registry
    if _registry is None:
        _registry = discover_connectors()
    return sorted(_registry)
