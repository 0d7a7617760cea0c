"""
grantflow_config -- runtime settings for the approval engine.

Responsibility:
    Provides ``get_settings()``, the single way services obtain runtime
    configuration.  Settings come from the packaged ``defaults.yaml``, an
    optional override file named by ``GRANTFLOW_CONFIG``, and the
    ``GRANTFLOW_DATABASE_URL`` environment variable, in that order.

Architecture position:
    Configuration -- sits above ``grantflow_kernel`` and below
    ``grantflow_services``.  The kernel MUST NEVER import from
    ``grantflow_config``; services pass plain values (URL, expiry days,
    log level) down to it.

Failure modes:
    - ``FileNotFoundError`` -- ``GRANTFLOW_CONFIG`` names a missing file.
    - ``KeyError`` / ``ValueError`` -- malformed settings.
"""

from __future__ import annotations

import os

from grantflow_config.loader import (
    ENV_DATABASE_URL,
    compute_checksum,
    load_settings,
)
from grantflow_config.schema import (
    ApprovalSettings,
    DatabaseSettings,
    GrantflowSettings,
    LoggingSettings,
)

ENV_CONFIG_PATH = "GRANTFLOW_CONFIG"


def get_settings() -> GrantflowSettings:
    """Load settings for this process.

    Not cached: callers hold the returned settings for as long as they
    need them.
    """
    return load_settings(os.environ.get(ENV_CONFIG_PATH) or None)


__all__ = [
    "ENV_CONFIG_PATH",
    "ENV_DATABASE_URL",
    "ApprovalSettings",
    "DatabaseSettings",
    "GrantflowSettings",
    "LoggingSettings",
    "compute_checksum",
    "get_settings",
    "load_settings",
]
