"""
Runtime settings schema.

The YAML settings file is parsed into these frozen types by the loader.
Sections mirror the file layout: ``database``, ``approvals``, ``logging``.
"""

from __future__ import annotations

from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseSettings:
    """Connection settings passed to ``init_engine_from_url``."""

    url: str
    echo: bool = False
    pool_size: int = 10
    max_overflow: int = 10


@dataclass(frozen=True)
class ApprovalSettings:
    """Approval engine tunables."""

    request_expiry_days: int = 7


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "INFO"


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GrantflowSettings:
    """Complete runtime settings for one process."""

    database: DatabaseSettings
    approvals: ApprovalSettings = field(default_factory=ApprovalSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    checksum: str = ""

    @property
    def database_url(self) -> str:
        return self.database.url

    @property
    def echo_sql(self) -> bool:
        return self.database.echo

    @property
    def pool_size(self) -> int:
        return self.database.pool_size

    @property
    def max_overflow(self) -> int:
        return self.database.max_overflow

    @property
    def request_expiry_days(self) -> int:
        return self.approvals.request_expiry_days

    @property
    def log_level(self) -> str:
        return self.logging.level
