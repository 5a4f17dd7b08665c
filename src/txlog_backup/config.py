#!/usr/bin/env python3
"""Configuration management for the transaction-log backup service.

This module provides type-safe configuration dataclasses with validation.
Configuration is loaded from environment variables with sensible defaults
where appropriate.
"""

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar
from urllib.parse import urlparse

# Get logger for this module
logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True, slots=True)
class ChainConfig:
    """Configuration for the chain node being backed up.

    Attributes:
        network: Network name used to namespace backups (e.g. 'localhost')
        chain_id: Chain ID of the network
        rpc_url: HTTP(S) or WS(S) RPC endpoint of the node
        request_timeout: Per-request timeout in seconds
    """

    network: str
    chain_id: int
    rpc_url: str = "http://127.0.0.1:8545"
    request_timeout: int = 30

    def __post_init__(self) -> None:
        """Validate chain configuration."""
        if not self.network:
            raise ValueError("Network name is required (NETWORK)")
        if os.sep in self.network or self.network in (".", ".."):
            raise ValueError(f"Invalid network name: {self.network}")

        if self.chain_id <= 0:
            raise ValueError(f"Chain ID must be positive, got {self.chain_id}")

        parsed = urlparse(self.rpc_url)
        if parsed.scheme not in ("http", "https", "ws", "wss"):
            raise ValueError(
                f"Invalid RPC URL scheme: {parsed.scheme}. "
                "Expected http, https, ws, or wss"
            )

        if self.request_timeout <= 0:
            raise ValueError(f"Request timeout must be positive, got {self.request_timeout}")
        if self.request_timeout > 120:
            raise ValueError(f"Request timeout too long (max 120s), got {self.request_timeout}")


@dataclass(frozen=True, slots=True)
class BackupConfig:
    """Configuration for segment writing."""

    backup_dir: Path = Path("backups")
    batch_size: int = 100  # blocks per segment flush
    segment_format: str = "json"

    SUPPORTED_FORMATS: ClassVar[set[str]] = {"json", "cbor"}

    def __post_init__(self) -> None:
        """Validate backup configuration."""
        object.__setattr__(self, "backup_dir", Path(self.backup_dir))

        if self.batch_size <= 0:
            raise ValueError(f"Batch size must be positive, got {self.batch_size}")
        if self.batch_size > 10_000:
            raise ValueError(f"Batch size too high (max 10000), got {self.batch_size}")

        if self.segment_format not in self.SUPPORTED_FORMATS:
            raise ValueError(
                f"Unsupported segment format: {self.segment_format}. "
                f"Supported formats: {', '.join(sorted(self.SUPPORTED_FORMATS))}"
            )


@dataclass(frozen=True, slots=True)
class MonitorConfig:
    """Configuration for the periodic backup scheduler."""

    backup_interval: float = 300  # seconds between backup cycles
    max_backup_files: int = 100
    enable_auto_cleanup: bool = True
    keep_recent: int = 1  # segments retention never deletes
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate monitoring configuration."""
        if self.backup_interval <= 0:
            raise ValueError(f"Backup interval must be positive, got {self.backup_interval}")

        if self.max_backup_files <= 0:
            raise ValueError(f"Max backup files must be positive, got {self.max_backup_files}")

        if self.keep_recent < 0:
            raise ValueError(f"Keep recent must be non-negative, got {self.keep_recent}")
        if self.keep_recent > self.max_backup_files:
            raise ValueError(
                f"Keep recent ({self.keep_recent}) cannot exceed "
                f"max backup files ({self.max_backup_files})"
            )

        if self.log_level.upper() not in LOG_LEVELS:
            raise ValueError(f"Invalid log level: {self.log_level}")

    def merged(self, **changes: Any) -> "MonitorConfig":
        """Return a validated copy with the given fields replaced.

        Raises:
            ValueError: If a key is not a monitor setting or a value is invalid
        """
        known = {f.name for f in dataclasses.fields(self)}
        if unknown := sorted(set(changes) - known):
            raise ValueError(f"Unknown monitor settings: {', '.join(unknown)}")
        return dataclasses.replace(self, **changes)


@dataclass(frozen=True, slots=True)
class DatabaseConfig:
    """Configuration for the document store backend."""

    type: str = "json"
    database_dir: Path = Path("database")
    database_name: str = "transactions"

    SUPPORTED_TYPES: ClassVar[set[str]] = {"json"}
    KNOWN_TYPES: ClassVar[set[str]] = {"json", "sqlite", "mongodb"}

    def __post_init__(self) -> None:
        """Validate database configuration; unsupported backends fail loudly."""
        object.__setattr__(self, "database_dir", Path(self.database_dir))

        if self.type not in self.KNOWN_TYPES:
            raise ValueError(f"Unknown database type: {self.type}")
        if self.type not in self.SUPPORTED_TYPES:
            raise ValueError(
                f"Unsupported database type: {self.type}. "
                f"Supported types: {', '.join(sorted(self.SUPPORTED_TYPES))}"
            )

        if not self.database_name:
            raise ValueError("Database name is required (DATABASE_NAME)")

    @property
    def path(self) -> Path:
        """Directory holding this database's files."""
        return self.database_dir / self.database_name


@dataclass(frozen=True, slots=True)
class RecoveryConfig:
    """Configuration for recovery runs."""

    report_dir: Path = Path("recovery")
    restore_dir: Path = Path("restored")
    enable_state_reconstruction: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "report_dir", Path(self.report_dir))
        object.__setattr__(self, "restore_dir", Path(self.restore_dir))


@dataclass(frozen=True, slots=True)
class ServiceConfig:
    """Main configuration for the backup service.

    Attributes:
        chain: Node and network identity
        backup: Segment writing settings
        monitor: Scheduler settings
        database: Document store settings
        recovery: Recovery run settings
    """

    chain: ChainConfig
    backup: BackupConfig = field(default_factory=BackupConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)

    @classmethod
    def from_env(cls) -> "ServiceConfig":
        """Load configuration from environment variables.

        Returns:
            ServiceConfig instance with loaded values

        Raises:
            ValueError: If environment variables are missing or invalid
        """
        network = os.environ.get("NETWORK", "localhost")

        chain_id_raw = os.environ.get("CHAIN_ID", "")
        if not chain_id_raw:
            raise ValueError(
                "CHAIN_ID environment variable is required. "
                "This is the chain ID of the node being backed up."
            )
        try:
            chain_id = int(chain_id_raw)
        except ValueError:
            raise ValueError(f"CHAIN_ID must be an integer, got {chain_id_raw!r}") from None

        chain = ChainConfig(
            network=network,
            chain_id=chain_id,
            rpc_url=os.environ.get("RPC_URL", "http://127.0.0.1:8545"),
            request_timeout=int(os.environ.get("REQUEST_TIMEOUT", "30")),
        )

        backup = BackupConfig(
            backup_dir=Path(os.environ.get("BACKUP_DIR", "backups")),
            batch_size=int(os.environ.get("BATCH_SIZE", "100")),
            segment_format=os.environ.get("SEGMENT_FORMAT", "json"),
        )

        monitor = MonitorConfig(
            backup_interval=float(os.environ.get("BACKUP_INTERVAL", "300")),
            max_backup_files=int(os.environ.get("MAX_BACKUP_FILES", "100")),
            enable_auto_cleanup=_env_bool("ENABLE_AUTO_CLEANUP", True),
            keep_recent=int(os.environ.get("KEEP_RECENT_SEGMENTS", "1")),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )

        database = DatabaseConfig(
            type=os.environ.get("DATABASE_TYPE", "json"),
            database_dir=Path(os.environ.get("DATABASE_DIR", "database")),
            database_name=os.environ.get("DATABASE_NAME", f"{network}_transactions"),
        )

        recovery = RecoveryConfig(
            report_dir=Path(os.environ.get("RECOVERY_DIR", "recovery")),
            restore_dir=Path(os.environ.get("RESTORE_DIR", "restored")),
            enable_state_reconstruction=_env_bool("ENABLE_STATE_RECONSTRUCTION", True),
        )

        return cls(
            chain=chain,
            backup=backup,
            monitor=monitor,
            database=database,
            recovery=recovery,
        )

    def log_config(self) -> None:
        """Log the configuration in a readable format for debugging."""
        logger.info("=" * 60)
        logger.info("Transaction Log Backup Configuration")
        logger.info("=" * 60)

        logger.info("Chain:")
        logger.info(f"  Network: {self.chain.network}")
        logger.info(f"  Chain ID: {self.chain.chain_id}")
        logger.info(f"  RPC URL: {self.chain.rpc_url}")
        logger.info(f"  Request Timeout: {self.chain.request_timeout} seconds")

        logger.info("Backup:")
        logger.info(f"  Directory: {self.backup.backup_dir}")
        logger.info(f"  Batch Size: {self.backup.batch_size} blocks")
        logger.info(f"  Segment Format: {self.backup.segment_format}")

        logger.info("Monitor:")
        logger.info(f"  Backup Interval: {self.monitor.backup_interval} seconds")
        logger.info(f"  Max Backup Files: {self.monitor.max_backup_files}")
        logger.info(f"  Auto Cleanup: {'ON' if self.monitor.enable_auto_cleanup else 'OFF'}")

        logger.info("Database:")
        logger.info(f"  Type: {self.database.type}")
        logger.info(f"  Path: {self.database.path}")

        logger.info("Recovery:")
        logger.info(f"  Report Directory: {self.recovery.report_dir}")
        logger.info(
            f"  State Reconstruction: "
            f"{'ON' if self.recovery.enable_state_reconstruction else 'OFF'}"
        )

        logger.info("=" * 60)
