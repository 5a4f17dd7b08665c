"""
Backup service wiring.

This module assembles the chain reader, stores, engine, scheduler, recovery
orchestrator and consolidation tool from one ServiceConfig, and runs the
scheduler as a long-lived service.
"""

import asyncio
import logging
import os
import signal
from pathlib import Path

from .backup_engine import BackupEngine
from .chain_reader import ChainReader, Web3ChainReader
from .config import ServiceConfig
from .consolidation import ConsolidationTool
from .document_store import DocumentStore
from .exceptions import MonitorNotRunningError
from .recovery import RecoveryOrchestrator
from .scheduler import BackupScheduler
from .segment_store import SegmentStore, atomic_write

logger = logging.getLogger(__name__)

PID_FILE = "monitor.pid"


class TxLogBackupService:
    """
    Owns every component for one network and coordinates their lifecycle.

    The document store is opened lazily since only database and recovery
    commands need it.
    """

    def __init__(self, config: ServiceConfig, reader: ChainReader | None = None):
        """
        Initialize the service.

        Args:
            config: Service configuration
            reader: Chain reader; defaults to a Web3ChainReader for the configured node
        """
        self.config = config
        self.reader = reader if reader is not None else Web3ChainReader.from_config(config.chain)

        self.segment_store = SegmentStore(
            backup_dir=config.backup.backup_dir,
            network=config.chain.network,
            chain_id=config.chain.chain_id,
            segment_format=config.backup.segment_format,
        )
        self.engine = BackupEngine(
            reader=self.reader,
            store=self.segment_store,
            batch_size=config.backup.batch_size,
        )
        self.scheduler = BackupScheduler(self.engine, config.monitor)
        self.consolidation = ConsolidationTool(
            self.segment_store,
            restore_dir=config.recovery.restore_dir,
        )

        self._document_store: DocumentStore | None = None
        self.shutdown_event = asyncio.Event()

    @classmethod
    def from_env(cls) -> "TxLogBackupService":
        """
        Create a service from environment variables.

        Raises:
            ValueError: If required environment variables are missing or invalid
        """
        config = ServiceConfig.from_env()
        config.log_config()
        return cls(config)

    @property
    def document_store(self) -> DocumentStore:
        if self._document_store is None:
            self._document_store = DocumentStore.from_config(self.config.database)
        return self._document_store

    def recovery(self) -> RecoveryOrchestrator:
        """Build a recovery orchestrator over this service's stores."""
        return RecoveryOrchestrator(
            segment_store=self.segment_store,
            document_store=self.document_store,
            report_dir=self.config.recovery.report_dir,
            enable_state_reconstruction=self.config.recovery.enable_state_reconstruction,
        )

    @property
    def pid_path(self) -> Path:
        """File holding the pid of the running monitor for this network."""
        return self.segment_store.directory / PID_FILE

    async def run(self) -> None:
        """Run the backup scheduler until stop() is called or SIGINT/SIGTERM arrives."""
        logger.info(f"Transaction log backup service starting for network: {self.config.chain.network}")
        loop = asyncio.get_running_loop()
        handled = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
                handled.append(sig)
            except NotImplementedError:
                logger.debug(f"Signal handler for {sig.name} not supported on this platform")

        atomic_write(self.pid_path, str(os.getpid()).encode())
        try:
            await self.scheduler.start()
            await self.shutdown_event.wait()
        finally:
            await self.scheduler.stop()
            await self.scheduler.wait_idle()
            for sig in handled:
                loop.remove_signal_handler(sig)
            self.pid_path.unlink(missing_ok=True)
            logger.info("Transaction log backup service stopped")

    def stop(self) -> None:
        """Request shutdown of a running service."""
        logger.info("Shutdown requested")
        self.shutdown_event.set()

    def signal_running_monitor(self) -> int:
        """
        Ask a monitor running in another process to shut down.

        Returns:
            The pid that was sent SIGTERM

        Raises:
            MonitorNotRunningError: If no live monitor is recorded for this network
        """
        try:
            pid = int(self.pid_path.read_text().strip())
        except FileNotFoundError:
            raise MonitorNotRunningError(f"No running monitor found for network {self.config.chain.network}") from None
        except ValueError:
            raise MonitorNotRunningError(f"Invalid monitor pid file: {self.pid_path}") from None

        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            self.pid_path.unlink(missing_ok=True)
            raise MonitorNotRunningError(f"Monitor process {pid} is no longer running") from None

        logger.info(f"Sent stop signal to monitor process {pid}")
        return pid
