"""
Periodic backup scheduler.

Drives the backup engine on a timer and runs retention cleanup on the segment
store between backups.
"""

import asyncio
import dataclasses
import logging
from typing import Any

from .backup_engine import BackupEngine
from .config import MonitorConfig
from .exceptions import ChainReaderError
from .models import BackupResult


class BackupScheduler:
    """
    Timer-driven controller for periodic backups.

    State is owned by the instance, so independent schedulers (e.g. one per
    network) can coexist. Cycles are serialized by a lock; stop() cancels only
    the timer and never an in-flight cycle.
    """

    def __init__(self, engine: BackupEngine, config: MonitorConfig | None = None):
        """
        Initialize the scheduler.

        Args:
            engine: Backup engine to drive
            config: Scheduler settings
        """
        self.engine = engine
        self.store = engine.store
        self.reader = engine.reader
        self.config = config or MonitorConfig()

        self.is_running = False
        self.cycles_completed = 0
        self.last_result: BackupResult | None = None
        self.last_error: str | None = None

        self._timer: asyncio.Task | None = None
        self._cycle: asyncio.Task | None = None
        self._cycle_lock = asyncio.Lock()

        # Setup logging
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def start(self) -> None:
        """Arm the repeating timer and run one backup cycle immediately."""
        if self.is_running:
            self.logger.warning("Monitor is already running")
            return

        self.is_running = True
        self.logger.info(f"Starting auto backup monitor for network: {self.store.network}")
        self.logger.info(f"Backup interval: {self.config.backup_interval} seconds")

        # Armed before the first cycle so a stop() or reconfigure() during that
        # cycle always finds, and cancels, the timer it has to replace.
        self._timer = asyncio.create_task(self._timer_loop())
        self.logger.info("Auto backup monitor started successfully")

        await self._run_cycle(cleanup=False)

    async def stop(self) -> None:
        """Cancel the timer. An in-flight cycle runs to completion."""
        if not self.is_running:
            self.logger.warning("Monitor is not running")
            return

        self.logger.info("Stopping auto backup monitor")
        self.is_running = False

        if self._timer is not None:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass  # Expected when cancelling
            self._timer = None

        self.logger.info("Auto backup monitor stopped")

    async def wait_idle(self) -> None:
        """Wait for the in-flight cycle, if any, to finish."""
        if self._cycle is not None and not self._cycle.done():
            await asyncio.wait([self._cycle])

    async def force_run(self) -> BackupResult | None:
        """
        Run a backup cycle now, serialized with timer ticks.

        Returns:
            BackupResult, or None if there were no new blocks

        Raises:
            Exception: Whatever the backup raised
        """
        self.logger.info("Force backup requested")
        return await self._run_cycle(cleanup=False, propagate=True)

    async def reconfigure(self, **changes: Any) -> MonitorConfig:
        """
        Merge new settings into the live config, restarting if running.

        Raises:
            ValueError: If a setting is unknown or invalid
        """
        self.config = self.config.merged(**changes)
        self.logger.info("Configuration updated")

        if self.is_running:
            await self.stop()
            await self.start()
        return self.config

    async def status(self) -> dict[str, Any]:
        """Read-only snapshot of the scheduler and the backup state."""
        try:
            current_block: int | None = await self.reader.current_height()
        except ChainReaderError as e:
            self.logger.warning(f"Could not fetch current block: {e}")
            current_block = None

        cursor = self.store.read_cursor()
        last_backup_block = cursor.last_backup_block if cursor else None

        if current_block is None:
            blocks_pending = None
        elif last_backup_block is None:
            blocks_pending = current_block + 1
        else:
            blocks_pending = max(current_block - last_backup_block, 0)

        return {
            "isRunning": self.is_running,
            "network": self.store.network,
            "chainId": self.store.chain_id,
            "currentBlock": current_block,
            "lastBackupBlock": last_backup_block,
            "blocksToBackup": blocks_pending,
            "backupInfo": cursor.to_dict() if cursor else None,
            "segments": len(self.store.list_segments()),
            "cyclesCompleted": self.cycles_completed,
            "lastError": self.last_error,
            "config": dataclasses.asdict(self.config),
        }

    async def _timer_loop(self) -> None:
        while self.is_running:
            await asyncio.sleep(self.config.backup_interval)
            if not self.is_running:
                break
            await self._run_cycle(cleanup=True)

    async def _run_cycle(self, cleanup: bool, propagate: bool = False) -> BackupResult | None:
        # The cycle runs as its own task; cancelling the timer only cancels
        # the wait below, not the cycle.
        cycle = asyncio.create_task(self._cycle_body(cleanup, propagate))
        self._cycle = cycle
        return await asyncio.shield(cycle)

    async def _cycle_body(self, cleanup: bool, propagate: bool) -> BackupResult | None:
        async with self._cycle_lock:
            try:
                result = await self._perform_backup()
                if cleanup:
                    await self._cleanup_old_segments()
            except Exception as e:
                self.last_error = str(e)
                self.logger.error(f"Backup failed: {e}", exc_info=True)
                if propagate:
                    raise
                return None

            self.cycles_completed += 1
            self.last_error = None
            if result is not None:
                self.last_result = result
            return result

    async def _perform_backup(self) -> BackupResult | None:
        self.logger.info("Starting scheduled backup")

        cursor = self.store.read_cursor()
        current_block = await self.reader.current_height()
        last_backup_block = cursor.last_backup_block if cursor else -1

        if current_block <= last_backup_block:
            self.logger.debug("No new blocks to backup")
            return None

        result = await self.engine.run_backup(last_backup_block + 1, current_block)
        self.logger.info(f"Backup completed. Current block: {current_block}")
        return result

    async def _cleanup_old_segments(self) -> list[str]:
        if not self.config.enable_auto_cleanup:
            return []

        self.logger.debug("Starting backup cleanup")
        async with self.store.lock:
            return self.store.apply_retention(
                max_files=self.config.max_backup_files,
                keep_recent=self.config.keep_recent,
            )
