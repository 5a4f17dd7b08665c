"""
Transaction log backup package.

Incremental backup, indexing and recovery of on-chain transaction history.
"""

from .backup_engine import BackupEngine
from .config import ServiceConfig
from .consolidation import ConsolidationTool
from .document_store import DocumentStore
from .models import RecoveryMode, RecoveryScope, SearchFilter, TransactionRecord
from .recovery import RecoveryOrchestrator
from .scheduler import BackupScheduler
from .segment_store import SegmentStore
from .service import TxLogBackupService

__all__ = [
    "BackupEngine",
    "BackupScheduler",
    "ConsolidationTool",
    "DocumentStore",
    "RecoveryMode",
    "RecoveryOrchestrator",
    "RecoveryScope",
    "SearchFilter",
    "SegmentStore",
    "ServiceConfig",
    "TransactionRecord",
    "TxLogBackupService",
]
__version__ = "0.1.0"
