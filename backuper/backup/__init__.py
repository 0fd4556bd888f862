"""
Backup module for Backuper.

This module handles the core backup functionality including:
- Path classification and tree walking
- Archive writing (plain and encrypted zip)
- Execution orchestration
"""

from .executor import BackupExecutor, execute_backup, run_batch
from .sources import classify, walk
from .compression import ArchiveWriter, register_default_formats
from .reporting import BackupReporter, LoggingReporter

__all__ = [
    'BackupExecutor',
    'execute_backup',
    'run_batch',
    'classify',
    'walk',
    'ArchiveWriter',
    'register_default_formats',
    'BackupReporter',
    'LoggingReporter'
]
