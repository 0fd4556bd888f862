"""
Progress reporting for backup runs.

BackupExecutor reports every event through a BackupReporter. The default
LoggingReporter writes them to the 'backuper' logger; callers can pass any
object with the same methods (a CLI spinner, a test recorder).
"""

import logging

from backuper.models import BackupRequest, BackupResult, PathSkip, SkipReason


class BackupReporter:
    """Interface for progress sinks. Every method is a no-op by default."""

    def started(self, request: BackupRequest, output_path: str):
        pass

    def progress(self, request: BackupRequest, file_count: int):
        pass

    def finalizing(self, request: BackupRequest, file_count: int):
        pass

    def skipped(self, request: BackupRequest, skip: PathSkip, top_level: bool = False):
        pass

    def warning(self, request: BackupRequest, message: str):
        pass

    def failed(self, request: BackupRequest, error: Exception):
        pass

    def succeeded(self, request: BackupRequest, result: BackupResult):
        pass


class LoggingReporter(BackupReporter):
    """Reports backup events through the standard logging module."""

    def __init__(self, logger: logging.Logger = None):
        self.logger = logger or logging.getLogger('backuper.backup')

    def started(self, request, output_path):
        self.logger.info(f"Creating backup: {request.archive_name}")

    def progress(self, request, file_count):
        self.logger.info(f"Creating backup: {request.archive_name} ({file_count} files)")

    def finalizing(self, request, file_count):
        self.logger.info(f"Finalizing backup: {request.archive_name} ({file_count} files)")

    def skipped(self, request, skip, top_level=False):
        if skip.reason is SkipReason.SYMLINK:
            level = logging.WARNING if top_level else logging.DEBUG
            self.logger.log(level, f"Skipping symbolic link: {skip.path}")
        elif skip.reason is SkipReason.OUTPUT_ARCHIVE:
            self.logger.debug(f"Skipping archive being written: {skip.path}")
        elif top_level:
            self.logger.error(f"Path does not exist or is inaccessible: {skip.path} ({skip.detail})")
        else:
            self.logger.warning(f"Skipping inaccessible path: {skip.path} ({skip.detail})")

    def warning(self, request, message):
        self.logger.warning(f"Warning during backup {request.archive_name}: {message}")

    def failed(self, request, error):
        self.logger.error(f"Failed to create backup: {request.archive_name}: {error}")

    def succeeded(self, request, result):
        self.logger.info(
            f"Created zip: {request.archive_name} ({result.total_bytes_written} bytes, "
            f"{result.file_count} files)"
        )
        self.logger.info(f"Saved to: {result.output_file_path}")
