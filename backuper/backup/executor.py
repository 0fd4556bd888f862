"""
Backup executor - orchestrates one archive per backup request.

Workflow:
1. Validate the request (INIT)
2. Open the archive writer at {output_directory}/{archive_name}.zip (OPENING_WRITER)
3. Classify each input path and stream files and walked directories into
   the writer (WALKING_AND_WRITING)
4. Finalize the archive and wait for the output file to be closed (FINALIZING)
5. Return a BackupResult (DONE or FAILED)

Skipped paths and unreadable files are recorded on the result and do not fail
the run. Partial archives are left on disk after a fatal error.
"""

import os
import logging
from enum import Enum
from typing import Iterable, List, Optional, Union

from backuper.config import Config
from backuper.models import (
    ArchiveEntry, BackupRequest, BackupResult, ConfigurationError, EntryKind,
    PathKind, PathSkip, SkipReason
)
from .compression import ArchiveWriter
from .reporting import BackupReporter, LoggingReporter
from .sources import archive_name_for, inspect_path, skip_for, walk


logger = logging.getLogger(__name__)


class ExecutorState(Enum):
    INIT = 'init'
    OPENING_WRITER = 'opening_writer'
    WALKING_AND_WRITING = 'walking_and_writing'
    FINALIZING = 'finalizing'
    DONE = 'done'
    FAILED = 'failed'


_TRANSITIONS = {
    ExecutorState.INIT: {ExecutorState.OPENING_WRITER, ExecutorState.FAILED},
    ExecutorState.OPENING_WRITER: {ExecutorState.WALKING_AND_WRITING, ExecutorState.FAILED},
    ExecutorState.WALKING_AND_WRITING: {ExecutorState.FINALIZING, ExecutorState.FAILED},
    ExecutorState.FINALIZING: {ExecutorState.DONE, ExecutorState.FAILED},
    ExecutorState.DONE: set(),
    ExecutorState.FAILED: set(),
}


class BackupExecutor:
    """
    Orchestrates the backup of one request into one archive.
    """

    def __init__(self, request: BackupRequest, reporter: BackupReporter = None,
                 config=Config, writer_factory=ArchiveWriter):
        """
        Initialize backup executor.

        Args:
            request: BackupRequest to execute
            reporter: Progress sink (defaults to LoggingReporter)
            config: Configuration class providing streaming and progress settings
            writer_factory: Callable creating the ArchiveWriter
        """
        self.request = request
        self.reporter = reporter or LoggingReporter()
        self.config = config
        self.writer_factory = writer_factory
        self.state = ExecutorState.INIT
        self.output_path = None
        self.file_count = 0
        self.skipped = []
        self.warnings = []

    def execute(self) -> BackupResult:
        """
        Execute the backup request.

        Returns:
            BackupResult with status 'success' or 'failed'; a failed result
            carries the first fatal error
        """
        try:
            self._validate()

            self._transition(ExecutorState.OPENING_WRITER)
            writer = self._open_writer()
            self.reporter.started(self.request, self.output_path)

            with writer:
                self._transition(ExecutorState.WALKING_AND_WRITING)
                for input_path in self.request.input_paths:
                    self._add_input(writer, input_path)

                self._transition(ExecutorState.FINALIZING)
                self.reporter.finalizing(self.request, self.file_count)
                total_bytes = writer.finalize()

            self._transition(ExecutorState.DONE)

        except Exception as e:
            if not isinstance(e, ConfigurationError):
                logger.debug(f"Backup {self.request.archive_name} failed in state {self.state.value}", exc_info=True)
            self._transition(ExecutorState.FAILED)
            result = self._result('failed', error=e)
            self.reporter.failed(self.request, e)
            return result

        result = self._result('success', total_bytes_written=total_bytes)
        self.reporter.succeeded(self.request, result)
        return result

    def _validate(self):
        """
        Check the request before touching the filesystem.

        Raises:
            ConfigurationError: If the request is invalid
        """
        self.request.validate()

    def _open_writer(self) -> ArchiveWriter:
        """
        Resolve the output path and open the archive writer.

        Raises:
            OutputStreamError: If the output directory or file cannot be created
        """
        self.output_path = self.request.output_file_path

        writer = self.writer_factory(
            on_warning=self._on_warning,
            chunk_size=self.config.READ_CHUNK_SIZE
        )
        return writer.open(
            self.output_path,
            compression_level=self.request.compression_level,
            encryption=self.request.encryption
        )

    def _add_input(self, writer: ArchiveWriter, input_path: str):
        """
        Add one top-level input path.

        Links and inaccessible paths are skipped; files are added under their
        basename; directories are walked with an empty archive base.
        """
        path = os.path.abspath(os.path.expanduser(input_path))
        kind, error = inspect_path(path)

        if kind in (PathKind.SYMLINK, PathKind.INACCESSIBLE):
            self._skip(skip_for(path, kind, error), top_level=True)
            return

        if kind is PathKind.FILE:
            self._add_entry(writer, ArchiveEntry(path, archive_name_for(path), EntryKind.FILE))
            return

        for item in walk(path, '', sort_entries=self.config.SORT_ENTRIES):
            if isinstance(item, PathSkip):
                self._skip(item)
            else:
                self._add_entry(writer, item)

    def _add_entry(self, writer: ArchiveWriter, entry: ArchiveEntry):
        if entry.kind is EntryKind.FILE and self._is_output_archive(entry.source_path):
            self._skip(PathSkip(entry.source_path, SkipReason.OUTPUT_ARCHIVE, 'archive being written'))
            return

        added = writer.add_entry(entry)

        if added and entry.kind is EntryKind.FILE:
            self.file_count += 1
            interval = self.config.PROGRESS_INTERVAL
            if interval and self.file_count % interval == 0:
                self.reporter.progress(self.request, self.file_count)

    def _is_output_archive(self, path: str) -> bool:
        return os.path.normcase(path) == os.path.normcase(self.output_path)

    def _skip(self, skip: PathSkip, top_level: bool = False):
        self.skipped.append(skip)
        self.reporter.skipped(self.request, skip, top_level=top_level)

    def _on_warning(self, message: str):
        self.warnings.append(message)
        self.reporter.warning(self.request, message)

    def _transition(self, state: ExecutorState):
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid executor transition: {self.state.value} -> {state.value}")
        logger.debug(f"Backup {self.request.archive_name}: {self.state.value} -> {state.value}")
        self.state = state

    def _result(self, status: str, total_bytes_written: int = 0,
                error: Optional[Exception] = None) -> BackupResult:
        return BackupResult(
            archive_name=self.request.archive_name,
            status=status,
            output_file_path=self.output_path,
            total_bytes_written=total_bytes_written,
            file_count=self.file_count,
            skipped=list(self.skipped),
            warnings=list(self.warnings),
            error=error
        )


def execute_backup(request: BackupRequest, reporter: BackupReporter = None, config=Config) -> BackupResult:
    """
    Execute one backup request.

    Args:
        request: BackupRequest to execute
        reporter: Optional progress sink
        config: Configuration class

    Returns:
        BackupResult for the request
    """
    executor = BackupExecutor(request, reporter=reporter, config=config)
    return executor.execute()


def run_batch(configs: Iterable[Union[BackupRequest, dict]], reporter: BackupReporter = None,
              config=Config) -> List[BackupResult]:
    """
    Execute several backups strictly one after another.

    A failing item never stops the batch; its failure is returned in its
    BackupResult.

    Args:
        configs: BackupRequests or raw configuration records, in order
        reporter: Optional progress sink shared by all runs
        config: Configuration class

    Returns:
        One BackupResult per item, in the same order
    """
    reporter = reporter or LoggingReporter()
    results = []

    for item in configs:
        if isinstance(item, BackupRequest):
            request = item
        else:
            try:
                request = BackupRequest.from_config(item)
            except ConfigurationError as e:
                name = item.get('zipName', '') if isinstance(item, dict) else ''
                logger.error(f"Invalid backup configuration {name!r}: {e}")
                results.append(BackupResult(archive_name=name or '', status='failed', error=e))
                continue

        logger.info(f"Backing up: {request.archive_name}")
        results.append(execute_backup(request, reporter=reporter, config=config))

    return results
