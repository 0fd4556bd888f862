"""
Unit tests for backup executor (backuper/backup/executor.py).

Tests the complete backup workflow: walking inputs, writing the archive,
skip and warning handling, progress reporting and batch runs.
"""

import logging
import os
import zipfile
from unittest.mock import MagicMock, call, patch

import pytest
import pyzipper

from backuper.models import BackupRequest, ConfigurationError, SkipReason
from backuper.backup.compression import ArchiveWriter, EntryError, OutputStreamError
from backuper.backup.executor import BackupExecutor, ExecutorState, execute_backup, run_batch
from backuper.backup.reporting import LoggingReporter


class FailingFinalizeWriter(ArchiveWriter):
    """ArchiveWriter whose output stream fails while writing the central directory."""

    def finalize(self):
        self._container.close = MagicMock(side_effect=OSError(28, 'No space left on device'))
        return super().finalize()


class TestBackupExecutor:
    """Test BackupExecutor for single requests."""

    def test_executor_initialization(self, tmp_path):
        """Test executor initializes correctly."""
        request = BackupRequest('test', ('a',), str(tmp_path))
        executor = BackupExecutor(request)

        assert executor.request is request
        assert executor.state is ExecutorState.INIT
        assert executor.file_count == 0
        assert isinstance(executor.reporter, LoggingReporter)

    def test_backup_directory(self, docs_tree, output_dir, reporter, config, read_archive):
        """Test a directory with a file and an empty subdirectory."""
        request = BackupRequest('test', (str(docs_tree),), str(output_dir))
        executor = BackupExecutor(request, reporter=reporter, config=config)

        result = executor.execute()

        assert result.succeeded
        assert executor.state is ExecutorState.DONE
        assert result.file_count == 1
        assert result.output_file_path == str(output_dir / 'test.zip')
        assert result.total_bytes_written == os.path.getsize(result.output_file_path)
        assert read_archive(result.output_file_path) == {
            'docs/': b'',
            'docs/a.txt': b'hi',
            'docs/empty/': b''
        }

        reporter.started.assert_called_once_with(request, result.output_file_path)
        reporter.succeeded.assert_called_once_with(request, result)
        reporter.failed.assert_not_called()

    def test_missing_input_is_skipped(self, tmp_path, output_dir, reporter, config):
        """Test a missing input path is skipped without failing the run."""
        missing = tmp_path / 'missing.txt'
        request = BackupRequest('test', (str(missing),), str(output_dir))

        result = execute_backup(request, reporter=reporter, config=config)

        assert result.succeeded
        assert result.error is None
        assert result.file_count == 0
        assert len(result.skipped) == 1
        assert result.skipped[0].path == str(missing)
        assert result.skipped[0].reason is SkipReason.VANISHED
        reporter.skipped.assert_called_once_with(request, result.skipped[0], top_level=True)
        with zipfile.ZipFile(result.output_file_path) as zipf:
            assert zipf.namelist() == []

    def test_missing_input_logged(self, tmp_path, output_dir, config, caplog):
        """Test the default reporter logs skipped top-level paths as errors."""
        request = BackupRequest('test', (str(tmp_path / 'missing.txt'),), str(output_dir))

        with caplog.at_level(logging.INFO, logger='backuper'):
            result = execute_backup(request, config=config)

        assert result.succeeded
        assert 'Path does not exist or is inaccessible' in caplog.text
        assert 'Created zip: test' in caplog.text

    def test_aes256_stored_single_file(self, tmp_path, output_dir, config):
        """Test an AES-256 archive at level 0 opens only with the password."""
        source = tmp_path / 'report.txt'
        source.write_text('quarterly numbers')
        request = BackupRequest.from_config({
            'zipName': 'secure',
            'outputDir': str(output_dir),
            'paths': [str(source)],
            'zipOptions': {'password': 'secret', 'encryptionMethod': 'aes256', 'compressLevel': 0}
        })

        result = execute_backup(request, config=config)

        assert result.succeeded
        with zipfile.ZipFile(result.output_file_path) as zipf:
            info = zipf.getinfo('report.txt')
            assert info.compress_size == info.file_size + 28

        with pyzipper.AESZipFile(result.output_file_path) as zipf:
            zipf.setpassword(b'secret')
            assert zipf.read('report.txt') == b'quarterly numbers'
            zipf.setpassword(b'wrong')
            with pytest.raises(RuntimeError):
                zipf.read('report.txt')

    def test_zip20_directory(self, temp_files, output_dir, config, read_archive, tree_paths):
        """Test a legacy encrypted archive of a whole tree."""
        request = BackupRequest.from_config({
            'zipName': 'legacy',
            'outputDir': str(output_dir),
            'paths': [str(temp_files)],
            'zipOptions': {'password': 'secret'}
        })

        result = execute_backup(request, config=config)

        assert result.succeeded
        assert result.file_count == 4
        contents = read_archive(result.output_file_path, pwd=b'secret')
        assert set(contents) == tree_paths(temp_files)
        assert contents['data/test_file1.txt'] == b'Test content 1'

    def test_top_level_order(self, temp_files, output_dir, config):
        """Test top-level inputs are archived in request order under their basenames."""
        request = BackupRequest('ordered', (
            str(temp_files / 'test_file2.log'),
            str(temp_files / 'nested' / 'test_file3.txt'),
            str(temp_files / 'test_file1.txt'),
        ), str(output_dir))

        result = execute_backup(request, config=config)

        with zipfile.ZipFile(result.output_file_path) as zipf:
            assert zipf.namelist() == ['test_file2.log', 'test_file3.txt', 'test_file1.txt']

    def test_relative_input_path(self, docs_tree, output_dir, config, monkeypatch, read_archive):
        """Test relative and trailing-slash inputs resolve against the working directory."""
        monkeypatch.chdir(docs_tree.parent)
        request = BackupRequest('relative', ('docs/',), str(output_dir))

        result = execute_backup(request, config=config)

        assert set(read_archive(result.output_file_path)) == {'docs/', 'docs/a.txt', 'docs/empty/'}

    def test_top_level_symlink_skipped(self, docs_tree, tmp_path, output_dir, reporter, config):
        """Test a linked input is skipped, never followed."""
        link = tmp_path / 'docs_link'
        link.symlink_to(docs_tree)
        request = BackupRequest('test', (str(link),), str(output_dir))

        result = execute_backup(request, reporter=reporter, config=config)

        assert result.succeeded
        assert result.file_count == 0
        assert [skip.reason for skip in result.skipped] == [SkipReason.SYMLINK]
        reporter.skipped.assert_called_once_with(request, result.skipped[0], top_level=True)

    def test_nested_skips_reported(self, temp_files, tmp_path, output_dir, reporter, config):
        """Test skips inside a walked directory are not top-level."""
        (temp_files / 'link').symlink_to(tmp_path)
        request = BackupRequest('test', (str(temp_files),), str(output_dir))

        result = execute_backup(request, reporter=reporter, config=config)

        assert result.succeeded
        assert result.file_count == 4
        reporter.skipped.assert_called_once_with(request, result.skipped[0], top_level=False)

    def test_progress_reported(self, temp_files, output_dir, reporter, config):
        """Test progress is reported every PROGRESS_INTERVAL files."""
        request = BackupRequest('test', (str(temp_files),), str(output_dir))

        execute_backup(request, reporter=reporter, config=config)

        assert config.PROGRESS_INTERVAL == 2
        assert reporter.progress.call_args_list == [call(request, 2), call(request, 4)]
        reporter.finalizing.assert_called_once_with(request, 4)

    def test_unreadable_files_become_warnings(self, temp_files, output_dir, reporter, config):
        """Test files that cannot be opened are warnings, not failures."""
        request = BackupRequest('test', (str(temp_files / 'test_file1.txt'),), str(output_dir))

        with patch.object(ArchiveWriter, '_open_source', side_effect=EntryError('Cannot add file: Permission denied')):
            result = execute_backup(request, reporter=reporter, config=config)

        assert result.succeeded
        assert result.file_count == 0
        assert result.warnings == ['Cannot add file: Permission denied']
        reporter.warning.assert_called_once_with(request, 'Cannot add file: Permission denied')

    def test_sorted_entries(self, tmp_path, output_dir, config):
        """Test siblings are archived in name order when sorting is configured."""
        root = tmp_path / 'root'
        root.mkdir()
        for name in ('c.txt', 'a.txt', 'b.txt'):
            (root / name).write_text(name)
        sorted_config = type('SortedConfig', (config,), {'SORT_ENTRIES': True})
        request = BackupRequest('sorted', (str(root),), str(output_dir))

        with patch('backuper.backup.sources._list_directory', return_value=['c.txt', 'b.txt', 'a.txt']):
            result = execute_backup(request, config=sorted_config)

        with zipfile.ZipFile(result.output_file_path) as zipf:
            assert zipf.namelist() == ['root/', 'root/a.txt', 'root/b.txt', 'root/c.txt']

    def test_output_archive_not_added_to_itself(self, temp_files, reporter, config):
        """Test an archive written inside an input directory is not archived."""
        request = BackupRequest('self', (str(temp_files),), str(temp_files))

        result = execute_backup(request, reporter=reporter, config=config)

        assert result.succeeded
        assert result.file_count == 4
        assert [skip.reason for skip in result.skipped] == [SkipReason.OUTPUT_ARCHIVE]
        with zipfile.ZipFile(result.output_file_path) as zipf:
            assert 'data/self.zip' not in zipf.namelist()

    def test_invalid_request_fails_before_writing(self, docs_tree, output_dir, reporter, config):
        """Test configuration errors fail the run without creating a file."""
        request = BackupRequest('test', (str(docs_tree),), str(output_dir), compression_level=12)
        executor = BackupExecutor(request, reporter=reporter, config=config)

        result = executor.execute()

        assert not result.succeeded
        assert isinstance(result.error, ConfigurationError)
        assert executor.state is ExecutorState.FAILED
        assert os.listdir(output_dir) == []
        reporter.started.assert_not_called()
        reporter.failed.assert_called_once_with(request, result.error)

    def test_output_directory_created(self, docs_tree, tmp_path, config):
        """Test missing output directories are created."""
        output = tmp_path / 'new' / 'backups'
        request = BackupRequest('test', (str(docs_tree),), str(output))

        result = execute_backup(request, config=config)

        assert result.succeeded
        assert (output / 'test.zip').exists()

    def test_uncreatable_output_fails(self, docs_tree, tmp_path, reporter, config):
        """Test an output path below a regular file fails the run."""
        blocker = tmp_path / 'blocker'
        blocker.write_text('not a directory')
        request = BackupRequest('test', (str(docs_tree),), str(blocker / 'out'))
        executor = BackupExecutor(request, reporter=reporter, config=config)

        result = executor.execute()

        assert not result.succeeded
        assert isinstance(result.error, OutputStreamError)
        assert executor.state is ExecutorState.FAILED
        reporter.failed.assert_called_once_with(request, result.error)
        reporter.succeeded.assert_not_called()

    def test_fatal_error_leaves_partial_archive(self, temp_files, output_dir, reporter, config):
        """Test a failure while finalizing keeps the partial file on disk."""
        request = BackupRequest('partial', (str(temp_files),), str(output_dir))
        executor = BackupExecutor(request, reporter=reporter, config=config,
                                  writer_factory=FailingFinalizeWriter)

        result = executor.execute()

        assert not result.succeeded
        assert isinstance(result.error, OutputStreamError)
        assert result.file_count == 4
        assert os.path.exists(result.output_file_path)
        assert executor.state is ExecutorState.FAILED
        reporter.failed.assert_called_once()

    def test_invalid_transition(self, tmp_path):
        """Test the executor refuses to skip states."""
        executor = BackupExecutor(BackupRequest('test', ('a',), str(tmp_path)))

        with pytest.raises(RuntimeError):
            executor._transition(ExecutorState.DONE)


class TestRunBatch:
    """Test sequential batch runs."""

    def test_failure_does_not_stop_batch(self, docs_tree, tmp_path, output_dir, config, read_archive):
        """Test a fatal writer error in one request leaves the next unaffected."""
        blocker = tmp_path / 'blocker'
        blocker.write_text('not a directory')

        results = run_batch([
            {'zipName': 'first', 'outputDir': str(blocker / 'out'), 'paths': [str(docs_tree)]},
            {'zipName': 'second', 'outputDir': str(output_dir), 'paths': [str(docs_tree)]},
        ], config=config)

        assert [result.archive_name for result in results] == ['first', 'second']
        assert not results[0].succeeded
        assert isinstance(results[0].error, OutputStreamError)
        assert results[1].succeeded
        assert read_archive(results[1].output_file_path)['docs/a.txt'] == b'hi'

    def test_invalid_record_does_not_stop_batch(self, docs_tree, output_dir, reporter, config):
        """Test an unparseable record becomes a failed result."""
        results = run_batch([
            {'zipName': 'bad', 'paths': ['x'], 'zipOptions': {'password': 'x', 'encryptionMethod': 'rot13'}},
            BackupRequest('good', (str(docs_tree),), str(output_dir)),
        ], reporter=reporter, config=config)

        assert results[0].archive_name == 'bad'
        assert isinstance(results[0].error, ConfigurationError)
        assert results[1].succeeded
        reporter.succeeded.assert_called_once()

    def test_empty_batch(self, config):
        """Test an empty batch returns no results."""
        assert run_batch([], config=config) == []
