"""
Shared pytest fixtures for Backuper tests.

This module provides fixtures for:
- Archive format registration
- Sample source trees (files, nested and empty directories)
- Recording reporters
- Helpers for reading produced archives
"""

import logging
import zipfile
from unittest.mock import MagicMock

import pytest

from backuper.config import TestingConfig
from backuper.backup.compression import register_default_formats
from backuper.backup.reporting import BackupReporter


@pytest.fixture(autouse=True)
def archive_formats():
    """Register the zip formats the way the CLI entry point does."""
    register_default_formats()


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop handlers installed by configure_logging during a test."""
    yield
    logger = logging.getLogger('backuper')
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def config():
    """Testing configuration (small chunks, progress every 2 files)."""
    return TestingConfig


@pytest.fixture
def reporter():
    """Reporter mock recording every event."""
    return MagicMock(spec=BackupReporter)


@pytest.fixture
def output_dir(tmp_path):
    """Directory for produced archives."""
    path = tmp_path / 'out'
    path.mkdir()
    return path


@pytest.fixture
def docs_tree(tmp_path):
    """
    Create the documented sample tree.

    Creates:
    - docs/a.txt ("hi")
    - docs/empty/
    """
    docs = tmp_path / 'src' / 'docs'
    docs.mkdir(parents=True)
    (docs / 'a.txt').write_text('hi')
    (docs / 'empty').mkdir()
    return docs


@pytest.fixture
def temp_files(tmp_path):
    """
    Create temporary test files and directories.

    Creates:
    - data/test_file1.txt
    - data/test_file2.log
    - data/nested/test_file3.txt
    - data/nested/deeper/test_file4.bin
    - data/nested/empty/
    """
    root = tmp_path / 'data'
    root.mkdir()
    (root / 'test_file1.txt').write_text('Test content 1')
    (root / 'test_file2.log').write_text('Test log content')

    nested_dir = root / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.txt').write_text('Nested test content')

    deeper_dir = nested_dir / 'deeper'
    deeper_dir.mkdir()
    (deeper_dir / 'test_file4.bin').write_bytes(bytes(range(256)) * 64)

    (nested_dir / 'empty').mkdir()

    return root


@pytest.fixture
def tree_paths():
    """Return a function listing a tree in archive notation, relative to its parent."""
    def _tree_paths(root):
        paths = {root.name + '/'}
        for item in root.rglob('*'):
            relative = item.relative_to(root.parent).as_posix()
            paths.add(relative + '/' if item.is_dir() else relative)
        return paths
    return _tree_paths


@pytest.fixture
def read_archive():
    """Return a function reading {name: bytes} from a zip archive."""
    def _read_archive(archive_path, pwd=None):
        with zipfile.ZipFile(archive_path, 'r') as zipf:
            return {
                info.filename: (b'' if info.is_dir() else zipf.read(info, pwd=pwd))
                for info in zipf.infolist()
            }
    return _read_archive
