"""
Source handling for backup runs.

- classify / inspect_path: decide what a filesystem path is without following links
- walk: lazily enumerate a directory tree as archive entries and skip notifications
"""

import os
import stat
import logging
import posixpath
from typing import Iterator, Optional, Tuple, Union

from backuper.models import ArchiveEntry, EntryKind, PathKind, PathSkip, SkipReason


logger = logging.getLogger(__name__)

WalkItem = Union[ArchiveEntry, PathSkip]


def inspect_path(path: str) -> Tuple[PathKind, Optional[OSError]]:
    """
    Classify a path with a no-follow stat.

    Links are detected before anything resolves them, so a link to a directory
    is still a SYMLINK. Stat failures and special files are INACCESSIBLE.

    Args:
        path: Filesystem path to inspect

    Returns:
        Tuple of (kind, error); error is the stat failure for INACCESSIBLE
        paths and None otherwise
    """
    try:
        st = os.lstat(path)
    except OSError as e:
        return PathKind.INACCESSIBLE, e

    mode = st.st_mode
    if stat.S_ISLNK(mode):
        return PathKind.SYMLINK, None
    if stat.S_ISDIR(mode):
        return PathKind.DIRECTORY, None
    if stat.S_ISREG(mode):
        return PathKind.FILE, None
    return PathKind.INACCESSIBLE, None


def classify(path: str) -> PathKind:
    """Classify a path as FILE, DIRECTORY, SYMLINK or INACCESSIBLE."""
    return inspect_path(path)[0]


def skip_for(path: str, kind: PathKind, error: Optional[OSError] = None) -> PathSkip:
    """
    Build the skip notification for a path that cannot be archived.

    Args:
        path: The skipped path
        kind: Its classification (SYMLINK or INACCESSIBLE)
        error: The OSError that made it inaccessible, if any
    """
    if kind is PathKind.SYMLINK:
        return PathSkip(path, SkipReason.SYMLINK, 'symbolic link')
    if error is None:
        return PathSkip(path, SkipReason.UNSUPPORTED, 'not a regular file or directory')
    if isinstance(error, (FileNotFoundError, NotADirectoryError)):
        return PathSkip(path, SkipReason.VANISHED, error.strerror or str(error))
    return PathSkip(path, SkipReason.UNREADABLE, error.strerror or str(error))


def archive_name_for(path: str) -> str:
    """Last component of a path, as used for its archive entry name."""
    path = os.path.splitdrive(path)[1].rstrip(os.sep)
    if os.altsep:
        path = path.rstrip(os.altsep)
    return os.path.basename(path)


def _list_directory(path: str):
    return os.listdir(path)


def walk(root_path: str, archive_base: str = '', sort_entries: bool = False) -> Iterator[WalkItem]:
    """
    Walk a path depth-first, yielding archive entries and skip notifications.

    Every directory yields a DIRECTORY_MARKER entry before its children, so
    empty directories survive in the archive. Links are never followed at any
    depth. A path that cannot be read ends its own branch only.

    Traversal runs over an explicit stack, not recursion. The generator is
    lazy: each entry is written by the consumer before the next directory is
    listed.

    Args:
        root_path: File or directory to walk
        archive_base: Archive directory the root is placed under ('' for top level)
        sort_entries: Emit siblings in name order instead of listing order

    Yields:
        ArchiveEntry or PathSkip items
    """
    stack = [(root_path, archive_base)]

    while stack:
        path, base = stack.pop()
        kind, error = inspect_path(path)

        if kind in (PathKind.SYMLINK, PathKind.INACCESSIBLE):
            yield skip_for(path, kind, error)
            continue

        name = archive_name_for(path)
        if name:
            archive_path = posixpath.join(base, name) if base else name
        else:
            archive_path = base

        if kind is PathKind.FILE:
            yield ArchiveEntry(path, archive_path, EntryKind.FILE)
            continue

        # Filesystem roots have no name; their children go directly under base
        if archive_path:
            yield ArchiveEntry(path, archive_path + '/', EntryKind.DIRECTORY_MARKER)

        try:
            names = _list_directory(path)
        except OSError as e:
            yield skip_for(path, PathKind.INACCESSIBLE, e)
            continue

        if not names:
            logger.debug(f"Empty directory: {path}")
            continue

        if sort_entries:
            names = sorted(names)

        # Reversed so the first listed child is popped first
        for child in reversed(names):
            stack.append((os.path.join(path, child), archive_path))
