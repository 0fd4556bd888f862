"""
Data model for backup runs.

BackupRequest is built once per run from a stored configuration record and is
immutable afterwards. ArchiveEntry and PathSkip values are produced while walking
the inputs and are consumed immediately by the archive writer. BackupResult is
returned exactly once per request.
"""

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from backuper.config import Config


class ConfigurationError(Exception):
    """Raised when a backup request is invalid and cannot be started."""
    pass


class PathKind(Enum):
    FILE = 'file'
    DIRECTORY = 'directory'
    SYMLINK = 'symlink'
    INACCESSIBLE = 'inaccessible'


class EntryKind(Enum):
    FILE = 'file'
    DIRECTORY_MARKER = 'directory_marker'


class SkipReason(Enum):
    SYMLINK = 'symlink'
    UNREADABLE = 'unreadable'
    VANISHED = 'vanished'
    UNSUPPORTED = 'unsupported'
    OUTPUT_ARCHIVE = 'output_archive'


class EncryptionMethod(Enum):
    """Cipher profile for encrypted archives."""

    LEGACY_ZIP2 = 'zip20'
    AES256 = 'aes256'

    @classmethod
    def parse(cls, value) -> 'EncryptionMethod':
        """
        Parse a configured encryption method.

        Accepts the stored values ('zip20', 'aes256') and the member names,
        case-insensitively.

        Raises:
            ConfigurationError: If the value names no known method
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            normalized = value.strip().lower()
            for method in cls:
                if normalized in (method.value, method.name.lower()):
                    return method
        raise ConfigurationError(
            f"Invalid encryption method: {value!r}. "
            f"Valid options: {[m.value for m in cls]}"
        )


_DRIVE_PREFIX = re.compile(r'^[A-Za-z]:')


@dataclass(frozen=True)
class EncryptionOptions:
    password: str
    method: EncryptionMethod = EncryptionMethod.LEGACY_ZIP2

    def __repr__(self):
        # Never leak the password into logs
        return f"EncryptionOptions(password='***', method={self.method.value!r})"


@dataclass(frozen=True)
class BackupRequest:
    """
    A fully resolved backup configuration.

    Attributes:
        archive_name: Archive file name without the .zip extension
        input_paths: Files and directories to back up, in archive order
        output_directory: Absolute directory the archive is written to
        compression_level: 0 (store) through 9 (maximum compression)
        encryption: Password and cipher profile, or None for a plain archive
    """

    archive_name: str
    input_paths: Tuple[str, ...]
    output_directory: str = Config.DEFAULT_OUTPUT_DIR
    compression_level: int = Config.DEFAULT_COMPRESSION_LEVEL
    encryption: Optional[EncryptionOptions] = None

    def __post_init__(self):
        if isinstance(self.input_paths, str):
            object.__setattr__(self, 'input_paths', (self.input_paths,))
        else:
            object.__setattr__(self, 'input_paths', tuple(self.input_paths))

        output_directory = self.output_directory or Config.DEFAULT_OUTPUT_DIR
        object.__setattr__(
            self,
            'output_directory',
            os.path.abspath(os.path.expanduser(output_directory))
        )

    @property
    def output_file_path(self) -> str:
        return os.path.join(self.output_directory, f"{self.archive_name}.zip")

    def validate(self):
        """
        Check request invariants before any side effect happens.

        Raises:
            ConfigurationError: If the name, paths, level or password are invalid
        """
        if not self.archive_name or not self.archive_name.strip():
            raise ConfigurationError("Archive name is required")

        if not self.input_paths:
            raise ConfigurationError("At least one path is required")

        if any(not path for path in self.input_paths):
            raise ConfigurationError("Input paths must not be empty")

        level = self.compression_level
        if isinstance(level, bool) or not isinstance(level, int) or not 0 <= level <= 9:
            raise ConfigurationError(f"Compression level must be between 0 and 9, got {level!r}")

        if self.encryption is not None and not self.encryption.password:
            raise ConfigurationError("Password is required when encryption is enabled")

    @classmethod
    def from_config(cls, record: Dict[str, Any]) -> 'BackupRequest':
        """
        Build a request from a stored configuration record.

        Args:
            record: Dict with keys zipName, outputDir (optional), paths and
                zipOptions (optional: compressLevel, password, encryptionMethod)

        Returns:
            BackupRequest (not yet validated)

        Raises:
            ConfigurationError: If the record cannot be interpreted at all
        """
        if not isinstance(record, dict):
            raise ConfigurationError(f"Configuration record must be a mapping, got {type(record).__name__}")

        zip_options = record.get('zipOptions') or {}
        if not isinstance(zip_options, dict):
            raise ConfigurationError("zipOptions must be a mapping")

        compression_level = zip_options.get('compressLevel')
        if compression_level is None:
            compression_level = Config.DEFAULT_COMPRESSION_LEVEL

        password = zip_options.get('password')
        method = zip_options.get('encryptionMethod')

        encryption = None
        if password is not None or method is not None:
            encryption = EncryptionOptions(
                password=password or '',
                method=EncryptionMethod.parse(method or Config.DEFAULT_ENCRYPTION_METHOD)
            )

        paths = record.get('paths') or ()
        if isinstance(paths, str):
            paths = (paths,)

        return cls(
            archive_name=record.get('zipName') or '',
            input_paths=tuple(paths),
            output_directory=record.get('outputDir') or Config.DEFAULT_OUTPUT_DIR,
            compression_level=compression_level,
            encryption=encryption
        )


@dataclass(frozen=True)
class ArchiveEntry:
    """One item to write into the archive."""

    source_path: str
    archive_path: str
    kind: EntryKind

    def __post_init__(self):
        if not self.archive_path or self.archive_path.startswith('/') or _DRIVE_PREFIX.match(self.archive_path):
            raise ValueError(f"Archive path must be relative: {self.archive_path!r}")
        is_marker = self.kind is EntryKind.DIRECTORY_MARKER
        if is_marker != self.archive_path.endswith('/'):
            raise ValueError(f"Only directory markers may end with '/': {self.archive_path!r}")


@dataclass(frozen=True)
class PathSkip:
    """Notification that a path was left out of the archive."""

    path: str
    reason: SkipReason
    detail: str = ''


@dataclass
class BackupResult:
    """Outcome of one backup request."""

    archive_name: str
    status: str
    output_file_path: Optional[str] = None
    total_bytes_written: int = 0
    file_count: int = 0
    skipped: List[PathSkip] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error: Optional[Exception] = None

    @property
    def succeeded(self) -> bool:
        return self.status == 'success'

    @property
    def error_message(self) -> Optional[str]:
        return str(self.error) if self.error is not None else None

    def raise_for_error(self):
        """Re-raise the fatal error of a failed run."""
        if self.error is not None:
            raise self.error

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for display"""
        return {
            'archive_name': self.archive_name,
            'status': self.status,
            'output_file_path': self.output_file_path,
            'total_bytes_written': self.total_bytes_written,
            'file_count': self.file_count,
            'skipped': [{'path': s.path, 'reason': s.reason.value} for s in self.skipped],
            'warnings': list(self.warnings),
            'error_message': self.error_message
        }
