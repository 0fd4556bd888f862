"""
Archive writing for backups.

Formats are looked up by name in a process-wide registry:
- zip: plain zip archive (stdlib zipfile)
- zip-encrypted: password protected zip archive on pyzipper, legacy zip 2.0 or AES-256

Both containers stream entries through ZipFile.open(..., 'w') and switch to
ZIP64 where sizes require it.

ArchiveWriter owns the output file for one backup run. It streams entries into
the container in bounded chunks, turns unreadable sources into per-entry
warnings and reports exactly one terminal outcome.
"""

import os
import stat
import time
import zipfile
import logging
import warnings
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Optional

import pyzipper
from pyzipper.zipfile_aes import AESZipInfo

from backuper.config import Config
from backuper.models import ArchiveEntry, EncryptionMethod, EncryptionOptions, EntryKind
from backuper.utils.crypto import ZIPCRYPTO, ZipCryptoEncrypter


logger = logging.getLogger(__name__)


class CompressionError(Exception):
    """Base class for archive writer errors."""
    pass


class WriterFatalError(CompressionError):
    """Raised when the archive cannot be completed."""
    pass


class OutputStreamError(WriterFatalError):
    """Raised when the destination file cannot be opened or written."""
    pass


class EntryError(CompressionError):
    """Raised when a single entry cannot be added; the archive stays usable."""
    pass


# Format registry

_formats: Dict[str, Callable] = {}


def register_format(name: str, factory: Callable) -> bool:
    """
    Register a container implementation under a format name.

    Registration is init-once: later attempts for a known name are ignored.

    Args:
        name: Format name (e.g. 'zip', 'zip-encrypted')
        factory: Callable(fileobj, compression_level, encryption, warn) -> container

    Returns:
        True if the format was registered by this call
    """
    if name in _formats:
        logger.debug(f"Archive format already registered: {name}")
        return False
    _formats[name] = factory
    return True


def register_default_formats():
    """Register the built-in zip formats. Safe to call more than once."""
    register_format('zip', ZipContainer)
    register_format('zip-encrypted', EncryptedZipContainer)


def get_format(name: str) -> Callable:
    """
    Look up a registered container factory.

    Raises:
        WriterFatalError: If no format is registered under the name
    """
    try:
        return _formats[name]
    except KeyError:
        raise WriterFatalError(
            f"Archive format not registered: {name}. "
            f"Registered formats: {sorted(_formats)}"
        )


def _date_time(st: os.stat_result):
    """Modification time as a zip date_time tuple, clamped to the DOS range."""
    date_time = time.localtime(st.st_mtime)[:6]
    if date_time < (1980, 1, 1, 0, 0, 0):
        return (1980, 1, 1, 0, 0, 0)
    if date_time > (2107, 12, 31, 23, 59, 58):
        return (2107, 12, 31, 23, 59, 58)
    return date_time


def make_zipinfo(archive_path: str, st: os.stat_result,
                 zipinfo_cls=zipfile.ZipInfo) -> zipfile.ZipInfo:
    """
    Build the ZipInfo for an entry from its source's stat result.

    Args:
        archive_path: Entry name inside the archive
        st: stat result of the source
        zipinfo_cls: ZipInfo class of the container's ZipFile

    Returns:
        ZipInfo with timestamp, permissions and size filled in
    """
    zinfo = zipinfo_cls(archive_path, _date_time(st))
    zinfo.external_attr = (st.st_mode & 0xFFFF) << 16
    if stat.S_ISDIR(st.st_mode):
        zinfo.external_attr |= 0x10  # MS-DOS directory flag
        zinfo.file_size = 0
    else:
        zinfo.file_size = st.st_size
    return zinfo


def _check_name(name: str):
    """Reject entry names that cannot be stored as UTF-8."""
    try:
        name.encode('utf-8')
    except UnicodeEncodeError as e:
        raise EntryError(f"Entry name cannot be encoded: {name!r}") from e


def _compression_for(compression_level: int) -> int:
    return zipfile.ZIP_DEFLATED if compression_level else zipfile.ZIP_STORED


def _set_compress_level(zinfo: zipfile.ZipInfo, level: Optional[int]):
    # ZipFile.open(zinfo, 'w') takes the level from the ZipInfo. The stdlib
    # exposes it as compress_level only from Python 3.13 on and pyzipper never
    # does; both read _compresslevel.
    zinfo._compresslevel = level


class _ZipFileContainer:
    """
    Streams entries into a ZipFile.

    File data goes through ZipFile.open(..., 'w'), so it is compressed (and
    encrypted) chunk by chunk as it is read.
    """

    zipinfo_cls = zipfile.ZipInfo

    def __init__(self, zip_file, compression_level: int, warn: Callable[[str], None] = None):
        self._zip = zip_file
        self._compression = _compression_for(compression_level)
        self._compression_level = compression_level or None
        self._warn = warn or (lambda message: None)

    @contextmanager
    def _forwarding_warnings(self):
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter('always')
            yield
        for warning in caught:
            self._warn(str(warning.message))

    def write_directory(self, zinfo: zipfile.ZipInfo):
        _check_name(zinfo.filename)
        zinfo.compress_type = zipfile.ZIP_STORED
        with self._forwarding_warnings():
            self._zip.writestr(zinfo, b'')

    def write_file(self, zinfo: zipfile.ZipInfo, chunks: Iterator[bytes]):
        _check_name(zinfo.filename)
        zinfo.compress_type = self._compression
        _set_compress_level(zinfo, self._compression_level)

        with self._forwarding_warnings():
            try:
                with self._zip.open(zinfo, 'w') as dest:
                    for chunk in chunks:
                        dest.write(chunk)
            except EntryError:
                # The partial entry stays in the file but not in the central directory
                if zinfo in self._zip.filelist:
                    self._zip.filelist.remove(zinfo)
                if self._zip.NameToInfo.get(zinfo.filename) is zinfo:
                    del self._zip.NameToInfo[zinfo.filename]
                raise

    def close(self):
        """Write the central directory. The underlying file stays open."""
        self._zip.close()

    def abort(self):
        """Detach the ZipFile from the output file without writing to it again."""
        self._zip.fp = None


class ZipContainer(_ZipFileContainer):
    """Plain zip container backed by zipfile.ZipFile."""

    def __init__(self, fileobj, compression_level: int, encryption: EncryptionOptions = None,
                 warn: Callable[[str], None] = None):
        if encryption is not None:
            raise WriterFatalError("The 'zip' format does not support encryption")

        zip_file = zipfile.ZipFile(
            fileobj,
            'w',
            compression=_compression_for(compression_level),
            compresslevel=compression_level or None
        )
        super().__init__(zip_file, compression_level, warn)


class _BackupZipFile(pyzipper.AESZipFile):
    """AESZipFile that can also write legacy zip 2.0 entries."""

    def get_encrypter(self):
        if self.encryption == ZIPCRYPTO:
            return ZipCryptoEncrypter(self.pwd)
        return super().get_encrypter()


# pyzipper encryption name and keyword arguments per cipher profile
_ENCRYPTIONS = {
    EncryptionMethod.LEGACY_ZIP2: (ZIPCRYPTO, {}),
    EncryptionMethod.AES256: (pyzipper.WZ_AES, {'nbits': 256}),
}


class EncryptedZipContainer(_ZipFileContainer):
    """
    Password protected zip container backed by pyzipper.

    Both cipher profiles share pyzipper's streaming writer: AES-256 entries
    are WinZip AE-2, legacy entries use ZipCryptoEncrypter with a trailing
    data descriptor. Directory markers are written unencrypted.
    """

    zipinfo_cls = AESZipInfo

    def __init__(self, fileobj, compression_level: int, encryption: EncryptionOptions = None,
                 warn: Callable[[str], None] = None):
        if encryption is None or not encryption.password:
            raise WriterFatalError("Encrypted archives require a non-empty password")

        self._password = encryption.password.encode('utf-8')
        self._encryption, self._encryption_kwargs = _ENCRYPTIONS[encryption.method]

        zip_file = _BackupZipFile(
            fileobj,
            'w',
            compression=_compression_for(compression_level),
            compresslevel=compression_level or None
        )
        zip_file.setpassword(self._password)
        zip_file.setencryption(self._encryption, **self._encryption_kwargs)
        super().__init__(zip_file, compression_level, warn)

    @contextmanager
    def _unencrypted(self):
        self._zip.setpassword(None)
        self._zip.setencryption(None)
        try:
            yield
        finally:
            self._zip.setpassword(self._password)
            self._zip.setencryption(self._encryption, **self._encryption_kwargs)

    def write_directory(self, zinfo: zipfile.ZipInfo):
        with self._unencrypted():
            super().write_directory(zinfo)


class CompletionLatch:
    """
    Collapses the writer's completion signals into one terminal outcome.

    The archive is done only once the container has finished ('finish') and
    the output file has been durably closed ('close'). Whichever terminal
    transition happens first wins; later signals and failures are ignored.
    """

    PENDING = 'pending'
    DONE = 'done'
    FAILED = 'failed'

    FINISH = 'finish'
    CLOSE = 'close'

    def __init__(self, on_done: Callable[[], None] = None,
                 on_failed: Callable[[Exception], None] = None):
        self.state = self.PENDING
        self.error = None
        self._seen = set()
        self._on_done = on_done
        self._on_failed = on_failed

    @property
    def resolved(self) -> bool:
        return self.state != self.PENDING

    def signal(self, event: str) -> bool:
        """
        Record a completion signal.

        Returns:
            True if this signal completed the latch
        """
        if event not in (self.FINISH, self.CLOSE):
            raise ValueError(f"Unknown completion signal: {event}")
        if self.resolved:
            return False

        self._seen.add(event)
        if self._seen != {self.FINISH, self.CLOSE}:
            return False

        self.state = self.DONE
        if self._on_done:
            self._on_done()
        return True

    def fail(self, error: Exception) -> bool:
        """
        Record a fatal error.

        Returns:
            True if this error failed the latch
        """
        if self.resolved:
            return False

        self.state = self.FAILED
        self.error = error
        if self._on_failed:
            self._on_failed(error)
        return True


class ArchiveWriter:
    """
    Scoped writer for one archive file.

    Usage:
        with ArchiveWriter(on_warning=print).open(path, 9, None) as writer:
            writer.add_entry(entry)
            total_bytes = writer.finalize()

    Leaving the block with an exception closes the output file without
    finalizing it; the partial file is left on disk.
    """

    def __init__(self, on_warning: Callable[[str], None] = None,
                 on_complete: Callable[[int], None] = None,
                 on_error: Callable[[Exception], None] = None,
                 chunk_size: int = None):
        """
        Initialize archive writer.

        Args:
            on_warning: Called with a message for every non-fatal problem
            on_complete: Called once with the total bytes written on success
            on_error: Called once with the fatal error on failure
            chunk_size: Read size for streaming source files
        """
        self.on_warning = on_warning
        self.chunk_size = chunk_size or Config.READ_CHUNK_SIZE
        self.output_path = None
        self.bytes_written = 0
        self._fp = None
        self._container = None
        self._on_complete = on_complete
        self._latch = CompletionLatch(on_done=self._completed, on_failed=on_error)

    @property
    def is_open(self) -> bool:
        return self._container is not None and not self._latch.resolved

    @property
    def state(self) -> str:
        return self._latch.state

    def open(self, output_path: str, compression_level: int = 9,
             encryption: Optional[EncryptionOptions] = None) -> 'ArchiveWriter':
        """
        Create the output file and the container for it.

        Args:
            output_path: Archive file to create (parent directories are created)
            compression_level: 0 (store) through 9 (maximum), for every entry
            encryption: Password and cipher profile, or None for a plain archive

        Returns:
            self

        Raises:
            OutputStreamError: If the output file cannot be created
            WriterFatalError: If the container cannot be set up
        """
        if self._fp is not None:
            raise RuntimeError("ArchiveWriter is already open")

        format_name = 'zip-encrypted' if encryption is not None else 'zip'
        factory = get_format(format_name)

        self.output_path = output_path
        try:
            os.makedirs(os.path.dirname(output_path) or '.', exist_ok=True)
            self._fp = open(output_path, 'wb')
        except OSError as e:
            raise self._fail(OutputStreamError(f"Cannot open output file {output_path}: {e}")) from e

        try:
            self._container = factory(self._fp, compression_level, encryption, self._warn)
        except Exception as e:
            raise self._fail(e)

        logger.debug(f"Opened {format_name} archive: {output_path}")
        return self

    def add_entry(self, entry: ArchiveEntry) -> bool:
        """
        Add one entry to the archive.

        Directory markers become zero-length entries; files are streamed from
        disk in chunks. A source that cannot be read is reported as a warning
        and left out of the archive.

        Returns:
            True if the entry was written, False if it was left out

        Raises:
            WriterFatalError: If the archive itself can no longer be written
        """
        self._ensure_open()

        try:
            if entry.kind is EntryKind.DIRECTORY_MARKER:
                self._add_directory(entry)
            else:
                self._add_file(entry)
        except EntryError as e:
            self._warn(str(e))
            return False
        except Exception as e:
            raise self._fail(e)

        return True

    def _add_directory(self, entry: ArchiveEntry):
        try:
            st = os.stat(entry.source_path)
        except OSError as e:
            raise EntryError(f"Cannot read directory {entry.source_path}: {e}") from e
        self._container.write_directory(make_zipinfo(entry.archive_path, st, self._container.zipinfo_cls))

    def _add_file(self, entry: ArchiveEntry):
        src = self._open_source(entry.source_path)
        with src:
            st = os.fstat(src.fileno())
            if not stat.S_ISREG(st.st_mode):
                raise EntryError(f"Not a regular file: {entry.source_path}")
            zinfo = make_zipinfo(entry.archive_path, st, self._container.zipinfo_cls)
            self._container.write_file(zinfo, self._read_chunks(src, entry.source_path))

    def _open_source(self, path: str):
        """Open a source file for reading without following a final symlink."""
        flags = os.O_RDONLY | getattr(os, 'O_NOFOLLOW', 0) | getattr(os, 'O_BINARY', 0)
        try:
            fd = os.open(path, flags)
        except OSError as e:
            raise EntryError(f"Cannot add file {path}: {e}") from e
        return os.fdopen(fd, 'rb')

    def _read_chunks(self, src, path: str) -> Iterator[bytes]:
        while True:
            try:
                chunk = src.read(self.chunk_size)
            except OSError as e:
                raise EntryError(f"Cannot read file {path}: {e}") from e
            if not chunk:
                return
            yield chunk

    def finalize(self) -> int:
        """
        Finish the archive and durably close the output file.

        Returns only after the file has been flushed, synced and closed.

        Returns:
            Total bytes written to the archive file

        Raises:
            WriterFatalError: If the archive cannot be completed
        """
        self._ensure_open()

        try:
            self._container.close()
            self._fp.flush()
            self.bytes_written = self._fp.tell()
            self._latch.signal(CompletionLatch.FINISH)

            os.fsync(self._fp.fileno())
            self._fp.close()
            self._latch.signal(CompletionLatch.CLOSE)
        except Exception as e:
            raise self._fail(e)

        logger.debug(f"Finalized archive: {self.output_path} ({self.bytes_written} bytes)")
        return self.bytes_written

    def abort(self):
        """Close the output file without finalizing; the partial file stays on disk."""
        if self._container is not None:
            # An unfinished ZipFile would otherwise write its central directory on collection
            self._container.abort()
        if self._fp is not None and not self._fp.closed:
            try:
                self._fp.close()
            except OSError as e:
                logger.debug(f"Failed to close partial archive {self.output_path}: {e}")

    def _ensure_open(self):
        if not self.is_open:
            raise RuntimeError("ArchiveWriter is not open. Call open() first.")

    def _warn(self, message: str):
        logger.debug(f"Archive warning: {message}")
        if self.on_warning:
            self.on_warning(message)

    def _completed(self):
        if self._on_complete:
            self._on_complete(self.bytes_written)

    def _fail(self, error: Exception) -> WriterFatalError:
        """
        Convert an error into the writer's fatal error and resolve the latch.

        Output stream failures become OutputStreamError; anything else becomes
        WriterFatalError. The output file is closed but not removed.
        """
        if isinstance(error, WriterFatalError):
            fatal = error
        elif isinstance(error, OSError):
            fatal = OutputStreamError(f"Output stream error: {error}")
            fatal.__cause__ = error
        else:
            fatal = WriterFatalError(f"Failed to write archive: {error}")
            fatal.__cause__ = error

        self.abort()
        self._latch.fail(fatal)
        return fatal

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        if exc_type is not None:
            self.abort()
            if not self._latch.resolved:
                self._latch.fail(exc_value)
        elif self.is_open:
            self.finalize()
        return False
