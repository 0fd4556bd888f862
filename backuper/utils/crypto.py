"""
Legacy zip 2.0 encryption for pyzipper.

pyzipper writes WinZip AES entries on its own. ZipCryptoEncrypter plugs the
traditional PKWARE stream cipher into the same encrypter hook, so one
AESZipFile can write either profile and built-in OS archive tools can open
the legacy one.
"""

import os

from pyzipper.zipfile_aes import BaseZipEncrypter


# Encryption name understood by the backup zip file next to pyzipper.WZ_AES
ZIPCRYPTO = 'ZIPCRYPTO'

_FLAG_DATA_DESCRIPTOR = 0x08


def _gen_crc(crc):
    for _ in range(8):
        if crc & 1:
            crc = (crc >> 1) ^ 0xEDB88320
        else:
            crc >>= 1
    return crc


_CRC_TABLE = [_gen_crc(i) for i in range(256)]

# Keystream byte for each value of the low 16 bits of key2
_KEYSTREAM = bytes(
    (((k | 2) * ((k | 2) ^ 1)) >> 8) & 0xFF for k in range(0x10000)
)


class ZipCryptoEncrypter(BaseZipEncrypter):
    """Traditional PKWARE encryption for one zip entry."""

    # Encryption header prepended to the entry data
    header_length = 12

    def __init__(self, pwd: bytes):
        """
        Initialize the cipher keys from the password.

        Args:
            pwd: Archive password

        Raises:
            RuntimeError: If the password is empty, as pyzipper does for AES
        """
        if not pwd:
            raise RuntimeError('Legacy zip 2.0 encryption requires a password.')

        self._keys = (0x12345678, 0x23456789, 0x34567890)
        self._check_byte = 0
        # Priming the keys runs the password through the cipher; output is discarded
        self.encrypt(pwd)

    def update_zipinfo(self, zipinfo):
        """
        Mark the entry for a trailing data descriptor.

        The CRC is only known after the data has been streamed, so readers
        verify the password against the high byte of the DOS time instead.
        """
        zipinfo.flag_bits |= _FLAG_DATA_DESCRIPTOR
        self._check_byte = (zipinfo.get_dostime() >> 8) & 0xFF

    def finalize_zipinfo(self, zipinfo):
        pass

    def encryption_header(self) -> bytes:
        """Return the encrypted 12-byte header for the entry."""
        return self.encrypt(os.urandom(self.header_length - 1) + bytes((self._check_byte,)))

    def encrypt(self, data: bytes) -> bytes:
        """
        Encrypt a chunk of entry data.

        Args:
            data: Plain (already compressed) bytes

        Returns:
            Encrypted bytes of the same length
        """
        key0, key1, key2 = self._keys
        crctable = _CRC_TABLE
        keystream = _KEYSTREAM
        out = bytearray()
        append = out.append

        for c in data:
            append(c ^ keystream[key2 & 0xFFFF])
            key0 = (key0 >> 8) ^ crctable[(key0 ^ c) & 0xFF]
            key1 = ((key1 + (key0 & 0xFF)) * 134775813 + 1) & 0xFFFFFFFF
            key2 = (key2 >> 8) ^ crctable[(key2 ^ (key1 >> 24)) & 0xFF]

        self._keys = (key0, key1, key2)
        return bytes(out)
