"""Password protected ZIP archives (WinZip AES-256, AE-2).

The writer and the reader are both implemented here so that restoring a
backup never depends on a third-party archive library understanding the
AES extension. Only the primitives come from elsewhere: ``zlib`` for raw
deflate and ``cryptography`` for AES, HMAC-SHA1 and PBKDF2.

Layout of an encrypted member's payload::

    salt | password verifier (2) | AES-CTR ciphertext | HMAC-SHA1[:10]

All multi-byte integers in the container are little endian.
"""
from __future__ import annotations

import logging
import os
import struct
import zlib
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, NamedTuple, Optional, Sequence, Tuple
from zipfile import ZIP_DEFLATED, ZIP_STORED

from cryptography.hazmat.primitives import constant_time, hashes, hmac
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

LOGGER = logging.getLogger(__name__)

AES_COMPRESSION_METHOD = 99
AES_EXTRA_FIELD_ID = 0x9901
AES_VENDOR_ID = b"AE"
AES_STRENGTH_256 = 3
AE_1 = 1
AE_2 = 2
HMAC_LENGTH = 10
VERIFIER_LENGTH = 2
PBKDF2_ITERATIONS = 1000
BLOCK_SIZE = 16

LOCAL_HEADER_SIGNATURE = 0x04034B50
CENTRAL_HEADER_SIGNATURE = 0x02014B50
END_OF_CENTRAL_DIR_SIGNATURE = 0x06054B50

LOCAL_HEADER = struct.Struct("<IHHHHHIIIHH")
CENTRAL_HEADER = struct.Struct("<IHHHHHHIIIHHHHHII")
END_OF_CENTRAL_DIR = struct.Struct("<IHHHHIIH")
AES_EXTRA = struct.Struct("<HHH2sBH")

FLAG_ENCRYPTED = 0x0001
FLAG_UTF8 = 0x0800
VERSION_NEEDED = 51
MAX_COMMENT_LENGTH = 0xFFFF

# strength -> (salt length, key length)
AES_STRENGTHS = {
    1: (8, 16),
    2: (12, 24),
    3: (16, 32),
}


class ArchiveError(Exception):
    """Raised when an archive cannot be built or read."""


class MissingPassphraseError(ArchiveError):
    pass


class BadPassphraseError(ArchiveError):
    """Wrong passphrase or tampered data; the two are indistinguishable by design."""


class UnsupportedFormatError(ArchiveError):
    pass


class UnsupportedCompressionError(ArchiveError):
    pass


class LocalHeader(NamedTuple):
    name_length: int
    extra_length: int
    extra_start: int
    data_start: int


class CentralEntry(NamedTuple):
    name: str
    flags: int
    method: int
    crc32: int
    compressed_size: int
    uncompressed_size: int
    local_header_offset: int


class AesExtra(NamedTuple):
    vendor_version: int
    strength: int
    method: int


@dataclass
class _KeyMaterial:
    aes_key: bytes
    hmac_key: bytes
    verifier: bytes


# ---------------------------------------------------------------------------
# crypto helpers
# ---------------------------------------------------------------------------
def derive_keys(passphrase: bytes, salt: bytes, key_length: int) -> _KeyMaterial:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA1(),
        length=2 * key_length + VERIFIER_LENGTH,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    material = kdf.derive(passphrase)
    return _KeyMaterial(
        aes_key=material[:key_length],
        hmac_key=material[key_length : 2 * key_length],
        verifier=material[2 * key_length :],
    )


def aes_ctr_le(key: bytes, data: bytes) -> bytes:
    """AES-CTR with a little-endian block counter starting at one.

    ``cryptography``'s CTR mode increments big-endian, so the keystream is
    produced by encrypting the counter blocks in ECB mode.
    """

    if not data:
        return b""
    blocks = (len(data) + BLOCK_SIZE - 1) // BLOCK_SIZE
    counters = b"".join(i.to_bytes(BLOCK_SIZE, "little") for i in range(1, blocks + 1))
    encryptor = Cipher(algorithms.AES(key), modes.ECB()).encryptor()
    keystream = encryptor.update(counters) + encryptor.finalize()
    size = len(data)
    mixed = int.from_bytes(data, "big") ^ int.from_bytes(keystream[:size], "big")
    return mixed.to_bytes(size, "big")


def authentication_tag(key: bytes, ciphertext: bytes) -> bytes:
    mac = hmac.HMAC(key, hashes.SHA1())
    mac.update(ciphertext)
    return mac.finalize()[:HMAC_LENGTH]


def _passphrase_bytes(passphrase) -> bytes:
    if isinstance(passphrase, (bytes, bytearray)):
        return bytes(passphrase)
    return str(passphrase).encode("utf-8")


# ---------------------------------------------------------------------------
# compression
# ---------------------------------------------------------------------------
def compress(data: bytes, method: int) -> bytes:
    if method == ZIP_STORED:
        return data
    if method == ZIP_DEFLATED:
        compressor = zlib.compressobj(8, zlib.DEFLATED, -zlib.MAX_WBITS)
        return compressor.compress(data) + compressor.flush()
    raise UnsupportedCompressionError(f"Unsupported compression method {method}.")


def decompress(data: bytes, method: int) -> bytes:
    if method == ZIP_STORED:
        return data
    if method == ZIP_DEFLATED:
        try:
            return zlib.decompress(data, -zlib.MAX_WBITS)
        except zlib.error as exc:
            raise ArchiveError(f"Corrupted compressed data: {exc}") from exc
    raise UnsupportedCompressionError(f"Unsupported compression method {method}.")


# ---------------------------------------------------------------------------
# writer
# ---------------------------------------------------------------------------
def _dos_datetime(moment: datetime) -> Tuple[int, int]:
    year = min(max(moment.year, 1980), 2107)
    dos_time = (moment.hour << 11) | (moment.minute << 5) | (moment.second // 2)
    dos_date = ((year - 1980) << 9) | (moment.month << 5) | moment.day
    return dos_time, dos_date


def _encrypt_member(plain: bytes, passphrase: bytes, method: int) -> bytes:
    salt_length, key_length = AES_STRENGTHS[AES_STRENGTH_256]
    salt = os.urandom(salt_length)
    keys = derive_keys(passphrase, salt, key_length)
    ciphertext = aes_ctr_le(keys.aes_key, compress(plain, method))
    return salt + keys.verifier + ciphertext + authentication_tag(keys.hmac_key, ciphertext)


def build_archive(
    members: Iterable[Tuple[str, bytes]],
    passphrase,
    compression: int = ZIP_DEFLATED,
    moment: Optional[datetime] = None,
) -> bytes:
    """Assemble an AES-256 encrypted ZIP archive in memory.

    Every member gets its own salt and therefore its own keys; the CTR
    counter restarts at one for each of them. Members with an empty name
    are skipped.
    """

    if not passphrase:
        raise MissingPassphraseError("Backup encryption password is not set.")
    secret = _passphrase_bytes(passphrase)
    dos_time, dos_date = _dos_datetime(moment or datetime.now())
    extra = AES_EXTRA.pack(AES_EXTRA_FIELD_ID, 7, AE_2, AES_VENDOR_ID, AES_STRENGTH_256, compression)
    flags = FLAG_ENCRYPTED | FLAG_UTF8

    output = bytearray()
    central = bytearray()
    count = 0
    for name, content in members:
        if not name:
            continue
        encoded_name = name.encode("utf-8")
        payload = _encrypt_member(bytes(content), secret, compression)
        offset = len(output)
        output += LOCAL_HEADER.pack(
            LOCAL_HEADER_SIGNATURE,
            VERSION_NEEDED,
            flags,
            AES_COMPRESSION_METHOD,
            dos_time,
            dos_date,
            0,  # AE-2 stores no CRC
            len(payload),
            len(content),
            len(encoded_name),
            len(extra),
        )
        output += encoded_name + extra + payload
        central += CENTRAL_HEADER.pack(
            CENTRAL_HEADER_SIGNATURE,
            VERSION_NEEDED,
            VERSION_NEEDED,
            flags,
            AES_COMPRESSION_METHOD,
            dos_time,
            dos_date,
            0,
            len(payload),
            len(content),
            len(encoded_name),
            len(extra),
            0,
            0,
            0,
            0,
            offset,
        )
        central += encoded_name + extra
        count += 1

    central_offset = len(output)
    output += central
    output += END_OF_CENTRAL_DIR.pack(
        END_OF_CENTRAL_DIR_SIGNATURE, 0, 0, count, count, len(central), central_offset, 0
    )
    LOGGER.debug("Built encrypted archive with %d members (%d bytes).", count, len(output))
    return bytes(output)


# ---------------------------------------------------------------------------
# reader
# ---------------------------------------------------------------------------
def find_end_of_central_dir(archive: bytes) -> int:
    lowest = max(0, len(archive) - END_OF_CENTRAL_DIR.size - MAX_COMMENT_LENGTH)
    position = len(archive) - END_OF_CENTRAL_DIR.size
    signature = struct.pack("<I", END_OF_CENTRAL_DIR_SIGNATURE)
    while position >= lowest:
        if archive[position : position + 4] == signature:
            comment_length = struct.unpack_from("<H", archive, position + 20)[0]
            if position + END_OF_CENTRAL_DIR.size + comment_length == len(archive):
                return position
        position -= 1
    raise ArchiveError("Not a ZIP archive (end of central directory not found).")


def read_central_directory(archive: bytes) -> List[CentralEntry]:
    eocd = find_end_of_central_dir(archive)
    _, _, _, _, total, size, offset, _ = END_OF_CENTRAL_DIR.unpack_from(archive, eocd)
    if offset + size > eocd:
        raise ArchiveError("ZIP archive is corrupted (central directory out of bounds).")

    entries: List[CentralEntry] = []
    position = offset
    for _ in range(total):
        if position + CENTRAL_HEADER.size > eocd:
            raise ArchiveError("ZIP archive is corrupted (truncated central directory).")
        fields = CENTRAL_HEADER.unpack_from(archive, position)
        if fields[0] != CENTRAL_HEADER_SIGNATURE:
            raise ArchiveError("ZIP archive is corrupted (bad central directory signature).")
        flags, method, crc, compressed, uncompressed = fields[3], fields[4], fields[7], fields[8], fields[9]
        name_length, extra_length, comment_length = fields[10], fields[11], fields[12]
        name_start = position + CENTRAL_HEADER.size
        name_end = name_start + name_length
        if name_end > eocd:
            raise ArchiveError("ZIP archive is corrupted (truncated file name).")
        raw_name = archive[name_start:name_end]
        try:
            name = raw_name.decode("utf-8" if flags & FLAG_UTF8 else "cp437")
        except UnicodeDecodeError as exc:
            raise ArchiveError("ZIP archive is corrupted (bad file name).") from exc
        entries.append(CentralEntry(name, flags, method, crc, compressed, uncompressed, fields[16]))
        position = name_end + extra_length + comment_length
    return entries


def parse_local_header(archive: bytes, offset: int) -> LocalHeader:
    if offset < 0 or offset + LOCAL_HEADER.size > len(archive):
        raise ArchiveError("ZIP archive is corrupted (local header out of bounds).")
    fields = LOCAL_HEADER.unpack_from(archive, offset)
    if fields[0] != LOCAL_HEADER_SIGNATURE:
        raise ArchiveError("ZIP archive is corrupted (bad local header signature).")
    name_length, extra_length = fields[9], fields[10]
    extra_start = offset + LOCAL_HEADER.size + name_length
    data_start = extra_start + extra_length
    if data_start > len(archive):
        raise ArchiveError("ZIP archive is corrupted (local header extends past the end).")
    return LocalHeader(name_length, extra_length, extra_start, data_start)


def find_extra_field(extra: bytes, header_id: int) -> Optional[bytes]:
    """Return the body of extra field *header_id*, or ``None`` if absent."""

    position = 0
    while position + 4 <= len(extra):
        field_id, size = struct.unpack_from("<HH", extra, position)
        start = position + 4
        end = start + size
        if end > len(extra):
            return None
        if field_id == header_id:
            return extra[start:end]
        position = end
    return None


def parse_aes_extra(body: Optional[bytes]) -> AesExtra:
    if body is None or len(body) < 7:
        raise UnsupportedFormatError("Member has no WinZip AES extra field.")
    vendor_version, vendor_id, strength, method = struct.unpack_from("<H2sBH", body, 0)
    if vendor_id != AES_VENDOR_ID or strength not in AES_STRENGTHS:
        raise UnsupportedFormatError(f"Unsupported AES encryption strength {strength}.")
    return AesExtra(vendor_version, strength, method)


def decrypt_payload(payload: bytes, passphrase: bytes, strength: int) -> bytes:
    salt_length, key_length = AES_STRENGTHS[strength]
    header_length = salt_length + VERIFIER_LENGTH
    if len(payload) < header_length + HMAC_LENGTH:
        raise ArchiveError("Encrypted member is truncated.")

    salt = payload[:salt_length]
    stored_verifier = payload[salt_length:header_length]
    ciphertext = payload[header_length : len(payload) - HMAC_LENGTH]
    stored_tag = payload[len(payload) - HMAC_LENGTH :]

    keys = derive_keys(passphrase, salt, key_length)
    if not constant_time.bytes_eq(keys.verifier, stored_verifier):
        raise BadPassphraseError("Wrong password or corrupted archive.")
    if not constant_time.bytes_eq(authentication_tag(keys.hmac_key, ciphertext), stored_tag):
        raise BadPassphraseError("Wrong password or corrupted archive.")
    return aes_ctr_le(keys.aes_key, ciphertext)


def list_members(archive: bytes) -> List[str]:
    return [entry.name for entry in read_central_directory(archive)]


def extract_member(archive: bytes, member_path: str, passphrase) -> bytes:
    """Authenticate, decrypt and decompress one member of *archive*."""

    if not passphrase:
        raise MissingPassphraseError("Backup encryption password is not set.")
    entry = _find_entry(read_central_directory(archive), member_path)
    if entry.method != AES_COMPRESSION_METHOD:
        raise UnsupportedFormatError(
            "Unsupported backup format: only AES-256 encrypted ZIP archives can be restored."
        )

    header = parse_local_header(archive, entry.local_header_offset)
    extra = archive[header.extra_start : header.extra_start + header.extra_length]
    aes = parse_aes_extra(find_extra_field(extra, AES_EXTRA_FIELD_ID))

    size = entry.compressed_size
    if size <= 0 or header.data_start + size > len(archive):
        raise ArchiveError("ZIP archive is corrupted (member data out of bounds).")
    payload = archive[header.data_start : header.data_start + size]

    compressed = decrypt_payload(payload, _passphrase_bytes(passphrase), aes.strength)
    plain = decompress(compressed, aes.method)
    if aes.vendor_version == AE_1 and zlib.crc32(plain) != entry.crc32:
        raise ArchiveError(f"CRC mismatch for '{member_path}'.")
    return plain


def _find_entry(entries: Sequence[CentralEntry], member_path: str) -> CentralEntry:
    for entry in entries:
        if entry.name == member_path:
            return entry
    raise ArchiveError(f"Archive does not contain '{member_path}'.")


__all__ = [
    "ArchiveError",
    "BadPassphraseError",
    "MissingPassphraseError",
    "UnsupportedCompressionError",
    "UnsupportedFormatError",
    "build_archive",
    "extract_member",
    "find_extra_field",
    "list_members",
    "parse_local_header",
]
