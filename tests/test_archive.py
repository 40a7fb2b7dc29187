"""Tests for the WinZip AES-256 archive writer and reader."""

from __future__ import annotations

import io
import json
import struct
import zipfile

import pytest
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from otp_backup.archive import (
    AES_EXTRA_FIELD_ID,
    ArchiveError,
    BadPassphraseError,
    MissingPassphraseError,
    UnsupportedCompressionError,
    UnsupportedFormatError,
    aes_ctr_le,
    build_archive,
    extract_member,
    find_extra_field,
    list_members,
    parse_local_header,
)


def _payload_bytes(payload) -> bytes:
    return json.dumps(payload).encode("utf-8")


class TestRoundTrip:
    """Build then extract."""

    def test_payload_round_trip(self) -> None:
        payload = {"activeItems": [{"id": "1"}], "deletedItems": []}
        archive = build_archive([("backup.json", _payload_bytes(payload))], "abc123")

        restored = json.loads(extract_member(archive, "backup.json", "abc123"))

        assert restored == payload

    def test_wrong_passphrase_is_rejected(self) -> None:
        payload = {"activeItems": [{"id": "1"}], "deletedItems": []}
        archive = build_archive([("backup.json", _payload_bytes(payload))], "abc123")

        with pytest.raises(BadPassphraseError):
            extract_member(archive, "backup.json", "wrong")

    def test_multiple_members_each_readable(self) -> None:
        members = [
            ("backup.json", b'{"a": 1}'),
            ("otpauth_active.txt", b"otpauth://totp/x?secret=ABC"),
            ("README.txt", "Unicode ✓ text".encode("utf-8")),
        ]
        archive = build_archive(members, "pw")

        for name, content in members:
            assert extract_member(archive, name, "pw") == content

    def test_stored_members_round_trip(self) -> None:
        archive = build_archive([("plain.txt", b"hello world")], "pw", compression=zipfile.ZIP_STORED)

        assert extract_member(archive, "plain.txt", "pw") == b"hello world"

    def test_empty_member_round_trip(self) -> None:
        archive = build_archive([("empty.txt", b"")], "pw")

        assert extract_member(archive, "empty.txt", "pw") == b""

    def test_large_member_round_trip(self) -> None:
        data = bytes(range(256)) * 400
        archive = build_archive([("big.bin", data)], "pw")

        assert extract_member(archive, "big.bin", "pw") == data

    def test_bytes_passphrase_accepted(self) -> None:
        archive = build_archive([("a.txt", b"x")], b"pw")

        assert extract_member(archive, "a.txt", "pw") == b"x"


class TestBuilder:
    """Container layout produced by build_archive."""

    def test_missing_passphrase(self) -> None:
        with pytest.raises(MissingPassphraseError):
            build_archive([("a.txt", b"x")], "")

    def test_empty_names_are_skipped(self) -> None:
        archive = build_archive([("", b"ignored"), ("kept.txt", b"x")], "pw")

        assert list_members(archive) == ["kept.txt"]

    def test_salts_differ_between_members(self) -> None:
        archive = build_archive([("a.txt", b"same"), ("b.txt", b"same")], "pw")
        first = parse_local_header(archive, 0)
        salt_a = archive[first.data_start:first.data_start + 16]
        offset_b = archive.index(b"PK\x03\x04", first.data_start)
        second = parse_local_header(archive, offset_b)
        salt_b = archive[second.data_start:second.data_start + 16]

        assert salt_a != salt_b

    def test_local_header_arithmetic(self) -> None:
        archive = build_archive([("backup.json", b"{}")], "pw")
        header = parse_local_header(archive, 0)

        assert header.name_length == len("backup.json")
        assert header.extra_length == 11
        assert header.extra_start == 30 + len("backup.json")
        assert header.data_start == 30 + len("backup.json") + 11

    def test_aes_extra_field_records_real_method(self) -> None:
        archive = build_archive([("a.txt", b"x")], "pw")
        header = parse_local_header(archive, 0)
        extra = archive[header.extra_start:header.extra_start + header.extra_length]

        body = find_extra_field(extra, AES_EXTRA_FIELD_ID)

        assert body is not None
        vendor_version, vendor_id, strength, method = struct.unpack("<H2sBH", body)
        assert (vendor_version, vendor_id, strength, method) == (2, b"AE", 3, zipfile.ZIP_DEFLATED)

    def test_readable_by_standard_zip_directory_parser(self) -> None:
        archive = build_archive([("backup.json", b"{}"), ("README.txt", b"hi")], "pw")

        with zipfile.ZipFile(io.BytesIO(archive)) as parsed:
            infos = parsed.infolist()

        assert [info.filename for info in infos] == ["backup.json", "README.txt"]
        assert all(info.compress_type == 99 for info in infos)
        assert all(info.flag_bits & 0x1 for info in infos)


class TestReader:
    """Failure modes of extract_member."""

    def test_missing_passphrase(self) -> None:
        archive = build_archive([("a.txt", b"x")], "pw")

        with pytest.raises(MissingPassphraseError):
            extract_member(archive, "a.txt", "")

    def test_missing_member(self) -> None:
        archive = build_archive([("a.txt", b"x")], "pw")

        with pytest.raises(ArchiveError, match="does not contain"):
            extract_member(archive, "backup.json", "pw")

    def test_tampered_ciphertext_fails_authentication(self) -> None:
        archive = bytearray(build_archive([("a.txt", b"some secret content" * 4)], "pw"))
        header = parse_local_header(bytes(archive), 0)
        archive[header.data_start + 16 + 2 + 3] ^= 0xFF

        with pytest.raises(BadPassphraseError):
            extract_member(bytes(archive), "a.txt", "pw")

    def test_tampered_tag_fails_authentication(self) -> None:
        archive = bytearray(build_archive([("a.txt", b"content")], "pw"))
        header = parse_local_header(bytes(archive), 0)
        cd_offset = struct.unpack_from("<I", archive, len(archive) - 6)[0]
        archive[cd_offset - 1] ^= 0x01

        assert cd_offset > header.data_start
        with pytest.raises(BadPassphraseError):
            extract_member(bytes(archive), "a.txt", "pw")

    def test_plain_zip_is_unsupported(self) -> None:
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as plain:
            plain.writestr("backup.json", "{}")

        with pytest.raises(UnsupportedFormatError):
            extract_member(buffer.getvalue(), "backup.json", "pw")

    def test_unknown_compression_method(self) -> None:
        archive = bytearray(build_archive([("a.txt", b"x")], "pw", compression=zipfile.ZIP_STORED))
        header = parse_local_header(bytes(archive), 0)
        # real method lives in the last two bytes of the 11 byte AES extra field
        struct.pack_into("<H", archive, header.extra_start + 9, 12)

        with pytest.raises(UnsupportedCompressionError):
            extract_member(bytes(archive), "a.txt", "pw")

    def test_missing_aes_extra_field(self) -> None:
        archive = bytearray(build_archive([("a.txt", b"x")], "pw"))
        header = parse_local_header(bytes(archive), 0)
        struct.pack_into("<H", archive, header.extra_start, 0x1234)

        with pytest.raises(UnsupportedFormatError):
            extract_member(bytes(archive), "a.txt", "pw")

    def test_bad_local_signature(self) -> None:
        archive = bytearray(build_archive([("a.txt", b"x")], "pw"))
        archive[0:4] = b"XXXX"

        with pytest.raises(ArchiveError, match="signature"):
            extract_member(bytes(archive), "a.txt", "pw")

    def test_not_a_zip(self) -> None:
        with pytest.raises(ArchiveError):
            extract_member(b"definitely not a zip archive", "a.txt", "pw")

    def test_undecodable_member_name(self) -> None:
        archive = bytearray(build_archive([("backup.json", b"{}")], "pw"))
        cd_offset = struct.unpack_from("<I", archive, len(archive) - 6)[0]
        archive[cd_offset + 46] = 0xFF

        with pytest.raises(ArchiveError, match="bad file name"):
            list_members(bytes(archive))

    def test_truncated_archive(self) -> None:
        archive = build_archive([("a.txt", b"x" * 100)], "pw")

        with pytest.raises(ArchiveError):
            extract_member(archive[:40], "a.txt", "pw")


class TestPrimitives:
    """Byte-level helpers."""

    def test_counter_is_little_endian_starting_at_one(self) -> None:
        key = bytes(range(32))
        data = bytes(32)
        keystream = aes_ctr_le(key, data)

        first = Cipher(algorithms.AES(key), modes.CTR(b"\x01" + bytes(15))).encryptor().update(bytes(16))
        second = Cipher(algorithms.AES(key), modes.CTR(b"\x02" + bytes(15))).encryptor().update(bytes(16))

        assert keystream[:16] == first
        assert keystream[16:] == second

    def test_ctr_is_its_own_inverse(self) -> None:
        key = bytes(32)
        data = b"attack at dawn, or maybe a bit later"

        assert aes_ctr_le(key, aes_ctr_le(key, data)) == data

    def test_find_extra_field_walks_multiple_fields(self) -> None:
        extra = struct.pack("<HH", 0x0001, 4) + b"\x00" * 4 + struct.pack("<HH", 0x9901, 2) + b"ok"

        assert find_extra_field(extra, 0x9901) == b"ok"
        assert find_extra_field(extra, 0x7777) is None

    def test_find_extra_field_rejects_overlong_size(self) -> None:
        extra = struct.pack("<HH", 0x9901, 40) + b"short"

        assert find_extra_field(extra, 0x9901) is None
