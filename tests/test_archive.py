"""Tests for encrypted snapshot archives and retention."""

from __future__ import annotations

import io
import os
import stat
import struct
import tarfile
import time
from pathlib import Path

import pytest

from vaultmirror.archive import (
    ARCHIVE_MAGIC,
    ARCHIVE_PREFIX,
    ARCHIVE_SUFFIX,
    ArchiveCodec,
    compressor,
    decompress,
    decryptor,
    deserialize,
    encryptor,
    serialize,
)
from vaultmirror.exceptions import IntegrityError
from vaultmirror.models import Category, ExportSnapshot

DAY = 86400


@pytest.fixture
def codec(tmp_path: Path) -> ArchiveCodec:
    return ArchiveCodec(tmp_path / "backups", iterations=1000)


@pytest.fixture
def snapshot(source_document) -> ExportSnapshot:
    return ExportSnapshot.model_validate(source_document)


def _age(path: Path, days: float, now: float) -> None:
    when = now - days * DAY
    os.utime(path, (when, when))


class TestStages:
    """Individual pipeline stages."""

    def test_serialize_keeps_unknown_keys(self, source_document) -> None:
        source_document["collections"] = [{"id": "c1"}]
        snap = ExportSnapshot.model_validate(source_document)

        restored = deserialize(serialize(snap))

        assert restored.to_document() == snap.to_document()
        assert restored.to_document()["collections"] == [{"id": "c1"}]

    def test_deserialize_rejects_garbage(self) -> None:
        with pytest.raises(IntegrityError, match="malformed"):
            deserialize(b"{not json")

    def test_compress_single_member(self) -> None:
        blob = compressor("bw_export_x.json")(b'{"items": []}')
        with tarfile.open(fileobj=io.BytesIO(blob), mode="r:gz") as tar:
            assert tar.getnames() == ["bw_export_x.json"]
        assert decompress(blob) == b'{"items": []}'

    def test_decompress_without_json_member(self) -> None:
        blob = compressor("notes.txt")(b"hello")
        with pytest.raises(IntegrityError, match="no JSON"):
            decompress(blob)

    def test_decompress_rejects_non_gzip(self) -> None:
        with pytest.raises(IntegrityError, match="does not decompress"):
            decompress(b"plain bytes")

    def test_encrypt_header(self) -> None:
        blob = encryptor("pw", 1000)(b"data")
        assert blob.startswith(ARCHIVE_MAGIC)
        assert decryptor("pw")(blob) == b"data"

    def test_decrypt_wrong_passphrase(self) -> None:
        blob = encryptor("pw", 1000)(b"data")
        with pytest.raises(IntegrityError, match="wrong passphrase"):
            decryptor("other")(blob)

    def test_decrypt_truncated(self) -> None:
        with pytest.raises(IntegrityError, match="truncated"):
            decryptor("pw")(ARCHIVE_MAGIC)

    def test_decrypt_rejects_huge_iteration_count(self) -> None:
        """A corrupt iteration count fails fast instead of deriving for hours."""
        blob = encryptor("pw", 1000)(b"data")
        forged = ARCHIVE_MAGIC + struct.pack(">I", 2**32 - 1) + blob[8:]

        started = time.monotonic()
        with pytest.raises(IntegrityError, match="not recognized"):
            decryptor("pw")(forged)
        assert time.monotonic() - started < 5

    def test_decrypt_unknown_header(self) -> None:
        blob = encryptor("pw", 1000)(b"data")
        with pytest.raises(IntegrityError, match="not recognized"):
            decryptor("pw")(b"XXXX" + blob[4:])


class TestEncodeDecode:
    """Archive files on disk."""

    def test_encode_writes_named_archive(self, codec: ArchiveCodec, snapshot: ExportSnapshot) -> None:
        """Happy path: one private archive, no plaintext left behind."""
        archive = codec.encode(snapshot, "archive-pass")

        assert archive.path.exists()
        assert archive.path.name.startswith(ARCHIVE_PREFIX)
        assert archive.path.name.endswith(ARCHIVE_SUFFIX)
        assert archive.size == archive.path.stat().st_size > 0
        assert stat.S_IMODE(archive.path.stat().st_mode) == 0o600
        assert sorted(p.name for p in codec.backup_dir.iterdir()) == [archive.path.name]

    def test_archive_does_not_leak_plaintext(self, codec: ArchiveCodec, snapshot: ExportSnapshot) -> None:
        archive = codec.encode(snapshot, "archive-pass")
        assert b'"username"' not in archive.path.read_bytes()

    def test_roundtrip(self, codec: ArchiveCodec, snapshot: ExportSnapshot) -> None:
        archive = codec.encode(snapshot, "archive-pass")
        restored = codec.decode(archive, "archive-pass")

        assert restored == snapshot
        assert restored.ids(Category.ITEM) == ["si1", "si2"]

    @pytest.mark.parametrize(
        "document",
        [
            {},
            {"folders": None, "items": None, "attachments": None},
            {"folders": [{"id": 7, "name": "int id"}], "items": [{"id": 0}]},
            {"encrypted": False, "collections": [{"id": "c1", "organizationId": None}], "items": []},
            {
                "items": [{
                    "id": "u1",
                    "name": "Ключ 🔑",
                    "login": {"uris": [{"uri": "https://例え.jp"}], "fields": [{"name": "ñ", "value": "日本"}]},
                }],
                "attachments": [{"id": "a1", "fileName": "résumé.pdf", "size": "1024"}],
            },
        ],
        ids=["empty", "null-categories", "int-ids", "extra-keys", "nested-unicode"],
    )
    def test_roundtrip_preserves_snapshot(self, codec: ArchiveCodec, document: dict) -> None:
        """Decoding an encoded snapshot yields an equal snapshot."""
        snapshot = ExportSnapshot.model_validate(document)

        restored = codec.decode(codec.encode(snapshot, "archive-pass"), "archive-pass")

        assert restored == snapshot
        assert restored.to_document() == snapshot.to_document()

    def test_decode_by_path(self, codec: ArchiveCodec, snapshot: ExportSnapshot) -> None:
        archive = codec.encode(snapshot, "archive-pass")
        assert codec.decode(archive.path, "archive-pass").totals() == snapshot.totals()

    def test_decode_wrong_passphrase(self, codec: ArchiveCodec, snapshot: ExportSnapshot) -> None:
        archive = codec.encode(snapshot, "archive-pass")
        with pytest.raises(IntegrityError):
            codec.decode(archive, "not-the-pass")

    def test_decode_tampered(self, codec: ArchiveCodec, snapshot: ExportSnapshot) -> None:
        archive = codec.encode(snapshot, "archive-pass")
        data = bytearray(archive.path.read_bytes())
        data[-10] ^= 0xFF
        archive.path.write_bytes(bytes(data))

        with pytest.raises(IntegrityError):
            codec.decode(archive, "archive-pass")

    def test_decode_missing(self, codec: ArchiveCodec) -> None:
        with pytest.raises(IntegrityError, match="Cannot read"):
            codec.decode(codec.backup_dir / "gone.tar.gz.enc", "pw")

    def test_plaintext_removed_when_encryption_fails(
        self, codec: ArchiveCodec, snapshot: ExportSnapshot, monkeypatch
    ) -> None:
        """The plaintext export never outlives a failed encode."""

        def boom(passphrase, iterations):
            def stage(data):
                raise RuntimeError("disk full")
            return stage

        monkeypatch.setattr("vaultmirror.archive.encryptor", boom)
        with pytest.raises(RuntimeError):
            codec.encode(snapshot, "archive-pass")

        assert list(codec.backup_dir.iterdir()) == []

    def test_names_are_unique(self, codec: ArchiveCodec, snapshot: ExportSnapshot) -> None:
        first = codec.encode(snapshot, "pw")
        second = codec.encode(snapshot, "pw")
        assert first.path != second.path


class TestListArchives:
    """Archive discovery, newest first."""

    def test_empty_or_missing_dir(self, codec: ArchiveCodec) -> None:
        assert codec.list_archives() == []

    def test_newest_first(self, codec: ArchiveCodec, snapshot: ExportSnapshot) -> None:
        now = time.time()
        old = codec.encode(snapshot, "pw")
        new = codec.encode(snapshot, "pw")
        _age(old.path, 2, now)
        _age(new.path, 1, now)

        names = [a.path.name for a in codec.list_archives()]

        assert names == [new.path.name, old.path.name]

    def test_skips_empty_and_foreign_files(self, codec: ArchiveCodec, snapshot: ExportSnapshot) -> None:
        real = codec.encode(snapshot, "pw")
        (codec.backup_dir / f"{ARCHIVE_PREFIX}20990101000000{ARCHIVE_SUFFIX}").write_bytes(b"")
        (codec.backup_dir / f"{ARCHIVE_PREFIX}20990102000000{ARCHIVE_SUFFIX}").write_bytes(b"Salted__junk")

        assert [a.path for a in codec.list_archives()] == [real.path]


class TestPrune:
    """Retention of archives and leftover plaintext."""

    def test_prune_by_age(self, codec: ArchiveCodec, snapshot: ExportSnapshot) -> None:
        now = time.time()
        fresh = codec.encode(snapshot, "pw")
        stale = codec.encode(snapshot, "pw")
        _age(fresh.path, 29, now)
        _age(stale.path, 31, now)

        old_plain = codec.backup_dir / f"{ARCHIVE_PREFIX}20200101000000000000.json"
        new_plain = codec.backup_dir / f"{ARCHIVE_PREFIX}20200102000000000000.json"
        old_plain.write_text("{}")
        new_plain.write_text("{}")
        _age(old_plain, 8, now)
        _age(new_plain, 6, now)

        removed = codec.prune(now=now)

        assert set(removed) == {stale.path, old_plain}
        assert fresh.path.exists()
        assert new_plain.exists()
        assert not stale.path.exists()
        assert not old_plain.exists()

    def test_prune_leaves_other_files(self, codec: ArchiveCodec) -> None:
        codec.backup_dir.mkdir(parents=True)
        other = codec.backup_dir / "notes.txt"
        other.write_text("keep")
        _age(other, 365, time.time())

        assert codec.prune() == []
        assert other.exists()

    def test_prune_missing_dir(self, tmp_path: Path) -> None:
        assert ArchiveCodec(tmp_path / "nope").prune() == []
