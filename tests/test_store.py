"""Tests for the binary codec and the on-disk Store."""

from __future__ import annotations

import os
import struct
import zlib
from pathlib import Path

import pytest

from conftest import fail, ok
from netpulse import codec
from netpulse.codec import CURRENT_VERSION, MAGIC, StoreVersion
from netpulse.errors import (
    StoreAlreadyExistsError,
    StoreDecompressError,
    StoreDeserializeError,
    StoreDoesNotExistError,
    StoreIoError,
    StoreReadonlyError,
    StoreSerializeError,
    UnsupportedVersionError,
)
from netpulse.records import CheckRecord, Combination, FailureCause
from netpulse.store import Store


def write_envelope(path: Path, envelope: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(zlib.compress(envelope))


# ── Codec ────────────────────────────────────────────────────────────────────


class TestCodec:
    def test_header_layout(self) -> None:
        data = codec.encode_bytes(StoreVersion.V1, [])
        assert data == MAGIC + bytes([1]) + struct.pack(">I", 0)

    def test_v1_round_trip(self, sample_records: list[CheckRecord]) -> None:
        data = codec.encode_bytes(StoreVersion.V1, sample_records)
        assert codec.decode(data) == (StoreVersion.V1, sample_records)

    def test_v0_round_trip(self, sample_records: list[CheckRecord]) -> None:
        data = codec.encode_bytes(StoreVersion.V0, sample_records)
        assert codec.decode(data) == (StoreVersion.V0, sample_records)

    @pytest.mark.parametrize("version", list(StoreVersion))
    def test_largest_latency_survives(self, version: StoreVersion) -> None:
        records = [ok(0, Combination.HTTP_V4, latency_ms=codec.MAX_LATENCY)]
        assert codec.decode(codec.encode_bytes(version, records)) == (version, records)

    def test_negative_timestamp_cannot_be_encoded_as_v0(self) -> None:
        with pytest.raises(StoreSerializeError):
            codec.encode_bytes(StoreVersion.V0, [fail(-1, Combination.HTTP_V4)])

    def test_v0_timestamp_too_large_for_v1(self) -> None:
        with pytest.raises(StoreSerializeError):
            codec.migrate_step(StoreVersion.V0, [fail(2 ** 63, Combination.HTTP_V4)])

    def test_unknown_version(self) -> None:
        with pytest.raises(UnsupportedVersionError) as exc:
            codec.decode(MAGIC + bytes([200]) + struct.pack(">I", 0))
        assert exc.value.raw_version == 200

    def test_bad_magic(self) -> None:
        with pytest.raises(StoreDeserializeError):
            codec.decode(b"XXXX" + bytes([1]) + struct.pack(">I", 0))

    def test_truncated_record(self, sample_records: list[CheckRecord]) -> None:
        data = codec.encode_bytes(CURRENT_VERSION, sample_records)
        with pytest.raises(StoreDeserializeError):
            codec.decode(data[:-3])

    def test_trailing_bytes(self) -> None:
        with pytest.raises(StoreDeserializeError):
            codec.decode(codec.encode_bytes(CURRENT_VERSION, []) + b"\x00")

    def test_v0_ambiguous_type_flags(self) -> None:
        flags = codec.FLAG_TYPE_HTTP | codec.FLAG_TYPE_ICMP | codec.FLAG_SUCCESS
        record = struct.pack(">QHHB", 0, flags, 5, 4) + bytes([1, 1, 1, 1])
        with pytest.raises(StoreDeserializeError, match="ambiguous"):
            codec.decode(MAGIC + bytes([0]) + struct.pack(">I", 1) + record)

    def test_v0_missing_type_flag(self) -> None:
        record = struct.pack(">QHHB", 0, codec.FLAG_SUCCESS, 5, 4) + bytes([1, 1, 1, 1])
        with pytest.raises(StoreDeserializeError, match="missing"):
            codec.decode(MAGIC + bytes([0]) + struct.pack(">I", 1) + record)

    def test_v0_failure_without_reason_is_error(self) -> None:
        record = struct.pack(">QHHB", 0, codec.FLAG_TYPE_ICMP, 0xFFFF, 4) + bytes([1, 1, 1, 1])
        _, [check] = codec.decode(MAGIC + bytes([0]) + struct.pack(">I", 1) + record)
        assert check.cause is FailureCause.ERROR
        assert check.combination is Combination.ICMP_V4

    def test_migrate_step_reaches_current(self, sample_records: list[CheckRecord]) -> None:
        version, records = codec.migrate_step(StoreVersion.V0, sample_records)
        assert version is CURRENT_VERSION
        assert records == sample_records


# ── Store lifecycle ──────────────────────────────────────────────────────────


class TestStoreCreateLoad:
    def test_create_writes_empty_current_store(self, store_path: Path) -> None:
        store = Store.create(store_path)
        assert store_path.exists()
        assert len(store) == 0
        assert store.version is CURRENT_VERSION
        assert Store.load(store_path).records == []

    def test_create_refuses_existing_store(self, store_path: Path) -> None:
        Store.create(store_path)
        with pytest.raises(StoreAlreadyExistsError):
            Store.create(store_path)

    def test_create_overwrites_empty_file(self, store_path: Path) -> None:
        store_path.parent.mkdir(parents=True)
        store_path.touch()
        Store.create(store_path)
        assert Store.load(store_path).version is CURRENT_VERSION

    def test_load_missing(self, store_path: Path) -> None:
        with pytest.raises(StoreDoesNotExistError):
            Store.load(store_path)
        # DoesNotExist is an I/O error for callers that only care about that
        with pytest.raises(StoreIoError):
            Store.load(store_path)

    def test_load_garbage_is_decompress_error(self, store_path: Path) -> None:
        store_path.parent.mkdir(parents=True)
        store_path.write_bytes(b"definitely not zlib")
        with pytest.raises(StoreDecompressError):
            Store.load(store_path)

    def test_load_truncated_stream(self, store_path: Path, sample_records: list[CheckRecord]) -> None:
        Store(sample_records, path=store_path).save()
        store_path.write_bytes(store_path.read_bytes()[:-4])
        with pytest.raises(StoreDecompressError):
            Store.load(store_path)

    def test_load_bad_envelope_is_deserialize_error(self, store_path: Path) -> None:
        write_envelope(store_path, b"NOPE")
        with pytest.raises(StoreDeserializeError):
            Store.load(store_path)

    def test_load_or_create_missing(self, store_path: Path) -> None:
        store = Store.load_or_create(store_path)
        assert store_path.exists()
        assert len(store) == 0

    def test_load_or_create_existing(self, store_path: Path, sample_records: list[CheckRecord]) -> None:
        Store(sample_records, path=store_path).save()
        assert Store.load_or_create(store_path).records == sample_records

    def test_load_or_create_propagates_corruption(self, store_path: Path) -> None:
        store_path.parent.mkdir(parents=True)
        store_path.write_bytes(b"junk")
        with pytest.raises(StoreDecompressError):
            Store.load_or_create(store_path)


class TestStoreRoundTrip:
    def test_save_then_load(self, store_path: Path, sample_records: list[CheckRecord]) -> None:
        store = Store(path=store_path)
        store.add_checks(sample_records[:3])
        store.add_check(sample_records[3])
        store.add_checks(sample_records[4:])
        store.save()

        loaded = Store.load(store_path)
        assert list(loaded.records) == sample_records
        assert loaded.display_hash() == store.display_hash()
        assert loaded.file_hash == store.file_hash == store.hash_of_file()

    def test_append_keeps_order_and_duplicates(self, store_path: Path) -> None:
        record = fail(60, Combination.HTTP_V4)
        store = Store(path=store_path)
        store.add_checks([record, ok(0, Combination.ICMP_V4), record])
        assert [r.timestamp for r in store.records] == [60, 0, 60]

    def test_display_hash_tracks_content(self, sample_records: list[CheckRecord]) -> None:
        a = Store(sample_records)
        b = Store(sample_records[:-1])
        assert a.display_hash() != b.display_hash()
        assert len(a.display_hash()) == 32

    def test_save_is_atomic_on_failure(
        self, store_path: Path, sample_records: list[CheckRecord], monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        Store(sample_records, path=store_path).save()
        before = store_path.read_bytes()

        def boom(src: str, dst: object) -> None:
            raise OSError("disk full")

        monkeypatch.setattr(os, "replace", boom)
        store = Store.load(store_path)
        store.add_check(ok(240, Combination.HTTP_V4))
        with pytest.raises(StoreIoError):
            store.save()

        assert store_path.read_bytes() == before
        assert [p.name for p in store_path.parent.iterdir()] == [store_path.name]

    def test_unencodable_check_is_serialize_error(self, store_path: Path) -> None:
        store = Store([fail(-60, Combination.ICMP_V4)], version=StoreVersion.V0, path=store_path)
        with pytest.raises(StoreSerializeError):
            store.save()
        assert list(store_path.parent.iterdir()) == []

    def test_saved_file_mode(self, store_path: Path) -> None:
        Store.create(store_path)
        assert store_path.stat().st_mode & 0o777 == 0o644

    def test_sizes(self, store_path: Path, sample_records: list[CheckRecord]) -> None:
        store = Store(sample_records * 50, path=store_path)
        store.save()
        assert store.size_in_memory() == len(store.canonical_bytes())
        assert store.size_on_disk() == store_path.stat().st_size
        assert 0 < store.compression_ratio() < 1


# ── Versioning ───────────────────────────────────────────────────────────────


class TestStoreVersioning:
    def test_peek_version(self, store_path: Path, sample_records: list[CheckRecord]) -> None:
        Store(sample_records * 100, version=StoreVersion.V0, path=store_path).save()
        assert Store.peek_version(store_path) is StoreVersion.V0

    def test_future_version_fails_closed(self, store_path: Path) -> None:
        write_envelope(store_path, MAGIC + bytes([42]) + struct.pack(">I", 0))
        before = store_path.read_bytes()

        with pytest.raises(UnsupportedVersionError):
            Store.load(store_path)
        with pytest.raises(UnsupportedVersionError):
            Store.peek_version(store_path)
        with pytest.raises(UnsupportedVersionError):
            Store.load_or_create(store_path)

        assert store_path.read_bytes() == before

    def test_old_version_loads_in_compat_mode(
        self, store_path: Path, sample_records: list[CheckRecord],
    ) -> None:
        Store(sample_records, version=StoreVersion.V0, path=store_path).save()
        before = store_path.read_bytes()

        store = Store.load(store_path)
        assert store.version is StoreVersion.V0
        assert store.needs_migration
        assert list(store.records) == sample_records
        # Loading never rewrites
        assert store_path.read_bytes() == before

        # Saving keeps the old encoding
        store.add_check(ok(240, Combination.HTTP_V4))
        store.save()
        assert Store.peek_version(store_path) is StoreVersion.V0

    def test_migrate_then_save(self, store_path: Path, sample_records: list[CheckRecord]) -> None:
        Store(sample_records, version=StoreVersion.V0, path=store_path).save()
        store = Store.load(store_path)

        assert store.migrate() is True
        assert store.version is CURRENT_VERSION
        # Nothing on disk changes until the store is saved
        assert Store.peek_version(store_path) is StoreVersion.V0

        store.save()
        reloaded = Store.load(store_path)
        assert reloaded.version is CURRENT_VERSION
        assert list(reloaded.records) == sample_records

    def test_migrate_current_is_noop(self, sample_records: list[CheckRecord]) -> None:
        assert Store(sample_records).migrate() is False


class TestReadonly:
    def test_readonly_refuses_save(self, store_path: Path) -> None:
        Store.create(store_path)
        store = Store.load(store_path, readonly=True)
        with pytest.raises(StoreReadonlyError):
            store.save()

    def test_readonly_refuses_migrate(self, store_path: Path) -> None:
        Store(version=StoreVersion.V0, path=store_path).save()
        store = Store.load(store_path, readonly=True)
        with pytest.raises(StoreReadonlyError):
            store.migrate()
        assert store.version is StoreVersion.V0
