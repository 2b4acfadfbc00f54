"""Binary envelope codec for the store file.

The (uncompressed) envelope is::

    MAGIC "NPLS" | version u8 | record count u32 | records...

All integers are big-endian. Each ``StoreVersion`` owns one record layout;
tags inside a layout are never reused for a different meaning, and a new
layout is added as a new version rather than by changing an old one.

V0 is the legacy flag layout (u64 timestamp + a bitset carrying kind and
outcome). V1 is the current layout (i64 timestamp + one tag per
combination and one per outcome).
"""

from __future__ import annotations

import ipaddress
import logging
import struct
from collections.abc import Callable, Iterable, Iterator
from enum import IntEnum

from netpulse.errors import StoreDeserializeError, StoreSerializeError, UnsupportedVersionError
from netpulse.records import (
    MAX_LATENCY_MS,
    CheckKind,
    CheckRecord,
    Combination,
    FailureCause,
    IpStack,
)

logger = logging.getLogger(__name__)

MAGIC = b"NPLS"
HEADER = struct.Struct(">4sBI")
# Bytes needed to identify a store and its version
VERSION_PREFIX_SIZE = 5

NO_LATENCY = 0xFFFF
MAX_LATENCY = MAX_LATENCY_MS
_CHUNK_SIZE = 64 * 1024
_ADDRESS_SIZE = {IpStack.V4: 4, IpStack.V6: 16}


class StoreVersion(IntEnum):
    """Closed set of known store formats, ordered oldest first."""

    V0 = 0
    V1 = 1


CURRENT_VERSION = StoreVersion.V1


def parse_version(raw: int) -> StoreVersion:
    """Map a raw version tag to a known version, failing closed."""
    try:
        return StoreVersion(raw)
    except ValueError:
        raise UnsupportedVersionError(raw) from None


# ── V0: legacy flag layout ───────────────────────────────────────────────────

_V0_RECORD = struct.Struct(">QHHB")

FLAG_SUCCESS = 0x0001
FLAG_TIMEOUT = 0x0002
FLAG_UNREACHABLE = 0x0004
FLAG_TYPE_HTTP = 0x1000
FLAG_TYPE_ICMP = 0x4000
FLAG_TYPE_DNS = 0x8000


def _encode_v0(record: CheckRecord) -> bytes:
    flags = FLAG_TYPE_HTTP if record.kind is CheckKind.HTTP else FLAG_TYPE_ICMP
    if record.is_success:
        flags |= FLAG_SUCCESS
    elif record.cause is FailureCause.TIMEOUT:
        flags |= FLAG_TIMEOUT
    elif record.cause is FailureCause.UNREACHABLE:
        flags |= FLAG_UNREACHABLE
    family = 4 if record.stack is IpStack.V4 else 6
    return _V0_RECORD.pack(
        record.timestamp, flags, _latency_field(record), family,
    ) + ipaddress.ip_address(record.target).packed


def _decode_v0(view: memoryview, offset: int) -> tuple[CheckRecord, int]:
    timestamp, flags, latency, family = _unpack(_V0_RECORD, view, offset)
    offset += _V0_RECORD.size

    if family not in (4, 6):
        raise StoreDeserializeError(f"Bad address family {family} at offset {offset}")
    stack = IpStack.V4 if family == 4 else IpStack.V6
    target, offset = _read_address(view, offset, stack)

    if flags & FLAG_TYPE_DNS:
        raise StoreDeserializeError(f"DNS checks are not supported (flags {flags:#06x})")
    is_http = bool(flags & FLAG_TYPE_HTTP)
    is_icmp = bool(flags & FLAG_TYPE_ICMP)
    if is_http and is_icmp:
        raise StoreDeserializeError(f"Check has ambiguous type flags: {flags:#06x}")
    if not (is_http or is_icmp):
        raise StoreDeserializeError(f"Check is missing a type flag: {flags:#06x}")
    kind = CheckKind.HTTP if is_http else CheckKind.ICMP

    if flags & FLAG_SUCCESS:
        # V0 allowed a success without latency
        latency_ms, cause = (0 if latency == NO_LATENCY else latency), None
    else:
        latency_ms = None
        if flags & FLAG_TIMEOUT and flags & FLAG_UNREACHABLE:
            raise StoreDeserializeError(f"Check has ambiguous failure flags: {flags:#06x}")
        if flags & FLAG_TIMEOUT:
            cause = FailureCause.TIMEOUT
        elif flags & FLAG_UNREACHABLE:
            cause = FailureCause.UNREACHABLE
        else:
            cause = FailureCause.ERROR

    return _build(timestamp, kind, stack, target, latency_ms, cause), offset


# ── V1: tagged layout ────────────────────────────────────────────────────────

_V1_RECORD = struct.Struct(">qBBH")

_COMBINATION_TAGS: dict[Combination, int] = {
    Combination.HTTP_V4: 1,
    Combination.HTTP_V6: 2,
    Combination.ICMP_V4: 3,
    Combination.ICMP_V6: 4,
}
_TAG_COMBINATIONS = {tag: c for c, tag in _COMBINATION_TAGS.items()}

_OUTCOME_TAGS: dict[FailureCause | None, int] = {
    None: 0,
    FailureCause.TIMEOUT: 1,
    FailureCause.UNREACHABLE: 2,
    FailureCause.ERROR: 3,
}
_TAG_OUTCOMES = {tag: cause for cause, tag in _OUTCOME_TAGS.items()}


def _encode_v1(record: CheckRecord) -> bytes:
    return _V1_RECORD.pack(
        record.timestamp,
        _COMBINATION_TAGS[record.combination],
        _OUTCOME_TAGS[record.cause],
        _latency_field(record),
    ) + ipaddress.ip_address(record.target).packed


def _decode_v1(view: memoryview, offset: int) -> tuple[CheckRecord, int]:
    timestamp, combination_tag, outcome_tag, latency = _unpack(_V1_RECORD, view, offset)
    offset += _V1_RECORD.size

    combination = _TAG_COMBINATIONS.get(combination_tag)
    if combination is None:
        raise StoreDeserializeError(f"Unknown combination tag {combination_tag}")
    if outcome_tag not in _TAG_OUTCOMES:
        raise StoreDeserializeError(f"Unknown outcome tag {outcome_tag}")
    cause = _TAG_OUTCOMES[outcome_tag]
    target, offset = _read_address(view, offset, combination.stack)

    if cause is None:
        if latency == NO_LATENCY:
            raise StoreDeserializeError("Successful check without latency")
        latency_ms = latency
    else:
        latency_ms = None
    return _build(timestamp, combination.kind, combination.stack, target, latency_ms, cause), offset


# ── Version tables ───────────────────────────────────────────────────────────

RecordEncoder = Callable[[CheckRecord], bytes]
RecordDecoder = Callable[[memoryview, int], tuple[CheckRecord, int]]

RECORD_ENCODERS: dict[StoreVersion, RecordEncoder] = {
    StoreVersion.V0: _encode_v0,
    StoreVersion.V1: _encode_v1,
}

RECORD_DECODERS: dict[StoreVersion, RecordDecoder] = {
    StoreVersion.V0: _decode_v0,
    StoreVersion.V1: _decode_v1,
}


def _migrate_v0(records: list[CheckRecord]) -> list[CheckRecord]:
    # V0 timestamps were unsigned; V1 stores them signed
    for record in records:
        if record.timestamp >= 2 ** 63:
            raise StoreSerializeError(
                f"Timestamp {record.timestamp} does not fit the V1 layout"
            )
    return records


# Each entry upgrades records from its key version to the next one
MIGRATIONS: dict[StoreVersion, Callable[[list[CheckRecord]], list[CheckRecord]]] = {
    StoreVersion.V0: _migrate_v0,
}


def migrate_step(
    version: StoreVersion, records: list[CheckRecord],
) -> tuple[StoreVersion, list[CheckRecord]]:
    """Upgrade ``records`` by exactly one version."""
    if version is CURRENT_VERSION:
        return version, records
    next_version = StoreVersion(version + 1)
    logger.info("Migrating %d checks from store version %d to %d",
                len(records), version, next_version)
    return next_version, MIGRATIONS[version](records)


# ── Envelope ─────────────────────────────────────────────────────────────────


def encode(version: StoreVersion, records: Iterable[CheckRecord]) -> Iterator[bytes]:
    """Yield the envelope in chunks, ready for a streaming compressor."""
    if not isinstance(records, (list, tuple)):
        records = list(records)
    if len(records) > 0xFFFFFFFF:
        raise StoreSerializeError(f"Too many checks for one store: {len(records)}")
    encode_record = RECORD_ENCODERS[version]

    yield HEADER.pack(MAGIC, int(version), len(records))
    buf = bytearray()
    for record in records:
        try:
            buf += encode_record(record)
        except struct.error as err:
            raise StoreSerializeError(f"Cannot encode check {record}: {err}") from err
        if len(buf) >= _CHUNK_SIZE:
            yield bytes(buf)
            buf.clear()
    if buf:
        yield bytes(buf)


def encode_bytes(version: StoreVersion, records: Iterable[CheckRecord]) -> bytes:
    return b"".join(encode(version, records))


def read_version(prefix: bytes) -> StoreVersion:
    """Identify the version from the first VERSION_PREFIX_SIZE envelope bytes."""
    if len(prefix) < VERSION_PREFIX_SIZE:
        raise StoreDeserializeError(
            f"Store is too short to hold a header ({len(prefix)} bytes)"
        )
    if prefix[:4] != MAGIC:
        raise StoreDeserializeError(f"Not a netpulse store (magic {bytes(prefix[:4])!r})")
    return parse_version(prefix[4])


def decode(data: bytes) -> tuple[StoreVersion, list[CheckRecord]]:
    """Decode a full envelope. Unknown versions raise UnsupportedVersionError."""
    version = read_version(data[:VERSION_PREFIX_SIZE])
    if len(data) < HEADER.size:
        raise StoreDeserializeError("Store header is truncated")
    _, _, count = HEADER.unpack_from(data, 0)

    decode_record = RECORD_DECODERS[version]
    view = memoryview(data)
    offset = HEADER.size
    records: list[CheckRecord] = []
    for _ in range(count):
        record, offset = decode_record(view, offset)
        records.append(record)

    if offset != len(data):
        raise StoreDeserializeError(
            f"{len(data) - offset} trailing bytes after {count} checks"
        )
    return version, records


# ── Helpers ──────────────────────────────────────────────────────────────────


def _latency_field(record: CheckRecord) -> int:
    if record.latency_ms is None:
        return NO_LATENCY
    return record.latency_ms


def _unpack(layout: struct.Struct, view: memoryview, offset: int) -> tuple:
    try:
        return layout.unpack_from(view, offset)
    except struct.error as err:
        raise StoreDeserializeError(f"Truncated check at offset {offset}") from err


def _read_address(view: memoryview, offset: int, stack: IpStack) -> tuple[str, int]:
    size = _ADDRESS_SIZE[stack]
    raw = bytes(view[offset:offset + size])
    if len(raw) != size:
        raise StoreDeserializeError(f"Truncated address at offset {offset}")
    return str(ipaddress.ip_address(raw)), offset + size


def _build(
    timestamp: int,
    kind: CheckKind,
    stack: IpStack,
    target: str,
    latency_ms: int | None,
    cause: FailureCause | None,
) -> CheckRecord:
    try:
        return CheckRecord(
            timestamp=timestamp, kind=kind, stack=stack, target=target,
            latency_ms=latency_ms, cause=cause,
        )
    except ValueError as err:
        raise StoreDeserializeError(f"Invalid check: {err}") from err
