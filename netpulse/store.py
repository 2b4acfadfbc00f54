"""Store — the persisted, append-only history of check records.

The whole store lives in one file: a zlib stream of the binary envelope
described in ``netpulse.codec``. Every save replaces the file atomically
(temporary file in the same directory, fsync, rename), so a crash mid-write
leaves the previous good file in place.

Versioning: a store written by an older format loads in compatibility mode
and keeps being saved in that format until ``migrate()`` is called. A store
tagged with a version this build does not know fails to load and is never
touched.

Two independent fingerprints are exposed for diagnostics only:
``display_hash()`` covers the decoded structure, ``file_hash`` /
``hash_of_file()`` cover the compressed bytes on disk.
"""

from __future__ import annotations

import hashlib
import logging
import os
import tempfile
import zlib
from collections.abc import Iterable, Sequence
from pathlib import Path

from netpulse import codec
from netpulse.codec import CURRENT_VERSION, StoreVersion
from netpulse.errors import (
    StoreAlreadyExistsError,
    StoreDecompressError,
    StoreDeserializeError,
    StoreDoesNotExistError,
    StoreIoError,
    StoreReadonlyError,
)
from netpulse.records import CheckRecord

logger = logging.getLogger(__name__)

ZLIB_LEVEL = 6
FILE_MODE = 0o644
_READ_CHUNK = 64 * 1024
_PEEK_CHUNK = 64


class Store:
    """Ordered check history plus format version and integrity metadata."""

    def __init__(
        self,
        records: Iterable[CheckRecord] | None = None,
        version: StoreVersion = CURRENT_VERSION,
        path: Path | str | None = None,
        readonly: bool = False,
    ) -> None:
        self._records: list[CheckRecord] = list(records or [])
        self._version = version
        self.path = Path(path) if path is not None else None
        self.readonly = readonly
        # SHA-256 of the compressed bytes last read or written
        self.file_hash: str | None = None

    def __len__(self) -> int:
        return len(self._records)

    def __repr__(self) -> str:
        return (
            f"Store(path={self.path}, version={self._version.name}, "
            f"checks={len(self._records)}, readonly={self.readonly})"
        )

    # ── Construction ─────────────────────────────────────────────────────

    @classmethod
    def create(cls, path: Path | str) -> Store:
        """Write a new, empty store at ``path``.

        An existing empty file is overwritten; a non-empty one is refused.
        """
        path = Path(path)
        try:
            if path.exists() and path.stat().st_size > 0:
                raise StoreAlreadyExistsError(f"A store already exists at {path}")
        except OSError as err:
            raise StoreIoError(f"Could not inspect {path}: {err}") from err

        store = cls(path=path)
        store.save()
        logger.info("Created new store at %s (version %d)", path, store.version)
        return store

    @classmethod
    def load(cls, path: Path | str, readonly: bool = False) -> Store:
        """Read and decode the store at ``path``. Never writes."""
        path = Path(path)
        data, file_hash = _read_decompressed(path)
        version, records = codec.decode(data)

        store = cls(records=records, version=version, path=path, readonly=readonly)
        store.file_hash = file_hash
        if store.needs_migration:
            logger.warning(
                "Store %s has version %d, current is %d; running in compatibility "
                "mode until it is migrated",
                path, version, CURRENT_VERSION,
            )
        logger.debug("Loaded %d checks from %s", len(records), path)
        return store

    @classmethod
    def load_or_create(cls, path: Path | str) -> Store:
        """Load the store, creating it when the file is missing or empty."""
        path = Path(path)
        try:
            return cls.load(path)
        except StoreDoesNotExistError:
            logger.info("No store at %s, creating one", path)
            return cls.create(path)
        except StoreDecompressError:
            if path.exists() and path.stat().st_size == 0:
                logger.info("Store file %s is empty, initializing it", path)
                return cls.create(path)
            raise

    @staticmethod
    def peek_version(path: Path | str) -> StoreVersion:
        """Report the stored version by decompressing only the header prefix."""
        path = Path(path)
        decompressor = zlib.decompressobj()
        prefix = b""
        try:
            with path.open("rb") as fh:
                while len(prefix) < codec.VERSION_PREFIX_SIZE:
                    chunk = fh.read(_PEEK_CHUNK)
                    if not chunk and not decompressor.unconsumed_tail:
                        break
                    prefix += decompressor.decompress(
                        decompressor.unconsumed_tail + chunk,
                        codec.VERSION_PREFIX_SIZE - len(prefix),
                    )
                    if decompressor.eof:
                        break
        except FileNotFoundError as err:
            raise StoreDoesNotExistError(f"No store at {path}") from err
        except OSError as err:
            raise StoreIoError(f"Could not read {path}: {err}") from err
        except zlib.error as err:
            raise StoreDecompressError(f"Store {path} is not a valid zlib stream: {err}") from err
        return codec.read_version(prefix)

    # ── Records ──────────────────────────────────────────────────────────

    @property
    def records(self) -> Sequence[CheckRecord]:
        """All checks in insertion order. Treat as read-only."""
        return self._records

    def add_check(self, record: CheckRecord) -> None:
        self._records.append(record)

    def add_checks(self, batch: Iterable[CheckRecord]) -> None:
        self._records.extend(batch)

    # ── Versioning ───────────────────────────────────────────────────────

    @property
    def version(self) -> StoreVersion:
        return self._version

    @property
    def needs_migration(self) -> bool:
        return self._version < CURRENT_VERSION

    def migrate(self) -> bool:
        """Upgrade the in-memory store to the current version.

        Returns True when the version changed. The file on disk changes only
        with the next ``save()``.
        """
        if self.readonly:
            raise StoreReadonlyError("Cannot migrate a readonly store")
        if not self.needs_migration:
            return False
        version, records = self._version, self._records
        while version < CURRENT_VERSION:
            version, records = codec.migrate_step(version, records)
        self._version, self._records = version, records
        return True

    # ── Persistence ──────────────────────────────────────────────────────

    def save(self, path: Path | str | None = None) -> None:
        """Compress and atomically write the full store."""
        if self.readonly:
            raise StoreReadonlyError("Tried to save a readonly store")
        target = Path(path) if path is not None else self.path
        if target is None:
            raise StoreIoError("The store has no path to save to")

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=str(target.parent), prefix=f".{target.name}.", suffix=".tmp",
            )
        except OSError as err:
            raise StoreIoError(f"Could not prepare {target} for writing: {err}") from err

        digest = hashlib.sha256()
        compressor = zlib.compressobj(ZLIB_LEVEL)
        try:
            with os.fdopen(fd, "wb") as fh:
                for chunk in codec.encode(self._version, self._records):
                    compressed = compressor.compress(chunk)
                    if compressed:
                        fh.write(compressed)
                        digest.update(compressed)
                compressed = compressor.flush()
                fh.write(compressed)
                digest.update(compressed)
                fh.flush()
                os.fsync(fh.fileno())
            os.chmod(tmp_name, FILE_MODE)
            os.replace(tmp_name, target)
        except OSError as err:
            raise StoreIoError(f"Could not write store to {target}: {err}") from err
        finally:
            if os.path.exists(tmp_name):
                try:
                    os.remove(tmp_name)
                except FileNotFoundError:
                    pass

        self.path = target
        self.file_hash = digest.hexdigest()
        logger.debug("Saved %d checks to %s", len(self._records), target)

    # ── Metadata ─────────────────────────────────────────────────────────

    def canonical_bytes(self) -> bytes:
        """The uncompressed envelope for the current contents."""
        return codec.encode_bytes(self._version, self._records)

    def display_hash(self) -> str:
        """BLAKE2b fingerprint of the decoded structure (not of the file)."""
        digest = hashlib.blake2b(digest_size=16)
        for chunk in codec.encode(self._version, self._records):
            digest.update(chunk)
        return digest.hexdigest()

    def hash_of_file(self, path: Path | str | None = None) -> str:
        """SHA-256 of the store file as it is on disk right now."""
        target = self._require_path(path)
        digest = hashlib.sha256()
        try:
            with target.open("rb") as fh:
                for chunk in iter(lambda: fh.read(_READ_CHUNK), b""):
                    digest.update(chunk)
        except FileNotFoundError as err:
            raise StoreDoesNotExistError(f"No store at {target}") from err
        except OSError as err:
            raise StoreIoError(f"Could not read {target}: {err}") from err
        return digest.hexdigest()

    def size_in_memory(self) -> int:
        """Size of the decoded structure in bytes (uncompressed envelope)."""
        return sum(len(chunk) for chunk in codec.encode(self._version, self._records))

    def size_on_disk(self, path: Path | str | None = None) -> int:
        target = self._require_path(path)
        try:
            return target.stat().st_size
        except FileNotFoundError as err:
            raise StoreDoesNotExistError(f"No store at {target}") from err
        except OSError as err:
            raise StoreIoError(f"Could not stat {target}: {err}") from err

    def compression_ratio(self, path: Path | str | None = None) -> float:
        """On-disk size divided by in-memory size."""
        return self.size_on_disk(path) / self.size_in_memory()

    def _require_path(self, path: Path | str | None) -> Path:
        target = Path(path) if path is not None else self.path
        if target is None:
            raise StoreIoError("The store has no path")
        return target


# ── Helpers ──────────────────────────────────────────────────────────────────


def _read_decompressed(path: Path) -> tuple[bytes, str]:
    """Stream-decompress ``path``; return the envelope and the file's SHA-256."""
    decompressor = zlib.decompressobj()
    digest = hashlib.sha256()
    out = bytearray()
    try:
        with path.open("rb") as fh:
            for chunk in iter(lambda: fh.read(_READ_CHUNK), b""):
                digest.update(chunk)
                out += decompressor.decompress(chunk)
        out += decompressor.flush()
    except FileNotFoundError as err:
        raise StoreDoesNotExistError(f"No store at {path}") from err
    except OSError as err:
        raise StoreIoError(f"Could not read {path}: {err}") from err
    except zlib.error as err:
        raise StoreDecompressError(f"Store {path} is not a valid zlib stream: {err}") from err

    if not decompressor.eof:
        raise StoreDecompressError(f"Store {path} is truncated or empty")
    if decompressor.unused_data:
        raise StoreDeserializeError(
            f"Store {path} has {len(decompressor.unused_data)} bytes after the compressed stream"
        )
    return bytes(out), digest.hexdigest()
