"""Error taxonomy for netpulse.

Probe failures are converted to data by the executor and never leave a
worker. Store errors propagate to the caller (daemon or reader), which owns
the retry/abort policy. Configuration errors are raised once, while the
runtime configuration is built, before any cycle runs.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from netpulse.records import FailureCause


# ── Probes ───────────────────────────────────────────────────────────────────


class ProbeFailure(Exception):
    """A probe did not reach its target. Always absorbed into a CheckRecord."""

    def __init__(self, cause: FailureCause, message: str = "") -> None:
        super().__init__(message or cause.value)
        self.cause = cause
        self.message = message


# ── Store ────────────────────────────────────────────────────────────────────


class StoreError(Exception):
    """Base class for everything the Store can report."""


class StoreIoError(StoreError):
    """Reading or writing the store file failed at the OS level."""


class StoreDoesNotExistError(StoreIoError):
    """There is no store file at the requested path."""


class StoreDecompressError(StoreError):
    """The store file is not a valid (or complete) compressed stream."""


class StoreDeserializeError(StoreError):
    """The decompressed bytes are not a well-formed store envelope."""


class StoreSerializeError(StoreError):
    """The checks cannot be represented in the store's format version."""


class UnsupportedVersionError(StoreError):
    """The store carries a version tag this build does not know."""

    def __init__(self, raw_version: int) -> None:
        super().__init__(f"Unsupported store version: {raw_version}")
        self.raw_version = raw_version


class StoreAlreadyExistsError(StoreError):
    """A non-empty store already exists where a new one should be created."""


class StoreReadonlyError(StoreError):
    """The store was loaded readonly and cannot be written or migrated."""


# ── Configuration ────────────────────────────────────────────────────────────


class ConfigError(ValueError):
    """The enabled probe configuration is contradictory or incomplete."""


class AmbiguousCombinationError(ConfigError):
    """A check entry names more than one kind or more than one stack."""


class MissingCombinationError(ConfigError):
    """A check entry lacks a kind or a stack, or nothing is enabled at all."""


class UnknownCombinationError(ConfigError):
    """A check entry contains a token that is neither a kind nor a stack."""


# ── Analysis / daemon ────────────────────────────────────────────────────────


class AnalysisError(Exception):
    """Reserved. The outage analyzer is total over well-formed input."""


class DaemonAlreadyRunningError(RuntimeError):
    """Another live daemon instance would write to the same store."""

    def __init__(self, pid: int, name: str) -> None:
        super().__init__(f"{name} is already running with pid {pid}")
        self.pid = pid
        self.name = name
