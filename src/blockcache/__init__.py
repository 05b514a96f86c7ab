from blockcache.codec import BatchFileReader, read_batch_file, write_batch_file
from blockcache.config import CacheMode, CacheSettings, ConfigurationError, load_settings
from blockcache.hashing import canonical_json, fingerprint, namespace_path
from blockcache.manifest import (
    LockCancelledError,
    LockError,
    LockOptions,
    LockTimeoutError,
    Manifest,
    ManifestEntry,
    ReplayFile,
    acquire_lock,
    manifest_lock,
    release_lock,
    with_manifest,
)
from blockcache.models import Batch, BatchValidationError, BlockHeader, Log, Transaction, normalize_batch
from blockcache.recorder import Recorder
from blockcache.replay import (
    BatchRunner,
    ReplaySummary,
    ReplayTarget,
    RunnerContractError,
    replay_target,
    run_replay,
)
from blockcache.retention import PruneFilters, PruneReport, prune_by_age, prune_by_size

__all__ = [
    "Batch",
    "BatchFileReader",
    "BatchRunner",
    "BatchValidationError",
    "BlockHeader",
    "CacheMode",
    "CacheSettings",
    "ConfigurationError",
    "LockCancelledError",
    "LockError",
    "LockOptions",
    "LockTimeoutError",
    "Log",
    "Manifest",
    "ManifestEntry",
    "PruneFilters",
    "PruneReport",
    "Recorder",
    "ReplayFile",
    "ReplaySummary",
    "ReplayTarget",
    "RunnerContractError",
    "Transaction",
    "acquire_lock",
    "canonical_json",
    "fingerprint",
    "load_settings",
    "manifest_lock",
    "namespace_path",
    "normalize_batch",
    "prune_by_age",
    "prune_by_size",
    "read_batch_file",
    "release_lock",
    "replay_target",
    "run_replay",
    "with_manifest",
]
