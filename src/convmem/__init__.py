"""convmem — versioned compression and composition of conversation logs."""

from __future__ import annotations

__version__ = "0.1.0"

from .allocation import Allocation, AllocationInput, AllocationStrategy, allocate
from .composition import CompositionEngine, CompositionPreview, ComponentRequest, sanitize_name
from .compressor import (
    ClaudeCliCompressor,
    CompressionOutput,
    CompressionRequest,
    Compressor,
    CompressorError,
    StubCompressor,
    create_compressor,
)
from .config import MemoryConfig, load_config, save_config
from .decay import DecayParams, DecayScenario, effective_weight, explain, preview_survival
from .delta import DeltaResult, compute_delta
from .errors import (
    CompressionFailed,
    CompressionInProgress,
    CompressionTimeout,
    ConflictError,
    ConvMemError,
    DependencyError,
    ErrorKind,
    InvalidInputError,
    InvalidSettings,
    NoDelta,
    NotFoundError,
    VersionExists,
    VersionInUse,
)
from .locks import InProcessLockManager, LockManager, LockToken, OperationKind
from .log_reader import LogMessage, ParsedLog, ParseReport, read_log
from .manifest import (
    CompositionRecord,
    DerivativeRecord,
    Manifest,
    ManifestStore,
    MessageRange,
    SessionEntry,
)
from .service import MemoryService
from .sessions import BatchReport, SessionRegistry
from .settings import TieredSettings, UniformSettings, parse_settings
from .storage import StorageLayout
from .telemetry import MemoryTracer, TelemetryConfig
from .versions import TxPhase, VersionManager, VersionSummary

__all__ = [
    "Allocation",
    "AllocationInput",
    "AllocationStrategy",
    "BatchReport",
    "ClaudeCliCompressor",
    "ComponentRequest",
    "CompositionEngine",
    "CompositionPreview",
    "CompositionRecord",
    "CompressionFailed",
    "CompressionInProgress",
    "CompressionOutput",
    "CompressionRequest",
    "CompressionTimeout",
    "Compressor",
    "CompressorError",
    "ConflictError",
    "ConvMemError",
    "DecayParams",
    "DecayScenario",
    "DeltaResult",
    "DependencyError",
    "DerivativeRecord",
    "ErrorKind",
    "InProcessLockManager",
    "InvalidInputError",
    "InvalidSettings",
    "LockManager",
    "LockToken",
    "LogMessage",
    "Manifest",
    "ManifestStore",
    "MemoryConfig",
    "MemoryService",
    "MemoryTracer",
    "MessageRange",
    "NoDelta",
    "NotFoundError",
    "OperationKind",
    "ParseReport",
    "ParsedLog",
    "SessionEntry",
    "SessionRegistry",
    "StorageLayout",
    "StubCompressor",
    "TelemetryConfig",
    "TieredSettings",
    "TxPhase",
    "UniformSettings",
    "VersionExists",
    "VersionInUse",
    "VersionManager",
    "VersionSummary",
    "allocate",
    "compute_delta",
    "create_compressor",
    "effective_weight",
    "explain",
    "load_config",
    "parse_settings",
    "preview_survival",
    "read_log",
    "sanitize_name",
    "save_config",
]
