"""MemoryService — one façade over every convmem operation."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from .allocation import AllocationStrategy
from .composition import CompositionEngine, CompositionPreview, ComponentRequest
from .compressor import Compressor, create_compressor
from .config import MemoryConfig, load_config
from .decay import DecayParams, analyze_scenarios
from .delta import DeltaStatus
from .errors import CompressionInProgress, LockBusy, MarkerNotFound
from .locks import InProcessLockManager, LockManager, LockStatus, OperationKind
from .manifest import CompositionRecord, DerivativeRecord, ManifestStore, PinnedMarker, SessionEntry
from .markers import MarkerUpdate, update_marker_weight
from .sessions import BatchReport, SessionRegistry, SyncResult, UnregisteredSession
from .versions import PartSummary, VersionDeletion, VersionManager, VersionSummary

_log = logging.getLogger(__name__)


class MemoryService:
    """Wires storage, locks, the compressor and the engines from one config.

    Pass *locks* or *compressor* to swap in another backend (tests use the
    stub compressor and an injected clock).
    """

    def __init__(
        self,
        config: MemoryConfig | None = None,
        locks: LockManager | None = None,
        compressor: Compressor | None = None,
    ) -> None:
        self.config = config or load_config()
        self.layout = self.config.layout()
        self.layout.ensure_root()
        self.store = ManifestStore(self.layout)
        self.locks = locks or InProcessLockManager(
            stale_after=self.config.compression.lock_stale_after_sec
        )
        compression = self.config.compression
        self.compressor = compressor or create_compressor(
            compression.compressor, compression.compressor_command
        )
        self.decay = DecayParams.from_config(self.config.keepit_decay)
        self.versions = VersionManager(self.store, self.locks, self.compressor, self.config)
        self.compositions = CompositionEngine(self.store, self.locks, self.decay)
        self.sessions = SessionRegistry(self.store, self.locks, self.config)
        _log.debug("MemoryService ready at %s (compressor=%s)", self.layout.home,
                   self.compressor.name())

    # -- projects and sessions -----------------------------------------------

    def list_projects(self) -> list[str]:
        return self.store.list_projects()

    def register_session(
        self, project_id: str, session_id: str, original_file: Path | str | None = None
    ) -> SessionEntry:
        return self.sessions.register_session(project_id, session_id, original_file)

    def register_sessions(self, project_id: str, session_ids: list[str]) -> BatchReport:
        return self.sessions.register_sessions(project_id, session_ids)

    def unregister_session(
        self, project_id: str, session_id: str, delete_files: bool = False
    ) -> SessionEntry:
        return self.sessions.unregister_session(project_id, session_id, delete_files)

    def get_session(self, project_id: str, session_id: str) -> SessionEntry:
        return self.sessions.get_session(project_id, session_id)

    def list_sessions(self, project_id: str) -> list[SessionEntry]:
        return self.sessions.list_sessions(project_id)

    def find_unregistered_sessions(self, project_id: str) -> list[UnregisteredSession]:
        return self.sessions.find_unregistered_sessions(project_id)

    def sync_session(self, project_id: str, session_id: str) -> SyncResult:
        return self.sessions.sync_session(project_id, session_id)

    def sync_all(self, project_id: str) -> BatchReport:
        return self.sessions.sync_all(project_id)

    def project_stats(self, project_id: str) -> dict[str, Any]:
        return self.sessions.project_stats(project_id)

    # -- derivatives ---------------------------------------------------------

    async def create_derivative(
        self, project_id: str, session_id: str, settings: Any = None
    ) -> DerivativeRecord:
        return await self.versions.create_delta_compression(project_id, session_id, settings)

    async def recompress_part(
        self, project_id: str, session_id: str, part_number: int, settings: Any = None
    ) -> DerivativeRecord:
        return await self.versions.recompress_part(project_id, session_id, part_number, settings)

    def list_derivatives(self, project_id: str, session_id: str) -> list[VersionSummary]:
        return self.versions.list_versions(project_id, session_id)

    def get_derivative(self, project_id: str, session_id: str, version_id: str) -> VersionSummary:
        return self.versions.get_version(project_id, session_id, version_id)

    def get_derivative_content(
        self, project_id: str, session_id: str, version_id: str, fmt: str = "md"
    ) -> str:
        return self.versions.get_version_content(project_id, session_id, version_id, fmt)

    def delete_derivative(
        self, project_id: str, session_id: str, version_id: str, force: bool = False
    ) -> VersionDeletion:
        return self.versions.delete_version(project_id, session_id, version_id, force)

    def part_summary(self, project_id: str, session_id: str) -> list[PartSummary]:
        return self.versions.part_summary(project_id, session_id)

    def delta_status(self, project_id: str, session_id: str) -> DeltaStatus:
        return self.versions.status(project_id, session_id)

    # -- compositions --------------------------------------------------------

    def create_composition(
        self,
        project_id: str,
        name: str,
        budget: int,
        strategy: AllocationStrategy | str = AllocationStrategy.EQUAL,
        components: list[ComponentRequest | dict[str, Any]] | None = None,
        formats: list[str] | None = None,
    ) -> CompositionRecord:
        return self.compositions.compose(project_id, name, budget, strategy, components, formats)

    def preview_composition(
        self,
        project_id: str,
        name: str,
        budget: int,
        strategy: AllocationStrategy | str = AllocationStrategy.EQUAL,
        components: list[ComponentRequest | dict[str, Any]] | None = None,
    ) -> CompositionPreview:
        return self.compositions.preview(project_id, name, budget, strategy, components)

    def list_compositions(self, project_id: str) -> list[CompositionRecord]:
        return self.compositions.list_compositions(project_id)

    def get_composition(self, project_id: str, composition_id: str) -> CompositionRecord:
        return self.compositions.get_composition(project_id, composition_id)

    def get_composition_content(
        self, project_id: str, composition_id: str, fmt: str = "md"
    ) -> str:
        return self.compositions.get_content(project_id, composition_id, fmt)

    def delete_composition(self, project_id: str, composition_id: str) -> CompositionRecord:
        return self.compositions.delete_composition(project_id, composition_id)

    # -- pinned content ------------------------------------------------------

    def list_markers(self, project_id: str, session_id: str) -> list[PinnedMarker]:
        return list(self.store.require_session(project_id, session_id).keepit_markers)

    def get_marker(self, project_id: str, session_id: str, marker_id: str) -> PinnedMarker:
        marker = self.store.require_session(project_id, session_id).find_marker(marker_id)
        if marker is None:
            raise MarkerNotFound(marker_id, session_id)
        return marker

    def set_marker_weight(
        self,
        project_id: str,
        session_id: str,
        marker_id: str,
        weight: float,
        backup: bool = True,
    ) -> MarkerUpdate:
        """Write a new weight through to the original log, then the manifest."""
        try:
            with self.locks.hold(project_id, session_id, OperationKind.COMPRESSION, "keepit"):
                return update_marker_weight(
                    self.store, project_id, session_id, marker_id, weight, backup=backup
                )
        except LockBusy as exc:
            raise CompressionInProgress(session_id, "weight update") from exc

    def analyze_markers(
        self, project_id: str, session_id: str, distance: int = 0
    ) -> list[dict[str, Any]]:
        markers = self.store.require_session(project_id, session_id).keepit_markers
        return analyze_scenarios(markers, distance, self.decay)

    # -- locks ---------------------------------------------------------------

    def lock_status(self) -> LockStatus:
        return self.locks.status()

    def cleanup_locks(self, max_age: float | None = None) -> int:
        return self.locks.cleanup_stale(max_age)

    def force_release_lock(self, key: str) -> bool:
        return self.locks.force_release(key)
