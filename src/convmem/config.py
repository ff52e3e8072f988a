"""Global configuration — ``<home>/config.json`` merged with environment overrides.

Resolution order (later wins):
    1. Built-in defaults on the pydantic models below.
    2. ``<home>/config.json`` if it exists.
    3. Environment variables:
        - ``CONVMEM_HOME``: data directory (default ``~/.convmem``)
        - ``CONVMEM_LOGS_DIR``: where original conversation logs live
        - ``CONVMEM_COMPRESSOR``: ``claude`` | ``stub``
        - ``CONVMEM_COMPRESSOR_CMD``: compressor executable
        - ``CONVMEM_MODEL``: default model hint
        - ``CONVMEM_TIMEOUT_SEC``: compressor wall-clock timeout
        - ``CONVMEM_LOCK_STALE_SEC``: age after which a lock is reclaimed
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import InvalidSettings, StorageError
from .settings import ModelHint, TierPreset
from .storage import DEFAULT_HOME, StorageLayout, atomic_write_json


class StorageConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    home: Path = DEFAULT_HOME
    logs_dir: Path = Path.home() / ".claude" / "projects"
    use_symlinks: bool = True


class DefaultsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    compression_preset: TierPreset = TierPreset.STANDARD
    model: ModelHint = ModelHint.OPUS
    keepit_decay_enabled: bool = True
    auto_register_sessions: bool = False


class CompressionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    timeout_sec: float = Field(default=300, gt=0)
    min_messages: int = Field(default=2, ge=1)
    max_skip_rate: float = Field(default=0.2, ge=0, le=1)
    lock_stale_after_sec: float = Field(default=300, gt=0)
    compressor: Literal["claude", "stub"] = "claude"
    compressor_command: str = "claude"


class DecayConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    decay_rate: float = Field(default=0.02, ge=0)
    reference_ratio: float = Field(default=10, gt=0)
    ratio_decay_factor: float = Field(default=0.005, ge=0)
    survival_threshold: float = Field(default=0.5, ge=0, le=1)


class MemoryConfig(BaseModel):
    """Complete convmem configuration."""

    model_config = ConfigDict(extra="forbid")

    version: str = "1.0.0"
    storage: StorageConfig = Field(default_factory=StorageConfig)
    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)
    compression: CompressionConfig = Field(default_factory=CompressionConfig)
    keepit_decay: DecayConfig = Field(default_factory=DecayConfig)

    def layout(self) -> StorageLayout:
        return StorageLayout(self.storage.home)

    def get_value(self, path: str) -> Any:
        """Read a dotted path such as ``compression.timeout_sec``."""
        node: Any = self
        for key in path.split("."):
            if not isinstance(node, BaseModel) or key not in type(node).model_fields:
                msg = f"unknown configuration key {path!r}"
                raise InvalidSettings([msg])
            node = getattr(node, key)
        return node

    def with_value(self, path: str, value: Any) -> MemoryConfig:
        """Return a re-validated copy with *path* set to *value*."""
        self.get_value(path)
        data = self.model_dump(mode="json")
        *parents, leaf = path.split(".")
        node = data
        for key in parents:
            node = node[key]
        node[leaf] = value
        return _validate(data)


def _validate(data: dict[str, Any]) -> MemoryConfig:
    try:
        return MemoryConfig.model_validate(data)
    except ValidationError as exc:
        errors = [
            ".".join(str(p) for p in e["loc"]) + f": {e['msg']}" for e in exc.errors()
        ]
        raise InvalidSettings(errors) from exc


_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "CONVMEM_HOME": ("storage", "home"),
    "CONVMEM_LOGS_DIR": ("storage", "logs_dir"),
    "CONVMEM_COMPRESSOR": ("compression", "compressor"),
    "CONVMEM_COMPRESSOR_CMD": ("compression", "compressor_command"),
    "CONVMEM_MODEL": ("defaults", "model"),
    "CONVMEM_TIMEOUT_SEC": ("compression", "timeout_sec"),
    "CONVMEM_LOCK_STALE_SEC": ("compression", "lock_stale_after_sec"),
}


def _env_overrides() -> dict[str, dict[str, str]]:
    overrides: dict[str, dict[str, str]] = {}
    for var, (section, key) in _ENV_OVERRIDES.items():
        value = os.environ.get(var, "").strip()
        if value:
            overrides.setdefault(section, {})[key] = value
    return overrides


def load_config(home: Path | str | None = None, apply_env: bool = True) -> MemoryConfig:
    """Load configuration for *home* (or ``CONVMEM_HOME`` / the default)."""
    env = _env_overrides() if apply_env else {}
    root = Path(home or env.get("storage", {}).get("home") or DEFAULT_HOME).expanduser()
    path = StorageLayout(root).config_path

    data: dict[str, Any] = {}
    if path.is_file():
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageError("read", str(path), str(exc)) from exc

    for section, values in env.items():
        data.setdefault(section, {}).update(values)
    data.setdefault("storage", {})["home"] = str(root)
    return _validate(data)


def save_config(config: MemoryConfig) -> Path:
    """Persist *config* to ``<home>/config.json`` atomically."""
    layout = config.layout()
    layout.ensure_root()
    return atomic_write_json(layout.config_path, config.model_dump(mode="json"))
