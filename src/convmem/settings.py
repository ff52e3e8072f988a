"""Compression settings — a tagged union validated at the boundary.

Raw request payloads (snake_case or camelCase keys) are turned into either
:class:`UniformSettings` or :class:`TieredSettings` by :func:`parse_settings`
before any stateful operation runs.  Both are frozen pydantic models.
"""

from __future__ import annotations

import json
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .errors import InvalidSettings


class CompressionMode(StrEnum):
    UNIFORM = "uniform"
    TIERED = "tiered"


class Aggressiveness(StrEnum):
    MINIMAL = "minimal"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"


class TierPreset(StrEnum):
    GENTLE = "gentle"
    STANDARD = "standard"
    AGGRESSIVE = "aggressive"


class ModelHint(StrEnum):
    OPUS = "opus"
    SONNET = "sonnet"
    HAIKU = "haiku"


class KeepitMode(StrEnum):
    """How pinned-content markers are treated during compression."""

    DECAY = "decay"
    PRESERVE_ALL = "preserve-all"
    IGNORE = "ignore"


class CompressionLevel(StrEnum):
    """Ordinal aggressiveness tag stored on every derivative record."""

    LIGHT = "light"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"
    CUSTOM = "custom"


LEVEL_ORDER: dict[CompressionLevel, int] = {
    CompressionLevel.LIGHT: 1,
    CompressionLevel.MODERATE: 2,
    CompressionLevel.AGGRESSIVE: 3,
    CompressionLevel.CUSTOM: 4,
}

MIN_RATIO = 2
MAX_RATIO = 50

_MODEL_CONFIG = ConfigDict(
    extra="forbid",
    frozen=True,
    alias_generator=to_camel,
    populate_by_name=True,
)


class Tier(BaseModel):
    """One slice of a tiered compression, covering up to ``end_percent`` of the delta."""

    model_config = _MODEL_CONFIG

    end_percent: int = Field(ge=1, le=100)
    compaction_ratio: float = Field(ge=MIN_RATIO, le=MAX_RATIO)
    aggressiveness: Aggressiveness = Aggressiveness.MODERATE


def _tiers(*rows: tuple[int, float, str]) -> tuple[Tier, ...]:
    return tuple(
        Tier(end_percent=end, compaction_ratio=ratio, aggressiveness=Aggressiveness(agg))
        for end, ratio, agg in rows
    )


TIER_PRESETS: dict[TierPreset, tuple[Tier, ...]] = {
    TierPreset.GENTLE: _tiers(
        (25, 10, "moderate"),
        (50, 7, "moderate"),
        (75, 5, "minimal"),
        (90, 4, "minimal"),
        (100, 2, "minimal"),
    ),
    TierPreset.STANDARD: _tiers(
        (25, 25, "aggressive"),
        (50, 15, "aggressive"),
        (75, 10, "moderate"),
        (90, 5, "moderate"),
        (100, 3, "minimal"),
    ),
    TierPreset.AGGRESSIVE: _tiers(
        (25, 50, "aggressive"),
        (50, 35, "aggressive"),
        (75, 20, "aggressive"),
        (90, 10, "moderate"),
        (100, 5, "minimal"),
    ),
}


# ---------------------------------------------------------------------------
# Settings variants
# ---------------------------------------------------------------------------


class _SettingsBase(BaseModel):
    model_config = _MODEL_CONFIG

    model: ModelHint = ModelHint.OPUS
    skip_first_messages: int = Field(default=0, ge=0)
    keepit_mode: KeepitMode = KeepitMode.DECAY
    session_distance: int = Field(default=0, ge=0)


class UniformSettings(_SettingsBase):
    """A single compaction ratio applied to the whole delta."""

    mode: Literal["uniform"] = "uniform"
    compaction_ratio: float = Field(default=10, ge=MIN_RATIO, le=MAX_RATIO)
    aggressiveness: Aggressiveness = Aggressiveness.MODERATE


class TieredSettings(_SettingsBase):
    """Variable compaction: older slices of the delta are compressed harder."""

    mode: Literal["tiered"] = "tiered"
    tier_preset: TierPreset = TierPreset.STANDARD
    custom_tiers: tuple[Tier, ...] | None = None

    @field_validator("custom_tiers")
    @classmethod
    def _check_custom_tiers(cls, tiers: tuple[Tier, ...] | None) -> tuple[Tier, ...] | None:
        if tiers is None:
            return None
        if not tiers:
            msg = "custom tiers must not be empty"
            raise ValueError(msg)
        previous = 0
        for tier in tiers:
            if tier.end_percent <= previous:
                msg = "custom tier end percents must be strictly increasing"
                raise ValueError(msg)
            previous = tier.end_percent
        if previous != 100:
            msg = "the last custom tier must end at 100 percent"
            raise ValueError(msg)
        return tiers

    def tiers(self) -> tuple[Tier, ...]:
        """Return the effective tier table (custom tiers win over the preset)."""
        return self.custom_tiers or TIER_PRESETS[self.tier_preset]


CompressionSettings = Annotated[UniformSettings | TieredSettings, Field(discriminator="mode")]

_SETTINGS_ADAPTER: TypeAdapter[UniformSettings | TieredSettings] = TypeAdapter(
    CompressionSettings
)


def _format_error(err: Any) -> str:
    loc = ".".join(str(part) for part in err.get("loc", ()) if part not in ("uniform", "tiered"))
    return f"{loc}: {err['msg']}" if loc else str(err["msg"])


def parse_settings(raw: Any) -> UniformSettings | TieredSettings:
    """Validate *raw* into a strict settings variant.

    ``None`` yields the tiered defaults; a missing ``mode`` means tiered.

    Raises:
        InvalidSettings: with one entry per validation failure.
    """
    if raw is None:
        return TieredSettings()
    if isinstance(raw, UniformSettings | TieredSettings):
        return raw
    if not isinstance(raw, dict):
        raise InvalidSettings(["settings must be an object"])
    data = dict(raw)
    data.setdefault("mode", CompressionMode.TIERED.value)
    try:
        return _SETTINGS_ADAPTER.validate_python(data)
    except ValidationError as exc:
        raise InvalidSettings([_format_error(e) for e in exc.errors()]) from exc


# ---------------------------------------------------------------------------
# Derived properties
# ---------------------------------------------------------------------------


def compression_level(settings: UniformSettings | TieredSettings) -> CompressionLevel:
    if isinstance(settings, UniformSettings):
        return {
            Aggressiveness.MINIMAL: CompressionLevel.LIGHT,
            Aggressiveness.MODERATE: CompressionLevel.MODERATE,
            Aggressiveness.AGGRESSIVE: CompressionLevel.AGGRESSIVE,
        }[settings.aggressiveness]
    if settings.custom_tiers:
        return CompressionLevel.CUSTOM
    return {
        TierPreset.GENTLE: CompressionLevel.LIGHT,
        TierPreset.STANDARD: CompressionLevel.MODERATE,
        TierPreset.AGGRESSIVE: CompressionLevel.AGGRESSIVE,
    }[settings.tier_preset]


def effective_ratio(settings: UniformSettings | TieredSettings) -> float:
    """Overall compaction ratio; tiers are weighted by the share of messages they cover."""
    if isinstance(settings, UniformSettings):
        return float(settings.compaction_ratio)
    total = 0.0
    start = 0
    for tier in settings.tiers():
        total += (tier.end_percent - start) / 100 * tier.compaction_ratio
        start = tier.end_percent
    return round(total, 2)


def settings_fingerprint(settings: UniformSettings | TieredSettings) -> str:
    """Canonical identity of a settings value, used to detect duplicate versions."""
    data = settings.model_dump(mode="json")
    if isinstance(settings, TieredSettings):
        data["custom_tiers"] = [t.model_dump(mode="json") for t in settings.tiers()]
        data.pop("tier_preset")
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


def describe(settings: UniformSettings | TieredSettings) -> str:
    if isinstance(settings, UniformSettings):
        return f"uniform {settings.compaction_ratio:g}x {settings.aggressiveness.value}"
    if settings.custom_tiers:
        return f"tiered custom ({len(settings.custom_tiers)} tiers)"
    return f"tiered {settings.tier_preset.value}"


def split_tiers(total: int, tiers: tuple[Tier, ...]) -> list[tuple[int, int, Tier]]:
    """Map a tier table onto ``total`` messages as ``(start, end, tier)`` slices.

    Slices that round down to zero messages are dropped.
    """
    slices: list[tuple[int, int, Tier]] = []
    start_percent = 0
    for tier in tiers:
        start = total * start_percent // 100
        end = total * tier.end_percent // 100
        if end > start:
            slices.append((start, end, tier))
        start_percent = tier.end_percent
    return slices
