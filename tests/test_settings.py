"""Tests for compression settings parsing and derived properties."""

from __future__ import annotations

import pytest

from convmem.errors import InvalidSettings
from convmem.settings import (
    TIER_PRESETS,
    Aggressiveness,
    CompressionLevel,
    TieredSettings,
    TierPreset,
    UniformSettings,
    compression_level,
    effective_ratio,
    parse_settings,
    settings_fingerprint,
    split_tiers,
)

# ---------------------------------------------------------------------------
# parse_settings
# ---------------------------------------------------------------------------


def test_none_gives_tiered_defaults() -> None:
    settings = parse_settings(None)
    assert isinstance(settings, TieredSettings)
    assert settings.tier_preset is TierPreset.STANDARD


def test_missing_mode_means_tiered() -> None:
    settings = parse_settings({"tierPreset": "gentle"})
    assert isinstance(settings, TieredSettings)
    assert settings.tier_preset is TierPreset.GENTLE


def test_uniform_accepts_camel_case() -> None:
    settings = parse_settings(
        {"mode": "uniform", "compactionRatio": 12, "aggressiveness": "aggressive"}
    )
    assert isinstance(settings, UniformSettings)
    assert settings.compaction_ratio == 12
    assert settings.aggressiveness is Aggressiveness.AGGRESSIVE


@pytest.mark.parametrize("ratio", [1, 51])
def test_ratio_bounds(ratio: int) -> None:
    with pytest.raises(InvalidSettings, match="compaction_ratio"):
        parse_settings({"mode": "uniform", "compaction_ratio": ratio})


def test_unknown_preset_rejected() -> None:
    with pytest.raises(InvalidSettings):
        parse_settings({"mode": "tiered", "tier_preset": "extreme"})


def test_unknown_field_rejected() -> None:
    with pytest.raises(InvalidSettings):
        parse_settings({"mode": "uniform", "ratio": 10})


def test_non_dict_rejected() -> None:
    with pytest.raises(InvalidSettings, match="object"):
        parse_settings("uniform")


def test_custom_tiers_must_end_at_100() -> None:
    with pytest.raises(InvalidSettings, match="100"):
        parse_settings({
            "custom_tiers": [
                {"end_percent": 50, "compaction_ratio": 10},
                {"end_percent": 90, "compaction_ratio": 5},
            ]
        })


def test_custom_tiers_must_increase() -> None:
    with pytest.raises(InvalidSettings, match="increasing"):
        parse_settings({
            "custom_tiers": [
                {"end_percent": 60, "compaction_ratio": 10},
                {"end_percent": 40, "compaction_ratio": 5},
                {"end_percent": 100, "compaction_ratio": 3},
            ]
        })


def test_collects_every_error() -> None:
    with pytest.raises(InvalidSettings) as excinfo:
        parse_settings({"mode": "uniform", "compaction_ratio": 0, "skip_first_messages": -1})
    assert len(excinfo.value.validation_errors) == 2


# ---------------------------------------------------------------------------
# Derived properties
# ---------------------------------------------------------------------------


def test_compression_level_mapping() -> None:
    assert compression_level(UniformSettings(aggressiveness="minimal")) is CompressionLevel.LIGHT
    assert compression_level(TieredSettings(tier_preset="aggressive")) is (
        CompressionLevel.AGGRESSIVE
    )
    custom = parse_settings({"custom_tiers": [{"end_percent": 100, "compaction_ratio": 4}]})
    assert compression_level(custom) is CompressionLevel.CUSTOM


def test_effective_ratio_weights_tiers() -> None:
    assert effective_ratio(UniformSettings(compaction_ratio=7)) == 7.0
    # 0.25*25 + 0.25*15 + 0.25*10 + 0.15*5 + 0.10*3
    assert effective_ratio(TieredSettings()) == pytest.approx(13.55)


def test_fingerprint_ignores_preset_spelling() -> None:
    preset = TieredSettings(tier_preset="gentle")
    spelled_out = TieredSettings(custom_tiers=TIER_PRESETS[TierPreset.GENTLE])
    assert settings_fingerprint(preset) == settings_fingerprint(spelled_out)


def test_fingerprint_differs_on_ratio() -> None:
    assert settings_fingerprint(UniformSettings(compaction_ratio=10)) != settings_fingerprint(
        UniformSettings(compaction_ratio=11)
    )


def test_split_tiers_covers_every_message() -> None:
    slices = split_tiers(20, TIER_PRESETS[TierPreset.STANDARD])
    assert slices[0][0] == 0
    assert slices[-1][1] == 20
    for (_, end, _), (start, _, _) in zip(slices, slices[1:], strict=False):
        assert end == start


def test_split_tiers_drops_empty_slices() -> None:
    slices = split_tiers(3, TIER_PRESETS[TierPreset.STANDARD])
    assert all(end > start for start, end, _ in slices)
    assert sum(end - start for start, end, _ in slices) == 3
