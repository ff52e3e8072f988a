"""Decay Calculator — will a pinned span survive a compression pass?

``effective = max(0, weight - distance * decay_rate * ratio_factor)`` with
``ratio_factor = 1 + (ratio - reference_ratio) * ratio_decay_factor``.
Content survives iff ``effective >= survival_threshold``.  Everything here
is pure; nothing touches the manifest.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from typing import Any

from .manifest import PinnedMarker

DECAY_RATE = 0.02
REFERENCE_RATIO = 10.0
RATIO_DECAY_FACTOR = 0.005
SURVIVAL_THRESHOLD = 0.5

# Rounding guard so 0.7 - 0.2 compares as 0.5, not 0.49999999999999994.
_PRECISION = 9

SCENARIOS: dict[str, float] = {
    "Light": 3,
    "Moderate": 10,
    "Standard": 15,
    "Aggressive": 25,
    "Maximum": 50,
}

RECOMMENDED_WEIGHTS: dict[str, float] = {
    "always_keep": 1.00,
    "critical": 0.90,
    "very_important": 0.80,
    "important": 0.70,
    "useful": 0.50,
    "nice_to_have": 0.30,
    "minor": 0.15,
}


@dataclass(frozen=True)
class DecayParams:
    decay_rate: float = DECAY_RATE
    reference_ratio: float = REFERENCE_RATIO
    ratio_decay_factor: float = RATIO_DECAY_FACTOR
    survival_threshold: float = SURVIVAL_THRESHOLD

    @classmethod
    def from_config(cls, config: Any) -> DecayParams:
        """Build from a :class:`convmem.config.DecayConfig`."""
        return cls(
            decay_rate=config.decay_rate,
            reference_ratio=config.reference_ratio,
            ratio_decay_factor=config.ratio_decay_factor,
            survival_threshold=config.survival_threshold,
        )


DEFAULT_PARAMS = DecayParams()


@dataclass(frozen=True)
class DecayScenario:
    """Sessions since the content's origin and the compaction ratio under evaluation."""

    distance: int = 0
    compression_ratio: float = REFERENCE_RATIO

    def __post_init__(self) -> None:
        if self.distance < 0:
            msg = "distance must be non-negative"
            raise ValueError(msg)
        if self.compression_ratio <= 0:
            msg = "compression_ratio must be positive"
            raise ValueError(msg)


def ratio_factor(compression_ratio: float, params: DecayParams = DEFAULT_PARAMS) -> float:
    factor = 1 + (compression_ratio - params.reference_ratio) * params.ratio_decay_factor
    return max(0.0, factor)


def effective_weight(
    weight: float, scenario: DecayScenario, params: DecayParams = DEFAULT_PARAMS
) -> float:
    decay = scenario.distance * params.decay_rate * ratio_factor(scenario.compression_ratio, params)
    return round(max(0.0, weight - decay), _PRECISION)


def survives(
    weight: float, scenario: DecayScenario, params: DecayParams = DEFAULT_PARAMS
) -> bool:
    return effective_weight(weight, scenario, params) >= params.survival_threshold


@dataclass
class DecayExplanation:
    base_weight: float
    distance: int
    compression_ratio: float
    decay_rate: float
    reference_ratio: float
    ratio_decay_factor: float
    ratio_factor: float
    decay_amount: float
    effective_weight: float
    threshold: float
    survives: bool
    margin: float
    formula: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def explain(
    weight: float, scenario: DecayScenario, params: DecayParams = DEFAULT_PARAMS
) -> DecayExplanation:
    """Every intermediate term of the decay formula, for diagnostics."""
    factor = ratio_factor(scenario.compression_ratio, params)
    decay = round(scenario.distance * params.decay_rate * factor, _PRECISION)
    effective = effective_weight(weight, scenario, params)
    return DecayExplanation(
        base_weight=weight,
        distance=scenario.distance,
        compression_ratio=scenario.compression_ratio,
        decay_rate=params.decay_rate,
        reference_ratio=params.reference_ratio,
        ratio_decay_factor=params.ratio_decay_factor,
        ratio_factor=round(factor, _PRECISION),
        decay_amount=decay,
        effective_weight=effective,
        threshold=params.survival_threshold,
        survives=effective >= params.survival_threshold,
        margin=round(effective - params.survival_threshold, _PRECISION),
        formula=(
            f"max(0, {weight:.2f} - {scenario.distance} x {params.decay_rate} x {factor:.4f})"
            f" = {effective:.4f} {'>=' if effective >= params.survival_threshold else '<'}"
            f" {params.survival_threshold}"
        ),
    )


# ---------------------------------------------------------------------------
# Batch previews
# ---------------------------------------------------------------------------


@dataclass
class MarkerVerdict:
    marker_id: str | None
    weight: float
    effective_weight: float
    survives: bool


@dataclass
class SurvivalPreview:
    scenario: DecayScenario
    total: int = 0
    surviving: int = 0
    per_marker: list[MarkerVerdict] = field(default_factory=list)

    @property
    def summarized(self) -> int:
        return self.total - self.surviving

    def to_dict(self) -> dict[str, Any]:
        return {
            "distance": self.scenario.distance,
            "compression_ratio": self.scenario.compression_ratio,
            "total": self.total,
            "surviving": self.surviving,
            "summarized": self.summarized,
            "per_marker": [asdict(v) for v in self.per_marker],
        }


def preview_survival(
    markers: Sequence[PinnedMarker | float],
    scenario: DecayScenario,
    params: DecayParams = DEFAULT_PARAMS,
) -> SurvivalPreview:
    """Verdict for each marker (or bare weight) under *scenario*."""
    preview = SurvivalPreview(scenario=scenario)
    for item in markers:
        if isinstance(item, PinnedMarker):
            marker_id, weight = item.marker_id, item.weight
        else:
            marker_id, weight = None, float(item)
        effective = effective_weight(weight, scenario, params)
        verdict = MarkerVerdict(
            marker_id=marker_id,
            weight=weight,
            effective_weight=effective,
            survives=effective >= params.survival_threshold,
        )
        preview.per_marker.append(verdict)
        preview.total += 1
        preview.surviving += int(verdict.survives)
    return preview


def analyze_scenarios(
    markers: Sequence[PinnedMarker | float],
    distance: int = 0,
    params: DecayParams = DEFAULT_PARAMS,
) -> list[dict[str, Any]]:
    """Survival counts across the named compaction scenarios."""
    rows: list[dict[str, Any]] = []
    for name, ratio in SCENARIOS.items():
        preview = preview_survival(markers, DecayScenario(distance, ratio), params)
        rows.append({
            "name": f"{name} ({ratio:g}:1)",
            "compression_ratio": ratio,
            "surviving": preview.surviving,
            "summarized": preview.summarized,
            "survival_rate": preview.surviving / preview.total if preview.total else None,
        })
    return rows


def recommended_weight(importance: str) -> float:
    """Suggested weight for an importance label; unknown labels get 0.5."""
    key = "_".join(importance.lower().split())
    return RECOMMENDED_WEIGHTS.get(key, 0.5)
