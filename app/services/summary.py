from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional, Sequence

from pydantic import BaseModel, Field

from app.services.vision import VisionAnalysis
from app.store.analysis_store import AnalysisRecord, SkinTrait

SummarySkinType = Literal["dry", "oily", "combination", "normal", "sensitive"]

SEVERITY_SCORES: dict[str, int] = {"low": 25, "moderate": 55, "high": 85}
_SEVERITY_RANK: dict[str, int] = {"low": 1, "moderate": 2, "high": 3}

SKIN_TYPE_LABELS: dict[str, SummarySkinType] = {
    "Dry": "dry",
    "Oily": "oily",
    "Combination": "combination",
    "Normal": "normal",
    "Sensitive": "sensitive",
}

# Series channel -> trait id.
SERIES_CHANNELS: tuple[tuple[str, str], ...] = (
    ("acne", "acne"),
    ("dryness", "dryness"),
    ("pigmentation", "hyperpigmentation"),
)

MAX_INFERRED_NOTES = 4
FALLBACK_NOTE = "Analysis complete. Check your routine recommendations."
NO_CONCERN_LABEL = "No major concerns"


class SeriesPoint(BaseModel):
    date: str
    acne: int
    dryness: int
    pigmentation: int


class AnalysisSummary(BaseModel):
    user_id: str
    skin_type: SummarySkinType
    confidence: float
    primary_concern: str
    updatedAt: str
    series: list[SeriesPoint]
    notes: list[str]
    modelVersion: str
    detected_traits: Optional[list[SkinTrait]] = Field(default=None)


def _iso(value: datetime | str) -> str:
    return value if isinstance(value, str) else value.isoformat()


def severity_score(traits: Sequence[SkinTrait], trait_id: str) -> int:
    for trait in traits:
        if trait.id == trait_id:
            return SEVERITY_SCORES[trait.severity]
    return 0


def normalize_skin_type(raw: Optional[str]) -> SummarySkinType:
    return SKIN_TYPE_LABELS.get(raw or "", "normal")


def _series_point(traits: Sequence[SkinTrait], date: str) -> SeriesPoint:
    scores = {channel: severity_score(traits, trait_id) for channel, trait_id in SERIES_CHANNELS}
    return SeriesPoint(date=date, **scores)


def map_vision_to_summary(owner_id: str, vision: VisionAnalysis, completed_at: datetime | str) -> AnalysisSummary:
    date = _iso(completed_at)
    return AnalysisSummary(
        user_id=owner_id,
        skin_type=normalize_skin_type(vision.skin_type),
        confidence=vision.confidence / 100,
        primary_concern=vision.primary_concern,
        updatedAt=date,
        series=[_series_point(vision.traits, date)],
        notes=list(vision.notes),
        modelVersion=vision.model_version,
    )


def infer_skin_type(traits: Sequence[SkinTrait]) -> SummarySkinType:
    def present(trait_id: str) -> bool:
        return any(t.id == trait_id and t.severity != "low" for t in traits)

    oily = present("oiliness")
    dry = present("dryness")
    if oily and dry:
        return "combination"
    if oily:
        return "oily"
    if dry:
        return "dry"
    if present("sensitivity"):
        return "sensitive"
    return "normal"


def infer_primary_concern(traits: Sequence[SkinTrait]) -> str:
    if not traits:
        return NO_CONCERN_LABEL
    # max() keeps the first of equally severe traits.
    return max(traits, key=lambda t: _SEVERITY_RANK[t.severity]).name


def infer_notes(traits: Sequence[SkinTrait]) -> list[str]:
    notes = [f"{t.name}: {t.description}" for t in traits if t.severity != "low"][:MAX_INFERRED_NOTES]
    return notes or [FALLBACK_NOTE]


def map_record_to_summary(record: AnalysisRecord, *, default_model_version: str) -> AnalysisSummary:
    """Project a stored ``complete`` record into the dashboard summary.

    Rows that carry the model's own skin type, concern and notes reproduce
    the summary returned by the start call. Older rows only hold traits and
    confidence, so the rest is inferred from the traits.
    """
    traits = list(record.detected_traits)
    date = _iso(record.completed_at or record.created_at)

    if record.skin_type:
        skin_type = normalize_skin_type(record.skin_type)
    else:
        skin_type = infer_skin_type(traits)

    return AnalysisSummary(
        user_id=record.owner_id,
        skin_type=skin_type,
        confidence=(record.confidence_score or 0) / 100,
        primary_concern=record.primary_concern or infer_primary_concern(traits),
        updatedAt=date,
        series=[_series_point(traits, date)],
        notes=list(record.notes) if record.notes is not None else infer_notes(traits),
        modelVersion=record.model_version or default_model_version,
        detected_traits=traits,
    )
