"""Pydantic models for validating model JSON responses.

Both the lesson analysis and the pronunciation assessment run through these
schemas so downstream code receives normalized, type-safe objects. Unknown
keys are kept: the analysis payload is stored as an opaque blob.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

CEFR_LEVELS = ("A1", "A2", "B1", "B2", "C1", "C2")


class ResponseContractError(RuntimeError):
    """Raised when a model response cannot be parsed or validated."""


def _clamp(value: Any, upper: float = 100.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return max(0.0, min(upper, number))


class OverallAssessment(BaseModel):
    proficiency_level: str = Field(alias="proficiencyLevel")
    confidence: Optional[float] = None
    summary: str = ""
    progress_from_last_lesson: Optional[str] = Field(default=None, alias="progressFromLastLesson")

    model_config = {"populate_by_name": True, "extra": "allow"}

    @field_validator("proficiency_level", mode="before")
    @classmethod
    def normalize_level(cls, value: Any) -> str:
        level = str(value or "").strip().upper()[:2]
        if level not in CEFR_LEVELS:
            raise ValueError(f"Unknown proficiency level: {value!r}")
        return level


class LessonAnalysisResponse(BaseModel):
    overall_assessment: OverallAssessment = Field(alias="overallAssessment")
    strengths: List[str] = Field(default_factory=list)
    areas_for_improvement: List[str] = Field(default_factory=list, alias="areasForImprovement")
    error_patterns: List[Dict[str, Any]] = Field(default_factory=list, alias="errorPatterns")
    grammar_analysis: Dict[str, Any] = Field(default_factory=dict, alias="grammarAnalysis")
    fluency_analysis: Dict[str, Any] = Field(default_factory=dict, alias="fluencyAnalysis")
    vocabulary_analysis: Dict[str, Any] = Field(default_factory=dict, alias="vocabularyAnalysis")
    topics_discussed: List[str] = Field(default_factory=list, alias="topicsDiscussed")
    student_summary: Optional[str] = Field(default=None, alias="studentSummary")

    model_config = {"populate_by_name": True, "extra": "allow"}

    @classmethod
    def from_json(cls, payload: str) -> "LessonAnalysisResponse":
        return cls.model_validate(_load_json(payload, "LessonAnalysisResponse"))

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class WordToImprove(BaseModel):
    word: str
    score: float = 0.0
    reason: str = "pronunciation"

    @model_validator(mode="after")
    def clamp_score(self) -> "WordToImprove":
        self.score = _clamp(self.score)
        return self


class PronunciationResponse(BaseModel):
    overall_score: float = Field(default=0.0, alias="overallScore")
    accuracy_score: float = Field(default=0.0, alias="accuracyScore")
    fluency_score: float = Field(default=0.0, alias="fluencyScore")
    prosody_score: float = Field(default=0.0, alias="prosodyScore")
    words_to_improve: List[WordToImprove] = Field(default_factory=list, alias="wordsToImprove")
    feedback: Optional[str] = None
    specific_issues: List[str] = Field(default_factory=list, alias="specificIssues")

    model_config = {"populate_by_name": True, "extra": "allow"}

    @model_validator(mode="after")
    def clamp_scores(self) -> "PronunciationResponse":
        self.overall_score = _clamp(self.overall_score)
        self.accuracy_score = _clamp(self.accuracy_score)
        self.fluency_score = _clamp(self.fluency_score)
        self.prosody_score = _clamp(self.prosody_score)
        return self

    @classmethod
    def from_json(cls, payload: str) -> "PronunciationResponse":
        return cls.model_validate(_load_json(payload, "PronunciationResponse"))


def _load_json(payload: str, title: str) -> Any:
    cleaned = _clean_json_payload(payload)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise ResponseContractError(f"{title}: response is not valid JSON ({exc})") from exc


def _clean_json_payload(payload: str) -> str:
    """Strip Markdown code blocks and find the first/last brace to extract JSON."""

    if not payload:
        return ""

    cleaned = payload.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    cleaned = cleaned.strip()

    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start != -1 and end != -1 and end > start:
        cleaned = cleaned[start:end + 1]
    return cleaned


def parse_analysis(payload: str) -> LessonAnalysisResponse:
    try:
        return LessonAnalysisResponse.from_json(payload)
    except ValidationError as exc:
        raise ResponseContractError(f"Invalid analysis response: {exc}") from exc


def parse_pronunciation(payload: str) -> PronunciationResponse:
    try:
        return PronunciationResponse.from_json(payload)
    except ValidationError as exc:
        raise ResponseContractError(f"Invalid pronunciation response: {exc}") from exc


__all__ = [
    "CEFR_LEVELS",
    "LessonAnalysisResponse",
    "PronunciationResponse",
    "ResponseContractError",
    "parse_analysis",
    "parse_pronunciation",
]
