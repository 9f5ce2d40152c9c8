"""Generative lesson analysis: prompt assembly plus Bedrock invocation.

The prompt carries the student's timestamp-ordered speech (tutor lines are
included for context but marked), the learner context and up to three prior
analyses so the model can describe progress with real numbers.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

from lessonflow.models import Speaker
from lessonflow.pipelines.lesson.types import (
    AnalysisRecord,
    PronunciationAssessment,
    SegmentRecord,
    StudentContext,
)
from lessonflow.services.analysis_contract import ResponseContractError, parse_analysis
from lessonflow.services.language import language_name
from lessonflow.services.llm_client import BedrockLlmClient

logger = logging.getLogger(__name__)

_MAX_JSON_RETRIES = 1
_MAX_TRANSCRIPT_CHARS = 24_000

SYSTEM_PROMPT = """You are an expert language tutor analysing a recorded one-to-one lesson.
The student is a native {native} speaker learning {language}.
Write every explanation in {native}; keep quotes of the student's speech in {language}.
Only report errors you can quote verbatim from the STUDENT lines. Empty error lists are valid.
Respond ONLY with valid JSON, no markdown."""

RESPONSE_SHAPE = """{
  "overallAssessment": {
    "proficiencyLevel": "A1|A2|B1|B2|C1|C2",
    "confidence": 0-100,
    "summary": "string referencing specific topics from the transcript",
    "progressFromLastLesson": "string using exact numbers from the history, or a baseline note"
  },
  "progressionMetrics": {"previousProficiencyLevel": "string", "proficiencyChange": "improved|maintained|declined|first_lesson"},
  "errorPatterns": [{"pattern": "string", "frequency": 0, "severity": "low|medium|high",
                     "examples": [{"original": "quote", "corrected": "string", "explanation": "string"}]}],
  "strengths": ["string"],
  "areasForImprovement": ["string"],
  "grammarAnalysis": {"mistakeTypes": [], "suggestions": [], "accuracyScore": 0-100},
  "vocabularyAnalysis": {"uniqueWordCount": 0, "vocabularyRange": "limited|moderate|good|excellent"},
  "fluencyAnalysis": {"speakingSpeed": "slow|moderate|fast", "overallFluencyScore": 0-100},
  "topicsDiscussed": ["string"],
  "homeworkSuggestions": ["string"],
  "studentSummary": "string with at least one quoted example"
}"""


def _render_segments(segments: Sequence[SegmentRecord]) -> str:
    lines = []
    for segment in segments:
        label = "STUDENT" if segment.speaker == Speaker.STUDENT else "TUTOR"
        lines.append(f"[{segment.timestamp:%H:%M:%S}] {label}: {segment.text}")
    rendered = "\n".join(lines)
    if len(rendered) > _MAX_TRANSCRIPT_CHARS:
        rendered = rendered[-_MAX_TRANSCRIPT_CHARS:]
    return rendered


def _render_history(prior_analyses: Sequence[AnalysisRecord]) -> str:
    if not prior_analyses:
        return "PREVIOUS LESSON HISTORY: none (first analysed lesson)."
    blocks = []
    for index, prior in enumerate(prior_analyses, start=1):
        payload = prior.payload or {}
        grammar = payload.get("grammarAnalysis") or {}
        fluency = payload.get("fluencyAnalysis") or {}
        topics = payload.get("topicsDiscussed") or []
        blocks.append(
            f"Lesson {index} ({prior.lesson_date:%Y-%m-%d}):\n"
            f"- Proficiency Level: {prior.proficiency_level or 'N/A'}\n"
            f"- Grammar Accuracy: {grammar.get('accuracyScore', 'N/A')}%\n"
            f"- Fluency Score: {fluency.get('overallFluencyScore', 'N/A')}/100\n"
            f"- Topics: {', '.join(topics) or 'N/A'}"
        )
    return "PREVIOUS LESSON HISTORY (most recent first):\n" + "\n\n".join(blocks)


def build_prompts(
    segments: Sequence[SegmentRecord],
    language: str,
    student_context: StudentContext,
    prior_analyses: Sequence[AnalysisRecord],
    pronunciation: Optional[PronunciationAssessment] = None,
) -> tuple[str, str]:
    """Return (system_prompt, user_prompt)."""

    system_prompt = SYSTEM_PROMPT.format(
        native=language_name(student_context.native_language),
        language=language_name(language),
    )
    parts = [
        f"LESSON DATE: {student_context.lesson_date:%Y-%m-%d}",
        f"DURATION MINUTES: {student_context.duration_minutes or 'unknown'}",
        _render_history(prior_analyses),
    ]
    if pronunciation is not None:
        words = ", ".join(issue.word for issue in pronunciation.mispronunciations) or "none"
        parts.append(
            f"PRONUNCIATION ASSESSMENT: overall {pronunciation.overall_score}/100, "
            f"words to practise: {words}"
        )
    parts.append("TRANSCRIPT:\n" + _render_segments(segments))
    parts.append("Respond with JSON in exactly this shape:\n" + RESPONSE_SHAPE)
    return system_prompt, "\n\n".join(parts)


class BedrockAnalysisGenerator:
    """``AnalysisGenerator`` implementation on top of ``BedrockLlmClient``."""

    def __init__(self, client: BedrockLlmClient | None = None) -> None:
        self._client = client or BedrockLlmClient()

    async def analyze(
        self,
        segments: Sequence[SegmentRecord],
        language: str,
        student_context: StudentContext,
        prior_analyses: Sequence[AnalysisRecord],
        pronunciation: Optional[PronunciationAssessment] = None,
    ) -> dict[str, Any]:
        system_prompt, user_prompt = build_prompts(
            segments, language, student_context, prior_analyses, pronunciation
        )
        last_error: ResponseContractError | None = None
        for attempt in range(_MAX_JSON_RETRIES + 1):
            raw_response = await self._client.invoke(
                system_prompt=system_prompt,
                user_prompt=user_prompt,
            )
            try:
                return parse_analysis(raw_response).to_payload()
            except ResponseContractError as exc:
                last_error = exc
                logger.warning(
                    "Analysis model returned invalid JSON (attempt %s): %s",
                    attempt + 1,
                    exc,
                )
        raise last_error


__all__ = ["BedrockAnalysisGenerator", "build_prompts"]
