from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional, Sequence

from editorial_engine.core.clock import parse_datetime
from editorial_engine.models.quality import QualityFlag, QualityJobType, QualityMetrics

REQUIRED_SECTIONS = ("summary", "strengths", "weaknesses", "detailed_comments", "recommendation")
_TEXT_SECTIONS = ("summary", "strengths", "weaknesses", "detailed_comments")

SPECIFICITY_MARKERS = (
    "for example",
    "specifically",
    "page",
    "line",
    "section",
    "figure",
    "table",
    "equation",
    "citation",
    "reference",
)

CONSTRUCTIVE_MARKERS = (
    "suggest",
    "recommend",
    "consider",
    "could",
    "should",
    "would benefit",
    "clarify",
    "improve",
    "please",
    "it would help",
)

UNPROFESSIONAL_TERMS = (
    "stupid",
    "nonsense",
    "garbage",
    "idiotic",
    "worthless",
    "ridiculous",
    "incompetent",
    "lazy",
    "waste of time",
    "rubbish",
)

NEGATIVE_KEYWORDS = ("major issues", "significant problems", "serious concerns", "fundamental flaws", "reject")
POSITIVE_KEYWORDS = ("excellent", "outstanding", "strong", "well-written", "accept", "minor revisions")

BIAS_KEYWORDS: dict[str, tuple[str, ...]] = {
    "geographic": ("western", "eastern", "third-world", "developing country"),
    "institutional": ("ivy league", "prestigious", "unknown institution"),
    "career_stage": ("junior", "young researcher", "established", "veteran"),
}

_GENDER_PATTERNS = (
    re.compile(r"\b(he|his|him)\b", re.IGNORECASE),
    re.compile(r"\b(she|her|hers)\b", re.IGNORECASE),
)

_FLAG_RECOMMENDATIONS = {
    QualityFlag.INCOMPLETE_REVIEW.value: "Complete all required review sections with detailed feedback",
    QualityFlag.BIAS_SUSPECTED.value: "Review for potential bias and ensure objective evaluation",
    QualityFlag.UNPROFESSIONAL_TONE.value: "Maintain professional and constructive tone throughout",
    QualityFlag.INCONSISTENT_RECOMMENDATION.value: "Ensure recommendation aligns with the detailed feedback provided",
    QualityFlag.LOW_CONSTRUCTIVENESS.value: "Provide more specific, actionable suggestions for improvement",
}


@dataclass(frozen=True)
class BiasWarning:
    type: str
    detected_text: str
    suggestion: str
    severity: str


@dataclass
class AnalysisResult:
    metrics: QualityMetrics
    overall_score: float
    flags: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)


def _text(review: Mapping[str, Any], key: str) -> str:
    return str(review.get(key) or "")


def _combined_text(review: Mapping[str, Any]) -> str:
    return " ".join(_text(review, k) for k in _TEXT_SECTIONS)


def _count(text: str, phrase: str) -> int:
    return len(re.findall(re.escape(phrase), text))


# === 自动指标 ===


def automated_metrics(review: Mapping[str, Any]) -> dict[str, float]:
    filled = 0
    total_length = 0
    for key in REQUIRED_SECTIONS:
        value = _text(review, key).strip()
        if len(value) > 10:
            filled += 1
            total_length += len(value)

    completeness = filled / len(REQUIRED_SECTIONS)
    # 粗略按 5 字符 / 词估算，1000 词视为满分
    depth = min((total_length / 5) / 1000, 1.0)

    timeliness = 0.7
    due = parse_datetime(review.get("due_date") or review.get("deadline"))
    submitted = parse_datetime(review.get("submitted_at"))
    if due is not None and submitted is not None:
        days_early = (due - submitted).total_seconds() / 86400
        timeliness = 0.7 + (days_early / 7) * 0.3
        timeliness = min(1.0, timeliness) if days_early >= 0 else max(0.0, timeliness)

    lowered = _combined_text(review).lower()
    specificity_hits = sum(_count(lowered, marker) for marker in SPECIFICITY_MARKERS)

    return {
        "completeness": round(completeness, 4),
        "depth": round(depth, 4),
        "timeliness": round(timeliness, 4),
        "specificity": round(min(specificity_hits / 20, 1.0), 4),
    }


# === 语言指标（启发式） ===


def detect_bias(text: str) -> list[BiasWarning]:
    warnings: list[BiasWarning] = []
    for pattern in _GENDER_PATTERNS:
        matches = pattern.findall(text)
        if len(matches) > 2:
            warnings.append(
                BiasWarning(
                    type="gender",
                    detected_text=", ".join(matches),
                    suggestion="Consider using gender-neutral language",
                    severity="medium",
                )
            )
    lowered = text.lower()
    for bias_type, keywords in BIAS_KEYWORDS.items():
        for keyword in keywords:
            if keyword in lowered:
                warnings.append(
                    BiasWarning(
                        type=bias_type,
                        detected_text=keyword,
                        suggestion=f"Avoid references to {bias_type.replace('_', ' ')} that may introduce bias",
                        severity="low",
                    )
                )
    return warnings


def linguistic_metrics(review: Mapping[str, Any]) -> dict[str, Any]:
    text = _combined_text(review)
    lowered = text.lower()

    constructive_hits = sum(_count(lowered, marker) for marker in CONSTRUCTIVE_MARKERS)
    constructiveness = min(constructive_hits / 10, 1.0)

    sentences = [s for s in re.split(r"[.!?]+", text) if s.strip()]
    if sentences:
        avg_words = sum(len(s.split()) for s in sentences) / len(sentences)
        clarity = 1.0 if 10 <= avg_words <= 25 else max(0.3, 1 - abs(avg_words - 17.5) / 40)
    else:
        clarity = 0.0

    professionalism = 1.0
    professionalism -= 0.2 * sum(1 for term in UNPROFESSIONAL_TERMS if term in lowered)
    if "!!" in text:
        professionalism -= 0.1
    shouting = [w for w in re.findall(r"\b[A-Z]{4,}\b", text)]
    if len(shouting) > 3:
        professionalism -= 0.1

    return {
        "constructiveness": round(constructiveness, 4),
        "clarity": round(clarity, 4),
        "professionalism": round(max(0.0, professionalism), 4),
        "bias_indicators": [f"{w.type}: {w.detected_text}" for w in detect_bias(text)],
    }


# === 一致性指标 ===


def consistency_metrics(review: Mapping[str, Any], other_reviews: Sequence[Mapping[str, Any]] = ()) -> dict[str, float]:
    lowered = " ".join(_text(review, k) for k in ("strengths", "weaknesses", "detailed_comments")).lower()
    positive = sum(_count(lowered, k) for k in POSITIVE_KEYWORDS)
    negative = sum(_count(lowered, k) for k in NEGATIVE_KEYWORDS)
    balance = positive - negative

    recommendation = _text(review, "recommendation").strip().lower()
    alignment = 0.5
    if recommendation == "accept" and balance > 0:
        alignment = 1.0
    elif recommendation == "reject" and balance < 0:
        alignment = 1.0
    elif recommendation == "major_revisions" and abs(balance) < 5:
        alignment = 0.9
    elif recommendation == "minor_revisions" and balance >= 0:
        alignment = 0.9

    strengths_len = len(_text(review, "strengths"))
    weaknesses_len = len(_text(review, "weaknesses"))
    internal = 1 - abs(strengths_len - weaknesses_len) / (strengths_len + weaknesses_len + 1)

    out = {
        "recommendation_alignment": alignment,
        "internal_consistency": round(internal, 4),
    }
    if other_reviews:
        recommendations = {recommendation, *(_text(r, "recommendation").strip().lower() for r in other_reviews)}
        out["cross_reviewer_consistency"] = round(max(0.0, 1 - (len(recommendations) - 1) / 3), 4)
    return out


# === 汇总 ===


def weighted_score(metrics: QualityMetrics, weights: Mapping[str, float]) -> float:
    total_weight = 0.0
    weighted = 0.0
    for name, value in metrics.scored().items():
        weight = float(weights.get(name, 0.0))
        if weight <= 0 or value <= 0:
            continue
        weighted += value * weight
        total_weight += weight
    return round(weighted / total_weight, 4) if total_weight > 0 else 0.0


def determine_flags(metrics: QualityMetrics, score: float) -> list[str]:
    flags: list[str] = []
    if score >= 0.9:
        flags.append(QualityFlag.EXCELLENT_QUALITY.value)
    if score < 0.6:
        flags.append(QualityFlag.NEEDS_IMPROVEMENT.value)
    if metrics.bias_indicators:
        flags.append(QualityFlag.BIAS_SUSPECTED.value)
    if metrics.professionalism is not None and metrics.professionalism < 0.6:
        flags.append(QualityFlag.UNPROFESSIONAL_TONE.value)
    if metrics.completeness is not None and metrics.completeness < 0.7:
        flags.append(QualityFlag.INCOMPLETE_REVIEW.value)
    if metrics.recommendation_alignment is not None and metrics.recommendation_alignment < 0.6:
        flags.append(QualityFlag.INCONSISTENT_RECOMMENDATION.value)
    if metrics.constructiveness is not None and metrics.constructiveness < 0.5:
        flags.append(QualityFlag.LOW_CONSTRUCTIVENESS.value)
    return flags


def build_recommendations(metrics: QualityMetrics, flags: Sequence[str]) -> list[str]:
    out = [_FLAG_RECOMMENDATIONS[f] for f in flags if f in _FLAG_RECOMMENDATIONS]
    if metrics.specificity is not None and metrics.specificity < 0.5:
        out.append("Include specific examples and references to manuscript sections")
    if metrics.depth is not None and metrics.depth < 0.5:
        out.append("Provide more detailed analysis and comprehensive feedback")
    if metrics.clarity is not None and metrics.clarity < 0.6:
        out.append("Improve review structure and clarity of feedback")
    return out


def analyze_review(
    review: Mapping[str, Any],
    job_type: QualityJobType | str,
    *,
    weights: Mapping[str, float],
    other_reviews: Sequence[Mapping[str, Any]] = (),
    previous: Optional[QualityMetrics] = None,
) -> AnalysisResult:
    """
    按任务类型计算指标：
    - quick_check: 自动指标
    - consistency_analysis: 一致性指标（保留上一次报告中的其它指标）
    - full_analysis: 全部
    """
    kind = QualityJobType(job_type)
    values: dict[str, Any] = previous.model_dump() if previous is not None else {}

    if kind in {QualityJobType.QUICK_CHECK, QualityJobType.FULL_ANALYSIS}:
        values.update(automated_metrics(review))
    if kind == QualityJobType.FULL_ANALYSIS:
        values.update(linguistic_metrics(review))
    if kind in {QualityJobType.CONSISTENCY_ANALYSIS, QualityJobType.FULL_ANALYSIS}:
        values.update(consistency_metrics(review, other_reviews))

    metrics = QualityMetrics.model_validate(values)
    score = weighted_score(metrics, weights)
    flags = determine_flags(metrics, score)
    return AnalysisResult(
        metrics=metrics,
        overall_score=score,
        flags=flags,
        recommendations=build_recommendations(metrics, flags),
    )


def review_age_hours(analyzed_at: datetime | str | None, now: datetime) -> Optional[float]:
    ts = parse_datetime(analyzed_at)
    if ts is None:
        return None
    return (now - ts).total_seconds() / 3600
