"""
EMED111 rubric grading for EMT Sim.
Scores a finished encounter transcript and renders the debrief.
"""

import logging
import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .scenario import Role, ScenarioMetadata, TranscriptTurn, parse_transcript
from .text_normalizer import contains_term, normalize_to_ascii_lower

logger = logging.getLogger(__name__)


class TraineeText:
    """Trainee turns of a transcript, normalized once for keyword scoring."""

    def __init__(self, turns: Sequence[TranscriptTurn]):
        self.messages = [
            normalize_to_ascii_lower(t.text) for t in turns if t.role == Role.TRAINEE
        ]
        self.text = " ".join(self.messages)

    def has_any(self, terms: Sequence[str]) -> bool:
        return any(contains_term(self.text, term) for term in terms)

    def count_found(self, terms: Sequence[str]) -> int:
        """Number of distinct terms present anywhere."""
        return sum(1 for term in terms if contains_term(self.text, term))

    def count_messages(self, terms: Sequence[str]) -> int:
        """Number of trainee messages mentioning any of the terms."""
        return sum(1 for m in self.messages if any(contains_term(m, term) for term in terms))


# ============================================
# SECTION SCORERS
# ============================================

def score_hpi(text: TraineeText) -> int:
    """OPQRST coverage."""
    found = text.count_found(("onset", "provocation", "quality", "radiation", "severity", "time"))
    if found == 0:
        return 0
    if found < 3:
        return 1
    if found < 6:
        return 2
    return 3


def score_pmh(text: TraineeText) -> int:
    """SAMPLE history coverage."""
    found = text.count_found(("allergies", "medications", "past medical", "last meal", "events"))
    if found == 0:
        return 0
    if found < 3:
        return 1
    if found < 5:
        return 2
    return 3


def score_vitals(text: TraineeText) -> int:
    found = text.count_found(("blood pressure", "heart rate", "respiratory rate", "temperature", "pulse ox"))
    repeated = text.has_any(("repeat vitals", "second set"))
    if found == 0:
        return 0
    if found < 4:
        return 1
    return 3 if repeated else 2


def score_physical_exam(text: TraineeText) -> int:
    found = text.count_found(("inspect", "palpate", "auscultate", "examine"))
    if found == 0:
        return 0
    if found < 2:
        return 1
    if found < 3:
        return 2
    return 3


def score_medical_management(text: TraineeText) -> int:
    treatments = text.count_messages(("treatment", "medication", "intervention", "therapy"))
    reassessed = text.has_any(("reassess", "recheck"))
    if treatments == 0:
        return 0
    if treatments >= 3 and reassessed:
        return 3
    if treatments >= 2 and reassessed:
        return 2
    return 1


def score_patient_interaction(text: TraineeText) -> int:
    professional = text.has_any(("please", "thank you", "sir", "ma'am", "how are you feeling"))
    empathy = text.has_any(("understand", "comfortable", "help", "support"))
    if not professional and not empathy:
        return 0
    if not (professional and empathy):
        return 1
    if text.has_any(("rapport", "active listening", "validation")):
        return 3
    return 2


def score_hospital_radio(text: TraineeText) -> int:
    if not text.has_any(("hospital", "radio", "notification", "eta")):
        return 0
    found = text.count_found(("age", "chief complaint", "eta", "priority"))
    if found < 2:
        return 1
    if found < 4:
        return 2
    return 3


def score_handover(text: TraineeText) -> int:
    if not text.has_any(("handover", "report", "transfer of care", "giving report")):
        return 0
    found = text.count_found(("age", "complaint", "findings", "vitals", "treatments"))
    if found < 2:
        return 1
    if found < 4:
        return 2
    return 3


def score_disposition(text: TraineeText) -> int:
    return text.count_found(("field impression", "transport", "destination"))


def score_leadership(text: TraineeText) -> int:
    leadership = text.has_any(("delegate", "partner", "help", "assist", "teamwork"))
    safety = text.has_any(("safety", "hazard", "secure"))
    if not leadership and not safety:
        return 0
    if not (leadership and safety):
        return 1
    if text.has_any(("situational awareness", "resource management", "collaborative")):
        return 3
    return 2


# ============================================
# RUBRIC
# ============================================

@dataclass(frozen=True)
class CheckboxItem:
    id: str
    description: str
    category: str
    keywords: Tuple[str, ...]


@dataclass(frozen=True)
class ScoredSection:
    id: str
    name: str
    criteria: Tuple[str, str, str, str]  # indexed by score
    keywords: Tuple[str, ...]
    scorer: Callable[[TraineeText], int]
    max_score: int = 3


@dataclass(frozen=True)
class Rubric:
    checkbox_items: Tuple[CheckboxItem, ...]
    scored_sections: Tuple[ScoredSection, ...]
    time_limit: int = 20
    minimum_section_score: int = 2

    @property
    def max_score(self) -> int:
        return sum(s.max_score for s in self.scored_sections)


SCENE_SIZE_UP = "Pre-Arrival & Scene Size-Up"
PRIMARY_SURVEY = "Primary Survey & Resuscitation"

EMED111_RUBRIC = Rubric(
    checkbox_items=(
        CheckboxItem("ppe", "Dons appropriate PPE", SCENE_SIZE_UP,
                     ("ppe", "gloves", "mask", "eye protection", "body substance isolation", "bsi")),
        CheckboxItem("sceneSize", "Performs scene survey with safety hazards", SCENE_SIZE_UP,
                     ("scene size", "scene survey", "safety", "hazard", "safe", "environment")),
        CheckboxItem("spinalStab", "Takes manual spinal stabilization if indicated", SCENE_SIZE_UP,
                     ("spinal", "c-spine", "stabilization", "head", "neck")),
        CheckboxItem("avpu", "Determines responsiveness (AVPU) and consent", PRIMARY_SURVEY,
                     ("avpu", "responsive", "alert", "verbal", "pain", "unresponsive", "consent")),
        CheckboxItem("hemorrhage", "Manages massive hemorrhage if present", PRIMARY_SURVEY,
                     ("bleeding", "hemorrhage", "blood", "tourniquet", "pressure")),
        CheckboxItem("airway", "Airway assessment and management", PRIMARY_SURVEY,
                     ("airway", "open airway", "jaw thrust", "head tilt", "chin lift")),
        CheckboxItem("breathing", "Breathing assessment and intervention", PRIMARY_SURVEY,
                     ("breathing", "ventilation", "bvm", "bag mask", "respiratory")),
        CheckboxItem("oxygen", "SpO2 and oxygen therapy", PRIMARY_SURVEY,
                     ("spo2", "pulse ox", "oxygen", "o2", "nasal cannula", "nrb")),
        CheckboxItem("pulse", "Pulse assessment", PRIMARY_SURVEY,
                     ("pulse", "heart rate", "radial", "carotid", "brachial")),
        CheckboxItem("skin", "Skin assessment", PRIMARY_SURVEY,
                     ("skin", "color", "temperature", "condition", "pale", "cyanotic")),
        CheckboxItem("cpr", "Recognizes cardiac arrest and begins CPR", PRIMARY_SURVEY,
                     ("cardiac arrest", "cpr", "chest compressions", "no pulse")),
        CheckboxItem("transport", "States transport urgency/ALS need", PRIMARY_SURVEY,
                     ("transport", "als", "priority", "urgent", "emergent")),
    ),
    scored_sections=(
        ScoredSection(
            "hpi", "History of Present Illness",
            (
                "not attempted",
                "obtains an HPI that is incomplete or not aligned with the patient's complaint",
                "obtains a complete HPI using an appropriate standard mnemonic",
                "obtains a thorough HPI structured around the DDX",
            ),
            ("onset", "provocation", "quality", "radiation", "severity", "time", "opqrst", "history"),
            score_hpi,
        ),
        ScoredSection(
            "pmh", "Past Medical History",
            (
                "not attempted",
                "obtains an incomplete SAMPLE history",
                "obtains a complete SAMPLE history",
                "obtains a thorough PMHx structured around the DDX",
            ),
            ("sample", "allergies", "medications", "past medical", "last meal", "events"),
            score_pmh,
        ),
        ScoredSection(
            "vitals", "Vital Signs",
            (
                "not attempted",
                "obtains incomplete vital signs or fails to acknowledge a finding outside of normal limits",
                "obtains complete vital signs (HR, RR, SBP/DBP, Temp, SpO2) and acknowledges abnormal findings",
                "obtains initial and repeat vital signs and interprets trends within the context of the "
                "patient's condition",
            ),
            ("vital signs", "blood pressure", "heart rate", "respiratory rate", "temperature", "pulse ox"),
            score_vitals,
        ),
        ScoredSection(
            "physicalExam", "Physical Exam",
            (
                "not attempted",
                "physical exam is incomplete for complaint or performed with poor technique",
                "physical exam is adequate for complaint and performed with proper technique",
                "well-performed physical exam is structured around DDX and integrated into patient assessment",
            ),
            ("physical exam", "assessment", "palpate", "auscultate", "inspect", "examine"),
            score_physical_exam,
        ),
        ScoredSection(
            "medicalManagement", "Medical Management",
            (
                "orders or performs an inappropriate or harmful intervention",
                "fails to appropriately manage patient's condition and/or reassess patient",
                "completes all required scenario-specific interventions and reassesses patient",
                "confidently manages all aspects of patient's condition and continuously reassesses for changes",
            ),
            ("treatment", "intervention", "medication", "therapy", "management", "reassess"),
            score_medical_management,
        ),
        ScoredSection(
            "patientInteraction", "Provider-Patient Interaction",
            (
                "exhibits inappropriate or unprofessional behavior",
                "is impersonal and/or demonstrates limited engagement with patient",
                "maintains professional affect, communicates clearly, and acknowledges patient needs",
                "establishes patient rapport and demonstrates therapeutic communication",
            ),
            ("communication", "rapport", "professional", "empathy", "bedside manner"),
            score_patient_interaction,
        ),
        ScoredSection(
            "hospitalRadio", "Hospital Radio Notification",
            (
                "not attempted",
                "incomplete, disorganized, inaccurate, or over 1 minute in duration",
                "contains all relevant information, is logically organized, and is under 1 minute in duration",
                "contains only the relevant information and is under 30 seconds in duration",
            ),
            ("hospital", "radio", "notification", "report", "eta"),
            score_hospital_radio,
        ),
        ScoredSection(
            "handover", "Handover Report",
            (
                "not attempted",
                "incomplete, disorganized, or inaccurate",
                "contains all relevant information and is logically organized",
                "contains only the relevant information organized around the patient complaint and "
                "field impression",
            ),
            ("handover", "report", "transfer of care", "giving report"),
            score_handover,
        ),
        ScoredSection(
            "disposition", "Disposition",
            (
                "not attempted",
                "incomplete or inappropriate",
                "states appropriate field impression and transport destination",
                "comprehensive disposition with clear reasoning",
            ),
            ("field impression", "transport", "destination", "priority", "disposition"),
            score_disposition,
        ),
        ScoredSection(
            "leadership", "Scene and Resource Management",
            (
                "compromises safety or acts unprofessionally towards other providers",
                "demonstrates minimal situational awareness or ineffectively utilizes partner(s)",
                "manages scene hazards, delegates tasks appropriately, and requests resources as required",
                "displays continuous situational awareness and utilizes partner(s) to provide collaborative "
                "patient care",
            ),
            ("leadership", "delegation", "resources", "partner", "teamwork", "scene management"),
            score_leadership,
        ),
    ),
)


# ============================================
# RESULTS
# ============================================

@dataclass(frozen=True)
class CheckboxResult:
    description: str
    completed: bool
    category: str

    def to_dict(self) -> Dict[str, Any]:
        return {"description": self.description, "completed": self.completed, "category": self.category}


@dataclass(frozen=True)
class SectionResult:
    score: int
    name: str
    criteria_text: str
    feedback: Tuple[str, ...] = ()
    max_score: int = 3
    exam_assessment_enhanced: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "max_score": self.max_score,
            "name": self.name,
            "criteria_text": self.criteria_text,
            "feedback": list(self.feedback),
            "exam_assessment_enhanced": self.exam_assessment_enhanced,
        }


@dataclass(frozen=True)
class TimeManagement:
    time_spent: float
    time_limit: int

    @property
    def passed(self) -> bool:
        return self.time_spent <= self.time_limit

    @property
    def feedback(self) -> str:
        if self.passed:
            return "Completed within time limit"
        return f"Exceeded time limit by {self.time_spent - self.time_limit} minutes"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "time_spent": self.time_spent,
            "time_limit": self.time_limit,
            "passed": self.passed,
            "feedback": self.feedback,
        }


@dataclass(frozen=True)
class RubricResult:
    """
    Graded encounter.

    overall_pass and total_score are derived from the stored parts, so a
    result can never claim a pass its parts do not support.
    """
    checkbox_items: Mapping[str, CheckboxResult]
    scored_sections: Mapping[str, SectionResult]
    time_management: TimeManagement
    exam_assessment: Mapping[str, Any] = field(default_factory=dict)
    minimum_section_score: int = 2

    def __post_init__(self):
        for name in ("checkbox_items", "scored_sections", "exam_assessment"):
            object.__setattr__(self, name, MappingProxyType(dict(getattr(self, name))))

    @property
    def total_score(self) -> int:
        return sum(s.score for s in self.scored_sections.values())

    @property
    def max_score(self) -> int:
        return sum(s.max_score for s in self.scored_sections.values())

    @property
    def all_checkboxes_completed(self) -> bool:
        return all(item.completed for item in self.checkbox_items.values())

    @property
    def all_sections_minimum(self) -> bool:
        return all(s.score >= self.minimum_section_score for s in self.scored_sections.values())

    @property
    def overall_pass(self) -> bool:
        return self.all_checkboxes_completed and self.all_sections_minimum and self.time_management.passed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checkbox_items": {k: v.to_dict() for k, v in self.checkbox_items.items()},
            "scored_sections": {k: v.to_dict() for k, v in self.scored_sections.items()},
            "time_management": self.time_management.to_dict(),
            "exam_assessment": dict(self.exam_assessment),
            "overall_pass": self.overall_pass,
            "total_score": self.total_score,
            "max_score": self.max_score,
        }


# ============================================
# ENGINE
# ============================================

class GradingEngine:
    """Pure transcript grader over an immutable rubric."""

    def __init__(self, rubric: Rubric = EMED111_RUBRIC):
        self.rubric = rubric

    def grade(
        self,
        transcript: Any,
        metadata: Optional[ScenarioMetadata] = None,
        time_spent_minutes: float = 0,
        exam_sub_score: Optional[float] = None,
        exam_assessment: Optional[Dict[str, Any]] = None
    ) -> RubricResult:
        """
        Grade an encounter transcript.

        Args:
            transcript: TranscriptTurns or role/text dicts; malformed entries are skipped
            metadata: Scenario metadata, for logging only
            time_spent_minutes: Whole minutes the trainee used
            exam_sub_score: Exam assessment percentage 0-100, blended into the physical exam
            exam_assessment: Exam assessment details, carried into the result

        Returns:
            RubricResult
        """
        turns = parse_transcript(transcript)
        text = TraineeText(turns)

        if isinstance(time_spent_minutes, bool) or not isinstance(time_spent_minutes, (int, float)):
            logger.warning("Ignoring malformed time spent %r", time_spent_minutes)
            time_spent_minutes = 0

        checkbox_items = {
            item.id: CheckboxResult(item.description, text.has_any(item.keywords), item.category)
            for item in self.rubric.checkbox_items
        }

        scored_sections = {}
        for section in self.rubric.scored_sections:
            score = _clamp_score(section.scorer(text), section.max_score)
            enhanced = section.id == "physicalExam" and exam_sub_score is not None
            if enhanced:
                score = blend_exam_score(score, exam_sub_score, section.max_score)
            scored_sections[section.id] = SectionResult(
                score=score,
                name=section.name,
                criteria_text=section.criteria[score],
                feedback=tuple(self.section_feedback(text, section, score)),
                max_score=section.max_score,
                exam_assessment_enhanced=enhanced,
            )

        result = RubricResult(
            checkbox_items=checkbox_items,
            scored_sections=scored_sections,
            time_management=TimeManagement(time_spent_minutes, self.rubric.time_limit),
            exam_assessment=dict(exam_assessment or {}),
            minimum_section_score=self.rubric.minimum_section_score,
        )

        logger.info(
            "Grading complete (%s): %d/%d, pass=%s",
            metadata.category.value if metadata else "unknown",
            result.total_score, result.max_score, result.overall_pass
        )
        return result

    @staticmethod
    def section_feedback(text: TraineeText, section: ScoredSection, score: int) -> List[str]:
        if score == 0:
            feedback = [f"{section.name} was not attempted or not evident in the conversation."]
        elif score == 1:
            feedback = [f"{section.name} was attempted but incomplete or poorly executed."]
        elif score == 2:
            feedback = [f"{section.name} was adequately performed."]
        else:
            feedback = [f"{section.name} was excellently performed."]

        if not text.has_any(section.keywords):
            feedback.append(f"Consider including: {', '.join(section.keywords[:3])}")
        return feedback


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def blend_exam_score(transcript_score: int, exam_percentage: float, max_score: int = 3) -> int:
    """
    Blend the transcript physical-exam score with the exam assessment.

    The exam percentage is mapped onto 0-max_score and weighted 60/40
    against the transcript score.

    Examples:
        (1, 100) -> round(3 * 0.6 + 1 * 0.4) = 2
        (3, 0) -> round(0 + 1.2) = 1
    """
    exam_score = round_half_up(exam_percentage / 100 * max_score)
    return _clamp_score(round_half_up(exam_score * 0.6 + transcript_score * 0.4), max_score)


def _clamp_score(score: int, max_score: int) -> int:
    return min(max_score, max(0, int(score)))


# ============================================
# FEEDBACK REPORT
# ============================================

ENDING_REASON_TEXT = {
    "handover": "Handover report provided",
    "manual": "Manual scenario termination",
    "timeout": "{limit}-minute time limit reached",
}


@dataclass(frozen=True)
class FeedbackReport:
    result: RubricResult
    percentage: int
    checkbox_completed: int
    checkbox_total: int
    missing_items: Tuple[str, ...]
    low_sections: Tuple[str, ...]
    strengths: Tuple[str, ...]
    areas_for_improvement: Tuple[str, ...]
    recommendations: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        tm = self.result.time_management
        return {
            "summary": {
                "total_score": self.result.total_score,
                "max_score": self.result.max_score,
                "percentage": self.percentage,
                "pass": self.result.overall_pass,
                "time_spent": tm.time_spent,
                "time_limit": tm.time_limit,
            },
            "checkbox_items": {
                "completed": self.checkbox_completed,
                "total": self.checkbox_total,
                "missing": list(self.missing_items),
            },
            "low_sections": list(self.low_sections),
            "strengths": list(self.strengths),
            "areas_for_improvement": list(self.areas_for_improvement),
            "recommendations": list(self.recommendations),
        }


def generate_feedback_report(result: RubricResult) -> FeedbackReport:
    """Summarize a RubricResult into strengths, gaps and recommendations."""
    missing = [item.description for item in result.checkbox_items.values() if not item.completed]
    low = [s for s in result.scored_sections.values() if s.score < result.minimum_section_score]

    recommendations = [f"Critical: Complete {description}" for description in missing]
    recommendations += [f"Improve {s.name}: {s.criteria_text}" for s in low]
    if not result.time_management.passed:
        recommendations.append("Work on time management - practice completing assessments more efficiently")

    strengths = [f"Excellent {s.name}" for s in result.scored_sections.values() if s.score == s.max_score]
    if result.all_checkboxes_completed:
        strengths.append("Completed all critical assessment items")
    if result.time_management.passed:
        strengths.append("Good time management")

    areas = [s.name for s in low]
    for item in result.checkbox_items.values():
        if not item.completed and item.category not in areas:
            areas.append(item.category)

    max_score = result.max_score
    percentage = round_half_up(result.total_score / max_score * 100) if max_score else 0

    return FeedbackReport(
        result=result,
        percentage=percentage,
        checkbox_completed=len(result.checkbox_items) - len(missing),
        checkbox_total=len(result.checkbox_items),
        missing_items=tuple(missing),
        low_sections=tuple(s.name for s in low),
        strengths=tuple(strengths),
        areas_for_improvement=tuple(areas),
        recommendations=tuple(recommendations),
    )


def format_feedback_message(
    report: FeedbackReport,
    ending_reason: Optional[str] = None,
    handover_feedback: Optional[Sequence[str]] = None
) -> str:
    """Render the debrief shown to the trainee when a scenario ends."""
    result = report.result
    tm = result.time_management

    def mark(ok: bool) -> str:
        return "✅" if ok else "❌"

    lines = [
        f"**Overall Result: {mark(result.overall_pass)} {'PASS' if result.overall_pass else 'FAIL'}**",
        f"**Total Score: {result.total_score}/{result.max_score} ({report.percentage}%)**",
        f"**Time: {tm.time_spent}/{tm.time_limit} minutes**",
        "",
        "**Pass Requirements:**",
        f"- All Critical Items: {mark(result.all_checkboxes_completed)} "
        f"({report.checkbox_completed}/{report.checkbox_total})",
        f"- All Sections ≥{result.minimum_section_score}: {mark(result.all_sections_minimum)}",
        f"- Time Management: {mark(tm.passed)}",
        "",
        "**Section Scores:**",
    ]
    for section in result.scored_sections.values():
        lines.append(
            f"{mark(section.score >= result.minimum_section_score)} **{section.name}**: "
            f"{section.score}/{section.max_score}"
        )
    lines.append("")

    blocks = (
        ("**Missing Critical Items:**", report.missing_items),
        ("**Strengths:**", report.strengths),
        ("**Areas for Improvement:**", report.areas_for_improvement),
        ("**Recommendations:**", report.recommendations),
        ("**Handover Report Analysis:**", tuple(handover_feedback or ())),
    )
    for title, entries in blocks:
        if entries:
            lines.append(title)
            lines.extend(f"- {entry}" for entry in entries)
            lines.append("")

    if ending_reason:
        reason_text = ENDING_REASON_TEXT.get(ending_reason, "Unknown reason").format(limit=tm.time_limit)
        lines.append(f"*Scenario ended due to: {reason_text}*")

    return "\n".join(lines).rstrip()
