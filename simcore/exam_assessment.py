"""
Physical exam knowledge checks for EMT Sim.
Quizzes the trainee before exam findings are revealed and scores the answers.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .scenario import ScenarioMetadata
from .text_normalizer import compute_deterministic_int, normalize_to_ascii_lower, pick_deterministic_option

logger = logging.getLogger(__name__)

CATEGORIES = ("anatomy", "pathology", "technique")
MAX_QUESTIONS = 5
MAX_EXTRA_QUESTIONS = 2
POINTS_PER_QUESTION = 3


class ExamType(Enum):
    FOCUSED = "focused"
    RAPID = "rapid"
    SECONDARY = "secondary"


@dataclass(frozen=True)
class ExamQuestion:
    id: str
    category: str
    type: str  # "general", "scenario_general" or "scenario_specific"
    question: str
    expected_elements: Tuple[str, ...]
    scenario_variant: Optional[str] = None
    general_variant: Optional[str] = None


@dataclass(frozen=True)
class QuestionSet:
    exam_type: str
    questions: Tuple[ExamQuestion, ...]


QUESTION_BANK: Mapping[str, QuestionSet] = MappingProxyType({
    "focusedChest": QuestionSet("Focused Physical Exam - Chest", (
        ExamQuestion(
            "chest_anatomy", "anatomy", "scenario_general",
            "What specific anatomical structures are you examining during a focused chest assessment?",
            ("ribs", "sternum", "intercostal spaces", "clavicles", "lung fields", "heart", "chest wall"),
            scenario_variant="For this chest pain patient, what anatomical structures are you focusing on "
                             "during your chest examination?",
        ),
        ExamQuestion(
            "chest_pathology", "pathology", "scenario_specific",
            "What abnormal signs are you looking for when examining the chest of a patient with chest pain "
            "and shortness of breath?",
            ("unequal chest rise", "use of accessory muscles", "cyanosis", "wheezing", "rales",
             "decreased breath sounds", "chest pain on palpation", "irregular heart rhythm"),
            general_variant="What abnormal findings might you discover during chest inspection, palpation, "
                            "and auscultation?",
        ),
        ExamQuestion(
            "chest_technique", "technique", "general",
            "Where exactly do you place your stethoscope for a complete bilateral lung assessment?",
            ("upper lobes bilaterally", "middle lobes", "lower lobes bilaterally", "anterior", "posterior",
             "mid-axillary", "systematic approach"),
            scenario_variant="Describe the specific locations where you would auscultate this patient's lungs.",
        ),
        ExamQuestion(
            "chest_inspection", "technique", "general",
            "What do you observe during visual inspection of the chest before palpation and auscultation?",
            ("chest wall symmetry", "respiratory rate", "breathing pattern", "use of accessory muscles",
             "skin color", "visible deformities", "chest rise equality"),
            scenario_variant="What visual signs would you look for when first exposing this patient's chest?",
        ),
    )),
    "focusedAbdomen": QuestionSet("Focused Physical Exam - Abdomen", (
        ExamQuestion(
            "abdomen_anatomy", "anatomy", "general",
            "What are the four quadrants of the abdomen and what major organs are located in each?",
            ("RUQ: liver, gallbladder, right kidney", "LUQ: spleen, stomach, left kidney",
             "RLQ: appendix, right ovary", "LLQ: sigmoid colon, left ovary", "quadrant system"),
            scenario_variant="Based on this patient's complaint, which abdominal quadrants and organs are you "
                             "focusing on?",
        ),
        ExamQuestion(
            "abdomen_pathology", "pathology", "scenario_general",
            "What abnormal signs are you looking for during abdominal examination?",
            ("guarding", "rigidity", "tenderness", "distension", "masses", "abnormal bowel sounds",
             "rebound tenderness", "discoloration"),
            scenario_variant="For this patient with abdominal pain, what specific abnormal findings are you "
                             "assessing for?",
        ),
        ExamQuestion(
            "abdomen_technique", "technique", "general",
            "What is the correct sequence for abdominal examination and why?",
            ("inspect first", "auscultate second", "palpate last", "light palpation before deep",
             "avoid stimulating bowel sounds", "systematic approach"),
            scenario_variant="Describe the proper technique sequence you would use to examine this patient's "
                             "abdomen.",
        ),
        ExamQuestion(
            "abdomen_palpation", "technique", "general",
            "How do you properly palpate all four quadrants of the abdomen?",
            ("start away from pain", "light then deep palpation", "use fingertips",
             "systematic quadrant approach", "watch patient face", "gentle pressure"),
            scenario_variant="Explain your palpation technique for examining this patient's abdominal pain.",
        ),
    )),
    "rapidTrauma": QuestionSet("Rapid Trauma Assessment", (
        ExamQuestion(
            "rapid_purpose", "anatomy", "general",
            "What body regions must be assessed during a rapid trauma examination?",
            ("head", "neck", "chest", "abdomen", "pelvis", "upper extremities", "lower extremities",
             "posterior"),
            scenario_variant="For this trauma patient, which body regions are you rapidly assessing for "
                             "life-threatening injuries?",
        ),
        ExamQuestion(
            "rapid_pathology", "pathology", "scenario_general",
            "What life-threatening injuries are you looking for during a rapid trauma assessment?",
            ("airway obstruction", "tension pneumothorax", "hemothorax", "massive hemorrhage", "flail chest",
             "pelvic instability", "spinal injuries", "open fractures"),
            scenario_variant="Based on the mechanism of injury for this patient, what critical injuries are you "
                             "rapidly screening for?",
        ),
        ExamQuestion(
            "rapid_technique", "technique", "general",
            "How do you complete a rapid trauma assessment within the 120-second time limit?",
            ("systematic head-to-toe", "look and feel simultaneously", "prioritize life threats",
             "minimal time per region", "expose areas", "palpate for deformities"),
            scenario_variant="Describe your systematic approach for rapidly assessing this trauma patient "
                             "efficiently.",
        ),
        ExamQuestion(
            "rapid_findings", "technique", "general",
            "What are you feeling for when palpating during a rapid trauma exam?",
            ("deformities", "crepitus", "instability", "tenderness", "swelling", "step-offs",
             "abnormal movement"),
            scenario_variant="What specific abnormalities would you palpate for in this trauma patient?",
        ),
    )),
    "fullSecondary": QuestionSet("Full Secondary Assessment", (
        ExamQuestion(
            "secondary_purpose", "anatomy", "general",
            "What is the difference between a rapid trauma exam and a full secondary assessment?",
            ("more detailed examination", "identify minor injuries", "complete head-to-toe",
             "after life threats addressed", "includes neurological assessment", "more time per region"),
            scenario_variant="Now that initial life threats are managed, what additional assessment are you "
                             "performing on this patient?",
        ),
        ExamQuestion(
            "secondary_head", "technique", "general",
            "What specific elements do you assess during a detailed head and neck examination?",
            ("scalp palpation", "facial symmetry", "pupil assessment", "oral cavity", "neck palpation",
             "tracheal position", "jugular veins", "cervical spine"),
            scenario_variant="Describe your detailed head and neck assessment for this patient.",
        ),
        ExamQuestion(
            "secondary_extremities", "technique", "general",
            "What do you assess when examining each extremity during a full secondary exam?",
            ("distal circulation", "sensation", "motor function", "deformities", "swelling", "range of motion",
             "skin integrity", "bilateral comparison"),
            scenario_variant="Explain your systematic approach to examining this patient's extremities for "
                             "injury.",
        ),
        ExamQuestion(
            "secondary_neurological", "pathology", "scenario_general",
            "What neurological assessments are included in a full secondary examination?",
            ("mental status", "glasgow coma scale", "pupil response", "motor response", "sensory response",
             "reflexes", "coordination", "speech"),
            scenario_variant="What neurological signs are you assessing in this patient during your detailed "
                             "examination?",
        ),
        ExamQuestion(
            "secondary_posterior", "technique", "general",
            "How do you safely examine the posterior aspect of a patient during a full secondary assessment?",
            ("log roll technique", "spinal precautions", "multiple providers", "posterior thorax",
             "lumbar spine", "buttocks", "maintain alignment"),
            scenario_variant="Describe how you would safely examine the back of this patient while maintaining "
                             "spinal precautions.",
        ),
    )),
})


# ============================================
# INTENT DETECTION
# ============================================

FOCUSED_PATTERNS = (
    re.compile(r"(?:perform|do|conduct)\s+(?:a\s+)?focused\s+(?:physical\s+)?exam"),
    re.compile(r"(?:want\s+to\s+)?(?:perform|do|examine)\s+(?:a\s+)?focused\s+(?:assessment|exam)"),
    re.compile(r"focused\s+(?:physical\s+)?(?:exam|assessment)"),
)

RAPID_PATTERNS = (
    re.compile(r"(?:perform|do|conduct)\s+(?:a\s+)?rapid\s+(?:trauma\s+)?(?:exam|assessment)"),
    re.compile(r"rapid\s+(?:trauma\s+)?(?:exam|assessment|survey)"),
    re.compile(r"(?:want\s+to\s+)?(?:perform|do)\s+(?:a\s+)?rapid\s+(?:physical\s+)?exam"),
)

SECONDARY_PATTERNS = (
    re.compile(r"(?:perform|do|conduct)\s+(?:a\s+)?(?:full\s+)?secondary\s+(?:exam|assessment)"),
    re.compile(r"(?:full\s+)?secondary\s+(?:exam|assessment|survey)"),
    re.compile(r"(?:want\s+to\s+)?(?:perform|do)\s+(?:a\s+)?(?:full\s+)?secondary\s+(?:physical\s+)?exam"),
    re.compile(r"detailed\s+(?:physical\s+)?(?:exam|assessment)"),
)

# Checked in order; the first region mentioned in this list wins
EXAM_REGIONS = (
    ("chest", re.compile(r"\b(?:chest|thorax|lung|respiratory|breathing|heart|cardiac)\b")),
    ("abdomen", re.compile(r"\b(?:abdomen|abdominal|belly|stomach|gut)\b")),
    ("head", re.compile(r"\b(?:head|skull|cranial|face|facial)\b")),
    ("neck", re.compile(r"\b(?:neck|cervical|throat)\b")),
    ("extremities", re.compile(r"\b(?:arm|leg|extremity|extremities|limb|hand|foot)\b")),
    ("back", re.compile(r"\b(?:back|spine|spinal|posterior)\b")),
    ("pelvis", re.compile(r"\b(?:pelvis|pelvic|hip)\b")),
)

FULL_BODY = "full_body"

ACKNOWLEDGMENTS = MappingProxyType({
    ExamType.FOCUSED: "I'll guide you through a focused physical examination assessment. This will help "
                      "evaluate your knowledge before providing examination findings.",
    ExamType.RAPID: "I'll guide you through a rapid trauma assessment evaluation. This will test your "
                    "knowledge of systematic trauma examination before providing findings.",
    ExamType.SECONDARY: "I'll guide you through a full secondary assessment evaluation. This will assess your "
                        "understanding of detailed examination techniques before providing findings.",
})


@dataclass(frozen=True)
class ExamIntent:
    type: ExamType
    region: str
    exam_key: str

    def to_dict(self) -> Dict[str, str]:
        return {"type": self.type.value, "region": self.region, "exam_key": self.exam_key}


def detect_exam_intent(text: str) -> Optional[ExamIntent]:
    """
    Detect a request to perform a structured physical exam.

    Examples:
        "I'll do a focused exam of the abdomen" -> focused / abdomen / focusedAbdomen
        "perform a focused exam" -> focused / chest / focusedChest
        "rapid trauma assessment" -> rapid / full_body / rapidTrauma
    """
    normalized = normalize_to_ascii_lower(text)

    if any(p.search(normalized) for p in FOCUSED_PATTERNS):
        for region, pattern in EXAM_REGIONS:
            if pattern.search(normalized):
                return ExamIntent(ExamType.FOCUSED, region, f"focused{region.capitalize()}")
        return ExamIntent(ExamType.FOCUSED, "chest", "focusedChest")

    if any(p.search(normalized) for p in RAPID_PATTERNS):
        return ExamIntent(ExamType.RAPID, FULL_BODY, "rapidTrauma")

    if any(p.search(normalized) for p in SECONDARY_PATTERNS):
        return ExamIntent(ExamType.SECONDARY, FULL_BODY, "fullSecondary")

    return None


# ============================================
# ASSESSMENT STATE
# ============================================

@dataclass(frozen=True)
class QuestionView:
    question_number: int
    total_questions: int
    question_text: str
    question_id: str
    category: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "question_number": self.question_number,
            "total_questions": self.total_questions,
            "question_text": self.question_text,
            "question_id": self.question_id,
            "category": self.category,
        }


@dataclass(frozen=True)
class AnswerRecord:
    question_id: str
    question_text: str
    category: str
    answer: str
    timestamp_ms: int
    score: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "question_id": self.question_id,
            "question_text": self.question_text,
            "category": self.category,
            "answer": self.answer,
            "timestamp_ms": self.timestamp_ms,
            "score": self.score,
        }


@dataclass
class ActiveAssessment:
    session_id: str
    exam_type: str
    intent: ExamIntent
    questions: Tuple[ExamQuestion, ...]
    start_ms: int
    use_scenario_variants: bool = False
    current_index: int = 0
    answers: List[AnswerRecord] = field(default_factory=list)


@dataclass(frozen=True)
class ExamAssessmentResult:
    session_id: str
    exam_type: str
    exam_key: str
    total_questions: int
    category_scores: Mapping[str, Tuple[int, int]]  # category -> (score, max_score)
    total_score: int
    max_total_score: int
    completion_time_ms: int
    answers: Tuple[AnswerRecord, ...]

    @property
    def overall_score(self) -> int:
        """Percentage 0-100, rounded half up."""
        if self.max_total_score <= 0:
            return 0
        return int(self.total_score * 100 / self.max_total_score + 0.5)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "exam_type": self.exam_type,
            "exam_key": self.exam_key,
            "total_questions": self.total_questions,
            "category_scores": {
                k: {"score": score, "max_score": max_score} for k, (score, max_score) in self.category_scores.items()
            },
            "overall_score": self.overall_score,
            "total_score": self.total_score,
            "max_total_score": self.max_total_score,
            "completion_time_ms": self.completion_time_ms,
            "answers": [a.to_dict() for a in self.answers],
        }


@dataclass(frozen=True)
class ExamProgress:
    """Outcome of submitting an answer."""
    complete: bool
    next_question: Optional[QuestionView] = None
    result: Optional[ExamAssessmentResult] = None


def grade_answer(answer_text: str, expected_elements: Tuple[str, ...]) -> int:
    """
    Score one answer by the share of expected elements it mentions.

    >= 80% -> 3, >= 60% -> 2, >= 40% -> 1, else 0.
    """
    if not answer_text or not expected_elements:
        return 0

    normalized = normalize_to_ascii_lower(answer_text)
    found = sum(1 for element in expected_elements if normalize_to_ascii_lower(element) in normalized)
    completeness = found / len(expected_elements)

    if completeness >= 0.8:
        return 3
    if completeness >= 0.6:
        return 2
    if completeness >= 0.4:
        return 1
    return 0


class ExamAssessmentManager:
    """Per-session exam quizzes. Sessions never share state."""

    def __init__(self, question_bank: Mapping[str, QuestionSet] = QUESTION_BANK):
        self.question_bank = question_bank
        self.active: Dict[str, ActiveAssessment] = {}
        self.results: Dict[str, ExamAssessmentResult] = {}

    def start_assessment(
        self,
        session_id: str,
        intent: ExamIntent,
        metadata: Optional[ScenarioMetadata],
        now_ms: int
    ) -> ActiveAssessment:
        """
        Start a quiz for the detected exam.

        Focused exams on regions without their own question set use the
        chest set. Any earlier unfinished quiz for the session is replaced.
        """
        question_set = self.question_bank.get(intent.exam_key)
        if question_set is None:
            question_set = self.question_bank["focusedChest"]

        assessment = ActiveAssessment(
            session_id=session_id,
            exam_type=question_set.exam_type,
            intent=intent,
            questions=self.select_questions(session_id, intent.exam_key, question_set.questions),
            start_ms=now_ms,
            use_scenario_variants=metadata is not None,
        )
        self.active[session_id] = assessment
        logger.info("Started exam assessment %s for session %s", question_set.exam_type, session_id)
        return assessment

    @staticmethod
    def select_questions(
        session_id: str,
        exam_key: str,
        questions: Tuple[ExamQuestion, ...]
    ) -> Tuple[ExamQuestion, ...]:
        """
        Pick one question per category plus up to two extras, at most five.

        Selection and order are seeded by the session id, so the same session
        always gets the same quiz.
        """
        selected = []
        for category in CATEGORIES:
            in_category = [q for q in questions if q.category == category]
            choice = pick_deterministic_option(f"{session_id}:{exam_key}:{category}", in_category)
            if choice is not None:
                selected.append(choice)

        remaining = [q for q in questions if q not in selected]
        extra = min(MAX_EXTRA_QUESTIONS, max(0, MAX_QUESTIONS - len(selected)))
        for i in range(extra):
            if not remaining:
                break
            index = compute_deterministic_int(f"{session_id}:{exam_key}:extra{i}", 0, len(remaining) - 1)
            selected.append(remaining.pop(index))

        selected.sort(key=lambda q: compute_deterministic_int(f"{session_id}:{q.id}", 0, 2 ** 31 - 1))
        return tuple(selected)

    def get_current_question(self, session_id: str) -> Optional[QuestionView]:
        assessment = self.active.get(session_id)
        if assessment is None or assessment.current_index >= len(assessment.questions):
            return None

        question = assessment.questions[assessment.current_index]
        text = question.question
        if assessment.use_scenario_variants and "scenario" in question.type and question.scenario_variant:
            text = question.scenario_variant

        return QuestionView(
            question_number=assessment.current_index + 1,
            total_questions=len(assessment.questions),
            question_text=text,
            question_id=question.id,
            category=question.category,
        )

    def submit_answer(self, session_id: str, answer_text: str, now_ms: int) -> Optional[ExamProgress]:
        """Grade the answer to the current question; completes the quiz after the last one."""
        assessment = self.active.get(session_id)
        if assessment is None or assessment.current_index >= len(assessment.questions):
            return None

        question = assessment.questions[assessment.current_index]
        assessment.answers.append(AnswerRecord(
            question_id=question.id,
            question_text=question.question,
            category=question.category,
            answer=answer_text,
            timestamp_ms=now_ms,
            score=grade_answer(answer_text, question.expected_elements),
        ))
        assessment.current_index += 1
        logger.debug("Exam answer for %s scored %d", question.id, assessment.answers[-1].score)

        if assessment.current_index >= len(assessment.questions):
            return ExamProgress(complete=True, result=self._complete(session_id, now_ms))

        return ExamProgress(complete=False, next_question=self.get_current_question(session_id))

    def _complete(self, session_id: str, now_ms: int) -> ExamAssessmentResult:
        assessment = self.active.pop(session_id)

        category_scores = {category: (0, 0) for category in CATEGORIES}
        for answer in assessment.answers:
            score, max_score = category_scores.get(answer.category, (0, 0))
            category_scores[answer.category] = (score + answer.score, max_score + POINTS_PER_QUESTION)

        result = ExamAssessmentResult(
            session_id=session_id,
            exam_type=assessment.exam_type,
            exam_key=assessment.intent.exam_key,
            total_questions=len(assessment.questions),
            category_scores=category_scores,
            total_score=sum(a.score for a in assessment.answers),
            max_total_score=POINTS_PER_QUESTION * len(assessment.answers),
            completion_time_ms=now_ms - assessment.start_ms,
            answers=tuple(assessment.answers),
        )
        self.results[session_id] = result
        logger.info("Completed exam assessment %s: %d%%", assessment.exam_type, result.overall_score)
        return result

    def has_active_assessment(self, session_id: str) -> bool:
        return session_id in self.active

    def get_assessment_results(self, session_id: str) -> Optional[ExamAssessmentResult]:
        return self.results.get(session_id)

    def clear_session_data(self, session_id: str) -> None:
        self.active.pop(session_id, None)
        self.results.pop(session_id, None)

    @staticmethod
    def generate_acknowledgment_message(intent: ExamIntent) -> str:
        message = ACKNOWLEDGMENTS.get(intent.type, ACKNOWLEDGMENTS[ExamType.FOCUSED])
        if intent.region and intent.region != FULL_BODY:
            return f"{message}\n\nFocus area: {intent.region.capitalize()}"
        return message
