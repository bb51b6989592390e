"""
Conversation loop for one EMT Sim encounter.
Routes each trainee utterance through lifecycle, exam quiz, recognition,
contraindication checks and the patient simulator.
"""

import logging
import re
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from . import config
from .action_recognizer import (
    UNSPECIFIED,
    Action,
    ActionRecognizer,
    ActionType,
    AssessmentDetails,
    EquipmentDetails,
    MedicationDetails,
    PositioningDetails,
    TransportDetails,
    VitalCheckDetails,
    detect_vitals_request,
)
from .contraindications import ContraindicationValidator, ValidationResult
from .environment import EnvironmentalManager, SceneEnvironment
from .exam_assessment import (
    ExamAssessmentManager,
    ExamAssessmentResult,
    QuestionView,
    detect_exam_intent,
)
from .grading import FeedbackReport, GradingEngine, RubricResult, format_feedback_message, generate_feedback_report
from .patient_simulator import PatientSimulator
from .region_findings import (
    detect_pulse_skin_request,
    detect_region_checks,
    format_pulse_skin_response,
    format_region_findings,
)
from .scenario import ConsciousnessLevel, Role, ScenarioMetadata, TranscriptTurn
from .scenario_ending import EndingCheck, EndReason, ScenarioEndingManager, ScenarioLifecycle
from .text_normalizer import normalize_to_ascii_lower

logger = logging.getLogger(__name__)

NEXT_STEP = "Awaiting your next step."
ENDED_REPLY = "This scenario has ended. Start a new session to practice again."
DEFAULT_FINDINGS = "Examination completed. Normal findings noted throughout the assessed areas."

# Monitoring devices that report a reading as soon as they are placed
EQUIPMENT_READINGS = (
    ("Pulse oximeter", re.compile(
        r"(?:place|put|apply|attach)\s+(?:a\s+|the\s+|this\s+)?(?:pulse\s+)?(?:ox\b|oximeter)"
    ), "oxygen saturation"),
    ("Blood pressure cuff", re.compile(
        r"(?:place|put|apply|wrap)\s+(?:a\s+|the\s+)?(?:bp\s+|blood pressure\s+)?cuff"
    ), "blood pressure"),
    ("Cardiac monitor", re.compile(
        r"(?:place|attach|connect|hook up)\s+(?:a\s+|the\s+)?(?:cardiac\s+)?monitor"
    ), "heart rate"),
)

# Utterances addressed to the patient rather than describing a procedure
PATIENT_CONVERSATION_PATTERNS = tuple(re.compile(p) for p in (
    r"^(hi|hello|hey)\b",
    r"\bmy name is\b",
    r"\bcall me\b",
    r"\b(emt|paramedic)\b.*\bhere\b",
    r"\bwith\s+(the\s+)?ambulance",
    r"\bhow\s+are\s+you\s+(doing|feeling)",
    r"\bwhat'?s\s+your\s+name|\bwhat\s+is\s+your\s+name|\byour\s+name\b",
    r"\bhow\s+old\s+are\s+you",
    r"\bwhat\s+happened",
    r"\bcan\s+you\s+tell\s+me\b",
    r"\bwhen\s+did\s+(it|this|that|the|your)\b.*\b(start|begin)",
    r"\bhave\s+you\s+had\s+this\s+before",
    r"\bare\s+you\s+allergic|\ballergies\b",
    r"\bdo\s+you\s+take\s+any|\bwhat\s+medications",
    r"\bmedical\s+history",
    r"\bwhere\s+does\s+it\s+hurt",
    r"\bwhat\s+does\s+the\s+pain\s+feel\s+like",
    r"\bon\s+a\s+scale\s+of|\brate\s+your\s+pain",
    r"\bwhat'?s\s+(the\s+problem|going\s+on|wrong)|\bwhat\s+seems\s+to\s+be",
    r"\b(do\s+you\s+remember|do\s+you\s+know)\s+where\s+you\s+are",
    r"\bwhat\s+(city|state|year|day|month|time)\b",
    r"\bwho\s+is\s+(the\s+)?president",
    r"\bdon'?t\s+worry|\bwe'?re\s+(here\s+to|going\s+to)\s+help",
    r"\bcan\s+(you|i)\s+(open|close|lift|raise|move|squeeze|help|assist)",
    r"\bwhat\s+makes\s+(it|this|that)\s+(better|worse)",
    r"\bhow\s+long\s+(have\s+you\s+had|has\s+this\s+been)",
    r"\bwhat\s+were\s+you\s+doing\s+when",
    r"\bintroduce\b",
    r"\bany\s+medical\s+history",
    r"\bwhere\s+are\s+you\b",
    r"\btoday'?s\s+date",
    r"\bwe'?ll\s+get\s+(that|this|you)\s+sorted|\blet'?s\s+get\s+you\s+(sorted|fixed\s+up|taken\s+care\s+of)",
    r"\bplease\s+(open|close|lift|raise|lower|move|turn|show|squeeze)\b",
    r"\b(open|close|lift|raise|squeeze)\s+your\s+(mouth|eyes|hand|arm|leg)",
    r"\bwould\s+you\s+like|\bdo\s+you\s+(want|need)\b|\bcan\s+i\s+get\s+you\s+(a|some|an)\b",
    r"\bdoes\s+anything\s+make\s+(it|this|that)\s+(better|worse)",
))

# Procedure wording that turns a question into an action
ACTION_WORD_PATTERNS = tuple(re.compile(p) for p in (
    r"\b(check|take|get|obtain|measure)\s+(a\s+|the\s+|your\s+|his\s+|her\s+)?"
    r"(vitals|pulse|blood pressure|bp|breathing|temperature|airway|history|iv)\b",
    r"\blisten\s+(to\s+)?(your\s+|the\s+)?(lungs|heart|breathing|chest)",
    r"\bfeel\s+(your\s+|the\s+)?(pulse|for)\b",
    r"\bpalpate\b",
    r"\b(assess|inspect)\s+(your\s+|the\s+)?(airway|breathing|circulation)",
    r"\bopen\s+(your|the)\s+mouth.*(check|airway|look)",
    r"\b(vitals|pulse|blood pressure|bp|heart rate|spo2|o2|oxygen|iv)\b",
    r"\b(give|giving|administer\w*|inject\w*)\b",
    r"\b(transport|immobiliz\w*)\b",
    r"\b(move|lift|position)\s+(the\s+)?patient",
))

# Announcing a step is still talking to the patient
INTENT_PATTERNS = tuple(re.compile(p) for p in (
    r"\bi'?m\s+(going\s+to|gonna)\b",
    r"\bi\s+will\b",
    r"\bi'?ll\b",
    r"\blet\s+me\b",
    r"\bi\s+want\s+to\b",
    r"\bi'?d\s+like\s+to\b",
    r"\b(can|may)\s+i\b",
))

SCENE_SAFETY_REQUEST = re.compile(r"\bscene\b.*\b(safe|safety|hazard)|\bsize\s*-?\s*up\b|\bany\s+hazards\b")


def is_patient_conversation(text: str) -> bool:
    normalized = normalize_to_ascii_lower(text)
    return any(p.search(normalized) for p in PATIENT_CONVERSATION_PATTERNS)


def is_pure_conversation(text: str) -> bool:
    """
    True when the trainee is only talking to the patient.

    Questions that also name a procedure ("can you tell me your pulse") are
    left to the recognizer unless they announce the step rather than do it.

    Examples:
        "Are you allergic to aspirin?" -> True
        "What's your name? Let me check your pulse" -> True
        "On a scale of 1 to 10, and give oxygen" -> False
    """
    normalized = normalize_to_ascii_lower(text)
    if not any(p.search(normalized) for p in PATIENT_CONVERSATION_PATTERNS):
        return False
    if any(p.search(normalized) for p in INTENT_PATTERNS):
        return True
    return not any(p.search(normalized) for p in ACTION_WORD_PATTERNS)


def with_next_step(text: str) -> str:
    return f"{text}\n\n{NEXT_STEP}"


@dataclass
class TurnOutcome:
    """Everything one trainee turn produced."""
    reply: str
    vitals: Dict[str, Any]
    consciousness: ConsciousnessLevel
    elapsed_minutes: int
    action: Optional[Action] = None
    validation: Optional[ValidationResult] = None
    ended: bool = False
    ending: Optional[EndingCheck] = None
    rubric: Optional[RubricResult] = None
    feedback: Optional[FeedbackReport] = None
    exam_question: Optional[QuestionView] = None
    exam_result: Optional[ExamAssessmentResult] = None
    scene_note: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reply": self.reply,
            "vitals": self.vitals,
            "consciousness": self.consciousness.value,
            "elapsed_minutes": self.elapsed_minutes,
            "action": self.action.to_dict() if self.action else None,
            "validation": self.validation.to_dict() if self.validation else None,
            "ended": self.ended,
            "ending": self.ending.to_dict() if self.ending else None,
            "rubric": self.rubric.to_dict() if self.rubric else None,
            "feedback": self.feedback.to_dict() if self.feedback else None,
            "exam_question": self.exam_question.to_dict() if self.exam_question else None,
            "exam_result": self.exam_result.to_dict() if self.exam_result else None,
            "scene_note": self.scene_note,
        }


class ScenarioSession:
    """
    One trainee encounter with one simulated patient.

    Collaborators can be injected; by default each session builds its own so
    that sessions never share mutable state.
    """

    def __init__(
        self,
        metadata: ScenarioMetadata,
        session_id: str,
        start_ms: int,
        recognizer: Optional[ActionRecognizer] = None,
        validator: Optional[ContraindicationValidator] = None,
        simulator: Optional[PatientSimulator] = None,
        ending_manager: Optional[ScenarioEndingManager] = None,
        grading_engine: Optional[GradingEngine] = None,
        exam_manager: Optional[ExamAssessmentManager] = None,
        environment_manager: Optional[EnvironmentalManager] = None,
        responder=None
    ):
        self.metadata = metadata
        self.session_id = session_id
        self.start_ms = start_ms
        self.recognizer = recognizer or ActionRecognizer()
        self.validator = validator or ContraindicationValidator()
        self.simulator = simulator or PatientSimulator()
        self.ending_manager = ending_manager or ScenarioEndingManager(metadata.time_limit_minutes)
        self.grading_engine = grading_engine or GradingEngine()
        self.exam_manager = exam_manager or ExamAssessmentManager()
        self.responder = responder
        self.environment: SceneEnvironment = (environment_manager or EnvironmentalManager()).generate(metadata)

        self.lifecycle = ScenarioLifecycle(start_ms, self.ending_manager)
        self.transcript: List[TranscriptTurn] = []
        self.rubric: Optional[RubricResult] = None
        self.feedback: Optional[FeedbackReport] = None

        self.simulator.initialize(metadata, start_ms)

    @property
    def is_ended(self) -> bool:
        return self.lifecycle.is_ended

    def process_utterance(self, text: str, now_ms: int) -> TurnOutcome:
        """
        Handle one trainee message.

        Args:
            text: Trainee message
            now_ms: Current time, milliseconds since epoch

        Returns:
            TurnOutcome with the reply and the state after the turn
        """
        text = text or ""
        self.transcript.append(TranscriptTurn(Role.TRAINEE, text))

        if self.lifecycle.is_ended:
            return self._outcome(ENDED_REPLY, now_ms, role=Role.SYSTEM)

        check = self.lifecycle.observe(text, now_ms)
        if check.should_end:
            return self._end_scenario(check, text, now_ms)

        # Time passes on every live turn, whatever the turn turns out to be
        self._progress(now_ms)

        exam_outcome = self._handle_exam(text, now_ms)
        if exam_outcome is not None:
            return exam_outcome

        if is_pure_conversation(text):
            return self._outcome(self._patient_dialogue(text), now_ms, scene_note=self.environment.check_impact(text))

        action = self.recognizer.recognize(text)
        logger.info("Session %s: %s (priority %d)", self.session_id, action.type.value, action.priority)

        validation = None
        if self.recognizer.requires_contraindication_check(action):
            validation = self.validator.validate(action, self.metadata.patient_profile)
            if not validation.valid:
                logger.info("Session %s: %s vetoed (%s)", self.session_id, action.details.medication, validation.reason)
                reply = with_next_step(f'"Wait, I need to tell you - {validation.message}"')
                return self._outcome(reply, now_ms, action=action, validation=validation)

        if self._is_intervention(action) and not action.needs_clarification:
            self.simulator.record_intervention(text, now_ms, action)
            self.simulator.update_consciousness(self.metadata, now_ms)

        reply = self._compose_reply(text, action)
        return self._outcome(
            reply, now_ms, action=action, validation=validation,
            scene_note=self.environment.check_impact(text)
        )

    def _progress(self, now_ms: int) -> None:
        self.simulator.update_for_time_progression(self.metadata, now_ms)
        self.simulator.update_consciousness(self.metadata, now_ms)

    # ----------------------------------------
    # reply composition
    # ----------------------------------------

    def _compose_reply(self, text: str, action: Action) -> str:
        normalized = normalize_to_ascii_lower(text)

        for label, pattern, vital in EQUIPMENT_READINGS:
            if pattern.search(normalized):
                return with_next_step(f"{label} placed.\n\n{self.simulator.get_specific_vital(vital)}")

        if SCENE_SAFETY_REQUEST.search(normalized):
            return with_next_step(self.environment.describe_scene_safety())

        pulse_skin = detect_pulse_skin_request(text)
        if pulse_skin.any:
            return with_next_step(format_pulse_skin_response(
                pulse_skin,
                self.metadata,
                self.simulator.get_specific_vital("heart rate"),
                patient_can_answer=self.simulator.consciousness != ConsciousnessLevel.UNCONSCIOUS,
            ))

        vitals_reply = self._vitals_reply(text, action)
        if vitals_reply is not None:
            return vitals_reply

        if action.type in (ActionType.UNKNOWN, ActionType.GENERAL_MEDICAL) and is_patient_conversation(text):
            return self._patient_dialogue(text)

        details = action.details
        regions = detect_region_checks(text)
        if regions and not self._is_intervention(action) and not isinstance(details, TransportDetails):
            return with_next_step(format_region_findings(regions, self.metadata))

        if action.needs_clarification:
            question = self.recognizer.generate_clarification_request(action)
            return with_next_step(f'"{question}"')

        if isinstance(details, (MedicationDetails, EquipmentDetails, PositioningDetails)):
            return with_next_step(acknowledge_intervention(details))

        if isinstance(details, TransportDetails):
            return with_next_step(acknowledge_transport(details))

        if isinstance(details, AssessmentDetails):
            if self.responder is not None:
                return self._patient_dialogue(text)
            return with_next_step(
                f"{details.assessment_type.capitalize()} of the {details.body_region} noted."
            )

        return self._patient_dialogue(text)

    def _vitals_reply(self, text: str, action: Action) -> Optional[str]:
        if action.type not in (ActionType.VITAL_CHECK, ActionType.GENERAL_MEDICAL, ActionType.UNKNOWN):
            return None

        request = detect_vitals_request(text)
        if request.needs_specification:
            return with_next_step('"Which vitals would you like me to check?"')

        readings = [self.simulator.get_specific_vital(name) for name in request.requested]
        if not readings and isinstance(action.details, VitalCheckDetails) and action.details.vital_type != UNSPECIFIED:
            readings = [self.simulator.get_specific_vital(action.details.vital_type)]
        if not readings:
            return None
        return with_next_step("\n".join(readings))

    def _patient_dialogue(self, text: str) -> str:
        fallback = self.simulator.generate_patient_response(text, self.metadata)
        if self.responder is None:
            return fallback
        return self.responder.reply(
            text, self.metadata, self.simulator, self.transcript[:-1], fallback,
            scene=self.environment.context_string()
        )

    @staticmethod
    def _is_intervention(action: Action) -> bool:
        return action.type in (ActionType.MEDICATION_ADMIN, ActionType.EQUIPMENT_USE, ActionType.POSITIONING)

    # ----------------------------------------
    # exam quiz
    # ----------------------------------------

    def _handle_exam(self, text: str, now_ms: int) -> Optional[TurnOutcome]:
        if self.exam_manager.has_active_assessment(self.session_id):
            progress = self.exam_manager.submit_answer(self.session_id, text, now_ms)
            if progress.complete:
                result = progress.result
                findings = DEFAULT_FINDINGS
                if self.responder is not None:
                    findings = self.responder.describe_exam_findings(result.exam_key, self.metadata, DEFAULT_FINDINGS)
                reply = with_next_step(
                    f"Assessment complete! Based on your {result.exam_type.lower()}, "
                    f"here are your examination findings:\n\n{findings}"
                )
                return self._outcome(reply, now_ms, exam_result=result)
            return self._outcome(format_question(progress.next_question), now_ms, exam_question=progress.next_question)

        intent = detect_exam_intent(text)
        if intent is None:
            return None

        self.exam_manager.start_assessment(self.session_id, intent, self.metadata, now_ms)
        question = self.exam_manager.get_current_question(self.session_id)
        acknowledgment = self.exam_manager.generate_acknowledgment_message(intent)
        reply = f"{acknowledgment}\n\n{format_question(question)}"
        return self._outcome(reply, now_ms, exam_question=question)

    # ----------------------------------------
    # ending
    # ----------------------------------------

    def _end_scenario(self, check: EndingCheck, text: str, now_ms: int) -> TurnOutcome:
        exam_result = self.exam_manager.get_assessment_results(self.session_id)
        self.rubric = self.grading_engine.grade(
            self.transcript,
            metadata=self.metadata,
            time_spent_minutes=check.time_spent,
            exam_sub_score=exam_result.overall_score if exam_result else None,
            exam_assessment=exam_result.to_dict() if exam_result else None,
        )
        self.feedback = generate_feedback_report(self.rubric)

        handover_feedback = []
        if check.reason == EndReason.HANDOVER:
            content = self.ending_manager.extract_handover_content(text)
            analysis = self.ending_manager.analyze_handover_quality(content)
            handover_feedback = self.ending_manager.generate_handover_feedback(analysis)

        reply = (
            self.ending_manager.generate_ending_response(check, text)
            + "\n\n"
            + format_feedback_message(self.feedback, check.reason.value, handover_feedback)
        )
        return self._outcome(reply, now_ms, role=Role.SYSTEM)

    def _outcome(self, reply: str, now_ms: int, role: Role = Role.PATIENT, **extra) -> TurnOutcome:
        self.transcript.append(TranscriptTurn(role, reply))
        return TurnOutcome(
            reply=reply,
            vitals=self.simulator.get_current_vitals().to_display_dict(),
            consciousness=self.simulator.consciousness,
            elapsed_minutes=self.simulator.get_elapsed_minutes(now_ms),
            ended=self.lifecycle.is_ended,
            ending=self.lifecycle.ending,
            rubric=self.rubric,
            feedback=self.feedback,
            **extra
        )

    def to_dict(self, now_ms: int) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "scenario": self.metadata.to_dict(),
            "environment": self.environment.to_dict(),
            "ended": self.is_ended,
            "patient": self.simulator.to_dict(now_ms),
            "transcript": [turn.to_dict() for turn in self.transcript],
        }


def format_question(question: QuestionView) -> str:
    return with_next_step(
        f"**Question {question.question_number} of {question.total_questions}:**\n{question.question_text}"
    )


def acknowledge_intervention(details) -> str:
    """
    Objective confirmation of a recorded intervention.

    Examples:
        aspirin, 325 mg, oral -> "Aspirin 325 mg administered (oral)."
        oxygen, 15 LPM -> "Oxygen applied at 15 LPM."
    """
    if isinstance(details, MedicationDetails):
        text = details.medication.capitalize()
        if details.dosage:
            text += f" {details.dosage}"
        text += " administered"
        if details.route:
            text += f" ({details.route})"
        return text + "."

    if isinstance(details, EquipmentDetails):
        text = f"{details.equipment.capitalize()} applied"
        if details.application:
            text += f" at {details.application}"
        return text + "."

    if details.position == UNSPECIFIED:
        return "Patient repositioned."
    return f"Patient positioned {details.position}."


def acknowledge_transport(details: TransportDetails) -> str:
    parts = [p for p in (details.transport_priority, details.destination) if p]
    text = f"Transport decision noted ({', '.join(parts)})." if parts else "Transport decision noted."
    if details.reason:
        text += f"\n\nReason: {details.reason}."
    return text


class SessionStore:
    """In-memory registry of live sessions, keyed by session id."""

    def __init__(self):
        self.sessions: Dict[str, ScenarioSession] = {}

    def create(
        self,
        metadata: ScenarioMetadata,
        session_id: Optional[str] = None,
        now_ms: Optional[int] = None,
        responder=None
    ) -> ScenarioSession:
        session_id = session_id or str(uuid.uuid4())
        if now_ms is None:
            now_ms = config.current_time_ms()

        session = ScenarioSession(metadata, session_id, now_ms, responder=responder)
        self.sessions[session_id] = session
        logger.info("Created session %s (%s)", session_id, metadata.category.value)
        return session

    def get(self, session_id: str) -> Optional[ScenarioSession]:
        return self.sessions.get(session_id)

    def remove(self, session_id: str) -> bool:
        removed = self.sessions.pop(session_id, None)
        if removed is not None:
            logger.info("Removed session %s", session_id)
        return removed is not None

    def __len__(self) -> int:
        return len(self.sessions)
