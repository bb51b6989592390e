# EMT Sim Core Modules
from .scenario import (
    ScenarioCategory,
    Difficulty,
    ConsciousnessLevel,
    Role,
    PatientProfile,
    ScenarioMetadata,
    TranscriptTurn,
    parse_category,
    parse_difficulty,
    parse_transcript
)
from .action_recognizer import ActionRecognizer, ActionType, Action, detect_vitals_request
from .contraindications import ContraindicationValidator, ValidationResult
from .patient_simulator import PatientSimulator, VitalsSnapshot
from .scenario_ending import ScenarioEndingManager, ScenarioLifecycle, EndReason
from .grading import (
    GradingEngine,
    RubricResult,
    EMED111_RUBRIC,
    generate_feedback_report,
    format_feedback_message
)
from .exam_assessment import ExamAssessmentManager, detect_exam_intent
from .patient_responder import PatientResponder
from .environment import EnvironmentalManager, SceneEnvironment, parse_weather, parse_scene_hazard
from .session import ScenarioSession, SessionStore, TurnOutcome
