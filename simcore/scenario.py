"""
Scenario and transcript models for EMT Sim.
Resolves loose scenario payloads into explicit dataclasses with defaults.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from . import config
from .text_normalizer import normalize_to_ascii_lower

logger = logging.getLogger(__name__)


class ScenarioCategory(Enum):
    CARDIAC = "cardiac"
    RESPIRATORY = "respiratory"
    TRAUMA = "trauma"
    NEUROLOGIC = "neurologic"
    METABOLIC = "metabolic"
    ALLERGIC = "allergic"
    GENERAL = "general"


class Difficulty(Enum):
    NOVICE = "novice"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


class ConsciousnessLevel(Enum):
    ALERT = "alert"
    ALTERED = "altered"
    UNCONSCIOUS = "unconscious"


class Role(Enum):
    TRAINEE = "trainee"
    PATIENT = "patient"
    SYSTEM = "system"


@dataclass
class PatientProfile:
    """Patient profile supplied by the scenario generator. Read-only to the core."""
    name: str = ""
    age: Optional[int] = None
    gender: str = ""
    medical_history: List[str] = field(default_factory=list)
    medications: List[str] = field(default_factory=list)
    allergies: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PatientProfile":
        """Build a profile from camelCase or snake_case keys, dropping malformed entries."""
        if not isinstance(data, dict):
            return cls()

        return cls(
            name=str(data.get("name") or ""),
            age=_parse_age(data.get("age")),
            gender=str(data.get("gender") or data.get("sex") or ""),
            medical_history=_string_list(data.get("medical_history", data.get("medicalHistory"))),
            medications=_string_list(data.get("medications")),
            allergies=_string_list(data.get("allergies")),
        )

    @classmethod
    def from_json(cls, path: str) -> "PatientProfile":
        """Load patient profile from JSON file."""
        with open(path, "r") as f:
            data = json.load(f)
        return cls.from_dict(data.get("patient", data))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "age": self.age,
            "gender": self.gender,
            "medical_history": list(self.medical_history),
            "medications": list(self.medications),
            "allergies": list(self.allergies),
        }

    def to_context_string(self) -> str:
        """Convert patient profile to context string for prompts."""
        lines = [f"PATIENT: {self.name or 'Unknown'}"]
        if self.age is not None:
            lines.append(f"Age: {self.age}")
        if self.gender:
            lines.append(f"Gender: {self.gender}")

        lines.append("\nMEDICAL HISTORY:")
        lines.append(f"Allergies: {', '.join(self.allergies) if self.allergies else 'NKDA'}")
        lines.append(f"Medications: {', '.join(self.medications) if self.medications else 'none'}")
        if self.medical_history:
            lines.append(f"Past medical: {', '.join(self.medical_history)}")

        return "\n".join(lines)


@dataclass
class ScenarioMetadata:
    """Complete scenario configuration, resolved once at session start."""
    category: ScenarioCategory = ScenarioCategory.GENERAL
    difficulty: Difficulty = Difficulty.INTERMEDIATE
    patient_profile: PatientProfile = field(default_factory=PatientProfile)

    # Pre-generated vitals, keyed by VitalsSnapshot field names
    baseline_vitals: Optional[Dict[str, float]] = None
    consciousness: ConsciousnessLevel = ConsciousnessLevel.ALERT

    # Presentation, used only for patient dialogue
    chief_complaint: str = "chest pain"
    severity: str = "moderate"
    onset: str = "30 minutes ago"

    # Dispatch details; environment pins weather/scene_hazard keys, None rolls them
    location: str = ""
    dispatch_time: str = ""
    environment: Optional[Dict[str, str]] = None

    time_limit_minutes: int = config.TIME_LIMIT_MINUTES

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ScenarioMetadata":
        """
        Resolve a loose scenario payload.

        Accepts the flat shape used by the CLI and server, or the nested
        `generatedScenario` shape produced by the scenario generator. Anything
        missing or malformed falls back to the documented default.

        Args:
            data: Scenario payload (may be None)

        Returns:
            ScenarioMetadata with every field resolved
        """
        if not isinstance(data, dict):
            if data is not None:
                logger.warning("Ignoring malformed scenario metadata of type %s", type(data).__name__)
            return cls()

        generated = data.get("generatedScenario")
        generated = generated if isinstance(generated, dict) else {}
        presentation = _dict_or_empty(generated.get("presentation"))
        findings = _dict_or_empty(generated.get("physicalFindings"))
        difficulty_block = _dict_or_empty(generated.get("difficulty"))
        dispatch = _dict_or_empty(generated.get("dispatchInfo", data.get("dispatchInfo")))

        category = _resolve_category(
            data.get("category"),
            data.get("main_scenario", data.get("mainScenario")),
            data.get("sub_scenario", data.get("subScenario")),
        )

        difficulty_value = data.get("difficulty")
        if isinstance(difficulty_value, dict):
            difficulty_value = difficulty_value.get("level")
        difficulty = _resolve_difficulty(difficulty_value or difficulty_block.get("level"))

        profile_data = data.get("patient_profile", data.get("patientProfile", generated.get("patientProfile")))

        baseline = data.get("baseline_vitals")
        if baseline is None:
            baseline = _dict_or_empty(generated.get("vitals")).get("baseline")

        consciousness = _resolve_consciousness(data.get("consciousness", findings.get("consciousness")))

        environment = data.get("environment")
        if environment is not None and not isinstance(environment, dict):
            logger.warning("Ignoring malformed environment of type %s", type(environment).__name__)
            environment = None

        time_limit = data.get("time_limit_minutes", config.TIME_LIMIT_MINUTES)
        if not isinstance(time_limit, (int, float)) or isinstance(time_limit, bool) or time_limit <= 0:
            time_limit = config.TIME_LIMIT_MINUTES

        return cls(
            category=category,
            difficulty=difficulty,
            patient_profile=PatientProfile.from_dict(profile_data),
            baseline_vitals=baseline if isinstance(baseline, dict) and baseline else None,
            consciousness=consciousness,
            chief_complaint=str(data.get("chief_complaint") or presentation.get("chiefComplaint") or "chest pain"),
            severity=str(data.get("severity") or presentation.get("severity") or "moderate"),
            onset=str(data.get("onset") or presentation.get("onsetTime") or "30 minutes ago"),
            location=str(data.get("location") or dispatch.get("location") or ""),
            dispatch_time=str(data.get("dispatch_time") or dispatch.get("time") or ""),
            environment=environment,
            time_limit_minutes=int(time_limit),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category.value,
            "difficulty": self.difficulty.value,
            "patient_profile": self.patient_profile.to_dict(),
            "baseline_vitals": dict(self.baseline_vitals) if self.baseline_vitals else None,
            "consciousness": self.consciousness.value,
            "chief_complaint": self.chief_complaint,
            "severity": self.severity,
            "onset": self.onset,
            "location": self.location,
            "dispatch_time": self.dispatch_time,
            "environment": dict(self.environment) if self.environment is not None else None,
            "time_limit_minutes": self.time_limit_minutes,
        }


@dataclass(frozen=True)
class TranscriptTurn:
    """One turn of the encounter transcript."""
    role: Role
    text: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role.value, "text": self.text}


# ============================================
# PARSERS
# ============================================

CATEGORY_ALIASES = {
    "cardiac": ScenarioCategory.CARDIAC,
    "chest pain": ScenarioCategory.CARDIAC,
    "respiratory": ScenarioCategory.RESPIRATORY,
    "breathing": ScenarioCategory.RESPIRATORY,
    "trauma": ScenarioCategory.TRAUMA,
    "neurologic": ScenarioCategory.NEUROLOGIC,
    "neuro": ScenarioCategory.NEUROLOGIC,
    "stroke": ScenarioCategory.NEUROLOGIC,
    "metabolic": ScenarioCategory.METABOLIC,
    "diabetic": ScenarioCategory.METABOLIC,
    "allergic": ScenarioCategory.ALLERGIC,
    "anaphylaxis": ScenarioCategory.ALLERGIC,
    "general": ScenarioCategory.GENERAL,
    "medical": ScenarioCategory.GENERAL,
}

ROLE_ALIASES = {
    "trainee": Role.TRAINEE,
    "user": Role.TRAINEE,
    "emt": Role.TRAINEE,
    "patient": Role.PATIENT,
    "assistant": Role.PATIENT,
    "system": Role.SYSTEM,
}


def parse_category(category_str: str) -> ScenarioCategory:
    """Parse scenario category string."""
    normalized = normalize_to_ascii_lower(category_str)
    if normalized in CATEGORY_ALIASES:
        return CATEGORY_ALIASES[normalized]

    raise ValueError(
        f"Unknown scenario category: {category_str}. Use: {[c.value for c in ScenarioCategory]}"
    )


def parse_difficulty(difficulty_str: str) -> Difficulty:
    """Parse difficulty tier string."""
    normalized = normalize_to_ascii_lower(difficulty_str)
    for difficulty in Difficulty:
        if normalized == difficulty.value:
            return difficulty

    raise ValueError(f"Unknown difficulty: {difficulty_str}. Use: novice, intermediate, advanced")


def parse_role(role_str: str) -> Role:
    """Parse transcript role, accepting chat-style user/assistant names."""
    normalized = normalize_to_ascii_lower(role_str)
    if normalized in ROLE_ALIASES:
        return ROLE_ALIASES[normalized]

    raise ValueError(f"Unknown transcript role: {role_str}. Use: trainee, patient, system")


def determine_category(main_scenario: Any, sub_scenario: Any) -> ScenarioCategory:
    """
    Infer category from free-text scenario names.

    Examples:
        ("Trauma", "fall from ladder") -> TRAUMA
        ("Medical", "Cardiac - chest pain") -> CARDIAC
        ("Medical", "something else") -> GENERAL
    """
    main = normalize_to_ascii_lower(main_scenario)
    sub = normalize_to_ascii_lower(sub_scenario)

    if "trauma" in main:
        return ScenarioCategory.TRAUMA
    if "cardiac" in sub or "chest pain" in sub:
        return ScenarioCategory.CARDIAC
    if "respiratory" in sub or "breathing" in sub:
        return ScenarioCategory.RESPIRATORY
    if "neurologic" in sub or "stroke" in sub:
        return ScenarioCategory.NEUROLOGIC
    if "metabolic" in sub or "diabetic" in sub:
        return ScenarioCategory.METABOLIC
    if "allergic" in sub or "anaphylaxis" in sub:
        return ScenarioCategory.ALLERGIC

    return ScenarioCategory.GENERAL


def parse_transcript(entries: Any) -> List[TranscriptTurn]:
    """
    Parse a transcript into turns, skipping anything malformed.

    Each entry may be a TranscriptTurn or a dict with `role` and `text`
    (or chat-style `content`).
    """
    if not isinstance(entries, Iterable) or isinstance(entries, (str, bytes, dict)):
        return []

    turns = []
    for entry in entries:
        if isinstance(entry, TranscriptTurn):
            turns.append(entry)
            continue
        if not isinstance(entry, dict):
            continue

        text = entry.get("text", entry.get("content"))
        if not isinstance(text, str):
            continue
        try:
            role = parse_role(entry.get("role", ""))
        except ValueError:
            continue
        turns.append(TranscriptTurn(role=role, text=text))

    return turns


# ============================================
# HELPERS
# ============================================

def _resolve_category(category: Any, main_scenario: Any, sub_scenario: Any) -> ScenarioCategory:
    if isinstance(category, ScenarioCategory):
        return category
    if category:
        try:
            return parse_category(str(category))
        except ValueError:
            logger.warning("Unknown category %r, inferring from scenario names", category)
    return determine_category(main_scenario, sub_scenario)


def _resolve_difficulty(value: Any) -> Difficulty:
    if isinstance(value, Difficulty):
        return value
    if value:
        try:
            return parse_difficulty(str(value))
        except ValueError:
            logger.warning("Unknown difficulty %r, using %s", value, config.DEFAULT_DIFFICULTY)
    return Difficulty(config.DEFAULT_DIFFICULTY)


def _resolve_consciousness(value: Any) -> ConsciousnessLevel:
    if isinstance(value, ConsciousnessLevel):
        return value
    normalized = normalize_to_ascii_lower(value)
    for level in ConsciousnessLevel:
        if normalized == level.value:
            return level
    return ConsciousnessLevel.ALERT


def _parse_age(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value) if value >= 0 else None
    if isinstance(value, str):
        digits = "".join(ch for ch in value if ch.isdigit())
        return int(digits) if digits else None
    return None


def _string_list(value: Any) -> List[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple, set)):
        return []
    return [str(item).strip() for item in value if isinstance(item, str) and item.strip()]


def _dict_or_empty(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}
