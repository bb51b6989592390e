"""
Action recognition for EMT Sim.
Classifies free-text trainee utterances into typed clinical actions.
"""

import logging
import re
from dataclasses import asdict, dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .text_normalizer import contains_term, normalize_to_ascii_lower

logger = logging.getLogger(__name__)

UNSPECIFIED = "unspecified"


class ActionType(Enum):
    VITAL_CHECK = "vitalCheck"
    MEDICATION_ADMIN = "medicationAdmin"
    EQUIPMENT_USE = "equipmentUse"
    PHYSICAL_ASSESSMENT = "physicalAssessment"
    POSITIONING = "positioning"
    TRANSPORT_DECISION = "transportDecision"
    GENERAL_MEDICAL = "generalMedical"
    UNKNOWN = "unknown"


# ============================================
# ACTION DETAILS
# ============================================

@dataclass(frozen=True)
class ActionDetails:
    """Base for the variant-specific detail record carried by an Action."""

    @property
    def needs_clarification(self) -> bool:
        return False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["needs_clarification"] = self.needs_clarification
        return data


@dataclass(frozen=True)
class VitalCheckDetails(ActionDetails):
    vital_type: str = UNSPECIFIED
    body_region: str = UNSPECIFIED

    @property
    def needs_clarification(self) -> bool:
        return self.vital_type == UNSPECIFIED


@dataclass(frozen=True)
class MedicationDetails(ActionDetails):
    medication: str = UNSPECIFIED
    dosage: Optional[str] = None
    route: Optional[str] = None

    @property
    def needs_clarification(self) -> bool:
        return self.medication == UNSPECIFIED


@dataclass(frozen=True)
class EquipmentDetails(ActionDetails):
    equipment: str = UNSPECIFIED
    application: Optional[str] = None

    @property
    def needs_clarification(self) -> bool:
        return self.equipment == UNSPECIFIED


@dataclass(frozen=True)
class AssessmentDetails(ActionDetails):
    assessment_type: str = "general"
    body_region: str = UNSPECIFIED

    @property
    def needs_clarification(self) -> bool:
        return self.body_region == UNSPECIFIED


@dataclass(frozen=True)
class PositioningDetails(ActionDetails):
    position: str = UNSPECIFIED


@dataclass(frozen=True)
class TransportDetails(ActionDetails):
    transport_priority: Optional[str] = None
    destination: Optional[str] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class FoundTerm:
    category: str
    term_type: str
    term: str


@dataclass(frozen=True)
class GeneralMedicalDetails(ActionDetails):
    found_terms: Tuple[FoundTerm, ...] = ()

    @property
    def needs_clarification(self) -> bool:
        return True


@dataclass(frozen=True)
class UnknownDetails(ActionDetails):

    @property
    def needs_clarification(self) -> bool:
        return True


@dataclass(frozen=True)
class Action:
    """A classified trainee utterance."""
    type: ActionType
    priority: int
    matched_text: str
    details: ActionDetails = field(default_factory=UnknownDetails)

    @property
    def needs_clarification(self) -> bool:
        return self.details.needs_clarification

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "priority": self.priority,
            "matched_text": self.matched_text,
            "details": self.details.to_dict(),
        }


@dataclass(frozen=True)
class VitalsRequest:
    """Which vital signs a message asks for."""
    pulse_ox: bool = False
    heart_rate: bool = False
    respiratory_rate: bool = False
    blood_pressure: bool = False
    temperature: bool = False
    needs_specification: bool = False

    @property
    def requested(self) -> List[str]:
        """Requested vitals in reading order, as get_specific_vital names."""
        names = []
        if self.heart_rate:
            names.append("heart rate")
        if self.blood_pressure:
            names.append("blood pressure")
        if self.respiratory_rate:
            names.append("respiratory rate")
        if self.temperature:
            names.append("temperature")
        if self.pulse_ox:
            names.append("oxygen saturation")
        return names


# ============================================
# CATALOGUES
# ============================================

def _freeze(table: Dict[str, Dict[str, Tuple[str, ...]]]) -> Mapping[str, Mapping[str, Tuple[str, ...]]]:
    return MappingProxyType({k: MappingProxyType(dict(v)) for k, v in table.items()})


# Vocabulary scanned for detail extraction and the general fallback
MEDICAL_TERMS = _freeze({
    "vitals": {
        "heartRate": ("heart rate", "hr", "pulse", "beats per minute", "bpm"),
        "respiratoryRate": ("respiratory rate", "rr", "breathing rate", "respirations", "breaths per minute"),
        "bloodPressure": ("blood pressure", "bp", "systolic", "diastolic"),
        "oxygenSaturation": ("oxygen saturation", "pulse ox", "pulse oximeter", "spo2", "o2 sat", "sat"),
        "temperature": ("temperature", "temp", "fever"),
    },
    "equipment": {
        "oxygen": ("oxygen", "o2", "nasal cannula", "nc", "non-rebreather", "nrb", "bag valve mask", "bvm", "mask"),
        "monitor": ("monitor", "cardiac monitor", "pulse oximeter", "bp cuff", "blood pressure cuff"),
        "airway": ("airway", "opa", "npa", "oral airway", "nasal airway", "suction"),
        "immobilization": ("c-collar", "cervical collar", "backboard", "spine board", "splint", "immobilize"),
        "iv": ("iv", "intravenous", "saline", "normal saline", "fluid", "line"),
    },
    "medications": {
        "aspirin": ("aspirin", "asa", "baby aspirin"),
        "albuterol": ("albuterol", "ventolin", "nebulizer", "inhaler", "bronchodilator"),
        "epinephrine": ("epinephrine", "epi", "epi-pen", "epipen", "auto-injector"),
        "glucose": ("glucose", "oral glucose", "sugar", "dextrose"),
        "nitroglycerin": ("nitroglycerin", "nitro", "sublingual"),
    },
    "assessment": {
        "inspect": ("inspect", "look at", "examine", "observe", "check", "assess"),
        "palpate": ("palpate", "feel", "press", "touch", "check for"),
        "auscultate": ("listen", "auscultate", "lung sounds", "heart sounds", "bowel sounds"),
    },
    "bodyRegions": {
        "head": ("head", "skull", "face", "scalp"),
        "neck": ("neck", "cervical", "throat", "c-spine"),
        "chest": ("chest", "thorax", "ribs", "sternum", "lungs"),
        "abdomen": ("abdomen", "stomach", "belly", "abdominal"),
        "pelvis": ("pelvis", "pelvic", "hip"),
        "back": ("back", "spine", "spinal", "lumbar"),
        "upperExtremities": ("arm", "arms", "shoulder", "elbow", "wrist", "hand", "fingers"),
        "lowerExtremities": ("leg", "legs", "thigh", "knee", "ankle", "foot", "toes"),
    },
})


@dataclass(frozen=True)
class ActionPattern:
    """One group of the ordered recognition catalogue."""
    action_type: ActionType
    priority: int
    patterns: Tuple["re.Pattern", ...]


def _compile(*patterns: str) -> Tuple["re.Pattern", ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


# "oxygen" alone is equipment; only saturation wording counts as a vital
_VITAL_WORDS = r"(vital|pulse|\bbp\b|heart rate|breathing|temperature|oxygen sat|oxygen level)"
_DOSE_WORDS = r"(mg|mcg|units|tablet|dose)"
_DEVICE_WORDS = r"(oxygen|o2|mask|cannula|collar|monitor)"

# Order matters: equal priorities resolve to the earlier group
ACTION_PATTERNS: Tuple[ActionPattern, ...] = (
    ActionPattern(ActionType.VITAL_CHECK, 1, _compile(
        r"check\s+(.*?)\s*" + _VITAL_WORDS,
        r"take\s+(.*?)\s*" + _VITAL_WORDS,
        r"measure\s+(.*?)\s*" + _VITAL_WORDS,
        r"get\s+(.*?)\s*" + _VITAL_WORDS,
        _VITAL_WORDS,
    )),
    ActionPattern(ActionType.MEDICATION_ADMIN, 2, _compile(
        r"give\s+(.*?)\s*" + _DOSE_WORDS,
        r"administer\s+(.*?)\s*" + _DOSE_WORDS,
        r"provide\s+(.*?)\s*" + _DOSE_WORDS,
        r"(aspirin|albuterol|epinephrine|glucose|nitro)",
    )),
    ActionPattern(ActionType.EQUIPMENT_USE, 2, _compile(
        r"apply\s+(.*?)\s*" + _DEVICE_WORDS,
        r"place\s+(.*?)\s*" + _DEVICE_WORDS,
        r"put\s+(.*?)\s*on\s+" + _DEVICE_WORDS,
        r"start\s+(.*?)\s*(oxygen|o2|iv|saline)",
        r"grab\s+(.*?)\s*(equipment|bag|monitor|oxygen)",
    )),
    ActionPattern(ActionType.PHYSICAL_ASSESSMENT, 3, _compile(
        r"(inspect|examine|look at|check)\s+(.*?)\s*(head|neck|chest|abdomen|back|arm|leg|airway|mouth)",
        r"(palpate|feel|press)\s+(.*?)\s*(head|neck|chest|abdomen|back|arm|leg)",
        r"(listen|auscultate)\s+(.*?)\s*(lung|heart|bowel|chest)",
        r"(check|assess|inspect)\s+(the\s+)?airway",
        r"(open\s+(?:your|the)\s+mouth).*(?:check|airway|inspect)",
        r"physical\s+(exam|assessment)",
        r"secondary\s+(exam|assessment)",
    )),
    ActionPattern(ActionType.POSITIONING, 2, _compile(
        r"position\s+(.*?)\s*(upright|sitting|supine|side|recovery)",
        r"sit\s+(.*?)\s*up",
        r"place\s+(.*?)\s*in\s+(.*?)\s*position",
        r"fowler",
        r"trendelenburg",
    )),
    ActionPattern(ActionType.TRANSPORT_DECISION, 1, _compile(
        r"transport\s+(.*?)\s*(code|priority)",
        r"my\s+transport\s+decision",
        r"(code\s*[123]|priority\s*[123])",
        r"transport\s+to\s+(hospital|ed|er)",
    )),
)

GENERAL_MEDICAL_PRIORITY = 4
UNKNOWN_PRIORITY = 5

DOSAGE_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*(mg|mcg|units|tablet|dose|gram|ml)", re.IGNORECASE)

ROUTE_KEYWORDS: Tuple[Tuple["re.Pattern", str], ...] = (
    (re.compile(r"\b(oral|po|by mouth)\b"), "oral"),
    (re.compile(r"\b(sublingual|sl|under (the )?tongue)\b"), "sublingual"),
    (re.compile(r"\b(iv|intravenous)\b"), "intravenous"),
    (re.compile(r"\b(im|intramuscular)\b"), "intramuscular"),
    (re.compile(r"\b(inhaled|nebulized)\b"), "inhaled"),
)

TRANSPORT_PRIORITIES: Tuple[Tuple["re.Pattern", str], ...] = (
    (re.compile(r"code\s*3|priority\s*3|(?<!non[- ])(?<!non)emergent|lights.*sirens"), "code 3"),
    (re.compile(r"code\s*2|priority\s*2|urgent"), "code 2"),
    (re.compile(r"code\s*1|priority\s*1|non[- ]?emergent|routine"), "code 1"),
)

DESTINATION_PATTERN = re.compile(
    r"\bto\s+(?:the\s+)?((?:nearest\s+)?hospital|emergency\s+department|ed\b|er\b|[a-z ]+? hospital)"
)
REASON_PATTERN = re.compile(r"\b(?:for|because\s+of|due\s+to)\s+([^.,;]+)")
FLOW_RATE_PATTERN = re.compile(r"\b(\d+)\s*(?:lpm|l/min|liters? per minute)")

VITALS_REQUEST_PATTERNS = {
    "pulse_ox": re.compile(r"pulse ox|oxygen saturation|saturation|spo2|sp02|finger probe|oximeter|\bo2 sat"),
    "heart_rate": re.compile(r"heart rate|\bpulse\b(?!\s*ox)|\bhr\b"),
    "respiratory_rate": re.compile(r"respiratory rate|breathing rate|\brr\b|respirations"),
    "blood_pressure": re.compile(r"blood pressure|\bbp\b"),
    "temperature": re.compile(r"\btemp\b|temperature"),
}
GENERAL_VITALS_PATTERN = re.compile(r"full set|all vitals|complete set|vital signs|\bvitals\b")


class ActionRecognizer:
    """Classifies utterances against an ordered, immutable pattern catalogue."""

    def __init__(
        self,
        action_patterns: Tuple[ActionPattern, ...] = ACTION_PATTERNS,
        medical_terms: Mapping[str, Mapping[str, Tuple[str, ...]]] = MEDICAL_TERMS
    ):
        self.action_patterns = action_patterns
        self.medical_terms = medical_terms
        self._extractors: Dict[ActionType, Callable[[str], ActionDetails]] = {
            ActionType.VITAL_CHECK: self._extract_vital_check,
            ActionType.MEDICATION_ADMIN: self._extract_medication,
            ActionType.EQUIPMENT_USE: self._extract_equipment,
            ActionType.PHYSICAL_ASSESSMENT: self._extract_assessment,
            ActionType.POSITIONING: self._extract_positioning,
            ActionType.TRANSPORT_DECISION: self._extract_transport,
        }

    def recognize(self, utterance: str) -> Action:
        """
        Recognize and parse a trainee action.

        Every pattern group is evaluated; the lowest priority number wins and
        ties go to the group listed first in the catalogue.

        Args:
            utterance: Raw trainee message

        Returns:
            Action (Unknown when nothing matched)
        """
        normalized = normalize_to_ascii_lower(utterance)

        candidates = []
        for order, group in enumerate(self.action_patterns):
            for pattern in group.patterns:
                match = pattern.search(normalized)
                if match:
                    candidates.append((group.priority, order, group.action_type, match.group(0)))
                    break

        if candidates:
            priority, _, action_type, matched = min(candidates, key=lambda c: (c[0], c[1]))
            action = Action(
                type=action_type,
                priority=priority,
                matched_text=matched,
                details=self._extractors[action_type](normalized),
            )
        else:
            action = self._recognize_general_medical(normalized, utterance or "")

        logger.debug("Recognized %s from %r", action.type.value, normalized[:80])
        return action

    # ----------------------------------------
    # detail extraction
    # ----------------------------------------

    def _extract_vital_check(self, normalized: str) -> VitalCheckDetails:
        return VitalCheckDetails(
            vital_type=self.identify_term("vitals", normalized),
            body_region=self.identify_term("bodyRegions", normalized),
        )

    def _extract_medication(self, normalized: str) -> MedicationDetails:
        return MedicationDetails(
            medication=self.identify_term("medications", normalized),
            dosage=extract_dosage(normalized),
            route=extract_route(normalized),
        )

    def _extract_equipment(self, normalized: str) -> EquipmentDetails:
        return EquipmentDetails(
            equipment=self.identify_term("equipment", normalized),
            application=extract_flow_rate(normalized),
        )

    def _extract_assessment(self, normalized: str) -> AssessmentDetails:
        return AssessmentDetails(
            assessment_type=identify_assessment_type(normalized),
            body_region=self.identify_term("bodyRegions", normalized),
        )

    def _extract_positioning(self, normalized: str) -> PositioningDetails:
        return PositioningDetails(position=identify_position(normalized))

    def _extract_transport(self, normalized: str) -> TransportDetails:
        return TransportDetails(
            transport_priority=extract_transport_priority(normalized),
            destination=extract_destination(normalized),
            reason=extract_transport_reason(normalized),
        )

    def identify_term(self, category: str, normalized: str) -> str:
        """
        Identify which entry of a vocabulary category the text refers to.

        The longest matching term wins so "pulse ox" resolves to oxygen
        saturation rather than heart rate. Ties keep vocabulary order.
        """
        best_type = UNSPECIFIED
        best_length = 0
        for term_type, terms in self.medical_terms.get(category, {}).items():
            for term in terms:
                if len(term) > best_length and contains_term(normalized, term):
                    best_type = term_type
                    best_length = len(term)
        return best_type

    def _recognize_general_medical(self, normalized: str, raw: str) -> Action:
        found_terms = []
        for category, term_types in self.medical_terms.items():
            for term_type, variations in term_types.items():
                for variation in variations:
                    if contains_term(normalized, variation):
                        found_terms.append(FoundTerm(category, term_type, variation))

        if found_terms:
            return Action(
                type=ActionType.GENERAL_MEDICAL,
                priority=GENERAL_MEDICAL_PRIORITY,
                matched_text=raw,
                details=GeneralMedicalDetails(found_terms=tuple(found_terms)),
            )

        return Action(
            type=ActionType.UNKNOWN,
            priority=UNKNOWN_PRIORITY,
            matched_text=raw,
            details=UnknownDetails(),
        )

    # ----------------------------------------
    # clarification
    # ----------------------------------------

    def generate_clarification_request(self, action: Action) -> Optional[str]:
        """Return a canned question for the first missing detail, or None."""
        details = action.details

        if isinstance(details, VitalCheckDetails):
            if details.vital_type == UNSPECIFIED:
                return "Which specific vital sign would you like me to check?"
        elif isinstance(details, MedicationDetails):
            if details.medication == UNSPECIFIED:
                return "Which medication would you like to administer?"
            if not details.dosage:
                return f"What dosage of {details.medication} would you like to give?"
        elif isinstance(details, EquipmentDetails):
            if details.equipment == UNSPECIFIED:
                return "Which piece of equipment would you like to use?"
        elif isinstance(details, AssessmentDetails):
            if details.body_region == UNSPECIFIED:
                return "Which body region would you like to assess?"
        elif isinstance(details, GeneralMedicalDetails):
            terms = ", ".join(t.term for t in details.found_terms)
            return f"I understand you mentioned {terms}. Can you be more specific about what you'd like to do?"
        elif isinstance(details, UnknownDetails):
            return "I'm not sure what you'd like me to do. Can you please clarify your action?"

        return None

    def requires_contraindication_check(self, action: Action) -> bool:
        return (
            action.type == ActionType.MEDICATION_ADMIN
            and isinstance(action.details, MedicationDetails)
            and action.details.medication != UNSPECIFIED
        )


# ============================================
# EXTRACTORS
# ============================================

def extract_dosage(normalized: str) -> Optional[str]:
    """
    Extract medication dosage.

    Examples:
        "give 325 mg aspirin" -> "325 mg"
        "0.3 mg epi im" -> "0.3 mg"
    """
    match = DOSAGE_PATTERN.search(normalized)
    return f"{match.group(1)} {match.group(2).lower()}" if match else None


def extract_route(normalized: str) -> Optional[str]:
    for pattern, route in ROUTE_KEYWORDS:
        if pattern.search(normalized):
            return route
    return None


def extract_flow_rate(normalized: str) -> Optional[str]:
    match = FLOW_RATE_PATTERN.search(normalized)
    return f"{match.group(1)} LPM" if match else None


def identify_assessment_type(normalized: str) -> str:
    if re.search(r"inspect|look|examine|observe", normalized):
        return "inspection"
    if re.search(r"palpate|feel|press|touch", normalized):
        return "palpation"
    if re.search(r"listen|auscultate", normalized):
        return "auscultation"
    if re.search(r"secondary|complete", normalized):
        return "secondary"
    return "general"


def identify_position(normalized: str) -> str:
    if re.search(r"upright|sitting|sit.*up|fowler", normalized):
        return "upright"
    if re.search(r"trendelenburg", normalized):
        return "trendelenburg"
    if re.search(r"supine|flat|\bback\b", normalized):
        return "supine"
    if re.search(r"\bside\b|lateral|recovery", normalized):
        return "lateral"
    return UNSPECIFIED


def extract_transport_priority(normalized: str) -> Optional[str]:
    for pattern, priority in TRANSPORT_PRIORITIES:
        if pattern.search(normalized):
            return priority
    return None


def extract_destination(normalized: str) -> Optional[str]:
    match = DESTINATION_PATTERN.search(normalized)
    return match.group(1).strip() if match else None


def extract_transport_reason(normalized: str) -> Optional[str]:
    match = REASON_PATTERN.search(normalized)
    return match.group(1).strip() if match else None


def detect_vitals_request(message: str) -> VitalsRequest:
    """
    Detect which vital signs a message asks for.

    A general request ("get a full set of vitals") without any named vital
    needs specification.
    """
    normalized = normalize_to_ascii_lower(message)
    flags = {name: bool(pattern.search(normalized)) for name, pattern in VITALS_REQUEST_PATTERNS.items()}
    general = bool(GENERAL_VITALS_PATTERN.search(normalized))
    return VitalsRequest(needs_specification=general and not any(flags.values()), **flags)
