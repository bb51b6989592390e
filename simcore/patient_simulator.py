"""
Patient physiology for EMT Sim.
Evolves vitals and consciousness over elapsed time and recognized interventions.
"""

import logging
import math
import re
from dataclasses import dataclass, fields, replace
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from . import config
from .action_recognizer import (
    Action,
    EquipmentDetails,
    MedicationDetails,
    PositioningDetails,
)
from .scenario import ConsciousnessLevel, Difficulty, ScenarioCategory, ScenarioMetadata
from .text_normalizer import normalize_to_ascii_lower

logger = logging.getLogger(__name__)

MS_PER_MINUTE = 60000


# ============================================
# VITALS
# ============================================

# Physiological clamp ranges; values are clamped, never rejected
VITAL_RANGES = MappingProxyType({
    "heart_rate": (40, 200),
    "respiratory_rate": (8, 50),
    "systolic": (60, 250),
    "diastolic": (40, 150),
    "spo2": (70, 100),
    "temperature": (95.0, 106.0),
})

# Minimum movement of any field for a time-based snapshot to be kept
SIGNIFICANT_CHANGE = MappingProxyType({
    "heart_rate": 5,
    "respiratory_rate": 2,
    "systolic": 10,
    "diastolic": 5,
    "spo2": 2,
    "temperature": 0.5,
})


@dataclass(frozen=True)
class VitalsSnapshot:
    """One set of vital signs. Always within VITAL_RANGES."""
    heart_rate: float = 90
    respiratory_rate: float = 18
    systolic: float = 130
    diastolic: float = 80
    spo2: float = 96
    temperature: float = 98.6

    def __post_init__(self):
        for f in fields(self):
            low, high = VITAL_RANGES[f.name]
            value = float(getattr(self, f.name))
            object.__setattr__(self, f.name, round(min(high, max(low, value)), 1))

    def with_changes(self, **changes: float) -> "VitalsSnapshot":
        """Return a new clamped snapshot with some fields replaced."""
        return replace(self, **changes)

    def changed_significantly(self, other: "VitalsSnapshot") -> bool:
        return any(
            abs(getattr(self, name) - getattr(other, name)) >= threshold
            for name, threshold in SIGNIFICANT_CHANGE.items()
        )

    def to_dict(self) -> Dict[str, float]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def to_display_dict(self) -> Dict[str, Any]:
        """Whole numbers for everything but temperature."""
        return {
            "heart_rate": _display(self.heart_rate),
            "respiratory_rate": _display(self.respiratory_rate),
            "blood_pressure": f"{_display(self.systolic)}/{_display(self.diastolic)}",
            "spo2": _display(self.spo2),
            "temperature": round(self.temperature, 1),
        }


DEFAULT_VITALS = VitalsSnapshot()

# Key aliases accepted in pre-generated scenario vitals
BASELINE_KEY_ALIASES = MappingProxyType({
    "heart_rate": ("heart_rate", "heartRate", "hr"),
    "respiratory_rate": ("respiratory_rate", "respiratoryRate", "rr"),
    "systolic": ("systolic", "bloodPressureSystolic", "sbp"),
    "diastolic": ("diastolic", "bloodPressureDiastolic", "dbp"),
    "spo2": ("spo2", "spO2", "SpO2", "oxygenSaturation"),
    "temperature": ("temperature", "temp"),
})

CATEGORY_BASELINES = MappingProxyType({
    ScenarioCategory.CARDIAC: VitalsSnapshot(110, 20, 160, 95, 92, 98.6),
    ScenarioCategory.RESPIRATORY: VitalsSnapshot(88, 24, 140, 85, 89, 98.6),
    ScenarioCategory.TRAUMA: VitalsSnapshot(105, 22, 145, 88, 95, 98.6),
    ScenarioCategory.NEUROLOGIC: VitalsSnapshot(85, 16, 130, 80, 97, 98.6),
    ScenarioCategory.METABOLIC: VitalsSnapshot(95, 18, 135, 82, 94, 98.6),
    ScenarioCategory.ALLERGIC: VitalsSnapshot(120, 26, 100, 60, 88, 98.6),
    ScenarioCategory.GENERAL: VitalsSnapshot(90, 18, 130, 80, 96, 98.6),
})


@dataclass(frozen=True)
class VitalsRecord:
    snapshot: VitalsSnapshot
    timestamp_ms: int
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {"vitals": self.snapshot.to_dict(), "timestamp_ms": self.timestamp_ms, "reason": self.reason}


# ============================================
# INTERVENTIONS
# ============================================

# Canonical intervention kinds, classified from free text
INTERVENTION_KINDS: Tuple[Tuple[str, "re.Pattern"], ...] = (
    ("oxygen", re.compile(r"\b(oxygen|o2|nasal cannula|nc|mask|bvm|bag valve|non-?rebreather|nrb)\b")),
    ("aspirin", re.compile(r"\b(aspirin|asa)\b")),
    ("albuterol", re.compile(r"\b(albuterol|ventolin|nebulizer|inhaler)\b")),
    ("positioning", re.compile(r"\bsit(ting)?\b.*\bup\b|upright|\bposition|fowler|trendelenburg|recovery position")),
    ("iv_fluids", re.compile(r"\b(iv|intravenous|fluids?|saline)\b")),
    ("epinephrine", re.compile(r"\b(epi|epinephrine|epi-?pen|auto-?injector)\b")),
    ("glucose", re.compile(r"\b(glucose|dextrose|sugar)\b")),
    ("nitroglycerin", re.compile(r"\bnitro")),
    ("immobilization", re.compile(r"c-collar|cervical collar|backboard|spine board|splint|immobiliz|spinal motion")),
)

MEDICATION_KINDS = MappingProxyType({
    "aspirin": "aspirin",
    "albuterol": "albuterol",
    "epinephrine": "epinephrine",
    "glucose": "glucose",
    "nitroglycerin": "nitroglycerin",
})

EQUIPMENT_KINDS = MappingProxyType({
    "oxygen": "oxygen",
    "iv": "iv_fluids",
    "immobilization": "immobilization",
})


def classify_intervention(description: str, action: Optional[Action] = None) -> FrozenSet[str]:
    """
    Derive the canonical intervention kinds for a recorded intervention.

    Examples:
        "apply oxygen 15 lpm via nrb" -> {"oxygen"}
        "sit the patient upright" -> {"positioning"}
    """
    normalized = normalize_to_ascii_lower(description)
    kinds = {kind for kind, pattern in INTERVENTION_KINDS if pattern.search(normalized)}

    if action is not None:
        details = action.details
        if isinstance(details, MedicationDetails) and details.medication in MEDICATION_KINDS:
            kinds.add(MEDICATION_KINDS[details.medication])
        elif isinstance(details, EquipmentDetails) and details.equipment in EQUIPMENT_KINDS:
            kinds.add(EQUIPMENT_KINDS[details.equipment])
        elif isinstance(details, PositioningDetails):
            kinds.add("positioning")

    return frozenset(kinds)


@dataclass(frozen=True)
class InterventionRecord:
    description: str
    timestamp_ms: int
    elapsed_minutes: int
    kinds: FrozenSet[str] = frozenset()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "timestamp_ms": self.timestamp_ms,
            "elapsed_minutes": self.elapsed_minutes,
            "kinds": sorted(self.kinds),
        }


@dataclass(frozen=True)
class VitalEffect:
    """
    Move one vital by delta without crossing limit.

    A falling value stops at the limit as a floor, a rising one at the limit
    as a cap. A value already past the limit is left where it is.
    """
    vital: str
    delta: float
    limit: float

    def apply(self, value: float, scale: float = 1.0) -> float:
        moved = value + self.delta * scale
        if self.delta < 0:
            return min(value, max(self.limit, moved))
        return max(value, min(self.limit, moved))


# Applied in this order, cumulatively
INTERVENTION_EFFECTS: Tuple[Tuple[str, Tuple[VitalEffect, ...]], ...] = (
    ("oxygen", (VitalEffect("spo2", 3, 100), VitalEffect("respiratory_rate", -2, 12))),
    ("aspirin", (VitalEffect("heart_rate", -5, 60),)),
    ("albuterol", (
        VitalEffect("respiratory_rate", -4, 12),
        VitalEffect("spo2", 4, 100),
        VitalEffect("heart_rate", 8, 150),
    )),
    ("positioning", (VitalEffect("respiratory_rate", -2, 12), VitalEffect("spo2", 2, 100))),
    ("iv_fluids", (VitalEffect("systolic", 5, 180), VitalEffect("heart_rate", -3, 60))),
    ("epinephrine", (
        VitalEffect("heart_rate", 15, 150),
        VitalEffect("systolic", 20, 200),
        VitalEffect("spo2", 5, 100),
        VitalEffect("respiratory_rate", -3, 12),
    )),
)

CRITICAL_INTERVENTIONS = MappingProxyType({
    ScenarioCategory.CARDIAC: ("oxygen", "aspirin"),
    ScenarioCategory.RESPIRATORY: ("oxygen", "positioning"),
    ScenarioCategory.ALLERGIC: ("epinephrine", "oxygen"),
    ScenarioCategory.TRAUMA: ("oxygen", "immobilization"),
    ScenarioCategory.NEUROLOGIC: ("oxygen", "positioning"),
    ScenarioCategory.METABOLIC: ("glucose", "oxygen"),
    ScenarioCategory.GENERAL: ("oxygen",),
})


@dataclass(frozen=True)
class DeteriorationRule:
    """Decline applied while a critical intervention is missing, scaled by the deterioration factor."""
    category: ScenarioCategory
    missing_kind: str
    effects: Tuple[VitalEffect, ...]


DETERIORATION_RULES: Tuple[DeteriorationRule, ...] = (
    DeteriorationRule(ScenarioCategory.CARDIAC, "oxygen", (VitalEffect("spo2", -2, 75),)),
    DeteriorationRule(ScenarioCategory.CARDIAC, "aspirin", (VitalEffect("heart_rate", 5, 140),)),
    DeteriorationRule(ScenarioCategory.RESPIRATORY, "oxygen", (
        VitalEffect("spo2", -3, 70),
        VitalEffect("respiratory_rate", 3, 35),
    )),
    DeteriorationRule(ScenarioCategory.ALLERGIC, "epinephrine", (
        VitalEffect("spo2", -4, 65),
        VitalEffect("systolic", -10, 70),
    )),
)

ADVANCED_DRIFT = (VitalEffect("heart_rate", 2, 130), VitalEffect("respiratory_rate", 1, 28))

HANDOVER_PATTERN = re.compile(r"handover|hand over|report|transport.*decision|my.*assessment|final.*report")


@dataclass(frozen=True)
class ScenarioEndCheck:
    should_end: bool
    reason: Optional[str] = None  # "time_expired" or "handover_complete"
    elapsed_minutes: int = 0
    interventions: Tuple[InterventionRecord, ...] = ()
    final_vitals: Optional[VitalsSnapshot] = None


# ============================================
# DIALOGUE
# ============================================

ALTERED_RESPONSES = (
    (re.compile(r"name|who are you"), "I... I think... what happened?"),
    (re.compile(r"pain|hurt"), "Everything hurts... I can't think straight."),
    (re.compile(r"where|location"), "I don't know... where am I?"),
)
ALTERED_DEFAULT = "I'm confused... what's happening?"
UNCONSCIOUS_RESPONSE = "The patient is unresponsive."
ALERT_DEFAULT = "I'm not sure about that. Can you help me?"


class PatientSimulator:
    """Physiological state of one simulated patient."""

    def __init__(
        self,
        intervention_effects: Tuple[Tuple[str, Tuple[VitalEffect, ...]], ...] = INTERVENTION_EFFECTS,
        deterioration_rules: Tuple[DeteriorationRule, ...] = DETERIORATION_RULES,
        critical_interventions: Mapping[ScenarioCategory, Tuple[str, ...]] = CRITICAL_INTERVENTIONS
    ):
        self.intervention_effects = intervention_effects
        self.deterioration_rules = deterioration_rules
        self.critical_interventions = critical_interventions
        self.reset()

    def reset(self) -> None:
        """Return to the uninitialized state."""
        self.start_ms: Optional[int] = None
        self.time_limit_minutes = config.TIME_LIMIT_MINUTES
        self.vitals_history: List[VitalsRecord] = []
        self.interventions: List[InterventionRecord] = []
        self.consciousness = ConsciousnessLevel.ALERT

    def initialize(self, metadata: ScenarioMetadata, now_ms: int) -> VitalsSnapshot:
        """
        Start a new patient.

        Args:
            metadata: Resolved scenario metadata
            now_ms: Scenario start, milliseconds since epoch

        Returns:
            Baseline vitals
        """
        self.reset()
        self.start_ms = now_ms
        self.time_limit_minutes = metadata.time_limit_minutes
        self.consciousness = metadata.consciousness

        baseline = self.get_baseline_vitals(metadata)
        self.vitals_history.append(VitalsRecord(baseline, now_ms, "baseline"))

        logger.info(
            "Patient initialized: %s/%s, consciousness=%s, vitals=%s",
            metadata.category.value, metadata.difficulty.value, self.consciousness.value, baseline.to_dict()
        )
        return baseline

    def get_baseline_vitals(self, metadata: ScenarioMetadata) -> VitalsSnapshot:
        """Scenario-supplied vitals when present, else the category table adjusted for difficulty."""
        if metadata.baseline_vitals:
            values = {}
            for name, aliases in BASELINE_KEY_ALIASES.items():
                for alias in aliases:
                    value = metadata.baseline_vitals.get(alias)
                    if isinstance(value, (int, float)) and not isinstance(value, bool) and value:
                        values[name] = value
                        break
            return VitalsSnapshot(**values)

        vitals = CATEGORY_BASELINES.get(metadata.category, CATEGORY_BASELINES[ScenarioCategory.GENERAL])
        if metadata.difficulty == Difficulty.NOVICE:
            vitals = vitals.with_changes(spo2=max(vitals.spo2, 90), heart_rate=min(vitals.heart_rate, 115))
        elif metadata.difficulty == Difficulty.ADVANCED:
            vitals = vitals.with_changes(
                spo2=min(vitals.spo2, 85),
                heart_rate=max(vitals.heart_rate, 105),
                respiratory_rate=max(vitals.respiratory_rate, 24),
            )
        return vitals

    # ----------------------------------------
    # interventions
    # ----------------------------------------

    def record_intervention(
        self,
        description: str,
        timestamp_ms: int,
        action: Optional[Action] = None
    ) -> InterventionRecord:
        """Record an intervention and apply its physiological effects."""
        record = InterventionRecord(
            description=description,
            timestamp_ms=timestamp_ms,
            elapsed_minutes=self._minutes_between(self.start_ms, timestamp_ms),
            kinds=classify_intervention(description, action),
        )
        self.interventions.append(record)
        logger.info("Intervention recorded: %r kinds=%s", description, sorted(record.kinds))

        vitals = self.get_current_vitals()
        values = vitals.to_dict()
        for kind, effects in self.intervention_effects:
            if kind in record.kinds:
                for effect in effects:
                    values[effect.vital] = effect.apply(values[effect.vital])

        updated = VitalsSnapshot(**values)
        self.vitals_history.append(VitalsRecord(updated, timestamp_ms, f"intervention: {description}"))
        return record

    def performed_kinds(self) -> FrozenSet[str]:
        kinds = set()
        for record in self.interventions:
            kinds |= record.kinds
        return frozenset(kinds)

    def get_missing_critical(self, category: ScenarioCategory) -> List[str]:
        performed = self.performed_kinds()
        required = self.critical_interventions.get(category, self.critical_interventions[ScenarioCategory.GENERAL])
        return [kind for kind in required if kind not in performed]

    # ----------------------------------------
    # time progression
    # ----------------------------------------

    def update_for_time_progression(self, metadata: ScenarioMetadata, now_ms: int) -> Optional[VitalsSnapshot]:
        """
        Apply time-based deterioration.

        After the onset window each missing critical intervention degrades
        its vitals, scaled by min(elapsed / 10, 1). Advanced scenarios also
        drift after eight minutes regardless of care.

        Returns:
            The new snapshot if one was recorded, else None
        """
        if self.start_ms is None:
            return None

        elapsed = self.get_elapsed_minutes(now_ms)
        current = self.get_current_vitals()
        values = current.to_dict()

        missing = self.get_missing_critical(metadata.category)
        if missing and elapsed > config.DETERIORATION_ONSET_MINUTES:
            factor = min(elapsed / config.DETERIORATION_FULL_MINUTES, 1.0)
            for rule in self.deterioration_rules:
                if rule.category == metadata.category and rule.missing_kind in missing:
                    for effect in rule.effects:
                        values[effect.vital] = effect.apply(values[effect.vital], factor)

        if metadata.difficulty == Difficulty.ADVANCED and elapsed > config.ADVANCED_DRIFT_MINUTES:
            for effect in ADVANCED_DRIFT:
                values[effect.vital] = effect.apply(values[effect.vital])

        updated = VitalsSnapshot(**values)
        if not current.changed_significantly(updated):
            return None

        self.vitals_history.append(VitalsRecord(updated, now_ms, f"time progression: {elapsed} minutes"))
        logger.debug("Vitals progressed at %d minutes: %s", elapsed, updated.to_dict())
        return updated

    def update_consciousness(self, metadata: ScenarioMetadata, now_ms: int) -> ConsciousnessLevel:
        """Worsen with hypoxia or hypotension; recover from ALTERED only with oxygen on board."""
        vitals = self.get_current_vitals()
        previous = self.consciousness

        if vitals.spo2 < 80 or vitals.systolic < 80:
            if self.consciousness == ConsciousnessLevel.ALERT:
                self.consciousness = ConsciousnessLevel.ALTERED
            elif self.consciousness == ConsciousnessLevel.ALTERED and vitals.spo2 < 75:
                self.consciousness = ConsciousnessLevel.UNCONSCIOUS

        has_oxygen = "oxygen" in self.performed_kinds()
        if has_oxygen and vitals.spo2 > 90 and self.consciousness == ConsciousnessLevel.ALTERED:
            self.consciousness = ConsciousnessLevel.ALERT

        if self.consciousness != previous:
            logger.info(
                "Consciousness %s -> %s at %d minutes",
                previous.value, self.consciousness.value, self.get_elapsed_minutes(now_ms)
            )
        return self.consciousness

    # ----------------------------------------
    # readers
    # ----------------------------------------

    def get_current_vitals(self) -> VitalsSnapshot:
        if not self.vitals_history:
            return DEFAULT_VITALS
        return self.vitals_history[-1].snapshot

    def get_specific_vital(self, vital_type: str) -> str:
        """
        Format one vital sign reading.

        Accepts plain names ("pulse ox", "bp") or vocabulary keys
        ("oxygenSaturation").
        """
        vitals = self.get_current_vitals()
        spaced = re.sub(r"([a-z])([A-Z])", r"\1 \2", vital_type or "")
        normalized = normalize_to_ascii_lower(spaced)

        if re.search(r"oxygen saturation|pulse ox|spo2|o2 sat|saturation", normalized):
            return f"Oxygen saturation: {_display(vitals.spo2)}%"
        if re.search(r"heart rate|pulse|\bhr\b", normalized):
            return f"Heart rate: {_display(vitals.heart_rate)} bpm"
        if re.search(r"respiratory rate|breathing|\brr\b|respiration", normalized):
            return f"Respiratory rate: {_display(vitals.respiratory_rate)} per minute"
        if re.search(r"blood pressure|\bbp\b", normalized):
            return f"Blood pressure: {_display(vitals.systolic)}/{_display(vitals.diastolic)} mmHg"
        if re.search(r"temperature|\btemp\b", normalized):
            return f"Temperature: {vitals.temperature:.1f}°F"

        return "Please specify which vital sign you'd like to check."

    def get_elapsed_minutes(self, now_ms: int) -> int:
        return self._minutes_between(self.start_ms, now_ms)

    def is_time_expired(self, now_ms: int) -> bool:
        if self.start_ms is None:
            return False
        return now_ms - self.start_ms >= self.time_limit_minutes * MS_PER_MINUTE

    def get_remaining_time(self, now_ms: int) -> int:
        """Whole minutes remaining, rounded up."""
        if self.start_ms is None:
            return self.time_limit_minutes
        remaining = max(0, self.time_limit_minutes * MS_PER_MINUTE - (now_ms - self.start_ms))
        return math.ceil(remaining / MS_PER_MINUTE)

    def is_handover_report(self, utterance: str) -> bool:
        return bool(HANDOVER_PATTERN.search(normalize_to_ascii_lower(utterance)))

    def check_scenario_end(self, utterance: str, now_ms: int) -> ScenarioEndCheck:
        time_expired = self.is_time_expired(now_ms)
        if not time_expired and not self.is_handover_report(utterance):
            return ScenarioEndCheck(should_end=False)

        return ScenarioEndCheck(
            should_end=True,
            reason="time_expired" if time_expired else "handover_complete",
            elapsed_minutes=self.get_elapsed_minutes(now_ms),
            interventions=tuple(self.interventions),
            final_vitals=self.get_current_vitals(),
        )

    def generate_patient_response(self, question: str, metadata: ScenarioMetadata) -> str:
        """Canned in-character answer for the current consciousness level."""
        normalized = normalize_to_ascii_lower(question)

        if self.consciousness == ConsciousnessLevel.UNCONSCIOUS:
            return UNCONSCIOUS_RESPONSE

        if self.consciousness == ConsciousnessLevel.ALTERED:
            for pattern, response in ALTERED_RESPONSES:
                if pattern.search(normalized):
                    return response
            return ALTERED_DEFAULT

        return self._alert_response(normalized, metadata)

    def _alert_response(self, normalized: str, metadata: ScenarioMetadata) -> str:
        profile = metadata.patient_profile

        if re.search(r"\bname\b|who are you", normalized):
            return f"My name is {profile.name or 'John Smith'}."
        if re.search(r"\bage\b|\bold\b", normalized):
            return f"I'm {profile.age if profile.age is not None else 45} years old."
        if re.search(r"pain|hurt|feel", normalized):
            return f"I have {metadata.severity} {metadata.chief_complaint}."
        if re.search(r"\bwhen\b|start|began", normalized):
            return f"It started {metadata.onset}."
        if re.search(r"allerg", normalized):
            if not profile.allergies:
                return "I don't have any known allergies."
            return f"I'm allergic to {', '.join(profile.allergies)}."
        if re.search(r"medication|pills|drugs|\bmeds\b", normalized):
            if not profile.medications:
                return "I don't take any medications."
            return f"I take {', '.join(profile.medications)}."
        if re.search(r"history|medical|condition", normalized):
            if not profile.medical_history:
                return "I don't have any significant medical history."
            return f"I have a history of {', '.join(profile.medical_history)}."

        return ALERT_DEFAULT

    def to_dict(self, now_ms: int) -> Dict[str, Any]:
        return {
            "initialized": self.start_ms is not None,
            "consciousness": self.consciousness.value,
            "vitals": self.get_current_vitals().to_dict(),
            "elapsed_minutes": self.get_elapsed_minutes(now_ms),
            "remaining_minutes": self.get_remaining_time(now_ms),
            "interventions": [r.to_dict() for r in self.interventions],
            "vitals_history": [r.to_dict() for r in self.vitals_history],
        }

    @staticmethod
    def _minutes_between(start_ms: Optional[int], now_ms: int) -> int:
        if start_ms is None:
            return 0
        return int(max(0, (now_ms - start_ms) // MS_PER_MINUTE))


def _display(value: float) -> int:
    return int(math.floor(value + 0.5))
