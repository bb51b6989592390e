"""
Medication safety checks for EMT Sim.
Vets a medication against the patient's allergies and medical history.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union

from .action_recognizer import UNSPECIFIED, Action, ActionRecognizer, MedicationDetails
from .scenario import PatientProfile
from .text_normalizer import normalize_to_ascii_lower

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of vetting one medication."""
    valid: bool
    reason: Optional[str] = None  # "allergy" or "contraindication"
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"valid": self.valid, "reason": self.reason, "message": self.message}


@dataclass(frozen=True)
class ContraindicationRule:
    """
    A history-based contraindication.

    A history entry triggers the rule when it satisfies every keyword group,
    where a group is satisfied by any one of its keywords.
    """
    medication: str
    label: str
    keyword_groups: Tuple[Tuple[str, ...], ...]

    def matches(self, history_entry: str) -> bool:
        entry = normalize_to_ascii_lower(history_entry)
        return all(any(k in entry for k in group) for group in self.keyword_groups)


CONTRAINDICATION_RULES: Tuple[ContraindicationRule, ...] = (
    ContraindicationRule(
        medication="aspirin",
        label="bleeding disorder/ulcer",
        keyword_groups=(("bleeding", "ulcer"),),
    ),
    ContraindicationRule(
        medication="nitroglycerin",
        label="recent ED medication use",
        keyword_groups=(("viagra", "cialis", "levitra", "sildenafil", "tadalafil", "vardenafil"),),
    ),
    ContraindicationRule(
        medication="albuterol",
        label="severe cardiac condition",
        keyword_groups=(("severe",), ("heart",)),
    ),
)

VALID = ValidationResult(valid=True)


class ContraindicationValidator:
    """Checks allergies first, then the history rule table."""

    def __init__(
        self,
        rules: Tuple[ContraindicationRule, ...] = CONTRAINDICATION_RULES,
        recognizer: Optional[ActionRecognizer] = None
    ):
        self.rules = rules
        self.recognizer = recognizer or ActionRecognizer()

    def validate(
        self,
        action_or_medication: Union[Action, str, None],
        patient_profile: Optional[PatientProfile]
    ) -> ValidationResult:
        """
        Vet a medication for this patient.

        Args:
            action_or_medication: A MedicationAdmin action or a medication name
            patient_profile: Patient profile, may be None

        Returns:
            ValidationResult; the first failing check wins
        """
        medication = _medication_name(action_or_medication)
        if not medication or medication == UNSPECIFIED or patient_profile is None:
            return VALID
        medication = self.canonical_medication(medication)

        for allergy in patient_profile.allergies:
            allergy_norm = normalize_to_ascii_lower(allergy)
            if not allergy_norm:
                continue
            if (
                medication in allergy_norm
                or allergy_norm in medication
                or self.canonical_medication(allergy_norm) == medication
            ):
                logger.info("Medication %s vetoed: allergy to %s", medication, allergy)
                return ValidationResult(
                    valid=False,
                    reason="allergy",
                    message=f"Patient is allergic to {allergy}. This medication is contraindicated.",
                )

        labels = []
        for rule in self.rules:
            if rule.medication != medication:
                continue
            if any(rule.matches(entry) for entry in patient_profile.medical_history):
                labels.append(rule.label)

        if labels:
            logger.info("Medication %s vetoed: %s", medication, ", ".join(labels))
            return ValidationResult(
                valid=False,
                reason="contraindication",
                message=f"Contraindicated due to: {', '.join(labels)}",
            )

        return VALID

    def canonical_medication(self, name: str) -> str:
        """Map brand names and abbreviations ("asa", "ventolin") to the vocabulary key."""
        canonical = self.recognizer.identify_term("medications", name)
        return name if canonical == UNSPECIFIED else canonical


def _medication_name(action_or_medication: Union[Action, str, None]) -> str:
    if isinstance(action_or_medication, Action):
        details = action_or_medication.details
        if isinstance(details, MedicationDetails):
            return normalize_to_ascii_lower(details.medication)
        return ""
    return normalize_to_ascii_lower(action_or_medication)
