"""
Scenario lifecycle for EMT Sim.
Detects handover, manual and timeout endings and analyzes handover reports.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from . import config
from .text_normalizer import contains_any, normalize_to_ascii_lower

logger = logging.getLogger(__name__)

MS_PER_MINUTE = 60000


class EndReason(Enum):
    HANDOVER = "handover"
    MANUAL = "manual"
    TIMEOUT = "timeout"


class LifecycleState(Enum):
    RUNNING = "running"
    ENDED = "ended"


HANDOVER_TRIGGERS: Tuple[str, ...] = (
    "handover",
    "giving report",
    "transfer of care",
    "report to hospital",
    "hospital report",
    "giving handover",
    "ready to give handover",
    "ready to give my report",
    "transferring care",
    "handing over patient",
)

MANUAL_TRIGGERS: Tuple[str, ...] = (
    "end scenario",
    "finish scenario",
    "complete scenario",
    "scenario complete",
    "done with scenario",
    "stop scenario",
)

# Two-word "hand over" counts as a report opener ("hand over: ...") or when it hands over the patient
HAND_OVER_PATTERN = re.compile(
    r"^hand(?:ing)?\s+over\s*(?:[:,-]|$)|\bready\s+to\s+hand\s+over\b"
    r"|\bhand(?:ing)?\s+over\s+(?:my\s+|the\s+)?(?:report|care|patient|to)\b"
)

FORCE_END_PATTERN = re.compile(r"force\s+end\s+test")

HANDOVER_CONTENT_PATTERNS = (
    re.compile(r"(?:handover|report|transfer).*?:\s*(.+)", re.IGNORECASE | re.DOTALL),
    re.compile(r"(?:ready to give|giving).*?(?:handover|report).*?(.+)", re.IGNORECASE | re.DOTALL),
    re.compile(r"transferring care.*?(.+)", re.IGNORECASE | re.DOTALL),
)

# Element name -> (pattern, label when present, label when missing)
HANDOVER_ELEMENTS = (
    ("age", re.compile(r"\b\d{1,3}\s*(?:year|yr|yo)\b"), "patient age", "patient age/demographics"),
    ("chief_complaint", re.compile(r"complain|chief|presenting|symptoms?"), "chief complaint", "chief complaint"),
    ("findings", re.compile(r"found|noted|assessed|exam|physical"), "assessment findings", "assessment findings"),
    ("vitals", re.compile(r"vital|\bbp\b|blood pressure|heart rate|pulse|temp|spo2|oxygen"), "vital signs", "vital signs"),
    ("treatments", re.compile(r"treatment|gave|administered|intervention|medication"), "treatments provided", "treatments/interventions"),
)


@dataclass(frozen=True)
class EndingCheck:
    should_end: bool
    time_spent: int
    reason: Optional[EndReason] = None
    trigger: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "should_end": self.should_end,
            "time_spent": self.time_spent,
            "reason": self.reason.value if self.reason else None,
            "trigger": self.trigger,
        }


@dataclass(frozen=True)
class HandoverAnalysis:
    has_age: bool = False
    has_chief_complaint: bool = False
    has_findings: bool = False
    has_vitals: bool = False
    has_treatments: bool = False

    @property
    def completeness_score(self) -> int:
        return sum([
            self.has_age,
            self.has_chief_complaint,
            self.has_findings,
            self.has_vitals,
            self.has_treatments,
        ])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "has_age": self.has_age,
            "has_chief_complaint": self.has_chief_complaint,
            "has_findings": self.has_findings,
            "has_vitals": self.has_vitals,
            "has_treatments": self.has_treatments,
            "completeness_score": self.completeness_score,
        }


class ScenarioEndingManager:
    """Stateless end-of-scenario detection and wording."""

    def __init__(self, time_limit_minutes: int = config.TIME_LIMIT_MINUTES):
        self.time_limit_minutes = time_limit_minutes

    def check_for_scenario_ending(self, utterance: str, start_ms: Optional[int], now_ms: int) -> EndingCheck:
        """
        Check whether this utterance (or the clock) ends the scenario.

        Handover wins over a manual end, which wins over a timeout.

        Args:
            utterance: Latest trainee message
            start_ms: Scenario start, milliseconds since epoch
            now_ms: Current time, milliseconds since epoch

        Returns:
            EndingCheck with whole minutes spent
        """
        normalized = normalize_to_ascii_lower(utterance)
        time_spent = self.calculate_time_spent(start_ms, now_ms)

        if self.is_handover_message(normalized):
            return EndingCheck(True, time_spent, EndReason.HANDOVER, "User initiated handover report")

        if self.is_manual_end_message(normalized):
            return EndingCheck(True, time_spent, EndReason.MANUAL, "User manually ended scenario")

        if start_ms is not None and now_ms - start_ms >= self.time_limit_minutes * MS_PER_MINUTE:
            return EndingCheck(
                True, time_spent, EndReason.TIMEOUT,
                f"Time limit reached ({self.time_limit_minutes} minutes)"
            )

        return EndingCheck(False, time_spent)

    def is_handover_message(self, utterance: str) -> bool:
        normalized = normalize_to_ascii_lower(utterance)
        return contains_any(normalized, HANDOVER_TRIGGERS) or bool(HAND_OVER_PATTERN.search(normalized))

    def is_manual_end_message(self, utterance: str) -> bool:
        normalized = normalize_to_ascii_lower(utterance)
        if FORCE_END_PATTERN.search(normalized):
            return True
        return contains_any(normalized, MANUAL_TRIGGERS)

    @staticmethod
    def calculate_time_spent(start_ms: Optional[int], now_ms: int) -> int:
        """Whole minutes since start, floored."""
        if start_ms is None:
            return 0
        return int(max(0, (now_ms - start_ms) // MS_PER_MINUTE))

    # ----------------------------------------
    # responses
    # ----------------------------------------

    def generate_ending_response(self, check: EndingCheck, utterance: str) -> str:
        if check.reason == EndReason.HANDOVER:
            content = self.extract_handover_content(utterance)
            if content:
                return (
                    f'Thank you for your handover report: "{content}"\n\n'
                    f"Scenario completed in {check.time_spent} minutes."
                )
            return f"Handover noted. Scenario completed in {check.time_spent} minutes."

        if check.reason == EndReason.MANUAL:
            return f"Scenario manually ended after {check.time_spent} minutes."

        if check.reason == EndReason.TIMEOUT:
            return f"Time limit reached ({self.time_limit_minutes} minutes). Scenario automatically ended."

        return "Scenario ended."

    def extract_handover_content(self, utterance: str) -> Optional[str]:
        """
        Pull the report body out of a handover message.

        Examples:
            "Handover: 54 year old male with chest pain" -> "54 year old male with chest pain"
            "handover" -> None
        """
        text = utterance or ""
        for pattern in HANDOVER_CONTENT_PATTERNS:
            match = pattern.search(text)
            if match and match.group(1).strip():
                return match.group(1).strip()

        if not self.is_handover_message(text):
            return None

        content = text
        for trigger in HANDOVER_TRIGGERS:
            content = re.sub(re.escape(trigger), "", content, flags=re.IGNORECASE).strip()
        content = re.sub(r"^[:.\-\s]+", "", content).strip()

        return content if len(content) > 10 else None

    def analyze_handover_quality(self, content: Optional[str]) -> HandoverAnalysis:
        if not content:
            return HandoverAnalysis()

        normalized = normalize_to_ascii_lower(content)
        found = {name: bool(pattern.search(normalized)) for name, pattern, _, _ in HANDOVER_ELEMENTS}
        return HandoverAnalysis(
            has_age=found["age"],
            has_chief_complaint=found["chief_complaint"],
            has_findings=found["findings"],
            has_vitals=found["vitals"],
            has_treatments=found["treatments"],
        )

    def generate_handover_feedback(self, analysis: HandoverAnalysis) -> List[str]:
        """Feedback lines for a handover report. Informational only."""
        if analysis.completeness_score == 0:
            return ["No handover content was detected."]

        present = {
            "age": analysis.has_age,
            "chief_complaint": analysis.has_chief_complaint,
            "findings": analysis.has_findings,
            "vitals": analysis.has_vitals,
            "treatments": analysis.has_treatments,
        }
        included = [label for name, _, label, _ in HANDOVER_ELEMENTS if present[name]]
        missing = [label for name, _, _, label in HANDOVER_ELEMENTS if not present[name]]

        feedback = []
        if included:
            feedback.append(f"Handover included: {', '.join(included)}")
        if missing:
            feedback.append(f"Consider including: {', '.join(missing)}")

        if analysis.completeness_score >= 4:
            feedback.append("Comprehensive handover report.")
        elif analysis.completeness_score >= 2:
            feedback.append("Adequate handover report with room for improvement.")
        else:
            feedback.append("Handover report needs significant improvement.")

        return feedback


def format_time(minutes: float) -> str:
    if minutes < 1:
        return "less than 1 minute"
    if minutes == 1:
        return "1 minute"
    return f"{minutes} minutes"


class ScenarioLifecycle:
    """
    Sticky RUNNING -> ENDED state machine over ScenarioEndingManager.

    Once ended, the first ending check is kept and later utterances do not
    change it.
    """

    def __init__(self, start_ms: int, manager: Optional[ScenarioEndingManager] = None):
        self.start_ms = start_ms
        self.manager = manager or ScenarioEndingManager()
        self.state = LifecycleState.RUNNING
        self.ending: Optional[EndingCheck] = None

    @property
    def is_ended(self) -> bool:
        return self.state == LifecycleState.ENDED

    @property
    def reason(self) -> Optional[EndReason]:
        return self.ending.reason if self.ending else None

    def observe(self, utterance: str, now_ms: int) -> EndingCheck:
        if self.ending is not None:
            return self.ending

        check = self.manager.check_for_scenario_ending(utterance, self.start_ms, now_ms)
        if check.should_end:
            self.state = LifecycleState.ENDED
            self.ending = check
            logger.info("Scenario ended: %s after %d minutes", check.reason.value, check.time_spent)
        return check
