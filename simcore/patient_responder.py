"""
LLM patient voice for EMT Sim.
Renders simulator state into short in-character replies using Claude.
"""

import logging
import os
from typing import Dict, List, Optional, Sequence

import anthropic

from . import config
from .patient_simulator import PatientSimulator
from .scenario import Role, ScenarioMetadata, TranscriptTurn

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are roleplaying as an emergency patient being assessed by an EMT student during a training scenario.

Guidelines:
- Stay in character as the patient described below
- Answer only what you are asked; do not volunteer the diagnosis
- Your level of consciousness limits what you can say:
  - alert: answer clearly, 1-2 sentences
  - altered: confused, fragmented speech
  - unconscious: reply only with "The patient is unresponsive."
- Never state numeric vital signs; the monitor reports those
- Never mention that this is a simulation or that you are an AI

Do NOT break character or explain what you're doing. Just respond as the patient would."""

FINDINGS_PROMPT = """You are an EMT instructor providing realistic examination findings. Generate concise, scenario-appropriate findings for the requested examination at EMT level. Include both normal and any relevant abnormal findings based on the patient's condition."""

EXAM_INSTRUCTIONS = {
    "focusedChest": "Generate findings for a focused chest examination including inspection, palpation, and auscultation.",
    "focusedAbdomen": "Generate findings for a focused abdominal examination including inspection, auscultation, and palpation in proper sequence.",
    "rapidTrauma": "Generate findings for a rapid trauma assessment covering head, neck, chest, abdomen, pelvis, and extremities.",
    "fullSecondary": "Generate findings for a complete secondary assessment including detailed head-to-toe examination.",
}

HISTORY_TURNS = 10


class PatientResponder:
    """Optional Claude-backed patient voice. The deterministic core never depends on it."""

    def __init__(self, api_key: str = None, model: str = config.ANTHROPIC_MODEL):
        self.api_key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        if not self.api_key:
            raise ValueError("ANTHROPIC_API_KEY not set")

        self.client = anthropic.Anthropic(api_key=self.api_key)
        self.model = model

    def reply(
        self,
        question: str,
        metadata: ScenarioMetadata,
        simulator: PatientSimulator,
        history: Sequence[TranscriptTurn] = (),
        fallback: str = "",
        scene: Optional[str] = None
    ) -> str:
        """
        Generate an in-character reply.

        Args:
            question: Latest trainee message
            metadata: Scenario metadata
            simulator: Current patient state
            history: Earlier transcript turns, oldest first
            fallback: Returned unchanged if the API call fails
            scene: Weather and hazard description, if any

        Returns:
            Patient reply text
        """
        messages = build_messages(history, question)
        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=config.PATIENT_REPLY_MAX_TOKENS,
                system=self._build_system_prompt(metadata, simulator, scene),
                messages=messages
            )
            return response.content[0].text.strip() or fallback
        except anthropic.APIError as e:
            logger.warning("Patient reply failed, using deterministic reply: %s", e)
            return fallback

    def describe_exam_findings(self, exam_key: str, metadata: ScenarioMetadata, fallback: str = "") -> str:
        """Generate examination findings after a completed exam quiz."""
        profile = metadata.patient_profile
        instruction = EXAM_INSTRUCTIONS.get(exam_key, EXAM_INSTRUCTIONS["focusedChest"])
        user_prompt = (
            f"{instruction}\n\n"
            f"Patient scenario: {metadata.chief_complaint}\n"
            f"Age: {profile.age if profile.age is not None else 'unknown'}\n"
            f"Gender: {profile.gender or 'unknown'}"
        )
        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=config.PATIENT_REPLY_MAX_TOKENS,
                system=FINDINGS_PROMPT,
                messages=[{"role": "user", "content": user_prompt}]
            )
            return response.content[0].text.strip() or fallback
        except anthropic.APIError as e:
            logger.warning("Exam findings failed, using deterministic findings: %s", e)
            return fallback

    def _build_system_prompt(
        self, metadata: ScenarioMetadata, simulator: PatientSimulator, scene: Optional[str] = None
    ) -> str:
        """Build the system prompt from the profile and current physiology."""
        vitals = simulator.get_current_vitals().to_display_dict()
        lines = [
            SYSTEM_PROMPT,
            "",
            metadata.patient_profile.to_context_string(),
            "",
            f"PRESENTATION: {metadata.severity} {metadata.chief_complaint}, started {metadata.onset}",
            f"CONSCIOUSNESS: {simulator.consciousness.value}",
            f"CURRENT CONDITION (do not recite numbers): HR {vitals['heart_rate']}, "
            f"RR {vitals['respiratory_rate']}, BP {vitals['blood_pressure']}, SpO2 {vitals['spo2']}%",
        ]
        if simulator.interventions:
            lines.append("TREATMENT SO FAR: " + "; ".join(r.description for r in simulator.interventions))
        if scene:
            lines.append(f"SCENE: {scene}")
        return "\n".join(lines)


def build_messages(history: Sequence[TranscriptTurn], question: str) -> List[Dict[str, str]]:
    """
    Convert transcript turns to alternating user/assistant messages.

    System turns are dropped, consecutive turns from the same side are
    merged, and the list always starts and ends with the trainee.
    """
    messages: List[Dict[str, str]] = []
    turns = [t for t in history if t.role != Role.SYSTEM][-HISTORY_TURNS:]
    turns.append(TranscriptTurn(Role.TRAINEE, question))

    for turn in turns:
        role = "user" if turn.role == Role.TRAINEE else "assistant"
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"] += "\n" + turn.text
        else:
            messages.append({"role": role, "content": turn.text})

    while messages and messages[0]["role"] != "user":
        messages.pop(0)
    return messages
