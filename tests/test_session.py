import uuid

import pytest

from simcore.scenario import PatientProfile, Role, ScenarioCategory, ScenarioMetadata
from simcore.scenario_ending import EndReason
from simcore.session import (
    DEFAULT_FINDINGS,
    ENDED_REPLY,
    NEXT_STEP,
    ScenarioSession,
    SessionStore,
    is_patient_conversation,
    is_pure_conversation,
)

from conftest import START_MS, at_minute

HANDOVER = "Handover: 58 year old male with chest pain, vitals stable, gave aspirin."


class FakeResponder:
    def __init__(self):
        self.calls = []
        self.scenes = []

    def reply(self, question, metadata, simulator, history=(), fallback="", scene=None):
        self.calls.append((question, list(history), fallback))
        self.scenes.append(scene)
        return "It hurts right here, in the middle of my chest."

    def describe_exam_findings(self, exam_key, metadata, fallback=""):
        return f"Findings for {exam_key}: clear breath sounds bilaterally."


def test_pulse_ox_reading(session):
    outcome = session.process_utterance("check her pulse ox", at_minute(1))
    assert "Oxygen saturation: 92%" in outcome.reply
    assert outcome.reply.endswith(NEXT_STEP)
    assert not outcome.ended
    assert outcome.elapsed_minutes == 1


def test_placing_pulse_oximeter_reports_reading(session):
    outcome = session.process_utterance("place a pulse oximeter on her finger", at_minute(1))
    assert outcome.reply.startswith("Pulse oximeter placed.\n\nOxygen saturation: 92%")


def test_general_vitals_request_asks_which(session):
    outcome = session.process_utterance("get a full set of vitals", at_minute(1))
    assert outcome.reply.startswith('"Which vitals would you like me to check?"')


def test_named_vitals_are_listed_in_order(session):
    outcome = session.process_utterance("Get me a BP and pulse ox", at_minute(1))
    assert outcome.reply.startswith("Blood pressure: 160/95 mmHg\nOxygen saturation: 92%")


def test_allergy_veto_records_nothing():
    metadata = ScenarioMetadata(
        category=ScenarioCategory.CARDIAC,
        patient_profile=PatientProfile(name="Frank", allergies=["Aspirin"]),
    )
    session = ScenarioSession(metadata, "veto", START_MS)
    outcome = session.process_utterance("give 325 mg aspirin", at_minute(2))

    assert outcome.reply.startswith('"Wait, I need to tell you - Patient is allergic to Aspirin.')
    assert "allergic" in outcome.reply
    assert outcome.validation.reason == "allergy"
    assert session.simulator.interventions == []


def test_oxygen_is_acknowledged_and_recorded(session):
    outcome = session.process_utterance("apply oxygen 15 lpm via non-rebreather", at_minute(1))
    assert outcome.reply.startswith("Oxygen applied at 15 LPM.")
    assert len(session.simulator.interventions) == 1
    assert outcome.vitals["spo2"] == 95


def test_medication_is_acknowledged(session):
    outcome = session.process_utterance("Give 325 mg aspirin by mouth", at_minute(2))
    assert outcome.reply.startswith("Aspirin 325 mg administered (oral).")
    assert outcome.validation.valid


def test_transport_is_acknowledged(session):
    outcome = session.process_utterance("transport code 3 to the nearest hospital for chest pain", at_minute(5))
    assert outcome.reply.startswith("Transport decision noted (code 3, nearest hospital).\n\nReason: chest pain.")
    assert not outcome.ended


def test_physical_assessment_reports_region_findings(session):
    outcome = session.process_utterance("palpate the abdomen", at_minute(3))
    assert outcome.reply == "Abdomen: Soft and non-tender.\n\n" + NEXT_STEP


def test_patient_conversation_uses_profile(session):
    assert is_patient_conversation("What's your name?")
    outcome = session.process_utterance("What's your name?", at_minute(1))
    assert outcome.reply == "My name is Frank Miller."
    assert session.transcript[-1].role == Role.PATIENT


def test_unrecognized_utterance_asks_for_clarification(session):
    outcome = session.process_utterance("xyzzy", at_minute(1))
    assert outcome.reply.startswith(
        '"I\'m not sure what you\'d like me to do. Can you please clarify your action?"'
    )


def test_handover_ends_and_grades(session):
    session.process_utterance("check her pulse ox", at_minute(1))
    outcome = session.process_utterance(HANDOVER, at_minute(6))

    assert outcome.ended
    assert outcome.ending.reason == EndReason.HANDOVER
    assert outcome.rubric is not None
    assert outcome.feedback is not None
    assert "Scenario completed in 6 minutes" in outcome.reply
    assert "**Handover Report Analysis:**" in outcome.reply
    assert outcome.reply.endswith("*Scenario ended due to: Handover report provided*")
    assert session.transcript[-1].role == Role.SYSTEM


def test_ended_session_is_sticky(session):
    session.process_utterance("end scenario", at_minute(3))
    assert session.is_ended
    rubric = session.rubric

    outcome = session.process_utterance("check his pulse", at_minute(4))
    assert outcome.reply == ENDED_REPLY
    assert outcome.ended
    assert outcome.ending.reason == EndReason.MANUAL
    assert session.rubric is rubric


def test_timeout_ends_scenario(session):
    outcome = session.process_utterance("check his pulse", at_minute(20))
    assert outcome.ended
    assert outcome.ending.reason == EndReason.TIMEOUT
    assert outcome.reply.startswith("Time limit reached (20 minutes).")
    assert outcome.reply.endswith("*Scenario ended due to: 20-minute time limit reached*")


def test_exam_quiz_flow(session):
    outcome = session.process_utterance("perform a focused exam of the chest", at_minute(2))
    assert outcome.reply.startswith("I'll guide you through a focused physical examination assessment.")
    assert "**Question 1 of 4:**" in outcome.reply
    assert outcome.exam_question.question_number == 1

    for number in (2, 3, 4):
        outcome = session.process_utterance("not sure", at_minute(2 + number))
        assert f"**Question {number} of 4:**" in outcome.reply

    outcome = session.process_utterance("not sure", at_minute(7))
    assert outcome.exam_result is not None
    assert outcome.reply.startswith(
        "Assessment complete! Based on your focused physical exam - chest, here are your examination findings:"
    )
    assert DEFAULT_FINDINGS in outcome.reply

    ended = session.process_utterance(HANDOVER, at_minute(9))
    physical_exam = ended.rubric.scored_sections["physicalExam"]
    assert physical_exam.exam_assessment_enhanced
    assert ended.rubric.exam_assessment["exam_key"] == "focusedChest"


def test_responder_handles_dialogue_and_findings(cardiac_metadata):
    responder = FakeResponder()
    session = ScenarioSession(cardiac_metadata, "llm", START_MS, responder=responder)

    outcome = session.process_utterance("What's your name?", at_minute(1))
    assert outcome.reply == "It hurts right here, in the middle of my chest."
    question, history, fallback = responder.calls[0]
    assert question == "What's your name?"
    assert history == []
    assert fallback == "My name is Frank Miller."

    session.process_utterance("rapid trauma assessment", at_minute(2))
    outcome = None
    while session.exam_manager.has_active_assessment("llm"):
        outcome = session.process_utterance("not sure", at_minute(3))
    assert "Findings for rapidTrauma: clear breath sounds bilaterally." in outcome.reply


def test_outcome_to_dict(session):
    data = session.process_utterance("check her pulse ox", at_minute(1)).to_dict()
    assert data["consciousness"] == "alert"
    assert data["action"]["type"] == "vitalCheck"
    assert data["ended"] is False
    assert data["rubric"] is None


def test_session_store(cardiac_metadata):
    store = SessionStore()
    session = store.create(cardiac_metadata, now_ms=START_MS)
    assert uuid.UUID(session.session_id)
    assert store.get(session.session_id) is session
    assert len(store) == 1

    named = store.create(cardiac_metadata, session_id="named", now_ms=START_MS)
    assert named.start_ms == START_MS
    assert len(store) == 2

    assert store.remove(session.session_id)
    assert not store.remove(session.session_id)
    assert store.get(session.session_id) is None


@pytest.mark.parametrize("text", [
    "Hello, I'm with the ambulance",
    "How old are you?",
    "Are you allergic to anything?",
    "On a scale of 1 to 10, how bad is it?",
])
def test_patient_conversation_detection(text):
    assert is_patient_conversation(text)


def test_procedures_are_not_conversation():
    assert not is_patient_conversation("apply oxygen 15 lpm")


def make_session(category=ScenarioCategory.CARDIAC, environment=None, **fields):
    metadata = ScenarioMetadata(
        category=category,
        patient_profile=PatientProfile(name="Frank Miller", age=58, allergies=["penicillin"]),
        environment=environment if environment is not None else {},
        **fields
    )
    return ScenarioSession(metadata, f"{category.value}-session", START_MS)


def test_allergy_question_records_nothing(session):
    outcome = session.process_utterance("Are you allergic to aspirin?", at_minute(1))
    assert outcome.reply == "I'm allergic to penicillin."
    assert outcome.action is None
    assert session.simulator.interventions == []
    assert session.transcript[-1].role == Role.PATIENT


@pytest.mark.parametrize("text,expected", [
    ("Are you allergic to aspirin?", True),
    ("Do you take any medications?", True),
    ("What's your name? Let me check your pulse", True),
    ("Can you tell me your pulse rate?", False),
    ("Do you need oxygen?", False),
    ("give 325 mg aspirin", False),
])
def test_pure_conversation_screen(text, expected):
    assert is_pure_conversation(text) is expected


def test_vetoed_and_exam_turns_still_advance_the_clock():
    metadata = ScenarioMetadata(
        category=ScenarioCategory.CARDIAC,
        patient_profile=PatientProfile(name="Frank", allergies=["Aspirin"]),
        environment={},
    )
    session = ScenarioSession(metadata, "clock", START_MS)

    vetoed = session.process_utterance("give 325 mg aspirin", at_minute(10))
    assert vetoed.validation.reason == "allergy"
    assert vetoed.vitals["heart_rate"] == 115
    assert vetoed.vitals["spo2"] == 90

    exam = session.process_utterance("perform a focused exam of the chest", at_minute(12))
    assert exam.exam_question is not None
    assert exam.vitals["heart_rate"] == 120


@pytest.mark.parametrize("category,text,expected", [
    (ScenarioCategory.CARDIAC, "check his neck", "Neck: Possible mild JVD when semi-reclined."),
    (ScenarioCategory.RESPIRATORY, "examine the chest",
     "Chest: Increased work of breathing; scattered wheezes bilaterally."),
    (ScenarioCategory.TRAUMA, "look at her back", "Back: No step-offs; no tenderness."),
    (ScenarioCategory.NEUROLOGIC, "assess his face",
     "Head/Face: Mild right-sided facial droop and slurred speech; pupils equal and reactive; no scalp trauma."),
    (ScenarioCategory.METABOLIC, "inspect the hands",
     "Upper Extremities: Fine tremor present; capillary refill brisk."),
    (ScenarioCategory.ALLERGIC, "check her legs", "Lower Extremities: No edema; distal pulses weak but present."),
    (ScenarioCategory.GENERAL, "palpate the pelvis", "Pelvis: Stable and non-tender."),
])
def test_region_findings_follow_category(category, text, expected):
    outcome = make_session(category).process_utterance(text, at_minute(2))
    assert outcome.reply == f"{expected}\n\n{NEXT_STEP}"


def test_region_findings_agree_with_complaint():
    session = make_session(ScenarioCategory.TRAUMA, chief_complaint="fall from a ladder with hip pain")
    outcome = session.process_utterance("check his arms and pelvis", at_minute(2))
    assert outcome.reply.startswith(
        "Pelvis: Pelvis tender on gentle compression; no gross instability.\n"
        "Upper Extremities: No obvious deformities; pulses and sensation intact."
    )


def test_pulse_and_skin_checks(session):
    pulse = session.process_utterance("check his radial pulse", at_minute(1))
    assert pulse.reply == f"Radial pulse: regular and strong.\nHeart rate: 110 bpm\n\n{NEXT_STEP}"

    skin = session.process_utterance("Can I check your skin?", at_minute(2))
    assert skin.reply == (
        "\"Alright, that's fine.\"\nSkin: warm and dry. Capillary refill brisk (<2 seconds).\n\n" + NEXT_STEP
    )


def test_passing_equipment_does_not_end_session(session):
    outcome = session.process_utterance("hand over the oxygen mask", at_minute(2))
    assert not outcome.ended
    assert not session.is_ended


def test_scene_hazards_reported_and_noted():
    session = make_session(environment={"weather": "rain", "scene_hazard": "traffic"})
    assert session.to_dict(at_minute(0))["environment"]["scene_hazard"]["type"] == "traffic"

    outcome = session.process_utterance("Is the scene safe?", at_minute(1))
    assert outcome.reply.startswith(
        "Scene hazard: Heavy traffic near the scene. Safety concerns: vehicle strike risk, "
        "noise interference, access difficulties.\nWeather: Light rain is falling."
    )

    outcome = session.process_utterance("grab the oxygen bag", at_minute(2))
    assert outcome.scene_note == "Your equipment is getting wet from the rain."
    assert outcome.to_dict()["scene_note"] == outcome.scene_note


def test_clear_scene():
    session = make_session()
    outcome = session.process_utterance("Is the scene safe?", at_minute(1))
    assert outcome.reply == f"Scene is safe. No hazards identified.\n\n{NEXT_STEP}"
    assert outcome.scene_note is None


def test_responder_hears_scene_conditions(cardiac_metadata):
    cardiac_metadata.environment = {"weather": "fog"}
    responder = FakeResponder()
    session = ScenarioSession(cardiac_metadata, "foggy", START_MS, responder=responder)
    session.process_utterance("How are you feeling?", at_minute(1))
    assert responder.scenes[0].startswith("Weather: Dense fog reducing visibility.")
