import json

import pytest

from simcore.scenario import (
    ConsciousnessLevel,
    Difficulty,
    PatientProfile,
    Role,
    ScenarioCategory,
    ScenarioMetadata,
    TranscriptTurn,
    determine_category,
    parse_category,
    parse_difficulty,
    parse_role,
    parse_transcript,
)


def test_parse_category_aliases():
    assert parse_category("Cardiac") == ScenarioCategory.CARDIAC
    assert parse_category("anaphylaxis") == ScenarioCategory.ALLERGIC
    assert parse_category("neuro") == ScenarioCategory.NEUROLOGIC


def test_parse_category_unknown_lists_values():
    with pytest.raises(ValueError, match="Unknown scenario category"):
        parse_category("dental")


def test_parse_difficulty():
    assert parse_difficulty("ADVANCED") == Difficulty.ADVANCED
    with pytest.raises(ValueError, match="novice, intermediate, advanced"):
        parse_difficulty("expert")


def test_parse_role_accepts_chat_names():
    assert parse_role("user") == Role.TRAINEE
    assert parse_role("assistant") == Role.PATIENT
    with pytest.raises(ValueError):
        parse_role("narrator")


def test_determine_category():
    assert determine_category("Trauma", "fall from ladder") == ScenarioCategory.TRAUMA
    assert determine_category("Medical", "Cardiac - chest pain") == ScenarioCategory.CARDIAC
    assert determine_category("Medical", "Allergic reaction") == ScenarioCategory.ALLERGIC
    assert determine_category("Medical", "something else") == ScenarioCategory.GENERAL
    assert determine_category(None, None) == ScenarioCategory.GENERAL


def test_metadata_from_none_uses_defaults():
    metadata = ScenarioMetadata.from_dict(None)
    assert metadata.category == ScenarioCategory.GENERAL
    assert metadata.difficulty == Difficulty.INTERMEDIATE
    assert metadata.consciousness == ConsciousnessLevel.ALERT
    assert metadata.time_limit_minutes == 20


def test_metadata_malformed_fields_fall_back():
    metadata = ScenarioMetadata.from_dict({
        "category": "dental",
        "difficulty": "impossible",
        "patient_profile": "not a dict",
        "time_limit_minutes": -5,
        "consciousness": 42,
    })
    assert metadata.category == ScenarioCategory.GENERAL
    assert metadata.difficulty == Difficulty.INTERMEDIATE
    assert metadata.patient_profile == PatientProfile()
    assert metadata.time_limit_minutes == 20
    assert metadata.consciousness == ConsciousnessLevel.ALERT


def test_metadata_from_generated_scenario():
    metadata = ScenarioMetadata.from_dict({
        "mainScenario": "Medical",
        "subScenario": "Respiratory distress",
        "generatedScenario": {
            "patientProfile": {"name": "Ana", "age": "34 years", "allergies": ["sulfa"]},
            "vitals": {"baseline": {"heartRate": 120, "spO2": 88}},
            "presentation": {"chiefComplaint": "shortness of breath", "severity": "severe"},
            "physicalFindings": {"consciousness": "altered"},
            "difficulty": {"level": "advanced"},
        },
    })
    assert metadata.category == ScenarioCategory.RESPIRATORY
    assert metadata.difficulty == Difficulty.ADVANCED
    assert metadata.patient_profile.age == 34
    assert metadata.patient_profile.allergies == ["sulfa"]
    assert metadata.baseline_vitals == {"heartRate": 120, "spO2": 88}
    assert metadata.consciousness == ConsciousnessLevel.ALTERED
    assert metadata.chief_complaint == "shortness of breath"


def test_profile_from_json(tmp_path):
    path = tmp_path / "frank.json"
    path.write_text(json.dumps({"patient": {
        "name": "Frank", "age": 61, "medicalHistory": ["angina"], "allergies": ["aspirin", "", 7],
    }}))
    profile = PatientProfile.from_json(str(path))
    assert profile.name == "Frank"
    assert profile.medical_history == ["angina"]
    assert profile.allergies == ["aspirin"]


def test_profile_context_string():
    text = PatientProfile(name="Frank", age=61).to_context_string()
    assert "PATIENT: Frank" in text
    assert "Allergies: NKDA" in text


def test_parse_transcript_skips_malformed_entries():
    turns = parse_transcript([
        {"role": "user", "content": "hello"},
        {"role": "patient", "text": "hi"},
        {"role": "narrator", "text": "ignored"},
        {"role": "trainee", "text": 12},
        "not a dict",
        TranscriptTurn(Role.SYSTEM, "note"),
    ])
    assert turns == [
        TranscriptTurn(Role.TRAINEE, "hello"),
        TranscriptTurn(Role.PATIENT, "hi"),
        TranscriptTurn(Role.SYSTEM, "note"),
    ]


def test_parse_transcript_non_list_is_empty():
    assert parse_transcript(None) == []
    assert parse_transcript("text") == []
    assert parse_transcript({"role": "trainee"}) == []


def test_metadata_scene_fields():
    metadata = ScenarioMetadata.from_dict({
        "generatedScenario": {"dispatchInfo": {"location": "Interstate 5 shoulder", "time": "02:10 am"}},
        "environment": {"weather": "fog"},
    })
    assert metadata.location == "Interstate 5 shoulder"
    assert metadata.dispatch_time == "02:10 am"
    assert metadata.environment == {"weather": "fog"}
    assert metadata.to_dict()["location"] == "Interstate 5 shoulder"

    assert ScenarioMetadata.from_dict({"environment": "stormy"}).environment is None
