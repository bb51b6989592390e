import pytest

from simcore.action_recognizer import ActionRecognizer
from simcore.patient_simulator import (
    VITAL_RANGES,
    PatientSimulator,
    VitalEffect,
    VitalsSnapshot,
    classify_intervention,
)
from simcore.scenario import (
    ConsciousnessLevel,
    Difficulty,
    PatientProfile,
    ScenarioCategory,
    ScenarioMetadata,
)

from conftest import START_MS, at_minute

CONSCIOUSNESS_RANK = {
    ConsciousnessLevel.ALERT: 0,
    ConsciousnessLevel.ALTERED: 1,
    ConsciousnessLevel.UNCONSCIOUS: 2,
}


def assert_in_range(snapshot):
    for name, value in snapshot.to_dict().items():
        low, high = VITAL_RANGES[name]
        assert low <= value <= high, name


@pytest.fixture
def simulator():
    return PatientSimulator()


def test_snapshot_clamps_out_of_range_values():
    vitals = VitalsSnapshot(heart_rate=500, respiratory_rate=2, systolic=10, diastolic=400, spo2=120, temperature=90)
    assert vitals.heart_rate == 200
    assert vitals.respiratory_rate == 8
    assert vitals.systolic == 60
    assert vitals.diastolic == 150
    assert vitals.spo2 == 100
    assert vitals.temperature == 95.0


def test_snapshot_display_rounds_half_up():
    vitals = VitalsSnapshot(heart_rate=92.5, spo2=94.4, systolic=120.5, diastolic=79.5)
    display = vitals.to_display_dict()
    assert display["heart_rate"] == 93
    assert display["spo2"] == 94
    assert display["blood_pressure"] == "121/80"


def test_vital_effect_never_reverses_direction():
    floor = VitalEffect("spo2", -3, 90)
    assert floor.apply(95) == 92
    assert floor.apply(91) == 90
    assert floor.apply(85) == 85
    cap = VitalEffect("heart_rate", 5, 140)
    assert cap.apply(150) == 150
    assert cap.apply(130, scale=0.5) == 132.5


def test_category_baseline(simulator):
    metadata = ScenarioMetadata(category=ScenarioCategory.CARDIAC)
    baseline = simulator.initialize(metadata, START_MS)
    assert baseline == VitalsSnapshot(110, 20, 160, 95, 92, 98.6)


def test_difficulty_adjusts_baseline(simulator):
    novice = simulator.get_baseline_vitals(
        ScenarioMetadata(category=ScenarioCategory.ALLERGIC, difficulty=Difficulty.NOVICE)
    )
    assert novice.spo2 == 90
    assert novice.heart_rate == 115

    advanced = simulator.get_baseline_vitals(
        ScenarioMetadata(category=ScenarioCategory.GENERAL, difficulty=Difficulty.ADVANCED)
    )
    assert advanced.spo2 == 85
    assert advanced.heart_rate == 105
    assert advanced.respiratory_rate == 24


def test_scenario_vitals_override_table(simulator):
    metadata = ScenarioMetadata(baseline_vitals={"heartRate": 130, "spO2": 85, "rr": 0})
    baseline = simulator.get_baseline_vitals(metadata)
    assert baseline.heart_rate == 130
    assert baseline.spo2 == 85
    assert baseline.respiratory_rate == 18


def test_oxygen_intervention_effect(simulator):
    simulator.initialize(ScenarioMetadata(category=ScenarioCategory.CARDIAC), START_MS)
    record = simulator.record_intervention("apply oxygen via nasal cannula", at_minute(1))
    assert record.kinds == frozenset({"oxygen"})
    assert record.elapsed_minutes == 1
    vitals = simulator.get_current_vitals()
    assert vitals.spo2 == 95
    assert vitals.respiratory_rate == 18


def test_classify_intervention_uses_action_details():
    action = ActionRecognizer().recognize("give 0.3 mg epi im")
    assert "epinephrine" in classify_intervention("give 0.3 mg epi im", action)
    assert classify_intervention("sit the patient upright") == frozenset({"positioning"})


def test_vitals_stay_in_range_across_interventions(simulator):
    simulator.initialize(ScenarioMetadata(category=ScenarioCategory.ALLERGIC), START_MS)
    for minute in range(15):
        for description in ("epinephrine auto-injector", "albuterol nebulizer", "oxygen", "iv fluids"):
            simulator.record_intervention(description, at_minute(minute))
            assert_in_range(simulator.get_current_vitals())
    assert simulator.get_current_vitals().spo2 == 100


def test_no_deterioration_before_onset(simulator):
    metadata = ScenarioMetadata(category=ScenarioCategory.CARDIAC)
    simulator.initialize(metadata, START_MS)
    assert simulator.update_for_time_progression(metadata, at_minute(5)) is None
    assert simulator.get_missing_critical(ScenarioCategory.CARDIAC) == ["oxygen", "aspirin"]


def test_missing_aspirin_raises_heart_rate(simulator):
    metadata = ScenarioMetadata(category=ScenarioCategory.CARDIAC)
    simulator.initialize(metadata, START_MS)
    simulator.record_intervention("apply oxygen", at_minute(1))

    updated = simulator.update_for_time_progression(metadata, at_minute(10))
    assert updated is not None
    assert updated.heart_rate == 115
    assert updated.spo2 == 95


def test_insignificant_change_is_not_recorded(simulator):
    metadata = ScenarioMetadata(category=ScenarioCategory.CARDIAC)
    simulator.initialize(metadata, START_MS)
    simulator.record_intervention("apply oxygen", at_minute(1))
    simulator.record_intervention("aspirin 324 mg", at_minute(2))
    history_length = len(simulator.vitals_history)
    assert simulator.update_for_time_progression(metadata, at_minute(12)) is None
    assert len(simulator.vitals_history) == history_length


def test_consciousness_only_worsens_without_oxygen(simulator):
    metadata = ScenarioMetadata(category=ScenarioCategory.RESPIRATORY, difficulty=Difficulty.ADVANCED)
    simulator.initialize(metadata, START_MS)

    levels = []
    for minute in range(20):
        simulator.update_for_time_progression(metadata, at_minute(minute))
        levels.append(simulator.update_consciousness(metadata, at_minute(minute)))
        assert_in_range(simulator.get_current_vitals())

    ranks = [CONSCIOUSNESS_RANK[level] for level in levels]
    assert ranks == sorted(ranks)
    assert levels[-1] == ConsciousnessLevel.UNCONSCIOUS


def test_oxygen_restores_altered_patient(simulator):
    metadata = ScenarioMetadata(
        category=ScenarioCategory.GENERAL,
        baseline_vitals={"spo2": 89},
        consciousness=ConsciousnessLevel.ALTERED,
    )
    simulator.initialize(metadata, START_MS)
    simulator.record_intervention("apply oxygen", at_minute(1))
    assert simulator.update_consciousness(metadata, at_minute(1)) == ConsciousnessLevel.ALERT


def test_get_specific_vital(simulator):
    simulator.initialize(ScenarioMetadata(category=ScenarioCategory.CARDIAC), START_MS)
    assert simulator.get_specific_vital("pulse ox") == "Oxygen saturation: 92%"
    assert simulator.get_specific_vital("oxygenSaturation") == "Oxygen saturation: 92%"
    assert simulator.get_specific_vital("pulse") == "Heart rate: 110 bpm"
    assert simulator.get_specific_vital("bp") == "Blood pressure: 160/95 mmHg"
    assert simulator.get_specific_vital("respiratoryRate") == "Respiratory rate: 20 per minute"
    assert simulator.get_specific_vital("temp") == "Temperature: 98.6°F"
    assert simulator.get_specific_vital("mood") == "Please specify which vital sign you'd like to check."


def test_time_limit(simulator):
    simulator.initialize(ScenarioMetadata(), START_MS)
    assert not simulator.is_time_expired(at_minute(19.99))
    assert simulator.is_time_expired(at_minute(20))
    assert simulator.get_remaining_time(at_minute(0.5)) == 20
    assert simulator.get_remaining_time(at_minute(25)) == 0


def test_check_scenario_end_on_handover(simulator):
    simulator.initialize(ScenarioMetadata(), START_MS)
    simulator.record_intervention("oxygen", at_minute(2))
    check = simulator.check_scenario_end("here is my handover report", at_minute(6))
    assert check.should_end
    assert check.reason == "handover_complete"
    assert check.elapsed_minutes == 6
    assert len(check.interventions) == 1
    assert not simulator.check_scenario_end("checking airway", at_minute(6)).should_end


def test_patient_dialogue_by_consciousness(simulator):
    profile = PatientProfile(name="Frank", age=58, allergies=["penicillin"], medications=[])
    metadata = ScenarioMetadata(patient_profile=profile, chief_complaint="chest pain", onset="an hour ago")
    simulator.initialize(metadata, START_MS)

    assert simulator.generate_patient_response("What's your name?", metadata) == "My name is Frank."
    assert simulator.generate_patient_response("Any allergies?", metadata) == "I'm allergic to penicillin."
    assert simulator.generate_patient_response("Do you take any meds?", metadata) == "I don't take any medications."
    assert simulator.generate_patient_response("When did it start?", metadata) == "It started an hour ago."

    simulator.consciousness = ConsciousnessLevel.ALTERED
    assert simulator.generate_patient_response("where are you?", metadata) == "I don't know... where am I?"

    simulator.consciousness = ConsciousnessLevel.UNCONSCIOUS
    assert simulator.generate_patient_response("What's your name?", metadata) == "The patient is unresponsive."


def test_to_dict(simulator):
    simulator.initialize(ScenarioMetadata(), START_MS)
    data = simulator.to_dict(at_minute(3))
    assert data["initialized"]
    assert data["elapsed_minutes"] == 3
    assert data["remaining_minutes"] == 17
    assert data["consciousness"] == "alert"
    assert data["vitals_history"][0]["reason"] == "baseline"
