import pytest

from simcore.scenario import (
    ConsciousnessLevel,
    Difficulty,
    PatientProfile,
    ScenarioCategory,
    ScenarioMetadata,
)
from simcore.session import ScenarioSession

START_MS = 1_700_000_000_000
MINUTE_MS = 60_000

# Covers every critical item and scores at least 2 in every section
PASSING_LINES = [
    "Putting on gloves. Is the scene safe? Scene safety confirmed, no hazard.",
    "Hi sir, I'm an EMT, thank you for calling. Do I have your consent to help you? You seem alert.",
    "I'll hold manual stabilization of the neck. Any bleeding?",
    "Airway is open and breathing is adequate. Checking skin color and radial pulse.",
    "Patient is not in cardiac arrest, no CPR needed.",
    "Tell me about the onset, provocation, quality, radiation, severity and time of the pain.",
    "Any allergies, medications, past medical history, last meal, or events leading up to this?",
    "Checking blood pressure, heart rate, respiratory rate, temperature and pulse ox.",
    "I will inspect, palpate and auscultate the chest.",
    "Starting oxygen therapy via nasal cannula.",
    "Giving medication: aspirin 325 mg by mouth.",
    "That treatment is in, I'll reassess and get repeat vitals.",
    "I understand this is scary, we'll keep you comfortable.",
    "Partner, please assist with the stretcher.",
    "Radio notification to the hospital: age 58, chief complaint chest pain, priority 2, ETA 10 minutes.",
    "Field impression is ACS; transport priority 2 to destination General Hospital.",
    "Handover: 58 year old male, chief complaint chest pain, findings clear lungs, "
    "vitals stable, treatments oxygen and aspirin.",
]


def trainee_transcript(lines):
    return [{"role": "trainee", "text": line} for line in lines]


@pytest.fixture
def passing_transcript():
    return trainee_transcript(PASSING_LINES)


@pytest.fixture
def patient_profile():
    return PatientProfile(
        name="Frank Miller",
        age=58,
        gender="male",
        medical_history=["hypertension", "high cholesterol"],
        medications=["lisinopril"],
        allergies=["penicillin"],
    )


@pytest.fixture
def cardiac_metadata(patient_profile):
    return ScenarioMetadata(
        category=ScenarioCategory.CARDIAC,
        difficulty=Difficulty.INTERMEDIATE,
        patient_profile=patient_profile,
        consciousness=ConsciousnessLevel.ALERT,
    )


@pytest.fixture
def session(cardiac_metadata):
    return ScenarioSession(cardiac_metadata, "session-1", START_MS)


def at_minute(minutes):
    return START_MS + int(minutes * MINUTE_MS)
