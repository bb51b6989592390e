from simcore.action_recognizer import ActionRecognizer
from simcore.contraindications import ContraindicationRule, ContraindicationValidator
from simcore.scenario import PatientProfile


def test_aspirin_allergy_is_vetoed():
    validator = ContraindicationValidator()
    action = ActionRecognizer().recognize("give 325 mg aspirin")
    result = validator.validate(action, PatientProfile(allergies=["Aspirin"]))
    assert not result.valid
    assert result.reason == "allergy"
    assert result.message == "Patient is allergic to Aspirin. This medication is contraindicated."


def test_allergy_wins_over_history_rule():
    profile = PatientProfile(allergies=["aspirin"], medical_history=["peptic ulcer"])
    result = ContraindicationValidator().validate("aspirin", profile)
    assert result.reason == "allergy"


def test_aspirin_with_ulcer_history():
    profile = PatientProfile(medical_history=["Peptic ulcer disease"])
    result = ContraindicationValidator().validate("aspirin", profile)
    assert not result.valid
    assert result.reason == "contraindication"
    assert result.message == "Contraindicated due to: bleeding disorder/ulcer"


def test_nitroglycerin_after_ed_medication():
    profile = PatientProfile(medical_history=["took sildenafil last night"])
    result = ContraindicationValidator().validate("nitroglycerin", profile)
    assert result.reason == "contraindication"
    assert "recent ED medication use" in result.message


def test_albuterol_needs_both_keyword_groups():
    validator = ContraindicationValidator()
    assert validator.validate("albuterol", PatientProfile(medical_history=["heart murmur"])).valid
    result = validator.validate("albuterol", PatientProfile(medical_history=["severe heart failure"]))
    assert result.reason == "contraindication"


def test_blank_allergies_are_ignored():
    profile = PatientProfile(allergies=["", "   "])
    assert ContraindicationValidator().validate("aspirin", profile).valid


def test_unspecified_or_missing_inputs_are_valid():
    validator = ContraindicationValidator()
    assert validator.validate(None, PatientProfile(allergies=["aspirin"])).valid
    assert validator.validate("unspecified", PatientProfile(allergies=["aspirin"])).valid
    assert validator.validate("aspirin", None).valid


def test_custom_rule_table():
    rules = (ContraindicationRule("glucose", "unable to swallow", (("cannot swallow", "dysphagia"),)),)
    validator = ContraindicationValidator(rules)
    result = validator.validate("glucose", PatientProfile(medical_history=["dysphagia"]))
    assert result.message == "Contraindicated due to: unable to swallow"
    assert validator.validate("aspirin", PatientProfile(medical_history=["ulcer"])).valid


def test_validation_result_to_dict():
    result = ContraindicationValidator().validate("aspirin", PatientProfile(allergies=["aspirin"]))
    assert result.to_dict() == {
        "valid": False,
        "reason": "allergy",
        "message": "Patient is allergic to aspirin. This medication is contraindicated.",
    }


def test_abbreviated_allergy_blocks_canonical_medication():
    validator = ContraindicationValidator()
    action = ActionRecognizer().recognize("give 325 mg aspirin")
    result = validator.validate(action, PatientProfile(allergies=["ASA"]))
    assert not result.valid
    assert result.reason == "allergy"
    assert result.message == "Patient is allergic to ASA. This medication is contraindicated."

    inhaler = validator.validate("albuterol", PatientProfile(allergies=["Ventolin"]))
    assert inhaler.reason == "allergy"


def test_brand_and_short_names_hit_history_rules():
    validator = ContraindicationValidator()
    ulcer = PatientProfile(medical_history=["Peptic ulcer disease"])
    result = validator.validate("baby aspirin", ulcer)
    assert result.reason == "contraindication"
    assert result.message == "Contraindicated due to: bleeding disorder/ulcer"

    ed_meds = PatientProfile(medical_history=["took sildenafil last night"])
    assert validator.validate("Nitro", ed_meds).reason == "contraindication"


def test_unrelated_allergy_does_not_block():
    assert ContraindicationValidator().validate("asa", PatientProfile(allergies=["penicillin"])).valid
