import pytest

from simcore.exam_assessment import (
    QUESTION_BANK,
    ExamAssessmentManager,
    ExamType,
    detect_exam_intent,
    grade_answer,
)
from simcore.scenario import ScenarioMetadata

from conftest import START_MS, at_minute

QUESTIONS_BY_ID = {
    q.id: q for question_set in QUESTION_BANK.values() for q in question_set.questions
}


@pytest.fixture
def manager():
    return ExamAssessmentManager()


def perfect_answer(view):
    return ", ".join(QUESTIONS_BY_ID[view.question_id].expected_elements)


@pytest.mark.parametrize("text,exam_type,region,exam_key", [
    ("I'll do a focused exam of the abdomen", ExamType.FOCUSED, "abdomen", "focusedAbdomen"),
    ("perform a focused exam", ExamType.FOCUSED, "chest", "focusedChest"),
    ("Focused physical exam of the lungs", ExamType.FOCUSED, "chest", "focusedChest"),
    ("rapid trauma assessment", ExamType.RAPID, "full_body", "rapidTrauma"),
    ("let's do a detailed assessment", ExamType.SECONDARY, "full_body", "fullSecondary"),
])
def test_detect_exam_intent(text, exam_type, region, exam_key):
    intent = detect_exam_intent(text)
    assert intent.type == exam_type
    assert intent.region == region
    assert intent.exam_key == exam_key


def test_no_exam_intent():
    assert detect_exam_intent("palpate the abdomen") is None
    assert detect_exam_intent("") is None


def test_grade_answer_thresholds():
    expected = ("alpha", "bravo", "charlie", "delta", "echo")
    assert grade_answer("alpha bravo charlie delta", expected) == 3
    assert grade_answer("alpha bravo charlie", expected) == 2
    assert grade_answer("alpha bravo", expected) == 1
    assert grade_answer("alpha", expected) == 0
    assert grade_answer("", expected) == 0
    assert grade_answer("ALPHA, Bravo, charlie, delta, echo", expected) == 3


def test_question_selection_is_deterministic():
    intent = detect_exam_intent("secondary assessment")
    first = ExamAssessmentManager().start_assessment("abc", intent, None, START_MS)
    second = ExamAssessmentManager().start_assessment("abc", intent, None, START_MS)
    assert [q.id for q in first.questions] == [q.id for q in second.questions]


def test_selection_covers_every_category(manager):
    intent = detect_exam_intent("secondary assessment")
    assessment = manager.start_assessment("s1", intent, None, START_MS)
    assert len(assessment.questions) == 5
    assert {q.category for q in assessment.questions} == {"anatomy", "pathology", "technique"}

    chest = manager.start_assessment("s2", detect_exam_intent("focused exam"), None, START_MS)
    assert len(chest.questions) == 4
    assert len({q.id for q in chest.questions}) == 4


def test_unknown_region_falls_back_to_chest_questions(manager):
    intent = detect_exam_intent("do a focused exam of the leg")
    assert intent.exam_key == "focusedExtremities"
    assessment = manager.start_assessment("s1", intent, None, START_MS)
    assert assessment.exam_type == "Focused Physical Exam - Chest"


def test_scenario_variants_only_with_metadata():
    intent = detect_exam_intent("focused exam of the chest")

    plain = ExamAssessmentManager()
    plain.start_assessment("s1", intent, None, START_MS)
    view = plain.get_current_question("s1")
    assert view.question_text == QUESTIONS_BY_ID[view.question_id].question

    scenario = ExamAssessmentManager()
    scenario.start_assessment("s1", intent, ScenarioMetadata(), START_MS)
    view = scenario.get_current_question("s1")
    question = QUESTIONS_BY_ID[view.question_id]
    if "scenario" in question.type and question.scenario_variant:
        assert view.question_text == question.scenario_variant
    else:
        assert view.question_text == question.question


def test_full_quiz_flow(manager):
    intent = detect_exam_intent("focused exam of the abdomen")
    manager.start_assessment("s1", intent, None, START_MS)
    assert manager.has_active_assessment("s1")

    view = manager.get_current_question("s1")
    assert view.question_number == 1
    assert view.total_questions == 4

    progress = manager.submit_answer("s1", perfect_answer(view), at_minute(1))
    assert not progress.complete
    assert progress.next_question.question_number == 2

    for minute in (2, 3, 4):
        progress = manager.submit_answer("s1", "not sure", at_minute(minute))

    assert progress.complete
    result = progress.result
    assert result.exam_type == "Focused Physical Exam - Abdomen"
    assert result.total_score == 3
    assert result.max_total_score == 12
    assert result.overall_score == 25
    assert result.completion_time_ms == 4 * 60_000
    assert len(result.answers) == 4

    assert not manager.has_active_assessment("s1")
    assert manager.get_current_question("s1") is None
    assert manager.submit_answer("s1", "extra", at_minute(5)) is None
    assert manager.get_assessment_results("s1") is result


def test_perfect_quiz_scores_one_hundred(manager):
    manager.start_assessment("s1", detect_exam_intent("rapid trauma exam"), None, START_MS)
    progress = None
    while manager.has_active_assessment("s1"):
        progress = manager.submit_answer("s1", perfect_answer(manager.get_current_question("s1")), START_MS)
    assert progress.result.overall_score == 100
    assert progress.result.to_dict()["exam_key"] == "rapidTrauma"


def test_sessions_do_not_share_state(manager):
    intent = detect_exam_intent("focused exam")
    manager.start_assessment("a", intent, None, START_MS)
    manager.start_assessment("b", intent, None, START_MS)
    manager.submit_answer("a", "anything", START_MS)
    assert manager.get_current_question("a").question_number == 2
    assert manager.get_current_question("b").question_number == 1

    manager.clear_session_data("a")
    assert not manager.has_active_assessment("a")
    assert manager.has_active_assessment("b")


def test_acknowledgment_message():
    focused = ExamAssessmentManager.generate_acknowledgment_message(detect_exam_intent("focused exam of the abdomen"))
    assert focused.startswith("I'll guide you through a focused physical examination assessment.")
    assert focused.endswith("Focus area: Abdomen")

    rapid = ExamAssessmentManager.generate_acknowledgment_message(detect_exam_intent("rapid trauma assessment"))
    assert "Focus area" not in rapid
