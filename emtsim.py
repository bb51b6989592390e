#!/usr/bin/env python3
"""
EMT Sim - EMT Training Simulation Core

Recognize trainee actions, run a simulated patient encounter in the terminal,
and grade encounter transcripts against the EMED111 rubric.

Usage:
    python emtsim.py recognize "check her pulse ox"
    python emtsim.py grade transcripts/cardiac.json --minutes 14 --category cardiac
    python emtsim.py run --category respiratory --difficulty advanced
    python emtsim.py rubric list
"""

import argparse
import json
import sys

from simcore import config
from simcore.action_recognizer import ActionRecognizer, detect_vitals_request
from simcore.environment import parse_scene_hazard, parse_weather
from simcore.grading import EMED111_RUBRIC, GradingEngine, format_feedback_message, generate_feedback_report
from simcore.patient_responder import PatientResponder
from simcore.scenario import (
    PatientProfile, ScenarioMetadata, parse_category, parse_difficulty
)
from simcore.session import SessionStore


def cmd_recognize(args):
    """Handle recognize command."""
    recognizer = ActionRecognizer()
    action = recognizer.recognize(args.text)

    if args.json:
        print(json.dumps(action.to_dict(), indent=2))
        return 0

    print(f"Action: {action.type.value} (priority {action.priority})")
    print(f"Matched: {action.matched_text}")
    for key, value in action.details.to_dict().items():
        if key == "found_terms":
            value = ", ".join(f"{t['category']}/{t['term_type']}" for t in value)
        print(f"  {key}: {value}")

    clarification = recognizer.generate_clarification_request(action)
    if action.needs_clarification and clarification:
        print(f"\nClarify: {clarification}")

    request = detect_vitals_request(args.text)
    if request.requested:
        print(f"\nVitals requested: {', '.join(request.requested)}")
    elif request.needs_specification:
        print("\nVitals requested: (unspecified)")

    return 0


def cmd_grade(args):
    """Handle grade command."""
    try:
        with open(args.transcript) as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        print(f"Error reading transcript: {e}")
        return 1

    transcript = data.get("transcript", data.get("messages", [])) if isinstance(data, dict) else data

    metadata = None
    if args.category:
        try:
            metadata = ScenarioMetadata(category=parse_category(args.category))
        except ValueError as e:
            print(f"Error: {e}")
            return 1

    engine = GradingEngine()
    result = engine.grade(
        transcript,
        metadata=metadata,
        time_spent_minutes=args.minutes,
        exam_sub_score=args.exam_score
    )

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
        return 0

    report = generate_feedback_report(result)
    print("EMT Sim - Grading Report")
    print("=" * 40)
    print(format_feedback_message(report))
    return 0


def cmd_run(args):
    """Handle run command."""
    try:
        metadata = _build_metadata_from_args(args)
    except (OSError, ValueError) as e:
        print(f"Error: {e}")
        return 1

    responder = None
    if args.llm:
        try:
            responder = PatientResponder()
        except ValueError as e:
            print(f"Error: {e}")
            print("Set ANTHROPIC_API_KEY environment variable")
            return 1

    store = SessionStore()
    session = store.create(metadata, responder=responder)
    profile = metadata.patient_profile

    print("EMT Sim - Scenario Started")
    print("=" * 40)
    print(f"  Category: {metadata.category.value}")
    print(f"  Difficulty: {metadata.difficulty.value}")
    print(f"  Patient: {profile.name or 'unknown'}, {profile.age if profile.age is not None else '?'}")
    print(f"  Complaint: {metadata.chief_complaint}")
    print(f"  Time limit: {metadata.time_limit_minutes} minutes")
    for factor in session.environment.factors:
        print(f"  Scene: {factor.description}")
    for recommendation in session.environment.safety_recommendations():
        print(f"    - {recommendation}")
    print("\nType your actions. Give a handover report or say 'end scenario' to finish.\n")

    while not session.is_ended:
        try:
            text = input("EMT> ").strip()
        except (EOFError, KeyboardInterrupt):
            print()
            break
        if not text:
            continue

        outcome = session.process_utterance(text, config.current_time_ms())
        print(f"\n{outcome.reply}\n")

    return 0


def cmd_rubric(args):
    """Handle rubric command."""
    rubric = EMED111_RUBRIC

    if args.rubric_action == "list":
        print("EMED111 Rubric")
        print("=" * 50)

        print("\nCRITICAL ITEMS (must all be completed)")
        print("-" * 30)
        for item in rubric.checkbox_items:
            print(f"  {item.id}")
            print(f"    {item.description}")

        print(f"\nSCORED SECTIONS (0-3 each, minimum {rubric.minimum_section_score})")
        print("-" * 30)
        for section in rubric.scored_sections:
            print(f"  {section.id:22} - {section.name}")

        print(f"\nMax score: {rubric.max_score}")
        print(f"Time limit: {rubric.time_limit} minutes")

    return 0


def _build_metadata_from_args(args) -> ScenarioMetadata:
    """Build ScenarioMetadata from CLI arguments."""
    category = parse_category(args.category or config.DEFAULT_CATEGORY)
    difficulty = parse_difficulty(args.difficulty or config.DEFAULT_DIFFICULTY)

    profile = PatientProfile()
    if args.patient:
        profile = PatientProfile.from_json(args.patient)

    metadata = ScenarioMetadata(category=category, difficulty=difficulty, patient_profile=profile)
    if args.chief_complaint:
        metadata.chief_complaint = args.chief_complaint
    if args.weather or args.hazard:
        metadata.environment = {
            "weather": parse_weather(args.weather).key if args.weather else None,
            "scene_hazard": parse_scene_hazard(args.hazard).key if args.hazard else None,
        }
    return metadata


def main():
    parser = argparse.ArgumentParser(
        description="EMT Sim - EMT Training Simulation Core",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Classify a trainee utterance
  python emtsim.py recognize "give 325 mg aspirin by mouth"

  # Grade a saved transcript
  python emtsim.py grade transcript.json --minutes 14 --exam-score 80

  # Run an interactive scenario with a patient profile
  python emtsim.py run --category cardiac --patient patients/frank.json

  # Show the rubric
  python emtsim.py rubric list
"""
    )
    parser.add_argument("--log-level", help="Logging level (default: EMTSIM_LOG_LEVEL or WARNING)")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Recognize command
    rec_parser = subparsers.add_parser("recognize", help="Classify a trainee utterance")
    rec_parser.add_argument("text", help="Trainee utterance")
    rec_parser.add_argument("--json", action="store_true", help="Print the action as JSON")

    # Grade command
    grade_parser = subparsers.add_parser("grade", help="Grade a transcript")
    grade_parser.add_argument("transcript", help="Path to transcript JSON (list of {role, text})")
    grade_parser.add_argument("--minutes", "-m", type=int, default=0, help="Whole minutes spent")
    grade_parser.add_argument("--category", "-c", help="Scenario category")
    grade_parser.add_argument("--exam-score", type=float, help="Exam assessment percentage (0-100)")
    grade_parser.add_argument("--json", action="store_true", help="Print the rubric result as JSON")

    # Run command
    run_parser = subparsers.add_parser("run", help="Run an interactive scenario")
    run_parser.add_argument("--category", "-c", help="cardiac, respiratory, trauma, neurologic, metabolic, allergic, general")
    run_parser.add_argument("--difficulty", "-d", help="novice, intermediate, advanced")
    run_parser.add_argument("--patient", "-p", help="Path to patient profile JSON")
    run_parser.add_argument("--chief-complaint", help="Chief complaint")
    run_parser.add_argument("--weather", help="Pin the weather (rain, heavy_rain, snow, heat, wind, fog)")
    run_parser.add_argument("--hazard", help="Pin a scene hazard (traffic, darkness, fire_hazard, ...)")
    run_parser.add_argument("--llm", action="store_true", help="Voice the patient with Claude")

    # Rubric command
    rubric_parser = subparsers.add_parser("rubric", help="Show the grading rubric")
    rubric_sub = rubric_parser.add_subparsers(dest="rubric_action")
    rubric_sub.add_parser("list", help="List rubric items and sections")

    args = parser.parse_args()
    config.configure_logging(args.log_level)

    if not args.command:
        parser.print_help()
        return 0

    if args.command == "recognize":
        return cmd_recognize(args)
    elif args.command == "grade":
        return cmd_grade(args)
    elif args.command == "run":
        return cmd_run(args)
    elif args.command == "rubric":
        return cmd_rubric(args)

    return 0


if __name__ == "__main__":
    sys.exit(main())
