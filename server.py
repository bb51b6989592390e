#!/usr/bin/env python3
"""
EMT Sim Web Server
FastAPI server for the EMT training simulation core.
"""

import logging
from typing import Optional, List, Dict, Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from simcore import config
from simcore.action_recognizer import ActionRecognizer, detect_vitals_request
from simcore.grading import EMED111_RUBRIC, GradingEngine, format_feedback_message, generate_feedback_report
from simcore.patient_responder import PatientResponder
from simcore.scenario import ScenarioMetadata, parse_category
from simcore.session import ScenarioSession, SessionStore

# ============================================
# CONFIG
# ============================================

config.configure_logging()
logger = logging.getLogger(__name__)

# ============================================
# APP
# ============================================

app = FastAPI(
    title="EMT Sim",
    description="EMT Training Simulation Core",
    version="1.0.0"
)

# ============================================
# MODELS
# ============================================

class CreateSessionRequest(BaseModel):
    scenario: Dict[str, Any] = {}
    session_id: Optional[str] = None
    start_ms: Optional[int] = None
    llm: bool = False

class MessageRequest(BaseModel):
    message: Optional[str] = None
    now_ms: Optional[int] = None

class RecognizeRequest(BaseModel):
    text: str

class GradeRequest(BaseModel):
    transcript: List[Dict[str, Any]] = []
    time_spent_minutes: float = 0
    category: Optional[str] = None
    exam_score: Optional[float] = None

# ============================================
# STATE
# ============================================

# Active scenario sessions
sessions = SessionStore()

recognizer = ActionRecognizer()
grading_engine = GradingEngine()


def get_session(session_id: str) -> ScenarioSession:
    session = sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


def validate_message(message: Optional[str]) -> str:
    """Reject missing, blank or oversized trainee messages."""
    if message is None:
        raise HTTPException(status_code=400, detail="Message is required")
    if not message.strip():
        raise HTTPException(status_code=400, detail="Message cannot be empty")
    if len(message) > config.MAX_MESSAGE_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"Message too long (max {config.MAX_MESSAGE_LENGTH} characters)"
        )
    return message.strip()

# ============================================
# ROUTES - SESSIONS
# ============================================

@app.post("/api/sessions")
async def create_session(request: CreateSessionRequest):
    """Start a new scenario session."""
    if request.session_id and sessions.get(request.session_id) is not None:
        raise HTTPException(status_code=400, detail="Session already exists")

    responder = None
    if request.llm:
        try:
            responder = PatientResponder()
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    metadata = ScenarioMetadata.from_dict(request.scenario)
    try:
        session = sessions.create(
            metadata,
            session_id=request.session_id,
            now_ms=request.start_ms,
            responder=responder
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "session_id": session.session_id,
        "scenario": metadata.to_dict(),
        "start_ms": session.start_ms,
        "vitals": session.simulator.get_current_vitals().to_display_dict(),
        "consciousness": session.simulator.consciousness.value,
        "environment": session.environment.to_dict(),
    }

@app.post("/api/sessions/{session_id}/messages")
async def send_message(session_id: str, request: MessageRequest):
    """Process one trainee message and return the simulated response."""
    session = get_session(session_id)
    message = validate_message(request.message)
    now_ms = request.now_ms if request.now_ms is not None else config.current_time_ms()

    try:
        outcome = session.process_utterance(message, now_ms)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return outcome.to_dict()

@app.get("/api/sessions/{session_id}/vitals")
async def get_vitals(session_id: str, now_ms: Optional[int] = None):
    """Current patient state and timing."""
    session = get_session(session_id)
    if now_ms is None:
        now_ms = config.current_time_ms()

    simulator = session.simulator
    return {
        "session_id": session_id,
        "vitals": simulator.get_current_vitals().to_display_dict(),
        "consciousness": simulator.consciousness.value,
        "elapsed_minutes": simulator.get_elapsed_minutes(now_ms),
        "remaining_minutes": simulator.get_remaining_time(now_ms),
        "ended": session.is_ended,
    }

@app.delete("/api/sessions/{session_id}")
async def delete_session(session_id: str):
    """End and discard a session."""
    if not sessions.remove(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"deleted": session_id}

# ============================================
# ROUTES - TOOLS
# ============================================

@app.post("/api/recognize")
async def recognize(request: RecognizeRequest):
    """Classify a single utterance without a session."""
    action = recognizer.recognize(request.text)
    return {
        "action": action.to_dict(),
        "clarification": recognizer.generate_clarification_request(action) if action.needs_clarification else None,
        "vitals_requested": detect_vitals_request(request.text).requested,
    }

@app.post("/api/grade")
async def grade(request: GradeRequest):
    """Grade a transcript against the rubric."""
    metadata = None
    if request.category:
        try:
            metadata = ScenarioMetadata(category=parse_category(request.category))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    result = grading_engine.grade(
        request.transcript,
        metadata=metadata,
        time_spent_minutes=request.time_spent_minutes,
        exam_sub_score=request.exam_score
    )
    report = generate_feedback_report(result)

    return {
        "rubric": result.to_dict(),
        "feedback": report.to_dict(),
        "message": format_feedback_message(report),
    }

@app.get("/api/rubric")
async def get_rubric():
    """Describe the rubric in use."""
    rubric = EMED111_RUBRIC
    return {
        "checkbox_items": [
            {"id": item.id, "description": item.description, "category": item.category}
            for item in rubric.checkbox_items
        ],
        "scored_sections": [
            {"id": s.id, "name": s.name, "criteria": list(s.criteria), "max_score": s.max_score}
            for s in rubric.scored_sections
        ],
        "max_score": rubric.max_score,
        "minimum_section_score": rubric.minimum_section_score,
        "time_limit": rubric.time_limit,
    }

@app.get("/api/health")
async def health():
    """Liveness check."""
    return {"status": "ok", "sessions": len(sessions)}

# ============================================
# MAIN
# ============================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
