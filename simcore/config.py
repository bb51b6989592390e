"""
Runtime configuration for EMT Sim.
Module-level defaults with environment overrides.
"""

import logging
import os
import time


# ============================================
# SCENARIO
# ============================================

TIME_LIMIT_MINUTES = int(os.environ.get("EMTSIM_TIME_LIMIT_MINUTES", "20"))
DEFAULT_CATEGORY = "general"
DEFAULT_DIFFICULTY = "intermediate"

# Minutes without a critical intervention before the patient starts to decline
DETERIORATION_ONSET_MINUTES = 5
DETERIORATION_FULL_MINUTES = 10
ADVANCED_DRIFT_MINUTES = 8

# Share of scenarios that roll weather or a scene hazard
ENVIRONMENT_CHANCE = float(os.environ.get("EMTSIM_ENVIRONMENT_CHANCE", "0.25"))

# ============================================
# PATIENT VOICE (optional LLM rendering)
# ============================================

ANTHROPIC_MODEL = os.environ.get("EMTSIM_ANTHROPIC_MODEL", "claude-sonnet-4-20250514")
PATIENT_REPLY_MAX_TOKENS = 300

# ============================================
# HTTP
# ============================================

MAX_MESSAGE_LENGTH = 4000

# ============================================
# LOGGING
# ============================================

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = None) -> None:
    """Configure root logging for the CLI and server entry points."""
    level_name = (level or os.environ.get("EMTSIM_LOG_LEVEL", "WARNING")).upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.WARNING), format=LOG_FORMAT)


def current_time_ms() -> int:
    """Wall-clock milliseconds since the epoch. Only used at the outer surfaces."""
    return int(time.time() * 1000)
