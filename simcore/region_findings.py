"""
Objective body-region findings for EMT Sim.
Answers "check the chest"-style requests and pulse/skin checks with
category-appropriate findings that agree with the chief complaint.
"""

import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import List

from .scenario import ScenarioCategory, ScenarioMetadata
from .text_normalizer import normalize_to_ascii_lower

# ============================================
# REGIONS
# ============================================

REGION_TRIGGER = re.compile(r"(check|assess|examine|inspect|palpate|look at|look\s+over|evaluate)")

# Report order follows this tuple
REGION_PATTERNS = (
    ("head", re.compile(r"\bhead\b|\bface\b|\bscalp\b")),
    ("neck", re.compile(r"\bneck\b|\bc-spine\b|\bcervical\b")),
    ("chest", re.compile(r"\bchest\b|\bthorax\b|\bribs?\b")),
    ("abdomen", re.compile(r"\babdomen\b|\bstomach\b|\bbelly\b")),
    ("pelvis", re.compile(r"\bpelvis\b|\bpelvic\b|\bhips?\b")),
    ("back", re.compile(r"\bback\b|\bspine\b|\blumbar\b")),
    ("upper_extremities", re.compile(
        r"\bupper\s+extremit|\barms?\b|\bshoulders?\b|\belbows?\b|\bwrists?\b|\bhands?\b"
    )),
    ("lower_extremities", re.compile(r"\blower\s+extremit|\blegs?\b|\bknees?\b|\bankles?\b|\bfeet\b|\bfoot\b")),
)

REGION_LABELS = MappingProxyType({
    "head": "Head/Face",
    "neck": "Neck",
    "chest": "Chest",
    "abdomen": "Abdomen",
    "pelvis": "Pelvis",
    "back": "Back",
    "upper_extremities": "Upper Extremities",
    "lower_extremities": "Lower Extremities",
})

# Abdomen is derived from the complaint instead, see abdomen_finding()
_GENERAL_FINDINGS = MappingProxyType({
    "head": "No trauma; normal appearance.",
    "neck": "Supple; trachea midline.",
    "chest": "Equal chest rise; clear breath sounds bilaterally.",
    "pelvis": "Stable and non-tender.",
    "back": "No midline tenderness.",
    "upper_extremities": "No deformities; pulses intact.",
    "lower_extremities": "No deformities; pulses intact.",
})

REGION_FINDINGS = MappingProxyType({
    ScenarioCategory.CARDIAC: MappingProxyType({
        "head": "No focal deficits; appears anxious.",
        "neck": "Possible mild JVD when semi-reclined.",
        "chest": "Chest wall non-tender; breath sounds clear; patient reports chest pressure.",
        "pelvis": "Stable, non-tender.",
        "back": "No CVA tenderness.",
        "upper_extremities": "Skin cool and slightly diaphoretic.",
        "lower_extremities": "No edema; distal pulses present.",
    }),
    ScenarioCategory.RESPIRATORY: MappingProxyType({
        "head": "No facial trauma; speaking in short phrases.",
        "neck": "Trachea midline; no JVD at rest.",
        "chest": "Increased work of breathing; scattered wheezes bilaterally.",
        "pelvis": "Stable, non-tender.",
        "back": "No tenderness noted.",
        "upper_extremities": "No edema; capillary refill brisk.",
        "lower_extremities": "No edema; distal pulses intact.",
    }),
    ScenarioCategory.TRAUMA: MappingProxyType({
        "head": "No skull depression; minor abrasions; pupils equal and reactive.",
        "neck": "Midline tenderness absent; C-spine maintained.",
        "chest": "Chest wall symmetric; no crepitus; breath sounds equal.",
        "pelvis": "Stable on gentle compression; no pain.",
        "back": "No step-offs; no tenderness.",
        "upper_extremities": "No obvious deformities; pulses and sensation intact.",
        "lower_extremities": "No deformities; pulses and sensation intact.",
    }),
    ScenarioCategory.NEUROLOGIC: MappingProxyType({
        "head": "Mild right-sided facial droop and slurred speech; pupils equal and reactive; no scalp trauma.",
        "neck": "Neck supple, trachea midline, no tenderness.",
        "chest": "Breathing unlabored, equal chest rise, clear breath sounds bilaterally.",
        "pelvis": "Pelvis stable on gentle compression, no tenderness.",
        "back": "No spinal tenderness or step-offs.",
        "upper_extremities": "Grip strength weaker on the right; no deformities or swelling.",
        "lower_extremities": "Right leg shows slight drift; distal pulses intact and equal.",
    }),
    ScenarioCategory.METABOLIC: MappingProxyType({
        "head": "Appears confused; no trauma; pupils equal and reactive.",
        "neck": "Supple; no tenderness.",
        "chest": "Breath sounds clear bilaterally.",
        "pelvis": "Stable.",
        "back": "No tenderness.",
        "upper_extremities": "Fine tremor present; capillary refill brisk.",
        "lower_extremities": "No edema; distal pulses intact.",
    }),
    ScenarioCategory.ALLERGIC: MappingProxyType({
        "head": "Lips and eyelids swollen; pupils equal and reactive.",
        "neck": "Hives across the neck; trachea midline; voice hoarse.",
        "chest": "Hives on the chest wall; expiratory wheezes bilaterally.",
        "pelvis": "Stable, non-tender.",
        "back": "Scattered hives; no tenderness.",
        "upper_extremities": "Raised hives on both forearms; capillary refill delayed.",
        "lower_extremities": "No edema; distal pulses weak but present.",
    }),
    ScenarioCategory.GENERAL: _GENERAL_FINDINGS,
})

# (region, complaint pattern, finding); the first match for a region wins
COMPLAINT_OVERRIDES = (
    ("chest", re.compile(
        r"\b(short(ness)?\s*of\s*breath|sob|dyspnea|trouble\s*breathing|breathless|difficulty\s*breathing)\b"
    ), "Increased work of breathing; equal chest rise."),
    ("chest", re.compile(r"\b(rib|chest wall|impact|contusion|blunt|penetrating|trauma|fall|mvc)\b"),
     "Chest wall tenderness to palpation; symmetric chest rise."),
    ("pelvis", re.compile(r"\b(pelvic|hip|groin)\s+(pain|tender|injur|fracture)|\b(trauma|fall|mvc)\b"),
     "Pelvis tender on gentle compression; no gross instability."),
    ("back", re.compile(r"\b(back|lumbar|thoracic)\s+(pain|tender|spasm|injur)"),
     "Paraspinal tenderness; no midline step-offs."),
    ("neck", re.compile(r"\b(neck|c[-\s]?spine|cervical)\s+(pain|tender|stiff|injur|whiplash)"),
     "Cervical tenderness on palpation; trachea midline."),
    ("head", re.compile(r"\b(headache|head\s*pain|migraine|hit\s+my\s+head|head\s*trauma)\b"),
     "Tenderness over scalp/temples; pupils equal and reactive."),
    ("head", re.compile(r"\b(confus|slurr|stroke|neuro|aphasia|weakness)"),
     "Subtle facial asymmetry with delayed responses; pupils equal and reactive."),
    ("upper_extremities", re.compile(
        r"\b(arm|shoulder|elbow|wrist|hand)\b.*\b(pain|tender|injur|swelling)|\b(fracture|sprain)"
    ), "Tenderness over affected upper extremity; pulses and sensation intact."),
    ("lower_extremities", re.compile(
        r"\b(leg|knee|ankle|foot)\b.*\b(pain|tender|injur|swelling)|\b(fracture|sprain)"
    ), "Tenderness over affected lower extremity; pulses and sensation intact."),
    ("lower_extremities", re.compile(r"\b(edema|swelling)\b.*\b(legs?|ankles?|feet)\b"),
     "Bilateral pitting edema at ankles; distal pulses intact."),
)

ABDOMINAL_PAIN = re.compile(
    r"abdominal pain|stomach pain|belly pain|tender|hurts|pain in (the )?abdomen|guarding"
)
PERITONEAL_SIGNS = re.compile(r"fever|febrile|chills|temperature|nausea|vomit|retch")
QUADRANTS = (
    ("RLQ", re.compile(r"rlq|right lower quadrant|appendi")),
    ("RUQ", re.compile(r"ruq|right upper quadrant|gallbladder|biliary|cholecyst")),
    ("LUQ", re.compile(r"luq|left upper quadrant|spleen|splenic")),
    ("LLQ", re.compile(r"llq|left lower quadrant|diverticul|ovarian|cyst|torsion")),
)


def detect_region_checks(text: str) -> List[str]:
    """
    Body regions the trainee asked to examine, in head-to-toe order.

    Examples:
        "palpate the abdomen" -> ["abdomen"]
        "check his arms and legs" -> ["upper_extremities", "lower_extremities"]
        "where does it hurt" -> []
    """
    normalized = normalize_to_ascii_lower(text)
    if not REGION_TRIGGER.search(normalized):
        return []
    return [region for region, pattern in REGION_PATTERNS if pattern.search(normalized)]


def abdomen_finding(complaint: str) -> str:
    complaint = normalize_to_ascii_lower(complaint)
    if not ABDOMINAL_PAIN.search(complaint):
        return "Soft and non-tender."

    quadrant = next((name for name, pattern in QUADRANTS if pattern.search(complaint)), None)
    finding = f"{quadrant} tenderness" if quadrant else "Localized tenderness"
    if PERITONEAL_SIGNS.search(complaint):
        finding += " with mild guarding"
    if re.search(r"distend|bloated", complaint):
        finding = "Mildly distended; " + finding[0].lower() + finding[1:]
    return finding + "; no rebound noted."


def region_finding(region: str, metadata: ScenarioMetadata) -> str:
    """Finding for one region, adjusted so it never contradicts the chief complaint."""
    if region == "abdomen":
        return abdomen_finding(metadata.chief_complaint)

    complaint = normalize_to_ascii_lower(metadata.chief_complaint)
    for override_region, pattern, finding in COMPLAINT_OVERRIDES:
        if override_region == region and pattern.search(complaint):
            return finding

    table = REGION_FINDINGS.get(metadata.category, _GENERAL_FINDINGS)
    return table.get(region, _GENERAL_FINDINGS[region])


def format_region_findings(regions: List[str], metadata: ScenarioMetadata) -> str:
    return "\n".join(f"{REGION_LABELS[r]}: {region_finding(r, metadata)}" for r in regions)


# ============================================
# PULSE AND SKIN
# ============================================

# "pulse ox" is a saturation request, not a pulse check
PULSE_CHECK = re.compile(
    r"(check|assess|feel|palpate|grab).*(radial|wrist|pulse(?!\s*ox))|pulse(?!\s*ox).*(quality|regular|strong)"
)
SKIN_CHECK = re.compile(r"(check|assess|look at|inspect).*\bskin\b|cap(illary)?\s*refill|\bcrt\b")
PERMISSION_ASKED = re.compile(
    r"(do\s+you\s+mind|is\s+it\s+(ok|okay|alright)|can\s+i|may\s+i|(okay|ok|alright)\s+if)|\?\s*$"
)
FEVER_WORDS = re.compile(r"fever|febrile|\bhot\b")

ACKNOWLEDGMENTS = MappingProxyType({
    ScenarioCategory.RESPIRATORY: "Okay... go ahead.",
    ScenarioCategory.CARDIAC: "Alright, that's fine.",
    ScenarioCategory.TRAUMA: "Okay, but please be careful.",
    ScenarioCategory.NEUROLOGIC: "Um... okay, I think.",
    ScenarioCategory.METABOLIC: "Sure, that's fine.",
})
DEFAULT_ACKNOWLEDGMENT = "Okay, go ahead."


@dataclass(frozen=True)
class PulseSkinRequest:
    pulse: bool = False
    skin: bool = False
    asks_permission: bool = False

    @property
    def any(self) -> bool:
        return self.pulse or self.skin


def detect_pulse_skin_request(text: str) -> PulseSkinRequest:
    normalized = normalize_to_ascii_lower(text)
    return PulseSkinRequest(
        pulse=bool(PULSE_CHECK.search(normalized)),
        skin=bool(SKIN_CHECK.search(normalized)),
        asks_permission=bool(PERMISSION_ASKED.search(normalized)),
    )


def format_pulse_skin_response(
    request: PulseSkinRequest,
    metadata: ScenarioMetadata,
    heart_rate_line: str,
    patient_can_answer: bool = True
) -> str:
    """
    Radial pulse and skin findings, preceded by the patient's consent when asked.

    Args:
        request: Detected pulse/skin request
        metadata: Scenario metadata
        heart_rate_line: Current formatted heart rate reading
        patient_can_answer: False when the patient is unresponsive

    Returns:
        Newline-joined findings
    """
    lines = []
    if request.asks_permission and patient_can_answer:
        lines.append(f'"{ACKNOWLEDGMENTS.get(metadata.category, DEFAULT_ACKNOWLEDGMENT)}"')
    if request.pulse:
        lines.append("Radial pulse: regular and strong.")
        lines.append(heart_rate_line)
    if request.skin:
        febrile = FEVER_WORDS.search(normalize_to_ascii_lower(metadata.chief_complaint))
        skin = "warm and slightly diaphoretic" if febrile else "warm and dry"
        lines.append(f"Skin: {skin}. Capillary refill brisk (<2 seconds).")
    return "\n".join(lines)
