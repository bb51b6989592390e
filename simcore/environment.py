"""
Scene environment for EMT Sim.
Weather and scene hazards that color a scenario, the safety
recommendations they call for, and how they interfere with actions.
"""

import logging
import random
import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, List, Optional, Tuple

from . import config
from .scenario import Difficulty, ScenarioMetadata
from .text_normalizer import normalize_to_ascii_lower

logger = logging.getLogger(__name__)


# ============================================
# CATALOGUE
# ============================================

@dataclass(frozen=True)
class EnvironmentFactor:
    """One weather condition or scene hazard."""
    key: str
    description: str
    effects: Tuple[str, ...]
    probability: float
    severity: str  # mild, moderate, high
    locations: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.key,
            "description": self.description,
            "effects": list(self.effects),
            "severity": self.severity,
        }


WEATHER_CONDITIONS = MappingProxyType({f.key: f for f in (
    EnvironmentFactor("rain", "Light rain is falling",
                      ("slippery surfaces", "equipment getting wet", "patient getting cold"), 0.15, "mild"),
    EnvironmentFactor("heavy_rain", "Heavy rain is pouring down",
                      ("very slippery surfaces", "poor visibility", "equipment protection needed",
                       "patient hypothermia risk"), 0.08, "moderate"),
    EnvironmentFactor("snow", "Snow is falling",
                      ("icy conditions", "cold exposure", "difficult footing", "equipment challenges"),
                      0.10, "moderate"),
    EnvironmentFactor("heat", "Extremely hot weather (95°F+)",
                      ("heat exhaustion risk", "dehydration concerns", "equipment overheating"), 0.12, "mild"),
    EnvironmentFactor("wind", "Strong winds are blowing",
                      ("debris hazard", "communication difficulties", "equipment stability issues"), 0.10, "mild"),
    EnvironmentFactor("fog", "Dense fog reducing visibility",
                      ("poor visibility", "navigation challenges", "additional vehicles may not see scene"),
                      0.08, "moderate"),
)})

SCENE_HAZARDS = MappingProxyType({f.key: f for f in (
    EnvironmentFactor("traffic", "Heavy traffic near the scene",
                      ("vehicle strike risk", "noise interference", "access difficulties"), 0.25, "high",
                      ("highway", "road", "street", "intersection")),
    EnvironmentFactor("unstable_structure", "Potentially unstable building/structure",
                      ("collapse risk", "debris hazard", "evacuation may be needed"), 0.12, "high",
                      ("construction", "old building", "industrial")),
    EnvironmentFactor("electrical_hazard", "Downed power lines nearby",
                      ("electrocution risk", "area isolation needed", "utility company required"), 0.10, "high",
                      ("residential", "industrial", "storm area")),
    EnvironmentFactor("chemical_spill", "Unknown chemical spill in area",
                      ("contamination risk", "respiratory protection needed", "hazmat team required"), 0.08, "high",
                      ("industrial", "highway", "laboratory")),
    EnvironmentFactor("aggressive_bystanders", "Hostile or agitated crowd gathering",
                      ("personal safety risk", "scene control needed", "police backup required"), 0.15, "moderate",
                      ("public", "bar", "event", "protest")),
    EnvironmentFactor("animal_hazard", "Aggressive dog or other animal present",
                      ("bite risk", "patient access limited", "animal control needed"), 0.12, "moderate",
                      ("residential", "rural", "park")),
    EnvironmentFactor("fire_hazard", "Smoke or fire visible in area",
                      ("evacuation risk", "respiratory hazard", "fire department coordination"), 0.10, "high",
                      ("residential", "industrial", "vehicle")),
    EnvironmentFactor("darkness", "Poor lighting conditions",
                      ("visibility issues", "trip hazards", "additional lighting needed"), 0.20, "mild"),
)})

SAFETY_RECOMMENDATIONS = MappingProxyType({
    "rain": ("Consider protecting patient and equipment from rain", "Use extra caution on slippery surfaces"),
    "heavy_rain": ("Consider protecting patient and equipment from rain", "Use extra caution on slippery surfaces"),
    "snow": ("Watch for icy conditions", "Protect patient from cold exposure"),
    "heat": ("Monitor for heat-related complications", "Ensure adequate hydration"),
    "wind": ("Secure loose equipment", "Be aware of flying debris"),
    "fog": ("Use additional lighting if available", "Ensure scene visibility for other responders"),
    "traffic": ("Request traffic control", "Position ambulance to protect scene"),
    "electrical_hazard": ("Contact utility company immediately", "Maintain safe distance from power lines"),
    "unstable_structure": ("Consider scene evacuation", "Request structural assessment"),
    "chemical_spill": ("Request hazmat team", "Use appropriate PPE"),
    "aggressive_bystanders": ("Request police backup", "Maintain situational awareness"),
    "animal_hazard": ("Contact animal control", "Ensure safe patient access"),
    "fire_hazard": ("Coordinate with fire department", "Be prepared for evacuation"),
    "darkness": ("Set up additional lighting", "Watch for trip hazards"),
})

# (action pattern, factor keys, impact); checked in order, all matches reported
ACTION_IMPACTS = tuple((re.compile(p), frozenset(keys), impact) for p, keys, impact in (
    (r"equipment|grab|get|use", ("rain", "heavy_rain"), "Your equipment is getting wet from the rain."),
    (r"equipment|grab|get|use", ("wind",), "Strong winds are making it difficult to handle equipment."),
    (r"walk|move|position|transport", ("rain", "heavy_rain", "snow"),
     "The ground is slippery, requiring extra caution while moving."),
    (r"walk|move|position|transport", ("fog",), "Dense fog is reducing visibility significantly."),
    (r"patient|assess|examine", ("heat",), "The extreme heat is affecting both you and the patient."),
    (r"patient|assess|examine", ("snow", "rain"), "The patient is being exposed to harsh weather conditions."),
    (r"approach|move|position", ("traffic",), "Heavy traffic is creating safety concerns as you work."),
    (r"approach|move|position", ("electrical_hazard",), "You must maintain safe distance from the downed power lines."),
    (r"approach|move|position", ("unstable_structure",), "The unstable structure overhead is a constant threat."),
    (r"communicate|talk|ask", ("traffic",), "Traffic noise is making communication difficult."),
    (r"communicate|talk|ask", ("aggressive_bystanders",), "The hostile crowd is creating a tense atmosphere."),
    (r"assess|examine|treat", ("darkness",), "Poor lighting is making assessment more challenging."),
    (r"assess|examine|treat", ("chemical_spill",),
     "Potential chemical contamination is limiting your access to the patient."),
))

OUTDOOR_LOCATION = re.compile(r"highway|road|park|trail|construction|rural")
NIGHT_TIME = re.compile(r"pm|evening|night")


def parse_weather(weather_str: str) -> EnvironmentFactor:
    """Parse weather condition string."""
    key = normalize_to_ascii_lower(weather_str).replace(" ", "_")
    if key in WEATHER_CONDITIONS:
        return WEATHER_CONDITIONS[key]
    raise ValueError(f"Unknown weather: {weather_str}. Use: {list(WEATHER_CONDITIONS)}")


def parse_scene_hazard(hazard_str: str) -> EnvironmentFactor:
    """Parse scene hazard string."""
    key = normalize_to_ascii_lower(hazard_str).replace(" ", "_")
    if key in SCENE_HAZARDS:
        return SCENE_HAZARDS[key]
    raise ValueError(f"Unknown scene hazard: {hazard_str}. Use: {list(SCENE_HAZARDS)}")


# ============================================
# SCENE
# ============================================

@dataclass(frozen=True)
class UrgentConcern:
    kind: str  # sceneHazard or weather
    description: str
    action: str
    effects: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind,
            "description": self.description,
            "action": self.action,
            "effects": list(self.effects),
        }


@dataclass(frozen=True)
class SceneEnvironment:
    """Conditions fixed for the whole encounter."""
    weather: Optional[EnvironmentFactor] = None
    scene_hazard: Optional[EnvironmentFactor] = None

    @property
    def factors(self) -> Tuple[EnvironmentFactor, ...]:
        return tuple(f for f in (self.weather, self.scene_hazard) if f is not None)

    def context_string(self) -> Optional[str]:
        """One-paragraph description for the patient voice prompt."""
        parts = []
        if self.weather:
            parts.append(f"Weather: {self.weather.description}. Effects: {', '.join(self.weather.effects)}.")
        if self.scene_hazard:
            parts.append(
                f"Scene hazard: {self.scene_hazard.description}. "
                f"Safety concerns: {', '.join(self.scene_hazard.effects)}."
            )
        return " ".join(parts) or None

    def safety_recommendations(self) -> List[str]:
        recommendations: List[str] = []
        for factor in self.factors:
            recommendations.extend(SAFETY_RECOMMENDATIONS.get(factor.key, ()))
        return recommendations

    def urgent_concerns(self) -> List[UrgentConcern]:
        """High-severity hazards and heavy rain need attention before patient contact."""
        concerns = []
        if self.scene_hazard and self.scene_hazard.severity == "high":
            concerns.append(UrgentConcern(
                "sceneHazard", self.scene_hazard.description,
                "Immediate safety assessment required", self.scene_hazard.effects
            ))
        if self.weather and self.weather.key == "heavy_rain":
            concerns.append(UrgentConcern(
                "weather", self.weather.description,
                "Patient protection from elements needed", self.weather.effects
            ))
        return concerns

    def check_impact(self, action_text: str) -> Optional[str]:
        """
        Describe how current conditions interfere with an action.

        Examples:
            rain, "grab the oxygen bag" -> "Your equipment is getting wet from the rain."
            no conditions -> None
        """
        normalized = normalize_to_ascii_lower(action_text)
        keys = {f.key for f in self.factors}
        impacts = [
            impact for pattern, factor_keys, impact in ACTION_IMPACTS
            if keys & factor_keys and pattern.search(normalized)
        ]
        return " ".join(impacts) or None

    def describe_scene_safety(self) -> str:
        """Objective answer to a scene size-up."""
        if not self.factors:
            return "Scene is safe. No hazards identified."
        lines = []
        if self.scene_hazard:
            lines.append(
                f"Scene hazard: {self.scene_hazard.description}. "
                f"Safety concerns: {', '.join(self.scene_hazard.effects)}."
            )
        else:
            lines.append("No immediate scene hazards identified.")
        if self.weather:
            lines.append(f"Weather: {self.weather.description}.")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "weather": self.weather.to_dict() if self.weather else None,
            "scene_hazard": self.scene_hazard.to_dict() if self.scene_hazard else None,
            "safety_recommendations": self.safety_recommendations(),
            "urgent_concerns": [c.to_dict() for c in self.urgent_concerns()],
        }


CLEAR_SCENE = SceneEnvironment()


class EnvironmentalManager:
    """
    Picks the scene conditions for a scenario.

    Explicit `environment` settings on the scenario are used as given;
    otherwise conditions are rolled so that most scenes stay clear.
    """

    def __init__(self, rng: random.Random = None, chance: float = config.ENVIRONMENT_CHANCE):
        self.rng = rng or random.Random()
        self.chance = chance

    def generate(self, metadata: ScenarioMetadata) -> SceneEnvironment:
        if metadata.environment is not None:
            return self._from_settings(metadata.environment)

        if self.rng.random() >= self.chance:
            return CLEAR_SCENE

        location = normalize_to_ascii_lower(metadata.location)
        has_weather = self.rng.random() < 0.6
        has_hazard = self.rng.random() < 0.4
        environment = SceneEnvironment(
            weather=self._select_weather(location, normalize_to_ascii_lower(metadata.dispatch_time))
            if has_weather else None,
            scene_hazard=self._select_hazard(location, metadata.difficulty) if has_hazard else None,
        )
        if environment.factors:
            logger.info("Scene conditions: %s", ", ".join(f.key for f in environment.factors))
        return environment

    def _from_settings(self, settings: Dict[str, Any]) -> SceneEnvironment:
        weather = settings.get("weather")
        hazard = settings.get("scene_hazard", settings.get("sceneHazard"))
        return SceneEnvironment(
            weather=parse_weather(weather) if weather else None,
            scene_hazard=parse_scene_hazard(hazard) if hazard else None,
        )

    def _select_weather(self, location: str, time_of_day: str) -> Optional[EnvironmentFactor]:
        outdoor = bool(OUTDOOR_LOCATION.search(location))
        candidates = []
        for weather in WEATHER_CONDITIONS.values():
            if weather.key == "heat" and NIGHT_TIME.search(time_of_day):
                continue
            if not outdoor and weather.key in ("heavy_rain", "snow", "wind"):
                if self.rng.random() < 0.3:
                    candidates.append(weather)
            elif self.rng.random() < weather.probability:
                candidates.append(weather)
        return self.rng.choice(candidates) if candidates else None

    def _select_hazard(self, location: str, difficulty: Difficulty) -> Optional[EnvironmentFactor]:
        candidates = []
        for hazard in SCENE_HAZARDS.values():
            if hazard.locations and not any(loc in location for loc in hazard.locations):
                continue
            if hazard.severity == "high" and difficulty == Difficulty.NOVICE:
                chance = 0.3
            elif hazard.severity == "mild" and difficulty == Difficulty.ADVANCED:
                chance = 0.7
            else:
                chance = hazard.probability
            if self.rng.random() < chance:
                candidates.append(hazard)
        return self.rng.choice(candidates) if candidates else None
