import random

import pytest

from simcore.environment import (
    SCENE_HAZARDS,
    WEATHER_CONDITIONS,
    EnvironmentalManager,
    SceneEnvironment,
    parse_scene_hazard,
    parse_weather,
)
from simcore.scenario import Difficulty, ScenarioMetadata


def scene(weather=None, hazard=None):
    return SceneEnvironment(
        weather=WEATHER_CONDITIONS[weather] if weather else None,
        scene_hazard=SCENE_HAZARDS[hazard] if hazard else None,
    )


def test_parse_factors():
    assert parse_weather("Heavy Rain").key == "heavy_rain"
    assert parse_scene_hazard("traffic").description == "Heavy traffic near the scene"
    with pytest.raises(ValueError, match="Unknown weather: hail"):
        parse_weather("hail")
    with pytest.raises(ValueError, match="Unknown scene hazard: lava"):
        parse_scene_hazard("lava")


def test_explicit_settings_are_used_as_given():
    manager = EnvironmentalManager(chance=0.0)
    environment = manager.generate(ScenarioMetadata(environment={"weather": "snow", "sceneHazard": "darkness"}))
    assert environment.weather.key == "snow"
    assert environment.scene_hazard.key == "darkness"

    assert manager.generate(ScenarioMetadata(environment={})).factors == ()


def test_zero_chance_keeps_scene_clear():
    manager = EnvironmentalManager(rng=random.Random(7), chance=0.0)
    for _ in range(20):
        assert manager.generate(ScenarioMetadata()).factors == ()


def test_rolled_hazards_respect_location():
    for seed in range(200):
        manager = EnvironmentalManager(rng=random.Random(seed), chance=1.0)
        environment = manager.generate(ScenarioMetadata(location="Kitchen", dispatch_time="11:30 pm"))
        if environment.scene_hazard:
            assert environment.scene_hazard.key == "darkness"
        if environment.weather:
            assert environment.weather.key != "heat"


def test_rolled_highway_hazards_stay_in_catalogue():
    seen = set()
    for seed in range(300):
        manager = EnvironmentalManager(rng=random.Random(seed), chance=1.0)
        metadata = ScenarioMetadata(location="Highway 101 overpass", difficulty=Difficulty.ADVANCED)
        environment = manager.generate(metadata)
        if environment.scene_hazard:
            seen.add(environment.scene_hazard.key)
    assert seen
    assert seen <= {"traffic", "chemical_spill", "darkness"}


def test_safety_recommendations_weather_first():
    assert scene("rain", "traffic").safety_recommendations() == [
        "Consider protecting patient and equipment from rain",
        "Use extra caution on slippery surfaces",
        "Request traffic control",
        "Position ambulance to protect scene",
    ]
    assert scene().safety_recommendations() == []


def test_urgent_concerns():
    concerns = scene("heavy_rain", "electrical_hazard").urgent_concerns()
    assert [c.kind for c in concerns] == ["sceneHazard", "weather"]
    assert concerns[0].action == "Immediate safety assessment required"
    assert concerns[1].action == "Patient protection from elements needed"

    assert scene("rain", "darkness").urgent_concerns() == []


def test_action_impacts():
    assert scene(hazard="electrical_hazard").check_impact("position the patient supine") == (
        "You must maintain safe distance from the downed power lines."
    )
    assert scene("snow").check_impact("move to the ambulance") == (
        "The ground is slippery, requiring extra caution while moving."
    )
    assert scene("snow").check_impact("what's your name") is None
    assert scene().check_impact("grab the bag") is None


def test_context_and_dict():
    environment = scene("fog", "animal_hazard")
    assert environment.context_string() == (
        "Weather: Dense fog reducing visibility. Effects: poor visibility, navigation challenges, "
        "additional vehicles may not see scene. Scene hazard: Aggressive dog or other animal present. "
        "Safety concerns: bite risk, patient access limited, animal control needed."
    )
    data = environment.to_dict()
    assert data["weather"]["type"] == "fog"
    assert data["scene_hazard"]["severity"] == "moderate"
    assert data["safety_recommendations"][-1] == "Ensure safe patient access"
    assert data["urgent_concerns"] == []
    assert scene().context_string() is None
