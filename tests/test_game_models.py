"""Tests for the game entity builders."""
import pytest

from models.game import (
    Building, EquipmentItem, Hero, PlayerProfile,
    build_building, build_entity, build_equipment, build_hero, build_profile,
)
from orchestrator.normalizer import ExtractionResult, error_result, normalize


def _result(kind, payload, succeeded=True):
    return ExtractionResult(
        succeeded=succeeded, entity_kind=kind, payload=payload,
        confidence=0.9, raw_response="",
    )


def test_build_hero_defaults():
    hero = build_hero({})
    assert hero.id.startswith("hero_")
    assert hero.name == "Héros inconnu"
    assert (hero.level, hero.stars) == (1, 1)
    assert (hero.role, hero.specialty, hero.rarity) == ("warrior", "cavalry", "epic")
    assert hero.optimization_status == "needs-both"


def test_build_hero_maps_french_values():
    hero = build_hero({
        "nom": "Jeanne d'Arc", "niveau": "45", "role": "Maréchal",
        "specialty": "Archers", "rarity": "Légendaire", "power": "1 234 567",
    })
    assert hero.name == "Jeanne d'Arc"
    assert hero.level == 45
    assert hero.role == "marshal"
    assert hero.specialty == "archer"
    assert hero.rarity == "legendary"
    assert hero.power == 1234567


def test_build_hero_zero_level_takes_default():
    assert build_hero({"name": "A", "level": 0}).level == 1


def test_build_hero_unknown_role_takes_default():
    assert build_hero({"name": "A", "role": "wizard"}).role == "warrior"


def test_build_equipment_gem_slots():
    assert build_equipment({"name": "Lame"}).gem_slots == 3
    item = build_equipment({"name": "Lame", "gems": [{"type": "ruby"}, {"type": "topaz"}]})
    assert item.gem_slots == 2
    assert item.gems == [{"type": "ruby"}, {"type": "topaz"}]


def test_build_equipment_camel_case_fields():
    item = build_equipment({
        "name": "Casque du lion", "slot": "casque", "rarity": "or",
        "mainStat": "Défense", "mainStatValue": "12.5", "secondaryStats": {"hp": 300},
    })
    assert item.slot == "helmet"
    assert item.rarity == "gold"
    assert item.main_stat == "Défense"
    assert item.main_stat_value == 12.5
    assert item.secondary_stats == {"hp": 300}


def test_build_building_production():
    building = build_building({
        "name": "Ferme", "category": "economic", "level": 12,
        "production": {"resource": "food", "per_hour": 3600, "capacity": 50000},
    })
    assert building.is_production is True
    assert building.production_rate["per_hour"] == 3600
    assert building.max_level == 25
    assert building.category == "economic"


def test_build_building_without_production():
    building = build_building({"name": "Caserne"})
    assert building.is_production is False
    assert building.production_rate is None


def test_build_profile_merges_resources():
    profile = build_profile({"name": "Cyrus", "level": 22, "resources": {"wood": "12,000", "iron": 5}})
    assert profile.resources == {"wood": 12000, "food": 0, "stone": 0, "gold": 0, "iron": 5}
    assert profile.civilization == "Inconnue"


def test_build_entity_dispatches_on_kind():
    assert isinstance(build_entity(_result("hero", {"name": "A"})), Hero)
    assert isinstance(build_entity(_result("equipment", {"name": "B"})), EquipmentItem)
    assert isinstance(build_entity(_result("building", {"name": "C"})), Building)
    assert isinstance(build_entity(_result("profile", {"name": "D"})), PlayerProfile)


@pytest.mark.parametrize("result", [
    _result("inventory", {"items": []}),
    _result("unknown", {"name": "X"}),
    _result("hero", {"rawResponse": "texte libre"}),
    normalize('{"type":"hero","data":{},"complete":false}', "auto"),
    _result("hero", None),
    error_result("timeout"),
])
def test_build_entity_skips_unusable_results(result):
    assert build_entity(result) is None


def test_build_entity_from_keyword_scrape():
    result = normalize("Nom: Attila, Niveau: 30", "hero")
    hero = build_entity(result)
    assert hero.name == "Attila"
    assert hero.level == 30


def test_from_dict_ignores_unknown_fields():
    hero = Hero.from_dict({"id": "h1", "name": "A", "favoriteColor": "blue"})
    assert hero.name == "A"
    assert hero.to_dict()["id"] == "h1"
