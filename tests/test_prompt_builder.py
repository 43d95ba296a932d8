"""Tests for OraclePromptBuilder."""
import pytest

from memory.game_store import GameStore
from memory.kv_store import MemoryKVStore
from models.game import Building, EquipmentItem, Hero, PlayerProfile
from orchestrator.prompt_builder import OraclePromptBuilder


@pytest.fixture
def knowledge_file(tmp_path):
    path = tmp_path / "strategy.md"
    path.write_text("# Règles\nNe jamais mélanger les types d'unités.\n", encoding="utf-8")
    return path


@pytest.fixture
def game_store():
    store = GameStore(MemoryKVStore())
    store.set_profile(PlayerProfile(name="Cyrus", level=22, power=1234567, resources={"wood": 5000}))
    store.add_hero(Hero(id="h1", name="Attila", level=30, stars=4, role="marshal",
                        talent_issues=["mauvais arbre"]))
    store.add_equipment(EquipmentItem(id="e1", name="Lame", rarity="gold"))
    store.add_equipment(EquipmentItem(id="e2", name="Casque", rarity="purple"))
    store.add_building(Building(id="b1", name="Ferme", level=10, is_production=True,
                                production_rate={"resource": "food", "per_hour": 3600}))
    return store


def test_system_prompt_includes_knowledge_and_language(knowledge_file):
    builder = OraclePromptBuilder(knowledge_path=str(knowledge_file), language="English")
    prompt = builder.build_system_prompt("general")
    assert "Ne jamais mélanger les types d'unités." in prompt
    assert "Réponds en English." in prompt
    assert "DONNÉES DU JOUEUR" not in prompt


def test_missing_knowledge_file_uses_placeholder(tmp_path):
    builder = OraclePromptBuilder(knowledge_path=str(tmp_path / "absent.md"))
    assert builder.knowledge == "(Document stratégique indisponible.)"
    assert "DOCUMENT STRATÉGIQUE" in builder.build_system_prompt()


def test_knowledge_is_read_once(knowledge_file):
    builder = OraclePromptBuilder(knowledge_path=str(knowledge_file))
    first = builder.knowledge
    knowledge_file.write_text("changed", encoding="utf-8")
    assert builder.knowledge == first


def test_user_context_lists_player_data(knowledge_file, game_store):
    context = OraclePromptBuilder(knowledge_path=str(knowledge_file)).build_user_context(game_store)
    assert "- Nom: Cyrus" in context
    assert "- Puissance: 1 234 567" in context
    assert "- Bois: 5 000" in context
    assert "Attila (Niv 30, 4★, marshal, cavalry)" in context
    assert "Problèmes: mauvais arbre" in context
    assert "- Légendaire (Or): 1" in context
    assert "- Épique (Violet): 1" in context
    assert "- Ferme: Niveau 10/25 (Produit: 3600/h food)" in context


def test_user_context_empty_store(knowledge_file):
    builder = OraclePromptBuilder(knowledge_path=str(knowledge_file))
    assert builder.build_user_context(None) == ""
    assert builder.build_user_context(GameStore(MemoryKVStore())) == "=== DONNÉES DU JOUEUR ==="


@pytest.mark.parametrize("context, marker", [
    ("ocr", "OCR/ANALYSE D'IMAGE"),
    ("hero", "FOCUS HÉROS"),
    ("equipment", "FOCUS ÉQUIPEMENT"),
    ("building", "FOCUS BÂTIMENTS"),
    ("team", "FOCUS ÉQUIPES"),
])
def test_context_focus_blocks(knowledge_file, context, marker):
    prompt = OraclePromptBuilder(knowledge_path=str(knowledge_file)).build_system_prompt(context)
    assert marker in prompt


def test_unknown_context_is_general(knowledge_file):
    builder = OraclePromptBuilder(knowledge_path=str(knowledge_file))
    assert builder.build_system_prompt("dragons") == builder.build_system_prompt("general")


def test_extraction_prompt_auto_lists_all_kinds(knowledge_file):
    prompt = OraclePromptBuilder(knowledge_path=str(knowledge_file)).build_extraction_prompt("auto")
    assert "hero|equipment|building|profile|inventory" in prompt
    assert '"missingElements"' in prompt


def test_extraction_prompt_for_expected_kind(knowledge_file):
    prompt = OraclePromptBuilder(knowledge_path=str(knowledge_file)).build_extraction_prompt("building")
    assert "contenant un bâtiment" in prompt
    assert '"type": "building"' in prompt
