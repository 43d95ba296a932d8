"""
Tests for OracleAssistant: chat flows, screenshot analysis and storing
extractions. The gateway is faked; no API calls.
"""
import pytest

from memory.account_ledger import AccountLedger
from memory.game_store import GameStore
from memory.kv_store import MemoryKVStore, StorageError
from models.game import Hero
from orchestrator.assistant import OracleAssistant
from orchestrator.gateway import GatewayError, GatewayReply
from orchestrator.prompt_builder import OraclePromptBuilder


class FakeGateway:
    """Replies from a queue; an Exception in the queue is raised instead."""

    def __init__(self, *replies, tokens=100):
        self.replies = list(replies)
        self.tokens = tokens
        self.calls = []

    def chat(self, prompt, image=None, model=None, system=None, history=None, max_tokens=None):
        self.calls.append({"prompt": prompt, "image": image, "model": model, "system": system})
        reply = self.replies.pop(0) if self.replies else "ok"
        if isinstance(reply, Exception):
            raise reply
        return GatewayReply(text=reply, model=model or "default-model", tokens_used=self.tokens)


class BrokenLedger:
    def record_usage(self, tokens, account_id=None):
        raise StorageError("write failed")


@pytest.fixture
def game_store():
    return GameStore(MemoryKVStore())


@pytest.fixture
def ledger():
    ledger = AccountLedger(MemoryKVStore(), key="test_accounts")
    ledger.add("Main")
    return ledger


def _assistant(gateway, game_store=None, ledger=None, tmp_path=None):
    builder = OraclePromptBuilder(knowledge_path=str(tmp_path / "none.md")) if tmp_path else None
    return OracleAssistant(gateway=gateway, game_store=game_store, ledger=ledger, prompt_builder=builder)


# ------------------------------------------------------------
# chat
# ------------------------------------------------------------

def test_chat_records_usage_and_history(game_store, ledger, tmp_path):
    gateway = FakeGateway("Investis dans Attila.", tokens=250)
    assistant = _assistant(gateway, game_store, ledger, tmp_path)

    answer = assistant.chat("Quel héros monter ?", context="hero")

    assert answer == "Investis dans Attila."
    assert ledger.get_active().tokens_used == 250
    assert [m.role for m in game_store.get_ai_history()] == ["user", "assistant"]
    assert "FOCUS HÉROS" in gateway.calls[0]["system"]


def test_chat_uses_stored_default_model(game_store, tmp_path):
    game_store.update_settings({"ai": {"default_model": "claude-haiku-4-5-20251001"}})
    gateway = FakeGateway("ok")
    _assistant(gateway, game_store, tmp_path=tmp_path).chat("Salut")
    assert gateway.calls[0]["model"] == "claude-haiku-4-5-20251001"


def test_chat_gateway_error_propagates(game_store, tmp_path):
    assistant = _assistant(FakeGateway(GatewayError("no key")), game_store, tmp_path=tmp_path)
    with pytest.raises(GatewayError):
        assistant.chat("Salut")
    assert game_store.get_ai_history() == []


def test_usage_storage_failure_does_not_lose_answer(tmp_path):
    assistant = _assistant(FakeGateway("réponse"), ledger=BrokenLedger(), tmp_path=tmp_path)
    assert assistant.chat("Salut") == "réponse"


def test_chat_multi_single_model_when_disabled(game_store, tmp_path):
    gateway = FakeGateway("une réponse")
    answers = _assistant(gateway, game_store, tmp_path=tmp_path).chat_multi("Salut")
    assert len(answers) == 1
    assert answers[0]["response"] == "une réponse"


def test_chat_multi_fans_out_and_skips_failures(game_store, tmp_path):
    game_store.update_settings({"ai": {
        "multimodal_enabled": True, "selected_models": ["m-a", "m-b", "m-c"], "model_count": 3,
    }})
    gateway = FakeGateway("A dit oui", GatewayError("overloaded"), "C dit non")
    answers = _assistant(gateway, game_store, tmp_path=tmp_path).chat_multi("Attaquer ?")

    assert answers == [
        {"model": "m-a", "response": "A dit oui"},
        {"model": "m-c", "response": "C dit non"},
    ]
    history = game_store.get_ai_history()
    assert [m.role for m in history] == ["user", "assistant", "assistant"]


def test_chat_multi_respects_model_count(game_store, tmp_path):
    game_store.update_settings({"ai": {
        "multimodal_enabled": True, "selected_models": ["m-a", "m-b", "m-c"], "model_count": 2,
    }})
    gateway = FakeGateway()
    answers = _assistant(gateway, game_store, tmp_path=tmp_path).chat_multi("Salut")
    assert [a["model"] for a in answers] == ["m-a", "m-b"]


# ------------------------------------------------------------
# Screenshots
# ------------------------------------------------------------

def test_analyze_screenshot_normalizes_reply(game_store, ledger, tmp_path):
    gateway = FakeGateway('```json\n{"type":"hero","confidence":0.9,"data":{"name":"Attila","level":30}}\n```')
    assistant = _assistant(gateway, game_store, ledger, tmp_path)

    result = assistant.analyze_screenshot("data:image/png;base64,iVBORw0KGgo=", "auto")

    assert result.succeeded is True
    assert result.entity_kind == "hero"
    assert result.payload["name"] == "Attila"
    assert gateway.calls[0]["image"].startswith("data:image/png")
    assert "OCR/ANALYSE D'IMAGE" in gateway.calls[0]["system"]
    assert ledger.get_active().tokens_used == 100


def test_analyze_screenshot_failure_becomes_error_result(tmp_path):
    assistant = _assistant(FakeGateway(GatewayError("Request timed out.")), tmp_path=tmp_path)
    result = assistant.analyze_screenshot("iVBORw0KGgo=", "hero")
    assert result.succeeded is False
    assert result.raw_response == "Request timed out."


def test_apply_extraction_stores_hero(game_store, tmp_path):
    gateway = FakeGateway('{"type":"hero","data":{"name":"Attila","level":30,"role":"maréchal"}}')
    assistant = _assistant(gateway, game_store, tmp_path=tmp_path)
    hero = assistant.apply_extraction(assistant.analyze_screenshot("iVBORw0KGgo="))
    assert isinstance(hero, Hero)
    assert [h.name for h in game_store.get_heroes()] == ["Attila"]
    assert game_store.get_heroes()[0].role == "marshal"


def test_apply_extraction_profile_counts(game_store, tmp_path):
    game_store.add_hero(Hero(id="h1", name="Attila"))
    gateway = FakeGateway('{"type":"profile","data":{"name":"Cyrus","level":22}}')
    assistant = _assistant(gateway, game_store, tmp_path=tmp_path)
    profile = assistant.apply_extraction(assistant.analyze_screenshot("iVBORw0KGgo="))
    assert profile.hero_count == 1
    assert game_store.get_profile().name == "Cyrus"


def test_apply_extraction_ignores_free_text(game_store, tmp_path):
    gateway = FakeGateway("Je ne vois rien.")
    assistant = _assistant(gateway, game_store, tmp_path=tmp_path)
    assert assistant.apply_extraction(assistant.analyze_screenshot("iVBORw0KGgo=", "hero")) is None
    assert game_store.get_heroes() == []


def test_apply_extraction_needs_store(tmp_path):
    assistant = _assistant(FakeGateway(), tmp_path=tmp_path)
    with pytest.raises(RuntimeError):
        assistant.apply_extraction(assistant.analyze_screenshot("iVBORw0KGgo="))


# ------------------------------------------------------------
# Quick actions
# ------------------------------------------------------------

def test_hero_advice(game_store, tmp_path):
    game_store.add_hero(Hero(id="h1", name="Attila", level=30, role="marshal"))
    gateway = FakeGateway("Conseil")
    assistant = _assistant(gateway, game_store, tmp_path=tmp_path)
    assert assistant.hero_advice("h1") == "Conseil"
    assert "Attila" in gateway.calls[0]["prompt"]
    assert assistant.hero_advice("missing") is None


def test_team_suggestion_validates_mode(game_store, tmp_path):
    gateway = FakeGateway("Équipe")
    assistant = _assistant(gateway, game_store, tmp_path=tmp_path)
    assert assistant.team_suggestion("siege") == "Équipe"
    assert "SIEGE" in gateway.calls[0]["prompt"]
    with pytest.raises(ValueError):
        assistant.team_suggestion("raid")
