"""
Oracle — Assistant
The chat + screenshot flows:
  chat               — one question, one model, answer text
  chat_multi         — same question fanned out to the selected models
  analyze_screenshot — image → gateway → normalizer → ExtractionResult
  apply_extraction   — ExtractionResult → stored hero / equipment / building / profile

Token usage of every successful call is charged to the active linked account.
"""
import logging
from typing import List, Optional

from config.settings import config
from memory.kv_store import StorageError
from models.game import (
    AIMessage, Building, EquipmentItem, Hero, PlayerProfile, build_entity, new_entity_id,
)
from orchestrator.gateway import AIGateway, GatewayError
from orchestrator.normalizer import AUTO, ExtractionResult, error_result, normalize
from orchestrator.prompt_builder import OraclePromptBuilder

logger = logging.getLogger("oracle.assistant")

TEAM_MODES = ("pvp", "siege", "harvest")


class OracleAssistant:

    def __init__(self, gateway: AIGateway = None, game_store=None, ledger=None,
                 prompt_builder: OraclePromptBuilder = None):
        self.ledger = ledger
        self.gateway = gateway or AIGateway(ledger=ledger)
        self.game_store = game_store
        self.prompt_builder = prompt_builder or OraclePromptBuilder()

    # -------------------------------------------------------
    # Internals
    # -------------------------------------------------------

    def _default_model(self) -> Optional[str]:
        if self.game_store is None:
            return None
        return self.game_store.get_ai_settings().default_model or None

    def _record_usage(self, tokens: int):
        if self.ledger is None or not tokens:
            return
        try:
            self.ledger.record_usage(tokens)
        except StorageError as e:
            # The answer already reached the player; only the counter is stale
            logger.error(f"Token usage not recorded (non-fatal): {e}")

    def _remember(self, role: str, content: str, model: str = None, image: str = None):
        if self.game_store is None:
            return
        try:
            self.game_store.add_ai_message(AIMessage(
                id=new_entity_id("msg"),
                role=role,
                content=content,
                model=model,
                image_url=image if image and len(image) < 512 else None,
            ))
        except StorageError as e:
            logger.warning(f"Chat history not saved (non-fatal): {e}")

    # -------------------------------------------------------
    # Chat
    # -------------------------------------------------------

    def chat(self, message: str, image: str = None, context: str = "general",
             model: str = None, remember: bool = True) -> str:
        """Ask the Oracle. Raises GatewayError when the gateway call fails."""
        system = self.prompt_builder.build_system_prompt(context, self.game_store)
        reply = self.gateway.chat(
            message,
            image=image,
            model=model or self._default_model(),
            system=system,
        )
        self._record_usage(reply.tokens_used)

        if remember:
            self._remember("user", message, image=image)
            self._remember("assistant", reply.text, model=reply.model)
        return reply.text

    def chat_multi(self, message: str, image: str = None, context: str = "general") -> List[dict]:
        """
        Ask every selected model when multimodal mode is on.
        Returns [{"model", "response"}] for the models that answered.
        """
        settings = self.game_store.get_ai_settings() if self.game_store else None
        if not settings or not settings.multimodal_enabled or len(settings.selected_models) <= 1:
            model = self._default_model()
            answer = self.chat(message, image=image, context=context, model=model)
            return [{"model": model or config.gateway.default_model, "response": answer}]

        results = []
        for model in settings.selected_models[:max(1, settings.model_count)]:
            try:
                answer = self.chat(message, image=image, context=context, model=model, remember=False)
            except GatewayError as e:
                logger.warning(f"Model {model} failed (non-fatal): {e}")
                continue
            results.append({"model": model, "response": answer})

        if results:
            self._remember("user", message, image=image)
            for r in results:
                self._remember("assistant", r["response"], model=r["model"])
        logger.info(f"chat_multi: {len(results)}/{len(settings.selected_models[:settings.model_count])} models answered")
        return results

    # -------------------------------------------------------
    # Screenshots
    # -------------------------------------------------------

    def analyze_screenshot(self, image: str, expected_kind: str = AUTO, model: str = None) -> ExtractionResult:
        """
        Extract game data from a screenshot. Never raises for gateway or
        parse failures: a failed call becomes a failed ExtractionResult.
        """
        prompt = self.prompt_builder.build_extraction_prompt(expected_kind)
        system = self.prompt_builder.build_system_prompt("ocr", self.game_store)
        try:
            reply = self.gateway.chat(
                prompt,
                image=image,
                model=model or self._default_model(),
                system=system,
            )
        except (GatewayError, ValueError) as e:
            logger.error(f"Screenshot analysis failed: {e}")
            return error_result(str(e))

        self._record_usage(reply.tokens_used)
        return normalize(reply.text, expected_kind)

    def apply_extraction(self, result: ExtractionResult):
        """Store the entity an extraction describes. Returns it, or None if nothing applies."""
        if self.game_store is None:
            raise RuntimeError("apply_extraction needs a game store")

        entity = build_entity(result)
        if entity is None:
            logger.info(f"Nothing to store for {result.entity_kind} extraction (strategy={result.strategy})")
            return None

        if isinstance(entity, Hero):
            self.game_store.add_hero(entity)
        elif isinstance(entity, EquipmentItem):
            self.game_store.add_equipment(entity)
        elif isinstance(entity, Building):
            self.game_store.add_building(entity)
        elif isinstance(entity, PlayerProfile):
            entity.hero_count = len(self.game_store.get_heroes())
            entity.building_count = len(self.game_store.get_buildings())
            entity.equipment_count = len(self.game_store.get_equipment())
            self.game_store.set_profile(entity)

        logger.info(f"Stored {result.entity_kind}: {getattr(entity, 'name', '')} ({getattr(entity, 'id', '')})")
        return entity

    # -------------------------------------------------------
    # Quick actions
    # -------------------------------------------------------

    def hero_advice(self, hero_id: str) -> Optional[str]:
        """Advice for one stored hero, or None if the hero is unknown."""
        hero = self.game_store.get_hero(hero_id) if self.game_store else None
        if hero is None:
            return None
        return self.chat(
            f"Analyse mon héros {hero.name} (Niveau {hero.level}, {hero.stars}★).\n"
            "Donne-moi:\n"
            "1. Son état d'optimisation actuel\n"
            f"2. Les talents recommandés selon son rôle ({hero.role})\n"
            "3. L'équipement idéal pour lui\n"
            "4. Les synergies avec mes autres héros\n"
            "5. Actions prioritaires à faire MAINTENANT",
            context="hero",
        )

    def team_suggestion(self, mode: str) -> str:
        if mode not in TEAM_MODES:
            raise ValueError(f"mode must be one of {', '.join(TEAM_MODES)}")
        return self.chat(
            f"Génère la MEILLEURE équipe {mode.upper()} possible avec mes héros actuels.\n"
            "Inclus:\n"
            "1. Le Commander (Chef)\n"
            "2. Les 3 Lieutenants\n"
            "3. L'explication de la synergie\n"
            "4. Le pourcentage de victoire estimé\n"
            "5. Les faiblesses de cette composition",
            context="team",
        )

    def upgrade_priorities(self) -> str:
        return self.chat(
            "Analyse mon compte complet et donne-moi mes 5 PRIORITÉS ABSOLUES maintenant:\n"
            "1. Quel héros upgrader en premier?\n"
            "2. Quel équipement améliorer?\n"
            "3. Quel bâtiment construire?\n"
            "4. Quelle ressource farmer?\n"
            "5. Quelle erreur corriger immédiatement?\n\n"
            "Base tes recommandations sur la méta actuelle et mes ressources disponibles.",
            context="general",
        )
