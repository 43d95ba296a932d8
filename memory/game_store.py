"""
Oracle — Game Store
Player data (profile, heroes, equipment, buildings, teams, settings,
chat history) kept as one JSON document per collection in a KeyValueStore.

Derived variables are recomputed whenever profile, heroes, equipment or
buildings change.
"""
import json
import logging
import threading
from datetime import datetime, timezone
from typing import List, Optional

from config.settings import config
from memory.kv_store import KeyValueStore
from models.accounts import utc_now
from models.game import (
    AIMessage, AISettings, Building, EquipmentItem, Hero, PlayerProfile, Team, Variable,
)

logger = logging.getLogger("oracle.game_store")

KEYS = {
    "player": "oracle_player_profile",
    "heroes": "oracle_heroes",
    "equipment": "oracle_equipment",
    "buildings": "oracle_buildings",
    "settings": "oracle_settings",
    "teams": "oracle_teams",
    "ai_history": "oracle_ai_history",
    "variables": "oracle_variables",
}


def default_settings() -> dict:
    return {
        "ai": AISettings(
            multimodal_enabled=False,
            selected_models=[config.gateway.default_model],
            model_count=1,
            default_model=config.gateway.default_model,
        ).to_dict(),
        "last_sync": None,
    }


class GameStore:

    def __init__(self, store: KeyValueStore):
        self.store = store
        self._lock = threading.RLock()

    # -------------------------------------------------------
    # Generic collection helpers
    # -------------------------------------------------------

    def _get_list(self, name: str, cls) -> list:
        raw = self.store.get(KEYS[name], [])
        if not isinstance(raw, list):
            logger.warning(f"{KEYS[name]} does not hold a list — treating as empty")
            return []
        items = []
        for item in raw:
            try:
                items.append(cls.from_dict(item))
            except (TypeError, AttributeError) as e:
                logger.warning(f"Skipping unreadable {name} record (non-fatal): {e}")
        return items

    def _set_list(self, name: str, items: list, recompute: bool = True):
        with self._lock:
            self.store.set(KEYS[name], [i.to_dict() for i in items])
            if recompute:
                self._update_variables()

    def _upsert(self, name: str, cls, item):
        with self._lock:
            items = self._get_list(name, cls)
            index = next((i for i, x in enumerate(items) if x.id == item.id), None)
            if index is None:
                items.append(item)
            else:
                items[index] = item
            self._set_list(name, items)
        return item

    def _update(self, name: str, cls, item_id: str, updates: dict):
        with self._lock:
            items = self._get_list(name, cls)
            index = next((i for i, x in enumerate(items) if x.id == item_id), None)
            if index is None:
                return None
            merged = {**items[index].to_dict(), **updates, "id": item_id, "last_updated": utc_now()}
            items[index] = cls.from_dict(merged)
            self._set_list(name, items)
            return items[index]

    def _delete(self, name: str, cls, item_id: str) -> bool:
        with self._lock:
            items = self._get_list(name, cls)
            remaining = [x for x in items if x.id != item_id]
            if len(remaining) == len(items):
                return False
            self._set_list(name, remaining)
            return True

    # -------------------------------------------------------
    # Player profile
    # -------------------------------------------------------

    def get_profile(self) -> Optional[PlayerProfile]:
        raw = self.store.get(KEYS["player"])
        return PlayerProfile.from_dict(raw) if isinstance(raw, dict) else None

    def set_profile(self, profile: PlayerProfile):
        with self._lock:
            self.store.set(KEYS["player"], profile.to_dict())
            self._update_variables()

    # -------------------------------------------------------
    # Heroes / equipment / buildings
    # -------------------------------------------------------

    def get_heroes(self) -> List[Hero]:
        return self._get_list("heroes", Hero)

    def get_hero(self, hero_id: str) -> Optional[Hero]:
        return next((h for h in self.get_heroes() if h.id == hero_id), None)

    def set_heroes(self, heroes: List[Hero]):
        self._set_list("heroes", heroes)

    def add_hero(self, hero: Hero) -> Hero:
        return self._upsert("heroes", Hero, hero)

    def update_hero(self, hero_id: str, updates: dict) -> Optional[Hero]:
        return self._update("heroes", Hero, hero_id, updates)

    def delete_hero(self, hero_id: str) -> bool:
        return self._delete("heroes", Hero, hero_id)

    def get_equipment(self) -> List[EquipmentItem]:
        return self._get_list("equipment", EquipmentItem)

    def set_equipment(self, equipment: List[EquipmentItem]):
        self._set_list("equipment", equipment)

    def add_equipment(self, item: EquipmentItem) -> EquipmentItem:
        return self._upsert("equipment", EquipmentItem, item)

    def update_equipment(self, item_id: str, updates: dict) -> Optional[EquipmentItem]:
        return self._update("equipment", EquipmentItem, item_id, updates)

    def delete_equipment(self, item_id: str) -> bool:
        return self._delete("equipment", EquipmentItem, item_id)

    def get_buildings(self) -> List[Building]:
        return self._get_list("buildings", Building)

    def set_buildings(self, buildings: List[Building]):
        self._set_list("buildings", buildings)

    def add_building(self, building: Building) -> Building:
        return self._upsert("buildings", Building, building)

    def update_building(self, building_id: str, updates: dict) -> Optional[Building]:
        return self._update("buildings", Building, building_id, updates)

    def delete_building(self, building_id: str) -> bool:
        return self._delete("buildings", Building, building_id)

    # -------------------------------------------------------
    # Teams
    # -------------------------------------------------------

    def get_teams(self) -> List[Team]:
        return self._get_list("teams", Team)

    def set_teams(self, teams: List[Team]):
        self._set_list("teams", teams, recompute=False)

    def add_team(self, team: Team) -> Team:
        with self._lock:
            teams = self.get_teams()
            teams.append(team)
            self.set_teams(teams)
        return team

    # -------------------------------------------------------
    # Settings
    # -------------------------------------------------------

    def get_settings(self) -> dict:
        stored = self.store.get(KEYS["settings"])
        settings = default_settings()
        if isinstance(stored, dict):
            settings.update(stored)
        return settings

    def set_settings(self, settings: dict):
        self.store.set(KEYS["settings"], settings)

    def update_settings(self, updates: dict) -> dict:
        with self._lock:
            settings = {**self.get_settings(), **updates}
            self.set_settings(settings)
        return settings

    def get_ai_settings(self) -> AISettings:
        ai = self.get_settings().get("ai")
        if not isinstance(ai, dict):
            return AISettings.from_dict(default_settings()["ai"])
        return AISettings.from_dict({**default_settings()["ai"], **ai})

    # -------------------------------------------------------
    # AI chat history
    # -------------------------------------------------------

    def get_ai_history(self) -> List[AIMessage]:
        return self._get_list("ai_history", AIMessage)

    def set_ai_history(self, messages: List[AIMessage]):
        self._set_list("ai_history", messages, recompute=False)

    def add_ai_message(self, message: AIMessage):
        limit = config.storage.history_limit
        with self._lock:
            history = self.get_ai_history()
            history.append(message)
            if len(history) > limit:
                history = history[-limit:]
            self.set_ai_history(history)

    def clear_ai_history(self):
        self.set_ai_history([])

    # -------------------------------------------------------
    # Derived variables
    # -------------------------------------------------------

    def get_variables(self) -> List[Variable]:
        raw = self.store.get(KEYS["variables"], [])
        return [Variable.from_dict(v) for v in raw] if isinstance(raw, list) else []

    def _update_variables(self):
        player = self.get_profile()
        heroes = self.get_heroes()
        equipment = self.get_equipment()
        buildings = self.get_buildings()

        variables = []
        if player:
            resources = player.resources or {}
            variables += [
                Variable("player_name", "Nom du joueur", player.name, "player", "Votre nom de joueur", "Profil"),
                Variable("player_level", "Niveau", player.level, "player", "Niveau du compte", "Profil"),
                Variable("player_power", "Puissance", player.power, "player", "Puissance totale", "Profil"),
                Variable("player_civ", "Civilisation", player.civilization, "player", "Civilisation actuelle", "Profil"),
                Variable("resource_wood", "Bois", resources.get("wood", 0), "resource", "Stock de bois", "Ressources"),
                Variable("resource_food", "Nourriture", resources.get("food", 0), "resource", "Stock de nourriture", "Ressources"),
                Variable("resource_stone", "Pierre", resources.get("stone", 0), "resource", "Stock de pierre", "Ressources"),
                Variable("resource_gold", "Or", resources.get("gold", 0), "resource", "Stock d'or", "Ressources"),
            ]

        for idx, hero in enumerate(heroes):
            linked = f"Héros: {hero.name}"
            variables += [
                Variable(f"hero_{idx}_name", f"Héros {idx + 1}", hero.name, "hero", "Nom du héros", linked),
                Variable(f"hero_{idx}_level", f"Niveau {hero.name}", hero.level, "hero", "Niveau du héros", linked),
                Variable(f"hero_{idx}_power", f"Puissance {hero.name}", hero.power, "hero", "Puissance du héros", linked),
                Variable(f"hero_{idx}_status", f"Status {hero.name}", hero.optimization_status, "hero",
                         "État d'optimisation", linked),
            ]

        variables += [
            Variable("equipment_total", "Total équipements", len(equipment), "equipment",
                     "Nombre total d'équipements", "Inventaire"),
            Variable("equipment_legendary", "Équipements Légendaires",
                     sum(1 for e in equipment if e.rarity == "gold"), "equipment", "Équipements dorés", "Inventaire"),
            Variable("equipment_epic", "Équipements Épiques",
                     sum(1 for e in equipment if e.rarity == "purple"), "equipment", "Équipements violets", "Inventaire"),
        ]

        for idx, building in enumerate(buildings):
            variables.append(Variable(f"building_{idx}_name", building.name, building.level, "building",
                                      "Niveau du bâtiment", f"Bâtiments: {building.name}"))

        optimal = sum(1 for h in heroes if h.optimization_status == "optimal")
        variables += [
            Variable("strategy_hero_count", "Nombre de héros", len(heroes), "strategy", "Total héros scannés", "Stratégie"),
            Variable("strategy_optimal_heroes", "Héros optimisés", optimal, "strategy", "Héros 100% optimaux", "Stratégie"),
            Variable("strategy_needs_work", "Héros à optimiser", len(heroes) - optimal, "strategy",
                     "Héros nécessitant attention", "Stratégie"),
        ]

        self.store.set(KEYS["variables"], [v.to_dict() for v in variables])

    # -------------------------------------------------------
    # Backup
    # -------------------------------------------------------

    def export_all(self) -> str:
        profile = self.get_profile()
        return json.dumps({
            "player": profile.to_dict() if profile else None,
            "heroes": [h.to_dict() for h in self.get_heroes()],
            "equipment": [e.to_dict() for e in self.get_equipment()],
            "buildings": [b.to_dict() for b in self.get_buildings()],
            "teams": [t.to_dict() for t in self.get_teams()],
            "settings": self.get_settings(),
            "ai_history": [m.to_dict() for m in self.get_ai_history()],
            "export_date": datetime.now(timezone.utc).isoformat(),
        }, ensure_ascii=False)

    def import_all(self, text: str) -> bool:
        """Restore a backup. Sections absent from the backup are left as they are."""
        try:
            data = json.loads(text)
            if not isinstance(data, dict):
                raise ValueError("backup must be a JSON object")
            with self._lock:
                if data.get("player"):
                    self.set_profile(PlayerProfile.from_dict(data["player"]))
                if data.get("heroes"):
                    self.set_heroes([Hero.from_dict(h) for h in data["heroes"]])
                if data.get("equipment"):
                    self.set_equipment([EquipmentItem.from_dict(e) for e in data["equipment"]])
                if data.get("buildings"):
                    self.set_buildings([Building.from_dict(b) for b in data["buildings"]])
                if data.get("teams"):
                    self.set_teams([Team.from_dict(t) for t in data["teams"]])
                if data.get("settings"):
                    self.set_settings(data["settings"])
                history = data.get("ai_history") or data.get("aiHistory")
                if history:
                    self.set_ai_history([AIMessage.from_dict(m) for m in history])
        except (ValueError, TypeError, AttributeError) as e:
            logger.error(f"Import rejected: {e}")
            return False
        logger.info("Game data imported")
        return True

    def clear_all(self):
        with self._lock:
            for key in KEYS.values():
                self.store.delete(key)
        logger.info("All game data cleared")
