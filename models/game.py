"""
Game entities tracked for the player, and the builders that turn an
ExtractionResult into one of them.

Entities are stored as dicts (to_dict); from_dict() ignores unknown keys so
records written by other clients (camelCase, extra fields) still load.
"""
import secrets
import string
import time
from dataclasses import dataclass, field, asdict, fields
from typing import Any, List, Optional

from models.accounts import utc_now
from orchestrator.normalizer import ExtractionResult, parse_number

HERO_ROLES = ("marshal", "warrior", "tactician")
HERO_SPECIALTIES = ("cavalry", "archer", "swordsman", "pikeman")
HERO_RARITIES = ("common", "rare", "epic", "legendary")
EQUIPMENT_SLOTS = ("weapon", "helmet", "armor", "boots", "accessory", "ring")
EQUIPMENT_RARITIES = ("green", "blue", "purple", "gold")
BUILDING_CATEGORIES = ("military", "economic", "research", "defensive", "production")
OPTIMIZATION_STATUSES = ("optimal", "needs-talents", "needs-equipment", "needs-both")
TEAM_MODES = ("pvp", "siege", "harvest", "pve")

# French labels the model tends to answer with
_ALIASES = {
    "maréchal": "marshal", "marechal": "marshal", "guerrier": "warrior", "tacticien": "tactician",
    "cavalerie": "cavalry", "archers": "archer", "épéiste": "swordsman", "epeiste": "swordsman",
    "épéistes": "swordsman", "piquier": "pikeman", "piquiers": "pikeman",
    "commun": "common", "épique": "epic", "epique": "epic", "légendaire": "legendary", "legendaire": "legendary",
    "vert": "green", "bleu": "blue", "violet": "purple", "or": "gold", "doré": "gold",
    "arme": "weapon", "casque": "helmet", "armure": "armor", "bottes": "boots",
    "accessoire": "accessory", "anneau": "ring", "bague": "ring",
    "militaire": "military", "économique": "economic", "economique": "economic",
    "recherche": "research", "défensif": "defensive", "defensif": "defensive",
}

_ID_ALPHABET = string.ascii_lowercase + string.digits


def new_entity_id(prefix: str) -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


class _Record:
    """Shared dict round-trip for the entity dataclasses."""

    @classmethod
    def from_dict(cls, data: dict):
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Hero(_Record):
    id: str
    name: str
    level: int = 1
    stars: int = 1
    role: str = "warrior"
    specialty: str = "cavalry"
    rarity: str = "epic"
    power: int = 0
    might: int = 0
    strategy: int = 0
    siege: int = 0
    armor: int = 0
    equipment: List[dict] = field(default_factory=list)
    talents_configured: bool = False
    talent_build: Optional[str] = None
    talent_issues: List[str] = field(default_factory=list)
    optimization_status: str = "needs-both"
    image_url: Optional[str] = None
    notes: Optional[str] = None
    last_updated: str = field(default_factory=utc_now)


@dataclass
class EquipmentItem(_Record):
    id: str
    name: str
    slot: str = "weapon"
    rarity: str = "blue"
    level: int = 1
    stars: int = 0
    max_stars: int = 5
    main_stat: str = "Force"
    main_stat_value: float = 0
    secondary_stats: Optional[dict] = None
    gem_slots: int = 3
    gems: Optional[List[dict]] = None
    equipped_to: Optional[str] = None
    notes: Optional[str] = None
    last_updated: str = field(default_factory=utc_now)


@dataclass
class Building(_Record):
    id: str
    name: str
    category: str = "military"
    level: int = 1
    max_level: int = 25
    upgrade_requirements: Optional[dict] = None  # wood, food, stone, gold, time
    is_production: bool = False
    production_rate: Optional[dict] = None       # resource, per_hour, capacity
    benefits: List[str] = field(default_factory=list)
    notes: Optional[str] = None
    last_updated: str = field(default_factory=utc_now)


def _empty_resources() -> dict:
    return {"wood": 0, "food": 0, "stone": 0, "gold": 0}


@dataclass
class PlayerProfile(_Record):
    id: str = "1"
    name: str = "Joueur"
    level: int = 1
    power: int = 0
    civilization: str = "Inconnue"
    alliance: Optional[str] = None
    resources: dict = field(default_factory=_empty_resources)
    hero_count: int = 0
    building_count: int = 0
    equipment_count: int = 0
    last_updated: str = field(default_factory=utc_now)


@dataclass
class Team(_Record):
    id: str
    name: str
    mode: str = "pvp"
    commander: Optional[dict] = None
    lieutenants: List[Optional[dict]] = field(default_factory=list)
    synergies: List[str] = field(default_factory=list)
    win_rate: Optional[float] = None
    notes: Optional[str] = None


@dataclass
class AISettings(_Record):
    multimodal_enabled: bool = False
    selected_models: List[str] = field(default_factory=list)
    model_count: int = 1
    default_model: str = ""


@dataclass
class AIMessage(_Record):
    id: str
    role: str           # user | assistant
    content: str
    timestamp: str = field(default_factory=utc_now)
    model: Optional[str] = None
    image_url: Optional[str] = None
    actions: List[dict] = field(default_factory=list)


@dataclass
class Variable(_Record):
    key: str
    name: str
    value: Any
    type: str           # player | hero | equipment | building | resource | strategy
    description: str
    linked_to: str


# ============================================================
# Extraction → entity
# ============================================================

def _pick(data: dict, *keys, default=None):
    """First present, non-empty value among snake_case / camelCase spellings."""
    for key in keys:
        value = data.get(key)
        if value not in (None, "", [], {}):
            return value
    return default


def _number(value, default=0):
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        number = value
    elif isinstance(value, str):
        number = parse_number(value)
    else:
        number = None
    if not number:
        return default
    return int(number) if float(number).is_integer() else number


def _choice(value, allowed, default):
    if not isinstance(value, str):
        return default
    value = value.strip().lower()
    value = _ALIASES.get(value, value)
    return value if value in allowed else default


def build_hero(data: dict) -> Hero:
    return Hero(
        id=new_entity_id("hero"),
        name=_pick(data, "name", "nom", default="Héros inconnu"),
        level=_number(_pick(data, "level", "niveau"), 1),
        stars=_number(_pick(data, "stars", "etoiles"), 1),
        role=_choice(data.get("role"), HERO_ROLES, "warrior"),
        specialty=_choice(data.get("specialty"), HERO_SPECIALTIES, "cavalry"),
        rarity=_choice(data.get("rarity"), HERO_RARITIES, "epic"),
        power=_number(data.get("power")),
        might=_number(data.get("might")),
        strategy=_number(data.get("strategy")),
        siege=_number(data.get("siege")),
        armor=_number(data.get("armor")),
    )


def build_equipment(data: dict) -> EquipmentItem:
    gems = data.get("gems") if isinstance(data.get("gems"), list) else None
    secondary = _pick(data, "secondary_stats", "secondaryStats")
    return EquipmentItem(
        id=new_entity_id("equip"),
        name=_pick(data, "name", "nom", default="Équipement inconnu"),
        slot=_choice(data.get("slot"), EQUIPMENT_SLOTS, "weapon"),
        rarity=_choice(data.get("rarity"), EQUIPMENT_RARITIES, "blue"),
        level=_number(_pick(data, "level", "niveau"), 1),
        stars=_number(data.get("stars")),
        main_stat=_pick(data, "main_stat", "mainStat", default="Force"),
        main_stat_value=_number(_pick(data, "main_stat_value", "mainStatValue")),
        secondary_stats=secondary if isinstance(secondary, dict) else None,
        gem_slots=len(gems) if gems else 3,
        gems=gems,
    )


def build_building(data: dict) -> Building:
    production = _pick(data, "production", "production_rate", "productionRate")
    requirements = _pick(data, "upgrade_requirements", "upgradeRequirements")
    return Building(
        id=new_entity_id("building"),
        name=_pick(data, "name", "nom", default="Bâtiment inconnu"),
        category=_choice(data.get("category"), BUILDING_CATEGORIES, "military"),
        level=_number(_pick(data, "level", "niveau"), 1),
        max_level=_number(_pick(data, "max_level", "maxLevel"), 25),
        upgrade_requirements=requirements if isinstance(requirements, dict) else None,
        is_production=bool(production),
        production_rate=production if isinstance(production, dict) else None,
    )


def build_profile(data: dict) -> PlayerProfile:
    resources = data.get("resources")
    if isinstance(resources, dict):
        resources = {**_empty_resources(), **{k: _number(v) for k, v in resources.items()}}
    else:
        resources = _empty_resources()
    return PlayerProfile(
        name=_pick(data, "name", "nom", default="Joueur"),
        level=_number(_pick(data, "level", "niveau"), 1),
        power=_number(data.get("power")),
        civilization=_pick(data, "civilization", "civilisation", default="Inconnue"),
        alliance=data.get("alliance") or None,
        resources=resources,
    )


_BUILDERS = {
    "hero": build_hero,
    "equipment": build_equipment,
    "building": build_building,
    "profile": build_profile,
}


def build_entity(result: ExtractionResult):
    """
    Entity for a successful extraction, or None.
    inventory / unknown results, and raw-text fallbacks, produce nothing.
    """
    if not result.succeeded or not isinstance(result.payload, dict):
        return None
    builder = _BUILDERS.get(result.entity_kind)
    if builder is None:
        return None
    if set(result.payload) <= {"rawResponse"}:
        return None
    return builder(result.payload)
