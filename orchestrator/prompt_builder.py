"""
Oracle — Prompt Builder
Assembles the Oracle's system prompt from:
- persona + rules
- the strategy knowledge document (Markdown file on disk)
- the player's stored data (profile, heroes, equipment, buildings)
plus the focus block for the current context.
"""
import logging
from collections import Counter
from pathlib import Path
from typing import Optional

from config.settings import config
from orchestrator.normalizer import AUTO

logger = logging.getLogger("oracle.prompt_builder")

CONTEXTS = ("general", "ocr", "hero", "equipment", "building", "team")

_KNOWLEDGE_PLACEHOLDER = "(Document stratégique indisponible.)"


# ============================================================
# Oracle persona
# ============================================================

ORACLE_PERSONA = """Tu es l'Oracle Stratégique, un Grand Stratège militaire vétéran d'Age of Empires Mobile.

RÈGLES STRICTES:
1. Tu dois UNIQUEMENT utiliser les informations du document stratégique fourni pour tes explications théoriques. N'invente rien.
2. Tu dois TOUJOURS croiser les informations du document avec la liste des héros/équipements que l'utilisateur possède.
3. Ton ton est direct, impératif et précis. Pas de blabla.
4. Tu proposes des ACTIONS CONCRÈTES basées sur ce que l'utilisateur possède réellement.
5. Si l'utilisateur n'a pas les ressources nécessaires, tu proposes des alternatives avec ce qu'il a.
6. Réponds en {language}."""

_FOCUS = {
    "general": "",
    "ocr": """TÂCHE SPÉCIALE - OCR/ANALYSE D'IMAGE:
Tu dois analyser la capture d'écran fournie et extraire TOUTES les informations visibles:
- Pour un héros: nom, niveau, étoiles, rôle, spécialité, stats, équipement visible, talents
- Pour l'équipement: nom, rareté (couleur), niveau, étoiles, stats, gemmes
- Pour un bâtiment: nom, niveau, coûts upgrade, temps, production si applicable
- Pour l'inventaire: liste COMPLÈTE de tous les items visibles

IMPORTANT: Si tu détectes que l'image ne montre pas TOUS les éléments (ex: inventaire tronqué), indique quels éléments manquent et demande des captures supplémentaires.

Réponds en JSON structuré avec le format approprié.""",
    "hero": """FOCUS HÉROS:
Analyse et conseille sur les héros. Vérifie:
- Configuration des talents (correct ou à réinitialiser?)
- Équipement optimal (as-t-il le meilleur disponible?)
- Synergies avec d'autres héros possédés
- Priorités d'investissement""",
    "equipment": """FOCUS ÉQUIPEMENT:
Analyse l'équipement. Applique les règles:
- Épique 3★ > Légendaire 0★
- Vérifie les gemmes par rôle
- Propose des échanges optimaux entre héros""",
    "building": """FOCUS BÂTIMENTS:
Analyse les bâtiments. Indique:
- Priorités d'upgrade
- Coûts et temps estimés
- Production actuelle vs potentielle""",
    "team": """FOCUS ÉQUIPES/SYNERGIES:
Crée des compositions optimales selon les règles:
- NE JAMAIS mélanger types d'unités
- 1 Maréchal + DPS/Tacticiens
- Vérifie les synergies documentées""",
}

_EXTRACTION_ENVELOPE = """{
  "type": "hero|equipment|building|profile|inventory",
  "confidence": 0.0-1.0,
  "data": { /* données extraites selon le type */ },
  "complete": true|false,
  "missingElements": ["liste des éléments non visibles si incomplet"]
}"""

_KIND_LABELS = {
    "hero": "héros",
    "equipment": "équipement",
    "building": "bâtiment",
    "profile": "profil de joueur",
    "inventory": "inventaire",
}


def _fmt(n) -> str:
    """1234567 → '1 234 567'"""
    try:
        return f"{int(n):,}".replace(",", " ")
    except (TypeError, ValueError):
        return str(n)


class OraclePromptBuilder:
    """Builds system and extraction prompts. Knowledge is read once and cached."""

    def __init__(self, knowledge_path: str = None, language: str = None):
        self.knowledge_path = Path(knowledge_path or config.knowledge.strategy_path)
        self.language = language or config.knowledge.response_language
        self._knowledge: Optional[str] = None

    @property
    def knowledge(self) -> str:
        if self._knowledge is None:
            try:
                self._knowledge = self.knowledge_path.read_text(encoding="utf-8").strip()
                logger.info(f"Strategy knowledge loaded: {len(self._knowledge)} chars")
            except OSError as e:
                logger.warning(f"Strategy knowledge not found at {self.knowledge_path} (non-fatal): {e}")
                self._knowledge = _KNOWLEDGE_PLACEHOLDER
        return self._knowledge

    # -------------------------------------------------------
    # Player context
    # -------------------------------------------------------

    def build_user_context(self, game_store) -> str:
        if game_store is None:
            return ""
        player = game_store.get_profile()
        heroes = game_store.get_heroes()
        equipment = game_store.get_equipment()
        buildings = game_store.get_buildings()

        lines = ["=== DONNÉES DU JOUEUR ==="]

        if player:
            res = player.resources or {}
            lines += [
                "",
                "PROFIL:",
                f"- Nom: {player.name}",
                f"- Niveau: {player.level}",
                f"- Puissance: {_fmt(player.power)}",
                f"- Civilisation: {player.civilization}",
                f"- Alliance: {player.alliance or 'Aucune'}",
                "",
                "RESSOURCES:",
                f"- Bois: {_fmt(res.get('wood', 0))}",
                f"- Nourriture: {_fmt(res.get('food', 0))}",
                f"- Pierre: {_fmt(res.get('stone', 0))}",
                f"- Or: {_fmt(res.get('gold', 0))}",
            ]

        if heroes:
            lines += ["", f"HÉROS ({len(heroes)} total):"]
            for h in heroes:
                issues = f" | Problèmes: {', '.join(h.talent_issues)}" if h.talent_issues else ""
                lines.append(f"- {h.name} (Niv {h.level}, {h.stars}★, {h.role}, {h.specialty})")
                lines.append(
                    f"  Puissance: {_fmt(h.power)} | Force: {h.might} | Stratégie: {h.strategy}"
                )
                lines.append(f"  Status: {h.optimization_status}{issues}")

        if equipment:
            by_rarity = Counter(e.rarity for e in equipment)
            lines += [
                "",
                f"ÉQUIPEMENT ({len(equipment)} total):",
                f"- Légendaire (Or): {by_rarity['gold']}",
                f"- Épique (Violet): {by_rarity['purple']}",
                f"- Rare (Bleu): {by_rarity['blue']}",
                f"- Commun (Vert): {by_rarity['green']}",
            ]

        if buildings:
            lines += ["", f"BÂTIMENTS ({len(buildings)} total):"]
            for b in buildings:
                line = f"- {b.name}: Niveau {b.level}/{b.max_level}"
                rate = b.production_rate or {}
                per_hour = rate.get("per_hour", rate.get("perHour"))
                if b.is_production and per_hour:
                    line += f" (Produit: {per_hour}/h {rate.get('resource', '')}".rstrip() + ")"
                lines.append(line)

        return "\n".join(lines)

    # -------------------------------------------------------
    # Prompts
    # -------------------------------------------------------

    def build_system_prompt(self, context: str = "general", game_store=None) -> str:
        if context not in CONTEXTS:
            logger.warning(f"Unknown prompt context {context!r} — using general")
            context = "general"

        parts = [
            ORACLE_PERSONA.format(language=self.language),
            f"DOCUMENT STRATÉGIQUE:\n{self.knowledge}",
        ]
        user_context = self.build_user_context(game_store)
        if user_context:
            parts.append(user_context)
        if _FOCUS[context]:
            parts.append(_FOCUS[context])
        return "\n\n".join(parts)

    def build_extraction_prompt(self, expected_kind: str = AUTO) -> str:
        if expected_kind == AUTO or expected_kind not in _KIND_LABELS:
            return (
                "Analyse cette capture d'écran d'Age of Empires Mobile. Détermine le type de contenu "
                "(héros, équipement, bâtiment, profil, inventaire) et extrais TOUTES les informations "
                f"visibles. Réponds en JSON avec la structure:\n{_EXTRACTION_ENVELOPE}"
            )
        return (
            f"Analyse cette capture d'écran d'Age of Empires Mobile contenant un {_KIND_LABELS[expected_kind]}. "
            "Extrais TOUTES les informations visibles. Réponds en JSON structuré avec la structure:\n"
            f"{_EXTRACTION_ENVELOPE.replace('hero|equipment|building|profile|inventory', expected_kind)}"
        )
