"""
Oracle — Response Normalizer
Turns the free-text answer of a vision model into a structured ExtractionResult.

Strategies run in strict order; the first one that yields a non-empty
structured payload wins:
  1. direct    — whole response is JSON
  2. fenced    — JSON inside a ``` / ```json code block
  3. loose     — greedy {...} span embedded in prose
  4. keywords  — labeled-value regexes ("Nom: Attila, Niveau: 30")
  5. fallback  — raw text kept as payload
Malformed output never raises; only the gateway call itself can fail,
which callers turn into error_result().
"""
import json
import logging
import re
from dataclasses import dataclass, field, asdict
from typing import Callable, List, Optional

logger = logging.getLogger("oracle.normalizer")

ENTITY_KINDS = ("hero", "equipment", "building", "profile", "inventory", "unknown")
AUTO = "auto"

# Default confidence per strategy (model-declared confidence wins for JSON strategies)
CONFIDENCE_DIRECT = 0.85
CONFIDENCE_FENCED = 0.8
CONFIDENCE_LOOSE = 0.75
CONFIDENCE_KEYWORDS = 0.6
CONFIDENCE_FALLBACK = 0.5

# Envelope keys the extraction prompt asks for; never part of the payload
_ENVELOPE_KEYS = {"type", "kind", "confidence", "data", "complete", "missingElements", "missing_elements"}

# Model answers in French or English; map both to canonical kinds
_KIND_ALIASES = {
    "hero": "hero", "heros": "hero", "héros": "hero", "héro": "hero",
    "equipment": "equipment", "equipement": "equipment", "équipement": "equipment", "item": "equipment",
    "building": "building", "batiment": "building", "bâtiment": "building",
    "profile": "profile", "profil": "profile", "player": "profile", "joueur": "profile",
    "inventory": "inventory", "inventaire": "inventory",
    "unknown": "unknown", "inconnu": "unknown",
}

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
_LOOSE_RE = re.compile(r"\{[\s\S]*\}")


@dataclass
class ExtractionResult:
    """Outcome of analyzing one screenshot."""
    succeeded: bool
    entity_kind: str
    payload: Optional[dict]
    confidence: float
    raw_response: str
    incomplete: bool = False
    missing_elements: List[str] = field(default_factory=list)
    strategy: Optional[str] = None  # which strategy produced it (diagnostics)

    def to_dict(self) -> dict:
        return asdict(self)


# ============================================================
# Helpers
# ============================================================

def normalize_kind(raw_kind, expected_kind: str = AUTO) -> str:
    """Map a model-declared type to a known entity kind.
    Falls back to the expected kind, or 'unknown' in auto mode."""
    if isinstance(raw_kind, str):
        mapped = _KIND_ALIASES.get(raw_kind.strip().lower())
        if mapped:
            return mapped
        if raw_kind.strip():
            logger.debug(f"Unrecognized entity type {raw_kind!r}")
    return expected_kind if expected_kind in ENTITY_KINDS else "unknown"


def _declared_confidence(doc: dict, default: float) -> float:
    value = doc.get("confidence")
    # bool is an int subclass; "confidence": true is not a score
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return max(0.0, min(1.0, float(value)))


def _missing_elements(doc: dict) -> List[str]:
    raw = doc.get("missingElements", doc.get("missing_elements")) or []
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list):
        return []
    return [str(item) for item in raw if item is not None and str(item).strip()]


_THOUSANDS_SEP = " \u00a0\u202f,.'"
_NUMBER_RE = rf"\d{{1,3}}(?:[{_THOUSANDS_SEP}]\d{{3}})+(?!\d)|\d+(?:\.\d+)?"


def parse_number(text: str):
    """'30' → 30, '1 234 567' / '1,234,567' → 1234567, '12.5' → 12.5"""
    text = text.strip()
    if re.fullmatch(rf"\d{{1,3}}(?:[{_THOUSANDS_SEP}]\d{{3}})+", text):
        return int(re.sub(rf"[{_THOUSANDS_SEP}]", "", text))
    if text.isdigit():
        return int(text)
    try:
        return float(text)
    except ValueError:
        return None


def _load_json(text: str):
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError, ValueError):
        return None


def _from_document(doc, expected_kind: str, default_confidence: float,
                   raw: str, strategy: str) -> Optional[ExtractionResult]:
    """Build a result from a parsed JSON document, or None if it carries nothing usable."""
    if not isinstance(doc, dict) or not doc:
        return None

    data = doc.get("data")
    if isinstance(data, dict):
        payload = dict(data)
    elif isinstance(data, list) and data:
        # Inventory answers list their items directly under "data"
        payload = {"items": data}
    else:
        payload = {k: v for k, v in doc.items() if k not in _ENVELOPE_KEYS}

    incomplete = doc.get("complete") is False
    # An explicit "complete": false is kept even when nothing was readable
    if not payload and not incomplete:
        return None
    return ExtractionResult(
        succeeded=True,
        entity_kind=normalize_kind(doc.get("type", doc.get("kind")), expected_kind),
        payload=payload,
        confidence=_declared_confidence(doc, default_confidence),
        raw_response=raw,
        incomplete=incomplete,
        missing_elements=_missing_elements(doc) if incomplete else [],
        strategy=strategy,
    )


# ============================================================
# Strategies: each returns an ExtractionResult or None
# ============================================================

def _direct(text: str, expected_kind: str) -> Optional[ExtractionResult]:
    return _from_document(_load_json(text.strip()), expected_kind, CONFIDENCE_DIRECT, text, "direct")


def _fenced(text: str, expected_kind: str) -> Optional[ExtractionResult]:
    for match in _FENCE_RE.finditer(text):
        block = match.group(1).strip()
        if not block.startswith("{"):
            continue
        result = _from_document(_load_json(block), expected_kind, CONFIDENCE_FENCED, text, "fenced")
        if result:
            return result
    return None


def _loose(text: str, expected_kind: str) -> Optional[ExtractionResult]:
    match = _LOOSE_RE.search(text)
    if not match:
        return None
    return _from_document(_load_json(match.group(0)), expected_kind, CONFIDENCE_LOOSE, text, "loose")


# ------------------------------------------------------------
# Keyword scrape
# ------------------------------------------------------------

_VALUE_END = r"[^,;\n|]+"

_TEXT_FIELDS = {
    "name": r"(?:name|nom)",
    "alliance": r"(?:alliance)",
    "civilization": r"(?:civili[sz]ation)",
    "slot": r"(?:slot|emplacement)",
    "rarity": r"(?:rarity|raret[ée])",
}

_NUMBER_FIELDS = {
    "level": r"(?:level|niveau|niv|lvl)\.?",
    "power": r"(?:power|puissance)",
    "stars": r"(?:stars|[ée]toiles)",
    "might": r"(?:might|force)",
    "strategy": r"(?:strategy|strat[ée]gie)",
    "siege": r"(?:siege|si[èe]ge)",
    "armor": r"(?:armor|armure)",
}

_ROLE_WORDS = {
    "marshal": r"mar[ée]chal|marshal",
    "warrior": r"guerrier|warrior",
    "tactician": r"tacticien|tactician",
}

_SPECIALTY_WORDS = {
    "cavalry": r"cavalerie|cavalry",
    "archer": r"archers?",
    "swordsman": r"[ée]p[ée]istes?|swordsm[ae]n",
    "pikeman": r"piquiers?|pikem[ae]n",
}

# Auto mode only scrapes when the answer names its own type ("Type: héros")
_TYPE_LABEL_RE = re.compile(r"\b(?:type|kind|cat[ée]gorie|category)\"?\s*[:=]\s*\"?([^\s\",;|]+)", re.IGNORECASE)


def _infer_kind(text: str) -> Optional[str]:
    match = _TYPE_LABEL_RE.search(text)
    if not match:
        return None
    kind = _KIND_ALIASES.get(match.group(1).strip().lower())
    return kind if kind and kind != "unknown" else None


def scrape_fields(text: str) -> dict:
    """Collect labeled values from free text into a flat field mapping."""
    fields = {}

    for key, label in _TEXT_FIELDS.items():
        match = re.search(rf"\b{label}\"?\s*[:=]\s*({_VALUE_END})", text, re.IGNORECASE)
        if match:
            value = match.group(1).strip().strip("\"'*")
            if value:
                fields[key] = value

    for key, label in _NUMBER_FIELDS.items():
        match = re.search(rf"\b{label}\"?\s*[:=]?\s*\"?({_NUMBER_RE})", text, re.IGNORECASE)
        if match:
            number = parse_number(match.group(1))
            if number is not None:
                fields[key] = number

    # Star glyphs: "3★"
    if "stars" not in fields:
        match = re.search(r"(\d)\s*★", text)
        if match:
            fields["stars"] = int(match.group(1))

    for role, pattern in _ROLE_WORDS.items():
        if re.search(rf"\b(?:{pattern})\b", text, re.IGNORECASE):
            fields["role"] = role
            break

    for specialty, pattern in _SPECIALTY_WORDS.items():
        if re.search(rf"\b(?:{pattern})\b", text, re.IGNORECASE):
            fields["specialty"] = specialty
            break

    return fields


def _keywords(text: str, expected_kind: str) -> Optional[ExtractionResult]:
    kind = expected_kind if expected_kind in ENTITY_KINDS and expected_kind != "unknown" else _infer_kind(text)
    if not kind:
        return None
    payload = scrape_fields(text)
    if not payload:
        return None
    payload["rawResponse"] = text
    return ExtractionResult(
        succeeded=True,
        entity_kind=kind,
        payload=payload,
        confidence=CONFIDENCE_KEYWORDS,
        raw_response=text,
        strategy="keywords",
    )


_STRATEGIES: List[Callable[[str, str], Optional[ExtractionResult]]] = [
    _direct,
    _fenced,
    _loose,
    _keywords,
]


# ============================================================
# Public API
# ============================================================

def fallback_result(text: str, expected_kind: str = AUTO) -> ExtractionResult:
    """Raw-text result used when no strategy recognized anything."""
    return ExtractionResult(
        succeeded=True,
        entity_kind=expected_kind if expected_kind in ENTITY_KINDS else "unknown",
        payload={"rawResponse": text},
        confidence=CONFIDENCE_FALLBACK,
        raw_response=text,
        strategy="fallback",
    )


def error_result(message: str) -> ExtractionResult:
    """Result for a failed gateway call (timeout, auth rejection, transport error)."""
    return ExtractionResult(
        succeeded=False,
        entity_kind="unknown",
        payload=None,
        confidence=0.0,
        raw_response=message,
        strategy="error",
    )


def normalize(response_text, expected_kind: str = AUTO) -> ExtractionResult:
    """
    Convert a model response into an ExtractionResult.
    expected_kind: one of ENTITY_KINDS or 'auto'.
    """
    text = response_text if isinstance(response_text, str) else str(response_text or "")
    if expected_kind != AUTO and expected_kind not in ENTITY_KINDS:
        logger.warning(f"Unknown expected kind {expected_kind!r} — treating as auto")
        expected_kind = AUTO

    for strategy in _STRATEGIES:
        try:
            result = strategy(text, expected_kind)
        except Exception as e:
            # A strategy bug must not hide the raw answer from the player
            logger.warning(f"Strategy {strategy.__name__} failed (non-fatal): {e}")
            continue
        if result is not None:
            logger.info(
                f"Normalized response via {result.strategy}: "
                f"kind={result.entity_kind}, confidence={result.confidence:.2f}"
            )
            return result

    logger.info("No structured data found — keeping raw response")
    return fallback_result(text, expected_kind)
