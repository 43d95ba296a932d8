"""
Oracle — AI Gateway
Thin wrapper over the Anthropic Messages API (vision-capable).

One call = one prompt, an optional screenshot, a model id.
Transport/auth failures surface as GatewayError; nothing is retried here.
"""
import base64
import binascii
import json
import logging
import re
from dataclasses import dataclass
from typing import List, Optional

import anthropic
import httpx

from config.settings import config

logger = logging.getLogger("oracle.gateway")

_DATA_URL_RE = re.compile(r"^data:(image/[\w.+-]+);base64,(.*)$", re.DOTALL)

# Leading bytes of common image formats, as they appear once base64-encoded
_BASE64_SIGNATURES = {
    "iVBOR": "image/png",
    "/9j/": "image/jpeg",
    "R0lGOD": "image/gif",
    "UklGR": "image/webp",
}


class GatewayError(Exception):
    """The gateway could not be reached, rejected the credentials, or timed out."""


@dataclass
class GatewayReply:
    text: str
    model: str
    tokens_used: int = 0


# ============================================================
# Helpers
# ============================================================

def _field(obj, name: str):
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def extract_text(response) -> str:
    """
    Pull the answer text out of whatever the gateway returned.
    Order: the string itself, .message.content, .text, .content
    (string or list of text blocks), else the whole object as JSON.
    """
    if isinstance(response, str):
        return response

    content = _field(_field(response, "message"), "content")
    if isinstance(content, str):
        return content

    text = _field(response, "text")
    if isinstance(text, str):
        return text

    content = _field(response, "content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [_field(block, "text") for block in content]
        parts = [p for p in parts if isinstance(p, str)]
        if parts:
            return "".join(parts)

    if hasattr(response, "model_dump"):
        response = response.model_dump()
    return json.dumps(response, default=str, ensure_ascii=False)


def image_block(image: str) -> dict:
    """
    Build an Anthropic image content block from a data URL
    ("data:image/png;base64,...") or a bare base64 string.
    """
    image = image.strip()
    match = _DATA_URL_RE.match(image)
    if match:
        media_type, data = match.group(1), match.group(2)
    else:
        data = image
        media_type = next(
            (mt for prefix, mt in _BASE64_SIGNATURES.items() if data.startswith(prefix)),
            "image/jpeg",
        )

    data = re.sub(r"\s+", "", data)
    try:
        base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Image is not valid base64: {e}") from e

    return {
        "type": "image",
        "source": {"type": "base64", "media_type": media_type, "data": data},
    }


def encode_image(raw: bytes, media_type: str = "image/png") -> str:
    """Raw image bytes → data URL accepted by AIGateway.chat()."""
    return f"data:{media_type};base64,{base64.b64encode(raw).decode('ascii')}"


# ============================================================
# Gateway
# ============================================================

class AIGateway:
    """
    Sends prompts (and screenshots) to the model.
    When a ledger is attached, the active account's auth_token is used as
    the API key; otherwise the configured ANTHROPIC_API_KEY.
    """

    def __init__(self, ledger=None, api_key: str = None, client_factory=None):
        self.ledger = ledger
        self._api_key = api_key if api_key is not None else config.gateway.api_key
        self._client_factory = client_factory or anthropic.Anthropic
        self._clients = {}

    def _resolve_key(self) -> str:
        if self.ledger is not None:
            active = self.ledger.get_active()
            if active and active.auth_token:
                return active.auth_token
        return self._api_key

    def _client(self):
        key = self._resolve_key()
        if not key:
            raise GatewayError("No API key configured and no active account with a token")
        if key not in self._clients:
            self._clients[key] = self._client_factory(
                api_key=key,
                timeout=config.gateway.timeout,
            )
        return self._clients[key]

    def chat(self, prompt: str, image: Optional[str] = None, model: Optional[str] = None,
             system: Optional[str] = None, history: Optional[List[dict]] = None,
             max_tokens: Optional[int] = None) -> GatewayReply:
        """
        Single round-trip to the model. Returns the reply text and token usage.
        history: prior {"role", "content"} turns, oldest first.
        """
        model = model or config.gateway.default_model

        if image:
            content = [image_block(image), {"type": "text", "text": prompt}]
        else:
            content = prompt

        messages = [
            {"role": m["role"], "content": m["content"]}
            for m in (history or [])
            if m.get("role") in ("user", "assistant") and m.get("content")
        ]
        messages.append({"role": "user", "content": content})

        kwargs = {
            "model": model,
            "max_tokens": max_tokens or config.gateway.max_output_tokens,
            "messages": messages,
        }
        if system:
            kwargs["system"] = system

        logger.info(f"Calling gateway: model={model}, image={'yes' if image else 'no'}")
        try:
            response = self._client().messages.create(**kwargs)
        except anthropic.APIError as e:
            logger.error(f"Gateway call failed ({model}): {e}")
            raise GatewayError(str(e)) from e
        except httpx.HTTPError as e:
            logger.error(f"Gateway transport error ({model}): {e}")
            raise GatewayError(str(e)) from e

        usage = _field(response, "usage")
        tokens_used = (_field(usage, "input_tokens") or 0) + (_field(usage, "output_tokens") or 0)
        if not isinstance(tokens_used, int):
            tokens_used = 0

        text = extract_text(response)
        logger.info(f"Gateway responded: {len(text)} chars, {tokens_used} tokens")
        return GatewayReply(text=text, model=model, tokens_used=tokens_used)

