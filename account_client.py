"""
Oracle — Account Service Client
Profile + quota lookups for linked gateway accounts.

Both lookups are best-effort: any failure (no URL configured, transport
error, non-2xx, bad JSON) is logged and returns None, so callers fall back
to the last-known values they already hold.
"""
import logging
import time
from typing import Optional

import httpx

from config.settings import config

logger = logging.getLogger("oracle.account_client")

_MAX_RETRIES = 3
_MAX_BACKOFF = 8


def _as_id(value) -> Optional[str]:
    """Service ids arrive as strings or numbers; the ledger compares strings."""
    return str(value) if value not in (None, "") else None


class AccountServiceClient:
    """GET /user and GET /quota against the account service, bearer-authenticated."""

    _instance = None

    @classmethod
    def _get_global_instance(cls):
        """Return the module-level singleton. Lazy-init if needed."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def __init__(self, base_url: str = None, timeout: float = None, http_client: httpx.Client = None):
        self._base_url = (base_url if base_url is not None else config.accounts.base_url).rstrip("/")
        if not self._base_url:
            logger.warning("ACCOUNT_SERVICE_URL not set — account lookups will return nothing")
        self._client = http_client or httpx.Client(
            base_url=self._base_url,
            timeout=timeout or config.accounts.timeout,
        )

    @property
    def available(self) -> bool:
        return bool(self._base_url)

    def _request(self, method: str, path: str, auth_token: str = None, **kwargs) -> Optional[dict]:
        """
        Make an API request with backoff on 429 / timeouts.
        Returns parsed JSON or None on failure.
        """
        if not self.available:
            return None

        headers = kwargs.pop("headers", {})
        if auth_token:
            headers["Authorization"] = f"Bearer {auth_token}"

        backoff = 1
        for attempt in range(_MAX_RETRIES):
            try:
                resp = self._client.request(method, path, headers=headers, **kwargs)

                if resp.status_code == 429:
                    logger.warning(f"Account service 429 — backoff {backoff}s (attempt {attempt + 1})")
                    time.sleep(backoff)
                    backoff = min(backoff * 2, _MAX_BACKOFF)
                    continue

                if resp.status_code >= 400:
                    logger.error(f"Account service {method} {path} → {resp.status_code}: {resp.text[:200]}")
                    return None

                data = resp.json()
                return data if isinstance(data, dict) else None

            except httpx.TimeoutException:
                logger.error(f"Account service timeout: {method} {path} (attempt {attempt + 1})")
                time.sleep(backoff)
                backoff = min(backoff * 2, _MAX_BACKOFF)
            except (httpx.HTTPError, ValueError) as e:
                logger.error(f"Account service error: {method} {path} — {e}")
                return None

        logger.error(f"Account service exhausted retries: {method} {path}")
        return None

    # -------------------------------------------------------
    # Lookups
    # -------------------------------------------------------

    def get_user(self, auth_token: str = None) -> Optional[dict]:
        """
        Signed-in user profile: {username, user_id | uuid, email, subscription}.
        None when not signed in or unreachable.
        """
        data = self._request("GET", "/user", auth_token=auth_token)
        if not data or not data.get("username"):
            return None
        return {
            "username": data.get("username"),
            "user_id": _as_id(data.get("user_id") or data.get("uuid")),
            "email": data.get("email"),
            "subscription": data.get("subscription"),
        }

    def get_quota(self, auth_token: str = None) -> Optional[dict]:
        """Usage figures: {used, limit, storage_used, storage_limit}. None when unavailable."""
        data = self._request("GET", "/quota", auth_token=auth_token)
        if not data:
            return None
        quota = {}
        for key in ("used", "limit", "storage_used", "storage_limit"):
            value = data.get(key)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                quota[key] = int(value)
        return quota or None

    def close(self):
        self._client.close()
