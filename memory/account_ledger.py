"""
Oracle — Account Ledger
Linked gateway accounts, persisted as one list under a single store key.

Invariant: after every mutation at most one account is active, and exactly
one whenever the ledger is non-empty.

Each mutation is a read-modify-write of the whole list, serialized by an
in-process lock. Account-service lookups happen outside the lock and are
best-effort: a failed lookup never blocks or corrupts the local record.
Store write failures propagate (StorageError).
"""
import json
import logging
import threading
from typing import List, Optional, Tuple

from config.settings import config
from memory.kv_store import KeyValueStore
from models.accounts import (
    LinkedAccount, TokenMetrics, new_account_id, token_metrics, token_status, utc_now,
)

logger = logging.getLogger("oracle.ledger")


def _external_id(user: Optional[dict]) -> Optional[str]:
    value = (user or {}).get("user_id")
    return str(value) if value not in (None, "") else None


def _restore_single_active(accounts: List[LinkedAccount]) -> bool:
    """Keep the first active flag, or activate the first record when none is set. True if anything changed."""
    changed = False
    seen_active = False
    for a in accounts:
        if a.is_active and not seen_active:
            seen_active = True
        elif a.is_active:
            a.is_active = False
            changed = True
    if accounts and not seen_active:
        accounts[0].is_active = True
        changed = True
    return changed


class AccountLedger:

    def __init__(self, store: KeyValueStore, client=None, key: str = None):
        """
        store:  persistence layer (KeyValueStore)
        client: AccountServiceClient, or None to skip profile/quota lookups
        """
        self.store = store
        self.client = client
        self.key = key or config.storage.accounts_key
        self._lock = threading.RLock()

    # -------------------------------------------------------
    # Persistence
    # -------------------------------------------------------

    def _load(self) -> List[LinkedAccount]:
        raw = self.store.get(self.key, [])
        if not isinstance(raw, list):
            logger.warning(f"Ledger key {self.key!r} does not hold a list — treating as empty")
            return []
        accounts = []
        for item in raw:
            try:
                accounts.append(LinkedAccount.from_dict(item))
            except (TypeError, AttributeError) as e:
                logger.warning(f"Skipping unreadable account record (non-fatal): {e}")
        if _restore_single_active(accounts):
            logger.warning(f"Ledger {self.key!r} had no single active account; restored (non-fatal)")
        return accounts

    def _save(self, accounts: List[LinkedAccount]):
        self.store.set(self.key, [a.to_dict() for a in accounts])

    # -------------------------------------------------------
    # Account service (best-effort)
    # -------------------------------------------------------

    def _fetch_remote(self, auth_token: str = None) -> Tuple[Optional[dict], Optional[dict]]:
        """(user, quota) from the account service; either may be None."""
        if self.client is None:
            return None, None
        user = quota = None
        try:
            user = self.client.get_user(auth_token)
        except Exception as e:
            logger.warning(f"Account service user lookup failed (non-fatal): {e}")
        try:
            quota = self.client.get_quota(auth_token)
        except Exception as e:
            logger.warning(f"Account service quota lookup failed (non-fatal): {e}")
        return user, quota

    @staticmethod
    def _merge_remote(account: LinkedAccount, user: Optional[dict], quota: Optional[dict]):
        """Fold fresh remote data into a record. Fields the service did not return keep their value."""
        user = user or {}
        if user.get("username"):
            account.display_name = user["username"]
        if _external_id(user):
            account.external_user_id = _external_id(user)
        if user.get("email"):
            account.email = user["email"]
        if user.get("subscription"):
            account.subscription = user["subscription"]

        if quota:
            # 0 is a real reading; only absent figures are skipped
            if quota.get("used") is not None:
                account.tokens_used = quota["used"]
            if quota.get("limit") is not None:
                account.tokens_limit = quota["limit"]
            account.quota = {**(account.quota or {}), **quota}

        now = utc_now()
        account.last_token_check = now
        account.updated_at = now

    # -------------------------------------------------------
    # Queries
    # -------------------------------------------------------

    def list(self) -> List[LinkedAccount]:
        """Display order: active first, then most recently added."""
        accounts = sorted(self._load(), key=lambda a: a.created_at or "", reverse=True)
        return sorted(accounts, key=lambda a: not a.is_active)

    def get(self, account_id: str) -> Optional[LinkedAccount]:
        return next((a for a in self._load() if a.id == account_id), None)

    def get_active(self) -> Optional[LinkedAccount]:
        return next((a for a in self._load() if a.is_active), None)

    def token_metrics(self, account: LinkedAccount) -> TokenMetrics:
        return token_metrics(account)

    def account_info(self, account_id: str = None) -> Optional[dict]:
        """
        Record + metrics merged for display.
        Without an id: the active account, else the first stored one.
        """
        accounts = self._load()
        if account_id:
            account = next((a for a in accounts if a.id == account_id), None)
        else:
            account = next((a for a in accounts if a.is_active), accounts[0] if accounts else None)
        if account is None:
            return None

        metrics = token_metrics(account)
        return {
            "id": account.id,
            "username": account.display_name,
            "user_id": account.external_user_id,
            "email": account.email,
            "tokens_used": metrics.used,
            "tokens_limit": metrics.limit,
            "tokens_remaining": metrics.remaining,
            "tokens_percentage": metrics.percentage,
            "status": token_status(metrics.percentage),
            "is_active": account.is_active,
            "created_at": account.created_at,
            "last_token_check": account.last_token_check,
            "quota": account.quota,
            "subscription": account.subscription,
        }

    # -------------------------------------------------------
    # Mutations
    # -------------------------------------------------------

    def add(self, display_name: str = None, external_user_id: str = None,
            auth_token: str = None) -> LinkedAccount:
        """Link a new account and make it the active one."""
        user, quota = self._fetch_remote(auth_token)
        return self._add(display_name, external_user_id, auth_token, user, quota)

    def _add(self, display_name, external_user_id, auth_token, user, quota) -> LinkedAccount:
        user = user or {}
        quota = quota or {}
        with self._lock:
            accounts = self._load()
            for a in accounts:
                a.is_active = False

            existing_ids = {a.id for a in accounts}
            account_id = new_account_id()
            while account_id in existing_ids:
                account_id = new_account_id()

            now = utc_now()
            account = LinkedAccount(
                id=account_id,
                display_name=display_name or user.get("username") or "Unknown User",
                external_user_id=str(external_user_id) if external_user_id else _external_id(user),
                is_active=True,
                tokens_used=quota["used"] if quota.get("used") is not None else 0,
                tokens_limit=(quota["limit"] if quota.get("limit") is not None
                              else config.accounts.default_tokens_limit),
                last_token_check=now,
                account_created_at=now,
                created_at=now,
                updated_at=now,
                email=user.get("email"),
                quota=dict(quota) or None,
                subscription=user.get("subscription") or "free",
                auth_token=auth_token,
            )
            accounts.append(account)
            self._save(accounts)

        logger.info(f"Account added: {account.display_name} ({account.id}) — now active")
        return account

    def set_active(self, account_id: str) -> bool:
        with self._lock:
            accounts = self._load()
            target = next((a for a in accounts if a.id == account_id), None)
            if target is None:
                logger.warning(f"set_active: unknown account {account_id}")
                return False
            for a in accounts:
                a.is_active = a is target
            target.updated_at = utc_now()
            self._save(accounts)
        logger.info(f"Account activated: {account_id}")
        return True

    def remove(self, account_id: str) -> bool:
        """Delete an account. If it was active, the first remaining one takes over."""
        with self._lock:
            accounts = self._load()
            target = next((a for a in accounts if a.id == account_id), None)
            if target is None:
                logger.warning(f"remove: unknown account {account_id}")
                return False
            remaining = [a for a in accounts if a is not target]
            if target.is_active and remaining:
                remaining[0].is_active = True
                remaining[0].updated_at = utc_now()
                logger.info(f"Promoted {remaining[0].id} to active")
            self._save(remaining)
        logger.info(f"Account removed: {account_id}")
        return True

    def refresh(self, account_id: str = None) -> Optional[LinkedAccount]:
        """
        Re-query profile + quota for an account (default: the active one) and
        merge the answer into the stored record.
        Returns None if the account is gone or the service could not be reached;
        the stored record is left untouched in that case.
        """
        account = self.get(account_id) if account_id else self.get_active()
        if account is None:
            return None

        user, quota = self._fetch_remote(account.auth_token)
        if user is None:
            logger.warning(f"refresh: account service unavailable for {account.id} — keeping last-known values")
            return None
        if quota is None:
            logger.warning(f"refresh: no quota data for {account.id} — token counters unchanged")

        with self._lock:
            accounts = self._load()
            stored = next((a for a in accounts if a.id == account.id), None)
            if stored is None:
                return None
            self._merge_remote(stored, user, quota)
            self._save(accounts)
        return stored

    def sync_active(self, auth_token: str = None) -> Optional[dict]:
        """
        Align the ledger with the currently signed-in gateway user.
        A different user than the active record's gets a new account.
        """
        user, quota = self._fetch_remote(auth_token)
        if user is None:
            logger.warning("sync_active: no signed-in user")
            return None

        active = self.get_active()
        if active is None or active.external_user_id != _external_id(user):
            active = self._add(user.get("username"), _external_id(user), auth_token, user, quota)

        with self._lock:
            accounts = self._load()
            stored = next((a for a in accounts if a.id == active.id), None)
            if stored is None:
                return None
            self._merge_remote(stored, user, quota)
            if auth_token:
                stored.auth_token = auth_token
            self._save(accounts)
        return self.account_info(active.id)

    def update_tokens(self, account_id: str, tokens_used: int, tokens_limit: int = None) -> bool:
        if tokens_used < 0 or (tokens_limit is not None and tokens_limit < 0):
            raise ValueError("token counters must be non-negative")
        with self._lock:
            accounts = self._load()
            target = next((a for a in accounts if a.id == account_id), None)
            if target is None:
                return False
            target.tokens_used = int(tokens_used)
            if tokens_limit is not None:
                target.tokens_limit = int(tokens_limit)
            now = utc_now()
            target.last_token_check = now
            target.updated_at = now
            self._save(accounts)
        return True

    def record_usage(self, tokens: int, account_id: str = None) -> bool:
        """Add tokens spent by a gateway call to an account (default: the active one)."""
        if tokens <= 0:
            return False
        with self._lock:
            accounts = self._load()
            if account_id:
                target = next((a for a in accounts if a.id == account_id), None)
            else:
                target = next((a for a in accounts if a.is_active), None)
            if target is None:
                return False
            target.tokens_used = (target.tokens_used or 0) + int(tokens)
            target.updated_at = utc_now()
            self._save(accounts)
        return True

    def clear(self):
        with self._lock:
            self.store.delete(self.key)
        logger.info("All linked accounts cleared")

    # -------------------------------------------------------
    # Backup
    # -------------------------------------------------------

    def export_json(self) -> str:
        return json.dumps([a.to_dict() for a in self._load()], indent=2, ensure_ascii=False)

    def import_json(self, text: str) -> bool:
        """Replace the ledger with a backup. Restores the single-active rule if the backup broke it."""
        try:
            raw = json.loads(text)
        except (json.JSONDecodeError, TypeError) as e:
            logger.error(f"Account import rejected: {e}")
            return False
        if not isinstance(raw, list):
            logger.error("Account import rejected: expected a JSON array")
            return False

        try:
            accounts = [LinkedAccount.from_dict(item) for item in raw]
        except (TypeError, AttributeError) as e:
            logger.error(f"Account import rejected: {e}")
            return False

        _restore_single_active(accounts)

        with self._lock:
            self._save(accounts)
        logger.info(f"Imported {len(accounts)} accounts")
        return True
