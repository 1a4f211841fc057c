"""Read-only SpareBank 1 client.

Access tokens come from a refresh-token grant. SB1 rotates refresh tokens, so
every new ``refresh_token`` in a token response is persisted in the
``bank_tokens`` table and used for the next grant. ``SB1_REFRESH_TOKEN`` only
seeds that table; changing it in the environment re-seeds it.
"""

import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import requests
from pydantic import BaseModel, Field

from habitlog.config import Settings
from habitlog.errors import UpstreamError, ValidationError
from habitlog.records import is_valid_date_string

log = logging.getLogger(__name__)

PROVIDER = "sb1"
ACCOUNTS_ACCEPT = "application/vnd.sparebank1.v5+json; charset=utf-8"
TRANSACTIONS_ACCEPT = "application/vnd.sparebank1.v1+json; charset=utf-8"
DEFAULT_ROW_LIMIT = 25
MAX_ROW_LIMIT = 200
DEFAULT_LOOKBACK_DAYS = 30
REQUEST_TIMEOUT = 15


def _utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


class BankAccount(BaseModel):
    key: str = ""
    accountNumber: str = ""
    name: str = ""
    balance: float | None = None
    availableBalance: float | None = None
    currencyCode: str = "NOK"
    type: str = ""


class AccountsOut(BaseModel):
    accounts: list[BankAccount]
    selected_account_key: str
    errors: list[Any] = Field(default_factory=list)


class BankTransaction(BaseModel):
    id: str = ""
    date: int | float | str | None = None
    text: str = ""
    amount: float | None = None
    currencyCode: str = "NOK"


class TransactionsOut(BaseModel):
    account_key: str
    from_date: str
    to_date: str
    row_limit: int
    transactions: list[BankTransaction]
    errors: list[Any] = Field(default_factory=list)


class TokenStore:
    """Persists the current refresh/access token pair in SQLite."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self._ready = False

    def _db(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure(self) -> None:
        if self._ready:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._db() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS bank_tokens (
                  provider TEXT PRIMARY KEY,
                  seed_token TEXT NOT NULL DEFAULT '',
                  refresh_token TEXT NOT NULL DEFAULT '',
                  access_token TEXT NOT NULL DEFAULT '',
                  expires_at TEXT NOT NULL DEFAULT '',
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  last_error TEXT NOT NULL DEFAULT ''
                )
                """
            )
            conn.commit()
        conn.close()
        self._ready = True

    def row(self) -> sqlite3.Row | None:
        self._ensure()
        with self._db() as conn:
            cur = conn.execute(
                "SELECT seed_token, refresh_token, access_token, expires_at, last_error FROM bank_tokens WHERE provider = ?",
                (PROVIDER,),
            )
            row = cur.fetchone()
        conn.close()
        return row

    def seed(self, refresh_token: str) -> None:
        """Start over from ``refresh_token`` (initial run or env token changed)."""
        self._ensure()
        now = _utc_now().isoformat()
        with self._db() as conn:
            conn.execute(
                """
                INSERT INTO bank_tokens (provider, seed_token, refresh_token, access_token, expires_at, created_at, updated_at)
                VALUES (?, ?, ?, '', '', ?, ?)
                ON CONFLICT(provider) DO UPDATE SET
                  seed_token=excluded.seed_token,
                  refresh_token=excluded.refresh_token,
                  access_token='',
                  expires_at='',
                  updated_at=excluded.updated_at,
                  last_error=''
                """,
                (PROVIDER, refresh_token, refresh_token, now, now),
            )
            conn.commit()
        conn.close()

    def save(self, token: dict[str, Any]) -> None:
        self._ensure()
        now = _utc_now()
        expires_in = int(token.get("expires_in") or 0)
        expires_at = (now + timedelta(seconds=max(0, expires_in - 30))).isoformat()
        with self._db() as conn:
            conn.execute(
                """
                UPDATE bank_tokens SET
                  access_token = ?,
                  refresh_token = CASE WHEN ? != '' THEN ? ELSE refresh_token END,
                  expires_at = ?,
                  updated_at = ?,
                  last_error = ''
                WHERE provider = ?
                """,
                (
                    token.get("access_token", "") or "",
                    token.get("refresh_token", "") or "",
                    token.get("refresh_token", "") or "",
                    expires_at,
                    now.isoformat(),
                    PROVIDER,
                ),
            )
            conn.commit()
        conn.close()

    def record_error(self, error: str) -> None:
        self._ensure()
        with self._db() as conn:
            conn.execute(
                "UPDATE bank_tokens SET last_error = ?, updated_at = ? WHERE provider = ?",
                (error[:500], _utc_now().isoformat(), PROVIDER),
            )
            conn.commit()
        conn.close()


def parse_row_limit(value: Any) -> int:
    try:
        parsed = int(str(value if value is not None else "").strip())
    except ValueError:
        return DEFAULT_ROW_LIMIT
    return max(1, min(parsed, MAX_ROW_LIMIT))


def _str(item: dict[str, Any], name: str, default: str = "") -> str:
    value = item.get(name)
    return value if isinstance(value, str) else default


def _number(item: dict[str, Any], name: str) -> float | None:
    value = item.get(name)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def normalize_accounts(payload: dict[str, Any], preferred_key: str, default_key: str) -> AccountsOut:
    raw = payload.get("accounts")
    accounts = [
        BankAccount(
            key=_str(a, "key"),
            accountNumber=_str(a, "accountNumber"),
            name=_str(a, "name"),
            balance=_number(a, "balance"),
            availableBalance=_number(a, "availableBalance"),
            currencyCode=_str(a, "currencyCode", "NOK"),
            type=_str(a, "type"),
        )
        for a in (raw if isinstance(raw, list) else [])
        if isinstance(a, dict)
    ]
    selected = preferred_key or default_key or (accounts[0].key if accounts else "")
    errors = payload.get("errors")
    return AccountsOut(accounts=accounts, selected_account_key=selected, errors=errors if isinstance(errors, list) else [])


def _first_of(item: dict[str, Any], names: tuple[str, ...], types: tuple[type, ...]) -> Any:
    for name in names:
        value = item.get(name)
        if isinstance(value, types) and not isinstance(value, bool):
            return value
    return None


def normalize_transactions(payload: dict[str, Any]) -> tuple[list[BankTransaction], list[Any]]:
    raw = payload.get("transactions")
    transactions = [
        BankTransaction(
            id=_str(t, "id"),
            date=_first_of(t, ("accountingDate", "date", "transactionDate"), (int, float, str)),
            text=_first_of(t, ("text", "description", "transactionText"), (str,)) or "",
            amount=_number(t, "amount"),
            currencyCode=_str(t, "currencyCode", "NOK"),
        )
        for t in (raw if isinstance(raw, list) else [])
        if isinstance(t, dict)
    ]
    errors = payload.get("errors")
    return transactions, errors if isinstance(errors, list) else []


def _error_message(resp: requests.Response, fallback: str) -> str:
    try:
        body = resp.json()
    except ValueError:
        return fallback
    if isinstance(body, dict):
        return body.get("error_description") or body.get("error") or fallback
    return fallback


class BankClient:
    def __init__(
        self,
        settings: Settings,
        token_store: TokenStore | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.settings = settings
        self.base_url = settings.sb1_api_base.rstrip("/")
        self.tokens = token_store or TokenStore(settings.db_path)
        self.session = session or requests.Session()

    def _require_config(self) -> None:
        if not self.settings.bank_configured:
            raise UpstreamError("Bank API is not configured on the server", status_code=503)

    def _current_refresh_token(self) -> str:
        seed = self.settings.sb1_refresh_token
        row = self.tokens.row()
        if row is None or row["seed_token"] != seed or not row["refresh_token"]:
            self.tokens.seed(seed)
            return seed
        return row["refresh_token"]

    def issue_access_token(self) -> str:
        """Run a refresh-token grant and persist the rotated refresh token."""
        self._require_config()
        refresh = self._current_refresh_token()
        try:
            resp = self.session.post(
                f"{self.base_url}/oauth/token",
                data={
                    "client_id": self.settings.sb1_client_id,
                    "client_secret": self.settings.sb1_client_secret,
                    "refresh_token": refresh,
                    "grant_type": "refresh_token",
                },
                timeout=REQUEST_TIMEOUT,
            )
        except requests.RequestException as exc:
            log.warning("SB1 token request failed: %s", exc)
            raise UpstreamError("Could not fetch bank token") from exc

        try:
            token = resp.json()
        except ValueError:
            token = {}
        access = token.get("access_token") if isinstance(token, dict) else None
        if not resp.ok or not isinstance(access, str) or not access:
            message = _error_message(resp, "Could not fetch bank token")
            self.tokens.record_error(f"{resp.status_code}: {message}")
            log.warning("SB1 token refresh failed %s: %s", resp.status_code, message)
            raise UpstreamError(message, status_code=resp.status_code if not resp.ok else 502)

        self.tokens.save(token)
        if token.get("refresh_token"):
            log.info("SB1 refresh token rotated")
        return access

    def access_token(self) -> str:
        self._require_config()
        row = self.tokens.row()
        if row is not None and row["seed_token"] == self.settings.sb1_refresh_token and row["access_token"]:
            try:
                if _utc_now() < datetime.fromisoformat(row["expires_at"]):
                    return row["access_token"]
            except ValueError:
                pass
        return self.issue_access_token()

    def _get_json(self, path: str, accept: str, params: dict[str, Any]) -> dict[str, Any]:
        token = self.access_token()
        query = {k: str(v) for k, v in params.items() if v not in (None, "")}
        try:
            resp = self.session.get(
                f"{self.base_url}{path}",
                headers={"Authorization": f"Bearer {token}", "Accept": accept, "Cache-Control": "no-store"},
                params=query,
                timeout=REQUEST_TIMEOUT,
            )
        except requests.RequestException as exc:
            log.warning("SB1 request %s failed: %s", path, exc)
            raise UpstreamError("Bank request failed") from exc
        if not resp.ok:
            message = _error_message(resp, "Bank request failed")
            log.warning("SB1 %s returned %s: %s", path, resp.status_code, message)
            raise UpstreamError(message, status_code=resp.status_code)
        try:
            body = resp.json()
        except ValueError as exc:
            raise UpstreamError("Bank returned an invalid response") from exc
        return body if isinstance(body, dict) else {}

    def fetch_accounts(self, preferred_key: str = "") -> AccountsOut:
        payload = self._get_json(
            "/personal/banking/accounts",
            ACCOUNTS_ACCEPT,
            {"includeNokAccounts": "true"},
        )
        return normalize_accounts(payload, preferred_key, self.settings.sb1_default_account_key)

    def fetch_transactions(
        self,
        account_key: str = "",
        from_date: str = "",
        to_date: str = "",
        row_limit: Any = None,
    ) -> TransactionsOut:
        effective_key = account_key or self.settings.sb1_default_account_key
        if not effective_key:
            raise ValidationError("Missing accountKey")
        today = _utc_now().date()
        effective_from = from_date if is_valid_date_string(from_date) else (today - timedelta(days=DEFAULT_LOOKBACK_DAYS)).isoformat()
        effective_to = to_date if is_valid_date_string(to_date) else today.isoformat()
        limit = parse_row_limit(row_limit)

        payload = self._get_json(
            "/personal/banking/transactions",
            TRANSACTIONS_ACCEPT,
            {
                "accountKey": effective_key,
                "fromDate": effective_from,
                "toDate": effective_to,
                "rowLimit": limit,
            },
        )
        transactions, errors = normalize_transactions(payload)
        return TransactionsOut(
            account_key=effective_key,
            from_date=effective_from,
            to_date=effective_to,
            row_limit=limit,
            transactions=transactions,
            errors=errors,
        )
