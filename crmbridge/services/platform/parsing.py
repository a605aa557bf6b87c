from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import re
from typing import Any


_SCOPE_SPLIT = re.compile(r"[,\s]+")


@dataclass(frozen=True)
class OAuthTokenGrant:
    access_token: str
    refresh_token: str | None
    expires_in: int | None
    scope: str
    user_type: str | None = None
    account_id: str | None = None
    sub_account_id: str | None = None

    @property
    def scopes(self) -> list[str]:
        return scope_list(self.scope)

    def expires_at(self, now: datetime) -> datetime | None:
        if self.expires_in is None:
            return None
        return now + timedelta(seconds=self.expires_in)


@dataclass(frozen=True)
class DiscoveredSubAccount:
    id: str
    name: str | None
    installed: bool


def scope_list(scope: str | None) -> list[str]:
    # Scopes arrive space-delimited, occasionally comma-delimited.
    return [item for item in _SCOPE_SPLIT.split(scope or "") if item]


def _clean_str(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = value.strip()
    return cleaned or None


def _coerce_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(float(value.strip()))
        except ValueError:
            return None
    return None


def parse_token_response(body: Any) -> OAuthTokenGrant:
    """Normalize token endpoint bodies; the mint endpoint may nest fields under ``data``."""
    if not isinstance(body, dict):
        raise ValueError("Token response is not a JSON object")
    source = body
    nested = body.get("data")
    if not _clean_str(body.get("access_token")) and isinstance(nested, dict):
        source = nested
    access_token = _clean_str(source.get("access_token"))
    if not access_token:
        raise ValueError("Token response missing access_token")
    refresh_token = _clean_str(source.get("refresh_token"))
    if refresh_token is None and source is not body:
        refresh_token = _clean_str(body.get("refresh_token"))
    return OAuthTokenGrant(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=_coerce_int(source.get("expires_in")),
        scope=_clean_str(source.get("scope")) or "",
        user_type=_clean_str(source.get("userType")),
        account_id=_clean_str(source.get("companyId")),
        sub_account_id=_clean_str(source.get("locationId")),
    )


def _listing_items(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, list):
        items = payload
    elif isinstance(payload, dict) and isinstance(payload.get("locations"), list):
        items = payload["locations"]
    else:
        return []
    return [item for item in items if isinstance(item, dict)]


def parse_sub_account_listing(payload: Any) -> list[DiscoveredSubAccount]:
    """Accept a bare array or ``{"locations": [...]}`` with ids under any known key."""
    discovered: list[DiscoveredSubAccount] = []
    seen: set[str] = set()
    for item in _listing_items(payload):
        sub_account_id = None
        for key in ("id", "locationId", "_id"):
            sub_account_id = _clean_str(item.get(key))
            if sub_account_id:
                break
        if not sub_account_id or sub_account_id in seen:
            continue
        seen.add(sub_account_id)
        discovered.append(
            DiscoveredSubAccount(
                id=sub_account_id,
                name=_clean_str(item.get("name")),
                installed=bool(item.get("isInstalled")),
            )
        )
    return discovered


def listing_page_length(payload: Any) -> int:
    # Raw item count drives pagination even when some items lack ids.
    return len(_listing_items(payload))
