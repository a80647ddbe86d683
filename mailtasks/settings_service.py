"""
User-facing settings operations: mailbox connection, scan settings,
scan status, and briefing preferences.

Every update is validated here before it reaches the store.
"""

import base64
import binascii
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, ValidationError

from .credentials import CredentialStore
from .daily_runner import load_preference
from .errors import NotFoundError, ValidationFailed
from .mailbox import MailboxAdapter
from .models import BriefingPreference, EmailProvider, ScanConfig, ScanLog
from .scan_engine import (
    DEFAULT_CONFIDENCE_THRESHOLD,
    MAX_INTERVAL_HOURS,
    MIN_INTERVAL_HOURS,
    parse_hhmm,
)
from .storage import Store

logger = logging.getLogger(__name__)

SCAN_SETTINGS_FIELDS = (
    "scan_interval_hours",
    "quiet_hours_start",
    "quiet_hours_end",
    "weekend_scan",
    "confidence_threshold",
    "enabled",
)

BRIEFING_PREFERENCE_FIELDS = (
    "delivery_time",
    "timezone",
    "enabled",
    "include_email",
    "filters",
)


class ScanStatusReport(BaseModel):
    connected: bool = False
    provider: Optional[EmailProvider] = None
    email: Optional[str] = None
    last_scan_at: Optional[datetime] = None
    enabled: bool = False
    config_id: Optional[str] = None
    logs: List[ScanLog] = Field(default_factory=list)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


# ---------------------------------------------------------------------------
# OAuth connection
# ---------------------------------------------------------------------------


def encode_oauth_state(workspace_id: str, user_id: str) -> str:
    payload = json.dumps({"user_id": user_id, "workspace_id": workspace_id})
    return base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii").rstrip("=")


def decode_oauth_state(state: str) -> Dict[str, str]:
    """Inverse of encode_oauth_state. Raises ValidationFailed on garbage."""
    try:
        padded = state + "=" * (-len(state) % 4)
        data = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise ValidationFailed("Invalid state") from e
    if (
        not isinstance(data, dict)
        or not isinstance(data.get("user_id"), str)
        or not isinstance(data.get("workspace_id"), str)
    ):
        raise ValidationFailed("Invalid state")
    return data


def authorization_url(adapter: MailboxAdapter, workspace_id: str, user_id: str) -> str:
    return adapter.authorization_url(encode_oauth_state(workspace_id, user_id))


def connect_mailbox(
    store: Store,
    credentials: CredentialStore,
    adapter: MailboxAdapter,
    code: str,
    state: str,
    user_id: str,
) -> ScanConfig:
    """
    Finish the OAuth callback: exchange the code, encrypt both tokens, and
    upsert the scan config for (workspace, user, provider) with default
    scan settings.

    Raises:
        ValidationFailed: bad or mismatched state.
        MailboxError: the provider rejected the code.
        CryptoError: no refresh token was issued.
    """
    if not code or not state:
        raise ValidationFailed("Missing code or state")
    decoded = decode_oauth_state(state)
    if decoded["user_id"] != user_id:
        raise ValidationFailed("State mismatch")

    tokens = adapter.exchange_code(code)
    sealed = credentials.seal(tokens)

    config = store.upsert_scan_config(
        ScanConfig(
            workspace_id=decoded["workspace_id"],
            user_id=user_id,
            provider=adapter.provider,
            enabled=True,
            scan_interval_hours=3,
            confidence_threshold=DEFAULT_CONFIDENCE_THRESHOLD,
            weekend_scan=False,
            encrypted_access_token=sealed.encrypted_access_token,
            encrypted_refresh_token=sealed.encrypted_refresh_token,
            email_address=tokens.email_address,
        )
    )
    logger.info(
        "Connected %s mailbox for user %s in workspace %s (config %s).",
        adapter.provider.value,
        user_id,
        config.workspace_id,
        config.id,
    )
    return config


def disconnect_mailbox(
    store: Store,
    workspace_id: str,
    user_id: str,
    provider: EmailProvider,
) -> bool:
    """Delete the scan config. Returns False if nothing was connected."""
    config = store.find_scan_config(workspace_id, user_id, provider)
    if config is None:
        return False
    store.delete_scan_config(config.id)
    logger.info("Disconnected %s mailbox for user %s.", EmailProvider(provider).value, user_id)
    return True


# ---------------------------------------------------------------------------
# Scan settings & status
# ---------------------------------------------------------------------------


def validate_scan_settings(updates: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Keep only the user-editable fields and check their ranges.

    Unknown keys are dropped silently.
    """
    threshold = updates.get("confidence_threshold")
    if threshold is not None and (not _is_number(threshold) or not 0 <= threshold <= 1):
        raise ValidationFailed("confidence_threshold must be between 0 and 1")

    interval = updates.get("scan_interval_hours")
    if interval is not None and (
        not _is_number(interval) or not MIN_INTERVAL_HOURS <= interval <= MAX_INTERVAL_HOURS
    ):
        raise ValidationFailed(
            f"scan_interval_hours must be between {MIN_INTERVAL_HOURS} and {MAX_INTERVAL_HOURS}"
        )
    if interval is not None and interval != int(interval):
        raise ValidationFailed("scan_interval_hours must be a whole number")

    for key in ("quiet_hours_start", "quiet_hours_end"):
        value = updates.get(key)
        if value is not None and (not isinstance(value, str) or parse_hhmm(value) is None):
            raise ValidationFailed(f"{key} must be HH:MM")

    for key in ("weekend_scan", "enabled"):
        value = updates.get(key)
        if value is not None and not isinstance(value, bool):
            raise ValidationFailed(f"{key} must be true or false")

    # Quiet hours may be cleared with an explicit None; the rest may not
    sanitized = {
        k: updates[k]
        for k in SCAN_SETTINGS_FIELDS
        if k in updates and (updates[k] is not None or k.startswith("quiet_hours_"))
    }
    if "scan_interval_hours" in sanitized:
        sanitized["scan_interval_hours"] = int(sanitized["scan_interval_hours"])
    return sanitized


def update_scan_settings(
    store: Store,
    workspace_id: str,
    user_id: str,
    updates: Mapping[str, Any],
    provider: Optional[EmailProvider] = None,
) -> ScanConfig:
    config = store.find_scan_config(workspace_id, user_id, provider)
    if config is None:
        raise NotFoundError("No email scan config for this user")

    sanitized = validate_scan_settings(updates)
    if not sanitized:
        return config
    return store.update_scan_config(config.id, **sanitized)


def get_scan_status(
    store: Store,
    workspace_id: str,
    user_id: str,
    log_limit: int = 10,
) -> ScanStatusReport:
    config = store.find_scan_config(workspace_id, user_id)
    if config is None:
        return ScanStatusReport()
    return ScanStatusReport(
        connected=True,
        provider=config.provider,
        email=config.email_address,
        last_scan_at=config.last_scan_at,
        enabled=config.enabled,
        config_id=config.id,
        logs=store.list_scan_logs(config.id, limit=log_limit),
    )


# ---------------------------------------------------------------------------
# Briefing preferences
# ---------------------------------------------------------------------------


def get_briefing_preferences(store: Store, workspace_id: str, user_id: str) -> BriefingPreference:
    return load_preference(store, workspace_id, user_id)


def update_briefing_preferences(
    store: Store,
    workspace_id: str,
    user_id: str,
    updates: Mapping[str, Any],
) -> BriefingPreference:
    """
    Merge `updates` onto the current (or default) preference and upsert it.

    Raises:
        ValidationFailed: malformed delivery_time, unknown timezone, or
            values of the wrong type.
    """
    current = load_preference(store, workspace_id, user_id)

    delivery_time = updates.get("delivery_time")
    if delivery_time is not None and (
        not isinstance(delivery_time, str) or parse_hhmm(delivery_time) is None
    ):
        raise ValidationFailed("delivery_time must be HH:MM")

    tz_name = updates.get("timezone")
    if tz_name is not None:
        try:
            ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError, TypeError) as e:
            raise ValidationFailed(f"Unknown timezone: {tz_name!r}") from e

    for key in ("enabled", "include_email"):
        value = updates.get(key)
        if value is not None and not isinstance(value, bool):
            raise ValidationFailed(f"{key} must be true or false")

    data = current.model_dump()
    data.update({k: updates[k] for k in BRIEFING_PREFERENCE_FIELDS if updates.get(k) is not None})
    try:
        preference = BriefingPreference.model_validate(data)
    except ValidationError as e:
        raise ValidationFailed(f"Invalid briefing preferences: {e}") from e

    return store.upsert_briefing_preference(preference)
