"""
Telegram notification service for events that need an operator.
"""
from __future__ import annotations

import logging

import httpx
from django.conf import settings

logger = logging.getLogger(__name__)

E_ERROR = "\U0001F6A8"
E_WARN = "⚠️"


def _env_label() -> str:
    label = str(getattr(settings, "AUTOPILOT_ENV_LABEL", "") or "").strip()
    if label:
        return label
    sandbox = bool(getattr(settings, "BINANCE_TESTNET", True))
    return "BINANCE DEMO" if sandbox else "BINANCE LIVE"


def send_telegram(message: str, parse_mode: str | None = "HTML") -> bool:
    """Send a Telegram message. Returns True if successful."""
    if not getattr(settings, "TELEGRAM_ENABLED", False):
        return False
    token = getattr(settings, "TELEGRAM_BOT_TOKEN", "")
    chat_id = getattr(settings, "TELEGRAM_CHAT_ID", "")
    if not token or not chat_id:
        logger.debug("Telegram not configured (missing token or chat_id)")
        return False

    url = f"https://api.telegram.org/bot{token}/sendMessage"
    timeout = float(getattr(settings, "TELEGRAM_TIMEOUT_SECONDS", 10))
    try:
        payload = {"chat_id": chat_id, "text": message}
        if parse_mode:
            payload["parse_mode"] = parse_mode
        resp = httpx.post(url, json=payload, timeout=timeout)
        if resp.status_code == 200:
            return True

        # Telegram rejects malformed HTML entities; resend as plain text.
        if parse_mode and resp.status_code == 400 and "can't parse entities" in resp.text.lower():
            logger.warning("Telegram parse error with parse_mode=%s; retrying as plain text", parse_mode)
            fallback = httpx.post(url, json={"chat_id": chat_id, "text": message}, timeout=timeout)
            if fallback.status_code == 200:
                return True
            logger.warning("Telegram API error %s after fallback: %s", fallback.status_code, fallback.text[:200])
            return False

        logger.warning("Telegram API error %s: %s", resp.status_code, resp.text[:200])
        return False
    except httpx.HTTPError as exc:
        logger.warning("Telegram send failed: %s", exc)
        return False


def notify_error(context: str, error: str = "") -> bool:
    """Alert: system error."""
    msg = f"{E_ERROR} <b>ERROR</b>\n<b>Context:</b> {context}"
    if error:
        msg += f"\n<b>Error:</b> {error[:500]}"
    msg += f"\n<b>Env:</b> {_env_label()}"
    return send_telegram(msg)


def notify_manual_attention(subject: str, details: dict | None = None) -> bool:
    """Alert: a bracket or order needs a human to look at the exchange."""
    msg = f"{E_WARN} <b>MANUAL ATTENTION</b>\n<b>{subject}</b>"
    for key, value in sorted((details or {}).items()):
        msg += f"\n<b>{key}:</b> {value}"
    msg += f"\n<b>Env:</b> {_env_label()}"
    return send_telegram(msg)
