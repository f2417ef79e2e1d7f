"""Operator alerts over the Telegram Bot API."""

import os
from typing import Optional

import httpx

from app.logging_config import SECRET_CONTEXT_KEYS, get_logger

logger = get_logger("alert_service")

ALERT_BOT_TOKEN = os.environ.get("ALERT_BOT_TOKEN")
ALERT_CHAT_ID = os.environ.get("ALERT_CHAT_ID")

LEVEL_MARKS = {"INFO": "ℹ️", "WARNING": "⚠️", "ERROR": "❌", "CRITICAL": "🔥"}


def format_alert(level: str, message: str, context: Optional[dict] = None) -> str:
    text = f"{LEVEL_MARKS.get(level, '📢')} *{level}*\n\n{message}"
    if context:
        lines = [
            f"  {key}: {'***' if key.lower() in SECRET_CONTEXT_KEYS else value}"
            for key, value in context.items()
            if value is not None
        ]
        if lines:
            text += "\n\n```\n" + "\n".join(lines) + "\n```"
    return text


def send_alert(level: str, message: str, context: Optional[dict] = None) -> bool:
    """Send alert to the operator chat.

    Args:
        level: INFO, WARNING, ERROR, CRITICAL
        message: Alert message
        context: Optional context dict (client, lead id, error)

    Returns:
        True if Telegram accepted the message
    """
    if not ALERT_BOT_TOKEN or not ALERT_CHAT_ID:
        logger.warning(f"Alert not configured: {level} - {message}")
        return False

    try:
        with httpx.Client(timeout=10) as client:
            response = client.post(
                f"https://api.telegram.org/bot{ALERT_BOT_TOKEN}/sendMessage",
                json={"chat_id": ALERT_CHAT_ID, "text": format_alert(level, message, context), "parse_mode": "Markdown"},
            )
            return response.status_code == 200
    except httpx.HTTPError as e:
        logger.error(f"Failed to send alert: {e}")
        return False


def alert_error(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("ERROR", message, context)


def alert_warning(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("WARNING", message, context)


def alert_escalation(client_id: str, lead_id: int, retry_count: int) -> bool:
    """A lead ran out of proof attempts and needs a human."""
    return alert_warning(
        "Lead escalated: no valid payment proof",
        {"client": client_id, "lead_id": lead_id, "retry_count": retry_count},
    )
