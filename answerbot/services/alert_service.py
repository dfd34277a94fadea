"""Alert service for operator notifications via an incoming webhook."""

from typing import Optional

import httpx

from answerbot.config import settings
from answerbot.logging_config import get_logger

logger = get_logger("alert_service")

LEVEL_PREFIX = {"INFO": ":information_source:", "WARNING": ":warning:", "ERROR": ":x:", "CRITICAL": ":fire:"}


def format_alert(level: str, message: str, context: Optional[dict] = None) -> str:
    text = f"{LEVEL_PREFIX.get(level, ':loudspeaker:')} *{level}*\n\n{message}"
    if context:
        context_str = "\n".join(f"  {k}: {v}" for k, v in context.items())
        text += f"\n\n```\n{context_str}\n```"
    return text


async def send_alert(
    level: str,
    message: str,
    context: Optional[dict] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bool:
    """Post an alert to the configured webhook.

    Args:
        level: INFO, WARNING, ERROR, CRITICAL
        message: Alert message
        context: Optional context dict

    Returns:
        True if sent successfully
    """
    webhook_url = settings.alert_webhook_url
    if not webhook_url:
        logger.warning(f"Alert not configured: {level} - {message}")
        return False

    try:
        async with httpx.AsyncClient(timeout=10, transport=transport) as client:
            response = await client.post(webhook_url, json={"text": format_alert(level, message, context)})
            return response.status_code == 200
    except Exception as e:
        logger.error(f"Failed to send alert: {e}")
        return False


async def alert_critical(message: str, context: Optional[dict] = None) -> bool:
    """Shortcut for CRITICAL level alert."""
    return await send_alert("CRITICAL", message, context)
