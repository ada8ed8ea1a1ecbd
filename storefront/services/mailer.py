"""
Transactional email through the Brevo REST API.
Only active when BREVO_API_KEY is configured.
Best-effort: failures are logged and reported as False, never raised.
"""
from __future__ import annotations

import base64
import logging
from typing import Any, Dict, List, Optional

import httpx

from storefront.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

_BREVO_URL = "https://api.brevo.com/v3/smtp/email"
_TIMEOUT = httpx.Timeout(20.0)


def _headers() -> Dict[str, str]:
    return {"api-key": settings.brevo_api_key or "", "accept": "application/json"}


def _is_configured() -> bool:
    return bool(settings.brevo_api_key)


async def send_email(
    to: str,
    subject: str,
    html: str,
    to_name: Optional[str] = None,
    attachments: Optional[List[Dict[str, str]]] = None,
) -> bool:
    """
    Send one email. *attachments* are {"name": ..., "content": <bytes or str>}.
    Returns True when Brevo accepted the message.
    """
    if not _is_configured():
        logger.warning("Brevo not configured – email to %s not sent (%s)", to, subject)
        return False

    recipient: Dict[str, Any] = {"email": to}
    if to_name:
        recipient["name"] = to_name

    payload: Dict[str, Any] = {
        "sender": {"name": settings.email_from_name, "email": settings.email_from},
        "to": [recipient],
        "subject": subject,
        "htmlContent": html,
    }
    if attachments:
        payload["attachment"] = [
            {"name": a["name"], "content": _b64(a["content"])} for a in attachments
        ]

    try:
        async with httpx.AsyncClient(timeout=_TIMEOUT) as client:
            resp = await client.post(_BREVO_URL, json=payload, headers=_headers())
    except httpx.HTTPError as exc:
        logger.error("Brevo request failed to=%s subject=%r: %s", to, subject, exc)
        return False

    if not resp.is_success:
        logger.error(
            "Brevo send failed to=%s status=%d body=%s",
            to, resp.status_code, resp.text[:300],
        )
        return False

    logger.info("Email sent to=%s subject=%r", to, subject)
    return True


def _b64(content: bytes | str) -> str:
    raw = content.encode() if isinstance(content, str) else content
    return base64.b64encode(raw).decode()
