from __future__ import annotations

import logging

from orderdesk.core.config import get_settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_configured = False


def configure_logging(level: str | None = None) -> None:
    global _configured
    if _configured:
        return
    settings = get_settings()
    logging.basicConfig(level=(level or settings.log_level).upper(), format=LOG_FORMAT)
    # httpx logs every request line at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    _configured = True


def mask_email(email: str | None) -> str:
    if not email:
        return "[hidden]"
    user, _, domain = email.partition("@")
    if not domain:
        return "[hidden]"
    masked_user = "**" if len(user) <= 2 else f"{user[0]}***{user[-1]}"
    return f"{masked_user}@{domain}"
