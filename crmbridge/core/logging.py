from __future__ import annotations

import logging

from crmbridge.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging() -> None:
    # Configure root logging once per process; uvicorn and arq reuse the same handlers.
    global _configured
    if _configured:
        return
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=_LOG_FORMAT)
    # Keep outbound HTTP client chatter out of INFO logs; tokens travel in query strings.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
    _configured = True
