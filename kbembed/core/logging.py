from __future__ import annotations

import logging

from kbembed.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Configure the root logger once; repeated app factories must not stack handlers.
    settings = get_settings()
    root = logging.getLogger()
    root.setLevel(settings.log_level.upper())
    if any(getattr(handler, "_kbembed", False) for handler in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    handler._kbembed = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    # httpx request lines can carry token-bearing query strings.
    logging.getLogger("httpx").setLevel(logging.WARNING)
