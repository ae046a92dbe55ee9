from __future__ import annotations

import os
from pathlib import Path

from loguru import logger


def sanitize_ssl_keylogfile() -> None:
    """Drop SSLKEYLOGFILE when it points somewhere we cannot write.

    httpx (directly and through the openai SDK) fails while building its SSL
    context if the key log path is unusable.
    """
    keylog_path = os.getenv("SSLKEYLOGFILE", "").strip()
    if not keylog_path:
        return

    path = Path(keylog_path)
    if not path.parent.exists():
        logger.warning(f"Ignoring SSLKEYLOGFILE, directory does not exist: {keylog_path}")
        os.environ.pop("SSLKEYLOGFILE", None)
        return

    try:
        # Append mode checks writability without truncating.
        with open(path, "a", encoding="utf-8"):
            pass
    except OSError as exc:
        logger.warning(f"Ignoring unwritable SSLKEYLOGFILE {keylog_path}: {exc}")
        os.environ.pop("SSLKEYLOGFILE", None)
