from __future__ import annotations

import os
from pathlib import Path

_KEYLOG_VAR = "SSLKEYLOGFILE"


def sanitize_ssl_keylogfile() -> None:
    """Drop SSLKEYLOGFILE when it points somewhere we cannot write.

    httpx and the openai SDK build their SSL context eagerly; an unusable
    key-log path set globally for TLS debugging makes every outbound call
    (model, search, crawl) fail before a socket is opened.
    """
    keylog_path = os.getenv(_KEYLOG_VAR, "").strip()
    if not keylog_path:
        return

    try:
        parent = Path(keylog_path).parent
        if parent and not parent.exists():
            os.environ.pop(_KEYLOG_VAR, None)
            return

        with open(keylog_path, "a", encoding="utf-8"):
            pass
    except OSError:
        os.environ.pop(_KEYLOG_VAR, None)
