from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import patch

from deepsearch.services.env_safety import sanitize_ssl_keylogfile


def test_sanitize_ssl_keylogfile_unsets_missing_directory(tmp_path: Path):
    target = tmp_path / "does-not-exist" / "keylog.log"
    with patch.dict(os.environ, {"SSLKEYLOGFILE": str(target)}, clear=False):
        sanitize_ssl_keylogfile()
        assert "SSLKEYLOGFILE" not in os.environ


def test_sanitize_ssl_keylogfile_unsets_unwritable_path(tmp_path: Path):
    with patch.dict(os.environ, {"SSLKEYLOGFILE": str(tmp_path / "keylog.log")}, clear=False):
        with patch("builtins.open", side_effect=PermissionError):
            sanitize_ssl_keylogfile()
        assert "SSLKEYLOGFILE" not in os.environ


def test_sanitize_ssl_keylogfile_keeps_usable_path(tmp_path: Path):
    target = str(tmp_path / "keylog.log")
    with patch.dict(os.environ, {"SSLKEYLOGFILE": target}, clear=False):
        sanitize_ssl_keylogfile()
        assert os.environ.get("SSLKEYLOGFILE") == target
