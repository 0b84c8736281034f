from __future__ import annotations

import pytest

from deepsearch.services.prompt_store import render_prompt


def test_render_prompt_substitutes_template_values():
    prompt = render_prompt(
        "turn.system_prompt",
        current_datetime="Tuesday, March 10, 2026 09:00 UTC",
    )
    assert "CURRENT DATE AND TIME: Tuesday, March 10, 2026 09:00 UTC" in prompt
    assert "[title](url)" in prompt
    assert "\n" in prompt


def test_render_prompt_requires_template_values():
    with pytest.raises(KeyError):
        render_prompt("turn.system_prompt")


def test_render_prompt_raises_for_unknown_key():
    with pytest.raises(KeyError):
        render_prompt("missing.prompt.key")
