from __future__ import annotations

import json
import os

import pytest

from researchflow.services.prompt_store import PromptCatalog, get_prompt, render_prompt


def test_render_prompt_substitutes_template_values():
    prompt = render_prompt(
        "planner.user_prompt",
        query="Rust vs Go",
        complexity="moderate",
        guidance=get_prompt("planner.guidance.moderate"),
    )
    assert 'Research Query: "Rust vs Go"' in prompt
    assert "Complexity Level: moderate" in prompt
    assert "2-3 focused sub-questions" in prompt


def test_literal_json_braces_survive_rendering():
    prompt = render_prompt("search.system_prompt", context_block="")
    assert prompt.endswith("Focus on answering the exact question asked.")
    assert '"gaps"' in get_prompt("synthesis.system_prompt")


def test_render_prompt_raises_for_unknown_key():
    with pytest.raises(KeyError):
        render_prompt("missing.prompt.key")


def test_render_prompt_raises_for_missing_value():
    with pytest.raises(KeyError, match="query"):
        render_prompt("planner.user_prompt", complexity="simple", guidance="")


def test_non_string_node_rejected():
    with pytest.raises(TypeError):
        get_prompt("planner.guidance")


def test_catalog_reloads_when_file_changes(tmp_path):
    path = tmp_path / "prompts.json"
    path.write_text(json.dumps({"greeting": {"text": "Hello $name"}}), encoding="utf-8")
    catalog = PromptCatalog(path)
    assert catalog.render("greeting.text", name="Ada") == "Hello Ada"

    path.write_text(json.dumps({"greeting": {"text": "Hi $name"}}), encoding="utf-8")
    stat = path.stat()
    os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 1_000_000_000))
    assert catalog.render("greeting.text", name="Ada") == "Hi Ada"


def test_catalog_must_be_object(tmp_path):
    path = tmp_path / "prompts.json"
    path.write_text("[]", encoding="utf-8")
    with pytest.raises(ValueError):
        PromptCatalog(path).get("anything")
