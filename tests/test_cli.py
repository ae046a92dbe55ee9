"""Tests for the command line entry point."""
import sys
from unittest.mock import patch

import pytest

from conftest import FakeProviders, synthesis_text
from researchflow import cli
from researchflow.agents.orchestrator import ResearchOrchestrator
from researchflow.models.schemas import ResearchOptions


def _orchestrator_factory(providers, settings, store, retry):
    def build():
        return ResearchOrchestrator(providers, settings=settings, session_store=store, retry_policy=retry)

    return build


@pytest.mark.asyncio
async def test_run_research_prints_answer(test_settings, store, fast_retry, capsys):
    providers = FakeProviders(
        answers={"sq-1": ["https://python.org/history"]},
        syntheses=[synthesis_text("Python dates from 1991 [1].")],
    )
    factory = _orchestrator_factory(providers, test_settings, store, fast_retry)

    with patch("researchflow.cli.ResearchOrchestrator", side_effect=factory):
        code = await cli.run_research("What is Python?", ResearchOptions(skip_round2=True))

    out = capsys.readouterr().out
    assert code == 0
    assert "Research Complete!" in out
    assert "Python dates from 1991 [1]." in out
    assert "https://python.org/history" in out


@pytest.mark.asyncio
async def test_run_research_reports_failure(test_settings, store, fast_retry, capsys):
    providers = FakeProviders(answers={"sq-1": ValueError("empty answer")})
    factory = _orchestrator_factory(providers, test_settings, store, fast_retry)

    with patch("researchflow.cli.ResearchOrchestrator", side_effect=factory):
        code = await cli.run_research("What is Python?", ResearchOptions(skip_round2=True))

    assert code == 1
    assert "[!] Error" in capsys.readouterr().out


def test_rejects_non_positive_max_cost(capsys):
    with patch.object(sys, "argv", ["researchflow", "-q", "anything", "--max-cost", "0"]):
        with pytest.raises(SystemExit) as exc_info:
            cli.main()
    assert exc_info.value.code == 2
    assert "--max-cost must be positive" in capsys.readouterr().err
