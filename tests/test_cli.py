import json

import pytest
from click.testing import CliRunner

from autoloop.cli import main as cli_main
from autoloop.core.config import API_KEY_ENV, load_config

from scripted import (
    CAUSAL, CODE_GEN, EVALUATION, RECOMMENDATIONS, REQUEST_GEN, REVISION, SIMULATION, TEST_GEN, UI_GEN,
    VIOLATIONS, ScriptedOracle, ui_tree
)

REQUEST_YAML = """\
title: Apply discount codes
description: Discounts at checkout
acceptance_criteria:
  - given: a cart of 100
    when: SAVE10 is applied
    then: the total is 90
"""

METAPROMPT_YAML = """\
objective: minimize_friction
business_objective: Raise checkout completion
target_persona: persona.yaml
fitness_function:
  principles:
    - principle: hicks_law
      weight: 1.0
      target_metric: decision_time_ms
      target_value: 2000
"""


@pytest.fixture
def scripted(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    oracle = ScriptedOracle()
    oracle.on(TEST_GEN, {"test_code": "def test_total():\n    assert total() == 90"})
    oracle.on(CODE_GEN, {"content": "def total():\n    return 90"})
    oracle.on(SIMULATION, {"passed": True})
    oracle.on(UI_GEN, ui_tree("root"))
    oracle.on(EVALUATION, {"score": 0.7})
    oracle.on(VIOLATIONS, {"violations": []})
    oracle.on(RECOMMENDATIONS, {"recommendations": []})
    oracle.on(REVISION, ui_tree("root"))
    oracle.on(CAUSAL, {"edges": [], "issues": []})
    oracle.on(REQUEST_GEN, {"title": "Fix drop-off", "acceptance_criteria": [
        {"given": "a shopper", "when": "they pay", "then": "it succeeds"}
    ]})
    config = load_config(str(tmp_path / "config.yaml"))
    config["retry"]["base_delay"] = 0.0
    monkeypatch.setattr(cli_main, "create_oracle", lambda config_path: (oracle, config))
    return oracle


def test_config_command_masks_key(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv(API_KEY_ENV, "sk-abcdefghijklmnop")

    result = CliRunner().invoke(cli_main.cli, ["config"])

    assert result.exit_code == 0
    assert "sk-abcde...mnop" in result.output
    assert "sk-abcdefghijklmnop" not in result.output


def test_workflow_command_writes_state(scripted, tmp_path):
    (tmp_path / "request.yaml").write_text(REQUEST_YAML)

    result = CliRunner().invoke(cli_main.cli, ["workflow", "request.yaml", "-o", "out/state.json"])

    assert result.exit_code == 0, result.output
    saved = json.loads((tmp_path / "out" / "state.json").read_text())
    assert saved['final_status'] == "success"
    assert saved['request']['title'] == "Apply discount codes"


def test_workflow_command_fails_on_failed_workflow(scripted, tmp_path):
    (tmp_path / "request.yaml").write_text("title: Nothing\nacceptance_criteria: []\n")

    result = CliRunner().invoke(cli_main.cli, ["workflow", "request.yaml"])

    assert result.exit_code == 1
    assert scripted.calls == []


def test_simulate_command_runs_the_loop(scripted, tmp_path):
    (tmp_path / "request.yaml").write_text(REQUEST_YAML)
    (tmp_path / "metaprompt.yaml").write_text(METAPROMPT_YAML)
    (tmp_path / "persona.yaml").write_text("name: Busy Shopper\n")

    result = CliRunner().invoke(cli_main.cli, [
        "simulate", "request.yaml", "metaprompt.yaml", "-n", "2", "--seed", "4", "-o", "loop.json"
    ])

    assert result.exit_code == 0, result.output
    saved = json.loads((tmp_path / "loop.json").read_text())
    assert saved['loop_iteration'] == 2
    assert saved['optimizer_state']['current_fitness_score'] == pytest.approx(0.7)
    persona_prompt = next(p for p in scripted.calls if UI_GEN in p)
    assert "Busy Shopper" in persona_prompt
