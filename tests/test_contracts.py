from __future__ import annotations

import json
import shlex
import subprocess

import allure
import pytest

from agent_team.errors import AgentUnavailableError, InvalidNameError
from agent_team.team import contracts
from agent_team.team.contracts import (
    CONTRACTS,
    SUPPORTED_AGENTS,
    AgentType,
    CliResolutionError,
    build_launch_args,
    build_worker_argv,
    build_worker_command,
    build_worker_env,
    get_contract,
    get_prompt_mode_args,
    is_cli_available,
    is_prompt_mode_agent,
    parse_cli_output,
    resolve_cli_binary_path,
    validate_cli_available,
    validate_team_name,
    validate_worker_name,
)

pytestmark = [
    allure.epic("Team Runtime"),
    allure.feature("Agent Contracts"),
]


@pytest.fixture(autouse=True)
def _clear_binary_cache():
    contracts.clear_resolved_path_cache()
    yield
    contracts.clear_resolved_path_cache()


def _fake_which(mapping: dict[str, str]):
    return lambda binary: mapping.get(binary)


def test_contract_table_covers_every_agent_type() -> None:
    assert set(CONTRACTS) == set(AgentType)
    assert SUPPORTED_AGENTS == ("claude", "codex", "gemini")
    for agent_type, contract in CONTRACTS.items():
        assert contract.agent_type is agent_type
        assert contract.binary == agent_type.value


def test_unknown_agent_type_is_rejected() -> None:
    with pytest.raises(ValueError, match="Unknown agent type: aider. Supported: claude, codex"):
        get_contract("aider")


def test_launch_args_include_model_and_extra_flags() -> None:
    assert build_launch_args("claude") == ["--dangerously-skip-permissions"]
    assert build_launch_args("claude", model="opus", extra_flags=["--verbose"]) == [
        "--dangerously-skip-permissions",
        "--model",
        "opus",
        "--verbose",
    ]
    assert build_launch_args("codex", model="o4") == [
        "--dangerously-bypass-approvals-and-sandbox",
        "--model",
        "o4",
    ]


def test_gemini_uses_default_model_when_none_given() -> None:
    assert build_launch_args("gemini") == ["--yolo", "--model", "gemini-2.5-pro"]
    assert build_launch_args("gemini", model="flash")[-1] == "flash"


def test_prompt_mode_support_per_agent() -> None:
    assert is_prompt_mode_agent("claude") is False
    assert is_prompt_mode_agent("codex") is True
    assert is_prompt_mode_agent("gemini") is True
    assert get_prompt_mode_args("claude", "do it") == []
    assert get_prompt_mode_args("codex", "do it") == ["do it"]
    assert get_prompt_mode_args("gemini", "do it") == ["-p", "do it"]


def test_codex_output_returns_last_assistant_message() -> None:
    raw = "\n".join(
        [
            json.dumps({"type": "message", "role": "assistant", "content": "first"}),
            "not json",
            json.dumps({"type": "message", "role": "assistant", "content": "final"}),
            json.dumps({"type": "message", "role": "user", "content": "ignored"}),
        ],
    )

    assert parse_cli_output("codex", raw) == "final"


def test_codex_output_falls_back_to_result_then_raw_text() -> None:
    assert parse_cli_output("codex", json.dumps({"type": "result", "output": "done"})) == "done"
    assert parse_cli_output("codex", "  plain text \n") == "plain text"


def test_other_agents_strip_output() -> None:
    assert parse_cli_output("claude", "\n answer \n") == "answer"
    assert parse_cli_output("gemini", "answer\n") == "answer"


def test_resolve_binary_rejects_shell_metacharacters() -> None:
    for name in ("cl;aude", "../claude", "claude code", "$(x)"):
        with pytest.raises(CliResolutionError, match="Invalid CLI binary name"):
            resolve_cli_binary_path(name)


def test_resolve_binary_rejects_untrusted_locations(monkeypatch) -> None:
    monkeypatch.setattr(contracts.shutil, "which", _fake_which({"claude": "/tmp/evil/claude"}))

    with pytest.raises(CliResolutionError, match="untrusted location"):
        resolve_cli_binary_path("claude")


def test_resolve_binary_missing_from_path(monkeypatch) -> None:
    monkeypatch.setattr(contracts.shutil, "which", _fake_which({}))

    with pytest.raises(CliResolutionError, match="not found in PATH"):
        resolve_cli_binary_path("claude")


def test_resolve_binary_warns_outside_trusted_prefixes(monkeypatch, caplog) -> None:
    monkeypatch.setattr(contracts.shutil, "which", _fake_which({"codex": "/srv/tools/codex"}))

    assert resolve_cli_binary_path("codex") == "/srv/tools/codex"
    assert "outside standard installation directories" in caplog.text


def test_resolve_binary_trusts_configured_dirs_and_caches(monkeypatch, caplog) -> None:
    calls: list[str] = []

    def _which(binary: str) -> str:
        calls.append(binary)
        return "/srv/tools/codex"

    monkeypatch.setattr(contracts.shutil, "which", _which)

    assert resolve_cli_binary_path("codex", trusted_dirs=["/srv/tools"]) == "/srv/tools/codex"
    assert resolve_cli_binary_path("codex", trusted_dirs=["/srv/tools"]) == "/srv/tools/codex"
    assert calls == ["codex"]
    assert "outside standard" not in caplog.text


def test_cli_availability_runs_version_check(monkeypatch) -> None:
    monkeypatch.setattr(contracts.shutil, "which", _fake_which({"claude": "/usr/bin/claude"}))
    seen: list[list[str]] = []

    def _run(args, **kwargs):
        seen.append(list(args))
        return subprocess.CompletedProcess(args, 0, b"1.0", b"")

    monkeypatch.setattr(contracts.subprocess, "run", _run)

    assert is_cli_available("claude") is True
    assert seen == [["/usr/bin/claude", "--version"]]


def test_cli_unavailable_on_timeout_or_failure(monkeypatch) -> None:
    monkeypatch.setattr(contracts.shutil, "which", _fake_which({"codex": "/usr/bin/codex"}))

    def _timeout(args, **kwargs):
        raise subprocess.TimeoutExpired(args, 5)

    monkeypatch.setattr(contracts.subprocess, "run", _timeout)
    assert is_cli_available("codex") is False

    monkeypatch.setattr(
        contracts.subprocess,
        "run",
        lambda args, **kwargs: subprocess.CompletedProcess(args, 1, b"", b"err"),
    )
    assert is_cli_available("codex") is False


def test_validate_cli_available_raises_with_install_hint(monkeypatch) -> None:
    monkeypatch.setattr(contracts.shutil, "which", _fake_which({}))

    with pytest.raises(AgentUnavailableError, match="npm install -g @google/gemini-cli") as info:
        validate_cli_available("gemini")

    assert info.value.agent_type == "gemini"
    assert info.value.binary == "gemini"


def test_build_worker_argv_uses_resolved_binary(monkeypatch) -> None:
    monkeypatch.setattr(contracts.shutil, "which", _fake_which({"codex": "/usr/bin/codex"}))

    assert build_worker_argv("codex", model="o4") == [
        "/usr/bin/codex",
        "--dangerously-bypass-approvals-and-sandbox",
        "--model",
        "o4",
    ]


def test_worker_env_carries_identity_and_path_only() -> None:
    env = build_worker_env(
        "alpha",
        "worker-1",
        "codex",
        base_env={"PATH": "/usr/bin", "SECRET": "x"},
    )

    assert env == {
        "OMC_TEAM_WORKER": "alpha/worker-1",
        "OMC_TEAM_NAME": "alpha",
        "OMC_WORKER_AGENT_TYPE": "codex",
        "PATH": "/usr/bin",
    }


def test_worker_command_is_shell_safe() -> None:
    command = build_worker_command(
        ["/usr/bin/codex", "fix the 'quoted' bug; rm -rf /"],
        {"OMC_TEAM_NAME": "alpha"},
    )

    assert shlex.split(command) == [
        "env",
        "OMC_TEAM_NAME=alpha",
        "/usr/bin/codex",
        "fix the 'quoted' bug; rm -rf /",
    ]
    assert build_worker_command(["claude"]) == "claude"


@pytest.mark.parametrize("name", ["ab", "team-1", "a" * 50])
def test_valid_team_names(name: str) -> None:
    validate_team_name(name)


@pytest.mark.parametrize("name", ["a", "-ab", "ab-", "Team", "a_b", "a" * 51, "../x"])
def test_invalid_team_names(name: str) -> None:
    with pytest.raises(InvalidNameError):
        validate_team_name(name)


def test_worker_names() -> None:
    validate_worker_name("worker-1")
    validate_worker_name("w")
    for bad in ("", "-w", "Worker", "w/1", "w" * 65):
        with pytest.raises(InvalidNameError):
            validate_worker_name(bad)


def test_invalid_name_error_is_a_value_error() -> None:
    with pytest.raises(ValueError):
        build_worker_env("x", "worker-1", "claude", base_env={})
