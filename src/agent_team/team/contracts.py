"""Launch, environment and output-parsing contract per worker CLI type."""

from __future__ import annotations

import json
import logging
import os
import re
import shlex
import shutil
import subprocess
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from types import MappingProxyType

from agent_team.errors import AgentUnavailableError, InvalidNameError

logger = logging.getLogger(__name__)

TEAM_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]{0,48}[a-z0-9]$")
WORKER_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]{0,63}$")
_UNSAFE_BINARY_CHARS = re.compile(r"""[/\\;|&$`()"'\s]""")
_UNTRUSTED_PREFIXES = ("/tmp", "/var/tmp", "/dev/shm")
_VERSION_CHECK_TIMEOUT_SECONDS = 5.0
GEMINI_DEFAULT_MODEL = "gemini-2.5-pro"


class AgentType(str, Enum):
    """Supported worker CLI families."""

    CLAUDE = "claude"
    CODEX = "codex"
    GEMINI = "gemini"


class CliResolutionError(RuntimeError):
    """Binary name is unsafe, missing, or resolves to an untrusted location."""


@dataclass(slots=True, frozen=True)
class AgentContract:
    """One row of the contract table: how to launch and read one CLI family."""

    agent_type: AgentType
    binary: str
    install_hint: str
    launch_args: Callable[[str | None], list[str]]
    parse_output: Callable[[str], str]
    prompt_args: Callable[[str], list[str]] | None = None

    @property
    def supports_prompt_mode(self) -> bool:
        return self.prompt_args is not None

    def build_launch_args(
        self,
        model: str | None = None,
        extra_flags: Sequence[str] = (),
    ) -> list[str]:
        return [*self.launch_args(model), *extra_flags]


def _claude_args(model: str | None) -> list[str]:
    args = ["--dangerously-skip-permissions"]
    if model:
        args.extend(["--model", model])
    return args


def _codex_args(model: str | None) -> list[str]:
    args = ["--dangerously-bypass-approvals-and-sandbox"]
    if model:
        args.extend(["--model", model])
    return args


def _gemini_args(model: str | None) -> list[str]:
    return ["--yolo", "--model", model or GEMINI_DEFAULT_MODEL]


def _strip_output(raw: str) -> str:
    return raw.strip()


def _parse_codex_output(raw: str) -> str:
    """Return the last assistant message from codex JSONL output."""

    lines = [line for line in raw.strip().splitlines() if line.strip()]
    for line in reversed(lines):
        try:
            parsed = json.loads(line)
        except ValueError:
            continue
        if not isinstance(parsed, dict):
            continue
        if parsed.get("type") == "message" and parsed.get("role") == "assistant":
            content = parsed.get("content")
            return content if isinstance(content, str) else raw
        if parsed.get("type") == "result" or parsed.get("output"):
            value = parsed.get("output") or parsed.get("result")
            return value if isinstance(value, str) else raw
    return raw.strip()


CONTRACTS: Mapping[AgentType, AgentContract] = MappingProxyType(
    {
        AgentType.CLAUDE: AgentContract(
            agent_type=AgentType.CLAUDE,
            binary="claude",
            install_hint="Install Claude CLI: https://claude.ai/download",
            launch_args=_claude_args,
            parse_output=_strip_output,
        ),
        AgentType.CODEX: AgentContract(
            agent_type=AgentType.CODEX,
            binary="codex",
            install_hint="Install Codex CLI: npm install -g @openai/codex",
            launch_args=_codex_args,
            parse_output=_parse_codex_output,
            # codex takes the instruction as a trailing positional argument
            prompt_args=lambda instruction: [instruction],
        ),
        AgentType.GEMINI: AgentContract(
            agent_type=AgentType.GEMINI,
            binary="gemini",
            install_hint="Install Gemini CLI: npm install -g @google/gemini-cli",
            launch_args=_gemini_args,
            parse_output=_strip_output,
            prompt_args=lambda instruction: ["-p", instruction],
        ),
    },
)

SUPPORTED_AGENTS = tuple(agent.value for agent in AgentType)

_resolved_path_cache: dict[str, str] = {}


def get_contract(agent_type: str | AgentType) -> AgentContract:
    """Look up the contract row, failing loudly for unknown tags."""

    try:
        return CONTRACTS[AgentType(agent_type)]
    except ValueError as error:
        raise ValueError(
            f"Unknown agent type: {agent_type}. Supported: {', '.join(SUPPORTED_AGENTS)}",
        ) from error


def build_launch_args(
    agent_type: str | AgentType,
    *,
    model: str | None = None,
    extra_flags: Sequence[str] = (),
) -> list[str]:
    return get_contract(agent_type).build_launch_args(model, extra_flags)


def parse_cli_output(agent_type: str | AgentType, raw: str) -> str:
    return get_contract(agent_type).parse_output(raw)


def is_prompt_mode_agent(agent_type: str | AgentType) -> bool:
    return get_contract(agent_type).supports_prompt_mode


def get_prompt_mode_args(agent_type: str | AgentType, instruction: str) -> list[str]:
    """Arguments delivering ``instruction`` as a one-shot headless invocation.

    Interactive-only agents return an empty list; the caller must then type the
    instruction into the pane instead.
    """

    contract = get_contract(agent_type)
    if contract.prompt_args is None:
        return []
    return contract.prompt_args(instruction)


def resolve_cli_binary_path(binary: str, *, trusted_dirs: Sequence[str] = ()) -> str:
    """Resolve ``binary`` on PATH to an absolute path, rejecting unsafe locations."""

    cached = _resolved_path_cache.get(binary)
    if cached:
        return cached
    if _UNSAFE_BINARY_CHARS.search(binary):
        raise CliResolutionError(f'Invalid CLI binary name: "{binary}"')

    located = shutil.which(binary)
    if not located:
        raise CliResolutionError(f"CLI binary '{binary}' not found in PATH")
    resolved = os.path.normpath(located)
    if not os.path.isabs(resolved):
        raise CliResolutionError(
            f"CLI binary '{binary}' resolved to a relative path: {resolved!r}",
        )
    for prefix in _UNTRUSTED_PREFIXES:
        if resolved == prefix or resolved.startswith(prefix + "/"):
            raise CliResolutionError(
                f"CLI binary '{binary}' resolved to an untrusted location: {resolved!r}",
            )

    prefixes = trusted_prefixes(trusted_dirs)
    if not any(resolved.startswith(prefix) for prefix in prefixes):
        logger.warning(
            "CLI binary %r resolved to %r outside standard installation directories",
            binary,
            resolved,
        )
    _resolved_path_cache[binary] = resolved
    return resolved


def clear_resolved_path_cache() -> None:
    _resolved_path_cache.clear()


def trusted_prefixes(extra_dirs: Sequence[str] = ()) -> list[str]:
    prefixes = [
        "/usr/local/bin",
        "/usr/local/sbin",
        "/usr/bin",
        "/usr/sbin",
        "/bin",
        "/opt/",
        "/snap/",
        "/nix/",
        "/opt/homebrew/",
    ]
    home = str(Path.home())
    prefixes.extend(
        f"{home}/{suffix}"
        for suffix in (
            ".local/bin",
            ".npm-global/",
            ".nvm/",
            ".volta/",
            ".fnm/",
            ".cargo/bin",
            ".bun/bin",
            "n/bin",
        )
    )
    prefixes.extend(directory for directory in extra_dirs if os.path.isabs(directory))
    return prefixes


def is_cli_available(
    agent_type: str | AgentType,
    *,
    trusted_dirs: Sequence[str] = (),
) -> bool:
    """Run ``<binary> --version``; any resolution or launch failure means unavailable."""

    contract = get_contract(agent_type)
    try:
        resolved = resolve_cli_binary_path(contract.binary, trusted_dirs=trusted_dirs)
        completed = subprocess.run(  # noqa: S603
            [resolved, "--version"],
            capture_output=True,
            timeout=_VERSION_CHECK_TIMEOUT_SECONDS,
            check=False,
        )
    except (CliResolutionError, OSError, subprocess.SubprocessError) as error:
        logger.debug("Version check for %s failed: %s", contract.binary, error)
        return False
    return completed.returncode == 0


def validate_cli_available(
    agent_type: str | AgentType,
    *,
    trusted_dirs: Sequence[str] = (),
) -> None:
    contract = get_contract(agent_type)
    if not is_cli_available(contract.agent_type, trusted_dirs=trusted_dirs):
        raise AgentUnavailableError(
            contract.agent_type.value,
            contract.binary,
            contract.install_hint,
        )


def build_worker_argv(
    agent_type: str | AgentType,
    *,
    model: str | None = None,
    extra_flags: Sequence[str] = (),
    trusted_dirs: Sequence[str] = (),
) -> list[str]:
    contract = get_contract(agent_type)
    binary = resolve_cli_binary_path(contract.binary, trusted_dirs=trusted_dirs)
    return [binary, *contract.build_launch_args(model, extra_flags)]


def build_worker_command(argv: Sequence[str], env: Mapping[str, str] | None = None) -> str:
    """Render argv (with optional env assignments) as one shell-safe command line."""

    parts = [f"{key}={shlex.quote(value)}" for key, value in (env or {}).items()]
    if parts:
        parts.insert(0, "env")
    parts.extend(shlex.quote(arg) for arg in argv)
    return " ".join(parts)


def build_worker_env(
    team_name: str,
    worker_name: str,
    agent_type: str | AgentType,
    *,
    base_env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Identity variables for one worker; ``os.environ`` is never modified."""

    validate_team_name(team_name)
    validate_worker_name(worker_name)
    contract = get_contract(agent_type)
    source = os.environ if base_env is None else base_env
    env = {
        "OMC_TEAM_WORKER": f"{team_name}/{worker_name}",
        "OMC_TEAM_NAME": team_name,
        "OMC_WORKER_AGENT_TYPE": contract.agent_type.value,
    }
    for key in ("PATH", "Path"):
        if key in source:
            env[key] = source[key]
            break
    return env


def validate_team_name(team_name: str) -> None:
    if not TEAM_NAME_PATTERN.match(team_name):
        raise InvalidNameError(
            f"Invalid team name: {team_name!r}. "
            "Use 2-50 lowercase letters, digits or hyphens, starting and ending alphanumeric.",
        )


def validate_worker_name(worker_name: str) -> None:
    if not WORKER_NAME_PATTERN.match(worker_name):
        raise InvalidNameError(f"Invalid worker name: {worker_name!r}")
