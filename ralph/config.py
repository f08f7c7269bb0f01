"""Configuration for ralph.

Two sources:

- ``agent.yaml``: which agents to run, rotation policy and git workflow.
  Parsed with PyYAML into the dataclasses below; every field has a default so
  a missing file means "auto-detect an agent, no rotation, no push".
- Environment variables: runtime settings (iteration budget, timeout, paths)
  via RuntimeSettings.from_env().

Example agent.yaml::

    agent:
      primary: claude-code
      fallback: codex
    rotation:
      enabled: true
      failure-threshold: 3
      rate-limit-cooldown: 3600
      strategy: sequential
    agent-rotation: [claude-code, codex, gemini]
    git:
      auto-checkout-branch: true
      base-branch: main
      push: {enabled: true, timing: iteration}
      pr: {enabled: true, draft: false, auto-merge: false}
    claude-code:
      models: [claude-sonnet-4-20250514, claude-opus-4-20250514]
    codex:
      model: gpt-4o
      approval-mode: full-auto
"""

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from ralph.agents import (
    AGENT_KINDS,
    AgentDescriptor,
    CodexAgent,
    detect_available_agent,
    get_agent_kind,
)
from ralph.errors import ConfigurationError, MalformedInput
from ralph.rotation import SUPPORTED_STRATEGIES, RotationSettings

logger = logging.getLogger(__name__)

AUTO_AGENT = "auto"
PUSH_TIMINGS = ("iteration", "end")


@dataclass
class AgentSelection:
    primary: str = AUTO_AGENT
    fallback: str | None = None


@dataclass
class PushSettings:
    enabled: bool = False
    timing: str = "iteration"


@dataclass
class PrSettings:
    enabled: bool = False
    draft: bool = False
    auto_merge: bool = False


@dataclass
class GitSettings:
    auto_checkout_branch: bool = True
    base_branch: str = "main"
    push: PushSettings = field(default_factory=PushSettings)
    pr: PrSettings = field(default_factory=PrSettings)


@dataclass
class RalphConfig:
    """Agent, rotation and git configuration from agent.yaml.

    Attributes:
        agent: Primary and fallback agent names
        rotation: Rotation thresholds
        agent_rotation: Rotation order of agent names (empty: primary, fallback)
        git: Branch, push and PR settings
        agent_sections: Raw per-agent sections keyed by agent name
    """

    agent: AgentSelection = field(default_factory=AgentSelection)
    rotation: RotationSettings = field(default_factory=RotationSettings)
    agent_rotation: list[str] = field(default_factory=list)
    git: GitSettings = field(default_factory=GitSettings)
    agent_sections: dict[str, dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def load(cls, path: Path) -> "RalphConfig":
        """Load agent.yaml, falling back to defaults when it does not exist.

        Raises:
            ConfigurationError: If the file is malformed or has invalid values
        """
        if not path.exists():
            logger.info("No agent config at %s, using defaults", path)
            return cls()

        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise MalformedInput(
                f"Invalid YAML in {path}: {e}",
                error_code="CONFIG-InvalidYaml",
                details={"path": str(path)},
            ) from e

        if data is None:
            logger.warning("Empty agent config: %s", path)
            data = {}
        return cls.from_dict(data, source=str(path))

    @classmethod
    def from_dict(cls, data: Any, source: str = "<config>") -> "RalphConfig":
        if not isinstance(data, dict):
            raise MalformedInput(
                f"Agent config must be a mapping: {source}",
                error_code="CONFIG-NotAMapping",
            )

        agent_data = _section(data, "agent")
        agent = AgentSelection(
            primary=str(agent_data.get("primary") or AUTO_AGENT),
            fallback=agent_data.get("fallback") or None,
        )

        rotation_data = _section(data, "rotation")
        rotation = RotationSettings(
            enabled=_bool(rotation_data, "enabled", False),
            failure_threshold=_int(rotation_data, "failure-threshold", 3),
            cooldown_seconds=_int(rotation_data, "rate-limit-cooldown", 3600),
            strategy=str(rotation_data.get("strategy", "sequential")),
        )

        order = data.get("agent-rotation") or []
        if not isinstance(order, list):
            raise MalformedInput("'agent-rotation' must be a list", error_code="CONFIG-InvalidRotation")

        git_data = _section(data, "git")
        push_data = _section(git_data, "push")
        pr_data = _section(git_data, "pr")
        git = GitSettings(
            auto_checkout_branch=_bool(git_data, "auto-checkout-branch", True),
            base_branch=str(git_data.get("base-branch") or "main"),
            push=PushSettings(
                enabled=_bool(push_data, "enabled", False),
                timing=str(push_data.get("timing") or "iteration"),
            ),
            pr=PrSettings(
                enabled=_bool(pr_data, "enabled", False),
                draft=_bool(pr_data, "draft", False),
                auto_merge=_bool(pr_data, "auto-merge", False),
            ),
        )

        sections = {name: _section(data, name) for name in AGENT_KINDS if name in data}

        config = cls(
            agent=agent,
            rotation=rotation,
            agent_rotation=[str(name) for name in order],
            git=git,
            agent_sections=sections,
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Check values that would otherwise fail deep inside the loop."""
        if self.agent.primary != AUTO_AGENT:
            get_agent_kind(self.agent.primary)
        if self.agent.fallback:
            get_agent_kind(self.agent.fallback)
        for name in self.agent_rotation:
            get_agent_kind(name)

        if self.rotation.strategy not in SUPPORTED_STRATEGIES:
            raise ConfigurationError(
                f"Unsupported rotation strategy: {self.rotation.strategy}",
                error_code="CONFIG-InvalidStrategy",
                suggestion=f"Use one of: {', '.join(SUPPORTED_STRATEGIES)}",
            )
        if self.rotation.failure_threshold < 1:
            raise ConfigurationError(
                "rotation.failure-threshold must be at least 1",
                error_code="CONFIG-InvalidThreshold",
            )
        if self.rotation.cooldown_seconds < 0:
            raise ConfigurationError(
                "rotation.rate-limit-cooldown must not be negative",
                error_code="CONFIG-InvalidCooldown",
            )
        if self.git.push.timing not in PUSH_TIMINGS:
            raise ConfigurationError(
                f"Unsupported git.push.timing: {self.git.push.timing}",
                error_code="CONFIG-InvalidPushTiming",
                suggestion=f"Use one of: {', '.join(PUSH_TIMINGS)}",
            )

        codex = self.agent_sections.get(CodexAgent.name, {})
        if codex.get("approval-mode", "full-auto") not in CodexAgent.APPROVAL_MODES:
            raise ConfigurationError(
                f"Unsupported codex.approval-mode: {codex['approval-mode']}",
                error_code="CONFIG-InvalidApprovalMode",
            )
        if codex.get("sandbox", "full-access") not in CodexAgent.SANDBOX_MODES:
            raise ConfigurationError(
                f"Unsupported codex.sandbox: {codex['sandbox']}",
                error_code="CONFIG-InvalidSandbox",
            )

    def descriptor(self, name: str, instructions_dir: Path | None = None) -> AgentDescriptor:
        """Build the descriptor for agent ``name`` from its config section."""
        kind = get_agent_kind(name)
        section = self.agent_sections.get(name, {})

        models = section.get("models")
        if models:
            if not isinstance(models, list):
                raise MalformedInput(f"{name}.models must be a list", error_code="CONFIG-InvalidModels")
            model_list = tuple(str(m) for m in models)
        else:
            model_list = (str(section.get("model") or kind.default_model),)

        instructions = None
        if instructions_dir is not None:
            candidate = instructions_dir / kind.instructions_name
            if candidate.is_file():
                instructions = candidate

        options = {k: v for k, v in section.items() if k not in ("model", "models", "skip-permissions")}
        return AgentDescriptor(
            name=name,
            models=model_list,
            skip_permissions=_bool(section, "skip-permissions", True),
            options=options,
            instructions_file=instructions,
        )

    def resolve_primary(self, detect: Callable[[], str | None] = detect_available_agent) -> str:
        """Name of the agent to run first.

        ``auto`` (or a configured agent that is not installed) falls back to
        the first installed CLI.

        Raises:
            ConfigurationError: If no agent CLI is installed
        """
        primary = self.agent.primary
        if primary != AUTO_AGENT:
            if get_agent_kind(primary).is_installed():
                return primary
            logger.warning("Configured agent '%s' not available, auto-detecting", primary)

        detected = detect()
        if detected is None:
            raise ConfigurationError(
                "No AI agent found",
                error_code="CONFIG-NoAgent",
                suggestion="Install one of: copilot, claude, gemini, codex",
            )
        return detected

    def rotation_order(self, primary: str) -> list[str]:
        """Agent names in rotation order, starting from ``primary``."""
        order = list(self.agent_rotation) or [primary]
        if primary in order:
            # Start the cycle at the primary while keeping the configured order
            index = order.index(primary)
            order = order[index:] + order[:index]
        else:
            order.insert(0, primary)
        if not self.agent_rotation and self.agent.fallback and self.agent.fallback != primary:
            order.append(self.agent.fallback)
        return order


@dataclass
class RuntimeSettings:
    """Runtime settings for a loop run.

    All settings have sensible defaults but can be overridden via environment
    variables using the from_env() factory method.
    """

    max_iterations: int = 10
    agent_timeout_seconds: int = 7200
    iteration_delay_seconds: float = 2.0
    max_branch_failures: int = 3

    # Files
    prd_path: Path = field(default_factory=lambda: Path("prd.json"))
    fixes_prd_path: Path = field(default_factory=lambda: Path("prd-fixes.json"))
    config_path: Path = field(default_factory=lambda: Path("agent.yaml"))
    instructions_dir: Path = field(default_factory=lambda: Path("system_instructions"))
    progress_path: Path = field(default_factory=lambda: Path("progress.txt"))
    archive_dir: Path = field(default_factory=lambda: Path("archive"))

    # State persistence
    state_dir: Path = field(default_factory=lambda: Path(".ralph"))

    sleep_prevention: bool = True

    # Telemetry settings
    otlp_endpoint: str = field(
        default_factory=lambda: os.getenv("OTLP_ENDPOINT", "http://localhost:4317")
    )
    service_name: str = "ralph"

    @property
    def rotation_state_path(self) -> Path:
        return self.state_dir / "rotation-state.json"

    @property
    def log_path(self) -> Path:
        return self.state_dir / "ralph.log"

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        """Load settings with environment variable overrides.

        Environment variables:
            RALPH_MAX_ITERATIONS: Override max_iterations (default: 10)
            RALPH_AGENT_TIMEOUT: Override agent_timeout_seconds (default: 7200, 0 = none)
            RALPH_ITERATION_DELAY: Override iteration_delay_seconds (default: 2)
            RALPH_PRD_FILE: Override prd_path (default: prd.json)
            RALPH_CONFIG: Override config_path (default: agent.yaml)
            RALPH_STATE_DIR: Override state_dir (default: .ralph)
            RALPH_SLEEP_PREVENTION: "false" disables sleep prevention
            OTLP_ENDPOINT: Override otlp_endpoint (default: http://localhost:4317)
        """
        try:
            return cls(
                max_iterations=int(os.getenv("RALPH_MAX_ITERATIONS", "10")),
                agent_timeout_seconds=int(os.getenv("RALPH_AGENT_TIMEOUT", "7200")),
                iteration_delay_seconds=float(os.getenv("RALPH_ITERATION_DELAY", "2")),
                prd_path=Path(os.getenv("RALPH_PRD_FILE", "prd.json")),
                config_path=Path(os.getenv("RALPH_CONFIG", "agent.yaml")),
                state_dir=Path(os.getenv("RALPH_STATE_DIR", ".ralph")),
                sleep_prevention=os.getenv("RALPH_SLEEP_PREVENTION", "true").lower() != "false",
                otlp_endpoint=os.getenv("OTLP_ENDPOINT", "http://localhost:4317"),
            )
        except ValueError as e:
            raise ConfigurationError(
                f"Invalid numeric RALPH_* environment variable: {e}",
                error_code="CONFIG-InvalidEnv",
            ) from e


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise MalformedInput(f"'{name}' must be a mapping", error_code="CONFIG-InvalidSection")
    return value


def _bool(data: dict[str, Any], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise MalformedInput(f"'{key}' must be true or false, got {value!r}", error_code="CONFIG-InvalidBool")
    return value


def _int(data: dict[str, Any], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedInput(f"'{key}' must be an integer, got {value!r}", error_code="CONFIG-InvalidInt")
    return value
