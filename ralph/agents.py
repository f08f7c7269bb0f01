"""Coding agent variants and command-line construction.

Each supported CLI is a closed variant implementing ``build_args``. Commands
are always built as discrete argument lists, never as interpolated shell
strings.
"""

import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar

from ralph.errors import ConfigurationError


@dataclass(frozen=True)
class AgentDescriptor:
    """Configuration for one coding-agent CLI.

    Attributes:
        name: Registry key, e.g. "claude-code"
        models: Ordered models to rotate through on repeated failure
        skip_permissions: Pass "skip all confirmations" style flags
        options: Agent-specific settings from the config section
        instructions_file: System instructions handed to the agent, if any
    """

    name: str
    models: tuple[str, ...]
    skip_permissions: bool = True
    options: dict[str, Any] = field(default_factory=dict, compare=False)
    instructions_file: Path | None = None


class AgentKind(ABC):
    """One supported coding-agent CLI."""

    name: ClassVar[str]
    display_name: ClassVar[str]
    binary: ClassVar[str]
    default_model: ClassVar[str]
    instructions_name: ClassVar[str] = "system_instructions.md"

    def find_binary(self) -> str | None:
        """Locate the agent executable on PATH."""
        return shutil.which(self.binary)

    def is_installed(self) -> bool:
        return self.find_binary() is not None

    def build_command(self, descriptor: AgentDescriptor, model: str, prompt: str) -> list[str]:
        """Full argv for one invocation.

        Falls back to the bare binary name when it cannot be located, so the
        spawn fails with a clear "not found" error instead of here.
        """
        binary = self.find_binary() or self.binary
        return [binary, *self.build_args(descriptor, model, prompt)]

    @abstractmethod
    def build_args(self, descriptor: AgentDescriptor, model: str, prompt: str) -> list[str]:
        """Arguments after the binary name."""

    @staticmethod
    def _with_instructions(descriptor: AgentDescriptor, prompt: str) -> str:
        # Agents without a system-prompt flag get the instructions file by reference
        if descriptor.instructions_file is None:
            return prompt
        return f"{prompt}\nFollow the instructions in {descriptor.instructions_file} exactly."


class ClaudeCodeAgent(AgentKind):
    name = "claude-code"
    display_name = "Claude Code"
    binary = "claude"
    default_model = "claude-sonnet-4-20250514"

    def find_binary(self) -> str | None:
        found = super().find_binary()
        if found:
            return found
        # Native installer location, not always on PATH
        local = Path.home() / ".local" / "bin" / "claude"
        return str(local) if local.is_file() else None

    def build_args(self, descriptor: AgentDescriptor, model: str, prompt: str) -> list[str]:
        args = ["--print"]
        if descriptor.skip_permissions:
            args.append("--dangerously-skip-permissions")
        args.extend(["--model", model])
        instructions = descriptor.instructions_file
        if instructions is not None and instructions.is_file():
            args.extend(["--append-system-prompt", instructions.read_text(encoding="utf-8")])
        args.append(prompt)
        return args


class CodexAgent(AgentKind):
    name = "codex"
    display_name = "Codex"
    binary = "codex"
    default_model = "gpt-4o"
    instructions_name = "system_instructions_codex.md"

    APPROVAL_MODES = ("full-auto", "danger", "suggest")
    SANDBOX_MODES = ("full-access", "workspace-write", "read-only")

    def build_args(self, descriptor: AgentDescriptor, model: str, prompt: str) -> list[str]:
        approval = descriptor.options.get("approval-mode", "full-auto")
        sandbox = descriptor.options.get("sandbox", "full-access")

        args = ["exec"]
        if descriptor.skip_permissions and (approval == "danger" or sandbox == "full-access"):
            args.append("--dangerously-bypass-approvals-and-sandbox")
        elif approval == "full-auto":
            args.append("--full-auto")
        elif sandbox in ("workspace-write", "read-only"):
            args.extend(["--sandbox", sandbox])

        args.extend(["-m", model, "--skip-git-repo-check", self._with_instructions(descriptor, prompt)])
        return args


class CopilotAgent(AgentKind):
    name = "github-copilot"
    display_name = "GitHub Copilot"
    binary = "copilot"
    default_model = "default"
    instructions_name = "system_instructions_copilot.md"

    def build_args(self, descriptor: AgentDescriptor, model: str, prompt: str) -> list[str]:
        args = ["-p", self._with_instructions(descriptor, prompt)]
        # "default" leaves model choice to the CLI
        if model and model != self.default_model:
            args.extend(["--model", model])

        approval = descriptor.options.get("tool-approval", "allow-all")
        if descriptor.skip_permissions and approval == "allow-all":
            args.append("--allow-all-tools")
            for tool in descriptor.options.get("deny-tools") or []:
                if tool:
                    args.extend(["--deny-tool", str(tool)])
        return args


class GeminiAgent(AgentKind):
    name = "gemini"
    display_name = "Gemini"
    binary = "gemini"
    default_model = "gemini-2.5-pro"

    def build_args(self, descriptor: AgentDescriptor, model: str, prompt: str) -> list[str]:
        args = ["--model", model]
        approval = descriptor.options.get("approval-mode", "yolo")
        if descriptor.skip_permissions and approval == "yolo":
            args.append("--yolo")
        args.append(self._with_instructions(descriptor, prompt))
        return args


AGENT_KINDS: dict[str, AgentKind] = {
    kind.name: kind
    for kind in (ClaudeCodeAgent(), CodexAgent(), CopilotAgent(), GeminiAgent())
}

# Auto-detection preference when agent.primary is "auto"
DETECTION_ORDER = ("github-copilot", "claude-code", "gemini", "codex")


def get_agent_kind(name: str) -> AgentKind:
    """Look up an agent variant by name.

    Raises:
        ConfigurationError: If the name is not a supported agent
    """
    try:
        return AGENT_KINDS[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown agent: {name}",
            error_code="CONFIG-UnknownAgent",
            suggestion=f"Use one of: {', '.join(AGENT_KINDS)}",
        ) from None


def detect_available_agent() -> str | None:
    """Return the first installed agent in detection order, or None."""
    for name in DETECTION_ORDER:
        if AGENT_KINDS[name].is_installed():
            return name
    return None


def build_command(descriptor: AgentDescriptor, model: str, prompt: str) -> list[str]:
    """Build the argv for running ``descriptor`` with ``model`` on ``prompt``."""
    return get_agent_kind(descriptor.name).build_command(descriptor, model, prompt)
