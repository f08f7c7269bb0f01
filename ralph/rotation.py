"""Agent/model rotation for failure and rate-limit recovery.

Tracks consecutive failures per (agent, model) pair and per-agent rate-limit
cooldowns, and moves a cursor through the configured rotation order when a
pair keeps failing or an agent is rate limited. The full state is written to
disk after every event so a restarted run resumes exactly where it stopped.
"""

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from ralph.agents import AgentDescriptor
from ralph.prd import write_json_atomic

logger = logging.getLogger(__name__)

SUPPORTED_STRATEGIES = ("sequential",)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RotationSettings:
    """Configuration for rotation thresholds.

    Attributes:
        enabled: Rotate through agents/models; when False only the primary is used
        failure_threshold: Consecutive failures before moving to the next model
        cooldown_seconds: How long a rate-limited agent is skipped
        strategy: Rotation order strategy (only "sequential")
    """

    enabled: bool = False
    failure_threshold: int = 3
    cooldown_seconds: int = 3600
    strategy: str = "sequential"


@dataclass
class RotationState:
    """Persistent rotation cursor, failure counters and cooldowns.

    Attributes:
        agent_index: Cursor position in the agent rotation order
        model_index: Cursor position in the current agent's model list
        failures: Map of "agent:model" to consecutive failure count
        cooldowns: Map of agent name to the UTC time its cooldown ends
        task_list_id: Identity of the task list this state belongs to
    """

    agent_index: int = 0
    model_index: int = 0
    failures: dict[str, int] = field(default_factory=dict)
    cooldowns: dict[str, datetime] = field(default_factory=dict)
    task_list_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "agentIndex": self.agent_index,
            "modelIndex": self.model_index,
            "failures": dict(self.failures),
            "cooldowns": {agent: until.isoformat() for agent, until in self.cooldowns.items()},
            "taskListId": self.task_list_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RotationState":
        cooldowns = {}
        for agent, until in (data.get("cooldowns") or {}).items():
            parsed = datetime.fromisoformat(until)
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            cooldowns[agent] = parsed
        return cls(
            agent_index=int(data.get("agentIndex", 0)),
            model_index=int(data.get("modelIndex", 0)),
            failures={k: int(v) for k, v in (data.get("failures") or {}).items()},
            cooldowns=cooldowns,
            task_list_id=data.get("taskListId"),
        )

    def save(self, path: Path) -> None:
        """Persist state atomically to ``path``."""
        write_json_atomic(path, self.to_dict())

    @classmethod
    def load(cls, path: Path) -> "RotationState | None":
        """Load state from ``path``.

        Returns:
            RotationState if the file exists and is readable, None otherwise
        """
        if not path.exists():
            return None
        try:
            with open(path, encoding="utf-8") as f:
                return cls.from_dict(json.load(f))
        except (json.JSONDecodeError, ValueError, TypeError, AttributeError) as e:
            logger.warning("Ignoring unreadable rotation state %s: %s", path, e)
            return None


def failure_key(agent: str, model: str) -> str:
    return f"{agent}:{model}"


class RotationMachine:
    """Decides which (agent, model) pair runs next.

    Events:
        on_success: reset the pair's failure counter; cursor stays put
        on_failure: count; at the threshold advance to the next model/agent
        on_rate_limit: start the agent's cooldown and skip to the next agent
        select_next: the cursor pair, skipping cooling agents; None if all cool

    With rotation disabled the machine only ever offers the primary agent's
    first model, still counting failures and recording cooldowns.
    """

    def __init__(
        self,
        settings: RotationSettings,
        agents: list[AgentDescriptor],
        state: RotationState | None = None,
        state_path: Path | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize machine.

        Args:
            settings: Rotation thresholds
            agents: Rotation order; the first entry is the primary agent
            state: Previously persisted state, or None for a fresh start
            state_path: Where to persist state after every event (None: memory only)
            clock: Source of "now" (UTC-aware)
        """
        if not agents:
            raise ValueError("RotationMachine needs at least one agent")
        self.settings = settings
        self.agents = agents if settings.enabled else agents[:1]
        self.state = state or RotationState()
        self.state_path = state_path
        self.clock = clock
        self._clamp_cursor()

    @classmethod
    def load(
        cls,
        settings: RotationSettings,
        agents: list[AgentDescriptor],
        state_path: Path,
        task_list_id: str,
        clock: Callable[[], datetime] = _utcnow,
    ) -> "RotationMachine":
        """Load persisted state, discarding it if it belongs to another task list."""
        state = RotationState.load(state_path)
        if state is not None and state.task_list_id != task_list_id:
            logger.info(
                "Task list changed (%s -> %s), resetting rotation state",
                state.task_list_id,
                task_list_id,
            )
            state = None
        if state is None:
            state = RotationState(task_list_id=task_list_id)
        machine = cls(settings, agents, state=state, state_path=state_path, clock=clock)
        machine._persist()
        return machine

    # --- queries ---

    def models_for(self, agent: AgentDescriptor) -> tuple[str, ...]:
        return agent.models if self.settings.enabled else agent.models[:1]

    @property
    def current(self) -> tuple[AgentDescriptor, str]:
        agent = self.agents[self.state.agent_index]
        return agent, self.models_for(agent)[self.state.model_index]

    def failure_count(self, agent: str, model: str) -> int:
        return self.state.failures.get(failure_key(agent, model), 0)

    def is_cooling_down(self, agent: str) -> bool:
        until = self.state.cooldowns.get(agent)
        return until is not None and self.clock() < until

    def active_cooldowns(self) -> dict[str, datetime]:
        now = self.clock()
        return {agent: until for agent, until in self.state.cooldowns.items() if now < until}

    def select_next(self) -> tuple[AgentDescriptor, str] | None:
        """Return the pair to run next, or None if every agent is cooling down.

        Cooling agents are skipped and the cursor moves to the first available
        agent, so the choice is persisted like any other rotation step.
        """
        self._prune_cooldowns()
        count = len(self.agents)
        for offset in range(count):
            index = (self.state.agent_index + offset) % count
            agent = self.agents[index]
            if self.is_cooling_down(agent.name):
                continue
            if offset:
                logger.info("Skipping cooling agent(s), moving to %s", agent.name)
                self._move_to(index, 0)
                self._persist()
            return self.current
        return None

    # --- events ---

    def on_success(self, agent: str, model: str) -> None:
        self.state.failures.pop(failure_key(agent, model), None)
        self._persist()

    def on_failure(self, agent: str, model: str) -> bool:
        """Record a failure.

        Returns:
            True if the cursor advanced to a new pair
        """
        key = failure_key(agent, model)
        self.state.failures[key] = self.state.failures.get(key, 0) + 1
        count = self.state.failures[key]
        logger.info("Failure %d/%d for %s", count, self.settings.failure_threshold, key)

        rotated = False
        if (
            self.settings.enabled
            and count >= self.settings.failure_threshold
            and self._is_cursor(agent, model)
        ):
            self._advance_model()
            new_agent, new_model = self.current
            self.state.failures.pop(failure_key(new_agent.name, new_model), None)
            logger.warning(
                "%s reached failure threshold, rotating to %s:%s",
                key,
                new_agent.name,
                new_model,
            )
            rotated = True
        self._persist()
        return rotated

    def on_rate_limit(self, agent: str) -> bool:
        """Start ``agent``'s cooldown.

        Returns:
            True if the cursor advanced to another agent
        """
        until = self.clock() + timedelta(seconds=self.settings.cooldown_seconds)
        self.state.cooldowns[agent] = until
        logger.warning("%s rate limited, cooling down until %s", agent, until.isoformat())

        rotated = False
        if self.settings.enabled and self.current[0].name == agent:
            self._advance_agent()
            new_agent, new_model = self.current
            self.state.failures.pop(failure_key(new_agent.name, new_model), None)
            rotated = True
        self._persist()
        return rotated

    def reset(self, task_list_id: str | None = None) -> None:
        """Back to the first agent/model with empty counters."""
        self.state = RotationState(task_list_id=task_list_id)
        self._persist()

    # --- internals ---

    def _is_cursor(self, agent: str, model: str) -> bool:
        cursor_agent, cursor_model = self.current
        return cursor_agent.name == agent and cursor_model == model

    def _advance_model(self) -> None:
        agent = self.agents[self.state.agent_index]
        if self.state.model_index + 1 < len(self.models_for(agent)):
            self._move_to(self.state.agent_index, self.state.model_index + 1)
        else:
            self._advance_agent()

    def _advance_agent(self) -> None:
        self._move_to((self.state.agent_index + 1) % len(self.agents), 0)

    def _move_to(self, agent_index: int, model_index: int) -> None:
        self.state.agent_index = agent_index
        self.state.model_index = model_index

    def _clamp_cursor(self) -> None:
        # Configuration may have shrunk since the state was written
        if self.state.agent_index >= len(self.agents):
            self._move_to(0, 0)
        agent = self.agents[self.state.agent_index]
        if self.state.model_index >= len(self.models_for(agent)):
            self.state.model_index = 0

    def _prune_cooldowns(self) -> None:
        now = self.clock()
        expired = [agent for agent, until in self.state.cooldowns.items() if until <= now]
        for agent in expired:
            del self.state.cooldowns[agent]

    def _persist(self) -> None:
        if self.state_path is not None:
            self.state.save(self.state_path)
