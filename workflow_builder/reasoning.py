"""LLM abstraction layer for the intent planner.

The LLM planner talks to a ReasoningEngine and never to a vendor SDK, so a
new provider only has to implement complete(). Vendor SDKs are optional
extras and imported lazily by the engine that needs them.

Also owns ReasoningSettings (planner-only config) so that pydantic-settings
is read in one place.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("workflow_builder.reasoning")

DEFAULT_CLAUDE_MODEL = "claude-sonnet-4-6"
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------


@dataclass
class Message:
    """A single conversation turn: role is "user" or "assistant"."""

    role: str
    content: str


@dataclass
class ToolCall:
    """A tool call requested by the LLM."""

    id: str                   # opaque ID used to pair requests with results
    name: str                 # tool function name
    arguments: dict[str, Any] # parsed JSON arguments


@dataclass
class ToolDef:
    """Definition of a tool the LLM may call.

    parameters follows JSON Schema format:
        {"type": "object", "properties": {...}, "required": [...]}
    """

    name: str
    description: str
    parameters: dict[str, Any]


@dataclass
class EngineResponse:
    """Response from the reasoning engine.

    Either content is set (text reply) or tool_calls is non-empty (tool use),
    or both (Anthropic sometimes returns text alongside tool calls).
    """

    content: str | None
    tool_calls: list[ToolCall] = field(default_factory=list)
    stop_reason: str = "end_turn"  # "end_turn" | "tool_use" | "max_tokens"
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------


class ReasoningEngine(ABC):
    """Abstract base class for any LLM provider."""

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        system: str | None = None,
        tools: list[ToolDef] | None = None,
        temperature: float = 0.3,
        tool_choice: str | None = None,
    ) -> EngineResponse:
        """Send a conversation to the LLM and return its response.

        Args:
            messages:    Conversation turns, starting with a user turn.
            system:      Optional system prompt injected before the conversation.
            tools:       Tools the LLM may call. Pass None if no tool use needed.
            temperature: Sampling temperature (0.0–1.0). Lower = more focused.
            tool_choice: Name of a tool the model must call, or None to let
                         the model decide.
        """
        ...

    @property
    @abstractmethod
    def model_id(self) -> str:
        """Provider/model string for logging, e.g. 'openai/gpt-4o-mini'."""
        ...


# ---------------------------------------------------------------------------
# Claude (Anthropic) implementation
# ---------------------------------------------------------------------------


class ClaudeEngine(ReasoningEngine):
    """Reasoning engine backed by Anthropic's Claude API.

    Requires: pip install 'workflow-builder-engine[claude]'
    """

    def __init__(self, api_key: str, model: str = DEFAULT_CLAUDE_MODEL) -> None:
        try:
            import anthropic as _anthropic
            self._anthropic = _anthropic
        except ImportError:
            raise ImportError(
                "The 'anthropic' package is required for ClaudeEngine. "
                "Install it with: pip install 'workflow-builder-engine[claude]'"
            )
        if not api_key:
            raise ValueError(
                "ANTHROPIC_API_KEY is required for ClaudeEngine. "
                "Set it in your environment or .env file."
            )
        self._client = self._anthropic.AsyncAnthropic(api_key=api_key)
        self._model = model
        logger.info("ClaudeEngine initialized: %s", model)

    @property
    def model_id(self) -> str:
        return f"anthropic/{self._model}"

    async def complete(
        self,
        messages: list[Message],
        system: str | None = None,
        tools: list[ToolDef] | None = None,
        temperature: float = 0.3,
        tool_choice: str | None = None,
    ) -> EngineResponse:
        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "max_tokens": 4096,
            "temperature": temperature,
        }
        if system:
            kwargs["system"] = system
        if tools:
            kwargs["tools"] = [
                {
                    "name": t.name,
                    "description": t.description,
                    "input_schema": t.parameters,
                }
                for t in tools
            ]
            if tool_choice:
                kwargs["tool_choice"] = {"type": "tool", "name": tool_choice}

        logger.debug("ClaudeEngine.complete: %d messages, %d tools", len(messages), len(tools or []))
        response = await self._client.messages.create(**kwargs)

        tool_calls: list[ToolCall] = []
        content_text: str | None = None

        for block in response.content:
            if block.type == "text":
                content_text = block.text
            elif block.type == "tool_use":
                tool_calls.append(ToolCall(
                    id=block.id,
                    name=block.name,
                    arguments=block.input,
                ))

        usage = getattr(response, "usage", None)
        return EngineResponse(
            content=content_text,
            tool_calls=tool_calls,
            stop_reason=response.stop_reason or "end_turn",
            input_tokens=getattr(usage, "input_tokens", 0) or 0,
            output_tokens=getattr(usage, "output_tokens", 0) or 0,
        )


# ---------------------------------------------------------------------------
# OpenAI implementation
# ---------------------------------------------------------------------------


class OpenAIEngine(ReasoningEngine):
    """Reasoning engine backed by the OpenAI chat completions API.

    Requires: pip install 'workflow-builder-engine[openai]'
    """

    def __init__(self, api_key: str, model: str = DEFAULT_OPENAI_MODEL) -> None:
        try:
            import openai as _openai
            self._openai = _openai
        except ImportError:
            raise ImportError(
                "The 'openai' package is required for OpenAIEngine. "
                "Install it with: pip install 'workflow-builder-engine[openai]'"
            )
        if not api_key:
            raise ValueError(
                "OPENAI_API_KEY is required for OpenAIEngine. "
                "Set it in your environment or .env file."
            )
        self._client = self._openai.AsyncOpenAI(api_key=api_key)
        self._model = model
        logger.info("OpenAIEngine initialized: %s", model)

    @property
    def model_id(self) -> str:
        return f"openai/{self._model}"

    async def complete(
        self,
        messages: list[Message],
        system: str | None = None,
        tools: list[ToolDef] | None = None,
        temperature: float = 0.3,
        tool_choice: str | None = None,
    ) -> EngineResponse:
        oai_messages: list[dict[str, Any]] = []
        if system:
            oai_messages.append({"role": "system", "content": system})
        oai_messages.extend({"role": m.role, "content": m.content} for m in messages)

        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": oai_messages,
            "temperature": temperature,
        }
        if tools:
            kwargs["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description,
                        "parameters": t.parameters,
                    },
                }
                for t in tools
            ]
            kwargs["tool_choice"] = (
                {"type": "function", "function": {"name": tool_choice}}
                if tool_choice else "auto"
            )

        logger.debug("OpenAIEngine.complete: %d messages, %d tools", len(messages), len(tools or []))
        response = await self._client.chat.completions.create(**kwargs)
        msg = response.choices[0].message

        tool_calls: list[ToolCall] = []
        for tc in msg.tool_calls or []:
            tool_calls.append(ToolCall(
                id=tc.id,
                name=tc.function.name,
                arguments=json.loads(tc.function.arguments or "{}"),
            ))

        usage = getattr(response, "usage", None)
        return EngineResponse(
            content=msg.content,
            tool_calls=tool_calls,
            stop_reason="tool_use" if tool_calls else "end_turn",
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
        )


# ---------------------------------------------------------------------------
# Planner engine settings
# ---------------------------------------------------------------------------


class ReasoningSettings(BaseSettings):
    """Settings for the LLM behind the intent planner.

    Automatically reads from environment variables (or a .env file).

    Environment variables:
      PLANNER_ENGINE      — "claude" | "openai" | "rules" (default: "openai")
      PLANNER_MODEL       — Model name override; leave unset for provider default
      ANTHROPIC_API_KEY   — Required when the engine is "claude"
      OPENAI_API_KEY      — Required when the engine is "openai"
      PLANNER_TEMPERATURE — Sampling temperature 0.0–1.0 (default: 0.3)

    "rules", or a missing API key, selects the rule-based planner only.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    provider: str = Field(default="openai", validation_alias="PLANNER_ENGINE")
    model: str | None = Field(default=None, validation_alias="PLANNER_MODEL")
    anthropic_api_key: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="ANTHROPIC_API_KEY",
        repr=False,
    )
    openai_api_key: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="OPENAI_API_KEY",
        repr=False,
    )
    temperature: float = Field(default=0.3, validation_alias="PLANNER_TEMPERATURE")

    @field_validator("provider", mode="before")
    @classmethod
    def lowercase_provider(cls, v: object) -> str:
        return str(v).strip().lower()

    @field_validator("model", mode="before")
    @classmethod
    def empty_str_to_none(cls, v: object) -> str | None:
        """Treat empty string PLANNER_MODEL as unset (use provider default)."""
        if not v:
            return None
        return str(v)

    @field_validator("temperature")
    @classmethod
    def clamp_temperature(cls, v: float) -> float:
        return max(0.0, min(1.0, v))

    @property
    def has_credentials(self) -> bool:
        """True when the configured provider has an API key to work with."""
        match self.provider:
            case "claude" | "anthropic":
                return bool(self.anthropic_api_key.get_secret_value())
            case "openai" | "gpt":
                return bool(self.openai_api_key.get_secret_value())
            case _:
                return False


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_engine(settings: ReasoningSettings) -> ReasoningEngine:
    """Instantiate the configured reasoning engine from ReasoningSettings."""
    match settings.provider:
        case "claude" | "anthropic":
            return ClaudeEngine(
                api_key=settings.anthropic_api_key.get_secret_value(),
                model=settings.model or DEFAULT_CLAUDE_MODEL,
            )
        case "openai" | "gpt":
            return OpenAIEngine(
                api_key=settings.openai_api_key.get_secret_value(),
                model=settings.model or DEFAULT_OPENAI_MODEL,
            )
        case _:
            raise ValueError(
                f"Unknown planner engine: {settings.provider!r}. "
                f"Valid options: 'claude', 'openai', 'rules'"
            )
