"""Configuration models for the agent engine and its components."""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator

DEFAULT_COMPACTION_SYSTEM_PROMPT = """\
You are a helpful AI assistant tasked with summarizing conversations.

When asked to summarize, provide a detailed but concise summary of the conversation.
Focus on information that would be helpful for continuing the conversation, including:
- What was done
- What is currently being worked on
- Which files are being modified
- What needs to be done next

Your summary should be comprehensive enough to provide context but concise enough \
to be quickly understood."""

DEFAULT_SUMMARY_REQUEST = (
    "Provide a detailed but concise summary of our conversation above. Focus on "
    "information that would be helpful for continuing the conversation, including "
    "what we did, what we're doing, which files we're working on, and what we're "
    "going to do next."
)

DEFAULT_TITLE_PROMPT = """\
Generate a short title for a conversation that starts with the message below.
Reply with the title only: no quotes, no punctuation at the end, at most 50 characters.

{{ content }}"""


class CompactionConfig(BaseModel):
    """Configuration for automatic and manual history compaction."""

    auto: bool = True
    """Whether the generation loop compacts proactively before a streamed turn."""

    threshold_fraction: float = Field(
        default=0.9,
        gt=0.0,
        le=1.0,
        description="Fraction of the context window at which compaction is triggered.",
    )

    timeout_secs: float = Field(
        default=30.0,
        gt=0.0,
        description="Upper bound for one inline compaction inside the generation loop.",
    )

    default_context_window: int = Field(
        default=100_000,
        ge=1,
        description="Context window assumed when the model does not report one.",
    )

    system_prompt: str = DEFAULT_COMPACTION_SYSTEM_PROMPT
    """Fixed system instruction sent ahead of the history being summarised."""

    summary_request: str = DEFAULT_SUMMARY_REQUEST
    """Trailing user turn asking for a continuation-oriented summary."""


class TitleConfig(BaseModel):
    """Configuration for best-effort session title generation."""

    enabled: bool = True

    prompt_template: str = Field(
        default=DEFAULT_TITLE_PROMPT,
        description="Jinja2 template rendered with ``content`` (the first user message).",
    )

    max_length: int = Field(default=100, ge=10, le=1_000)

    @model_validator(mode="after")
    def validate_template(self) -> TitleConfig:
        require_template_variable(self.prompt_template, "content")
        return self


def require_template_variable(template_str: str, variable: str) -> None:
    """
    Raise ValueError if the Jinja2 template does not reference *variable*.

    Uses Jinja2 AST parsing, so ``{{ content | upper }}`` counts and a
    variable name inside plain text does not. Invalid syntax is also
    reported as ``ValueError``.
    """
    from jinja2 import Environment, TemplateSyntaxError, meta

    env = Environment()
    try:
        ast = env.parse(template_str)
    except TemplateSyntaxError as exc:
        raise ValueError(f"Invalid Jinja2 template syntax: {exc}") from exc
    if variable not in meta.find_undeclared_variables(ast):
        raise ValueError(f"prompt_template must reference {{{{ {variable} }}}}")


class StoreConfig(BaseModel):
    """Configuration for the SQLite persistence layer."""

    db_path: str = Field(
        default="~/.agentloop/sessions.db",
        description="Path to the SQLite database file. ~ is expanded at runtime.",
    )

    wal_mode: bool = True
    """Use WAL journal mode for better concurrent read performance."""

    connection_timeout: float = 30.0
    """Seconds to wait for the database connection before raising."""


class AgentModelConfig(BaseModel):
    """Which model an agent role uses and how many tokens it may generate."""

    model: str
    max_tokens: int | None = Field(
        default=None,
        ge=1,
        description="Output token cap. None = the model's default_max_tokens.",
    )


def _default_agents() -> dict[str, AgentModelConfig]:
    return {
        "primary": AgentModelConfig(model="anthropic/claude-sonnet-4-5"),
        "title": AgentModelConfig(model="anthropic/claude-haiku-4-5", max_tokens=80),
    }


class AgentLoopConfig(BaseModel):
    """
    Top-level configuration for one agent engine.

    All sub-configs have sensible defaults and can be overridden individually.

    Example::

        config = AgentLoopConfig(
            compaction=CompactionConfig(threshold_fraction=0.8),
            store=StoreConfig(db_path="./sessions.db"),
            agents={"primary": AgentModelConfig(model="openai/gpt-4o", max_tokens=4_096)},
        )
    """

    compaction: CompactionConfig = Field(default_factory=CompactionConfig)
    title: TitleConfig = Field(default_factory=TitleConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    agents: dict[str, AgentModelConfig] = Field(default_factory=_default_agents)

    model_overrides: dict[str, object] | None = Field(
        default=None,
        description=(
            "Field overrides applied to every resolved ModelInfo "
            "(e.g. ``{'context_window': 64_000}`` for a local deployment)."
        ),
    )

    @model_validator(mode="after")
    def validate_primary_agent(self) -> AgentLoopConfig:
        if "primary" not in self.agents:
            raise ValueError("agents must define a 'primary' agent")
        return self

    @classmethod
    def default(cls) -> AgentLoopConfig:
        """Return a config instance with all defaults."""
        return cls()

    def resolve_model(self, model_id: str) -> ModelInfo:
        """Resolve a model string to ModelInfo, applying ``model_overrides``."""
        info = ModelInfo.from_model_string(model_id)
        if self.model_overrides:
            info = info.model_copy(update=self.model_overrides)
        return info

    def with_agent_model(self, agent_name: str, model_id: str) -> AgentLoopConfig:
        """Return a copy of this config with *agent_name* switched to *model_id*."""
        if agent_name not in self.agents:
            raise KeyError(agent_name)
        agents = dict(self.agents)
        agents[agent_name] = agents[agent_name].model_copy(update={"model": model_id})
        return self.model_copy(update={"agents": agents})


class ModelInfo(BaseModel):
    """Resolved model metadata used for budget and cost calculations."""

    id: str
    provider: str = ""
    context_window: int = Field(
        default=128_000,
        ge=0,
        description="Total input + output token limit for this model. 0 = unknown.",
    )
    default_max_tokens: int = Field(
        default=4_096,
        ge=1,
        description="Maximum output tokens for a single response.",
    )
    supports_attachments: bool = False
    can_reason: bool = False
    cost_per_1m_in: float = 0.0
    cost_per_1m_out: float = 0.0
    cost_per_1m_in_cached: float = 0.0
    cost_per_1m_out_cached: float = 0.0

    @classmethod
    def from_model_string(cls, model: str) -> ModelInfo:
        """
        Create a ModelInfo by heuristically parsing a model string.

        Supports litellm-style strings like ``anthropic/claude-sonnet-4-5``,
        ``gpt-4o``, ``openai/gpt-4-turbo``, etc.
        """
        lower = model.lower()
        provider = ""
        model_name = lower

        if "/" in lower:
            provider, model_name = lower.split("/", 1)

        # Context limits, output limits and prices by model family
        if "claude" in model_name and "opus" in model_name:
            return cls(
                id=model,
                provider=provider or "anthropic",
                context_window=200_000,
                default_max_tokens=32_000,
                supports_attachments=True,
                can_reason=True,
                cost_per_1m_in=15.0,
                cost_per_1m_out=75.0,
                cost_per_1m_in_cached=18.75,
                cost_per_1m_out_cached=1.5,
            )
        if "claude" in model_name and "haiku" in model_name:
            return cls(
                id=model,
                provider=provider or "anthropic",
                context_window=200_000,
                default_max_tokens=8_192,
                supports_attachments=True,
                cost_per_1m_in=0.8,
                cost_per_1m_out=4.0,
                cost_per_1m_in_cached=1.0,
                cost_per_1m_out_cached=0.08,
            )
        if "claude" in model_name:
            return cls(
                id=model,
                provider=provider or "anthropic",
                context_window=200_000,
                default_max_tokens=16_000,
                supports_attachments=True,
                can_reason=True,
                cost_per_1m_in=3.0,
                cost_per_1m_out=15.0,
                cost_per_1m_in_cached=3.75,
                cost_per_1m_out_cached=0.3,
            )
        if model_name.startswith(("o1", "o3", "o4")):
            return cls(
                id=model,
                provider=provider or "openai",
                context_window=200_000,
                default_max_tokens=100_000,
                supports_attachments=True,
                can_reason=True,
                cost_per_1m_in=2.0,
                cost_per_1m_out=8.0,
                cost_per_1m_in_cached=0.5,
            )
        if "gpt-4o" in model_name or "gpt-4.1" in model_name:
            return cls(
                id=model,
                provider=provider or "openai",
                context_window=128_000,
                default_max_tokens=16_384,
                supports_attachments=True,
                cost_per_1m_in=2.5,
                cost_per_1m_out=10.0,
                cost_per_1m_in_cached=1.25,
            )
        if "gpt-4" in model_name or "gpt-3" in model_name:
            return cls(
                id=model,
                provider=provider or "openai",
                context_window=128_000,
                default_max_tokens=4_096,
                cost_per_1m_in=10.0,
                cost_per_1m_out=30.0,
            )
        if "gemini" in model_name:
            return cls(
                id=model,
                provider=provider or "gemini",
                context_window=1_000_000,
                default_max_tokens=8_192,
                supports_attachments=True,
                cost_per_1m_in=1.25,
                cost_per_1m_out=10.0,
            )
        # Safe default for unknown models
        return cls(
            id=model,
            provider=provider,
            context_window=128_000,
            default_max_tokens=4_096,
        )
