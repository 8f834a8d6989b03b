"""Provider adapter backed by litellm's OpenAI-compatible completion API."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

import structlog

from agentloop.models.config import ModelInfo
from agentloop.models.message import (
    FinishReason,
    Message,
    TokenUsage,
    ToolCallPart,
)
from agentloop.providers.base import (
    Complete,
    ContentDelta,
    Provider,
    ProviderError,
    ProviderErrorEvent,
    ProviderEvent,
    ProviderResponse,
    ThinkingDelta,
    ToolUseDelta,
    ToolUseStart,
    ToolUseStop,
)
from agentloop.tools.base import ToolInfo

_FINISH_REASONS = {
    "stop": FinishReason.STOP,
    "end_turn": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "max_tokens": FinishReason.LENGTH,
    "tool_calls": FinishReason.TOOL_USE,
    "function_call": FinishReason.TOOL_USE,
    "tool_use": FinishReason.TOOL_USE,
}


def map_finish_reason(reason: str | None) -> FinishReason:
    """Translate a chat-completion finish reason into a :class:`FinishReason`."""
    if reason is None:
        return FinishReason.STOP
    return _FINISH_REASONS.get(reason, FinishReason.UNKNOWN)


def usage_from_response(usage: Any) -> TokenUsage:
    """
    Read token counts from a litellm ``usage`` object.

    Cached prompt tokens are reported separately from fresh input so that
    cost can be priced per category.
    """
    if not usage:
        return TokenUsage()
    prompt = getattr(usage, "prompt_tokens", 0) or 0
    completion = getattr(usage, "completion_tokens", 0) or 0
    details = getattr(usage, "prompt_tokens_details", None)
    cache_read = (getattr(details, "cached_tokens", 0) or 0) if details else 0
    cache_read = cache_read or (getattr(usage, "cache_read_input_tokens", 0) or 0)
    cache_creation = getattr(usage, "cache_creation_input_tokens", 0) or 0
    return TokenUsage(
        input_tokens=max(prompt - cache_read - cache_creation, 0),
        output_tokens=completion,
        cache_creation_tokens=cache_creation,
        cache_read_tokens=cache_read,
    )


class LiteLLMProvider(Provider):
    """
    Streams turns through ``litellm.acompletion``.

    Any model string litellm understands works, e.g.
    ``anthropic/claude-sonnet-4-5`` or ``openai/gpt-4o``.

    Example::

        provider = LiteLLMProvider(ModelInfo.from_model_string("openai/gpt-4o"))
        async for event in provider.stream_response(history, registry.infos()):
            ...
    """

    def __init__(
        self,
        model: ModelInfo | str,
        *,
        max_tokens: int | None = None,
        system_prompt: str = "",
        **completion_kwargs: Any,
    ) -> None:
        self._model = model if isinstance(model, ModelInfo) else ModelInfo.from_model_string(model)
        self._max_tokens = max_tokens or self._model.default_max_tokens
        self._system_prompt = system_prompt
        self._completion_kwargs = completion_kwargs
        self._logger = structlog.get_logger("agentloop.providers.litellm").bind(
            model=self._model.id
        )

    def model(self) -> ModelInfo:
        return self._model

    def max_tokens(self) -> int:
        return self._max_tokens

    # ── Calls ──────────────────────────────────────────────────────────────────

    async def stream_response(
        self, history: list[Message], tools: list[ToolInfo]
    ) -> AsyncIterator[ProviderEvent]:
        import litellm

        call_kwargs = self._call_kwargs(history, tools)
        call_kwargs["stream"] = True
        call_kwargs["stream_options"] = {"include_usage": True}

        content = ""
        usage = TokenUsage()
        finish_reason: str | None = None
        calls: dict[int, ToolCallPart] = {}
        current_index: int | None = None

        try:
            async for chunk in await litellm.acompletion(**call_kwargs):
                if getattr(chunk, "usage", None):
                    usage = usage_from_response(chunk.usage)

                choices = getattr(chunk, "choices", None)
                if not choices:
                    continue
                choice = choices[0]
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
                delta = getattr(choice, "delta", None)
                if delta is None:
                    continue

                reasoning = getattr(delta, "reasoning_content", None)
                if reasoning:
                    yield ThinkingDelta(text=reasoning)

                if delta.content:
                    content += delta.content
                    yield ContentDelta(text=delta.content)

                for tool_delta in getattr(delta, "tool_calls", None) or []:
                    index = getattr(tool_delta, "index", 0) or 0
                    function = getattr(tool_delta, "function", None)
                    arguments = (getattr(function, "arguments", None) or "") if function else ""

                    if index not in calls:
                        if current_index is not None and not calls[current_index].finished:
                            calls[current_index].finished = True
                            yield ToolUseStop(tool_call_id=calls[current_index].id)
                        call = ToolCallPart(
                            id=getattr(tool_delta, "id", None) or f"call_{index}",
                            name=(getattr(function, "name", None) or "") if function else "",
                            input=arguments,
                        )
                        calls[index] = call
                        current_index = index
                        yield ToolUseStart(tool_call=call.model_copy())
                    elif arguments:
                        calls[index].input += arguments
                        yield ToolUseDelta(tool_call_id=calls[index].id, input=arguments)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._logger.warning("provider_stream_failed", error=str(exc))
            yield ProviderErrorEvent(message=f"{self._model.id}: {exc}")
            return

        for call in calls.values():
            if not call.finished:
                call.finished = True
                yield ToolUseStop(tool_call_id=call.id)

        reason = map_finish_reason(finish_reason)
        if calls:
            reason = FinishReason.TOOL_USE
        yield Complete(
            response=ProviderResponse(
                content=content,
                tool_calls=list(calls.values()),
                usage=usage,
                finish_reason=reason,
            )
        )

    async def send_messages(
        self, history: list[Message], tools: list[ToolInfo]
    ) -> ProviderResponse:
        import litellm

        try:
            response = await litellm.acompletion(**self._call_kwargs(history, tools))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise ProviderError(
                f"completion failed for {self._model.id}: {exc}", model=self._model.id
            ) from exc

        choice = response.choices[0]
        message = choice.message
        tool_calls = [
            ToolCallPart(
                id=call.id,
                name=call.function.name,
                input=call.function.arguments or "",
                finished=True,
            )
            for call in (getattr(message, "tool_calls", None) or [])
        ]
        reason = map_finish_reason(choice.finish_reason)
        if tool_calls:
            reason = FinishReason.TOOL_USE
        return ProviderResponse(
            content=message.content or "",
            tool_calls=tool_calls,
            usage=usage_from_response(getattr(response, "usage", None)),
            finish_reason=reason,
        )

    # ── Request building ───────────────────────────────────────────────────────

    def _call_kwargs(self, history: list[Message], tools: list[ToolInfo]) -> dict[str, Any]:
        call_kwargs: dict[str, Any] = {
            "model": self._model.id,
            "messages": self.convert_messages(history),
            "max_tokens": self._max_tokens,
            **self._completion_kwargs,
        }
        if tools:
            call_kwargs["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": info.name,
                        "description": info.description,
                        "parameters": info.to_schema(),
                    },
                }
                for info in tools
            ]
        return call_kwargs

    def convert_messages(self, history: list[Message]) -> list[dict[str, Any]]:
        """Translate stored messages into chat-completion message dicts."""
        converted: list[dict[str, Any]] = []
        if self._system_prompt:
            converted.append({"role": "system", "content": self._system_prompt})

        for msg in history:
            if msg.role == "system":
                converted.append({"role": "system", "content": msg.content()})
            elif msg.role == "user":
                converted.append(self._convert_user(msg))
            elif msg.role == "assistant":
                calls = msg.tool_calls()
                text = msg.content()
                if not text and not calls:
                    continue
                entry: dict[str, Any] = {"role": "assistant", "content": text or None}
                if calls:
                    entry["tool_calls"] = [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {"name": call.name, "arguments": call.input or "{}"},
                        }
                        for call in calls
                    ]
                converted.append(entry)
            else:
                for result in msg.tool_results():
                    converted.append(
                        {
                            "role": "tool",
                            "tool_call_id": result.tool_call_id,
                            "content": result.content,
                        }
                    )
        return converted

    def _convert_user(self, msg: Message) -> dict[str, Any]:
        images = [
            part
            for part in msg.binary_content()
            if part.mime_type.startswith("image/")
        ]
        if not images or not self._model.supports_attachments:
            return {"role": "user", "content": msg.content()}
        content: list[dict[str, Any]] = [{"type": "text", "text": msg.content()}]
        content.extend(
            {"type": "image_url", "image_url": {"url": part.data_url()}} for part in images
        )
        return {"role": "user", "content": content}
