from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence

import openai

from turnkernel.logging import get_logger
from turnkernel.service.errors import UpstreamProviderError
from turnkernel.service.upstream import call_with_retry

logger = get_logger(__name__)

DEFAULT_TEMPERATURE = 0.2


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: Dict[str, Any]
    raw_arguments: str = ""


@dataclass
class ModelReply:
    text: str
    tool_calls: List[ToolCall] = field(default_factory=list)
    usage: Dict[str, int] = field(default_factory=dict)


class ModelClient(Protocol):
    def stream_text(self, messages: Sequence[Dict[str, Any]]) -> AsyncIterator[str]: ...

    async def complete(
        self,
        messages: Sequence[Dict[str, Any]],
        *,
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> ModelReply: ...


def _parse_arguments(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {"__invalid_json__": raw}
    return parsed if isinstance(parsed, dict) else {"__invalid_json__": raw}


def _to_provider_messages(messages: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    # OpenAI-compatible providers do not all accept "developer"
    out: List[Dict[str, Any]] = []
    for message in messages:
        converted = dict(message)
        if converted.get("role") == "developer":
            converted["role"] = "system"
        out.append(converted)
    return out


class OpenAIModelClient:
    """Chat completions through the ``openai`` async client."""

    def __init__(
        self,
        *,
        model: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        retries: int = 1,
        client: Optional[openai.AsyncOpenAI] = None,
    ) -> None:
        self.model = model
        self.retries = retries
        self.client = client or openai.AsyncOpenAI(api_key=api_key, base_url=base_url)

    async def stream_text(self, messages: Sequence[Dict[str, Any]]) -> AsyncIterator[str]:
        provider_messages = _to_provider_messages(messages)

        async def _open():
            return await self.client.chat.completions.create(
                model=self.model,
                messages=provider_messages,
                temperature=DEFAULT_TEMPERATURE,
                stream=True,
            )

        # Opening the stream is idempotent; reading it is not
        stream = await call_with_retry("model_stream_open", _open, retries=self.retries)
        try:
            async for chunk in stream:
                choices = getattr(chunk, "choices", None) or []
                if not choices:
                    continue
                delta = getattr(choices[0].delta, "content", None)
                if delta:
                    yield delta
        except openai.OpenAIError as exc:
            logger.error("model_stream_failed", error_type=type(exc).__name__)
            raise UpstreamProviderError(
                "model stream interrupted",
                detail={"upstream_status": getattr(exc, "status_code", None)},
            ) from exc
        finally:
            await stream.close()

    async def complete(
        self,
        messages: Sequence[Dict[str, Any]],
        *,
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> ModelReply:
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": _to_provider_messages(messages),
            "temperature": DEFAULT_TEMPERATURE,
        }
        if tools:
            kwargs["tools"] = tools

        async def _create():
            return await self.client.chat.completions.create(**kwargs)

        completion = await call_with_retry("model_complete", _create, retries=self.retries)
        choices = getattr(completion, "choices", None) or []
        first_choice = next(iter(choices), None)
        if first_choice is None:
            logger.warning("model_completion_empty")
            return ModelReply(text="")
        message = first_choice.message
        calls = [
            ToolCall(
                id=call.id,
                name=call.function.name,
                arguments=_parse_arguments(call.function.arguments),
                raw_arguments=call.function.arguments or "",
            )
            for call in (getattr(message, "tool_calls", None) or [])
        ]
        usage = getattr(completion, "usage", None)
        return ModelReply(
            text=message.content or "",
            tool_calls=calls,
            usage={
                "prompt_tokens": getattr(usage, "prompt_tokens", 0) or 0,
                "completion_tokens": getattr(usage, "completion_tokens", 0) or 0,
            },
        )


class EchoModelClient:
    """Deterministic stand-in used when no provider key is configured."""

    def __init__(self, model: str = "echo") -> None:
        self.model = model

    def _reply(self, messages: Sequence[Dict[str, Any]]) -> str:
        last_user = next(
            (m.get("content", "") for m in reversed(messages) if m.get("role") == "user"), ""
        )
        return f"[{self.model}] {last_user}"

    async def stream_text(self, messages: Sequence[Dict[str, Any]]) -> AsyncIterator[str]:
        words = self._reply(messages).split(" ")
        for idx, word in enumerate(words):
            yield word if idx == 0 else " " + word

    async def complete(
        self,
        messages: Sequence[Dict[str, Any]],
        *,
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> ModelReply:
        return ModelReply(text=self._reply(messages))


def build_model_client(
    *, model: str, api_key: Optional[str], base_url: Optional[str], retries: int
) -> ModelClient:
    if api_key:
        return OpenAIModelClient(model=model, api_key=api_key, base_url=base_url, retries=retries)
    logger.warning("model_client_echo_fallback", model=model)
    return EchoModelClient(model=model)
