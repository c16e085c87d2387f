"""Model transport: stream events, responses and a litellm-backed client."""

import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional, Protocol, Union

import litellm

from .errors import TransportError
from .logger import get_logger
from .messages import (
    ASSISTANT, ContentBlock, MediaBlock, Message, TextBlock, ThinkingBlock,
    ToolResultBlock, ToolUseBlock,
)

litellm.suppress_debug_info = True

_log = get_logger(__name__)

STOP_END_TURN = "end_turn"
STOP_TOOL_USE = "tool_use"
STOP_MAX_TOKENS = "max_tokens"

_FINISH_REASONS = {
    "stop": STOP_END_TURN,
    "tool_calls": STOP_TOOL_USE,
    "function_call": STOP_TOOL_USE,
    "length": STOP_MAX_TOKENS,
}


# ── Rate-limit metadata ──


RATE_LIMIT_PREFIX = "anthropic-ratelimit-unified-"
_RATE_LIMIT_CLAIMS = ("5h", "7d", "overage")


@dataclass(frozen=True)
class RateLimitInfo:
    status: str = "allowed"  # allowed | allowed_warning | rejected
    utilization: Optional[float] = None
    resets_at: Optional[int] = None
    rate_limit_type: Optional[str] = None
    fallback_available: bool = False
    is_using_overage: bool = False

    @property
    def is_warning(self) -> bool:
        return self.status != "allowed"


def parse_rate_limit_headers(headers: Optional[Mapping[str, Any]]) -> Optional[RateLimitInfo]:
    """Unified rate-limit headers, or ``None`` when the response carried none.

    Keys are matched case-insensitively; litellm's ``llm_provider-`` prefix
    is ignored.
    """
    if not headers:
        return None
    normalized = {}
    for key, value in headers.items():
        name = str(key).lower()
        if name.startswith("llm_provider-"):
            name = name[len("llm_provider-"):]
        if name.startswith(RATE_LIMIT_PREFIX):
            normalized[name[len(RATE_LIMIT_PREFIX):]] = str(value)
    if not normalized:
        return None

    status = normalized.get("status", "allowed")
    reset = normalized.get("reset")
    overage = normalized.get("overage-status")
    utilization = None
    for claim in _RATE_LIMIT_CLAIMS:
        raw = normalized.get(f"{claim}-utilization")
        if raw is None:
            continue
        try:
            utilization = float(raw)
        except ValueError:
            utilization = None
        if f"{claim}-surpassed-threshold" in normalized and status == "allowed":
            status = "allowed_warning"
        break

    return RateLimitInfo(
        status=status,
        utilization=utilization,
        resets_at=int(float(reset)) if reset else None,
        rate_limit_type=normalized.get("representative-claim"),
        fallback_available=normalized.get("fallback") == "available",
        is_using_overage=status == "rejected" and overage in ("allowed", "allowed_warning"),
    )


# ── Stream events ──


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ThinkingDelta:
    text: str


@dataclass(frozen=True)
class ToolCallStart:
    index: int
    id: str
    name: str


@dataclass(frozen=True)
class ToolCallDelta:
    index: int
    arguments: str  # partial JSON


@dataclass(frozen=True)
class StopEvent:
    reason: str


@dataclass(frozen=True)
class UsageEvent:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(frozen=True)
class ErrorEvent:
    message: str
    status_code: Optional[int] = None


@dataclass(frozen=True)
class RateLimitEvent:
    info: RateLimitInfo


StreamEvent = Union[TextDelta, ThinkingDelta, ToolCallStart, ToolCallDelta,
                    StopEvent, UsageEvent, ErrorEvent, RateLimitEvent]


@dataclass
class ModelResponse:
    content: List[ContentBlock] = field(default_factory=list)
    stop_reason: str = STOP_END_TURN
    usage: Dict[str, int] = field(default_factory=dict)
    rate_limit: Optional[RateLimitInfo] = None

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_uses(self) -> List[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]


class ModelTransport(Protocol):
    """What the turn loop needs from a model API client.

    Implementations must be safe to share between agents in different threads.
    """

    def send(self, messages: List[Message], tools: List[dict], system: str,
             options: Optional[Dict[str, Any]] = None) -> ModelResponse:
        ...

    def stream(self, messages: List[Message], tools: List[dict], system: str,
               options: Optional[Dict[str, Any]] = None) -> Iterator[StreamEvent]:
        ...


def events_from_response(response: ModelResponse) -> Iterator[StreamEvent]:
    """Replay a blocking response as the events a stream would have produced."""
    if response.rate_limit is not None:
        yield RateLimitEvent(response.rate_limit)
    index = 0
    for block in response.content:
        if isinstance(block, TextBlock):
            yield TextDelta(block.text)
        elif isinstance(block, ThinkingBlock):
            yield ThinkingDelta(block.text)
        elif isinstance(block, ToolUseBlock):
            yield ToolCallStart(index, block.id, block.name)
            yield ToolCallDelta(index, json.dumps(block.input, ensure_ascii=False))
            index += 1
        elif isinstance(block, (MediaBlock, ToolResultBlock)):
            raise TypeError(f"Model responses cannot contain {type(block).__name__}")
        else:
            raise TypeError(f"Unknown content block: {block!r}")
    if response.usage:
        yield UsageEvent(response.usage.get("input_tokens", 0), response.usage.get("output_tokens", 0))
    yield StopEvent(response.stop_reason)


# ── Wire conversion ──


def _media_part(block: MediaBlock) -> dict:
    return {"type": "image_url",
            "image_url": {"url": f"data:{block.mime_type};base64,{block.data}"}}


def to_openai_messages(messages: List[Message], system: str = "") -> List[Dict[str, Any]]:
    """Convert history to the OpenAI chat format litellm expects.

    Tool results become ``tool`` role messages placed before any text of
    the same user message, so they directly follow the assistant turn that
    requested them.
    """
    result: List[Dict[str, Any]] = []
    if system:
        result.append({"role": "system", "content": system})

    for msg in messages:
        if msg.role == ASSISTANT:
            entry: Dict[str, Any] = {"role": "assistant", "content": None}
            text_parts, reasoning, calls = [], [], []
            for block in msg.content:
                if isinstance(block, TextBlock):
                    text_parts.append(block.text)
                elif isinstance(block, ThinkingBlock):
                    reasoning.append(block.text)
                elif isinstance(block, ToolUseBlock):
                    calls.append({
                        "id": block.id, "type": "function",
                        "function": {"name": block.name,
                                     "arguments": json.dumps(block.input, ensure_ascii=False)},
                    })
                elif isinstance(block, (MediaBlock, ToolResultBlock)):
                    raise TypeError(f"Assistant messages cannot contain {type(block).__name__}")
                else:
                    raise TypeError(f"Unknown content block: {block!r}")
            if text_parts:
                entry["content"] = "".join(text_parts)
            if reasoning:
                entry["reasoning_content"] = "".join(reasoning)
            if calls:
                entry["tool_calls"] = calls
            result.append(entry)
            continue

        parts: List[dict] = []
        has_media = False
        for block in msg.content:
            if isinstance(block, ToolResultBlock):
                result.append({"role": "tool", "tool_call_id": block.tool_use_id,
                               "content": block.content})
            elif isinstance(block, TextBlock):
                parts.append({"type": "text", "text": block.text})
            elif isinstance(block, MediaBlock):
                parts.append(_media_part(block))
                has_media = True
            elif isinstance(block, (ThinkingBlock, ToolUseBlock)):
                raise TypeError(f"User messages cannot contain {type(block).__name__}")
            else:
                raise TypeError(f"Unknown content block: {block!r}")
        if parts:
            content = parts if has_media else "\n".join(p["text"] for p in parts)
            result.append({"role": "user", "content": content})
    return result


def new_tool_use_id() -> str:
    """Fresh id for a tool call the provider sent without one."""
    return f"toolu_{uuid.uuid4().hex[:24]}"


def parse_tool_arguments(raw: str) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {"_raw": raw}
    return parsed if isinstance(parsed, dict) else {"_raw": raw}


def _usage_dict(usage) -> Dict[str, int]:
    if not usage:
        return {}
    return {"input_tokens": getattr(usage, "prompt_tokens", 0) or 0,
            "output_tokens": getattr(usage, "completion_tokens", 0) or 0}


def _response_headers(obj) -> Optional[Mapping[str, Any]]:
    hidden = getattr(obj, "_hidden_params", None) or {}
    headers = hidden.get("additional_headers") if isinstance(hidden, dict) else None
    return headers or getattr(obj, "_response_headers", None)


class LiteLLMTransport:
    """Transport over ``litellm.completion``.

    Passes api_key/api_base directly to litellm, avoiding env-var pollution
    when several agents talk to different providers.
    """

    def __init__(self, model: str, temperature: float = 0.0,
                 api_base: Optional[str] = None, api_key: Optional[str] = None,
                 max_tokens: Optional[int] = None):
        self.model = model
        self.temperature = temperature
        self.api_base = api_base
        self.api_key = api_key
        self.max_tokens = max_tokens

    def _build_kwargs(self, messages: List[Message], tools: List[dict], system: str,
                      options: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        options = dict(options or {})
        kwargs: Dict[str, Any] = {
            "model": options.pop("model", self.model),
            "messages": to_openai_messages(messages, system),
            "temperature": options.pop("temperature", self.temperature),
        }
        max_tokens = options.pop("max_tokens", self.max_tokens)
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.api_key:
            kwargs["api_key"] = self.api_key
        kwargs.update(options)
        return kwargs

    @staticmethod
    def _wrap_error(e: Exception, model: str) -> TransportError:
        status = getattr(e, "status_code", None)
        if isinstance(e, litellm.exceptions.AuthenticationError):
            return TransportError(f"Auth failed. Check API key.\n{e}", status)
        if isinstance(e, litellm.exceptions.RateLimitError):
            return TransportError(f"Rate limited: {e}", status)
        if isinstance(e, litellm.exceptions.APIConnectionError):
            return TransportError(f"Cannot connect: model={model}\n{e}", status)
        return TransportError(f"LLM error: {type(e).__name__}: {e}", status)

    def send(self, messages: List[Message], tools: List[dict], system: str,
             options: Optional[Dict[str, Any]] = None) -> ModelResponse:
        kwargs = self._build_kwargs(messages, tools, system, options)
        try:
            response = litellm.completion(**kwargs)
        except Exception as e:
            raise self._wrap_error(e, kwargs["model"]) from e

        choice = response.choices[0]
        msg = choice.message
        content: List[ContentBlock] = []
        reasoning = getattr(msg, "reasoning_content", None)
        if reasoning:
            content.append(ThinkingBlock(reasoning))
        if msg.content:
            content.append(TextBlock(msg.content))
        for tc in (msg.tool_calls or []):
            content.append(ToolUseBlock(tc.id or new_tool_use_id(), tc.function.name,
                                        parse_tool_arguments(tc.function.arguments)))

        return ModelResponse(
            content=content,
            stop_reason=_FINISH_REASONS.get(choice.finish_reason, STOP_END_TURN),
            usage=_usage_dict(getattr(response, "usage", None)),
            rate_limit=parse_rate_limit_headers(_response_headers(response)),
        )

    def stream(self, messages: List[Message], tools: List[dict], system: str,
               options: Optional[Dict[str, Any]] = None) -> Iterator[StreamEvent]:
        """Streaming request.

        Failing to start raises :class:`TransportError`; a failure after the
        first chunk is reported as an :class:`ErrorEvent` so the caller keeps
        whatever arrived before it.
        """
        kwargs = self._build_kwargs(messages, tools, system, options)
        kwargs["stream"] = True
        kwargs["stream_options"] = {"include_usage": True}
        try:
            response_stream = litellm.completion(**kwargs)
        except Exception as e:
            raise self._wrap_error(e, kwargs["model"]) from e

        rate_limit = parse_rate_limit_headers(_response_headers(response_stream))
        if rate_limit is not None:
            yield RateLimitEvent(rate_limit)

        started: Dict[int, bool] = {}
        pending: Dict[int, Dict[str, str]] = {}
        finish_reason = None
        try:
            for chunk in response_stream:
                usage = getattr(chunk, "usage", None)
                if usage:
                    yield UsageEvent(**_usage_dict(usage))
                if not chunk.choices:
                    continue

                choice = chunk.choices[0]
                delta = choice.delta
                if getattr(choice, "finish_reason", None):
                    finish_reason = choice.finish_reason

                rc = getattr(delta, "reasoning_content", None)
                if rc:
                    yield ThinkingDelta(rc)
                if getattr(delta, "content", None):
                    yield TextDelta(delta.content)

                for tc_delta in (getattr(delta, "tool_calls", None) or []):
                    idx = tc_delta.index
                    slot = pending.setdefault(idx, {"id": "", "name": "", "args": ""})
                    if tc_delta.id:
                        slot["id"] = tc_delta.id
                    fn = tc_delta.function
                    if fn and fn.name:
                        slot["name"] = fn.name
                    if fn and fn.arguments:
                        slot["args"] += fn.arguments
                    # Announce a call once its name is known; arguments seen
                    # before that are flushed with the announcement.
                    if not started.get(idx) and slot["name"]:
                        started[idx] = True
                        if not slot["id"]:
                            slot["id"] = new_tool_use_id()
                        yield ToolCallStart(idx, slot["id"], slot["name"])
                    if started.get(idx) and slot["args"]:
                        yield ToolCallDelta(idx, slot["args"])
                        slot["args"] = ""
        except Exception as e:
            _log.warning("Stream interrupted: %s: %s", type(e).__name__, e)
            yield ErrorEvent(f"Stream interrupted: {type(e).__name__}: {e}",
                             getattr(e, "status_code", None))
            return

        yield StopEvent(_FINISH_REASONS.get(finish_reason, STOP_END_TURN))
