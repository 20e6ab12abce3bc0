"""Model streaming provider backed by the Anthropic Messages API.

Direct httpx streaming calls (server-sent events), translated into
StreamParts. Runs the tool-use loop internally: after a step that stops
for tool_use the requested tools run through a ToolSet, their results
are streamed as tool-result/tool-error parts and the next step starts.

The cancellation token is checked between every SSE line and every tool
call; a cancelled call ends with an ``abort`` part carrying the token's
reason.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import aclosing
from collections.abc import AsyncGenerator, Awaitable, Sequence
from dataclasses import dataclass, field
from typing import Any

import httpx

from rein.cancellation import CancellationToken
from rein.config import Settings
from rein.errors import ProviderError
from rein.schemas import (
    AssistantMessage,
    FinishReason,
    TextPart,
    ToolCallPart,
    ToolMessage,
    Usage,
    UserMessage,
)
from rein.stream import PartType, StreamPart, StreamRequest
from rein.tools import ToolSet

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"

_RETRY_STATUS = (429, 500, 529)
_MAX_RETRY_AFTER = 30.0

_STOP_REASONS: dict[str, FinishReason] = {
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "pause_turn": FinishReason.OTHER,
    "tool_use": FinishReason.TOOL_CALLS,
    "max_tokens": FinishReason.LENGTH,
    "refusal": FinishReason.CONTENT_FILTER,
}


def map_stop_reason(stop_reason: str | None) -> FinishReason:
    if not stop_reason:
        return FinishReason.UNKNOWN
    return _STOP_REASONS.get(stop_reason, FinishReason.OTHER)


# ---------------------------------------------------------------------------
# Message conversion
# ---------------------------------------------------------------------------


def _tool_result_content(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def _convert(message: UserMessage | AssistantMessage | ToolMessage) -> tuple[str, list[dict[str, Any]]]:
    if isinstance(message, UserMessage):
        texts = [message.content] if isinstance(message.content, str) else [p.text for p in message.content]
        return "user", [{"type": "text", "text": t} for t in texts if t]

    if isinstance(message, AssistantMessage):
        blocks: list[dict[str, Any]] = []
        for part in message.content:
            if isinstance(part, TextPart) and part.text:
                blocks.append({"type": "text", "text": part.text})
            elif isinstance(part, ToolCallPart):
                blocks.append({
                    "type": "tool_use",
                    "id": part.tool_call_id,
                    "name": part.tool_name,
                    "input": part.input if part.input is not None else {},
                })
            # ReasoningPart: thinking blocks need their signature, which only
            # survives inside a single turn's tool loop. Drop from history.
        return "assistant", blocks

    return "user", [
        {
            "type": "tool_result",
            "tool_use_id": part.tool_call_id,
            "content": _tool_result_content(part.output.value),
            "is_error": part.is_error,
        }
        for part in message.content
    ]


def to_api_messages(
    messages: Sequence[UserMessage | AssistantMessage | ToolMessage],
) -> list[dict[str, Any]]:
    """Convert context messages to Anthropic ``messages``.

    Tool messages become user tool_result blocks, consecutive messages with
    the same API role are merged, and messages with no content are skipped.
    """
    api_messages: list[dict[str, Any]] = []
    for message in messages:
        role, blocks = _convert(message)
        if not blocks:
            continue
        if api_messages and api_messages[-1]["role"] == role:
            api_messages[-1]["content"].extend(blocks)
        else:
            api_messages.append({"role": role, "content": blocks})
    return api_messages


# ---------------------------------------------------------------------------
# SSE translation
# ---------------------------------------------------------------------------


@dataclass
class _StepState:
    """Accumulates one streamed API response."""

    blocks: dict[int, dict[str, Any]] = field(default_factory=dict)
    content: list[dict[str, Any]] = field(default_factory=list)  # raw blocks for the tool loop
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    input_tokens: int | None = None
    output_tokens: int | None = None
    cached_input_tokens: int | None = None
    stop_reason: str = ""

    @property
    def usage(self) -> Usage:
        total = None
        if self.input_tokens is not None or self.output_tokens is not None:
            total = (self.input_tokens or 0) + (self.output_tokens or 0)
        return Usage(
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            total_tokens=total,
            cached_input_tokens=self.cached_input_tokens,
        )


def translate_sse_event(data: dict[str, Any], state: _StepState) -> list[StreamPart]:
    """Translate one Anthropic SSE event dict into zero or more StreamParts.

    Skips ping keepalives. stop_reason is in message_delta.delta, not
    message_start. In-stream error events (HTTP 200 but error in body)
    raise ProviderError.
    """
    event_type = data.get("type")

    if event_type == "ping":
        return []

    if event_type == "error":
        error = data.get("error", {})
        raise ProviderError(
            f"{error.get('type', 'unknown')}: {error.get('message', '')}",
            error_type=error.get("type"),
        )

    if event_type == "message_start":
        usage = data.get("message", {}).get("usage", {})
        state.input_tokens = usage.get("input_tokens")
        state.cached_input_tokens = usage.get("cache_read_input_tokens")
        return []

    if event_type == "content_block_start":
        index = data.get("index", 0)
        block = data.get("content_block", {})
        block_type = block.get("type")
        if block_type == "tool_use":
            state.blocks[index] = {
                "type": "tool_use",
                "id": block.get("id", ""),
                "name": block.get("name", ""),
                "input_parts": [],
            }
            return []
        if block_type == "thinking":
            state.blocks[index] = {"type": "thinking", "thinking": "", "signature": ""}
            return [StreamPart(type=PartType.REASONING_START, id=str(index))]
        if block_type == "redacted_thinking":
            state.blocks[index] = {"type": "redacted_thinking", "data": block.get("data", "")}
            return []
        state.blocks[index] = {"type": "text", "text": ""}
        return [StreamPart(type=PartType.TEXT_START, id=str(index))]

    if event_type == "content_block_delta":
        index = data.get("index", 0)
        delta = data.get("delta", {})
        block = state.blocks.get(index)
        if block is None:
            return []
        delta_type = delta.get("type")
        if delta_type == "text_delta":
            block["text"] += delta.get("text", "")
            return [StreamPart(type=PartType.TEXT_DELTA, id=str(index), text=delta.get("text", ""))]
        if delta_type == "thinking_delta":
            block["thinking"] += delta.get("thinking", "")
            return [StreamPart(type=PartType.REASONING_DELTA, id=str(index), text=delta.get("thinking", ""))]
        if delta_type == "signature_delta":
            block["signature"] += delta.get("signature", "")
        elif delta_type == "input_json_delta":
            block["input_parts"].append(delta.get("partial_json", ""))
        return []

    if event_type == "content_block_stop":
        index = data.get("index", 0)
        block = state.blocks.pop(index, None)
        if block is None:
            return []
        if block["type"] == "tool_use":
            input_json = "".join(block["input_parts"])
            try:
                tool_input = json.loads(input_json) if input_json else {}
            except json.JSONDecodeError:
                logger.warning("Unparseable input for tool %s: %r", block["name"], input_json[:200])
                tool_input = {}
            call = {"id": block["id"], "name": block["name"], "input": tool_input}
            state.tool_calls.append(call)
            state.content.append({"type": "tool_use", **call})
            return [
                StreamPart(
                    type=PartType.TOOL_CALL,
                    tool_call_id=call["id"],
                    tool_name=call["name"],
                    input=tool_input,
                )
            ]
        state.content.append(block)
        if block["type"] == "thinking":
            return [StreamPart(type=PartType.REASONING_END, id=str(index))]
        if block["type"] == "text":
            return [StreamPart(type=PartType.TEXT_END, id=str(index))]
        return []

    if event_type == "message_delta":
        state.stop_reason = data.get("delta", {}).get("stop_reason") or state.stop_reason
        output_tokens = data.get("usage", {}).get("output_tokens")
        if output_tokens is not None:
            state.output_tokens = output_tokens
        return []

    return []


# ---------------------------------------------------------------------------
# Cancellation helper
# ---------------------------------------------------------------------------

_CANCELLED = object()


async def _until_cancelled(awaitable: Awaitable[Any], token: CancellationToken) -> Any:
    """Await ``awaitable`` unless the token fires first.

    Returns the result, or _CANCELLED after cancelling the pending work.
    """
    task = asyncio.ensure_future(awaitable)
    if token.cancelled:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return _CANCELLED

    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    return _CANCELLED


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class AnthropicProvider:
    """Streams Anthropic Messages API calls as StreamParts."""

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        settings = self._settings

        headers: dict[str, str] = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }

        # Auth token (Bearer) takes precedence over API key (x-api-key)
        if settings.anthropic_auth_token:
            headers["authorization"] = f"Bearer {settings.anthropic_auth_token}"
        elif settings.anthropic_api_key:
            headers["x-api-key"] = settings.anthropic_api_key
        else:
            logger.warning(
                "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
                "API calls will fail"
            )

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(
            max_connections=10,
            max_keepalive_connections=5,
        )

        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
            transport=self._transport,
        )
        logger.info("httpx client initialized (auth: %s)", "Bearer token" if settings.anthropic_auth_token else "API key")

    async def close(self) -> None:
        """Clean up httpx client."""
        if self._http:
            await self._http.aclose()
            self._http = None

    async def __aenter__(self) -> "AnthropicProvider":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Payload
    # ------------------------------------------------------------------

    def build_payload(
        self,
        request: StreamRequest,
        messages: list[dict[str, Any]],
        tools: ToolSet,
    ) -> dict[str, Any]:
        """Build the Messages API request body for one step."""
        payload: dict[str, Any] = {
            "model": request.model,
            "max_tokens": self._settings.max_tokens,
            "messages": messages,
            "stream": True,
        }
        if request.system_prompt:
            payload["system"] = request.system_prompt
        if len(tools):
            payload["tools"] = tools.definitions()
        for key, value in (
            ("temperature", request.temperature),
            ("top_p", request.top_p),
            ("top_k", request.top_k),
        ):
            if value is not None:
                payload[key] = value
        payload.update(request.provider_options.get("anthropic", {}))
        return payload

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def stream(self, request: StreamRequest) -> AsyncGenerator[StreamPart, None]:
        """Run one model call, including its tool loop, as a part stream."""
        if self._http is None:
            await self.start()

        token = request.token
        tools = ToolSet(request.tools)
        messages = to_api_messages(request.messages)
        total_usage: Usage | None = None
        finish_reason = FinishReason.UNKNOWN

        yield StreamPart(type=PartType.START)
        try:
            for _ in range(self._settings.max_steps):
                if token.cancelled:
                    break
                yield StreamPart(type=PartType.START_STEP)

                state = _StepState()
                payload = self.build_payload(request, messages, tools)
                async with aclosing(self._stream_step(payload, state, token)) as parts:
                    async for part in parts:
                        yield part
                if token.cancelled:
                    break

                step_usage = state.usage
                total_usage = step_usage.merge(total_usage)
                finish_reason = map_stop_reason(state.stop_reason)

                if state.stop_reason != "tool_use" or not state.tool_calls:
                    yield StreamPart(type=PartType.FINISH_STEP, finish_reason=finish_reason, usage=step_usage)
                    break

                # Full assistant response (all content blocks) keeps thinking
                # signatures valid for the next step.
                messages.append({"role": "assistant", "content": state.content})
                results: list[dict[str, Any]] = []
                async with aclosing(self._run_tools(state.tool_calls, tools, token, results)) as parts:
                    async for part in parts:
                        yield part
                if token.cancelled:
                    break
                messages.append({"role": "user", "content": results})

                yield StreamPart(type=PartType.FINISH_STEP, finish_reason=finish_reason, usage=step_usage)
            else:
                logger.warning("Tool loop reached max_steps=%d", self._settings.max_steps)

            if token.cancelled:
                yield StreamPart(type=PartType.ABORT, reason=token.reason)
                return

            yield StreamPart(type=PartType.FINISH, finish_reason=finish_reason, usage=total_usage)

        except (ProviderError, httpx.HTTPError) as e:
            logger.error("Streaming error: %s", e)
            yield StreamPart(type=PartType.ERROR, error=e)

    async def _stream_step(
        self,
        payload: dict[str, Any],
        state: _StepState,
        token: CancellationToken,
    ) -> AsyncGenerator[StreamPart, None]:
        """Stream one API response. Stops quietly if the token fires.

        Retries once on 429/500/529 before anything was streamed.
        """
        assert self._http is not None

        for attempt in range(2):
            async with self._http.stream("POST", "/v1/messages", json=payload) as response:
                if response.status_code != 200:
                    body = await response.aread()
                    error = _api_error(response.status_code, body)
                    if response.status_code in _RETRY_STATUS and attempt == 0:
                        retry_after = min(float(response.headers.get("retry-after", "1")), _MAX_RETRY_AFTER)
                        logger.warning(
                            "API error %d (%s), retrying in %.1fs: %s",
                            response.status_code,
                            error.error_type,
                            retry_after,
                            error,
                        )
                        if await _until_cancelled(asyncio.sleep(retry_after), token) is _CANCELLED:
                            return
                        continue
                    raise error

                lines = response.aiter_lines()
                while True:
                    line = await _until_cancelled(anext(lines, None), token)
                    if line is _CANCELLED or line is None:
                        return
                    # Only data: lines matter; event: lines are redundant.
                    if not line.startswith("data: "):
                        continue
                    try:
                        data = json.loads(line[6:])
                    except json.JSONDecodeError:
                        logger.warning("Skipping malformed SSE line: %r", line[:200])
                        continue
                    for part in translate_sse_event(data, state):
                        yield part

    async def _run_tools(
        self,
        tool_calls: list[dict[str, Any]],
        tools: ToolSet,
        token: CancellationToken,
        results: list[dict[str, Any]],
    ) -> AsyncGenerator[StreamPart, None]:
        """Execute tool calls in order, collecting API tool_result blocks."""
        for call in tool_calls:
            try:
                output = await _until_cancelled(tools.invoke(call["name"], call["input"], token), token)
            except Exception as e:
                logger.warning("Tool %s failed: %s", call["name"], e)
                results.append({
                    "type": "tool_result",
                    "tool_use_id": call["id"],
                    "content": f"Tool error: {e}",
                    "is_error": True,
                })
                yield StreamPart(
                    type=PartType.TOOL_ERROR,
                    tool_call_id=call["id"],
                    tool_name=call["name"],
                    input=call["input"],
                    error=e,
                )
                continue

            if output is _CANCELLED:
                return

            results.append({
                "type": "tool_result",
                "tool_use_id": call["id"],
                "content": _tool_result_content(output),
            })
            yield StreamPart(
                type=PartType.TOOL_RESULT,
                tool_call_id=call["id"],
                tool_name=call["name"],
                input=call["input"],
                output=output,
            )


def _api_error(status_code: int, body: bytes) -> ProviderError:
    try:
        error_data = json.loads(body)
        error_type = error_data.get("error", {}).get("type", "unknown")
        error_msg = error_data.get("error", {}).get("message", "unknown error")
    except (ValueError, AttributeError):
        error_type = "http_error"
        error_msg = f"HTTP {status_code}: {body.decode(errors='replace')[:500]}"
    return ProviderError(
        f"Anthropic API error ({status_code}): {error_type} - {error_msg}",
        status_code=status_code,
        error_type=error_type,
    )
