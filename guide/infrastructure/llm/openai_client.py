"""
Upstream chat completions client.

Streams Server-Sent Events over httpx, decodes them incrementally and yields
content deltas. Function-tool calls streamed by the model are accumulated and,
when a handler is supplied, executed between rounds.
"""

from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, NamedTuple, Optional, Tuple
import codecs
import json

import httpx
import structlog
from langchain_core.messages import BaseMessage
from pydantic import BaseModel, Field

from guide.domain.errors import UpstreamModelError

logger = structlog.get_logger(__name__)

_ROLE_BY_TYPE = {"system": "system", "human": "user", "ai": "assistant", "tool": "tool"}


class ToolCall(NamedTuple):
    id: str
    name: str
    arguments: str


ToolCallHandler = Callable[[ToolCall], Awaitable[str]]


class ChatCompletion(BaseModel):
    content: str = ""
    refusal: Optional[str] = None
    finish_reason: Optional[str] = None
    usage: Dict[str, Any] = Field(default_factory=dict)
    tool_rounds: int = 0


def to_openai_messages(messages: List[Any]) -> List[Dict[str, Any]]:
    """Accept langchain messages or plain role/content dicts"""

    converted = []
    for message in messages:
        if isinstance(message, BaseMessage):
            converted.append({"role": _ROLE_BY_TYPE.get(message.type, "user"), "content": message.content})
        else:
            converted.append(dict(message))
    return converted


def supports_temperature(model: str) -> bool:
    return not model.startswith("gpt-5")


class SSEDecoder:
    """Incrementally decodes bytes into parsed ``data:`` payloads"""

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.done = False

    def feed(self, chunk: bytes) -> List[Any]:
        self._buffer += self._decoder.decode(chunk).replace("\r\n", "\n")
        *blocks, self._buffer = self._buffer.split("\n\n")
        return self._parse_blocks(blocks)

    def finish(self) -> List[Any]:
        self._buffer += self._decoder.decode(b"", final=True)
        rest, self._buffer = self._buffer, ""
        return self._parse_blocks([rest]) if rest.strip() else []

    def _parse_blocks(self, blocks: List[str]) -> List[Any]:
        payloads = []
        for block in blocks:
            if self.done:
                break
            data_lines = [
                line[5:].lstrip() for line in block.split("\n")
                if line.startswith("data:")
            ]
            if not data_lines:
                continue

            data = "\n".join(data_lines).strip()
            if data == "[DONE]":
                self.done = True
                break

            try:
                payloads.append(json.loads(data))
            except json.JSONDecodeError:
                logger.debug("Ignoring malformed SSE frame", frame=data[:120])
        return payloads


class _ToolCallAccumulator:
    def __init__(self):
        self._calls: Dict[int, Dict[str, str]] = {}

    def add(self, deltas: List[Dict[str, Any]]) -> None:
        for delta in deltas:
            slot = self._calls.setdefault(delta.get("index", 0), {"id": "", "name": "", "arguments": ""})
            if delta.get("id"):
                slot["id"] = delta["id"]
            function = delta.get("function") or {}
            if function.get("name"):
                slot["name"] += function["name"]
            if function.get("arguments"):
                slot["arguments"] += function["arguments"]

    def calls(self) -> List[ToolCall]:
        return [
            ToolCall(slot["id"], slot["name"], slot["arguments"] or "{}")
            for _, slot in sorted(self._calls.items())
            if slot["name"]
        ]


class OpenAIClient:
    """Thin async client for the chat completions endpoint"""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://api.openai.com/v1",
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(60.0, read=None))

    async def aclose(self) -> None:
        await self.http.aclose()

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

    def _body(
        self,
        messages: List[Dict[str, Any]],
        model: str,
        max_completion_tokens: int,
        temperature: Optional[float],
        tools: Optional[List[Dict[str, Any]]],
        stream: bool
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_completion_tokens": max_completion_tokens,
            "stream": stream,
        }
        if temperature is not None and supports_temperature(model):
            body["temperature"] = temperature
        if tools:
            body["tools"] = tools
        return body

    async def stream_chat(
        self,
        messages: List[Any],
        model: str,
        max_completion_tokens: int,
        temperature: Optional[float] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
        on_tool_call: Optional[ToolCallHandler] = None,
        max_tool_iterations: int = 3
    ) -> AsyncIterator[str]:
        """Yield content deltas; tool rounds run transparently when a handler is given"""

        conversation = to_openai_messages(messages)

        for iteration in range(max(1, max_tool_iterations)):
            body = self._body(conversation, model, max_completion_tokens, temperature, tools, stream=True)
            accumulator = _ToolCallAccumulator()
            content_parts: List[str] = []

            async with self.http.stream(
                "POST", f"{self.base_url}/chat/completions", json=body, headers=self._headers()
            ) as response:
                if response.status_code >= 400:
                    text = (await response.aread()).decode("utf-8", errors="replace")
                    raise UpstreamModelError(
                        f"OpenAI API error: {response.status_code} - {text}",
                        status=response.status_code,
                        body=text,
                    )

                decoder = SSEDecoder()
                async for chunk in response.aiter_bytes():
                    for payload in decoder.feed(chunk):
                        delta = self._first_delta(payload)
                        if delta.get("content"):
                            content_parts.append(delta["content"])
                            yield delta["content"]
                        if delta.get("tool_calls"):
                            accumulator.add(delta["tool_calls"])
                    if decoder.done:
                        break
                else:
                    for payload in decoder.finish():
                        delta = self._first_delta(payload)
                        if delta.get("content"):
                            content_parts.append(delta["content"])
                            yield delta["content"]
                        if delta.get("tool_calls"):
                            accumulator.add(delta["tool_calls"])

            calls = accumulator.calls()
            if not calls or on_tool_call is None:
                return

            logger.info("Executing tool calls", count=len(calls), iteration=iteration)
            conversation = conversation + await self._tool_round(calls, "".join(content_parts), on_tool_call)

    async def complete_chat(
        self,
        messages: List[Any],
        model: str,
        max_completion_tokens: int,
        temperature: Optional[float] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
        on_tool_call: Optional[ToolCallHandler] = None,
        max_tool_iterations: int = 3
    ) -> ChatCompletion:
        """Non-streaming completion with the same tool loop"""

        conversation = to_openai_messages(messages)
        rounds = 0

        while True:
            body = self._body(conversation, model, max_completion_tokens, temperature, tools, stream=False)
            response = await self.http.post(
                f"{self.base_url}/chat/completions", json=body, headers=self._headers()
            )
            if response.status_code >= 400:
                raise UpstreamModelError(
                    f"OpenAI API error: {response.status_code} - {response.text}",
                    status=response.status_code,
                    body=response.text,
                )
            if not response.content:
                raise UpstreamModelError("OpenAI API returned an empty body", status=response.status_code)

            data, choice, message, calls = self._parse_completion(response)

            if calls and on_tool_call is not None and rounds < max_tool_iterations:
                rounds += 1
                conversation = conversation + await self._tool_round(calls, message.get("content") or "", on_tool_call)
                continue

            return ChatCompletion(
                content=message.get("content") or "",
                refusal=message.get("refusal"),
                finish_reason=choice.get("finish_reason"),
                usage=data.get("usage") or {},
                tool_rounds=rounds,
            )

    @staticmethod
    def _parse_completion(
        response: httpx.Response
    ) -> Tuple[Dict[str, Any], Dict[str, Any], Dict[str, Any], List[ToolCall]]:
        """Decode a completion body; anything not shaped like one is an upstream failure"""

        try:
            data = response.json()
            choice = (data.get("choices") or [{}])[0]
            message = choice.get("message") or {}
            calls = [
                ToolCall(c.get("id", ""), c["function"]["name"], c["function"].get("arguments") or "{}")
                for c in message.get("tool_calls") or []
                if c.get("function", {}).get("name")
            ]
        except (ValueError, AttributeError, TypeError, KeyError, IndexError) as e:
            raise UpstreamModelError(
                f"OpenAI API returned an unreadable completion: {e}",
                status=response.status_code,
                body=response.text[:500],
            ) from e
        return data, choice, message, calls

    @staticmethod
    def _first_delta(payload: Any) -> Dict[str, Any]:
        if not isinstance(payload, dict):
            return {}
        choices = payload.get("choices") or [{}]
        return choices[0].get("delta") or {}

    @staticmethod
    async def _tool_round(
        calls: List[ToolCall],
        assistant_content: str,
        on_tool_call: ToolCallHandler
    ) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = [{
            "role": "assistant",
            "content": assistant_content or None,
            "tool_calls": [
                {"id": c.id, "type": "function", "function": {"name": c.name, "arguments": c.arguments}}
                for c in calls
            ],
        }]
        for call in calls:
            output = await on_tool_call(call)
            messages.append({"role": "tool", "tool_call_id": call.id, "content": output})
        return messages
