from typing import Any, Dict, List, Optional
from contextlib import aclosing
from enum import Enum
import json

import structlog
from pydantic import BaseModel, Field

from guide.domain.streaming.ndjson import EventChannel, NdjsonLineBuffer
from guide.domain.tool.action_validator import SCHEMA_FAILED, GuideEventValidator
from guide.domain.tool.tool_executor import ToolExecutor
from guide.infrastructure.llm.openai_client import OpenAIClient
from guide.infrastructure.observability.logging import MetricsCollector, guide_logger

logger = structlog.get_logger(__name__)

MIN_SUGGESTIONS = 3
MAX_SUGGESTIONS = 5

DROP_INVALID_JSON = "invalid_json"
DROP_MAX_SUGGESTIONS = "max_suggestions_reached"
DROP_INVALID_COUNT = "invalid_suggestion_count"
DROP_DUPLICATE_DONE = "duplicate_done"
DROP_AFTER_DONE = "after_done"


class RunnerState(str, Enum):
    """Protocol state of one suggestions stream"""
    STREAMING = "streaming"
    ACCEPTING = "accepting"
    DONE = "done"


class StreamRunResult(BaseModel):
    has_done: bool
    accepted_suggestions: int
    dropped: Dict[str, int] = Field(default_factory=dict)
    raw_text: str = ""
    state: RunnerState
    emitted: List[Dict[str, Any]] = Field(default_factory=list)


class GuideStreamRunner:
    """Drives one streamed completion and forwards only protocol-valid events"""

    def __init__(
        self,
        client: OpenAIClient,
        validator: GuideEventValidator,
        channel: EventChannel,
        model: str,
        max_completion_tokens: int,
        temperature: Optional[float] = None,
        debug_scope: str = "guide_start",
        emit_debug: bool = False,
        tool_executor: Optional[ToolExecutor] = None,
        max_tool_iterations: int = 3,
        metrics: Optional[MetricsCollector] = None
    ):
        self.client = client
        self.validator = validator
        self.channel = channel
        self.model = model
        self.max_completion_tokens = max_completion_tokens
        self.temperature = temperature
        self.debug_scope = debug_scope
        self.emit_debug = emit_debug
        self.tool_executor = tool_executor
        self.max_tool_iterations = max_tool_iterations
        self.metrics = metrics

        self.state = RunnerState.STREAMING
        self.accepted = 0
        self.dropped: Dict[str, int] = {}
        self.emitted: List[Dict[str, Any]] = []
        self._debug_sent = False

    @property
    def has_done(self) -> bool:
        return self.state == RunnerState.DONE

    async def run(self, messages: List[Any]) -> StreamRunResult:
        """Consume the upstream stream until it closes or a delta carrying a valid done is processed"""

        buffer = NdjsonLineBuffer()
        raw_parts: List[str] = []

        stream = self.client.stream_chat(
            messages,
            model=self.model,
            max_completion_tokens=self.max_completion_tokens,
            temperature=self.temperature,
            tools=self.tool_executor.definitions if self.tool_executor else None,
            on_tool_call=self.tool_executor.execute if self.tool_executor else None,
            max_tool_iterations=self.max_tool_iterations,
        )

        async with aclosing(stream) as deltas:
            async for delta in deltas:
                raw_parts.append(delta)
                # Complete lines already received after done are still counted as drops
                for line in buffer.feed(delta):
                    await self.process_line(line)
                if self.has_done:
                    break

        if not self.has_done:
            for line in buffer.flush():
                await self.process_line(line)

        if self.emit_debug and not self._debug_sent:
            await self._send_debug_summary()

        guide_logger.log_stream_summary(self.debug_scope, self.has_done, self.accepted, self.dropped)
        if self.metrics:
            self.metrics.increment_counter("guide.accepted_suggestions", self.accepted)

        return StreamRunResult(
            has_done=self.has_done,
            accepted_suggestions=self.accepted,
            dropped=dict(self.dropped),
            raw_text="".join(raw_parts),
            state=self.state,
            emitted=list(self.emitted),
        )

    async def process_line(self, line: str) -> None:
        """Parse, validate and apply structural rules to one NDJSON line"""

        line = line.strip()
        if not line:
            return

        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            self._drop(DROP_INVALID_JSON)
            return

        if self.has_done:
            self._drop(DROP_DUPLICATE_DONE if isinstance(event, dict) and event.get("type") == "done" else DROP_AFTER_DONE)
            return

        result = self.validator.validate(event)
        if not result.is_valid:
            self._drop(SCHEMA_FAILED)
            self._drop(result.reason)
            logger.debug("Dropped event", reason=result.reason, errors=result.errors)
            return

        if result.event["type"] == "suggestion":
            await self._accept_suggestion(result.event)
        else:
            await self._accept_done()

    async def _accept_suggestion(self, event: Dict[str, Any]) -> None:
        if self.accepted >= MAX_SUGGESTIONS:
            self._drop(DROP_MAX_SUGGESTIONS)
            return

        self.accepted += 1
        if self.accepted >= MIN_SUGGESTIONS:
            self.state = RunnerState.ACCEPTING
        await self._forward(event)

    async def _accept_done(self) -> None:
        if not MIN_SUGGESTIONS <= self.accepted <= MAX_SUGGESTIONS:
            self._drop(DROP_INVALID_COUNT)
            return

        if self.emit_debug:
            await self._send_debug_summary()
        await self._forward({"type": "done"})
        self.state = RunnerState.DONE

    async def _send_debug_summary(self) -> None:
        self._debug_sent = True
        await self._forward({
            "type": "debug",
            "scope": self.debug_scope,
            "dropped": dict(self.dropped),
            "accepted_suggestions": self.accepted,
            "used_fallback": False,
        })

    async def _forward(self, event: Dict[str, Any]) -> None:
        self.emitted.append(event)
        await self.channel.send(event)

    def _drop(self, reason: str) -> None:
        self.dropped[reason] = self.dropped.get(reason, 0) + 1
        if self.metrics:
            self.metrics.increment_counter(f"guide.dropped.{reason}")
