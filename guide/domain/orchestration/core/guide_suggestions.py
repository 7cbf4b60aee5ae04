from typing import List, Optional, Sequence
import json

import structlog
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from guide.config import Settings
from guide.domain.context.context_manager import ContextManager, GuideContext
from guide.domain.errors import GuideError
from guide.domain.orchestration.prompts import GUIDE_SYSTEM_PROMPT
from guide.domain.streaming.ndjson import EventChannel
from guide.domain.streaming.streaming_handler import GuideStreamRunner, StreamRunResult
from guide.domain.tool.action_validator import GuideEventValidator
from guide.domain.tool.tool_executor import ToolExecutor
from guide.domain.tool.tool_registry import ContextToolRegistry
from guide.infrastructure.llm.openai_client import OpenAIClient
from guide.infrastructure.observability.langfuse_tracing import LangfuseTracer
from guide.infrastructure.observability.logging import MetricsCollector

logger = structlog.get_logger(__name__)


def build_guide_messages(guide_context: GuideContext) -> List[BaseMessage]:
    """System prompt plus the compact payload as the user turn"""

    payload = dict(guide_context.compressed.payload)
    if guide_context.user.first_name:
        payload["user"] = {"first_name": guide_context.user.first_name}

    return [
        SystemMessage(content=GUIDE_SYSTEM_PROMPT),
        HumanMessage(content=json.dumps(payload, separators=(",", ":"), ensure_ascii=False)),
    ]


class GuideSuggestionService:
    """Builds suggestions context and drives one validated NDJSON stream"""

    def __init__(
        self,
        context_manager: ContextManager,
        client: Optional[OpenAIClient],
        settings: Settings,
        metrics: Optional[MetricsCollector] = None,
        tracer: Optional[LangfuseTracer] = None,
        tool_registry: Optional[ContextToolRegistry] = None
    ):
        self.context_manager = context_manager
        self.client = client
        self.settings = settings
        self.metrics = metrics
        self.tracer = tracer or LangfuseTracer(None)
        self.tool_registry = tool_registry

    async def prepare(self, user_id: str, enabled_actions: Optional[Sequence[str]]) -> GuideContext:
        if self.client is None:
            raise GuideError("OPENAI_API_KEY is not configured")
        return await self.context_manager.build_suggestions_context(user_id, enabled_actions)

    async def run(
        self,
        user_id: str,
        guide_context: GuideContext,
        channel: EventChannel,
        emit_debug: bool = False,
        trace_id: Optional[str] = None
    ) -> StreamRunResult:
        """Stream into the channel; the channel is always closed or failed on exit"""

        executor = None
        if self.tool_registry is not None and self.settings.guide_tools_enabled:
            executor = ToolExecutor(self.tool_registry, user_id)

        runner = GuideStreamRunner(
            client=self.client,
            validator=GuideEventValidator(
                guide_context.compressed.allowed_evidence_ids,
                guide_context.compressed.allowed_action_types,
            ),
            channel=channel,
            model=self.settings.guide_model,
            max_completion_tokens=self.settings.guide_max_completion_tokens,
            emit_debug=emit_debug,
            tool_executor=executor,
            max_tool_iterations=self.settings.max_tool_iterations,
            metrics=self.metrics,
        )
        messages = build_guide_messages(guide_context)

        try:
            result = await runner.run(messages)
        except Exception as e:
            logger.error("Guide stream failed", user_id=user_id, error=str(e))
            channel.fail(e)
            raise

        channel.close()

        if trace_id:
            self.tracer.record_generation(
                name="guide.suggestions",
                trace_id=trace_id,
                user_id=user_id,
                model=self.settings.guide_model,
                input_messages=[{"role": m.type, "content": m.content} for m in messages],
                output=result.raw_text,
                metadata={
                    "accepted_suggestions": result.accepted_suggestions,
                    "dropped": result.dropped,
                    "has_done": result.has_done,
                },
            )
        return result
