from typing import Optional
import time

import structlog

from guide.config import Settings
from guide.domain.context.fetchers.base import create_redacted_preview
from guide.domain.errors import GuideError
from guide.domain.models.pipeline import PipelineStage, RunContext
from guide.domain.orchestration.stages.base_stage import BaseStage, StageArtifacts, StageOutput
from guide.domain.orchestration.stages.prompt_assembly import assembled_messages, assembled_settings
from guide.domain.tool.tool_executor import ToolExecutor
from guide.domain.tool.tool_registry import ContextToolRegistry
from guide.infrastructure.llm.openai_client import OpenAIClient
from guide.infrastructure.observability.langfuse_tracing import LangfuseTracer

logger = structlog.get_logger(__name__)

RESPONSE_PREVIEW_CHARS = 500


class ModelCallStage(BaseStage):
    """Runs the completion from the assembled prompt alone"""

    stage = PipelineStage.MODEL_CALL
    description = "call the chat model"

    def __init__(
        self,
        client: Optional[OpenAIClient],
        settings: Settings,
        tracer: Optional[LangfuseTracer] = None,
        tool_registry: Optional[ContextToolRegistry] = None
    ):
        self.client = client
        self.settings = settings
        self.tracer = tracer or LangfuseTracer(None)
        self.tool_registry = tool_registry

    async def execute(self, context: RunContext, artifacts: StageArtifacts) -> StageOutput:
        if self.client is None:
            raise GuideError("OPENAI_API_KEY is not configured")

        assembly = self.require_payload(artifacts, PipelineStage.PROMPT_ASSEMBLY)
        messages = assembled_messages(assembly)
        model_settings = assembled_settings(assembly, self.settings)

        executor = None
        if self.tool_registry is not None and self.settings.chat_tools_enabled:
            executor = ToolExecutor(self.tool_registry, context.user_id)

        started = time.perf_counter()
        completion = await self.client.complete_chat(
            messages,
            model=model_settings["model"],
            max_completion_tokens=model_settings["max_tokens"],
            temperature=model_settings.get("temperature"),
            tools=executor.definitions if executor else None,
            on_tool_call=executor.execute if executor else None,
            max_tool_iterations=self.settings.max_tool_iterations,
        )
        latency_ms = (time.perf_counter() - started) * 1000

        response = completion.content
        source = "model"
        if not response and completion.refusal:
            response, source = completion.refusal, "refusal"

        self.tracer.record_generation(
            name=f"chat.{context.entrypoint.value}",
            trace_id=context.trace_id,
            user_id=context.user_id,
            model=model_settings["model"],
            input_messages=messages,
            output=response,
            usage=completion.usage,
            metadata={"run_id": context.run_id, "mode": context.mode.value},
        )

        logger.info(
            "Model call finished",
            run_id=context.run_id,
            model=model_settings["model"],
            latency_ms=round(latency_ms, 1),
            finish_reason=completion.finish_reason,
            tool_rounds=completion.tool_rounds
        )

        return StageOutput(
            summary=f"{len(response)} chars from {model_settings['model']}",
            payload={
                "model": model_settings["model"],
                "latency_ms": round(latency_ms, 1),
                "usage": completion.usage,
                "finish_reason": completion.finish_reason,
                "tool_rounds": completion.tool_rounds,
                "response_preview": create_redacted_preview(response, RESPONSE_PREVIEW_CHARS),
                "response_length": len(response),
                "response_source": source,
                "response": response,
            },
            stats={
                "latency_ms": round(latency_ms, 1),
                "total_tokens": (completion.usage or {}).get("total_tokens"),
            },
        )
