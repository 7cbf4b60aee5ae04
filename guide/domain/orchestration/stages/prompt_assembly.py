from typing import Any, Dict, List, Optional, Tuple
import json
import math

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from guide.config import Settings
from guide.domain.context.context_manager import CandidateSet, ContextManager
from guide.domain.context.fetchers.base import create_redacted_preview
from guide.domain.context.state.conversation_state import ConversationStateManager
from guide.domain.models.candidate import Candidate
from guide.domain.models.pipeline import PipelineStage, Plan, RunContext
from guide.domain.orchestration.prompts import PROMPT_VERSION, build_chat_system_prompt
from guide.domain.orchestration.stages.base_stage import BaseStage, StageArtifacts, StageOutput
from guide.infrastructure.llm.openai_client import to_openai_messages


def _tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


class PromptAssemblyStage(BaseStage):
    """Compresses candidates and lays out the full message list for the model call"""

    stage = PipelineStage.PROMPT_ASSEMBLY
    description = "compress context and assemble messages"

    def __init__(
        self,
        context_manager: ContextManager,
        conversation_state: ConversationStateManager,
        settings: Settings
    ):
        self.context_manager = context_manager
        self.conversation_state = conversation_state
        self.settings = settings

    async def execute(self, context: RunContext, artifacts: StageArtifacts) -> StageOutput:
        ingress = self.require_payload(artifacts, PipelineStage.INGRESS)
        gathered = self.require_payload(artifacts, PipelineStage.CONTEXT_CANDIDATES)

        plan = Plan.model_validate(gathered["plan"])
        candidate_set = CandidateSet(
            candidates=[Candidate.model_validate(c) for c in gathered["candidates"]],
            by_source_counts=gathered.get("by_source_counts", {}),
        )
        compressed = self.context_manager.compress(
            context.user_id, candidate_set, plan, context.enabled_actions or None
        )

        system_prompt = build_chat_system_prompt(
            plan.mode,
            first_name=(gathered.get("user") or {}).get("first_name"),
            safety=any(plan.safety_flags.values()),
        )
        context_block = "USER CONTEXT (JSON):\n" + json.dumps(compressed.payload, separators=(",", ":"), ensure_ascii=False)
        history, history_source = await self._history(context, ingress["normalized_message"])

        messages: List[BaseMessage] = [
            SystemMessage(content=system_prompt),
            SystemMessage(content=context_block),
            *history,
        ]
        wire_messages = to_openai_messages(messages)

        history_tokens = sum(_tokens(str(m.content)) for m in history[:-1])
        user_tokens = _tokens(ingress["normalized_message"])
        token_breakdown = {
            "system": _tokens(system_prompt),
            "context": _tokens(context_block),
            "history": history_tokens,
            "user": user_tokens,
        }
        token_breakdown["total"] = sum(token_breakdown.values())

        return StageOutput(
            summary=f"{len(wire_messages)} messages, ~{token_breakdown['total']} tokens",
            payload={
                "prompt_version": PROMPT_VERSION,
                "messages": wire_messages,
                "message_previews": [
                    {"role": m["role"], "preview": create_redacted_preview(str(m.get("content") or ""), 200)}
                    for m in wire_messages
                ],
                "history_source": history_source,
                "token_breakdown": token_breakdown,
                "model_settings": {
                    "model": self.settings.chat_model,
                    "max_tokens": self.settings.chat_max_tokens,
                    "temperature": self.settings.chat_temperature,
                },
                "compressor": {
                    "payload_chars": compressed.payload_chars,
                    "estimated_tokens": compressed.estimated_tokens,
                    "elided": compressed.elided,
                    "allowed_evidence_ids": compressed.allowed_evidence_ids,
                    "allowed_action_types": compressed.allowed_action_types,
                },
            },
            stats={
                "message_count": len(wire_messages),
                "estimated_tokens": token_breakdown["total"],
                "context_chars": compressed.payload_chars,
            },
        )

    async def _history(self, context: RunContext, message: str) -> Tuple[List[BaseMessage], str]:
        """Supplied history wins; otherwise the stored conversation window"""

        if context.conversation_history:
            history: List[BaseMessage] = [
                HumanMessage(content=m.content) if m.role == "user" else AIMessage(content=m.content)
                for m in context.conversation_history
            ]
            history.append(HumanMessage(content=message))
            return history, "supplied"

        state = None
        if context.conversation_id:
            state = await self.conversation_state.get_state(context.conversation_id, context.user_id)
        return self.conversation_state.build_messages(state, message), "conversation_state" if state else "none"


def assembled_messages(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    return list(payload.get("messages") or [])


def assembled_settings(payload: Dict[str, Any], settings: Settings) -> Dict[str, Any]:
    stored: Optional[Dict[str, Any]] = payload.get("model_settings")
    return stored or {
        "model": settings.chat_model,
        "max_tokens": settings.chat_max_tokens,
        "temperature": settings.chat_temperature,
    }
