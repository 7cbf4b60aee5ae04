from typing import Any, Dict
import json
import time

import jsonschema
import structlog

from guide.domain.tool.tool_registry import ContextToolRegistry
from guide.infrastructure.llm.openai_client import ToolCall

logger = structlog.get_logger(__name__)


class ToolExecutor:
    """Executes model tool calls for one user; failures become tool output, never exceptions"""

    def __init__(self, registry: ContextToolRegistry, user_id: str):
        self.registry = registry
        self.user_id = user_id

    @property
    def definitions(self):
        return self.registry.definitions()

    async def execute(self, call: ToolCall) -> str:
        started = time.perf_counter()
        tool = self.registry.get_tool(call.name)
        if tool is None:
            return self._error(call, f"Unknown tool: {call.name}")

        try:
            arguments: Dict[str, Any] = json.loads(call.arguments or "{}")
        except json.JSONDecodeError:
            return self._error(call, "Arguments are not valid JSON")

        try:
            jsonschema.validate(arguments, tool["parameters"])
        except jsonschema.ValidationError as e:
            return self._error(call, f"Schema validation failed: {e.message}")

        try:
            result = await tool["handler"](self.user_id, arguments)
        except Exception as e:
            logger.exception("Tool execution failed", tool=call.name)
            return self._error(call, str(e))

        logger.info(
            "tool_execution",
            tool=call.name,
            user_id=self.user_id,
            duration_ms=(time.perf_counter() - started) * 1000,
        )
        return json.dumps(result, default=str)

    def _error(self, call: ToolCall, message: str) -> str:
        logger.warning("Tool call rejected", tool=call.name, error=message)
        return json.dumps({"error": message})
