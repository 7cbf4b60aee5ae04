from typing import Any, Dict, List, Optional

import structlog
from langfuse import Langfuse

from guide.config import Settings

logger = structlog.get_logger(__name__)


class LangfuseTracer:
    """Records model calls to Langfuse when credentials are configured"""

    def __init__(self, client: Optional[Langfuse] = None):
        self.client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "LangfuseTracer":
        if not settings.langfuse_enabled:
            return cls(None)

        return cls(Langfuse(
            public_key=settings.langfuse_public_key,
            secret_key=settings.langfuse_secret_key,
            host=settings.langfuse_host
        ))

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def record_generation(
        self,
        name: str,
        trace_id: str,
        user_id: Optional[str],
        model: str,
        input_messages: List[Dict[str, Any]],
        output: str,
        usage: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Attach a generation to the trace for this run"""

        if self.client is None:
            return

        try:
            trace = self.client.trace(
                id=trace_id,
                name=name,
                user_id=user_id,
                metadata=metadata or {}
            )
            trace.generation(
                name=name,
                model=model,
                input=input_messages,
                output=output,
                usage=usage,
                metadata=metadata or {}
            )
        except Exception as e:
            logger.warning("Langfuse generation failed", trace_id=trace_id, error=str(e))

    def flush(self) -> None:
        if self.client is not None:
            self.client.flush()
