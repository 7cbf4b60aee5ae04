from abc import ABC, abstractmethod
from typing import Any, Dict, NamedTuple, Optional

from guide.domain.errors import StageExecutionError
from guide.domain.models.pipeline import PipelineArtifact, PipelineStage, RunContext

StageArtifacts = Dict[str, PipelineArtifact]


class StageOutput(NamedTuple):
    summary: str
    payload: Dict[str, Any]
    stats: Optional[Dict[str, Any]] = None


class BaseStage(ABC):
    """One fixed pipeline stage; reads earlier stages only through their artifacts"""

    stage: PipelineStage
    description: str = ""

    @abstractmethod
    async def execute(self, context: RunContext, artifacts: StageArtifacts) -> StageOutput:
        """Run the stage and return what should be persisted"""
        pass

    def require_payload(self, artifacts: StageArtifacts, stage: PipelineStage) -> Dict[str, Any]:
        artifact = artifacts.get(stage.value)
        if artifact is None:
            raise StageExecutionError(self.stage.value, f"missing {stage.value} artifact")
        return artifact.payload

    def get_info(self) -> Dict[str, Any]:
        return {"stage": self.stage.value, "description": self.description}
