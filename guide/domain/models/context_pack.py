from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class PackPlan(BaseModel):
    mode: Optional[str] = None
    len: Optional[str] = None
    range: Optional[str] = None


class LifeEntry(BaseModel):
    id: str
    p: Optional[str] = None


class AnchorEntry(BaseModel):
    """Reading-session anchor"""
    id: str
    ref: Optional[str] = None
    dur_s: Optional[int] = None
    status: Optional[str] = None
    t: Optional[str] = None
    score: Optional[float] = None


class ArtEntry(BaseModel):
    """Note or highlight supporting an anchor"""
    id: str
    src: Literal["note", "hl"]
    ref: Optional[str] = None
    t: Optional[str] = None
    summary: Optional[str] = None
    tags: Optional[List[str]] = None


class ConvoEntry(BaseModel):
    id: str
    t: Optional[str] = None
    p: Optional[str] = None


class ContextPack(BaseModel):
    """Short-key projection of the candidate set shown to the model"""
    plan: Optional[PackPlan] = None
    life: List[LifeEntry] = Field(default_factory=list)
    anchors: List[AnchorEntry] = Field(default_factory=list)
    arts: List[ArtEntry] = Field(default_factory=list)
    convos: List[ConvoEntry] = Field(default_factory=list)
    aff: List[str] = Field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        """JSON form with empty groups and unset fields omitted; plan and aff are always present"""

        payload: Dict[str, Any] = {
            "plan": self.plan.model_dump(exclude_none=True) if self.plan else {},
        }
        for key in ("life", "anchors", "arts", "convos"):
            items = getattr(self, key)
            if items:
                payload[key] = [item.model_dump(exclude_none=True) for item in items]
        payload["aff"] = list(self.aff)
        return payload

    def evidence_ids(self) -> List[str]:
        """Every item id present in the pack, in payload order"""

        ids: List[str] = []
        seen = set()
        for group in (self.life, self.anchors, self.arts, self.convos):
            for item in group:
                if item.id not in seen:
                    seen.add(item.id)
                    ids.append(item.id)
        return ids


class CompressedContext(BaseModel):
    """Pack plus the allow-lists that gate model output"""
    pack: ContextPack
    payload: Dict[str, Any]
    allowed_evidence_ids: List[str]
    allowed_action_types: List[str]
    payload_chars: int
    estimated_tokens: int
    elided: int = 0
