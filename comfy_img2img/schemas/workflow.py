from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, Dict, List, Optional


class WorkflowProfile(BaseModel):
    """
    Один workflow (API JSON формата ComfyUI), доступный по алиасу.
    """
    model_config = ConfigDict(frozen=True)

    alias: str
    is_default: bool = False
    permission_level: int = 0
    file_path: str
    load_image_node_ids: List[str] = Field(min_length=1)
    positive_prompt_node_id: str
    # по умолчанию: первая нода SaveImage в шаблоне
    output_node_id: Optional[str] = None

    @field_validator('load_image_node_ids', mode='before')
    @classmethod
    def _single_id_to_list(cls, v: Any) -> Any:
        if isinstance(v, (str, int)):
            return [str(v)]
        if isinstance(v, (list, tuple)):
            return [str(x) for x in v]
        return v

    @field_validator('positive_prompt_node_id', 'output_node_id', mode='before')
    @classmethod
    def _node_id_to_str(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) else v

    @property
    def required_count(self) -> int:
        return len(self.load_image_node_ids)


class TemplateNode(BaseModel):
    """
    Нода API-промпта ComfyUI: {"class_type": "...", "inputs": {...}, "_meta": {...}}
    """
    model_config = ConfigDict(extra='allow', populate_by_name=True)

    class_type: str
    inputs: Dict[str, Any] = Field(default_factory=dict)
    meta: Optional[Dict[str, Any]] = Field(default=None, alias='_meta')


# node_id -> node
WorkflowTemplate = Dict[str, TemplateNode]
