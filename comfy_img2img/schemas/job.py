import enum
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from comfy_img2img.schemas.workflow import WorkflowProfile, WorkflowTemplate


class JobState(str, enum.Enum):
    QUEUED = 'QUEUED'
    TEMPLATE_LOADED = 'TEMPLATE_LOADED'
    ASSETS_UPLOADED = 'ASSETS_UPLOADED'
    PROMPT_TRANSFORMED = 'PROMPT_TRANSFORMED'
    SUBMITTED = 'SUBMITTED'
    MONITORING = 'MONITORING'
    COMPLETED = 'COMPLETED'
    FAILED = 'FAILED'
    TIMED_OUT = 'TIMED_OUT'


@dataclass(frozen=True)
class ImageAsset:
    """
    Картинка из сообщения: либо ссылка (http(s):// или data:), либо байты.
    """
    src: Optional[str] = None
    content: Optional[bytes] = None
    filename: Optional[str] = None


@dataclass(frozen=True)
class ModeFlags:
    raw: bool = False
    translate_only: bool = False


@dataclass(frozen=True)
class Request:
    profile: WorkflowProfile
    text: str
    flags: ModeFlags
    assets: Tuple[ImageAsset, ...]
    # opaque: используется только для ответов пользователю
    context: Any = field(compare=False, repr=False)


@dataclass(frozen=True)
class OutputImage:
    filename: str
    subfolder: str = ''
    type: str = 'output'


@dataclass(frozen=True)
class ComfyEvent:
    type: str
    prompt_id: Optional[str] = None
    node: Optional[str] = None
    # None: в событии нет images
    images: Optional[List[OutputImage]] = None
    message: Optional[str] = None


@dataclass
class JobInstance:
    template: WorkflowTemplate
    client_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    prompt_id: Optional[str] = None
    uploaded: List[str] = field(default_factory=list)
    state: JobState = JobState.QUEUED

    def prompt_payload(self) -> Dict[str, Any]:
        """
        Шаблон в виде, который ComfyUI ждёт в поле "prompt".
        """
        payload: Dict[str, Any] = {}
        for node_id, node in self.template.items():
            data = node.model_dump(by_alias=True)
            if data.get('_meta') is None:
                data.pop('_meta', None)
            payload[node_id] = data
        return payload
