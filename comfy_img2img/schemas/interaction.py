from pydantic import BaseModel, Field
from typing import List, Literal, Optional


class MessageElement(BaseModel):
    type: str
    src: Optional[str] = None
    filename: Optional[str] = None
    text: Optional[str] = None


class InteractionBase(BaseModel):
    user_id: str
    channel_id: str
    authority: int = 0
    elements: List[MessageElement] = Field(default_factory=list)
    # элементы цитируемого сообщения (reply)
    quote: List[MessageElement] = Field(default_factory=list)


class CommandRequest(InteractionBase):
    text: str = ''
    raw: bool = False
    translate_only: bool = False


class MessageRequest(InteractionBase):
    pass


class CommandResponse(BaseModel):
    status: Literal['queued', 'waiting_images']
    position: Optional[int] = None


class MessageResponse(BaseModel):
    handled: bool


class BoardMessageOut(BaseModel):
    type: str
    content: str
    created_at: float

    class Config:
        from_attributes = True


class QueueStatus(BaseModel):
    state: str
    queued: int
    capacity: int
    pending_assemblies: int
