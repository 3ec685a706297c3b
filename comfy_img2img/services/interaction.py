import time
import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from loguru import logger

from comfy_img2img.schemas.job import ImageAsset


IMAGE_ELEMENT_TYPES = {'image', 'img'}

SessionKey = Tuple[str, str]


class InteractionContext(Protocol):
    """
    То, что ядру нужно от чат-платформы: кто пишет, откуда, и как ответить.
    """
    user_id: str
    channel_id: str
    authority: int

    async def send_text(self, text: str) -> None: ...

    async def send_image(self, url: str) -> None: ...


def session_key(context: InteractionContext) -> SessionKey:
    return (str(context.user_id), str(context.channel_id))


def _element_asset(element: Any) -> Optional[ImageAsset]:
    if not isinstance(element, dict):
        return None
    if element.get('type') not in IMAGE_ELEMENT_TYPES:
        return None

    # koishi-like: {"type": "img", "attrs": {"src": "..."}}
    attrs = element.get('attrs') or {}
    src = element.get('src') or attrs.get('src') or element.get('url') or attrs.get('url')
    if not src:
        return None
    return ImageAsset(src=str(src), filename=element.get('filename') or attrs.get('file'))


def extract_assets(
        elements: Optional[Iterable[Any]],
        quote: Optional[Iterable[Any]] = None
) -> List[ImageAsset]:
    """
    Картинки из самого сообщения, затем из цитируемого (reply): в этом порядке.
    """
    assets: List[ImageAsset] = []
    for source in (elements, quote):
        for element in source or ():
            asset = _element_asset(element)
            if asset is not None:
                assets.append(asset)
    return assets


# ------------------------------------------------------------
# HTTP: ответы складываются в "почтовый ящик" и забираются клиентом
# ------------------------------------------------------------

@dataclass
class BoardMessage:
    type: str           # text | image
    content: str
    created_at: float = field(default_factory=time.time)


class MessageBoard:
    """
    Ответы по ключу (user_id, channel_id) до тех пор, пока клиент их не заберёт.
    Ящики, в которые никто не писал дольше idle_ttl секунд, удаляются при следующем post().
    """

    def __init__(self, max_messages: int = 100, idle_ttl: float = 3600.0):
        self.max_messages = max_messages
        self.idle_ttl = idle_ttl
        self._messages: Dict[SessionKey, List[BoardMessage]] = {}
        self._lock = asyncio.Lock()

    async def post(self, key: SessionKey, message: BoardMessage) -> None:
        async with self._lock:
            self._evict_idle(keep=key)
            box = self._messages.setdefault(key, [])
            box.append(message)
            # старые сообщения никто не забрал: выкидываем
            if len(box) > self.max_messages:
                del box[:len(box) - self.max_messages]

    async def drain(self, key: SessionKey) -> List[BoardMessage]:
        async with self._lock:
            return self._messages.pop(key, [])

    def _evict_idle(self, keep: SessionKey) -> None:
        deadline = time.time() - self.idle_ttl
        stale = [k for k, box in self._messages.items() if k != keep and box[-1].created_at < deadline]
        for k in stale:
            del self._messages[k]
        if stale:
            logger.debug(f'[board] evicted {len(stale)} idle mailbox(es)')


@dataclass
class MailboxContext:
    board: MessageBoard
    user_id: str
    channel_id: str
    authority: int = 0

    async def send_text(self, text: str) -> None:
        await self.board.post(session_key(self), BoardMessage(type='text', content=text))

    async def send_image(self, url: str) -> None:
        await self.board.post(session_key(self), BoardMessage(type='image', content=url))
