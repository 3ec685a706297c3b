from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from loguru import logger

from comfy_img2img.schemas.job import ImageAsset, ModeFlags, Request
from comfy_img2img.schemas.workflow import WorkflowProfile
from comfy_img2img.services.interaction import InteractionContext, SessionKey, session_key


def image_prompt(index: int, total: int) -> str:
    return f'Please send image {index} of {total}.'


@dataclass
class PendingAssembly:
    profile: WorkflowProfile
    text: str
    flags: ModeFlags
    context: InteractionContext
    required: int
    collected: List[ImageAsset] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return len(self.collected) >= self.required

    def to_request(self) -> Request:
        return Request(
            profile=self.profile,
            text=self.text,
            flags=self.flags,
            assets=tuple(self.collected),
            context=self.context,
        )


class RequestAssembler:
    """
    Собирает запрос из нескольких сообщений, пока не наберётся нужное число картинок.

    Ключ: (user_id, channel_id); на ключ не больше одной незавершённой сборки.
    Из каждого сообщения берётся только первая картинка. Брошенные сборки
    живут до перезапуска процесса или до discard().
    """

    def __init__(self):
        self._pending: Dict[SessionKey, PendingAssembly] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def pending(self, key: SessionKey) -> Optional[PendingAssembly]:
        return self._pending.get(key)

    def discard(self, key: SessionKey) -> bool:
        return self._pending.pop(key, None) is not None

    async def handle_interaction(
            self,
            context: InteractionContext,
            assets: Sequence[ImageAsset],
            text: str,
            profile: WorkflowProfile,
            flags: ModeFlags,
    ) -> Optional[Request]:
        need = profile.required_count
        key = session_key(context)

        if len(assets) >= need:
            if self._pending.pop(key, None) is not None:
                logger.info(f'[assembler] {key}: pending assembly dropped, new command has all images')
            return Request(
                profile=profile,
                text=text,
                flags=flags,
                assets=tuple(assets[:need]),
                context=context,
            )

        # картинок не хватает: ждём их следующими сообщениями
        if key in self._pending:
            logger.info(f'[assembler] {key}: pending assembly replaced by a new command')

        self._pending[key] = PendingAssembly(
            profile=profile,
            text=text,
            flags=flags,
            context=context,
            required=need,
        )
        logger.info(f'[assembler] {key}: waiting for {need} image(s) for workflow "{profile.alias}"')
        await context.send_text(image_prompt(1, need))
        return None

    async def handle_followup(
            self,
            context: InteractionContext,
            assets: Sequence[ImageAsset],
    ) -> Tuple[bool, Optional[Request]]:
        """
        (handled, request): handled=False: сообщение не наше, пусть обрабатывают дальше.
        """
        key = session_key(context)
        pending = self._pending.get(key)
        if pending is None or not assets:
            return False, None

        pending.collected.append(assets[0])

        if not pending.complete:
            await context.send_text(image_prompt(len(pending.collected) + 1, pending.required))
            return True, None

        del self._pending[key]
        logger.info(f'[assembler] {key}: collected {pending.required} image(s)')
        return True, pending.to_request()
