from typing import Optional, Sequence, Tuple

from loguru import logger

from comfy_img2img.core.errors import ConfigurationError, PermissionDenied, QueueFull
from comfy_img2img.schemas.job import ImageAsset, ModeFlags, Request
from comfy_img2img.schemas.workflow import WorkflowProfile
from comfy_img2img.services.assembler import RequestAssembler
from comfy_img2img.services.interaction import InteractionContext
from comfy_img2img.services.job_queue import JobQueue


def select_profile(
        workflows: Sequence[WorkflowProfile],
        text: str
) -> Tuple[WorkflowProfile, str]:
    """
    Первое слово может быть алиасом workflow: тогда оно срезается с текста.
    Иначе берётся default, иначе первый workflow из списка.
    """
    full_text = text or ''
    words = full_text.split()
    first_word = words[0] if words else ''

    matched = next((w for w in workflows if w.alias == first_word), None)
    if matched is not None:
        return matched, ' '.join(words[1:])

    profile = next((w for w in workflows if w.is_default), None)
    if profile is None and workflows:
        profile = workflows[0]
    if profile is None:
        raise ConfigurationError('No workflows are configured, the request cannot be processed.')
    return profile, full_text


def check_permission(profile: WorkflowProfile, authority: int) -> None:
    if profile.permission_level > authority:
        raise PermissionDenied(
            f'Insufficient permission (level {authority}) to use workflow "{profile.alias}" '
            f'(requires level {profile.permission_level}).'
        )


class Img2ImgService:
    """
    Точка входа для чат-команды `img2img [alias] <text> [-r] [-t]` и последующих сообщений с картинками.
    """

    def __init__(
            self,
            *,
            workflows: Sequence[WorkflowProfile],
            assembler: RequestAssembler,
            queue: JobQueue,
    ):
        self.workflows = list(workflows)
        self.assembler = assembler
        self.queue = queue

    async def handle_command(
            self,
            context: InteractionContext,
            text: str,
            *,
            raw: bool = False,
            translate_only: bool = False,
            assets: Sequence[ImageAsset] = (),
    ) -> Optional[int]:
        """
        Возвращает позицию в очереди, если запрос сразу встал в очередь.
        ConfigurationError/QueueFull пробрасываются вызывающему (ничего не изменено).
        """
        profile, prompt_text = select_profile(self.workflows, text)
        check_permission(profile, context.authority)

        flags = ModeFlags(raw=raw, translate_only=translate_only)
        request = await self.assembler.handle_interaction(context, assets, prompt_text, profile, flags)
        if request is None:
            return None
        return await self._submit(request)

    async def handle_message(
            self,
            context: InteractionContext,
            assets: Sequence[ImageAsset],
    ) -> bool:
        """
        Сообщение вне команды. False: не относится к незавершённой сборке.
        """
        handled, request = await self.assembler.handle_followup(context, assets)
        if request is not None:
            try:
                await self._submit(request)
            except QueueFull as e:
                logger.warning(f'[service] {e}')
                await context.send_text(e.message)
        return handled

    async def _submit(self, request: Request) -> int:
        position = self.queue.enqueue(request)
        await request.context.send_text(f'Queued (position {position})...')
        self.queue.trigger()
        return position
