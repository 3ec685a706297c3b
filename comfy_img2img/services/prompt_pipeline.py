from __future__ import annotations

import re
import enum
from typing import Awaitable, Callable, Iterable, Optional

import httpx
from loguru import logger

from comfy_img2img.core.errors import PromptServiceError
from comfy_img2img.schemas.job import ModeFlags


TRANSLATE_SYSTEM_PROMPT = (
    'You are a translation engine. Please translate the following text to English. '
    'Output only the translated text, without any explanations or other content.'
)

ENGINEER_SYSTEM_PROMPT = """
## Basic rules
- Every edit must be explicit and concrete, avoid vague words ("beautify", "make it nicer")
- Split complex edits into several steps
- State which elements stay unchanged (character features, pose, position, etc.)
- Edit verbs must be change / replace / convert / transform
---
## Basic modification
Template:
Change [object] to [new state], keep [elements_to_preserve] unchanged
Examples:
- Change the car color to red
- Change the time to daytime while maintaining the same style of the painting
---
## Style conversion
Template:
Transform to [specific style], while maintaining [elements_to_preserve]
Examples:
- Transform to Bauhaus art style
- Convert to oil painting with visible brushstrokes and thick paint texture
- Convert to pencil sketch with natural graphite lines, cross-hatching, and visible paper texture
---
## Character consistency
Template:
Change [aspect] of the character to [new state], while maintaining [facial features / hairstyle / pose / expression]
Examples:
- Change the clothes to be a viking warrior while preserving facial features
- Update the background to a forest while keeping the woman with short black hair in the same pose and expression
---
## Background change
Template:
Change the background to [new_background], keep the subject in the exact same [position / pose / scale]
Example:
- Change the background to a beach while keeping the person in the exact same position, scale, and pose
---
## Text replacement
Template:
Replace '[original_text]' with '[new_text]', maintain the same [font style / layout]
Example:
- Replace 'joy' with 'BFL', keeping the font style unchanged
---
## Multi-step instruction
Step 1: Change [background / lighting], keep the character in the same pose
Step 2: Change [clothing / expression / item], maintain facial features and hairstyle
Step 3: Transform to [desired art style], while preserving the entire composition
---
## Common mistakes
Wrong: Transform the person into a Viking
Right: Change the clothes to be a viking warrior while preserving facial features
Wrong: Put him on a beach
Right: Change the background to a beach while keeping the person in the exact same position, scale, and pose
Wrong: Make it a sketch
Right: Convert to pencil sketch with natural graphite lines, cross-hatching, and visible paper texture
---
# Keywords
- change: modify a concrete attribute of an object
- transform: change or replace the visual style
- replace: replace text
- maintain / keep: preserve features or composition
## Output example
- User input: make the color of this car red
- Output: Change the car color to red
# Notes
- Rewrite the user input according to the rules
- Do not output anything unrelated to the user input
- Output the final prompt directly as a single paragraph, no lists, no remarks.
Follow these rules strictly. The user now describes the edit; answer with one English paragraph.
"""

IMG_TAG_RE = re.compile(r'<img[^>]*>')


class PromptMode(str, enum.Enum):
    RAW = 'raw'
    TRANSLATE = 'translate'
    ENGINEER = 'engineer'


def strip_inline_images(text: str | None) -> str:
    return IMG_TAG_RE.sub('', text or '').strip()


def resolve_mode(flags: ModeFlags, text: str, bypass_phrases: Iterable[str] = ()) -> PromptMode:
    normalized = (text or '').strip().lower()
    if flags.raw or normalized in {p.strip().lower() for p in bypass_phrases if p.strip()}:
        return PromptMode.RAW
    if flags.translate_only:
        return PromptMode.TRANSLATE
    return PromptMode.ENGINEER


class DeepSeekClient:
    """
    DeepSeek chat completions (OpenAI-совместимый API).
    """

    def __init__(
            self,
            api_key: str,
            *,
            url: str = 'https://api.deepseek.com/chat/completions',
            model: str = 'deepseek-chat',
            timeout: float = 60.0,
            transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.url = url
        self.model = model
        self._timeout = httpx.Timeout(10.0, read=timeout)
        self._transport = transport

    async def _complete(self, system_prompt: str, text: str) -> str:
        payload = {
            'model': self.model,
            'messages': [
                {'role': 'system', 'content': system_prompt},
                {'role': 'user', 'content': text},
            ],
            'stream': False,
        }
        headers = {'Authorization': f'Bearer {self.api_key}'}

        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            try:
                response = await client.post(self.url, json=payload, headers=headers)
            except httpx.RequestError as e:
                raise PromptServiceError(f'DeepSeek request failed: {e}')

        if response.status_code != 200:
            raise PromptServiceError(f'DeepSeek error {response.status_code}: {response.text}')

        try:
            data = response.json()
            content = data['choices'][0]['message']['content']
        except (ValueError, KeyError, IndexError, TypeError):
            raise PromptServiceError('No text found in DeepSeek API response')

        if not isinstance(content, str) or not content.strip():
            raise PromptServiceError('DeepSeek returned an empty completion')
        return content.strip()

    async def translate(self, text: str) -> str:
        return await self._complete(TRANSLATE_SYSTEM_PROMPT, text)

    async def engineer(self, text: str) -> str:
        return await self._complete(ENGINEER_SYSTEM_PROMPT, text)


Notify = Callable[[str], Awaitable[None]]


class PromptPipeline:
    def __init__(
            self,
            *,
            enabled: bool,
            client: Optional[DeepSeekClient],
            bypass_phrases: Iterable[str] = (),
    ):
        self.enabled = enabled
        self.client = client
        self.bypass_phrases = tuple(bypass_phrases)

    @classmethod
    def from_settings(cls, settings, transport: httpx.AsyncBaseTransport | None = None) -> 'PromptPipeline':
        client = None
        if settings.DEEPSEEK_API_KEY:
            client = DeepSeekClient(
                settings.DEEPSEEK_API_KEY,
                url=settings.DEEPSEEK_API_URL,
                model=settings.DEEPSEEK_MODEL,
                timeout=settings.DEEPSEEK_TIMEOUT,
                transport=transport,
            )
        return cls(
            enabled=settings.PROMPT_ENGINEER_ENABLE,
            client=client,
            bypass_phrases=settings.PROMPT_BYPASS_PHRASES,
        )

    async def transform(self, text: str, flags: ModeFlags, notify: Notify) -> str:
        """
        Возвращает текст для prompt-ноды. Ошибки внешнего сервиса не роняют запрос:
        пользователь получает уведомление, остаётся исходный текст.
        """
        if not text or not self.enabled:
            return text

        if self.client is None:
            await notify('(Note: prompt engineering is enabled but no API key is configured, the original prompt will be used.)')
            return text

        mode = resolve_mode(flags, text, self.bypass_phrases)
        if mode is PromptMode.RAW:
            logger.info('[prompt] raw mode, skipping prompt processing')
            return text

        try:
            if mode is PromptMode.TRANSLATE:
                logger.info('[prompt] translate-only mode')
                result = await self.client.translate(text)
            else:
                logger.info('[prompt] prompt engineering mode')
                result = await self.client.engineer(text)
        except PromptServiceError as e:
            logger.error(f'[prompt] {mode.value} failed: {e}')
            if mode is PromptMode.TRANSLATE:
                await notify('Translation failed, the original prompt will be used.')
            else:
                await notify('Prompt engineering failed, the original prompt will be used.')
            return text

        logger.info(f'[prompt] {mode.value}: "{text}" -> "{result}"')
        return result
