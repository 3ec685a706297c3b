from __future__ import annotations

import uuid
import asyncio
from pathlib import Path
from typing import List

from loguru import logger

from comfy_img2img.core.errors import (
    BackendExecutionError,
    EventStreamError,
    JobError,
    NoOutputProduced,
    RequestTimeout,
    TemplateLoadError,
)
from comfy_img2img.schemas.job import JobInstance, JobState, OutputImage, Request
from comfy_img2img.services.comfy_client import ComfyClient
from comfy_img2img.services.prompt_pipeline import PromptPipeline, strip_inline_images
from comfy_img2img.services.workflow_template import (
    check_image_slot,
    find_output_node_id,
    load_template,
    reroll_seeds,
    resolve_template_path,
    set_image_input,
    set_prompt_text,
)


class JobRunner:
    """
    Полный цикл одного запроса: шаблон -> upload -> prompt -> submit -> ожидание -> выдача.
    Любая ошибка конечна только для этого запроса.
    """

    def __init__(
            self,
            *,
            client: ComfyClient,
            pipeline: PromptPipeline,
            templates_dir: str | Path = '.',
            timeout: float = 120.0,
    ):
        self.client = client
        self.pipeline = pipeline
        self.templates_dir = templates_dir
        self.timeout = timeout

    async def process(self, request: Request) -> JobState:
        context = request.context
        tag = f'{context.channel_id}/{context.user_id}'
        job: JobInstance | None = None

        try:
            await context.send_text('Processing your request... this usually takes about 2 minutes, please wait.')

            job = JobInstance(template=self._load(request))
            output_node_id = self._output_node(request, job, tag)
            job.state = JobState.TEMPLATE_LOADED

            await self._upload_assets(request, job)
            job.state = JobState.ASSETS_UPLOADED

            text = strip_inline_images(request.text)
            text = await self.pipeline.transform(text, request.flags, context.send_text)
            set_prompt_text(job.template, request.profile.positive_prompt_node_id, text, request.profile.alias)
            job.state = JobState.PROMPT_TRANSFORMED

            reroll_seeds(job.template)

            images = await self._execute(job, output_node_id, tag)
            if not images:
                raise NoOutputProduced('No images were produced, please check the ComfyUI server logs.')

            for image in images:
                await context.send_image(self.client.view_url(image))

            job.state = JobState.COMPLETED
            logger.info(f'[job] [{tag}] prompt {job.prompt_id} completed, {len(images)} image(s)')

        except RequestTimeout as e:
            if job is not None:
                job.state = JobState.TIMED_OUT
            logger.error(f'[job] [{tag}] timed out: {e}')
            await context.send_text(f'Processing failed: {e}')
            return JobState.TIMED_OUT

        except JobError as e:
            if job is not None:
                job.state = JobState.FAILED
            logger.error(f'[job] [{tag}] failed: {e}')
            await context.send_text(f'Processing failed: {e}')
            return JobState.FAILED

        except Exception as e:
            if job is not None:
                job.state = JobState.FAILED
            logger.exception(f'[job] [{tag}] unexpected error: {e}')
            await context.send_text('Processing failed: internal error.')
            return JobState.FAILED

        return JobState.COMPLETED

    def _load(self, request: Request):
        path = resolve_template_path(request.profile, self.templates_dir)
        return load_template(path)

    async def _upload_assets(self, request: Request, job: JobInstance) -> None:
        profile = request.profile
        for asset, node_id in zip(request.assets, profile.load_image_node_ids):
            check_image_slot(job.template, node_id, profile.alias)

            content = await self.client.fetch_asset(asset)
            name = await self.client.upload_image(filename=f'{uuid.uuid4().hex}.png', content=content)
            logger.info(f'[job] image {name} uploaded')

            set_image_input(job.template, node_id, name, profile.alias)
            job.uploaded.append(name)

    def _output_node(self, request: Request, job: JobInstance, tag: str) -> str | None:
        profile = request.profile
        output_node_id = find_output_node_id(job.template, profile)
        if output_node_id is None:
            logger.warning(f'[job] [{tag}] workflow "{profile.alias}" has no SaveImage node')
        elif output_node_id not in job.template:
            raise TemplateLoadError(
                f'Output node "{output_node_id}" not found in workflow "{profile.alias}".'
            )
        return output_node_id

    async def _execute(self, job: JobInstance, output_node_id: str | None, tag: str) -> List[OutputImage]:
        async with self.client.subscribe(job.client_id) as events:
            try:
                return await asyncio.wait_for(
                    self._submit_and_wait(job, events, output_node_id, tag),
                    timeout=self.timeout,
                )
            except asyncio.TimeoutError:
                raise RequestTimeout(f'Request timed out after {self.timeout:g}s.')

    async def _submit_and_wait(self, job: JobInstance, events, output_node_id: str | None, tag: str) -> List[OutputImage]:
        job.prompt_id = await self.client.submit_prompt(job.prompt_payload(), job.client_id)
        job.state = JobState.SUBMITTED
        logger.info(f'[job] [{tag}] submitted, prompt_id: {job.prompt_id}')

        job.state = JobState.MONITORING
        async for event in events:
            if event.prompt_id != job.prompt_id:
                continue

            if event.type == 'execution_error':
                detail = f': {event.message}' if event.message else '.'
                raise BackendExecutionError(f'ComfyUI reported an execution error{detail}')

            if event.type == 'executed' and event.images is not None and event.node == output_node_id:
                return event.images

        raise EventStreamError('ComfyUI event stream closed before the job finished.')
