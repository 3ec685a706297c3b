from loguru import logger
from fastapi import FastAPI
from contextlib import asynccontextmanager

from comfy_img2img.core.config import Settings, settings as default_settings
from comfy_img2img.core.errors import install_exception_handlers
from comfy_img2img.core.logging import setup_logging
from comfy_img2img.services.assembler import RequestAssembler
from comfy_img2img.services.comfy_client import ComfyClient
from comfy_img2img.services.img2img_service import Img2ImgService
from comfy_img2img.services.interaction import MessageBoard
from comfy_img2img.services.job_queue import JobQueue
from comfy_img2img.services.job_runner import JobRunner
from comfy_img2img.services.prompt_pipeline import PromptPipeline

from comfy_img2img.api.health import router as health_router
from comfy_img2img.api.img2img import router as img2img_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    # STARTUP
    logger.info(
        f'Workflows: {[w.alias for w in app.state.img2img.workflows]}, '
        f'ComfyUI: {app.state.comfy_client.base_url}'
    )

    yield

    # SHUTDOWN
    # оставшиеся в очереди запросы теряются: очередь живёт только в памяти
    await app.state.img2img.queue.close()


def create_app(
        settings: Settings | None = None,
        *,
        comfy_client: ComfyClient | None = None,
        pipeline: PromptPipeline | None = None,
) -> FastAPI:
    settings = settings or default_settings
    setup_logging(settings.LOG_LEVEL, settings.DEBUG)

    app = FastAPI(
        title=settings.PROJECT_NAME,
        lifespan=lifespan,
        debug=settings.DEBUG
    )

    comfy_client = comfy_client or ComfyClient(
        settings.COMFY_SERVER_ADDRESS,
        timeout=settings.COMFY_REQUEST_TIMEOUT,
        healthcheck_timeout=settings.COMFY_HEALTHCHECK_TIMEOUT,
    )
    runner = JobRunner(
        client=comfy_client,
        pipeline=pipeline or PromptPipeline.from_settings(settings),
        templates_dir=settings.WORKFLOWS_BASE_DIR,
        timeout=settings.COMFY_REQUEST_TIMEOUT,
    )

    app.state.comfy_client = comfy_client
    app.state.board = MessageBoard(idle_ttl=settings.MESSAGE_BOARD_IDLE_TTL)
    app.state.img2img = Img2ImgService(
        workflows=settings.WORKFLOWS,
        assembler=RequestAssembler(),
        queue=JobQueue(runner.process, capacity=settings.QUEUE_MAX_SIZE),
    )

    install_exception_handlers(app)

    app.include_router(health_router)
    app.include_router(img2img_router)

    logger.info('Application started')
    return app


app = create_app()
