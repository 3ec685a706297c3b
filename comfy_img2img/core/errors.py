from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


class Img2ImgError(Exception):
    """
    Базовая ошибка. str(exc) показывается пользователю как есть.
    """

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# ------------------------------------------------------------
# Rejected before enqueue
# ------------------------------------------------------------

class ConfigurationError(Img2ImgError):
    status_code = 404


class PermissionDenied(ConfigurationError):
    status_code = 403


class QueueFull(Img2ImgError):
    status_code = 429

    def __init__(self, capacity: int):
        super().__init__(f'Processing queue is full (max: {capacity}), please try again later.')
        self.capacity = capacity


# ------------------------------------------------------------
# Terminal for a single request
# ------------------------------------------------------------

class JobError(Img2ImgError):
    pass


class TemplateLoadError(JobError):
    pass


class AssetMissingSlot(JobError):
    pass


class PromptSlotMissing(JobError):
    pass


class UploadError(JobError):
    pass


class SubmissionError(JobError):
    pass


class BackendExecutionError(JobError):
    pass


class EventStreamError(JobError):
    pass


class NoOutputProduced(JobError):
    pass


class RequestTimeout(JobError):
    pass


# ------------------------------------------------------------
# Recovered locally by the prompt pipeline
# ------------------------------------------------------------

class PromptServiceError(Img2ImgError):
    pass


def install_exception_handlers(app: FastAPI):
    @app.exception_handler(Img2ImgError)
    async def img2img_exception_handler(request: Request, exc: Img2ImgError):
        status_code = getattr(exc, 'status_code', 500)
        return JSONResponse({'detail': exc.message}, status_code=status_code)
