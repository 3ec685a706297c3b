from typing import List, Optional
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from comfy_img2img.schemas.workflow import WorkflowProfile


class Settings(BaseSettings):
    PROJECT_NAME: str = 'comfy-img2img'

    DEBUG: bool = False
    LOG_LEVEL: str = 'INFO'

    # ComfyUI
    COMFY_SERVER_ADDRESS: str = '127.0.0.1:8188'
    COMFY_REQUEST_TIMEOUT: float = 120.0
    COMFY_HEALTHCHECK_TIMEOUT: float = 5.0

    QUEUE_MAX_SIZE: int = Field(default=3, ge=1)

    # HTTP: неразобранные ответы одного (user_id, channel_id) живут столько секунд
    MESSAGE_BOARD_IDLE_TTL: float = Field(default=3600.0, gt=0)

    # JSON-список профилей: [{"alias": "...", "file_path": "...", ...}]
    WORKFLOWS: List[WorkflowProfile] = Field(default_factory=list)
    WORKFLOWS_BASE_DIR: str = '.'

    # DeepSeek (prompt engineering / translation)
    PROMPT_ENGINEER_ENABLE: bool = False
    DEEPSEEK_API_KEY: Optional[str] = None
    DEEPSEEK_API_URL: str = 'https://api.deepseek.com/chat/completions'
    DEEPSEEK_MODEL: str = 'deepseek-chat'
    DEEPSEEK_TIMEOUT: float = 60.0
    PROMPT_BYPASS_PHRASES: List[str] = Field(default_factory=list)

    model_config = SettingsConfigDict(
        env_file='.env',
        extra='ignore'
    )

    @model_validator(mode='after')
    def _check_workflows(self) -> 'Settings':
        aliases = [w.alias for w in self.WORKFLOWS]
        if len(aliases) != len(set(aliases)):
            raise ValueError('Workflow aliases must be unique')

        defaults = [w.alias for w in self.WORKFLOWS if w.is_default]
        if len(defaults) > 1:
            raise ValueError(f'Only one workflow can be default, got: {defaults}')
        return self


settings = Settings()
