from __future__ import annotations

import json
import random
from pathlib import Path
from typing import Dict, Optional

from loguru import logger
from pydantic import ValidationError

from comfy_img2img.core.errors import AssetMissingSlot, PromptSlotMissing, TemplateLoadError
from comfy_img2img.schemas.workflow import TemplateNode, WorkflowProfile, WorkflowTemplate


SAMPLER_NODE_TYPES = {"KSampler", "KSamplerAdvanced"}
SEED_FIELDS = ("seed", "noise_seed")
OUTPUT_NODE_TYPES = {"SaveImage"}
PROMPT_FIELDS = ("prompt", "text")

SEED_MAX = 2**63 - 1


def resolve_template_path(profile: WorkflowProfile, base_dir: str | Path) -> Path:
    path = Path(profile.file_path)
    if not path.is_absolute():
        path = Path(base_dir) / path
    return path.resolve()


def load_template(path: str | Path) -> WorkflowTemplate:
    """
    Читает workflow в API-формате ComfyUI (File -> Export (API)).
    """
    path = Path(path)
    if not path.exists():
        raise TemplateLoadError(f"Workflow file not found: {path}")

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise TemplateLoadError(f"Failed to read or parse workflow file: {e}")

    if not isinstance(raw, dict):
        raise TemplateLoadError("Workflow file must contain a JSON object (API format)")

    # UI-экспорт ({"nodes": [...], "links": [...]}) сюда не подходит
    if isinstance(raw.get("nodes"), list):
        raise TemplateLoadError("Workflow looks like a UI export, please export it in API format")

    template: WorkflowTemplate = {}
    for node_id, node in raw.items():
        try:
            template[str(node_id)] = TemplateNode.model_validate(node)
        except ValidationError as e:
            raise TemplateLoadError(f'Invalid node "{node_id}" in workflow file: {e.errors()[0]["msg"]}')
    return template


def _get_node(template: WorkflowTemplate, node_id: str) -> Optional[TemplateNode]:
    return template.get(str(node_id))


def check_image_slot(template: WorkflowTemplate, node_id: str, alias: str) -> None:
    if _get_node(template, node_id) is None:
        raise AssetMissingSlot(f'Image input node "{node_id}" not found in workflow "{alias}".')


def set_image_input(template: WorkflowTemplate, node_id: str, filename: str, alias: str) -> None:
    node = _get_node(template, node_id)
    if node is None:
        raise AssetMissingSlot(f'Image input node "{node_id}" not found in workflow "{alias}".')
    node.inputs["image"] = filename


def set_prompt_text(template: WorkflowTemplate, node_id: str, text: str, alias: str) -> bool:
    """
    Пишет текст в поле prompt, иначе в text.
    Возвращает True, если шаблон изменён.
    """
    if not text:
        return False

    node = _get_node(template, node_id)
    if node is None:
        raise PromptSlotMissing(f'Prompt node "{node_id}" not found in workflow "{alias}".')

    for field in PROMPT_FIELDS:
        if field in node.inputs:
            node.inputs[field] = text
            return True

    logger.warning(f'[template] node "{node_id}" ({node.class_type}) has no prompt/text input, prompt ignored')
    return False


def reroll_seeds(template: WorkflowTemplate, rng: random.Random | None = None) -> Dict[str, int]:
    """
    Новый seed для sampler-нод, если поле seed есть и это число (а не link).
    """
    rng = rng or random
    changed: Dict[str, int] = {}

    for node_id, node in template.items():
        if node.class_type not in SAMPLER_NODE_TYPES:
            continue
        for field in SEED_FIELDS:
            value = node.inputs.get(field)
            if isinstance(value, bool) or not isinstance(value, int):
                continue
            node.inputs[field] = rng.randint(0, SEED_MAX)
            changed[node_id] = node.inputs[field]

    return changed


def find_output_node_id(template: WorkflowTemplate, profile: WorkflowProfile | None = None) -> Optional[str]:
    if profile is not None and profile.output_node_id:
        return profile.output_node_id

    return next(
        (node_id for node_id, node in template.items() if node.class_type in OUTPUT_NODE_TYPES),
        None,
    )
