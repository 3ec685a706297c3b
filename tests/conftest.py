from __future__ import annotations

import json
import asyncio
from contextlib import asynccontextmanager
from typing import List

import pytest

from comfy_img2img.schemas.job import ComfyEvent, ImageAsset, ModeFlags, OutputImage, Request
from comfy_img2img.schemas.workflow import WorkflowProfile


TEMPLATE = {
    "3": {
        "class_type": "KSampler",
        "inputs": {"seed": 42, "steps": 20, "cfg": 7.0, "model": ["4", 0]},
    },
    "4": {"class_type": "CheckpointLoaderSimple", "inputs": {"ckpt_name": "model.safetensors"}},
    "6": {
        "class_type": "CLIPTextEncode",
        "inputs": {"text": "placeholder", "clip": ["4", 1]},
        "_meta": {"title": "Positive"},
    },
    "9": {"class_type": "SaveImage", "inputs": {"filename_prefix": "img2img", "images": ["8", 0]}},
    "10": {"class_type": "LoadImage", "inputs": {"image": "example.png"}},
    "11": {"class_type": "LoadImage", "inputs": {"image": "example.png"}},
}


class FakeContext:
    def __init__(self, user_id: str = "u1", channel_id: str = "c1", authority: int = 1):
        self.user_id = user_id
        self.channel_id = channel_id
        self.authority = authority
        self.texts: List[str] = []
        self.images: List[str] = []

    async def send_text(self, text: str) -> None:
        self.texts.append(text)

    async def send_image(self, url: str) -> None:
        self.images.append(url)


class FakeComfyClient:
    """
    Сценарий событий задаётся списком; hang=True: после событий поток молчит.
    """

    base_url = "http://comfy.test"

    def __init__(self, events: List[ComfyEvent] | None = None, *, prompt_id: str = "p-1", hang: bool = False):
        self.events = list(events or [])
        self.prompt_id = prompt_id
        self.hang = hang
        self.submit_error: Exception | None = None
        self.uploads: List[tuple] = []
        self.submitted: List[tuple] = []
        self.subscribed: List[str] = []
        self.closed: List[str] = []

    async def fetch_asset(self, asset: ImageAsset) -> bytes:
        return asset.content if asset.content is not None else b"downloaded"

    async def upload_image(self, *, filename: str, content: bytes, subfolder: str = "", overwrite: bool = True) -> str:
        self.uploads.append((filename, content))
        return filename

    async def submit_prompt(self, prompt, client_id: str) -> str:
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append((prompt, client_id))
        return self.prompt_id

    @asynccontextmanager
    async def subscribe(self, client_id: str):
        self.subscribed.append(client_id)

        async def stream():
            for event in self.events:
                await asyncio.sleep(0)
                yield event
            if self.hang:
                await asyncio.Event().wait()

        try:
            yield stream()
        finally:
            self.closed.append(client_id)

    def view_url(self, image: OutputImage) -> str:
        return f"{self.base_url}/view?filename={image.filename}&subfolder={image.subfolder}&type={image.type}"


def executed(prompt_id: str = "p-1", node: str = "9", filenames=("out_00001_.png",)) -> ComfyEvent:
    return ComfyEvent(
        type="executed",
        prompt_id=prompt_id,
        node=node,
        images=[OutputImage(filename=f) for f in filenames],
    )


@pytest.fixture
def template_path(tmp_path):
    path = tmp_path / "edit_api.json"
    path.write_text(json.dumps(TEMPLATE), encoding="utf-8")
    return path


@pytest.fixture
def profile(template_path) -> WorkflowProfile:
    return WorkflowProfile(
        alias="edit",
        is_default=True,
        file_path=str(template_path),
        load_image_node_ids="10",
        positive_prompt_node_id="6",
    )


@pytest.fixture
def two_image_profile(template_path) -> WorkflowProfile:
    return WorkflowProfile(
        alias="merge",
        permission_level=2,
        file_path=str(template_path),
        load_image_node_ids=["10", "11"],
        positive_prompt_node_id="6",
    )


def make_request(profile: WorkflowProfile, context=None, text: str = "red car", n_assets: int | None = None,
                 flags: ModeFlags | None = None) -> Request:
    n = profile.required_count if n_assets is None else n_assets
    return Request(
        profile=profile,
        text=text,
        flags=flags or ModeFlags(),
        assets=tuple(ImageAsset(content=f"img-{i}".encode()) for i in range(n)),
        context=context or FakeContext(),
    )
