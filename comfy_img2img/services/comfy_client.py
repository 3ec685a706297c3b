from __future__ import annotations

import json
import base64
import binascii
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional
from urllib.parse import urlencode

import httpx
import websockets
from loguru import logger

from comfy_img2img.core.errors import EventStreamError, SubmissionError, UploadError
from comfy_img2img.schemas.job import ComfyEvent, ImageAsset, OutputImage


def _http_base_url(server_address: str) -> str:
    """
    server_address может быть:
      127.0.0.1:8188
      http://host:8188
      https://host
    """
    url = (server_address or "").strip().rstrip("/")
    if not url.startswith(("http://", "https://")):
        url = "http://" + url
    return url


def _ws_url(base_url: str) -> str:
    """
    http://host:8188 -> ws://host:8188/ws
    """
    if base_url.startswith("https://"):
        return "wss://" + base_url[len("https://"):] + "/ws"
    return "ws://" + base_url[len("http://"):] + "/ws"


def _parse_images(output: Any) -> Optional[list[OutputImage]]:
    if not isinstance(output, dict):
        return None

    imgs = output.get("images")
    if not isinstance(imgs, list):
        return None

    images: list[OutputImage] = []
    for item in imgs:
        if not isinstance(item, dict) or not item.get("filename"):
            continue
        images.append(
            OutputImage(
                filename=str(item["filename"]),
                subfolder=item.get("subfolder") or "",
                type=item.get("type") or "output",
            )
        )
    return images


def parse_event(raw: str | bytes) -> Optional[ComfyEvent]:
    """
    Сообщения ComfyUI WS:
      {"type": "executed", "data": {"prompt_id": "...", "node": "9", "output": {"images": [...]}}}
      {"type": "execution_error", "data": {"prompt_id": "...", "exception_message": "..."}}
    Бинарные кадры (превью) и мусор -> None.
    """
    if isinstance(raw, bytes):
        return None

    try:
        msg = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(msg, dict) or not msg.get("type"):
        return None

    data = msg.get("data")
    if not isinstance(data, dict):
        data = {}

    prompt_id = data.get("prompt_id")
    node = data.get("node")

    message = None
    if msg["type"] == "execution_error":
        message = data.get("exception_message") or data.get("error") or data.get("message")

    return ComfyEvent(
        type=str(msg["type"]),
        prompt_id=str(prompt_id) if prompt_id is not None else None,
        node=str(node) if node is not None else None,
        images=_parse_images(data.get("output")),
        message=str(message).strip() if message else None,
    )


async def _iter_events(ws) -> AsyncIterator[ComfyEvent]:
    try:
        async for raw in ws:
            event = parse_event(raw)
            if event is not None:
                yield event
    except websockets.exceptions.ConnectionClosedError as e:
        raise EventStreamError(f"ComfyUI event stream closed unexpectedly: {e}")


class ComfyClient:
    """
    HTTP + WS клиент одного сервера ComfyUI.
    """

    def __init__(
            self,
            server_address: str,
            *,
            timeout: float = 60.0,
            healthcheck_timeout: float = 5.0,
            transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = _http_base_url(server_address)
        self.ws_url = _ws_url(self.base_url)
        self._timeout = httpx.Timeout(10.0, read=timeout)
        self._healthcheck_timeout = healthcheck_timeout
        self._transport = transport

    def _client(self, timeout: httpx.Timeout | float | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout or self._timeout, transport=self._transport)

    async def fetch_asset(self, asset: ImageAsset) -> bytes:
        """
        Байты картинки из сообщения (content, data: URI или http(s) ссылка).
        """
        if asset.content is not None:
            return asset.content

        src = (asset.src or "").strip()
        if not src:
            raise UploadError("Image has no content and no source URL")

        if src.startswith("data:"):
            _, _, encoded = src.partition(",")
            try:
                return base64.b64decode(encoded, validate=True)
            except (binascii.Error, ValueError) as e:
                raise UploadError(f"Invalid data URI image: {e}")

        async with self._client() as client:
            try:
                response = await client.get(src, follow_redirects=True)
            except httpx.RequestError as e:
                raise UploadError(f"Failed to download image: {e}")

        if response.status_code != 200:
            raise UploadError(f"Failed to download image: HTTP {response.status_code}")
        return response.content

    async def upload_image(
            self,
            *,
            filename: str,
            content: bytes,
            subfolder: str = "",
            overwrite: bool = True
    ) -> str:
        """
        Загружает изображение на ComfyUI (в input).
        Возвращает имя файла, которое надо подставить в LoadImage.inputs.image.
        """
        files = {"image": (filename, content, "application/octet-stream")}
        data = {"subfolder": subfolder, "overwrite": "true" if overwrite else "false"}

        async with self._client() as client:
            try:
                response = await client.post(f"{self.base_url}/upload/image", files=files, data=data)
                if response.status_code != 200:
                    response = await client.post(f"{self.base_url}/api/upload/image", files=files, data=data)
            except httpx.RequestError as e:
                raise UploadError(f"Failed to connect to ComfyUI: {e}")

        if response.status_code != 200:
            raise UploadError(f"ComfyUI upload error {response.status_code}: {response.text}")

        try:
            response_json = response.json()
        except ValueError:
            raise UploadError("ComfyUI upload returned invalid JSON")

        if not isinstance(response_json, dict):
            response_json = {}
        name = response_json.get("name") or response_json.get("filename")
        if not name:
            raise UploadError(f"ComfyUI upload response has no file name: {response_json}")
        if response_json.get("subfolder"):
            return f"{response_json['subfolder']}/{name}"
        return name

    async def submit_prompt(self, prompt: Dict[str, Any], client_id: str) -> str:
        """
        POST /prompt -> prompt_id
        """
        payload = {"prompt": prompt, "client_id": client_id}

        async with self._client() as client:
            try:
                response = await client.post(f"{self.base_url}/prompt", json=payload)
            except httpx.RequestError as e:
                raise SubmissionError(f"Failed to submit workflow: {e}")

        if response.status_code != 200:
            raise SubmissionError(f"Failed to submit workflow: ComfyUI error {response.status_code}: {response.text}")

        try:
            data = response.json()
        except ValueError:
            raise SubmissionError("Failed to submit workflow: ComfyUI returned invalid JSON")

        prompt_id = data.get("prompt_id") if isinstance(data, dict) else None
        if not prompt_id:
            raise SubmissionError("Failed to submit workflow: response missing prompt_id")
        return str(prompt_id)

    @asynccontextmanager
    async def subscribe(self, client_id: str) -> AsyncIterator[AsyncIterator[ComfyEvent]]:
        """
        WS /ws?clientId=... ; события приходят только для промптов с этим client_id.
        Соединение закрывается на выходе из контекста (в т.ч. по таймауту).
        """
        url = f"{self.ws_url}?{urlencode({'clientId': client_id})}"
        try:
            ws = await websockets.connect(url, ping_interval=20, ping_timeout=20, max_size=None)
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise SubmissionError(f"Failed to open ComfyUI event stream: {e}")

        logger.debug(f"[comfy] WS connected: client_id={client_id}")
        try:
            yield _iter_events(ws)
        finally:
            await ws.close()
            logger.debug(f"[comfy] WS closed: client_id={client_id}")

    def view_url(self, image: OutputImage) -> str:
        qs = urlencode({"filename": image.filename, "subfolder": image.subfolder, "type": image.type})
        return f"{self.base_url}/view?{qs}"

    async def ping(self) -> bool:
        try:
            async with self._client(self._healthcheck_timeout) as client:
                r = await client.get(f"{self.base_url}/system_stats")
                return r.status_code == 200
        except httpx.HTTPError:
            return False
