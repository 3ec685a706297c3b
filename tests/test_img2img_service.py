import time
import asyncio

import pytest

from comfy_img2img.core.errors import ConfigurationError, PermissionDenied, QueueFull
from comfy_img2img.schemas.job import ImageAsset
from comfy_img2img.services.assembler import RequestAssembler
from comfy_img2img.services.img2img_service import Img2ImgService, check_permission, select_profile
from comfy_img2img.services.interaction import BoardMessage, MessageBoard, extract_assets
from comfy_img2img.services.job_queue import JobQueue

from conftest import FakeContext


class HoldingProcessor:
    """Keeps the worker busy until released."""

    def __init__(self):
        self.release = asyncio.Event()
        self.seen = []

    async def __call__(self, request):
        self.seen.append(request)
        await self.release.wait()


def _service(*profiles, capacity=3):
    processor = HoldingProcessor()
    queue = JobQueue(processor, capacity=capacity)
    return Img2ImgService(workflows=profiles, assembler=RequestAssembler(), queue=queue), processor


def _img(name="a"):
    return ImageAsset(src=f"http://chat.test/{name}.png")


def test_select_profile_by_alias_strips_it(profile, two_image_profile):
    selected, text = select_profile([profile, two_image_profile], "merge  make it  night")

    assert selected is two_image_profile
    assert text == "make it night"


def test_select_profile_default_then_first(profile, two_image_profile):
    assert select_profile([two_image_profile, profile], "red car") == (profile, "red car")

    not_default = profile.model_copy(update={"is_default": False})
    assert select_profile([two_image_profile, not_default], "") == (two_image_profile, "")


def test_select_profile_without_workflows():
    with pytest.raises(ConfigurationError):
        select_profile([], "red car")


def test_check_permission(two_image_profile):
    check_permission(two_image_profile, 2)
    with pytest.raises(PermissionDenied, match="level 1"):
        check_permission(two_image_profile, 1)


def test_extract_assets_message_then_quote():
    elements = [
        {"type": "text", "text": "hi"},
        {"type": "img", "attrs": {"src": "http://chat.test/1.png"}},
        {"type": "image", "src": "http://chat.test/2.png"},
        {"type": "image"},
    ]
    quote = [{"type": "image", "url": "http://chat.test/q.png"}]

    assert [a.src for a in extract_assets(elements, quote)] == [
        "http://chat.test/1.png",
        "http://chat.test/2.png",
        "http://chat.test/q.png",
    ]
    assert extract_assets(None, None) == []


@pytest.mark.asyncio
async def test_message_board_caps_and_evicts_idle_mailboxes():
    board = MessageBoard(max_messages=2, idle_ttl=60)
    old = time.time() - 120

    await board.post(("gone", "c1"), BoardMessage(type="text", content="never read", created_at=old))
    for i in range(3):
        await board.post(("u1", "c1"), BoardMessage(type="text", content=str(i)))

    assert [m.content for m in await board.drain(("u1", "c1"))] == ["1", "2"]
    assert await board.drain(("gone", "c1")) == []


@pytest.mark.asyncio
async def test_command_with_image_is_queued(profile):
    service, processor = _service(profile)
    ctx = FakeContext()

    position = await service.handle_command(ctx, "edit red car", raw=True, assets=[_img()])
    await asyncio.sleep(0)

    assert position == 1
    assert ctx.texts == ["Queued (position 1)..."]
    assert processor.seen[0].text == "red car"
    assert processor.seen[0].flags.raw is True
    assert service.queue.is_busy

    await service.queue.close()


@pytest.mark.asyncio
async def test_permission_denied_mutates_nothing(two_image_profile):
    service, _ = _service(two_image_profile)
    ctx = FakeContext(authority=0)

    with pytest.raises(PermissionDenied):
        await service.handle_command(ctx, "merge", assets=[])

    assert len(service.assembler) == 0
    assert len(service.queue) == 0
    assert ctx.texts == []


@pytest.mark.asyncio
async def test_multi_turn_then_queued(two_image_profile):
    service, processor = _service(two_image_profile)
    ctx = FakeContext(authority=5)

    assert await service.handle_command(ctx, "merge day and night") is None
    assert ctx.texts == ["Please send image 1 of 2."]

    assert await service.handle_message(ctx, [_img("1")]) is True
    assert ctx.texts[-1] == "Please send image 2 of 2."

    assert await service.handle_message(ctx, [_img("2")]) is True
    await asyncio.sleep(0)

    assert ctx.texts[-1] == "Queued (position 1)..."
    assert len(service.assembler) == 0
    assert [a.src for a in processor.seen[0].assets] == ["http://chat.test/1.png", "http://chat.test/2.png"]

    # nothing pending any more: other handlers get the message
    assert await service.handle_message(ctx, [_img("3")]) is False
    await service.queue.close()


@pytest.mark.asyncio
async def test_queue_full_on_command(profile):
    service, processor = _service(profile, capacity=3)
    ctx = FakeContext()

    # one running + three waiting
    for _ in range(4):
        await service.handle_command(ctx, "red car", assets=[_img()])
        await asyncio.sleep(0)
    assert len(service.queue) == 3

    with pytest.raises(QueueFull):
        await service.handle_command(ctx, "red car", assets=[_img()])
    assert len(service.queue) == 3

    await service.queue.close()


@pytest.mark.asyncio
async def test_queue_full_after_assembly_notifies_user(two_image_profile):
    service, processor = _service(two_image_profile, capacity=1)
    busy = FakeContext(user_id="busy", authority=5)
    ctx = FakeContext(authority=5)

    await service.handle_command(busy, "merge", assets=[_img(), _img()])
    await asyncio.sleep(0)
    await service.handle_command(busy, "merge", assets=[_img(), _img()])
    assert len(service.queue) == 1

    await service.handle_command(ctx, "merge")
    await service.handle_message(ctx, [_img("1")])
    assert await service.handle_message(ctx, [_img("2")]) is True

    assert "queue is full" in ctx.texts[-1]
    assert len(service.assembler) == 0
    assert len(service.queue) == 1

    await service.queue.close()
