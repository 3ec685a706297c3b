from typing import List

from fastapi import APIRouter, Depends, Query

from comfy_img2img.api.deps import get_board, get_service
from comfy_img2img.schemas.interaction import (
    BoardMessageOut,
    CommandRequest,
    CommandResponse,
    InteractionBase,
    MessageRequest,
    MessageResponse,
    QueueStatus,
)
from comfy_img2img.services.img2img_service import Img2ImgService
from comfy_img2img.services.interaction import MailboxContext, MessageBoard, extract_assets


router = APIRouter(prefix='/img2img', tags=['img2img'])


def _context(payload: InteractionBase, board: MessageBoard) -> MailboxContext:
    return MailboxContext(
        board=board,
        user_id=payload.user_id,
        channel_id=payload.channel_id,
        authority=payload.authority,
    )


def _assets(payload: InteractionBase):
    return extract_assets(
        [e.model_dump() for e in payload.elements],
        [e.model_dump() for e in payload.quote],
    )


@router.post('/command', response_model=CommandResponse)
async def img2img_command(
    payload: CommandRequest,
    service: Img2ImgService = Depends(get_service),
    board: MessageBoard = Depends(get_board)
):
    position = await service.handle_command(
        _context(payload, board),
        payload.text,
        raw=payload.raw,
        translate_only=payload.translate_only,
        assets=_assets(payload),
    )

    if position is None:
        return CommandResponse(status='waiting_images')
    return CommandResponse(status='queued', position=position)


@router.post('/message', response_model=MessageResponse)
async def img2img_message(
    payload: MessageRequest,
    service: Img2ImgService = Depends(get_service),
    board: MessageBoard = Depends(get_board)
):
    handled = await service.handle_message(_context(payload, board), _assets(payload))
    return MessageResponse(handled=handled)


@router.get('/messages', response_model=List[BoardMessageOut])
async def img2img_messages(
    user_id: str = Query(...),
    channel_id: str = Query(...),
    board: MessageBoard = Depends(get_board)
):
    return await board.drain((user_id, channel_id))


@router.delete('/pending')
async def img2img_discard_pending(
    user_id: str = Query(...),
    channel_id: str = Query(...),
    service: Img2ImgService = Depends(get_service)
):
    return {'discarded': service.assembler.discard((user_id, channel_id))}


@router.get('/queue', response_model=QueueStatus)
async def img2img_queue(service: Img2ImgService = Depends(get_service)):
    return QueueStatus(
        **service.queue.snapshot(),
        pending_assemblies=len(service.assembler),
    )
