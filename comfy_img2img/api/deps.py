from fastapi import Request

from comfy_img2img.services.comfy_client import ComfyClient
from comfy_img2img.services.img2img_service import Img2ImgService
from comfy_img2img.services.interaction import MessageBoard


def get_service(request: Request) -> Img2ImgService:
    return request.app.state.img2img


def get_board(request: Request) -> MessageBoard:
    return request.app.state.board


def get_comfy_client(request: Request) -> ComfyClient:
    return request.app.state.comfy_client
