from fastapi import APIRouter, Depends

from comfy_img2img.api.deps import get_comfy_client
from comfy_img2img.services.comfy_client import ComfyClient


router = APIRouter(prefix='/health', tags=['system'])


@router.get('')
def health_check():
    return {'status': 'Ok'}


@router.get('/comfy')
async def comfy_health_check(client: ComfyClient = Depends(get_comfy_client)):
    alive = await client.ping()
    return {'status': 'Ok' if alive else 'Unavailable', 'server': client.base_url}
