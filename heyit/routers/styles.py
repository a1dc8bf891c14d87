"""
风格预设API路由
"""
import base64
from typing import List
from fastapi import APIRouter, Depends
from heyit.auth import require_auth
from heyit.models.schemas import (
    DescribeStyleRequest,
    DescribeStyleResponse,
    RenameRequest,
    SavedStyleResponse,
    SaveStyleFromImageRequest,
    StyleRequest,
)
from heyit.models.task import SavedStyle
from heyit.routers.deps import get_gateway, get_store, parse_image
from heyit.services.errors import ValidationError
from heyit.utils.collection_store import CollectionStore
from heyit.utils.logger import logger

router = APIRouter(prefix="/api/v1", tags=["styles"], dependencies=[Depends(require_auth)])

_PLACEHOLDER_SVG = (
    '<svg width="100" height="100" xmlns="http://www.w3.org/2000/svg"><defs>'
    '<linearGradient id="g" x1="0" y1="0" x2="1" y2="1"><stop stop-color="#888" offset="0%"/>'
    '<stop stop-color="#444" offset="100%"/></linearGradient></defs>'
    '<rect width="100" height="100" fill="url(#g)"/></svg>'
)
# 没有参考图的风格使用灰色渐变缩略图
PLACEHOLDER_THUMBNAIL = "data:image/svg+xml;base64," + base64.b64encode(_PLACEHOLDER_SVG.encode()).decode()


def _build_style(request: StyleRequest) -> SavedStyle:
    reference_images = [parse_image(value) for value in request.reference_images]
    return SavedStyle(
        name=request.name,
        style_description=request.style_description.strip(),
        thumbnail_url=reference_images[0].data_url if reference_images else PLACEHOLDER_THUMBNAIL,
        reference_images=reference_images,
    )


@router.get("/styles", response_model=List[SavedStyleResponse], summary="风格列表")
async def list_styles(store: CollectionStore = Depends(get_store)):
    return [SavedStyleResponse.from_style(style) for style in store.styles]


@router.post("/styles", response_model=SavedStyleResponse, summary="保存风格")
async def create_style(request: StyleRequest, store: CollectionStore = Depends(get_store)):
    style = store.add_style(_build_style(request))
    logger.info(f"风格已保存: name={style.name}")
    return SavedStyleResponse.from_style(style)


@router.put("/styles/{index}", response_model=SavedStyleResponse, summary="编辑风格")
async def update_style(index: int, request: StyleRequest, store: CollectionStore = Depends(get_store)):
    return SavedStyleResponse.from_style(store.update_style(index, _build_style(request)))


@router.patch("/styles/{index}", response_model=SavedStyleResponse, summary="重命名风格")
async def rename_style(index: int, request: RenameRequest, store: CollectionStore = Depends(get_store)):
    return SavedStyleResponse.from_style(store.rename_style(index, request.name))


@router.delete("/styles/{index}", response_model=SavedStyleResponse, summary="删除风格")
async def delete_style(index: int, store: CollectionStore = Depends(get_store)):
    style = store.delete_style(index)
    logger.info(f"风格已删除: name={style.name}")
    return SavedStyleResponse.from_style(style)


@router.post("/styles/describe", response_model=DescribeStyleResponse, summary="分析图片风格")
async def describe_style(request: DescribeStyleRequest, gateway=Depends(get_gateway)):
    """分析图片的艺术风格（只描述风格，不描述内容）"""
    description = await gateway.describe_style(parse_image(request.image))
    return DescribeStyleResponse(style_description=description)


@router.post("/gallery/{group_idx}/{item_idx}/save-style", response_model=SavedStyleResponse, summary="从图片保存风格")
async def save_style_from_image(
    group_idx: int,
    item_idx: int,
    request: SaveStyleFromImageRequest,
    store: CollectionStore = Depends(get_store),
):
    item = store.get_image(group_idx, item_idx)
    if not item.url:
        raise ValidationError("图片尚未生成完成")
    style = store.add_style(SavedStyle(
        name=request.name,
        thumbnail_url=item.url,
        style_description=item.style_description,
    ))
    return SavedStyleResponse.from_style(style)
