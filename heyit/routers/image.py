"""
图片生成与图库API路由
"""
import asyncio
import uuid
from typing import List
from fastapi import APIRouter, Depends
from heyit.auth import require_auth
from heyit.models.schemas import (
    EditRequest,
    EnqueueRequest,
    EnqueueResponse,
    GroupResponse,
    ImageItemResponse,
    QueueStatusResponse,
    RegenerateRequest,
    RenameRequest,
)
from heyit.models.task import ImageItem, ImageStatus, Task
from heyit.routers.deps import get_artifacts, get_gateway, get_store, get_task_queue, parse_image
from heyit.services.errors import ValidationError
from heyit.services.task_queue import TaskQueue
from heyit.utils.collection_store import CollectionStore
from heyit.utils.logger import logger

router = APIRouter(prefix="/api/v1", tags=["image"], dependencies=[Depends(require_auth)])


def _enqueue(queue: TaskQueue, task: Task) -> EnqueueResponse:
    placeholders = queue.enqueue(task)
    return EnqueueResponse(
        task_id=task.id,
        images=[ImageItemResponse.from_item(item) for item in placeholders],
        queue_length=queue.pending_count,
    )


@router.post("/tasks", response_model=EnqueueResponse, summary="提交生成任务")
async def enqueue_task(
    request: EnqueueRequest,
    store: CollectionStore = Depends(get_store),
    queue: TaskQueue = Depends(get_task_queue),
):
    """
    提交图片生成任务

    - 立即在今天的画廊分组中创建num_images个排队中的占位并返回
    - 任务在后台按提交顺序逐个执行
    - 指定style_name时使用保存的风格，请求中显式提供的描述/参考图优先
    """
    style_description = request.style_description
    reference_images = [parse_image(value) for value in request.reference_images or []]

    if request.style_name:
        style = store.find_style(request.style_name)
        if not style_description or not style_description.strip():
            style_description = style.style_description
        if not reference_images:
            reference_images = list(style.reference_images)

    task = Task.create(
        content_prompt=request.content_prompt,
        num_images=request.num_images,
        aspect_ratio=request.aspect_ratio,
        style_description=style_description,
        reference_images=reference_images,
    )
    return _enqueue(queue, task)


@router.get("/queue", response_model=QueueStatusResponse, summary="查询队列状态")
async def get_queue_status(queue: TaskQueue = Depends(get_task_queue)):
    return QueueStatusResponse(**queue.snapshot())


@router.get("/gallery", response_model=List[GroupResponse], summary="画廊")
async def get_gallery(store: CollectionStore = Depends(get_store)):
    return [GroupResponse.from_group(group) for group in store.gallery]


@router.patch("/gallery/{group_idx}/{item_idx}", response_model=ImageItemResponse, summary="重命名图片")
async def rename_image(
    group_idx: int,
    item_idx: int,
    request: RenameRequest,
    store: CollectionStore = Depends(get_store),
):
    return ImageItemResponse.from_item(store.rename_image(group_idx, item_idx, request.name))


@router.delete("/gallery/{group_idx}/{item_idx}", response_model=ImageItemResponse, summary="移入回收站")
async def delete_image(group_idx: int, item_idx: int, store: CollectionStore = Depends(get_store)):
    return ImageItemResponse.from_item(store.delete_image(group_idx, item_idx))


@router.post("/gallery/{group_idx}/{item_idx}/regenerate", response_model=EnqueueResponse, summary="修改提示词重新生成")
async def regenerate_image(
    group_idx: int,
    item_idx: int,
    request: RegenerateRequest,
    store: CollectionStore = Depends(get_store),
    queue: TaskQueue = Depends(get_task_queue),
):
    """沿用原图的风格描述，用新的提示词生成一张"""
    item = store.get_image(group_idx, item_idx)
    task = Task.create(
        content_prompt=request.content_prompt,
        num_images=1,
        aspect_ratio=request.aspect_ratio,
        style_description=item.style_description or None,
    )
    logger.info(f"重新生成: source={item.id}, task_id={task.id}")
    return _enqueue(queue, task)


@router.post("/gallery/{group_idx}/{item_idx}/edit", response_model=ImageItemResponse, summary="局部编辑")
async def edit_image(
    group_idx: int,
    item_idx: int,
    request: EditRequest,
    store: CollectionStore = Depends(get_store),
    gateway=Depends(get_gateway),
    artifacts=Depends(get_artifacts),
):
    """
    按遮罩局部编辑已完成的图片，结果作为新图片加入今天的画廊分组

    图片以data URL保存时直接使用；保存在MinIO时需要在请求中提供原图
    """
    item = store.get_image(group_idx, item_idx)
    if item.status != ImageStatus.COMPLETED:
        raise ValidationError("只能编辑已完成的图片")

    source = request.image
    if not source and item.url and item.url.startswith("data:"):
        source = item.url
    if not source:
        raise ValidationError("图片保存在对象存储中，请在请求中提供原图")

    result = await gateway.edit_image(parse_image(source), parse_image(request.mask), request.prompt)
    edited = ImageItem(
        id=f"inpainted-{uuid.uuid4().hex}",
        name=f"编辑: {item.name}",
        status=ImageStatus.COMPLETED,
        url=await asyncio.to_thread(artifacts.save, result),
        style_description=item.style_description,
        content_prompt=f"局部修改: {item.content_prompt}",
    )
    store.add_to_gallery([edited])
    logger.info(f"局部编辑完成: source={item.id}, new={edited.id}")
    return ImageItemResponse.from_item(edited)


@router.get("/trash", response_model=List[GroupResponse], summary="回收站")
async def get_trash(store: CollectionStore = Depends(get_store)):
    return [GroupResponse.from_group(group) for group in store.trash]


@router.post("/trash/{group_idx}/{item_idx}/restore", response_model=ImageItemResponse, summary="恢复图片")
async def restore_image(group_idx: int, item_idx: int, store: CollectionStore = Depends(get_store)):
    return ImageItemResponse.from_item(store.restore_image(group_idx, item_idx))


@router.delete("/trash/{group_idx}/{item_idx}", response_model=ImageItemResponse, summary="永久删除")
async def permanently_delete_image(group_idx: int, item_idx: int, store: CollectionStore = Depends(get_store)):
    return ImageItemResponse.from_item(store.permanently_delete(group_idx, item_idx))
