"""
路由依赖：从应用根对象取出服务实例
"""
from fastapi import Request

from heyit.models.task import ImagePart
from heyit.services.batch_runner import BatchRunner
from heyit.services.errors import ValidationError
from heyit.services.task_queue import TaskQueue
from heyit.utils.collection_store import CollectionStore


def get_store(request: Request) -> CollectionStore:
    return request.app.state.store


def get_task_queue(request: Request) -> TaskQueue:
    return request.app.state.task_queue


def get_batch_runner(request: Request) -> BatchRunner:
    return request.app.state.batch_runner


def get_gateway(request: Request):
    return request.app.state.gateway


def get_artifacts(request: Request):
    return request.app.state.artifacts


def parse_image(value: str) -> ImagePart:
    """解析请求中的图片字段（data URL或纯base64）"""
    try:
        return ImagePart.from_data_url(value.strip())
    except ValueError as e:
        raise ValidationError(f"图片数据无效: {e}")
