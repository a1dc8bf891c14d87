"""
生成任务队列：先进先出、单工作者，把一次请求拆成N个图片槽位并回填结果
"""
import asyncio
import sqlite3
from collections import deque
from typing import Deque, Dict, List, Optional

from heyit.config import Config
from heyit.models.task import ImageItem, ImageStatus, Task
from heyit.services.errors import NoArtifactError, ValidationError, describe_error
from heyit.services.oss_service import InlineArtifactStore
from heyit.services.progress import ProgressEstimator
from heyit.utils.collection_store import CollectionStore
from heyit.utils.logger import logger


PLACEHOLDER_NAME = "生成中..."
NAME_MAX_LENGTH = 40


def display_name(content_prompt: str) -> str:
    """完成后图片的默认名称：提示词超过40个字符时截断"""
    if len(content_prompt) > NAME_MAX_LENGTH:
        return content_prompt[:NAME_MAX_LENGTH] + "..."
    return content_prompt


class TaskQueue:
    """
    生成任务队列

    enqueue 只创建占位并入队，不等待网络；后台驱动协程按提交顺序逐个处理任务，
    任意时刻最多只有一个任务在调用生成后端。
    """

    def __init__(
        self,
        gateway,
        store: CollectionStore,
        progress: ProgressEstimator,
        artifacts=None,
        default_style: Optional[str] = None,
    ):
        """
        Args:
            gateway: 生成后端网关（GeminiService或实现相同接口的对象）
            store: 图库存储
            progress: 进度估算器
            artifacts: 生成结果存储，默认内联data URL
            default_style: 任务未指定风格时使用的风格描述
        """
        self.gateway = gateway
        self.store = store
        self.progress = progress
        self.artifacts = artifacts or InlineArtifactStore()
        self.default_style = default_style or Config.QUEUE_DEFAULT_STYLE

        self._pending: Deque[Task] = deque()
        self._placeholders: Dict[str, List[ImageItem]] = {}
        self._active: Optional[Task] = None
        self._driver: Optional[asyncio.Task] = None
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def active_task(self) -> Optional[Task]:
        return self._active

    @property
    def pending_count(self) -> int:
        """未处理完的任务数（包含正在处理的任务）"""
        return len(self._pending)

    def snapshot(self) -> dict:
        return {
            "pending": self.pending_count,
            "active_task_id": self._active.id if self._active else None,
            "queued_task_ids": [task.id for task in self._pending],
        }

    def enqueue(self, task: Task) -> List[ImageItem]:
        """
        提交任务：立即在今天的画廊分组头部插入num_images个排队中的占位

        Returns:
            创建的占位列表（按请求顺序）
        """
        if task.num_images < 1:
            raise ValidationError("生成数量至少为1")
        if not task.content_prompt or not task.content_prompt.strip():
            raise ValidationError("提示词不能为空")

        placeholders = [
            ImageItem(
                id=f"{task.id}-{i}",
                name=PLACEHOLDER_NAME,
                status=ImageStatus.QUEUED,
                style_description="",
                content_prompt=task.content_prompt,
                task_id=task.id,
            )
            for i in range(task.num_images)
        ]
        self.store.add_to_gallery(placeholders)
        self._placeholders[task.id] = placeholders
        self._pending.append(task)
        logger.info(
            f"任务已入队: task_id={task.id}, num_images={task.num_images}, "
            f"aspect_ratio={task.aspect_ratio.value}, 队列长度={len(self._pending)}"
        )

        self._ensure_driver()
        return placeholders

    async def wait_idle(self):
        """等待队列全部处理完"""
        await self._idle.wait()

    async def close(self):
        """取消驱动协程（服务关闭时调用），正在生成的占位会在下次启动时标记为中断"""
        if self._driver is not None and not self._driver.done():
            self._driver.cancel()
            await asyncio.gather(self._driver, return_exceptions=True)
        self._driver = None

    def _ensure_driver(self):
        if self._driver is not None and not self._driver.done():
            return
        self._idle.clear()
        self._driver = asyncio.get_running_loop().create_task(self._drive())

    async def _drive(self):
        try:
            while self._pending:
                task = self._pending[0]
                self._active = task
                try:
                    await self._process(task)
                except Exception as e:
                    # 意外异常只影响当前任务，驱动继续处理后续任务
                    logger.error(f"处理任务时发生意外错误: task_id={task.id}, error={e}", exc_info=True)
                    stuck = [item for item in self._placeholders.get(task.id, []) if item.is_pending]
                    self._fail(stuck, describe_error(e))
                    self._save()
                finally:
                    # 处理结束后才出队，队列长度如实反映积压
                    self._pending.popleft()
                    self._placeholders.pop(task.id, None)
                    self._active = None
        finally:
            self._idle.set()

    async def _process(self, task: Task):
        items = self._placeholders.get(task.id, [])
        style = task.style_description or self.default_style

        try:
            for item in items:
                item.status = ImageStatus.GENERATING
                self.progress.start(item)
            self._save()
            logger.info(f"开始处理任务: task_id={task.id}, prompt={task.content_prompt[:50]}")

            try:
                images = await self.gateway.generate_styled_images(
                    style,
                    task.content_prompt,
                    task.num_images,
                    task.aspect_ratio,
                    list(task.reference_images) or None,
                )
                if not images:
                    raise NoArtifactError("AI模型未能生成任何图片。这可能是由于安全设置或请求无效。")
                urls = []
                for image in images[:len(items)]:
                    urls.append(await asyncio.to_thread(self.artifacts.save, image))
            except Exception as e:
                # 后端失败只影响本任务，队列继续处理下一个
                error_msg = describe_error(e)
                logger.error(f"任务生成失败: task_id={task.id}, error={error_msg}", exc_info=True)
                self._fail(items, error_msg)
            else:
                self._complete(task, items, urls, style)
        finally:
            for item in items:
                self.progress.stop(item)
            self._save()

    def _save(self):
        """写回画廊；写入失败只记录日志，内存中的状态仍然有效，下次写入时一并保存"""
        try:
            self.store.save_gallery()
        except sqlite3.Error as e:
            logger.error(f"保存画廊失败: error={e}", exc_info=True)

    def _complete(self, task: Task, items: List[ImageItem], urls: List[str], style: str):
        """按请求顺序把结果分配给占位，多余的占位直接移除"""
        name = display_name(task.content_prompt)
        for index, url in enumerate(urls):
            item = items[index]
            item.status = ImageStatus.COMPLETED
            item.url = url
            item.style_description = style
            item.name = name
            item.error = None

        unassigned = items[len(urls):]
        if unassigned:
            logger.warning(
                f"返回的图片少于请求数量: task_id={task.id}, requested={len(items)}, "
                f"returned={len(urls)}，移除 {len(unassigned)} 个占位"
            )
            self.store.discard([item.id for item in unassigned])
        logger.info(f"任务完成: task_id={task.id}, 图片数量={len(urls)}")

    @staticmethod
    def _fail(items: List[ImageItem], error_msg: str):
        # 失败的占位保留在画廊中，方便用户看到错误
        for item in items:
            item.status = ImageStatus.FAILED
            item.error = error_msg
