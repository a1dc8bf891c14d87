"""
批量生成（VIP模式）：把文档拆分出的提示词逐条生成，支持暂停/继续和单条重试
"""
import asyncio
import base64
import io
import zipfile
from typing import Dict, List, Optional

from heyit.config import Config
from heyit.models.task import AspectRatio, ImagePart, VipStatus, VipTask
from heyit.services.errors import (
    BusyError,
    FormatError,
    NoArtifactError,
    NotFoundError,
    ValidationError,
    describe_error,
)
from heyit.services.oss_service import InlineArtifactStore
from heyit.utils.logger import logger


class BatchRunner:
    """
    批量生成器

    running 表示有生成调用在进行（批量循环或单条重试），同一时刻只允许一个；
    pause 只在两条之间生效，不会打断正在进行的调用。
    generate_all / resume / generate_single 同步完成校验并占用运行标记，
    返回后台 asyncio.Task，调用方可以等待也可以不等待。
    """

    def __init__(
        self,
        gateway,
        artifacts=None,
        default_style: Optional[str] = None,
        aspect_ratio: Optional[str] = None,
    ):
        self.gateway = gateway
        self.artifacts = artifacts or InlineArtifactStore()
        self.default_style = default_style or Config.BATCH_DEFAULT_STYLE
        self.aspect_ratio = AspectRatio(aspect_ratio or Config.BATCH_ASPECT_RATIO)

        self.tasks: List[VipTask] = []
        self.cursor = 0
        self.paused = False
        self.running = False

        self.style_prompt = ""
        self.reference_images: List[ImagePart] = []

        self._text_busy = False
        self._job: Optional[asyncio.Task] = None
        self._loop_job: Optional[asyncio.Task] = None
        self._results: Dict[int, ImagePart] = {}

    # ------------------------------------------------------------------
    # 状态
    # ------------------------------------------------------------------

    def snapshot(self) -> dict:
        return {
            "tasks": [task.to_dict() for task in self.tasks],
            "cursor": self.cursor,
            "paused": self.paused,
            "running": self.running,
            "completed": sum(1 for task in self.tasks if task.status == VipStatus.COMPLETED),
            "style_prompt": self.style_prompt,
            "reference_count": len(self.reference_images),
        }

    def _ensure_idle(self):
        if self.running or self._text_busy:
            raise BusyError("批量生成正在进行中，请先暂停或等待完成。")

    def _find(self, task_id: int) -> VipTask:
        for task in self.tasks:
            if task.id == task_id:
                return task
        raise NotFoundError(f"批量条目不存在: {task_id}")

    # ------------------------------------------------------------------
    # 准备
    # ------------------------------------------------------------------

    async def analyze(self, text: str) -> List[VipTask]:
        """
        分析文档，按返回顺序生成全部待处理条目

        Raises:
            ValidationError: 文本为空
            FormatError: 后端无法给出结构正确的条目
        """
        self._ensure_idle()
        if not text or not text.strip():
            raise ValidationError("请输入文本或上传文档以进行分析。")

        self._text_busy = True
        self.tasks = []
        self._results.clear()
        self.cursor = 0
        self.paused = False
        try:
            entries = await self.gateway.analyze_document(text)
        finally:
            self._text_busy = False

        tasks = []
        for entry in entries or []:
            name = entry.get("name") if isinstance(entry, dict) else None
            prompt = entry.get("prompt") if isinstance(entry, dict) else None
            # 名称或提示词为空的条目直接丢弃
            if not isinstance(name, str) or not name.strip() or not isinstance(prompt, str) or not prompt.strip():
                logger.warning(f"忽略无效的批量条目: {str(entry)[:100]}")
                continue
            tasks.append(VipTask(id=len(tasks), name=name.strip(), prompt=prompt.strip()))
        if not tasks:
            raise FormatError("分析文档失败。AI没有返回任何有效的提示词。")

        self.tasks = tasks
        logger.info(f"文档分析完成: 共 {len(tasks)} 个批量条目")
        return self.tasks

    def set_style(self, style_prompt: str, reference_images: Optional[List[ImagePart]] = None):
        """设置整批共用的风格提示词和参考图（下一次循环开始时生效）"""
        self.style_prompt = (style_prompt or "").strip()
        self.reference_images = list(reference_images or [])
        logger.info(f"批量风格已更新: references={len(self.reference_images)}")

    def update_prompt(self, task_id: int, prompt: str) -> VipTask:
        if not prompt or not prompt.strip():
            raise ValidationError("提示词不能为空")
        self._ensure_idle()
        task = self._find(task_id)
        task.prompt = prompt.strip()
        return task

    async def translate_all(self) -> bool:
        """
        把全部提示词翻译成英文

        只有返回数量与输入一致时才按下标整体替换，否则保持原样。

        Returns:
            是否应用了翻译结果
        """
        self._ensure_idle()
        if not self.tasks:
            return False

        originals = [task.prompt for task in self.tasks]
        self._text_busy = True
        try:
            translated = await self.gateway.translate_batch(originals)
        finally:
            self._text_busy = False

        if len(translated) != len(originals):
            logger.error(
                f"翻译结果数量不一致，保留原提示词: original={len(originals)}, translated={len(translated)}"
            )
            return False

        for task, original, prompt in zip(self.tasks, originals, translated):
            task.prompt = prompt or original
        logger.info(f"批量翻译完成: 共 {len(originals)} 条")
        return True

    # ------------------------------------------------------------------
    # 生成控制
    # ------------------------------------------------------------------

    def generate_all(self) -> asyncio.Task:
        """从头开始批量生成，已完成的条目会被跳过"""
        self._ensure_idle()
        if not self.tasks:
            raise ValidationError("没有可生成的条目，请先分析文档。")
        self.cursor = 0
        self.paused = False
        return self._launch_loop()

    def pause(self):
        """请求暂停，正在进行的条目生成完后生效"""
        self.paused = True
        logger.info(f"已请求暂停批量生成: running={self.running}, cursor={self.cursor}")

    def resume(self) -> Optional[asyncio.Task]:
        """
        从保存的位置继续

        批量循环尚未退出（暂停请求还没生效）时只清除暂停标记，返回仍在运行的循环；
        没有处于暂停状态时什么也不做，返回None。

        Raises:
            BusyError: 翻译/分析或单条生成正在进行
        """
        if self._text_busy:
            raise BusyError("正在分析或翻译提示词，请完成后再继续。")
        if self.running:
            if self._job is not self._loop_job:
                raise BusyError("单条生成正在进行中，请完成后再继续批量生成。")
            self.paused = False
            return self._job
        if not self.paused:
            return None
        self.paused = False
        logger.info(f"继续批量生成: cursor={self.cursor}")
        return self._launch_loop()

    def generate_single(self, task_id: int) -> asyncio.Task:
        """单独（重新）生成一条，不影响批量进度位置"""
        self._ensure_idle()
        task = self._find(task_id)
        return self._launch(self._generate(task, self._style(), list(self.reference_images)))

    async def close(self):
        if self._job is not None and not self._job.done():
            self._job.cancel()
            await asyncio.gather(self._job, return_exceptions=True)

    def _launch(self, coro) -> asyncio.Task:
        self.running = True
        self._job = asyncio.get_running_loop().create_task(coro)
        self._job.add_done_callback(self._on_job_done)
        return self._job

    def _launch_loop(self) -> asyncio.Task:
        self._loop_job = self._launch(self._loop())
        return self._loop_job

    def _on_job_done(self, job: asyncio.Task):
        if job is self._job:
            self.running = False

    def _style(self) -> str:
        return self.style_prompt or self.default_style

    async def _loop(self):
        style = self._style()
        references = list(self.reference_images)
        logger.info(f"批量生成开始: cursor={self.cursor}, total={len(self.tasks)}")

        for i in range(self.cursor, len(self.tasks)):
            if self.paused:
                self.cursor = i
                logger.info(f"批量生成已暂停: cursor={i}")
                return
            self.cursor = i
            task = self.tasks[i]
            if task.status == VipStatus.COMPLETED:
                continue
            await self._generate(task, style, references)

        self.cursor = 0
        self.paused = False
        logger.info("批量生成结束")

    async def _generate(self, task: VipTask, style: str, references: List[ImagePart]):
        task.status = VipStatus.GENERATING
        task.error = None
        logger.info(f"批量条目开始生成: id={task.id}, name={task.name}")
        try:
            images = await self.gateway.generate_styled_images(
                style, task.prompt, 1, self.aspect_ratio, references or None,
            )
            if not images:
                raise NoArtifactError("AI模型未能生成任何图片。这可能是由于安全设置或请求无效。")
            task.image_url = await asyncio.to_thread(self.artifacts.save, images[0])
            self._results[task.id] = images[0]
            task.status = VipStatus.COMPLETED
            logger.info(f"批量条目完成: id={task.id}")
        except Exception as e:
            # 单条失败不影响其余条目
            task.status = VipStatus.FAILED
            task.error = describe_error(e)
            logger.error(f"批量条目生成失败: id={task.id}, error={task.error}", exc_info=True)

    # ------------------------------------------------------------------
    # 导出
    # ------------------------------------------------------------------

    def export_zip(self) -> bytes:
        """把已完成条目的图片打包为zip，文件名取条目名称"""
        completed = [t for t in self.tasks if t.status == VipStatus.COMPLETED and t.id in self._results]
        if not completed:
            raise ValidationError("没有已完成的图片可以导出")

        buffer = io.BytesIO()
        used_names = set()
        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
            for task in completed:
                image = self._results[task.id]
                ext = "jpg" if image.mime_type == "image/jpeg" else "png"
                filename = f"{task.name}.{ext}"
                if filename in used_names:
                    filename = f"{task.name}-{task.id}.{ext}"
                used_names.add(filename)
                archive.writestr(filename, base64.b64decode(image.data))
        return buffer.getvalue()
