"""
生成进度估算：后端没有进度接口，按渐近曲线模拟一个单调递增的进度
"""
import asyncio
from typing import Dict, Optional

from heyit.config import Config
from heyit.models.task import ImageItem, ImageStatus
from heyit.utils.logger import logger


class ProgressEstimator:
    """为生成中的图片维护周期性进度更新，每个图片一个可取消的asyncio任务"""

    # 进度向95渐近，生成结束前永远不会到达95
    CEILING = 95.0
    DAMPING = 15.0

    def __init__(self, interval: Optional[float] = None, decay_delay: Optional[float] = None):
        """
        Args:
            interval: 进度更新间隔（秒）
            decay_delay: 完成后进度保持100的时间（秒），之后清空
        """
        self.interval = interval if interval is not None else Config.PROGRESS_INTERVAL
        self.decay_delay = decay_delay if decay_delay is not None else Config.PROGRESS_DECAY
        self._tickers: Dict[str, asyncio.Task] = {}
        self._decays: Dict[str, asyncio.Task] = {}

    @classmethod
    def next_progress(cls, current: float) -> float:
        """计算下一次进度值"""
        increment = max(1.0, (cls.CEILING - current) / cls.DAMPING)
        return min(current + increment, cls.CEILING - 1)

    def is_ticking(self, item_id: str) -> bool:
        return item_id in self._tickers

    def start(self, item: ImageItem) -> None:
        """开始为图片模拟进度"""
        if item.id in self._tickers:
            logger.warning(f"进度已在更新中，忽略重复启动: item_id={item.id}")
            return

        # 同一图片重新开始时，旧的清空计时已无意义
        decay = self._decays.pop(item.id, None)
        if decay is not None:
            decay.cancel()

        item.progress = 0.0
        self._tickers[item.id] = asyncio.get_running_loop().create_task(self._tick(item))

    def stop(self, item: ImageItem) -> bool:
        """
        停止进度更新：进度置为100，decay_delay秒后清空

        Returns:
            是否确实停止了一个正在运行的计时器（重复调用返回False）
        """
        ticker = self._tickers.pop(item.id, None)
        if ticker is None:
            return False

        ticker.cancel()
        item.progress = 100.0
        self._decays[item.id] = asyncio.get_running_loop().create_task(self._decay(item))
        return True

    async def _tick(self, item: ImageItem) -> None:
        while True:
            await asyncio.sleep(self.interval)
            if item.status != ImageStatus.GENERATING:
                continue
            current = item.progress or 0.0
            progress = self.next_progress(current)
            if progress > current:
                item.progress = progress

    async def _decay(self, item: ImageItem) -> None:
        try:
            await asyncio.sleep(self.decay_delay)
            item.progress = None
        finally:
            if self._decays.get(item.id) is asyncio.current_task():
                del self._decays[item.id]

    async def close(self) -> None:
        """取消全部计时器（服务关闭时调用）"""
        tasks = list(self._tickers.values()) + list(self._decays.values())
        self._tickers.clear()
        self._decays.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
