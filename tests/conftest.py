import asyncio
import base64
from datetime import date

import pytest

from heyit.models.task import ImagePart
from heyit.services.oss_service import InlineArtifactStore
from heyit.services.progress import ProgressEstimator
from heyit.utils.collection_store import CollectionStore


TODAY = date(2026, 10, 18)

# 1x1 PNG
PNG_BYTES = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNk+M9QDwADhgGAWjR9awAAAABJRU5ErkJggg=="
)


def make_image(tag: str = "x", mime_type: str = "image/png") -> ImagePart:
    return ImagePart(mime_type=mime_type, data=base64.b64encode(tag.encode()).decode())


class FakeGateway:
    """可编排的生成后端：按调用顺序消费results，元素为图片列表或异常"""

    def __init__(self, results=None, delay: float = 0.0):
        self.results = list(results or [])
        self.delay = delay
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.release = None

        self.entries = []
        self.translations = []
        self.description = "soft watercolor, pastel palette"
        self.edited = make_image("edited")

    async def generate_styled_images(self, style, prompt, count, aspect_ratio, reference_images=None):
        self.calls.append({
            "style": style,
            "prompt": prompt,
            "count": count,
            "aspect_ratio": aspect_ratio,
            "reference_images": reference_images,
        })
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.release is not None:
                await self.release.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            result = self.results.pop(0) if self.results else [make_image(f"{prompt}-{i}") for i in range(count)]
            if isinstance(result, BaseException):
                raise result
            return result
        finally:
            self.in_flight -= 1

    async def edit_image(self, original, mask, prompt):
        self.calls.append({"edit": prompt, "original": original, "mask": mask})
        return self.edited

    async def describe_style(self, image):
        return self.description

    async def analyze_document(self, text):
        if isinstance(self.entries, BaseException):
            raise self.entries
        return self.entries

    async def translate_batch(self, prompts):
        return self.translations


class LoopRecordingStore(InlineArtifactStore):
    """记录每次保存是否发生在事件循环线程上"""

    def __init__(self):
        self.on_loop = []

    def save(self, image):
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            self.on_loop.append(False)
        else:
            self.on_loop.append(True)
        return super().save(image)


@pytest.fixture
def store(tmp_path):
    return CollectionStore(db_path=str(tmp_path / "store.db"), today=lambda: TODAY)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
async def progress():
    estimator = ProgressEstimator(interval=0.01, decay_delay=0.02)
    yield estimator
    await estimator.close()
