"""
任务与图片状态模型
"""
import uuid
from typing import Optional, List, Tuple, Dict, Any
from enum import Enum
from dataclasses import dataclass, field, asdict


class AspectRatio(str, Enum):
    """支持的宽高比"""
    LANDSCAPE = "16:9"
    CLASSIC = "3:2"
    PORTRAIT = "9:16"


class ImageStatus(str, Enum):
    """图片槽位状态枚举"""
    QUEUED = "queued"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


class VipStatus(str, Enum):
    """批量任务条目状态枚举"""
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class ImagePart:
    """内联图片数据（参考图或生成结果），data为base64编码"""
    mime_type: str
    data: str

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"

    @classmethod
    def from_data_url(cls, value: str, default_mime: str = "image/png") -> "ImagePart":
        """解析data URL；不带前缀的纯base64按default_mime处理"""
        if not value.startswith("data:"):
            return cls(mime_type=default_mime, data=value)
        header, _, payload = value.partition(",")
        if not payload:
            raise ValueError("无效的data URL")
        mime_type = header[len("data:"):].split(";")[0]
        if not mime_type:
            raise ValueError("无法从data URL中解析MIME类型")
        return cls(mime_type=mime_type, data=payload)

    def to_dict(self) -> Dict[str, str]:
        return {"mime_type": self.mime_type, "data": self.data}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImagePart":
        return cls(mime_type=data["mime_type"], data=data["data"])


@dataclass(frozen=True)
class Task:
    """一次生成请求，提交后不可变"""
    id: str
    content_prompt: str
    num_images: int
    aspect_ratio: AspectRatio
    style_description: Optional[str] = None
    reference_images: Tuple[ImagePart, ...] = ()

    @classmethod
    def create(
        cls,
        content_prompt: str,
        num_images: int = 1,
        aspect_ratio: AspectRatio = AspectRatio.LANDSCAPE,
        style_description: Optional[str] = None,
        reference_images: Optional[List[ImagePart]] = None,
    ) -> "Task":
        return cls(
            id=uuid.uuid4().hex,
            content_prompt=content_prompt,
            num_images=num_images,
            aspect_ratio=AspectRatio(aspect_ratio),
            style_description=style_description,
            reference_images=tuple(reference_images or ()),
        )


@dataclass
class ImageItem:
    """单个图片槽位的生命周期记录"""
    id: str
    name: str
    status: ImageStatus
    style_description: str
    content_prompt: str
    task_id: Optional[str] = None
    url: Optional[str] = None
    progress: Optional[float] = None
    error: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.status in (ImageStatus.QUEUED, ImageStatus.GENERATING)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImageItem":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            status=ImageStatus(data["status"]),
            style_description=data.get("style_description", ""),
            content_prompt=data.get("content_prompt", ""),
            task_id=data.get("task_id"),
            url=data.get("url"),
            progress=data.get("progress"),
            error=data.get("error"),
        )


@dataclass
class Group:
    """按日期分组的图片列表，组内最新的在前"""
    date_label: str
    images: List[ImageItem] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"date_label": self.date_label, "images": [img.to_dict() for img in self.images]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Group":
        return cls(
            date_label=data["date_label"],
            images=[ImageItem.from_dict(img) for img in data.get("images", [])],
        )


@dataclass
class SavedStyle:
    """用户保存的风格预设"""
    name: str
    thumbnail_url: str
    style_description: str
    reference_images: List[ImagePart] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "thumbnail_url": self.thumbnail_url,
            "style_description": self.style_description,
            "reference_images": [part.to_dict() for part in self.reference_images],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SavedStyle":
        return cls(
            name=data["name"],
            thumbnail_url=data.get("thumbnail_url", ""),
            style_description=data.get("style_description", ""),
            reference_images=[ImagePart.from_dict(p) for p in data.get("reference_images") or []],
        )


@dataclass
class VipTask:
    """批量生成中的单个条目"""
    id: int
    name: str
    prompt: str
    status: VipStatus = VipStatus.PENDING
    image_url: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data
