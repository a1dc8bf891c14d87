"""
Pydantic数据模型：请求/响应Schema
"""
from typing import Optional, List, Literal
from pydantic import BaseModel, Field, field_validator, model_validator

from heyit.models.task import Group, ImageItem, SavedStyle


AspectRatioLiteral = Literal["16:9", "3:2", "9:16"]


def _not_blank(v: str, field_name: str) -> str:
    if v is None or not v.strip():
        raise ValueError(f"{field_name}不能为空")
    return v.strip()


class EnqueueRequest(BaseModel):
    """图片生成请求模型"""
    content_prompt: str = Field(..., description="图片内容描述")
    num_images: int = Field(1, ge=1, le=4, description="生成图片张数，默认为1")
    aspect_ratio: AspectRatioLiteral = Field("16:9", description="宽高比")
    style_description: Optional[str] = Field(None, description="风格描述，不提供时使用保存的风格或默认风格")
    style_name: Optional[str] = Field(None, description="使用已保存风格的名称")
    reference_images: Optional[List[str]] = Field(None, description="参考图（base64或data URL），提供时执行风格迁移")

    @field_validator("content_prompt")
    @classmethod
    def validate_content_prompt(cls, v):
        return _not_blank(v, "content_prompt")


class ImageItemResponse(BaseModel):
    """图片槽位响应模型"""
    id: str
    name: str
    status: str
    url: Optional[str] = None
    progress: Optional[float] = None
    task_id: Optional[str] = None
    style_description: str = ""
    content_prompt: str = ""
    error: Optional[str] = None

    @classmethod
    def from_item(cls, item: ImageItem) -> "ImageItemResponse":
        return cls(**item.to_dict())


class GroupResponse(BaseModel):
    """按日期分组的图片"""
    date_label: str
    images: List[ImageItemResponse]

    @classmethod
    def from_group(cls, group: Group) -> "GroupResponse":
        return cls(date_label=group.date_label, images=[ImageItemResponse.from_item(i) for i in group.images])


class EnqueueResponse(BaseModel):
    """图片生成响应模型"""
    task_id: str = Field(..., description="任务ID")
    images: List[ImageItemResponse] = Field(..., description="创建的占位")
    queue_length: int = Field(..., description="当前队列中的任务数")
    message: str = Field("任务已加入队列", description="响应消息")


class QueueStatusResponse(BaseModel):
    """队列状态"""
    pending: int
    active_task_id: Optional[str] = None
    queued_task_ids: List[str] = []


class RenameRequest(BaseModel):
    name: str

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        return _not_blank(v, "name")


class RegenerateRequest(BaseModel):
    """用修改后的提示词重新生成"""
    content_prompt: str
    aspect_ratio: AspectRatioLiteral = "16:9"

    @field_validator("content_prompt")
    @classmethod
    def validate_content_prompt(cls, v):
        return _not_blank(v, "content_prompt")


class EditRequest(BaseModel):
    """局部编辑请求：mask白色区域为需要修改的部分"""
    prompt: str
    mask: str = Field(..., description="遮罩图片（base64或data URL）")
    image: Optional[str] = Field(None, description="原图；图片保存在MinIO时必须提供")

    @field_validator("prompt")
    @classmethod
    def validate_prompt(cls, v):
        return _not_blank(v, "prompt")


class StyleRequest(BaseModel):
    """创建或更新风格预设"""
    name: str
    style_description: str = ""
    reference_images: List[str] = []

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        return _not_blank(v, "name")

    @model_validator(mode="after")
    def validate_content(self):
        if not self.style_description.strip() and not self.reference_images:
            raise ValueError("风格必须有名称以及描述或参考图。")
        return self


class SaveStyleFromImageRequest(BaseModel):
    name: str

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        return _not_blank(v, "name")


class SavedStyleResponse(BaseModel):
    name: str
    thumbnail_url: str
    style_description: str
    reference_images: List[str] = Field([], description="参考图data URL")

    @classmethod
    def from_style(cls, style: SavedStyle) -> "SavedStyleResponse":
        return cls(
            name=style.name,
            thumbnail_url=style.thumbnail_url,
            style_description=style.style_description,
            reference_images=[part.data_url for part in style.reference_images],
        )


class DescribeStyleRequest(BaseModel):
    image: str = Field(..., description="待分析图片（base64或data URL）")


class DescribeStyleResponse(BaseModel):
    style_description: str


class AnalyzeRequest(BaseModel):
    text: str = Field(..., description="已提取的文档纯文本")


class BatchStyleRequest(BaseModel):
    style_prompt: str = ""
    reference_images: List[str] = []


class PromptUpdateRequest(BaseModel):
    prompt: str

    @field_validator("prompt")
    @classmethod
    def validate_prompt(cls, v):
        return _not_blank(v, "prompt")


class VipTaskResponse(BaseModel):
    id: int
    name: str
    prompt: str
    status: str
    image_url: Optional[str] = None
    error: Optional[str] = None


class BatchStatusResponse(BaseModel):
    tasks: List[VipTaskResponse]
    cursor: int
    paused: bool
    running: bool
    completed: int
    style_prompt: str = ""
    reference_count: int = 0


class TranslateResponse(BaseModel):
    applied: bool = Field(..., description="翻译结果数量与原文一致时才会应用")
    batch: BatchStatusResponse


class HealthResponse(BaseModel):
    """健康检查响应模型"""
    status: str = Field("ok", description="服务状态")
    gateway_configured: bool = Field(..., description="是否配置了生成后端")
    queue_pending: int = Field(0, description="队列中的任务数")
