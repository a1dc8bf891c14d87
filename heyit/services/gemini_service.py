"""
Gemini生成后端网关：图片生成、风格分析、局部编辑、文档拆分与批量翻译
"""
import asyncio
import json
import re
from typing import Any, Dict, List, Optional

import httpx

from heyit.config import Config
from heyit.models.task import AspectRatio, ImagePart
from heyit.services.errors import (
    BlockedError,
    EmptyDescriptionError,
    FormatError,
    GatewayError,
    NoArtifactError,
    RateLimitError,
    ServerError,
)
from heyit.utils.logger import logger


# 翻译时拼接多条提示词的分隔符，正常文本中不会出现
TRANSLATION_SEPARATOR = "|||---|||"

# Imagen不支持3:2，按最接近的4:3生成
IMAGEN_ASPECT_RATIOS = {
    AspectRatio.LANDSCAPE: "16:9",
    AspectRatio.CLASSIC: "4:3",
    AspectRatio.PORTRAIT: "9:16",
}

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]+?)\s*```")

_PROMPT_LIST_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "prompts": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "name": {"type": "STRING", "description": "An identifier for the image, e.g., BG-01-01."},
                    "prompt": {"type": "STRING", "description": "A detailed image generation prompt."},
                },
                "required": ["name", "prompt"],
            },
        }
    },
    "required": ["prompts"],
}


def parse_prompt_list(response_text: str) -> List[Dict[str, str]]:
    """
    解析文档拆分结果

    Args:
        response_text: 模型返回的文本，可能被markdown代码块包裹

    Returns:
        [{"name": ..., "prompt": ...}] 列表，保持原有顺序

    Raises:
        FormatError: JSON无法解析、结构不符或过滤后为空
    """
    text = (response_text or "").strip()
    match = _FENCED_BLOCK.search(text)
    if match:
        text = match.group(1)

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        logger.error(f"解析文档拆分结果失败: {e}, 原始响应: {response_text[:200] if response_text else ''}")
        raise FormatError("分析文档失败。AI返回了无效的格式。")

    if not isinstance(data, dict) or not isinstance(data.get("prompts"), list):
        logger.warning(f"JSON中缺少prompts数组: {str(data)[:200]}")
        raise FormatError("AI返回了无效的JSON结构。")

    entries = []
    for entry in data["prompts"]:
        if not isinstance(entry, dict):
            continue
        name = entry.get("name")
        prompt = entry.get("prompt")
        # 过滤掉名称或提示词为空的条目
        if isinstance(name, str) and name.strip() and isinstance(prompt, str) and prompt.strip():
            entries.append({"name": name.strip(), "prompt": prompt.strip()})

    if not entries:
        raise FormatError("分析文档失败。AI没有返回任何有效的提示词。")
    return entries


class GeminiService:
    """Gemini生成后端网关"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_base: Optional[str] = None,
        timeout: Optional[float] = None,
        reference_delay: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        初始化网关

        Args:
            api_key: Gemini API Key（默认读取配置）
            api_base: API地址（默认读取配置）
            timeout: 单次请求超时（秒）
            reference_delay: 参考图模式下相邻两次调用之间的间隔（秒）
            transport: 自定义httpx传输层（测试时注入）
        """
        self.api_key = api_key if api_key is not None else Config.GEMINI_API_KEY
        self.api_base = (api_base or Config.GEMINI_API_BASE).rstrip("/")
        self.timeout = timeout if timeout is not None else Config.GEMINI_TIMEOUT
        self.reference_delay = reference_delay if reference_delay is not None else Config.REFERENCE_CALL_DELAY
        self.text_model = Config.GEMINI_TEXT_MODEL
        self.image_model = Config.GEMINI_IMAGE_MODEL
        self.edit_model = Config.GEMINI_EDIT_MODEL
        self._transport = transport

    # ------------------------------------------------------------------
    # 图片生成
    # ------------------------------------------------------------------

    async def generate_styled_images(
        self,
        style_description: str,
        content_prompt: str,
        count: int,
        aspect_ratio: AspectRatio,
        reference_images: Optional[List[ImagePart]] = None,
    ) -> List[ImagePart]:
        """
        按风格描述和内容提示词生成图片

        有参考图时逐张调用图片编辑模型（风格迁移），每次调用之间间隔reference_delay秒；
        没有参考图时一次性调用Imagen批量生成。

        Returns:
            按请求顺序排列的生成结果
        """
        if reference_images:
            return await self._generate_with_references(style_description, content_prompt, count, reference_images)
        return await self._generate_text_only(style_description, content_prompt, count, AspectRatio(aspect_ratio))

    async def _generate_with_references(
        self,
        style_description: str,
        content_prompt: str,
        count: int,
        reference_images: List[ImagePart],
    ) -> List[ImagePart]:
        logger.info(f"使用参考图生成: model={self.edit_model}, count={count}, references={len(reference_images)}")
        combined_prompt = Config.get_prompt("reference_style").format(
            style_description=style_description,
            content_prompt=content_prompt,
        )
        parts = [self._inline_part(img) for img in reference_images]
        parts.append({"text": combined_prompt})

        generated: List[ImagePart] = []
        for i in range(count):
            # 第一次之后的每次调用前等待，避免触发限流
            if i > 0:
                await asyncio.sleep(self.reference_delay)

            logger.info(f"正在生成第 {i + 1}/{count} 张")
            result = await self._post(self.edit_model, "generateContent", {
                "contents": [{"parts": parts}],
                "generationConfig": {"responseModalities": ["IMAGE", "TEXT"]},
            })

            block_reason = (result.get("promptFeedback") or {}).get("blockReason")
            if block_reason:
                raise BlockedError(f"请求被阻止: {block_reason}")

            image = self._first_image(result)
            if image:
                generated.append(image)
            else:
                logger.warning(f"第 {i + 1} 张没有返回图片，finishReason={self._finish_reason(result)}")

        if not generated:
            raise NoArtifactError("AI模型未能生成任何图片。这可能是由于安全设置或请求无效。")
        return generated

    async def _generate_text_only(
        self,
        style_description: str,
        content_prompt: str,
        count: int,
        aspect_ratio: AspectRatio,
    ) -> List[ImagePart]:
        logger.info(f"纯文本生成: model={self.image_model}, count={count}, aspect_ratio={aspect_ratio.value}")
        result = await self._post(self.image_model, "predict", {
            "instances": [{"prompt": f"{style_description}, {content_prompt}"}],
            "parameters": {
                "sampleCount": count,
                "outputMimeType": "image/jpeg",
                "aspectRatio": IMAGEN_ASPECT_RATIOS[aspect_ratio],
            },
        })

        images = []
        for prediction in result.get("predictions") or []:
            data = prediction.get("bytesBase64Encoded")
            if data:
                images.append(ImagePart(mime_type=prediction.get("mimeType") or "image/jpeg", data=data))
            elif prediction.get("raiFilteredReason"):
                logger.warning(f"图片被安全过滤: {prediction['raiFilteredReason']}")

        if not images:
            raise NoArtifactError("AI模型未能生成任何图片。这可能是由于安全设置或请求无效。")
        return images

    async def edit_image(self, original: ImagePart, mask: ImagePart, prompt: str) -> ImagePart:
        """
        按遮罩局部编辑图片（遮罩白色区域为需要修改的部分）

        Raises:
            BlockedError: 请求被拦截或生成意外终止
            NoArtifactError: 模型没有返回图片
        """
        logger.info(f"开始局部编辑: model={self.edit_model}, prompt={prompt[:50]}")
        result = await self._post(self.edit_model, "generateContent", {
            "contents": [{"parts": [self._inline_part(original), self._inline_part(mask), {"text": prompt}]}],
            "generationConfig": {"responseModalities": ["IMAGE", "TEXT"]},
        })

        feedback = result.get("promptFeedback") or {}
        if feedback.get("blockReason"):
            raise BlockedError(f"请求被阻止。原因: {feedback['blockReason']}。{feedback.get('blockReasonMessage') or ''}")

        image = self._first_image(result)
        if image:
            return image

        finish_reason = self._finish_reason(result)
        if finish_reason and finish_reason != "STOP":
            raise BlockedError(f"为 \"编辑\" 生成图片时意外停止。原因: {finish_reason}。这通常与安全设置有关。")

        text_feedback = self._text_of(result)
        if text_feedback:
            raise NoArtifactError(f"AI 模型没有为 \"编辑\" 返回图片。模型返回了文本：“{text_feedback}”")
        raise NoArtifactError("AI 模型没有为 \"编辑\" 返回图片。这可能是由于安全过滤器或请求过于复杂。请尝试更直接地改写您的提示。")

    # ------------------------------------------------------------------
    # 文本类调用
    # ------------------------------------------------------------------

    async def describe_style(self, image: ImagePart) -> str:
        """分析图片的艺术风格，返回可直接用于生图的风格描述"""
        result = await self._post(self.text_model, "generateContent", {
            "contents": [{"parts": [{"text": Config.get_prompt("describe_style")}, self._inline_part(image)]}],
        })
        description = self._text_of(result)
        if not description:
            raise EmptyDescriptionError("分析图片风格失败。模型没有返回描述。")
        return description

    async def analyze_document(self, text: str) -> List[Dict[str, str]]:
        """将长文档拆分为带名称的生图提示词列表"""
        result = await self._post(self.text_model, "generateContent", {
            "contents": [{"parts": [{"text": Config.get_prompt("analyze_document").format(document_text=text)}]}],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": _PROMPT_LIST_SCHEMA,
            },
        })
        entries = parse_prompt_list(self._text_of(result))
        logger.info(f"文档拆分完成: 共 {len(entries)} 条提示词")
        return entries

    async def translate_batch(self, prompts: List[str]) -> List[str]:
        """
        批量翻译提示词

        用分隔符拼接后一次请求，再按同一分隔符拆分。返回数量可能与输入不同，由调用方校验。
        """
        if not prompts:
            return []

        instruction = Config.get_prompt("translate").format(
            separator=TRANSLATION_SEPARATOR,
            prompts=TRANSLATION_SEPARATOR.join(prompts),
        )
        result = await self._post(self.text_model, "generateContent", {
            "contents": [{"parts": [{"text": instruction}]}],
        })
        return [piece.strip() for piece in self._text_of(result).split(TRANSLATION_SEPARATOR)]

    # ------------------------------------------------------------------
    # HTTP与响应解析
    # ------------------------------------------------------------------

    async def _post(self, model: str, method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        调用Gemini REST接口

        Raises:
            RateLimitError: 429或RESOURCE_EXHAUSTED
            ServerError: 5xx
            GatewayError: 其他错误状态或未配置API Key
        """
        if not self.api_key:
            raise GatewayError("生成服务未配置，请在config.yaml中配置gemini.api_key")

        url = f"{self.api_base}/models/{model}:{method}"
        headers = {
            "Content-Type": "application/json",
            "x-goog-api-key": self.api_key,
        }

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(url, json=payload, headers=headers)

        if response.status_code >= 400:
            raise self._error_from_response(response)

        try:
            return response.json()
        except ValueError:
            raise ServerError(f"生成服务返回了无法解析的响应: {response.text[:200]}")

    @staticmethod
    def _error_from_response(response: httpx.Response) -> GatewayError:
        message = response.text
        status = ""
        try:
            error = response.json().get("error") or {}
            message = error.get("message") or message
            status = str(error.get("status") or "").upper()
        except (ValueError, AttributeError):
            pass

        logger.error(f"生成服务返回错误: status_code={response.status_code}, status={status}, message={message[:200]}")
        if response.status_code == 429 or status == "RESOURCE_EXHAUSTED":
            return RateLimitError(message)
        if response.status_code >= 500:
            return ServerError(message)
        return GatewayError(f"生成失败: {message}")

    @staticmethod
    def _inline_part(image: ImagePart) -> Dict[str, Any]:
        return {"inlineData": {"mimeType": image.mime_type, "data": image.data}}

    @staticmethod
    def _parts_of(result: Dict[str, Any]) -> List[Dict[str, Any]]:
        candidates = result.get("candidates") or []
        if not candidates:
            return []
        return (candidates[0].get("content") or {}).get("parts") or []

    @classmethod
    def _first_image(cls, result: Dict[str, Any]) -> Optional[ImagePart]:
        for part in cls._parts_of(result):
            inline = part.get("inlineData")
            if inline and inline.get("data"):
                return ImagePart(mime_type=inline.get("mimeType") or "image/png", data=inline["data"])
        return None

    @classmethod
    def _text_of(cls, result: Dict[str, Any]) -> str:
        return "".join(part.get("text", "") for part in cls._parts_of(result)).strip()

    @staticmethod
    def _finish_reason(result: Dict[str, Any]) -> Optional[str]:
        candidates = result.get("candidates") or []
        return candidates[0].get("finishReason") if candidates else None
