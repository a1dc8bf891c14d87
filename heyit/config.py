"""
配置文件：从YAML文件读取配置信息
"""
import yaml
from typing import List, Dict, Optional, Any
from pathlib import Path
from heyit.utils.logger import logger


# 后端指令模板默认值，可在config.yaml的prompts节中覆盖
DEFAULT_PROMPTS: Dict[str, str] = {
    "describe_style": (
        "Analyze the provided image and describe its artistic style in a concise, descriptive paragraph. "
        "Focus on elements like lighting, color palette, composition, texture, and overall mood. "
        "The description should be suitable for prompting an AI image generator to replicate this style. "
        "Do not describe the content of the image, only the style."
    ),
    "reference_style": (
        "Synthesize the artistic styles from ALL of the provided reference images. "
        "The key stylistic elements are described as: \"{style_description}\". "
        "Use this synthesized style to create a new image depicting: \"{content_prompt}\""
    ),
    "analyze_document": (
        "Analyze the following text and break it down into a list of distinct, self-contained image generation prompts. "
        "For each prompt, also extract a short, unique identifier from the text that looks like 'BG-XX-XX'. "
        "If no such identifier is present for a prompt, generate a simple one like 'Image-1', 'Image-2'. "
        "Return ONLY a JSON object that strictly follows this schema: an object with a key \"prompts\" which contains "
        "an array of objects, where each object has a \"name\" (the identifier) and a \"prompt\" (the detailed instruction). "
        "Do not add any commentary or explanation outside the JSON object.\n\n"
        "Document Text:\n---\n{document_text}\n---\n"
    ),
    "translate": (
        "Translate the following list of creative prompts from Chinese to English. "
        "The prompts are separated by \"{separator}\". "
        "Maintain the original meaning and creative intent of each prompt. "
        "Return the translated prompts separated by the exact same separator. "
        "Do not add any other text or explanation.\n\nPrompts:\n{prompts}"
    ),
}


class Config:
    """应用配置类"""

    # 配置文件路径
    CONFIG_FILE: str = "config.yaml"

    # 配置数据
    _config_data: Dict[str, Any] = {}

    # Gemini生成后端配置
    GEMINI_API_KEY: str = ""
    GEMINI_API_BASE: str = "https://generativelanguage.googleapis.com/v1beta"
    GEMINI_TEXT_MODEL: str = "gemini-2.5-flash"
    GEMINI_IMAGE_MODEL: str = "imagen-4.0-generate-001"
    GEMINI_EDIT_MODEL: str = "gemini-2.5-flash-image-preview"
    GEMINI_TIMEOUT: float = 120.0

    # 生成队列配置
    QUEUE_DEFAULT_STYLE: str = "cinematic photo, dramatic lighting, high detail, professional quality"
    REFERENCE_CALL_DELAY: float = 1.0
    PROGRESS_INTERVAL: float = 0.2
    PROGRESS_DECAY: float = 0.5

    # 批量生成（VIP模式）配置
    BATCH_DEFAULT_STYLE: str = "photorealistic, high detail, cinematic lighting"
    BATCH_ASPECT_RATIO: str = "16:9"

    # 存储配置：inline（data URL）或 minio
    STORAGE_BACKEND: str = "inline"
    STORE_DB_PATH: str = "heyit.db"

    # MinIO配置
    MINIO_ENDPOINT: str = "localhost:9000"
    MINIO_ACCESS_KEY: str = "minioadmin"
    MINIO_SECRET_KEY: str = "minioadmin"
    MINIO_BUCKET: str = "heyit-images"
    MINIO_SECURE: bool = False

    # API认证配置
    API_KEYS: List[str] = []
    API_KEY_HEADER: str = "X-API-Key"

    # 健康检查接口配置
    HEALTH_CHECK_NO_AUTH: bool = True

    # 后端指令模板
    PROMPTS: Dict[str, str] = dict(DEFAULT_PROMPTS)

    @classmethod
    def load_config(cls, config_path: Optional[str] = None) -> None:
        """从YAML文件加载配置"""
        if config_path:
            cls.CONFIG_FILE = config_path

        config_file = Path(cls.CONFIG_FILE)
        if not config_file.exists():
            raise FileNotFoundError(
                f"配置文件不存在: {cls.CONFIG_FILE}\n"
                f"请创建配置文件或使用 config.yaml.example 作为模板"
            )

        with open(config_file, 'r', encoding='utf-8') as f:
            cls._config_data = yaml.safe_load(f) or {}

        # 加载Gemini配置
        gemini_config = cls._config_data.get("gemini", {})
        cls.GEMINI_API_KEY = gemini_config.get("api_key", cls.GEMINI_API_KEY)
        cls.GEMINI_API_BASE = gemini_config.get("api_base", cls.GEMINI_API_BASE).rstrip("/")
        cls.GEMINI_TEXT_MODEL = gemini_config.get("text_model", cls.GEMINI_TEXT_MODEL)
        cls.GEMINI_IMAGE_MODEL = gemini_config.get("image_model", cls.GEMINI_IMAGE_MODEL)
        cls.GEMINI_EDIT_MODEL = gemini_config.get("edit_model", cls.GEMINI_EDIT_MODEL)
        cls.GEMINI_TIMEOUT = float(gemini_config.get("timeout", cls.GEMINI_TIMEOUT))

        # 加载队列配置
        queue_config = cls._config_data.get("queue", {})
        cls.QUEUE_DEFAULT_STYLE = queue_config.get("default_style", cls.QUEUE_DEFAULT_STYLE)
        cls.REFERENCE_CALL_DELAY = float(queue_config.get("reference_call_delay", cls.REFERENCE_CALL_DELAY))
        cls.PROGRESS_INTERVAL = float(queue_config.get("progress_interval", cls.PROGRESS_INTERVAL))
        cls.PROGRESS_DECAY = float(queue_config.get("progress_decay", cls.PROGRESS_DECAY))

        # 加载批量生成配置
        batch_config = cls._config_data.get("batch", {})
        cls.BATCH_DEFAULT_STYLE = batch_config.get("default_style", cls.BATCH_DEFAULT_STYLE)
        cls.BATCH_ASPECT_RATIO = batch_config.get("aspect_ratio", cls.BATCH_ASPECT_RATIO)

        # 加载存储配置
        storage_config = cls._config_data.get("storage", {})
        cls.STORAGE_BACKEND = storage_config.get("backend", cls.STORAGE_BACKEND)
        cls.STORE_DB_PATH = storage_config.get("db_path", cls.STORE_DB_PATH)

        # 加载MinIO配置
        minio_config = cls._config_data.get("minio", {})
        cls.MINIO_ENDPOINT = minio_config.get("endpoint", cls.MINIO_ENDPOINT)
        cls.MINIO_ACCESS_KEY = minio_config.get("access_key", cls.MINIO_ACCESS_KEY)
        cls.MINIO_SECRET_KEY = minio_config.get("secret_key", cls.MINIO_SECRET_KEY)
        cls.MINIO_BUCKET = minio_config.get("bucket", cls.MINIO_BUCKET)
        cls.MINIO_SECURE = bool(minio_config.get("secure", cls.MINIO_SECURE))

        # 加载API认证配置
        api_config = cls._config_data.get("api", {})
        api_keys = api_config.get("keys", [])
        if isinstance(api_keys, str):
            api_keys = [key.strip() for key in api_keys.split(",") if key.strip()]
        cls.API_KEYS = api_keys if isinstance(api_keys, list) else []
        cls.API_KEY_HEADER = api_config.get("key_header", cls.API_KEY_HEADER)

        # 加载健康检查配置
        cls.HEALTH_CHECK_NO_AUTH = cls._config_data.get("health_check", {}).get("no_auth", cls.HEALTH_CHECK_NO_AUTH)

        # 加载指令模板（只覆盖配置中出现的项）
        prompts_config = cls._config_data.get("prompts") or {}
        cls.PROMPTS = dict(DEFAULT_PROMPTS)
        for name, template in prompts_config.items():
            if isinstance(template, str) and template.strip():
                cls.PROMPTS[name] = template

    @classmethod
    def get_prompt(cls, name: str) -> str:
        """获取后端指令模板"""
        template = cls.PROMPTS.get(name)
        if not template:
            raise ValueError(f"指令模板缺失: {name}，请检查config.yaml中的prompts配置")
        return template

    @classmethod
    def validate(cls) -> List[str]:
        """验证配置，返回错误列表"""
        errors = []

        if not cls.GEMINI_API_KEY:
            errors.append("GEMINI_API_KEY未配置")

        if cls.STORAGE_BACKEND not in ("inline", "minio"):
            errors.append(f"未知的存储后端: {cls.STORAGE_BACKEND}（可选 inline / minio）")

        if cls.STORAGE_BACKEND == "minio":
            if not cls.MINIO_ENDPOINT:
                errors.append("MINIO_ENDPOINT未配置")
            if not cls.MINIO_ACCESS_KEY or not cls.MINIO_SECRET_KEY:
                errors.append("MinIO访问密钥未配置")
            if not cls.MINIO_BUCKET:
                errors.append("MINIO_BUCKET未配置")

        if cls.BATCH_ASPECT_RATIO not in ("16:9", "3:2", "9:16"):
            errors.append(f"批量生成宽高比无效: {cls.BATCH_ASPECT_RATIO}")

        if cls.PROGRESS_INTERVAL <= 0:
            errors.append("progress_interval必须大于0")

        if not cls.API_KEYS:
            errors.append("API_KEYS未配置，至少需要配置一个API Key")

        return errors


# 加载配置
try:
    Config.load_config()
except FileNotFoundError as e:
    logger.warning(f"警告: {e}")
    logger.warning("使用默认配置，请创建 config.yaml 文件")
