"""
生成结果存储：内联data URL或上传到MinIO
"""
import base64
import binascii
import io
import uuid
from PIL import Image, UnidentifiedImageError
from minio import Minio
from minio.error import S3Error
from heyit.config import Config
from heyit.models.task import ImagePart
from heyit.services.errors import FormatError
from heyit.utils.logger import logger


class InlineArtifactStore:
    """直接把生成结果编码为data URL"""

    def save(self, image: ImagePart) -> str:
        return image.data_url


class OSSService:
    """MinIO上传服务类"""

    def __init__(self, client: Minio = None):
        """初始化MinIO客户端"""
        self.client = client or Minio(
            Config.MINIO_ENDPOINT,
            access_key=Config.MINIO_ACCESS_KEY,
            secret_key=Config.MINIO_SECRET_KEY,
            secure=Config.MINIO_SECURE,
        )
        self.bucket = Config.MINIO_BUCKET
        self._ensure_bucket_exists()

    def _ensure_bucket_exists(self):
        """确保bucket存在，如果不存在则创建"""
        # 直接尝试创建，避免 bucket_exists() 的权限检查问题
        try:
            self.client.make_bucket(self.bucket)
            logger.info(f"创建bucket: {self.bucket}")
        except S3Error as e:
            if e.code in ("BucketAlreadyOwnedByYou", "BucketAlreadyExists"):
                logger.info(f"Bucket {self.bucket} 已存在")
            elif e.code == "AccessDenied":
                logger.warning(
                    f"无法创建bucket {self.bucket}，权限可能不足。"
                    f"服务将继续运行，但可能在上传时遇到问题"
                )
            else:
                logger.warning(f"创建bucket时出错: {e}。服务将继续运行，但可能在上传时遇到问题")

    @staticmethod
    def _normalize(image: ImagePart):
        """
        解码base64并用PIL校验，返回 (字节, 扩展名, content_type)

        PNG/JPEG原样保存，其他格式统一转成PNG
        """
        try:
            raw = base64.b64decode(image.data, validate=True)
            pil_image = Image.open(io.BytesIO(raw))
            pil_image.load()
        except (binascii.Error, ValueError, UnidentifiedImageError, OSError) as e:
            raise FormatError(f"生成结果不是有效的图片: {e}")

        image_format = (pil_image.format or "").upper()
        if image_format == "JPEG":
            return raw, "jpg", "image/jpeg"
        if image_format == "PNG":
            return raw, "png", "image/png"

        buffer = io.BytesIO()
        pil_image.save(buffer, format="PNG")
        return buffer.getvalue(), "png", "image/png"

    def save(self, image: ImagePart) -> str:
        """
        上传单张图片到MinIO，返回服务端代理URL

        Args:
            image: 生成结果

        Returns:
            图片的服务端代理URL
        """
        image_bytes, file_ext, content_type = self._normalize(image)
        filename = f"{uuid.uuid4().hex}.{file_ext}"

        try:
            self.client.put_object(
                self.bucket, filename, io.BytesIO(image_bytes),
                length=len(image_bytes), content_type=content_type,
            )
        except S3Error as e:
            logger.error(f"上传图片失败: {e}")
            raise
        # 返回服务端代理URL，避免直接访问MinIO的权限问题
        return f"/api/v1/images/{self.bucket}/{filename}"


def build_artifact_store():
    """按配置创建结果存储"""
    if Config.STORAGE_BACKEND == "minio":
        logger.info(f"生成结果将上传到MinIO: endpoint={Config.MINIO_ENDPOINT}, bucket={Config.MINIO_BUCKET}")
        return OSSService()
    return InlineArtifactStore()
