"""
FastAPI应用入口
"""
# 尽早初始化日志系统，抑制第三方库的详细日志
from heyit.utils.logger import logger

from contextlib import asynccontextmanager
import httpx
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from minio.error import S3Error
from heyit.auth import health_auth
from heyit.config import Config
from heyit.models.schemas import HealthResponse
from heyit.routers import batch, image, styles
from heyit.services.batch_runner import BatchRunner
from heyit.services.errors import (
    BusyError,
    FormatError,
    GatewayError,
    GenerationError,
    NotFoundError,
    ValidationError,
    describe_error,
)
from heyit.services.gemini_service import GeminiService
from heyit.services.oss_service import OSSService, build_artifact_store
from heyit.services.progress import ProgressEstimator
from heyit.services.task_queue import TaskQueue
from heyit.utils.collection_store import CollectionStore


# 异常类型 -> HTTP状态码（按顺序匹配，子类在前）
ERROR_STATUS = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (BusyError, 409),
    (FormatError, 422),
    (GatewayError, 502),
]


def status_for(exc: GenerationError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


def create_app(gateway=None, store: CollectionStore = None, artifacts=None) -> FastAPI:
    """
    创建应用

    Args:
        gateway: 生成后端网关，默认按配置创建GeminiService
        store: 图库存储，默认按配置打开SQLite数据库
        artifacts: 生成结果存储，默认按storage.backend创建
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """应用生命周期管理"""
        logger.info("=" * 50)
        logger.info("HeyIt图片生成服务启动中...")
        logger.info("=" * 50)

        errors = Config.validate()
        if errors:
            logger.error("配置验证失败:")
            for error in errors:
                logger.error(f"  - {error}")
            logger.error("请检查config.yaml配置文件")
        else:
            logger.info("配置验证通过")

        app.state.gateway = gateway or GeminiService()
        app.state.store = store or CollectionStore()
        app.state.artifacts = artifacts or build_artifact_store()
        app.state.progress = ProgressEstimator()
        app.state.task_queue = TaskQueue(
            app.state.gateway, app.state.store, app.state.progress, app.state.artifacts,
        )
        app.state.batch_runner = BatchRunner(app.state.gateway, app.state.artifacts)

        logger.info("=" * 50)
        logger.info("服务启动完成！")
        logger.info("API文档地址: http://localhost:8000/docs")
        logger.info("=" * 50)

        yield

        logger.info("服务正在关闭...")
        await app.state.task_queue.close()
        await app.state.batch_runner.close()
        await app.state.progress.close()
        logger.info("资源清理完成")

    app = FastAPI(
        title="HeyIt图片生成服务",
        description="基于Gemini的图片生成API服务，支持风格迁移、局部编辑和文档批量生成",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(GenerationError)
    async def generation_error_handler(request: Request, exc: GenerationError):
        status_code = status_for(exc)
        if status_code >= 500:
            logger.error(f"请求失败: path={request.url.path}, error={exc.message}")
        return JSONResponse(status_code=status_code, content={"detail": describe_error(exc)})

    @app.exception_handler(httpx.HTTPError)
    async def http_error_handler(request: Request, exc: httpx.HTTPError):
        logger.error(f"调用生成服务失败: path={request.url.path}, error={exc}")
        return JSONResponse(status_code=502, content={"detail": describe_error(exc)})

    app.include_router(image.router)
    app.include_router(styles.router)
    app.include_router(batch.router)

    @app.get("/health", response_model=HealthResponse, summary="健康检查")
    @app.get("/api/health", response_model=HealthResponse, summary="健康检查")
    async def health_check(request: Request, _=Depends(health_auth)):
        """
        健康检查接口

        默认免认证（可通过config.yaml中的health_check.no_auth配置）
        """
        gateway_configured = bool(getattr(request.app.state.gateway, "api_key", True))
        return HealthResponse(
            status="ok",
            gateway_configured=gateway_configured,
            queue_pending=request.app.state.task_queue.pending_count,
        )

    @app.get("/", summary="根路径")
    async def root():
        return {
            "message": "HeyIt图片生成服务",
            "docs": "/docs",
            "health": "/health",
        }

    @app.get("/api/v1/images/{bucket}/{filename:path}", summary="图片代理接口")
    async def proxy_image(request: Request, bucket: str, filename: str):
        """
        图片代理接口：从MinIO获取图片并返回给客户端

        这样可以将MinIO的内部URL转换为可通过服务端访问的URL
        """
        oss_service = request.app.state.artifacts
        if not isinstance(oss_service, OSSService):
            raise HTTPException(status_code=404, detail="未启用对象存储")

        try:
            response = oss_service.client.get_object(bucket, filename)
        except S3Error as e:
            logger.error(f"获取图片失败: bucket={bucket}, filename={filename}, error={str(e)}")
            raise HTTPException(status_code=404, detail=f"图片不存在: {filename}")

        content_type = "image/png"
        if filename.lower().endswith(('.jpg', '.jpeg')):
            content_type = "image/jpeg"

        return StreamingResponse(
            response.stream(32 * 1024),
            media_type=content_type,
            headers={"Cache-Control": "public, max-age=31536000"},
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
