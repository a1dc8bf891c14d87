"""
批量生成（VIP模式）API路由
"""
from datetime import date
from urllib.parse import quote
from fastapi import APIRouter, Depends
from fastapi.responses import Response
from heyit.auth import require_auth
from heyit.models.schemas import (
    AnalyzeRequest,
    BatchStatusResponse,
    BatchStyleRequest,
    PromptUpdateRequest,
    TranslateResponse,
    VipTaskResponse,
)
from heyit.routers.deps import get_batch_runner, parse_image
from heyit.services.batch_runner import BatchRunner

router = APIRouter(prefix="/api/v1/batch", tags=["batch"], dependencies=[Depends(require_auth)])


def _status(runner: BatchRunner) -> BatchStatusResponse:
    return BatchStatusResponse(**runner.snapshot())


@router.get("", response_model=BatchStatusResponse, summary="批量状态")
async def get_batch(runner: BatchRunner = Depends(get_batch_runner)):
    return _status(runner)


@router.post("/analyze", response_model=BatchStatusResponse, summary="分析文档")
async def analyze_document(request: AnalyzeRequest, runner: BatchRunner = Depends(get_batch_runner)):
    """把文档拆分为若干条目，每条包含名称和英文提示词；会清空上一批的条目"""
    await runner.analyze(request.text)
    return _status(runner)


@router.put("/style", response_model=BatchStatusResponse, summary="设置批量风格")
async def set_batch_style(request: BatchStyleRequest, runner: BatchRunner = Depends(get_batch_runner)):
    runner.set_style(request.style_prompt, [parse_image(value) for value in request.reference_images])
    return _status(runner)


@router.post("/generate", response_model=BatchStatusResponse, summary="开始批量生成")
async def generate_all(runner: BatchRunner = Depends(get_batch_runner)):
    """在后台从头开始生成，已完成的条目会被跳过；通过 GET /batch 查询进度"""
    runner.generate_all()
    return _status(runner)


@router.post("/pause", response_model=BatchStatusResponse, summary="暂停")
async def pause(runner: BatchRunner = Depends(get_batch_runner)):
    runner.pause()
    return _status(runner)


@router.post("/resume", response_model=BatchStatusResponse, summary="继续")
async def resume(runner: BatchRunner = Depends(get_batch_runner)):
    runner.resume()
    return _status(runner)


@router.post("/items/{task_id}/generate", response_model=BatchStatusResponse, summary="单条生成")
async def generate_single(task_id: int, runner: BatchRunner = Depends(get_batch_runner)):
    runner.generate_single(task_id)
    return _status(runner)


@router.patch("/items/{task_id}", response_model=VipTaskResponse, summary="修改条目提示词")
async def update_prompt(task_id: int, request: PromptUpdateRequest, runner: BatchRunner = Depends(get_batch_runner)):
    return VipTaskResponse(**runner.update_prompt(task_id, request.prompt).to_dict())


@router.post("/translate", response_model=TranslateResponse, summary="翻译全部提示词")
async def translate_all(runner: BatchRunner = Depends(get_batch_runner)):
    applied = await runner.translate_all()
    return TranslateResponse(applied=applied, batch=_status(runner))


@router.get("/export", summary="导出已完成图片")
async def export_zip(runner: BatchRunner = Depends(get_batch_runner)):
    content = runner.export_zip()
    filename = f"HeyIt-批量导出-{date.today().isoformat()}.zip"
    return Response(
        content=content,
        media_type="application/zip",
        headers={"Content-Disposition": f"attachment; filename*=UTF-8''{quote(filename)}"},
    )
