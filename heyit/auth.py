"""
API Key认证
"""
import secrets
from typing import Optional
from fastapi import HTTPException, Security, Depends, Request, Query
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from heyit.config import Config


# HTTP Bearer安全方案
security = HTTPBearer(auto_error=False)


async def get_api_key(
    request: Request,
    authorization: Optional[HTTPAuthorizationCredentials] = Security(security),
    api_key_query: Optional[str] = Query(None, alias="api_key"),
) -> Optional[str]:
    """
    获取请求携带的API Key

    依次检查：
    - Config.API_KEY_HEADER 指定的Header（默认 X-API-Key）
    - Authorization: Bearer <api_key>
    - ?api_key=xxx
    """
    header_key = request.headers.get(Config.API_KEY_HEADER)
    if header_key:
        return header_key
    if authorization:
        return authorization.credentials
    return api_key_query


def _is_valid(api_key: str) -> bool:
    return any(secrets.compare_digest(api_key, key) for key in Config.API_KEYS)


async def require_auth(api_key: Optional[str] = Depends(get_api_key)) -> str:
    """认证依赖项：用于需要认证的路由"""
    if not api_key:
        raise HTTPException(
            status_code=401,
            detail=f"缺少API Key。请在Header中提供{Config.API_KEY_HEADER}或Authorization: Bearer <api_key>"
        )
    if not _is_valid(api_key):
        raise HTTPException(status_code=401, detail="无效的API Key")
    return api_key


async def health_auth(api_key: Optional[str] = Depends(get_api_key)) -> Optional[str]:
    """健康检查认证：health_check.no_auth为True时免认证"""
    if Config.HEALTH_CHECK_NO_AUTH:
        return api_key
    return await require_auth(api_key)
