#!/usr/bin/env python3
"""FastAPI 服务：sing-box 用户管理接口

进程内只有一个 RosterManager 和一个 SingboxSupervisor，由 create_app() 构造后挂在
app.state 上，路由通过 request.app.state 访问，不使用模块级全局状态。

修改类请求经 app.state.lock 串行化；文件读写在线程池中执行。
提交成功后再向 sing-box 发送重载信号，重载失败只记录日志，不回滚已提交的状态。
"""
import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, Response
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from errors import ExternalProcessError, ManagerError, UserNotFoundError
from log_config import get_logger, setup_logging
from manager_config import Settings, load_settings
from models import ClientConfig, User, format_timestamp, utc_now
from roster_manager import RosterManager, UserRef, build_manager
from share_uri import generate_qr_png
from singbox_installer import SingboxInstaller
from singbox_supervisor import SingboxSupervisor, build_supervisor
from web_ui import WEB_UI_HTML

__version__ = "1.0.0"

logger = get_logger(__name__)

router = APIRouter()


# ============ 请求模型 ============

class UserCreateRequest(BaseModel):
    """创建用户"""
    name: Optional[str] = Field(None, description="用户名（唯一）")
    email: Optional[str] = Field(None, description="邮箱")
    expiresInDays: Optional[int] = Field(None, ge=1, description="有效天数，不填表示永久")
    trafficLimit: int = Field(0, ge=0, description="流量限制（字节），0 表示不限")


class UserUpdateRequest(BaseModel):
    """启用/禁用用户"""
    enabled: bool = Field(..., description="是否启用")


# ============ 序列化 ============

def _user_payload(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "enabled": user.enabled,
        "createdAt": format_timestamp(user.created_at),
        "expiresAt": format_timestamp(user.expires_at) if user.expires_at else None,
        "expired": user.is_expired(),
        "trafficLimit": user.traffic_limit,
        "trafficUsed": user.traffic_used,
    }


def _configs_payload(configs: List[ClientConfig]) -> List[Dict[str, Any]]:
    return [config.to_dict() for config in configs]


def _manager(request: Request) -> RosterManager:
    return request.app.state.manager


async def _reload_proxy(request: Request) -> str:
    """提交后通知 sing-box 重载配置"""
    supervisor: SingboxSupervisor = request.app.state.supervisor
    try:
        reloaded = await supervisor.reload()
    except ExternalProcessError as exc:
        logger.error(f"sing-box 重载失败: {exc.message}")
        return f"failed: {exc.message}"
    return "reloaded" if reloaded else "not running"


# ============ 管理页面 ============

@router.get("/", response_class=HTMLResponse)
def index():
    return WEB_UI_HTML


# ============ Users ============

@router.get("/api/users")
def api_list_users(request: Request):
    """列出全部用户（花名册顺序）"""
    users = _manager(request).get_users()
    return {"users": [_user_payload(user) for user in users]}


@router.post("/api/users")
async def api_add_user(request: Request, payload: UserCreateRequest):
    """添加用户，返回用户信息和客户端配置"""
    manager = _manager(request)
    expires_at = None
    if payload.expiresInDays:
        expires_at = utc_now() + timedelta(days=payload.expiresInDays)

    async with request.app.state.lock:
        user, configs = await run_in_threadpool(
            manager.add_user,
            payload.name or "",
            email=payload.email,
            expires_at=expires_at,
            traffic_limit=payload.trafficLimit,
        )
        reload_status = await _reload_proxy(request)

    return {
        "user": _user_payload(user),
        "configs": _configs_payload(configs),
        "reload": reload_status,
    }


@router.get("/api/users/{user_id}")
def api_get_user(request: Request, user_id: str):
    user = _manager(request).get_user(UserRef.by_id(user_id))
    return {"user": _user_payload(user)}


@router.patch("/api/users/{user_id}")
async def api_update_user(request: Request, user_id: str, payload: UserUpdateRequest):
    """启用或禁用用户"""
    manager = _manager(request)
    async with request.app.state.lock:
        user = await run_in_threadpool(manager.set_user_enabled, UserRef.by_id(user_id), payload.enabled)
        reload_status = await _reload_proxy(request)
    return {"user": _user_payload(user), "reload": reload_status}


@router.get("/api/users/{user_id}/config")
def api_get_user_config(request: Request, user_id: str):
    """用户的客户端连接配置"""
    manager = _manager(request)
    user = manager.get_user(UserRef.by_id(user_id))
    configs = manager.get_client_configs(UserRef.by_id(user_id))
    return {"user": {"id": user.id, "name": user.name}, "configs": _configs_payload(configs)}


@router.get("/api/users/{user_id}/qrcode")
def api_get_user_qrcode(request: Request, user_id: str):
    """第一个连接链接的二维码（PNG）"""
    uri = _manager(request).export_user_config(UserRef.by_id(user_id))
    if uri is None:
        raise UserNotFoundError(user_id)
    return Response(content=generate_qr_png(uri), media_type="image/png")


@router.delete("/api/users/{user_id}")
async def api_delete_user(request: Request, user_id: str):
    manager = _manager(request)
    async with request.app.state.lock:
        await run_in_threadpool(manager.remove_user, UserRef.by_id(user_id))
        reload_status = await _reload_proxy(request)
    return {"success": True, "reload": reload_status}


# ============ Server ============

@router.get("/api/server")
def api_get_server(request: Request):
    """服务端公开信息（不含私钥）"""
    return _manager(request).get_server_info()


@router.get("/api/stats")
def api_get_stats(request: Request):
    return _manager(request).get_stats()


@router.get("/api/status")
def api_get_status(request: Request):
    """sing-box 进程状态"""
    installer: SingboxInstaller = request.app.state.installer
    status = request.app.state.supervisor.get_status()
    status["installed"] = installer.is_installed()
    status["version"] = installer.get_installed_version()
    return status


@router.post("/api/reset")
async def api_reset(request: Request):
    """重新生成密钥并清空用户，然后重启 sing-box

    不可逆：所有已发放的客户端链接立即失效。
    """
    manager = _manager(request)
    supervisor: SingboxSupervisor = request.app.state.supervisor

    async with request.app.state.lock:
        await run_in_threadpool(manager.reset)
        try:
            await supervisor.restart()
            restart_status = "restarted"
        except ExternalProcessError as exc:
            logger.error(f"sing-box 重启失败: {exc.message}")
            restart_status = f"failed: {exc.message}"

    return {
        "success": True,
        "message": "Server reset, new keys generated",
        "publicKey": manager.get_public_key(),
        "restart": restart_status,
    }


# ============ 错误处理 ============

async def _manager_error_handler(request: Request, exc: ManagerError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.message}")
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


async def _validation_error_handler(request: Request, exc: RequestValidationError):
    messages = []
    for error in exc.errors():
        loc = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        messages.append(f"{loc}: {error.get('msg')}" if loc else str(error.get("msg")))
    return JSONResponse({"error": "; ".join(messages) or "Invalid request"}, status_code=400)


async def _http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse({"error": str(exc.detail)}, status_code=exc.status_code)


async def _unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"{request.method} {request.url.path} 处理失败")
    return JSONResponse({"error": "Internal server error"}, status_code=500)


# ============ 应用构造 ============

def _bootstrap(manager: RosterManager, settings: Settings) -> None:
    """加载状态（不存在则初始化），并从状态重新生成 sing-box 配置"""
    manager.initialize(settings.server_host, settings.server_port)
    manager.recompile()


def create_app(
    manager: Optional[RosterManager] = None,
    supervisor: Optional[SingboxSupervisor] = None,
    settings: Optional[Settings] = None,
    installer: Optional[SingboxInstaller] = None,
    manage_process: bool = True,
) -> FastAPI:
    """构造 FastAPI 应用

    Args:
        manage_process: 是否在启动/关闭时启动/停止 sing-box
    """
    settings = settings or load_settings()
    manager = manager or build_manager(settings)
    supervisor = supervisor or build_supervisor(settings)
    installer = installer or SingboxInstaller(settings.install_dir, settings.singbox_bin)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await run_in_threadpool(_bootstrap, manager, settings)
        if manage_process:
            try:
                await supervisor.start()
            except ExternalProcessError as exc:
                logger.error(f"sing-box 启动失败: {exc.message}")
        yield
        if manage_process:
            await supervisor.stop()

    app = FastAPI(title="Sing-box Manager API", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.manager = manager
    app.state.supervisor = supervisor
    app.state.installer = installer
    app.state.lock = asyncio.Lock()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PATCH", "DELETE"],
        allow_headers=["Content-Type"],
    )
    app.add_exception_handler(ManagerError, _manager_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, _http_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
    app.include_router(router)
    return app


def main() -> None:
    import uvicorn

    setup_logging()
    settings = load_settings()
    uvicorn.run(
        "api_server:create_app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
        factory=True,
    )


if __name__ == "__main__":
    main()
