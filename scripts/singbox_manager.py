#!/usr/bin/env python3
"""
singbox-manager 命令行

使用方法:
    singbox-manager install                       # 安装/更新 sing-box
    singbox-manager init --host 203.0.113.5       # 初始化服务端配置
    singbox-manager start | stop | status         # 进程控制
    singbox-manager user:add --name alice         # 添加用户并输出连接链接
    singbox-manager user:remove alice
    singbox-manager user:list
    singbox-manager user:show alice
    singbox-manager user:enable alice | user:disable alice
    singbox-manager serve                         # 运行 HTTP API

user:* 命令按名称或 UUID 查找用户（按花名册顺序取第一个匹配）。
"""

import argparse
import asyncio
import dataclasses
import logging
import sys
from datetime import timedelta
from pathlib import Path
from typing import Any, List, Optional

from errors import ExternalProcessError, ManagerError, ValidationError
from log_config import get_logger, set_log_level, setup_logging
from manager_config import Settings, load_settings
from models import ClientConfig, utc_now
from roster_manager import RosterManager, UserRef, build_manager
from singbox_installer import SingboxInstaller
from singbox_supervisor import build_supervisor

logger = get_logger(__name__)


def _kv(key: str, value: Any) -> None:
    print(f"  {key + ':':<14} {value}")


def _section(title: str) -> None:
    print()
    print(f"== {title} ==")


def _print_configs(configs: List[ClientConfig], manual: bool = True) -> None:
    for config in configs:
        print()
        print("Connection URI:")
        print(config.uri)
        if manual and config.manual:
            print()
            print("Manual Configuration:")
            for key, value in config.manual.items():
                _kv(key, value)


def _loaded_manager(settings: Settings) -> RosterManager:
    manager = build_manager(settings)
    manager.load()
    return manager


def _signal_reload(settings: Settings) -> None:
    """通知正在运行的 sing-box 重载配置，失败只警告"""
    try:
        if asyncio.run(build_supervisor(settings).reload()):
            logger.info("sing-box 已重载配置")
    except ExternalProcessError as e:
        logger.warning(f"sing-box 重载失败: {e.message}")


def _prompt(message: str) -> str:
    value = ""
    while not value:
        value = input(message).strip()
        if not value:
            print("Value is required")
    return value


# ============ 命令 ============

def cmd_install(args, settings: Settings) -> int:
    _section("Installing Sing-box")
    version = SingboxInstaller(settings.install_dir, settings.singbox_bin).install_latest()
    _kv("Version", version)
    return 0


def cmd_init(args, settings: Settings) -> int:
    host = args.host or _prompt("Enter server hostname or IP: ")
    port = args.port if args.port is not None else settings.server_port

    manager = build_manager(settings)
    server = manager.initialize(host, port)

    _section("Server Ready")
    _kv("Host", server.host)
    _kv("Port", server.inbounds[0].port if server.inbounds else "N/A")
    _kv("Protocol", "VLESS + Reality")
    _kv("Public Key", manager.get_public_key() or "N/A")
    print("Share this public key with your users for manual configuration")
    return 0


def cmd_start(args, settings: Settings) -> int:
    supervisor = build_supervisor(settings)
    if supervisor.is_running():
        logger.warning("sing-box 已在运行")
        return 0

    # 启动前从状态文件重新生成配置
    _loaded_manager(settings).recompile()
    ok, output = supervisor.check_config()
    if not ok:
        raise ExternalProcessError(f"sing-box rejected the config: {output}")

    asyncio.run(supervisor.start())
    return 0


def cmd_stop(args, settings: Settings) -> int:
    if not asyncio.run(build_supervisor(settings).stop()):
        logger.warning("没有正在运行的 sing-box 进程")
    return 0


def cmd_status(args, settings: Settings) -> int:
    installer = SingboxInstaller(settings.install_dir, settings.singbox_bin)
    status = build_supervisor(settings).get_status()

    _section("Service Status")
    _kv("Installed", "Yes" if installer.is_installed() else "No")
    version = installer.get_installed_version()
    if version:
        _kv("Version", version)
    _kv("Running", "Yes" if status["status"] == "running" else "No")
    if status["pid"]:
        _kv("PID", status["pid"])
    return 0


def cmd_user_add(args, settings: Settings) -> int:
    manager = _loaded_manager(settings)
    name = args.name or _prompt("Enter user name: ")

    expires_at = None
    if args.expires is not None:
        if args.expires <= 0:
            raise ValidationError("--expires must be a positive number of days")
        expires_at = utc_now() + timedelta(days=args.expires)

    user, configs = manager.add_user(
        name,
        email=args.email,
        expires_at=expires_at,
        traffic_limit=args.traffic_limit,
    )
    _signal_reload(settings)

    _section("User Configuration")
    _kv("Name", user.name)
    _kv("UUID", user.id)
    _kv("Expires", user.expires_at.isoformat() if user.expires_at else "Never")
    _print_configs(configs)
    return 0


def cmd_user_remove(args, settings: Settings) -> int:
    user = _loaded_manager(settings).remove_user(UserRef.any(args.name))
    _signal_reload(settings)
    print(f"User \"{user.name}\" removed")
    return 0


def cmd_user_list(args, settings: Settings) -> int:
    manager = _loaded_manager(settings)
    users = manager.get_users()
    if not users:
        print("No users found")
        return 0

    _section("Users")
    now = utc_now()
    for user in users:
        status = "+" if user.enabled else "-"
        if user.expires_at is None:
            expires = "no expiration"
        elif user.is_expired(now):
            expires = f"expired {user.expires_at.date().isoformat()}"
        else:
            expires = f"expires {user.expires_at.date().isoformat()}"
        print(f"{status} {user.name} ({expires})")
        print(f"    UUID: {user.id}")

    stats = manager.get_stats(now)
    print()
    _kv("Total", stats["totalUsers"])
    _kv("Active", stats["activeUsers"])
    _kv("Disabled", stats["disabledUsers"])
    _kv("Expired", stats["expiredUsers"])
    return 0


def cmd_user_show(args, settings: Settings) -> int:
    manager = _loaded_manager(settings)
    ref = UserRef.any(args.name)
    user = manager.get_user(ref)

    _section(f"User: {user.name}")
    _kv("UUID", user.id)
    _kv("Email", user.email or "N/A")
    _kv("Status", "Active" if user.enabled else "Disabled")
    _kv("Created", user.created_at.isoformat())
    _kv("Expires", user.expires_at.isoformat() if user.expires_at else "Never")
    if user.traffic_limit:
        _kv("Traffic", f"{user.traffic_used}/{user.traffic_limit} bytes")
    _print_configs(manager.get_client_configs(ref), manual=False)
    return 0


def _set_enabled(args, settings: Settings, enabled: bool) -> int:
    user = _loaded_manager(settings).set_user_enabled(UserRef.any(args.name), enabled)
    _signal_reload(settings)
    print(f"User \"{user.name}\" {'enabled' if enabled else 'disabled'}")
    return 0


def cmd_user_enable(args, settings: Settings) -> int:
    return _set_enabled(args, settings, True)


def cmd_user_disable(args, settings: Settings) -> int:
    return _set_enabled(args, settings, False)


def cmd_serve(args, settings: Settings) -> int:
    import uvicorn
    from api_server import create_app

    uvicorn.run(
        create_app(settings=settings),
        host=args.host or settings.api_host,
        port=args.port or settings.api_port,
    )
    return 0


# ============ 参数解析 ============

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="singbox-manager",
        description="Sing-box server manager with VLESS+Reality support",
    )
    parser.add_argument("--state", type=Path, help="状态文件路径（覆盖 STATE_PATH）")
    parser.add_argument("--config", type=Path, help="sing-box 配置路径（覆盖 CONFIG_PATH）")
    parser.add_argument("--verbose", "-v", action="store_true", help="详细输出")

    sub = parser.add_subparsers(dest="command", metavar="command")
    sub.required = True

    p = sub.add_parser("install", help="Install or update the sing-box binary")
    p.set_defaults(func=cmd_install)

    p = sub.add_parser("init", help="Initialize server configuration")
    p.add_argument("--host", help="Server hostname or IP")
    p.add_argument("--port", type=int, help="Listen port (default 443)")
    p.set_defaults(func=cmd_init)

    p = sub.add_parser("start", help="Start sing-box")
    p.set_defaults(func=cmd_start)

    p = sub.add_parser("stop", help="Stop sing-box")
    p.set_defaults(func=cmd_stop)

    p = sub.add_parser("status", help="Show service status")
    p.set_defaults(func=cmd_status)

    p = sub.add_parser("user:add", help="Add a new user")
    p.add_argument("--name", "-n", help="User name")
    p.add_argument("--email", "-e", help="User email")
    p.add_argument("--expires", type=int, help="Expiration in days")
    p.add_argument("--traffic-limit", type=int, default=0, help="Traffic limit in bytes (0 = unlimited)")
    p.set_defaults(func=cmd_user_add)

    for verb, func, help_text in (
        ("user:remove", cmd_user_remove, "Remove a user"),
        ("user:show", cmd_user_show, "Show user configuration"),
        ("user:enable", cmd_user_enable, "Enable a user"),
        ("user:disable", cmd_user_disable, "Disable a user"),
    ):
        p = sub.add_parser(verb, help=help_text)
        p.add_argument("name", help="User name or UUID")
        p.set_defaults(func=func)

    p = sub.add_parser("user:list", help="List all users")
    p.set_defaults(func=cmd_user_list)

    p = sub.add_parser("serve", help="Run the HTTP management API")
    p.add_argument("--host", help="Bind address (default API_HOST)")
    p.add_argument("--port", type=int, help="Bind port (default API_PORT)")
    p.set_defaults(func=cmd_serve)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging()
    if args.verbose:
        set_log_level(logging.DEBUG)

    try:
        settings = load_settings()
        overrides = {}
        if args.state:
            overrides["state_path"] = args.state
        if args.config:
            overrides["config_path"] = args.config
        if overrides:
            settings = dataclasses.replace(settings, **overrides)
        return args.func(args, settings)
    except ManagerError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
