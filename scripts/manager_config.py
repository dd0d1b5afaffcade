#!/usr/bin/env python3
"""
singbox-manager 运行配置

取值优先级：环境变量 > YAML 配置文件 > 内置默认值

YAML 文件路径由 SINGBOX_MANAGER_SETTINGS 指定（默认 /etc/singbox-manager/settings.yml），
键名与 Settings 字段一致，例如：

    state_path: /var/lib/singbox-manager/state.json
    server_host: 203.0.113.5
    dns_servers: [8.8.8.8, 1.1.1.1]
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from errors import ValidationError
from log_config import get_logger
from models import SINGBOX_LOG_LEVELS

logger = get_logger(__name__)

CONFIG_DIR = Path("/etc/singbox-manager")
DEFAULT_SETTINGS_FILE = CONFIG_DIR / "settings.yml"
DEFAULT_STATE_PATH = CONFIG_DIR / "state.json"
DEFAULT_CONFIG_PATH = CONFIG_DIR / "config.json"
DEFAULT_PID_PATH = Path("/run/singbox-manager/sing-box.pid")
DEFAULT_INSTALL_DIR = Path("/usr/local/bin")

# Reality 默认伪装目标
DEFAULT_REALITY_TARGETS = [
    "www.google.com",
    "www.microsoft.com",
    "www.apple.com",
    "www.amazon.com",
]
DEFAULT_DNS_SERVERS = ["8.8.8.8", "1.1.1.1"]

# 字段名 -> 环境变量名
ENV_KEYS = {
    "state_path": "STATE_PATH",
    "config_path": "CONFIG_PATH",
    "pid_path": "SINGBOX_PID_FILE",
    "install_dir": "SINGBOX_INSTALL_DIR",
    "singbox_bin": "SINGBOX_BIN",
    "server_host": "SERVER_HOST",
    "server_port": "SERVER_PORT",
    "api_host": "API_HOST",
    "api_port": "API_PORT",
    "reality_dest": "REALITY_DEST",
    "dns_servers": "DNS_SERVERS",
    "log_level": "SINGBOX_LOG_LEVEL",
}


@dataclass
class Settings:
    """管理器运行配置"""
    state_path: Path = DEFAULT_STATE_PATH
    config_path: Path = DEFAULT_CONFIG_PATH
    pid_path: Path = DEFAULT_PID_PATH
    install_dir: Path = DEFAULT_INSTALL_DIR
    singbox_bin: str = "sing-box"
    server_host: str = "0.0.0.0"
    server_port: int = 443
    api_host: str = "0.0.0.0"
    api_port: int = 3000
    reality_dest: str = DEFAULT_REALITY_TARGETS[0]
    dns_servers: List[str] = field(default_factory=lambda: list(DEFAULT_DNS_SERVERS))
    log_level: str = "info"


def load_yaml(path: Path) -> dict:
    """读取 YAML 配置文件，不存在时返回空字典"""
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as e:
        raise ValidationError(f"Invalid settings file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ValidationError(f"Settings file {path} must contain a mapping")
    return data


def _parse_port(name: str, value: Any) -> int:
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer, got {value!r}")
    if not 1 <= port <= 65535:
        raise ValidationError(f"{name} must be between 1 and 65535, got {port}")
    return port


def _parse_dns_servers(value: Any) -> List[str]:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    raise ValidationError(f"dns_servers must be a list or comma-separated string, got {value!r}")


def _coerce(name: str, value: Any) -> Any:
    if name in ("state_path", "config_path", "pid_path", "install_dir"):
        return Path(value)
    if name in ("server_port", "api_port"):
        return _parse_port(name, value)
    if name == "dns_servers":
        return _parse_dns_servers(value)
    if name == "log_level":
        level = str(value).lower().strip()
        if level not in SINGBOX_LOG_LEVELS:
            raise ValidationError(
                f"log_level must be one of {', '.join(SINGBOX_LOG_LEVELS)}, got {value!r}"
            )
        return level
    return str(value)


def load_settings(
    env: Optional[Mapping[str, str]] = None,
    settings_file: Optional[Path] = None,
) -> Settings:
    """合并默认值、YAML 文件和环境变量

    Args:
        env: 环境变量映射，None 表示 os.environ
        settings_file: YAML 文件路径，None 表示由 SINGBOX_MANAGER_SETTINGS 决定

    Raises:
        ValidationError: 端口、日志级别等取值非法
    """
    if env is None:
        env = os.environ
    if settings_file is None:
        settings_file = Path(env.get("SINGBOX_MANAGER_SETTINGS", str(DEFAULT_SETTINGS_FILE)))

    known = {f.name for f in fields(Settings)}
    values: Dict[str, Any] = {}

    for key, value in load_yaml(settings_file).items():
        if key not in known:
            logger.warning(f"忽略未知配置项: {key} ({settings_file})")
            continue
        values[key] = _coerce(key, value)

    for name, env_key in ENV_KEYS.items():
        raw = env.get(env_key)
        if raw is not None and raw.strip() != "":
            values[name] = _coerce(name, raw.strip())

    return Settings(**values)
