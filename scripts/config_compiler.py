#!/usr/bin/env python3
"""将管理器状态编译为 sing-box 原生配置

- compile_config(server, users) 是纯函数：只读入参，不读写任何文件
- 只有 enabled=True 的用户进入入站用户列表，保持花名册顺序
- 输出字典的键顺序固定（插入顺序），相同输入得到逐字节相同的 JSON

sing-box 配置结构:
    log{level,timestamp}
    dns{servers:[{tag,address}]}
    inbounds[{type,tag,listen,listen_port,users,tls?}]
    outbounds[direct, block]
"""
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from errors import PersistenceError
from key_provider import KeyProvider
from log_config import get_logger
from manager_config import DEFAULT_DNS_SERVERS, DEFAULT_REALITY_TARGETS
from models import (
    VLESS_FLOW,
    DNSConfig,
    InboundConfig,
    RealityConfig,
    ServerConfig,
    User,
)

logger = get_logger(__name__)

# Reality 握手目标固定走 443
REALITY_HANDSHAKE_PORT = 443
DEFAULT_INBOUND_TAG = "vless-reality"

FIXED_OUTBOUNDS = (
    ("direct", "direct"),
    ("block", "block"),
)


def generate_reality_config(key_provider: KeyProvider, dest: Optional[str] = None) -> RealityConfig:
    """生成新的 Reality 配置（新密钥对 + 新 Short ID）"""
    private_key, public_key = key_provider.generate_key_pair()
    target = dest or DEFAULT_REALITY_TARGETS[0]
    return RealityConfig(
        dest=target,
        server_names=[target],
        private_key=private_key,
        public_key=public_key,
        short_ids=key_provider.generate_short_ids(4),
    )


def generate_default_server_config(
    host: str,
    port: int = 443,
    key_provider: Optional[KeyProvider] = None,
    dest: Optional[str] = None,
    dns_servers: Optional[Sequence[str]] = None,
    log_level: str = "info",
) -> ServerConfig:
    """默认服务端配置：单个 VLESS + Reality 入站"""
    if key_provider is None:
        key_provider = KeyProvider()

    reality = generate_reality_config(key_provider, dest)
    return ServerConfig(
        host=host,
        inbounds=[
            InboundConfig(
                tag=DEFAULT_INBOUND_TAG,
                protocol="vless",
                listen="0.0.0.0",
                port=port,
                tls_type="reality",
                reality=reality,
            )
        ],
        dns=DNSConfig(
            servers=list(dns_servers) if dns_servers is not None else list(DEFAULT_DNS_SERVERS),
            use_system_dns=False,
        ),
        log_level=log_level,
    )


def _compile_users(users: Sequence[User]) -> List[Dict[str, Any]]:
    return [
        {
            "uuid": user.id,
            "name": user.name,
            "flow": VLESS_FLOW,
        }
        for user in users
        if user.enabled
    ]


def _compile_tls(inbound: InboundConfig) -> Optional[Dict[str, Any]]:
    if inbound.tls_type != "reality":
        return None

    reality = inbound.reality
    if reality is None:
        raise ValueError(f"inbound {inbound.tag} has tlsType=reality but no reality config")

    return {
        "enabled": True,
        "server_name": reality.server_names[0],
        "reality": {
            "enabled": True,
            "handshake": {
                "server": reality.dest,
                "server_port": REALITY_HANDSHAKE_PORT,
            },
            "private_key": reality.private_key,
            "short_id": list(reality.short_ids),
        },
    }


def _compile_inbound(inbound: InboundConfig, users: Sequence[User]) -> Dict[str, Any]:
    compiled: Dict[str, Any] = {
        "type": inbound.protocol,
        "tag": inbound.tag,
        "listen": inbound.listen,
        "listen_port": inbound.port,
        "users": _compile_users(users),
    }
    tls = _compile_tls(inbound)
    if tls is not None:
        compiled["tls"] = tls
    return compiled


def _compile_dns(dns: Optional[DNSConfig]) -> Dict[str, Any]:
    if dns is None:
        return {}
    return {
        "servers": [
            {"tag": f"dns-{index}", "address": address}
            for index, address in enumerate(dns.servers)
        ]
    }


def compile_config(server: ServerConfig, users: Sequence[User]) -> Dict[str, Any]:
    """ServerConfig + 用户列表 -> sing-box 原生配置"""
    return {
        "log": {
            "level": server.log_level,
            "timestamp": True,
        },
        "dns": _compile_dns(server.dns),
        "inbounds": [_compile_inbound(inbound, users) for inbound in server.inbounds],
        "outbounds": [{"type": kind, "tag": tag} for kind, tag in FIXED_OUTBOUNDS],
    }


def render_config(config: Dict[str, Any]) -> str:
    return json.dumps(config, indent=2, ensure_ascii=False)


def atomic_write_text(path: Path, content: str, mode: int = 0o644) -> None:
    """写入同目录临时文件后 os.replace，目标文件不会出现半写状态"""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def write_config(config: Dict[str, Any], path: Path) -> None:
    """写入 sing-box 配置文件

    Raises:
        PersistenceError: 写入失败
    """
    try:
        # 含 Reality 私钥，仅属主可读
        atomic_write_text(path, render_config(config) + "\n", mode=0o600)
    except OSError as e:
        raise PersistenceError(f"Failed to write sing-box config {path}: {e}") from e
    logger.info(f"sing-box 配置已写入: {path}")


def load_config(path: Path) -> Dict[str, Any]:
    """读取已生成的 sing-box 配置"""
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise PersistenceError(f"sing-box config not found: {path}") from e
    except (OSError, json.JSONDecodeError) as e:
        raise PersistenceError(f"Failed to read sing-box config {path}: {e}") from e
