#!/usr/bin/env python3
"""
singbox-manager 数据模型

state.json 的内存表示：
- User: 用户身份与生命周期标志
- RealityConfig / InboundConfig / DNSConfig / ServerConfig: 服务端配置
- ClientConfig: 由用户和服务端配置派生的客户端连接描述（缓存）
- ManagerState: 持久化的聚合根

磁盘格式使用 camelCase 键，时间为 ISO-8601 字符串（UTC，毫秒精度，Z 结尾）。
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

STATE_VERSION = 1

PROTOCOLS = ("vless", "vmess", "trojan", "shadowsocks", "hysteria2")
TLS_TYPES = ("tls", "reality", "none")
TRANSPORTS = ("tcp", "ws", "grpc", "http")
SINGBOX_LOG_LEVELS = ("trace", "debug", "info", "warn", "error", "fatal", "panic")

# VLESS + Reality 必须使用的 flow，不可配置
VLESS_FLOW = "xtls-rprx-vision"

SHORT_ID_PATTERN = re.compile(r"(?:[0-9a-fA-F]{2})*")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """datetime -> "2026-01-02T03:04:05.000Z"（naive 视为 UTC）"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_timestamp(value: str) -> datetime:
    """解析 ISO-8601 字符串，返回带时区的 datetime"""
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_bool(name: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"{name} must be a boolean, got {value!r}")
    return value


@dataclass
class User:
    """代理用户"""
    id: str
    name: str
    created_at: datetime
    email: Optional[str] = None
    expires_at: Optional[datetime] = None
    enabled: bool = True
    traffic_limit: int = 0  # 字节，0 表示不限
    traffic_used: int = 0   # 由外部统计，管理器从不修改

    def __post_init__(self):
        if not self.name:
            raise ValueError("user name must not be empty")
        if self.traffic_limit < 0 or self.traffic_used < 0:
            raise ValueError("traffic counters must be >= 0")

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """expiresAt 仅用于展示，不影响编译结果"""
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utc_now())

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": self.id, "name": self.name}
        if self.email is not None:
            data["email"] = self.email
        data["createdAt"] = format_timestamp(self.created_at)
        if self.expires_at is not None:
            data["expiresAt"] = format_timestamp(self.expires_at)
        data["enabled"] = self.enabled
        data["trafficLimit"] = self.traffic_limit
        data["trafficUsed"] = self.traffic_used
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "User":
        expires_raw = data.get("expiresAt")
        return cls(
            id=data["id"],
            name=data["name"],
            email=data.get("email"),
            created_at=parse_timestamp(data["createdAt"]),
            expires_at=parse_timestamp(expires_raw) if expires_raw else None,
            enabled=_parse_bool("enabled", data.get("enabled", True)),
            traffic_limit=int(data.get("trafficLimit") or 0),
            traffic_used=int(data.get("trafficUsed") or 0),
        )


@dataclass
class RealityConfig:
    """一个入站的 Reality 伪装参数"""
    dest: str
    server_names: List[str]
    private_key: str
    public_key: str
    short_ids: List[str]

    def __post_init__(self):
        if not self.server_names:
            raise ValueError("reality.serverNames must not be empty")
        if not self.short_ids:
            raise ValueError("reality.shortIds must not be empty")
        for sid in self.short_ids:
            if not isinstance(sid, str) or not SHORT_ID_PATTERN.fullmatch(sid):
                raise ValueError(f"short id must be even-length hex: {sid!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dest": self.dest,
            "serverNames": list(self.server_names),
            "privateKey": self.private_key,
            "publicKey": self.public_key,
            "shortIds": list(self.short_ids),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RealityConfig":
        return cls(
            dest=data["dest"],
            server_names=list(data["serverNames"]),
            private_key=data["privateKey"],
            public_key=data["publicKey"],
            short_ids=list(data["shortIds"]),
        )


@dataclass
class InboundConfig:
    """监听端点"""
    tag: str
    protocol: str
    listen: str
    port: int
    tls_type: str
    reality: Optional[RealityConfig] = None
    transport: Optional[str] = None

    def __post_init__(self):
        if self.protocol not in PROTOCOLS:
            raise ValueError(f"unsupported protocol: {self.protocol}")
        if self.tls_type not in TLS_TYPES:
            raise ValueError(f"unsupported tlsType: {self.tls_type}")
        if self.transport is not None and self.transport not in TRANSPORTS:
            raise ValueError(f"unsupported transport: {self.transport}")
        if not 1 <= int(self.port) <= 65535:
            raise ValueError(f"port out of range: {self.port}")
        if self.tls_type == "reality" and self.reality is None:
            raise ValueError(f"inbound {self.tag} has tlsType=reality but no reality config")

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "tag": self.tag,
            "protocol": self.protocol,
            "listen": self.listen,
            "port": self.port,
        }
        if self.transport is not None:
            data["transport"] = self.transport
        data["tlsType"] = self.tls_type
        if self.reality is not None:
            data["reality"] = self.reality.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InboundConfig":
        reality_raw = data.get("reality")
        return cls(
            tag=data["tag"],
            protocol=data["protocol"],
            listen=data.get("listen", "0.0.0.0"),
            port=int(data["port"]),
            tls_type=data.get("tlsType", "none"),
            reality=RealityConfig.from_dict(reality_raw) if reality_raw else None,
            transport=data.get("transport"),
        )


@dataclass
class DNSConfig:
    servers: List[str] = field(default_factory=list)
    use_system_dns: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"servers": list(self.servers), "useSystemDns": self.use_system_dns}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DNSConfig":
        return cls(
            servers=list(data.get("servers") or []),
            use_system_dns=_parse_bool("useSystemDns", data.get("useSystemDns", False)),
        )


@dataclass
class ServerConfig:
    """服务端配置：公网地址 + 入站列表"""
    host: str
    inbounds: List[InboundConfig] = field(default_factory=list)
    dns: Optional[DNSConfig] = None
    log_level: str = "info"

    def __post_init__(self):
        if self.log_level not in SINGBOX_LOG_LEVELS:
            raise ValueError(f"unsupported logLevel: {self.log_level}")
        tags = [inbound.tag for inbound in self.inbounds]
        if len(tags) != len(set(tags)):
            raise ValueError(f"duplicate inbound tags: {tags}")

    def reality_inbound(self) -> Optional[InboundConfig]:
        """第一个使用 Reality 的入站"""
        for inbound in self.inbounds:
            if inbound.tls_type == "reality":
                return inbound
        return None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "host": self.host,
            "inbounds": [inbound.to_dict() for inbound in self.inbounds],
        }
        if self.dns is not None:
            data["dns"] = self.dns.to_dict()
        data["logLevel"] = self.log_level
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServerConfig":
        dns_raw = data.get("dns")
        return cls(
            host=data.get("host", ""),
            inbounds=[InboundConfig.from_dict(item) for item in data.get("inbounds") or []],
            dns=DNSConfig.from_dict(dns_raw) if dns_raw else None,
            log_level=data.get("logLevel", "info"),
        )


@dataclass
class ClientConfig:
    """客户端连接描述（派生数据，不可手工编辑）"""
    user_id: str
    protocol: str
    uri: str
    manual: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "protocol": self.protocol,
            "uri": self.uri,
            "manual": dict(self.manual),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClientConfig":
        return cls(
            user_id=data["userId"],
            protocol=data["protocol"],
            uri=data["uri"],
            manual=dict(data.get("manual") or {}),
        )


@dataclass
class ManagerState:
    """持久化的聚合根（唯一数据来源）"""
    server: ServerConfig
    users: List[User] = field(default_factory=list)
    client_configs: List[ClientConfig] = field(default_factory=list)
    version: int = STATE_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "server": self.server.to_dict(),
            "users": [user.to_dict() for user in self.users],
            "clientConfigs": [config.to_dict() for config in self.client_configs],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ManagerState":
        version = data.get("version")
        if version != STATE_VERSION:
            raise ValueError(f"unsupported state version: {version}")
        return cls(
            version=version,
            server=ServerConfig.from_dict(data["server"]),
            users=[User.from_dict(item) for item in data.get("users") or []],
            client_configs=[ClientConfig.from_dict(item) for item in data.get("clientConfigs") or []],
        )
