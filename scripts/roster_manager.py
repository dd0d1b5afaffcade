#!/usr/bin/env python3
"""
用户花名册管理器

RosterManager 是 ManagerState 的唯一持有者和修改者：
- initialize: 首次生成服务端配置（Reality 密钥对），已有状态时直接加载
- add_user / remove_user / set_user_enabled / reset: 修改状态后提交
- 其余 get_* 方法只读内存状态，不触发持久化或重新编译

提交顺序（_commit）：
    1. 写 state.json（唯一数据来源）
    2. 根据内存状态重新编译并写 sing-box 配置
第 1 步失败时内存状态保持不变，第 2 步不会执行；第 2 步失败时状态已提交，
可通过 recompile() 从状态文件重新生成配置。

进程重载（SIGHUP）由调用方在提交之后发起，不在此模块内。
"""

import copy
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from config_compiler import compile_config, generate_default_server_config, write_config
from errors import (
    DuplicateUserError,
    NotInitializedError,
    UserNotFoundError,
    ValidationError,
)
from key_provider import KeyProvider, derive_public_key, generate_uuid
from log_config import get_logger
from manager_config import Settings
from models import ClientConfig, ManagerState, ServerConfig, User, utc_now
from share_uri import generate_client_configs
from singbox_installer import find_singbox_binary
from state_store import StateStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class UserRef:
    """用户查找条件

    - by_name: 只匹配 name
    - by_id: 只匹配 id
    - any: name 或 id 任一相等即匹配，按花名册顺序取第一个（CLI 使用）
    """
    value: str
    kind: str = "any"

    @classmethod
    def by_name(cls, name: str) -> "UserRef":
        return cls(name, "name")

    @classmethod
    def by_id(cls, user_id: str) -> "UserRef":
        return cls(user_id, "id")

    @classmethod
    def any(cls, name_or_id: str) -> "UserRef":
        return cls(name_or_id, "any")

    def matches(self, user: User) -> bool:
        if self.kind == "name":
            return user.name == self.value
        if self.kind == "id":
            return user.id == self.value
        return user.name == self.value or user.id == self.value


def _as_ref(ref) -> UserRef:
    return ref if isinstance(ref, UserRef) else UserRef.any(ref)


class RosterManager:
    """花名册状态机：Uninitialized -> Initialized"""

    def __init__(
        self,
        store: StateStore,
        config_path: Path,
        key_provider: Optional[KeyProvider] = None,
        default_dest: Optional[str] = None,
        dns_servers: Optional[Sequence[str]] = None,
        log_level: str = "info",
    ):
        self.store = store
        self.config_path = Path(config_path)
        self.key_provider = key_provider or KeyProvider()
        self.default_dest = default_dest
        self.dns_servers = list(dns_servers) if dns_servers is not None else None
        self.log_level = log_level
        self._state: Optional[ManagerState] = None

    # ============ 状态 ============

    @property
    def is_initialized(self) -> bool:
        return self._state is not None

    def _require_state(self) -> ManagerState:
        if self._state is None:
            raise NotInitializedError()
        return self._state

    def load(self) -> None:
        """从 state.json 加载状态

        Raises:
            NotInitializedError: 状态文件不存在
        """
        self._state = self.store.load()
        self._check_reality_keys(self._state)

    def _check_reality_keys(self, state: ManagerState) -> None:
        """公钥应由私钥推导得到，不一致时只记录错误"""
        for inbound in state.server.inbounds:
            if inbound.reality is None:
                continue
            try:
                derived = derive_public_key(inbound.reality.private_key)
            except ValueError as e:
                logger.error(f"入站 {inbound.tag} 的 Reality 私钥格式错误: {e}")
                continue
            if derived != inbound.reality.public_key:
                logger.error(f"入站 {inbound.tag} 的 Reality 公钥与私钥不匹配")

    def _new_server_config(self, host: str, port: int) -> ServerConfig:
        return generate_default_server_config(
            host,
            port,
            key_provider=self.key_provider,
            dest=self.default_dest,
            dns_servers=self.dns_servers,
            log_level=self.log_level,
        )

    def _write_compiled(self, state: ManagerState) -> None:
        write_config(compile_config(state.server, state.users), self.config_path)

    def _commit(self, mutate: Callable[[ManagerState], Any]) -> Any:
        """在状态副本上执行修改，持久化成功后才替换内存状态，再重新编译"""
        draft = copy.deepcopy(self._require_state())
        result = mutate(draft)
        self.store.save(draft)
        self._state = draft
        self._write_compiled(draft)
        return result

    def recompile(self) -> Dict[str, Any]:
        """仅根据当前状态重新生成 sing-box 配置（修复路径）"""
        state = self._require_state()
        config = compile_config(state.server, state.users)
        write_config(config, self.config_path)
        return config

    def initialize(self, host: str, port: int = 443) -> ServerConfig:
        """初始化服务端配置

        已存在状态文件时只加载，不重新生成密钥、不清空用户。
        """
        if self.store.exists():
            logger.info(f"加载已有状态: {self.store.path}")
            self.load()
            return self.get_server_config()

        if not host:
            raise ValidationError("Host is required")
        if not 1 <= int(port) <= 65535:
            raise ValidationError(f"Port must be between 1 and 65535, got {port}")

        logger.info("生成新的服务端配置...")
        state = ManagerState(server=self._new_server_config(host, int(port)))
        self.store.save(state)
        self._state = state
        self._write_compiled(state)

        logger.info(f"管理器已初始化: host={host} port={port} protocol=VLESS+Reality")
        return self.get_server_config()

    # ============ 查找 ============

    def find_user(self, ref) -> Optional[User]:
        ref = _as_ref(ref)
        for user in self._require_state().users:
            if ref.matches(user):
                return user
        return None

    def _index_of(self, state: ManagerState, ref: UserRef) -> int:
        for index, user in enumerate(state.users):
            if ref.matches(user):
                return index
        return -1

    # ============ 修改 ============

    def add_user(
        self,
        name: str,
        email: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        traffic_limit: int = 0,
    ) -> Tuple[User, List[ClientConfig]]:
        """添加用户并生成客户端配置

        Raises:
            ValidationError: 用户名为空或流量限制为负
            DuplicateUserError: 同名用户已存在（不论是否启用）
        """
        if not name or not name.strip():
            raise ValidationError("Name is required")
        if traffic_limit is None:
            traffic_limit = 0
        if traffic_limit < 0:
            raise ValidationError("trafficLimit must be >= 0")

        state = self._require_state()
        if any(user.name == name for user in state.users):
            raise DuplicateUserError(name)

        existing_ids = {user.id for user in state.users}
        user_id = generate_uuid()
        while user_id in existing_ids:
            user_id = generate_uuid()

        user = User(
            id=user_id,
            name=name,
            email=email or None,
            created_at=utc_now(),
            expires_at=expires_at,
            enabled=True,
            traffic_limit=traffic_limit,
            traffic_used=0,
        )
        # 先生成客户端配置：不支持的入站组合在提交前就失败
        configs = generate_client_configs(user, state.server)

        def mutate(draft: ManagerState) -> None:
            draft.users.append(copy.deepcopy(user))
            draft.client_configs.extend(copy.deepcopy(configs))

        self._commit(mutate)

        expires = user.expires_at.isoformat() if user.expires_at else "Never"
        logger.info(f"用户已创建: {name} (UUID: {user.id}, Expires: {expires})")
        return copy.deepcopy(user), copy.deepcopy(configs)

    def remove_user(self, ref) -> User:
        """删除用户及其全部客户端配置

        Raises:
            UserNotFoundError: 用户不存在
        """
        ref = _as_ref(ref)
        state = self._require_state()
        index = self._index_of(state, ref)
        if index == -1:
            logger.warning(f"用户不存在: {ref.value}")
            raise UserNotFoundError(ref.value)

        removed = copy.deepcopy(state.users[index])

        def mutate(draft: ManagerState) -> None:
            del draft.users[index]
            draft.client_configs = [
                config for config in draft.client_configs if config.user_id != removed.id
            ]

        self._commit(mutate)
        logger.info(f"用户已删除: {removed.name}")
        return removed

    def set_user_enabled(self, ref, enabled: bool) -> User:
        """启用/禁用用户（禁用后从 sing-box 配置中移除，但保留在花名册）

        Raises:
            UserNotFoundError: 用户不存在
        """
        ref = _as_ref(ref)
        state = self._require_state()
        index = self._index_of(state, ref)
        if index == -1:
            logger.warning(f"用户不存在: {ref.value}")
            raise UserNotFoundError(ref.value)

        def mutate(draft: ManagerState) -> User:
            draft.users[index].enabled = bool(enabled)
            return copy.deepcopy(draft.users[index])

        user = self._commit(mutate)
        logger.info(f"用户已{'启用' if enabled else '禁用'}: {user.name}")
        return user

    def reset(self, host: Optional[str] = None, port: Optional[int] = None) -> ServerConfig:
        """重新生成全部服务端配置并清空用户

        所有已发放的客户端链接立即失效。host/port 默认沿用当前值。
        """
        state = self._require_state()
        current = state.server.inbounds[0].port if state.server.inbounds else 443
        host = host or state.server.host
        port = int(port or current)
        old_public_key = self.get_public_key()

        server = self._new_server_config(host, port)

        def mutate(draft: ManagerState) -> None:
            draft.server = server
            draft.users = []
            draft.client_configs = []

        self._commit(mutate)
        logger.warning(
            f"服务端已重置: 新密钥已生成，所有用户和客户端链接已失效 "
            f"(old publicKey={old_public_key}, new publicKey={self.get_public_key()})"
        )
        return self.get_server_config()

    # ============ 只读 ============

    def get_users(self) -> List[User]:
        return copy.deepcopy(self._require_state().users)

    def get_user(self, ref) -> User:
        """Raises: UserNotFoundError"""
        ref = _as_ref(ref)
        user = self.find_user(ref)
        if user is None:
            raise UserNotFoundError(ref.value)
        return copy.deepcopy(user)

    def get_client_configs(self, ref) -> List[ClientConfig]:
        """用户的客户端配置；用户不存在时返回空列表

        缓存中没有时按当前服务端配置重新生成（不写回状态）。
        """
        user = self.find_user(ref)
        if user is None:
            return []
        state = self._require_state()
        configs = [config for config in state.client_configs if config.user_id == user.id]
        if not configs:
            configs = generate_client_configs(user, state.server)
        return copy.deepcopy(configs)

    def export_user_config(self, ref) -> Optional[str]:
        configs = self.get_client_configs(ref)
        if not configs:
            return None
        return configs[0].uri

    def get_server_config(self) -> ServerConfig:
        return copy.deepcopy(self._require_state().server)

    def get_public_key(self) -> Optional[str]:
        inbound = self._require_state().server.reality_inbound()
        if inbound is None or inbound.reality is None:
            return None
        return inbound.reality.public_key

    def get_server_info(self) -> Dict[str, Any]:
        server = self._require_state().server
        return {
            "host": server.host,
            "port": server.inbounds[0].port if server.inbounds else None,
            "publicKey": self.get_public_key(),
        }

    def get_stats(self, now: Optional[datetime] = None) -> Dict[str, int]:
        users = self._require_state().users
        now = now or utc_now()
        return {
            "totalUsers": len(users),
            "activeUsers": len([user for user in users if user.enabled]),
            "disabledUsers": len([user for user in users if not user.enabled]),
            "expiredUsers": len([user for user in users if user.is_expired(now)]),
        }


def build_manager(settings: Settings) -> RosterManager:
    """按运行配置构造 RosterManager（CLI 和 HTTP 服务共用）"""
    singbox = find_singbox_binary(settings.singbox_bin, settings.install_dir)
    return RosterManager(
        StateStore(settings.state_path),
        settings.config_path,
        key_provider=KeyProvider(singbox),
        default_dest=settings.reality_dest,
        dns_servers=settings.dns_servers,
        log_level=settings.log_level,
    )
