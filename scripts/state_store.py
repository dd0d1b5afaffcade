#!/usr/bin/env python3
"""
state.json 读写

StateStore 只负责序列化/反序列化，不在两次调用之间持有状态副本。
写入为整文件原子替换，文件权限 0600（包含 Reality 私钥）。
"""

import json
from pathlib import Path

from config_compiler import atomic_write_text
from errors import NotInitializedError, PersistenceError
from log_config import get_logger
from models import ManagerState

logger = get_logger(__name__)


class StateStore:
    """管理器状态文件"""

    def __init__(self, path: Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> ManagerState:
        """读取状态文件

        Raises:
            NotInitializedError: 状态文件不存在
            PersistenceError: 文件不可读或内容不是合法的 v1 状态
        """
        try:
            content = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise NotInitializedError()
        except OSError as e:
            raise PersistenceError(f"Failed to read state file {self.path}: {e}") from e

        try:
            data = json.loads(content)
            state = ManagerState.from_dict(data)
        except json.JSONDecodeError as e:
            raise PersistenceError(f"State file {self.path} is not valid JSON: {e}") from e
        except (KeyError, TypeError, ValueError) as e:
            raise PersistenceError(f"State file {self.path} is malformed: {e}") from e

        logger.debug(f"已加载状态: {self.path} ({len(state.users)} users)")
        return state

    def save(self, state: ManagerState) -> None:
        """整文件写入状态

        Raises:
            PersistenceError: 写入失败
        """
        content = json.dumps(state.to_dict(), indent=2, ensure_ascii=False)
        try:
            if not self.path.parent.exists():
                self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            atomic_write_text(self.path, content, mode=0o600)
        except OSError as e:
            raise PersistenceError(f"Failed to write state file {self.path}: {e}") from e
        logger.debug(f"状态已保存: {self.path}")
