#!/usr/bin/env python3
"""
sing-box 进程管理

- start: `sing-box run -c <config>`，启动后写 PID 文件
- stop: SIGTERM，超时后 SIGKILL
- reload: SIGHUP（只发信号，不等待结果）
- status: 基于 PID 文件和进程存活检查
"""

import asyncio
import fcntl
import os
import signal
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from errors import ExternalProcessError
from log_config import get_logger
from manager_config import Settings
from singbox_installer import find_singbox_binary

logger = get_logger(__name__)

STOP_POLL_INTERVAL = 0.5
STOP_POLL_COUNT = 10


def write_pid_file_atomic(pid_path: Path, pid: int) -> None:
    """在文件锁保护下原子写入 PID 文件"""
    pid_path.parent.mkdir(parents=True, exist_ok=True)
    lock_path = pid_path.with_suffix(".lock")

    with open(lock_path, 'w') as lock_file:
        fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
        try:
            tmp_path = pid_path.with_suffix(".tmp")
            tmp_path.write_text(str(pid))
            tmp_path.rename(pid_path)
        finally:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)


def cleanup_stale_pid_file(pid_path: Path) -> None:
    """PID 文件指向的进程已不存在时删除它"""
    if not pid_path.exists():
        return

    try:
        pid = int(pid_path.read_text().strip())
        os.kill(pid, 0)
    except (ValueError, ProcessLookupError):
        try:
            pid_path.unlink()
            logger.debug(f"已清理无效 PID 文件: {pid_path}")
        except OSError as e:
            logger.warning(f"清理 PID 文件失败: {e}")
    except PermissionError:
        # 进程存在但属于其他用户
        pass
    except OSError as e:
        logger.warning(f"检查 PID 文件时出错: {e}")


@dataclass
class SingboxProcess:
    """sing-box 进程信息"""
    pid: Optional[int] = None
    status: str = "stopped"  # stopped, starting, running, error


class SingboxSupervisor:
    """sing-box 进程管理器"""

    def __init__(
        self,
        config_path: Path,
        pid_path: Path,
        singbox_bin: str = "sing-box",
        install_dir: Optional[Path] = None,
        startup_wait: float = 1.0,
    ):
        self.config_path = Path(config_path)
        self.pid_path = Path(pid_path)
        self.singbox_bin = singbox_bin
        self.install_dir = install_dir
        self.startup_wait = startup_wait
        self.process = SingboxProcess()
        self._popen: Optional[subprocess.Popen] = None
        cleanup_stale_pid_file(self.pid_path)

    def _binary(self) -> str:
        binary = find_singbox_binary(self.singbox_bin, self.install_dir)
        if not binary:
            raise ExternalProcessError(
                "sing-box not installed. Run \"singbox-manager install\" first."
            )
        return binary

    def _read_pid_from_file(self) -> Optional[int]:
        if self.pid_path.exists():
            try:
                return int(self.pid_path.read_text().strip())
            except (ValueError, OSError):
                pass
        return None

    def _current_pid(self) -> Optional[int]:
        return self.process.pid or self._read_pid_from_file()

    def is_running(self) -> bool:
        """sing-box 进程是否存活"""
        if self._popen is not None and self._popen.pid == self.process.pid:
            return self._popen.poll() is None

        pid = self._current_pid()
        if not pid:
            return False
        try:
            os.kill(pid, 0)
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            return True

    def check_config(self) -> Tuple[bool, str]:
        """`sing-box check -c <config>`"""
        binary = self._binary()
        try:
            result = subprocess.run(
                [binary, "check", "-c", str(self.config_path)],
                capture_output=True, text=True, timeout=10
            )
        except (OSError, subprocess.SubprocessError) as e:
            raise ExternalProcessError(f"Failed to run sing-box check: {e}") from e
        output = (result.stderr or result.stdout).strip()
        return result.returncode == 0, output

    async def start(self) -> bool:
        """启动 sing-box

        Returns:
            True 表示进程在运行（新启动或已在运行）

        Raises:
            ExternalProcessError: 二进制缺失、无法启动或启动后立即退出
        """
        if self.is_running():
            logger.info(f"sing-box 已在运行 (PID: {self._current_pid()})")
            return True

        binary = self._binary()
        if not self.config_path.exists():
            raise ExternalProcessError(f"sing-box config not found: {self.config_path}")

        logger.info("启动 sing-box...")
        self.process.status = "starting"
        try:
            self._popen = subprocess.Popen(
                [binary, "run", "-c", str(self.config_path)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True
            )
        except OSError as e:
            self.process.status = "error"
            raise ExternalProcessError(f"Failed to start sing-box: {e}") from e

        self.process.pid = self._popen.pid

        # 等待进程稳定
        await asyncio.sleep(self.startup_wait)

        if not self.is_running():
            self.process.status = "error"
            self.process.pid = None
            raise ExternalProcessError("sing-box exited immediately after start")

        self.process.status = "running"
        try:
            write_pid_file_atomic(self.pid_path, self.process.pid)
        except OSError as e:
            logger.warning(f"写入 PID 文件失败: {e}")

        logger.info(f"sing-box 已启动 (PID: {self.process.pid})")
        return True

    async def stop(self) -> bool:
        """停止 sing-box

        Returns:
            False 表示本来就没有运行
        """
        pid = self._current_pid()
        was_running = bool(pid) and self.is_running()

        if was_running:
            logger.info(f"停止 sing-box (PID: {pid})...")
            try:
                os.kill(pid, signal.SIGTERM)
                for _ in range(STOP_POLL_COUNT):
                    if not self.is_running():
                        break
                    await asyncio.sleep(STOP_POLL_INTERVAL)
                else:
                    logger.warning("sing-box 未响应 SIGTERM，发送 SIGKILL")
                    os.kill(pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            except PermissionError as e:
                raise ExternalProcessError(f"Failed to stop sing-box: {e}") from e
            if self._popen is not None:
                self._popen.poll()
        else:
            logger.info("sing-box 未在运行")

        self.process.pid = None
        self._popen = None
        if self.pid_path.exists():
            try:
                self.pid_path.unlink()
            except OSError as e:
                logger.warning(f"删除 PID 文件失败: {e}")

        self.process.status = "stopped"
        return was_running

    async def reload(self) -> bool:
        """向 sing-box 发送 SIGHUP 重载配置

        Returns:
            False 表示进程未运行，无需重载

        Raises:
            ExternalProcessError: 发送信号失败
        """
        if not self.is_running():
            logger.debug("sing-box 未运行，跳过重载")
            return False

        pid = self._current_pid()
        try:
            os.kill(pid, signal.SIGHUP)
        except OSError as e:
            raise ExternalProcessError(f"Failed to reload sing-box (PID {pid}): {e}") from e
        logger.info(f"已发送 SIGHUP 到 sing-box (PID: {pid})")
        return True

    async def restart(self) -> bool:
        await self.stop()
        return await self.start()

    def get_status(self) -> Dict[str, Any]:
        alive = self.is_running()
        if alive:
            status = "running"
        elif self.process.status in ("starting", "error"):
            status = self.process.status
        else:
            status = "stopped"

        return {
            "status": status,
            "pid": self._current_pid() if alive else None,
            "config_path": str(self.config_path),
        }


def build_supervisor(settings: Settings) -> SingboxSupervisor:
    return SingboxSupervisor(
        settings.config_path,
        settings.pid_path,
        singbox_bin=settings.singbox_bin,
        install_dir=settings.install_dir,
    )
