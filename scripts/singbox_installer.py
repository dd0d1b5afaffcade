#!/usr/bin/env python3
"""
从 GitHub Releases 下载当前平台的最新 sing-box，解压后安装到 install_dir。
"""

import os
import platform
import re
import shutil
import subprocess
import tarfile
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

import requests

from errors import InstallError
from log_config import get_logger

logger = get_logger(__name__)

RELEASE_API_URL = "https://api.github.com/repos/SagerNet/sing-box/releases/latest"
SINGBOX_BINARY = "sing-box"
VERSION_PATTERN = re.compile(r"sing-box version (\d+\.\d+\.\d+)")

RELEASE_TIMEOUT = 10
DOWNLOAD_TIMEOUT = 60

_OS_MAP = {
    "linux": ("linux", "tar.gz"),
    "darwin": ("darwin", "tar.gz"),
    "windows": ("windows", "zip"),
}
_ARCH_MAP = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "armv7",
    "armv7": "armv7",
}


@dataclass
class ReleaseInfo:
    version: str
    download_url: str
    asset_name: str
    ext: str


def get_platform_info(system: Optional[str] = None, machine: Optional[str] = None) -> Dict[str, str]:
    """当前平台对应的 release 资源命名

    Raises:
        InstallError: 不支持的系统或架构
    """
    system = (system or platform.system()).lower()
    machine = (machine or platform.machine()).lower()

    if system not in _OS_MAP:
        raise InstallError(f"Unsupported platform: {system}")
    if machine not in _ARCH_MAP:
        raise InstallError(f"Unsupported architecture: {machine}")

    os_name, ext = _OS_MAP[system]
    return {"os": os_name, "arch": _ARCH_MAP[machine], "ext": ext}


def find_singbox_binary(singbox_bin: str = SINGBOX_BINARY, install_dir: Optional[Path] = None) -> Optional[str]:
    """在 PATH 和 install_dir 中查找 sing-box 可执行文件"""
    if os.path.sep in singbox_bin:
        return singbox_bin if os.access(singbox_bin, os.X_OK) else None
    found = shutil.which(singbox_bin)
    if found:
        return found
    if install_dir is not None:
        candidate = Path(install_dir) / singbox_bin
        if candidate.exists() and os.access(candidate, os.X_OK):
            return str(candidate)
    return None


class SingboxInstaller:
    """sing-box 下载与安装"""

    def __init__(self, install_dir: Path, singbox_bin: str = SINGBOX_BINARY,
                 session: Optional[requests.Session] = None):
        self.install_dir = Path(install_dir)
        self.singbox_bin = singbox_bin
        self.session = session or requests.Session()

    def binary_path(self) -> Optional[str]:
        return find_singbox_binary(self.singbox_bin, self.install_dir)

    def is_installed(self) -> bool:
        return self.binary_path() is not None

    def get_installed_version(self) -> Optional[str]:
        binary = self.binary_path()
        if not binary:
            return None
        try:
            result = subprocess.run(
                [binary, "version"],
                capture_output=True, text=True, timeout=5
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug(f"获取 sing-box 版本失败: {e}")
            return None
        match = VERSION_PATTERN.search(result.stdout)
        return match.group(1) if match else None

    def get_latest_release(self) -> ReleaseInfo:
        """查询最新 release 中与当前平台匹配的资源"""
        try:
            resp = self.session.get(RELEASE_API_URL, timeout=RELEASE_TIMEOUT)
        except requests.RequestException as e:
            raise InstallError(f"Failed to fetch release info: {e}") from e
        if resp.status_code != 200:
            raise InstallError(f"Failed to fetch release info: HTTP {resp.status_code}")

        try:
            data = resp.json()
        except ValueError as e:
            raise InstallError(f"Release info is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise InstallError("Release info has unexpected format")
        version = str(data.get("tag_name", "")).lstrip("v")
        if not version:
            raise InstallError("Release info has no tag_name")

        info = get_platform_info()
        asset_name = f"sing-box-{version}-{info['os']}-{info['arch']}.{info['ext']}"
        for asset in data.get("assets") or []:
            if asset.get("name") == asset_name:
                return ReleaseInfo(
                    version=version,
                    download_url=asset["browser_download_url"],
                    asset_name=asset_name,
                    ext=info["ext"],
                )
        raise InstallError(f"No release found for {info['os']}-{info['arch']}")

    def _download(self, url: str, dest: Path) -> None:
        try:
            with self.session.get(url, stream=True, timeout=DOWNLOAD_TIMEOUT) as resp:
                if resp.status_code != 200:
                    raise InstallError(f"Download failed: HTTP {resp.status_code}")
                with open(dest, "wb") as f:
                    for chunk in resp.iter_content(chunk_size=65536):
                        if chunk:
                            f.write(chunk)
        except requests.RequestException as e:
            raise InstallError(f"Download failed: {e}") from e

    def _extract(self, archive: Path, ext: str, dest_dir: Path) -> Path:
        """解压并返回 sing-box 可执行文件路径"""
        try:
            if ext == "zip":
                with zipfile.ZipFile(archive) as zf:
                    zf.extractall(dest_dir)
            else:
                with tarfile.open(archive, "r:gz") as tf:
                    tf.extractall(dest_dir, filter="data")
        except (tarfile.TarError, zipfile.BadZipFile, EOFError, OSError) as e:
            raise InstallError(f"Failed to extract {archive.name}: {e}") from e

        names = (SINGBOX_BINARY, f"{SINGBOX_BINARY}.exe")
        for path in dest_dir.rglob("*"):
            if path.is_file() and path.name in names:
                return path
        raise InstallError(f"sing-box binary not found in {archive.name}")

    def install_latest(self) -> str:
        """安装最新版本，已是最新时跳过下载

        Returns:
            安装后的版本号

        Raises:
            InstallError: 查询、下载、解压或复制失败
        """
        current = self.get_installed_version()
        if current:
            logger.info(f"sing-box {current} 已安装")

        release = self.get_latest_release()
        logger.info(f"最新版本: {release.version}")
        if current == release.version:
            logger.info("已是最新版本")
            return current

        with tempfile.TemporaryDirectory(prefix="singbox-install-") as tmp:
            tmp_dir = Path(tmp)
            archive = tmp_dir / release.asset_name
            logger.info(f"下载 {release.download_url}")
            self._download(release.download_url, archive)

            binary = self._extract(archive, release.ext, tmp_dir / "extract")

            try:
                self.install_dir.mkdir(parents=True, exist_ok=True)
                dest = self.install_dir / binary.name
                shutil.copy2(binary, dest)
                os.chmod(dest, 0o755)
            except OSError as e:
                raise InstallError(f"Failed to install binary to {self.install_dir}: {e}") from e

        logger.info(f"sing-box {release.version} 已安装到 {dest}")
        return release.version

