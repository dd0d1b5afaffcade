#!/usr/bin/env python3
"""
REALITY 密钥生成

- 优先调用 `sing-box generate reality-keypair`
- sing-box 不可用时使用 cryptography 的 X25519 实现，公钥始终由私钥推导
- Short ID：偶数长度十六进制字符串
"""

import base64
import re
import secrets
import subprocess
import uuid
from typing import List, Optional, Tuple

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import x25519

from log_config import get_logger

logger = get_logger(__name__)

# base64url 编码的 32 字节 X25519 密钥（无 padding）
REALITY_KEY_PATTERN = re.compile(r'^[A-Za-z0-9_-]{43}$')

DEFAULT_SHORT_ID_COUNT = 4
DEFAULT_SHORT_ID_LENGTH = 8


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def derive_public_key(private_key: str) -> str:
    """从 base64url 私钥计算 base64url 公钥"""
    raw = _b64url_decode(private_key)
    if len(raw) != 32:
        raise ValueError(f"X25519 private key must be 32 bytes, got {len(raw)}")
    public = x25519.X25519PrivateKey.from_private_bytes(raw).public_key()
    return _b64url(public.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    ))


def generate_x25519_keypair() -> Tuple[str, str]:
    """使用 cryptography 生成 X25519 密钥对

    Returns:
        (private_key, public_key)，均为 base64url 无 padding
    """
    private = x25519.X25519PrivateKey.generate()
    private_key = _b64url(private.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption()
    ))
    public_key = _b64url(private.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    ))
    return private_key, public_key


def parse_reality_keypair_output(output: str) -> Tuple[str, str]:
    """解析 `sing-box generate reality-keypair` 的输出

    格式:
        PrivateKey: xxx
        PublicKey: xxx
    也兼容 "Private key: xxx" 写法。
    """
    private_key = ""
    public_key = ""
    for line in output.strip().splitlines():
        if ":" not in line:
            continue
        label, value = line.split(":", 1)
        label = label.strip().lower().replace(" ", "")
        if label == "privatekey":
            private_key = value.strip()
        elif label == "publickey":
            public_key = value.strip()

    if not private_key or not public_key:
        raise ValueError(f"无法解析 reality-keypair 输出: {output!r}")
    return private_key, public_key


def generate_short_ids(count: int = DEFAULT_SHORT_ID_COUNT, length: int = DEFAULT_SHORT_ID_LENGTH) -> List[str]:
    """生成 count 个长度为 length 的十六进制 Short ID"""
    if length <= 0 or length % 2 != 0:
        raise ValueError(f"short id length must be a positive even number, got {length}")
    if count <= 0:
        raise ValueError(f"short id count must be positive, got {count}")
    return [secrets.token_hex(length // 2) for _ in range(count)]


def generate_uuid() -> str:
    return str(uuid.uuid4())


class KeyProvider:
    """REALITY 密钥对与 Short ID 的来源"""

    def __init__(self, singbox_bin: Optional[str] = None, timeout: float = 5.0):
        self.singbox_bin = singbox_bin
        self.timeout = timeout

    def _generate_with_singbox(self) -> Optional[Tuple[str, str]]:
        if not self.singbox_bin:
            return None
        try:
            result = subprocess.run(
                [self.singbox_bin, "generate", "reality-keypair"],
                capture_output=True,
                text=True,
                check=True,
                timeout=self.timeout
            )
            private_key, public_key = parse_reality_keypair_output(result.stdout)
        except (OSError, subprocess.SubprocessError, ValueError) as e:
            logger.warning(f"sing-box 生成密钥失败，改用内置 X25519: {e}")
            return None

        if not REALITY_KEY_PATTERN.match(private_key) or not REALITY_KEY_PATTERN.match(public_key):
            logger.warning("sing-box 输出的密钥格式异常，改用内置 X25519")
            return None
        return private_key, public_key

    def generate_key_pair(self) -> Tuple[str, str]:
        """生成 (private_key, public_key)"""
        keys = self._generate_with_singbox()
        if keys is not None:
            logger.debug("REALITY 密钥对由 sing-box 生成")
            return keys
        logger.debug("REALITY 密钥对由 cryptography X25519 生成")
        return generate_x25519_keypair()

    def generate_short_ids(self, count: int = DEFAULT_SHORT_ID_COUNT) -> List[str]:
        return generate_short_ids(count)
