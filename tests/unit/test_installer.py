"""
Unit tests for the sing-box release installer.
"""

import io
import json
import tarfile
from unittest.mock import MagicMock, patch

import pytest
import requests

from errors import InstallError
from singbox_installer import (
    RELEASE_API_URL,
    SingboxInstaller,
    find_singbox_binary,
    get_platform_info,
)

LINUX_AMD64 = {"os": "linux", "arch": "amd64", "ext": "tar.gz"}


class FakeResponse:
    def __init__(self, status_code=200, payload=None, content=b"", text=None):
        self.status_code = status_code
        self._payload = payload
        self._content = content
        self._text = text

    def json(self):
        if self._text is not None:
            return json.loads(self._text)
        return self._payload

    def iter_content(self, chunk_size=1):
        yield self._content

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def release_payload(version="1.10.0"):
    name = f"sing-box-{version}-linux-amd64.tar.gz"
    return {
        "tag_name": f"v{version}",
        "assets": [
            {"name": "sing-box-1.10.0-windows-amd64.zip", "browser_download_url": "https://example.invalid/win"},
            {"name": name, "browser_download_url": f"https://example.invalid/{name}"},
        ],
    }


def make_tarball(version="1.10.0") -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        data = b"#!/bin/sh\necho fake\n"
        info = tarfile.TarInfo(f"sing-box-{version}-linux-amd64/sing-box")
        info.size = len(data)
        info.mode = 0o755
        tf.addfile(info, io.BytesIO(data))
    return buf.getvalue()


class TestPlatformInfo:
    """Tests for release asset naming."""

    @pytest.mark.parametrize("system,machine,expected", [
        ("Linux", "x86_64", LINUX_AMD64),
        ("Linux", "aarch64", {"os": "linux", "arch": "arm64", "ext": "tar.gz"}),
        ("Darwin", "arm64", {"os": "darwin", "arch": "arm64", "ext": "tar.gz"}),
        ("Windows", "AMD64", {"os": "windows", "arch": "amd64", "ext": "zip"}),
    ])
    def test_supported(self, system, machine, expected):
        assert get_platform_info(system, machine) == expected

    def test_unsupported_os(self):
        with pytest.raises(InstallError):
            get_platform_info("SunOS", "x86_64")

    def test_unsupported_arch(self):
        with pytest.raises(InstallError):
            get_platform_info("Linux", "mips")


class TestFindBinary:
    """Tests for locating the sing-box executable."""

    def test_absolute_path(self, temp_dir):
        binary = temp_dir / "sing-box"
        binary.write_text("")
        assert find_singbox_binary(str(binary)) is None
        binary.chmod(0o755)
        assert find_singbox_binary(str(binary)) == str(binary)

    def test_install_dir(self, temp_dir):
        binary = temp_dir / "sing-box-test-only"
        binary.write_text("")
        binary.chmod(0o755)
        assert find_singbox_binary("sing-box-test-only", temp_dir) == str(binary)
        assert find_singbox_binary("sing-box-test-only") is None


class TestLatestRelease:
    """Tests for querying GitHub releases."""

    def test_picks_matching_asset(self, temp_dir):
        session = MagicMock()
        session.get.return_value = FakeResponse(payload=release_payload())
        installer = SingboxInstaller(temp_dir, session=session)
        with patch("singbox_installer.get_platform_info", return_value=LINUX_AMD64):
            release = installer.get_latest_release()
        session.get.assert_called_once_with(RELEASE_API_URL, timeout=10)
        assert release.version == "1.10.0"
        assert release.asset_name == "sing-box-1.10.0-linux-amd64.tar.gz"
        assert release.download_url.endswith(release.asset_name)

    def test_no_matching_asset(self, temp_dir):
        session = MagicMock()
        session.get.return_value = FakeResponse(payload={"tag_name": "v1.0.0", "assets": []})
        with patch("singbox_installer.get_platform_info", return_value=LINUX_AMD64):
            with pytest.raises(InstallError):
                SingboxInstaller(temp_dir, session=session).get_latest_release()

    def test_http_error(self, temp_dir):
        session = MagicMock()
        session.get.return_value = FakeResponse(status_code=403)
        with pytest.raises(InstallError):
            SingboxInstaller(temp_dir, session=session).get_latest_release()

    def test_non_json_body(self, temp_dir):
        session = MagicMock()
        session.get.return_value = FakeResponse(text="<html>rate limited</html>")
        with pytest.raises(InstallError):
            SingboxInstaller(temp_dir, session=session).get_latest_release()

    def test_network_error(self, temp_dir):
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("offline")
        with pytest.raises(InstallError):
            SingboxInstaller(temp_dir, session=session).get_latest_release()


class TestInstall:
    """Tests for download, extract and install."""

    def test_install_latest(self, temp_dir):
        install_dir = temp_dir / "bin"
        session = MagicMock()
        session.get.side_effect = [
            FakeResponse(payload=release_payload()),
            FakeResponse(content=make_tarball()),
        ]
        installer = SingboxInstaller(install_dir, session=session)
        with patch("singbox_installer.get_platform_info", return_value=LINUX_AMD64), \
                patch.object(SingboxInstaller, "get_installed_version", return_value=None):
            assert installer.install_latest() == "1.10.0"
        installed = install_dir / "sing-box"
        assert installed.read_bytes().startswith(b"#!/bin/sh")
        assert installed.stat().st_mode & 0o111

    def test_skip_when_current(self, temp_dir):
        session = MagicMock()
        session.get.return_value = FakeResponse(payload=release_payload())
        installer = SingboxInstaller(temp_dir, session=session)
        with patch("singbox_installer.get_platform_info", return_value=LINUX_AMD64), \
                patch.object(SingboxInstaller, "get_installed_version", return_value="1.10.0"):
            assert installer.install_latest() == "1.10.0"
        assert session.get.call_count == 1

    def test_archive_without_binary(self, temp_dir):
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w:gz") as tf:
            info = tarfile.TarInfo("README")
            tf.addfile(info, io.BytesIO(b""))
        session = MagicMock()
        session.get.side_effect = [
            FakeResponse(payload=release_payload()),
            FakeResponse(content=buf.getvalue()),
        ]
        installer = SingboxInstaller(temp_dir / "bin", session=session)
        with patch("singbox_installer.get_platform_info", return_value=LINUX_AMD64), \
                patch.object(SingboxInstaller, "get_installed_version", return_value=None):
            with pytest.raises(InstallError):
                installer.install_latest()

    @pytest.mark.parametrize("ext", ["tar.gz", "zip"])
    def test_corrupt_archive(self, temp_dir, ext):
        archive = temp_dir / f"sing-box.{ext}"
        archive.write_bytes(b"not an archive")
        with pytest.raises(InstallError):
            SingboxInstaller(temp_dir / "bin")._extract(archive, ext, temp_dir / "extract")

    def test_truncated_download(self, temp_dir):
        session = MagicMock()
        session.get.side_effect = [
            FakeResponse(payload=release_payload()),
            FakeResponse(content=make_tarball()[:40]),
        ]
        installer = SingboxInstaller(temp_dir / "bin", session=session)
        with patch("singbox_installer.get_platform_info", return_value=LINUX_AMD64), \
                patch.object(SingboxInstaller, "get_installed_version", return_value=None):
            with pytest.raises(InstallError):
                installer.install_latest()
        assert not (temp_dir / "bin" / "sing-box").exists()
