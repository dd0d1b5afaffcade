"""
Unit tests for VLESS share links and client descriptors.
"""

from datetime import datetime, timezone

import pytest

from errors import UnsupportedProtocolError
from models import InboundConfig, RealityConfig, ServerConfig, User
from share_uri import (
    build_manual_config,
    generate_client_configs,
    generate_qr_png,
    generate_vless_uri,
    parse_vless_uri,
)

PUBLIC_KEY = "Z84J2IelR9ch3k8VtlVhhs5ycBUlXA7wHBWcBrjqnAw"
USER_ID = "11111111-2222-4333-8444-555555555555"


def make_user(name: str = "alice") -> User:
    return User(id=USER_ID, name=name, created_at=datetime(2026, 1, 1, tzinfo=timezone.utc))


def make_server(protocol: str = "vless", tls_type: str = "reality") -> ServerConfig:
    reality = RealityConfig(
        dest="www.google.com",
        server_names=["www.google.com", "google.com"],
        private_key="private",
        public_key=PUBLIC_KEY,
        short_ids=["0123abcd", "deadbeef"],
    )
    inbound = InboundConfig(
        tag="vless-reality",
        protocol=protocol,
        listen="0.0.0.0",
        port=443,
        tls_type=tls_type,
        reality=reality,
    )
    return ServerConfig(host="203.0.113.5", inbounds=[inbound])


class TestGenerateUri:
    """Tests for vless:// URI generation."""

    def test_exact_format(self):
        server = make_server()
        uri = generate_vless_uri(make_user(), server, server.inbounds[0])
        assert uri == (
            f"vless://{USER_ID}@203.0.113.5:443"
            f"?type=tcp&security=reality&pbk={PUBLIC_KEY}&fp=chrome"
            f"&sni=www.google.com&sid=0123abcd&flow=xtls-rprx-vision#alice"
        )

    def test_fragment_is_percent_encoded(self):
        server = make_server()
        uri = generate_vless_uri(make_user("Bob Smith/ü"), server, server.inbounds[0])
        assert uri.endswith("#Bob%20Smith%2F%C3%BC")

    def test_fragment_keeps_unreserved_marks(self):
        server = make_server()
        uri = generate_vless_uri(make_user("a-b_c.d!e~f*g'h(i)"), server, server.inbounds[0])
        assert uri.endswith("#a-b_c.d!e~f*g'h(i)")

    @pytest.mark.parametrize("protocol,tls_type", [("vmess", "reality"), ("vless", "tls")])
    def test_unsupported_combination(self, protocol, tls_type):
        server = make_server(protocol, tls_type)
        with pytest.raises(UnsupportedProtocolError):
            generate_vless_uri(make_user(), server, server.inbounds[0])


class TestClientConfigs:
    """Tests for client descriptors."""

    def test_manual_fields(self):
        server = make_server()
        manual = build_manual_config(make_user(), server, server.inbounds[0])
        assert manual == {
            "address": "203.0.113.5",
            "port": 443,
            "uuid": USER_ID,
            "flow": "xtls-rprx-vision",
            "security": "reality",
            "sni": "www.google.com",
            "fingerprint": "chrome",
            "publicKey": PUBLIC_KEY,
            "shortId": "0123abcd",
        }

    def test_manual_agrees_with_uri(self):
        server = make_server()
        [config] = generate_client_configs(make_user("Bob Smith"), server)
        parsed = parse_vless_uri(config.uri)
        manual = config.manual
        assert parsed["uuid"] == manual["uuid"]
        assert parsed["server"] == manual["address"]
        assert parsed["server_port"] == manual["port"]
        assert parsed["security"] == manual["security"]
        assert parsed["sni"] == manual["sni"]
        assert parsed["fingerprint"] == manual["fingerprint"]
        assert parsed["reality_public_key"] == manual["publicKey"]
        assert parsed["short_id"] == manual["shortId"]
        assert parsed["flow"] == manual["flow"]
        assert parsed["name"] == "Bob Smith"

    def test_one_descriptor_per_inbound(self):
        server = make_server()
        configs = generate_client_configs(make_user(), server)
        assert len(configs) == 1
        assert configs[0].user_id == USER_ID
        assert configs[0].protocol == "vless"


class TestParseUri:
    """Tests for parsing vless:// URIs."""

    def test_rejects_other_schemes(self):
        with pytest.raises(ValueError):
            parse_vless_uri("vmess://abc")

    def test_rejects_missing_port(self):
        with pytest.raises(ValueError):
            parse_vless_uri(f"vless://{USER_ID}@example.com?type=tcp")


def test_qr_png():
    png = generate_qr_png("vless://example")
    assert png.startswith(b"\x89PNG\r\n\x1a\n")
