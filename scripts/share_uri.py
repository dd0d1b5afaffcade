#!/usr/bin/env python3
"""VLESS share links - generate/parse vless:// URIs and client descriptors"""

import io
from typing import Any, Dict, List
from urllib.parse import parse_qs, quote, unquote, urlencode, urlparse

import qrcode

from errors import UnsupportedProtocolError
from models import VLESS_FLOW, ClientConfig, InboundConfig, ServerConfig, User

# Fixed for every client
FINGERPRINT = "chrome"
TRANSPORT = "tcp"
SECURITY = "reality"

# encodeURIComponent leaves these unescaped
_FRAGMENT_SAFE = "-_.!~*'()"


def _require_vless_reality(inbound: InboundConfig) -> None:
    if inbound.protocol != "vless" or inbound.tls_type != "reality" or inbound.reality is None:
        raise UnsupportedProtocolError(inbound.protocol, inbound.tls_type)


def generate_vless_uri(user: User, server: ServerConfig, inbound: InboundConfig) -> str:
    """Build the vless:// connection URI for one user on one inbound.

    Parameter order is fixed:
    type, security, pbk, fp, sni, sid, flow
    """
    _require_vless_reality(inbound)
    reality = inbound.reality

    query = urlencode([
        ("type", TRANSPORT),
        ("security", SECURITY),
        ("pbk", reality.public_key),
        ("fp", FINGERPRINT),
        ("sni", reality.server_names[0]),
        ("sid", reality.short_ids[0]),
        ("flow", VLESS_FLOW),
    ])
    fragment = quote(user.name, safe=_FRAGMENT_SAFE)

    return f"vless://{user.id}@{server.host}:{inbound.port}?{query}#{fragment}"


def build_manual_config(user: User, server: ServerConfig, inbound: InboundConfig) -> Dict[str, Any]:
    """Flattened fields for manual client entry; same values as the URI"""
    _require_vless_reality(inbound)
    reality = inbound.reality
    return {
        "address": server.host,
        "port": inbound.port,
        "uuid": user.id,
        "flow": VLESS_FLOW,
        "security": SECURITY,
        "sni": reality.server_names[0],
        "fingerprint": FINGERPRINT,
        "publicKey": reality.public_key,
        "shortId": reality.short_ids[0],
    }


def generate_client_configs(user: User, server: ServerConfig) -> List[ClientConfig]:
    """One descriptor per inbound of the server"""
    return [
        ClientConfig(
            user_id=user.id,
            protocol=inbound.protocol,
            uri=generate_vless_uri(user, server, inbound),
            manual=build_manual_config(user, server, inbound),
        )
        for inbound in server.inbounds
    ]


def parse_vless_uri(uri: str) -> Dict[str, Any]:
    """Parse vless://uuid@host:port?params#name

    Returns a dict with the same field names the manual config uses
    where they overlap (uuid, flow, security, sni, fingerprint).
    """
    if not uri.startswith("vless://"):
        raise ValueError("Invalid VLESS URI: must start with vless://")

    parsed = urlparse(uri)
    if not parsed.username or not parsed.hostname or parsed.port is None:
        raise ValueError("Invalid VLESS URI: missing uuid, host or port")

    params = {key: values[0] for key, values in parse_qs(parsed.query).items()}

    return {
        "uuid": unquote(parsed.username),
        "server": parsed.hostname,
        "server_port": parsed.port,
        "type": params.get("type", "tcp"),
        "security": params.get("security", "none"),
        "reality_public_key": params.get("pbk", ""),
        "fingerprint": params.get("fp", ""),
        "sni": params.get("sni", ""),
        "short_id": params.get("sid", ""),
        "flow": params.get("flow", ""),
        "name": unquote(parsed.fragment),
    }


def generate_qr_png(uri: str) -> bytes:
    """Render a URI as a PNG QR code"""
    qr = qrcode.QRCode(version=1, box_size=10, border=4)
    qr.add_data(uri)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()
