from __future__ import annotations
import json
import re
import secrets
from io import BytesIO

import qrcode
from qrcode.constants import ERROR_CORRECT_H

CODE_BYTES = 16
CODE_RE = re.compile(r"^[0-9a-f]{32}$")
PAYLOAD_TYPE = "payment_request"

def new_code() -> str:
    return secrets.token_hex(CODE_BYTES)

def is_well_formed(code: str | None) -> bool:
    return bool(code) and CODE_RE.match(code) is not None

def parse_qr_data(qr_data: str) -> str | None:
    """
    Extract the token code from scanned QR data.

    Accepts the bare code or a JSON payload {"type": "payment_request", "code": ...}.
    Returns None when nothing usable is found.
    """
    raw = (qr_data or "").strip()
    if is_well_formed(raw):
        return raw
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(data, dict) or data.get("type", PAYLOAD_TYPE) != PAYLOAD_TYPE:
        return None
    code = data.get("code") or data.get("qr_code_id")
    if isinstance(code, str) and is_well_formed(code.strip()):
        return code.strip()
    return None

def render_png(value: str, *, box_size: int = 10, border: int = 4, fill_color: str = "#004B8D") -> bytes:
    if not value or not value.strip():
        raise ValueError("cannot render an empty QR payload")
    qr = qrcode.QRCode(error_correction=ERROR_CORRECT_H, box_size=box_size, border=border)
    qr.add_data(value)
    qr.make(fit=True)
    img = qr.make_image(fill_color=fill_color, back_color="white")
    b = BytesIO(); img.save(b, format="PNG")
    return b.getvalue()
