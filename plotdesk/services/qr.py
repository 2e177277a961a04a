import base64
import json
from io import BytesIO
from typing import Any, Dict

import qrcode

from ..errors import InvalidFormat


def make_qr_data_url(data: str, box_size: int = 10, border: int = 4) -> str:
    """Render ``data`` as a PNG QR code and return it as a data URL."""
    if not data:
        raise InvalidFormat("QR payload is empty")
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(data)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")
    buffer = BytesIO()
    img.save(buffer, format="PNG")
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"


def visit_pass_payload(name: str, plot_id: str, visit_id: str, valid_till_iso: str) -> str:
    payload: Dict[str, Any] = {
        "name": name,
        "plotId": plot_id,
        "visitId": visit_id,
        "validTill": valid_till_iso,
    }
    return json.dumps(payload, separators=(",", ":"))
