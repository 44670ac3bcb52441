"""Renderable payment code: UPI deep link plus the same link as a QR code (SVG data URI)."""

import base64
from dataclasses import dataclass
from decimal import Decimal
from io import BytesIO
from urllib.parse import quote, urlencode

import qrcode
from qrcode.image.svg import SvgPathImage

from app.core.config import settings


@dataclass(frozen=True)
class PaymentCode:
    url: str
    image: str


def build_upi_url(amount: Decimal, note: str, reference: str, order_id: str) -> str:
    params = {
        "pa": settings.upi_payee_address,
        "pn": settings.upi_payee_name,
        "am": f"{Decimal(str(amount)):.2f}",
        "cu": settings.currency,
        "tn": note,
        "tr": reference,
        "tid": order_id,
    }
    return "upi://pay?" + urlencode(params, quote_via=quote)


def render_qr_data_uri(data: str) -> str:
    img = qrcode.make(data, image_factory=SvgPathImage, box_size=10, border=2)
    buf = BytesIO()
    img.save(buf)
    return "data:image/svg+xml;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


def build_payment_code(intent_id: str, order_id: str, amount: Decimal, description: str) -> PaymentCode:
    url = build_upi_url(amount, description, intent_id, order_id)
    return PaymentCode(url=url, image=render_qr_data_uri(url))
