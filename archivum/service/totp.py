from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import time
from dataclasses import dataclass
from io import BytesIO
from typing import Optional
from urllib.parse import quote, urlencode

import qrcode
from qrcode.constants import ERROR_CORRECT_H

from archivum.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class TwoFactorProvisioning:
    secret: str
    uri: str
    qr_code: str


class TOTPProvisioner:
    """RFC 6238 time-based one-time passwords (HMAC-SHA1, 6 digits, 30 s)."""

    DIGITS = 6
    INTERVAL = 30

    def __init__(self, issuer: str, *, valid_window: int = 1, clock=time.time) -> None:
        self.issuer = issuer
        self.valid_window = valid_window
        self._clock = clock

    @staticmethod
    def generate_secret() -> str:
        return base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")

    def provisioning_uri(self, secret: str, account: str) -> str:
        label = quote(f"{self.issuer}:{account}", safe="@:")
        query = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": "SHA1",
                "digits": self.DIGITS,
                "period": self.INTERVAL,
            }
        )
        return f"otpauth://totp/{label}?{query}"

    @staticmethod
    def render_qr(uri: str) -> str:
        """Render ``uri`` as a PNG data URL suitable for an ``<img>`` tag."""
        qr = qrcode.QRCode(error_correction=ERROR_CORRECT_H, box_size=10, border=1)
        qr.add_data(uri)
        qr.make(fit=True)
        img = qr.make_image(fill_color="black", back_color="white")
        buffer = BytesIO()
        img.save(buffer, format="PNG")
        return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode()

    def provision(self, account: str, secret: Optional[str] = None) -> TwoFactorProvisioning:
        secret = secret or self.generate_secret()
        uri = self.provisioning_uri(secret, account)
        return TwoFactorProvisioning(secret=secret, uri=uri, qr_code=self.render_qr(uri))

    def code_at(self, secret: str, timestamp: float) -> str:
        padded = secret + "=" * ((8 - len(secret) % 8) % 8)
        try:
            key = base64.b32decode(padded, True)
        except (binascii.Error, ValueError):
            logger.warning("totp_secret_invalid")
            return ""
        counter = int(timestamp // self.INTERVAL).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**self.DIGITS
        )
        return str(code_int).zfill(self.DIGITS)

    def verify(self, secret: Optional[str], code: str, at: Optional[float] = None) -> bool:
        if not secret or not code:
            return False
        code = code.strip()
        if len(code) != self.DIGITS or not (code.isascii() and code.isdigit()):
            return False
        now = self._clock() if at is None else at
        for step in range(-self.valid_window, self.valid_window + 1):
            generated = self.code_at(secret, now + step * self.INTERVAL)
            if generated and hmac.compare_digest(generated, code):
                return True
        return False
