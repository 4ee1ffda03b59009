"""One-time handover secrets.

The OTP is stored as a salted passlib hash. The QR token carries 128 bits of
randomness, so a plain SHA-256 digest is enough; it is compared in constant
time. Plaintext values only exist in the returned :class:`IssuedCodes`.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
import hashlib
import hmac
import json
import secrets
from typing import Optional

from passlib.context import CryptContext

from fulfillment import config


otp_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

METHOD_OTP = "otp"
METHOD_QR = "qr"
VERIFICATION_METHODS = (METHOD_OTP, METHOD_QR)


@dataclass(frozen=True)
class IssuedCodes:
    otp: str
    qr_token: str
    qr_payload: str
    otp_hash: str
    qr_hash: str
    issued_at: datetime
    expires_at: datetime


def generate_otp() -> str:
    return str(100000 + secrets.randbelow(900000))


def generate_qr_token() -> str:
    return secrets.token_hex(16)


def hash_otp(otp: str) -> str:
    return otp_context.hash(otp)


def verify_otp(otp: str, otp_hash: Optional[str]) -> bool:
    if not otp or not otp_hash:
        return False
    return otp_context.verify(otp, otp_hash)


def hash_qr_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def verify_qr_token(token: str, qr_hash: Optional[str]) -> bool:
    if not token or not qr_hash:
        return False
    return hmac.compare_digest(hash_qr_token(token), qr_hash)


def build_qr_payload(order_id: int, token: str, issued_at: datetime) -> str:
    return json.dumps({"order_id": order_id, "code": token, "timestamp": issued_at.isoformat()}, sort_keys=True)


def extract_qr_token(submitted: str, order_id: int) -> Optional[str]:
    """Accept either the raw token or the scanned JSON payload."""
    submitted = (submitted or "").strip()
    if not submitted.startswith("{"):
        return submitted or None
    try:
        payload = json.loads(submitted)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict) or payload.get("order_id") != order_id:
        return None
    code = payload.get("code")
    return code if isinstance(code, str) else None


def issue_handover_codes(order_id: int, issued_at: datetime, expire_minutes: Optional[int] = None) -> IssuedCodes:
    minutes = config.HANDOVER_CODE_EXPIRE_MINUTES if expire_minutes is None else expire_minutes
    otp = generate_otp()
    token = generate_qr_token()
    return IssuedCodes(
        otp=otp,
        qr_token=token,
        qr_payload=build_qr_payload(order_id, token, issued_at),
        otp_hash=hash_otp(otp),
        qr_hash=hash_qr_token(token),
        issued_at=issued_at,
        expires_at=issued_at + timedelta(minutes=minutes),
    )
