"""TOTP enrollment, login-time challenges and backup codes.

TOTP follows RFC 6238 (HMAC-SHA1, 30 second steps, 6 digits) so standard
authenticator apps interoperate. Backup codes are stored only as SHA-256
digests of their normalised form.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import io
import re
import secrets
import string
import time
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional
from urllib.parse import quote, urlencode

import qrcode

from hubauth.config import Settings
from hubauth.logging import get_logger
from hubauth.service.errors import AuthenticationError, BadRequestError, NotFoundError
from hubauth.service.passwords import CredentialVerifier
from hubauth.storage.common import AuthStore
from hubauth.storage.models import Account

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
TOTP_WINDOW = 1
SECRET_BYTES = 20

_BACKUP_ALPHABET = string.ascii_uppercase + string.digits
_BACKUP_GROUPS = 4
_BACKUP_GROUP_LEN = 4
_BACKUP_FORMAT_RE = re.compile(r"^[A-Z0-9]{4}(?:-[A-Z0-9]{4}){3}$")
_SEPARATORS_RE = re.compile(r"[\s-]")
_TOTP_RE = re.compile(r"^\d{6}$")


@dataclass
class EnrollmentMaterial:
    secret: str
    otpauth_uri: str
    qr_image: str
    backup_codes: List[str]


def normalize_code(code: str) -> str:
    return _SEPARATORS_RE.sub("", code or "").upper()


def digest_backup_code(code: str) -> str:
    return hashlib.sha256(normalize_code(code).encode()).hexdigest()


def generate_secret() -> str:
    return base64.b32encode(secrets.token_bytes(SECRET_BYTES)).decode("ascii").rstrip("=")


def _decode_secret(secret: str) -> Optional[bytes]:
    cleaned = (secret or "").replace(" ", "").upper()
    padded = cleaned + "=" * ((8 - len(cleaned) % 8) % 8)
    try:
        return base64.b32decode(padded, casefold=True)
    except (binascii.Error, ValueError):
        return None


def generate_totp(secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL) -> str:
    key = _decode_secret(secret)
    if not key:
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**TOTP_DIGITS
    )
    return str(code_int).zfill(TOTP_DIGITS)


def generate_backup_codes(count: int) -> List[str]:
    """``count`` unique codes shaped like ``AB12-CD34-EF56-GH78``."""
    codes: List[str] = []
    seen: set[str] = set()
    while len(codes) < count:
        raw = "".join(
            secrets.choice(_BACKUP_ALPHABET) for _ in range(_BACKUP_GROUPS * _BACKUP_GROUP_LEN)
        )
        if raw in seen:
            continue
        seen.add(raw)
        groups = [
            raw[i : i + _BACKUP_GROUP_LEN] for i in range(0, len(raw), _BACKUP_GROUP_LEN)
        ]
        codes.append("-".join(groups))
    return codes


def qr_data_url(data: str) -> str:
    qr = qrcode.QRCode(version=1, box_size=10, border=4)
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


class MFAManager:
    """Per-account MFA state machine: disabled, pending enrollment, enabled.

    Pending enrollment lives with the client between ``begin_enrollment`` and
    ``confirm_enrollment``; nothing is written until confirmation succeeds.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        verifier: CredentialVerifier,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.settings = settings
        self.verifier = verifier
        self._clock = clock

    def provisioning_uri(self, secret: str, label: str) -> str:
        issuer = self.settings.mfa_issuer
        query = urlencode(
            {
                "secret": secret,
                "issuer": issuer,
                "algorithm": "SHA1",
                "digits": TOTP_DIGITS,
                "period": TOTP_INTERVAL,
            }
        )
        return f"otpauth://totp/{quote(issuer)}:{quote(label)}?{query}"

    def check_totp(self, secret: Optional[str], code: str) -> bool:
        """Constant-time match of ``code`` in the current step and one either side."""
        if not secret:
            return False
        candidate = _SEPARATORS_RE.sub("", code or "")
        if not _TOTP_RE.match(candidate):
            return False
        now = self._clock()
        matched = False
        for offset in range(-TOTP_WINDOW, TOTP_WINDOW + 1):
            generated = generate_totp(secret, now + offset * TOTP_INTERVAL)
            if generated and hmac.compare_digest(generated, candidate):
                matched = True
        return matched

    def begin_enrollment(self, account: Account) -> EnrollmentMaterial:
        if account.mfa_enabled:
            raise BadRequestError("MFA is already enabled")
        secret = generate_secret()
        uri = self.provisioning_uri(secret, account.email)
        return EnrollmentMaterial(
            secret=secret,
            otpauth_uri=uri,
            qr_image=qr_data_url(uri),
            backup_codes=generate_backup_codes(self.settings.mfa_backup_code_count),
        )

    def _validate_backup_batch(self, backup_codes: Iterable[str]) -> List[str]:
        codes = [(code or "").strip().upper() for code in backup_codes]
        if len(codes) != self.settings.mfa_backup_code_count:
            raise BadRequestError(
                f"Expected {self.settings.mfa_backup_code_count} backup codes"
            )
        if any(not _BACKUP_FORMAT_RE.match(code) for code in codes):
            raise BadRequestError("Backup codes are malformed")
        if len(set(codes)) != len(codes):
            raise BadRequestError("Backup codes must be unique")
        return codes

    def confirm_enrollment(
        self, account: Account, secret: str, code: str, backup_codes: Iterable[str]
    ) -> None:
        if account.mfa_enabled:
            raise BadRequestError("MFA is already enabled")
        if not code:
            raise BadRequestError("Verification code is required")
        if not _TOTP_RE.match(_SEPARATORS_RE.sub("", code)):
            raise BadRequestError("Verification code must be 6 digits")
        key = _decode_secret(secret)
        if not key or len(key) < 10:
            raise BadRequestError("Invalid MFA secret")
        codes = self._validate_backup_batch(backup_codes)
        if not self.check_totp(secret, code):
            raise BadRequestError(
                "Invalid verification code. Please check your authenticator app and try again."
            )
        if not self.store.enable_mfa(account.id, secret, [digest_backup_code(c) for c in codes]):
            # Lost a race with another confirmation, or the account vanished
            raise BadRequestError("MFA is already enabled")
        logger.info("mfa_enabled", account_id=account.id)

    def verify_totp(self, account: Account, code: str) -> bool:
        if not account.mfa_enabled:
            return False
        return self.check_totp(account.mfa_secret, code)

    def redeem_backup_code(self, account: Account, code: str) -> Optional[int]:
        """Consume a backup code; returns codes remaining or None on no match."""
        if not account.mfa_enabled:
            return None
        digest = digest_backup_code(code)
        matched: Optional[str] = None
        # Compare against every stored digest so timing does not reveal position
        for stored in account.backup_codes:
            if hmac.compare_digest(stored, digest):
                matched = stored
        if matched is None:
            return None
        remaining = self.store.consume_backup_code(account.id, matched)
        if remaining is None:
            logger.warning("backup_code_already_consumed", account_id=account.id)
            return None
        logger.info("backup_code_redeemed", account_id=account.id, remaining=remaining)
        return remaining

    def _check_password(self, account: Account, password: str) -> None:
        if not self.verifier.verify(password, account.password_hash):
            raise AuthenticationError("Invalid password")

    def disable(self, account: Account, password: str) -> None:
        self._check_password(account, password)
        if not account.mfa_enabled:
            raise BadRequestError("MFA is not enabled")
        if not self.store.disable_mfa(account.id):
            raise NotFoundError("User not found")
        logger.info("mfa_disabled", account_id=account.id)

    def regenerate_backup_codes(self, account: Account, password: str) -> List[str]:
        self._check_password(account, password)
        if not account.mfa_enabled:
            raise BadRequestError("MFA is not enabled")
        codes = generate_backup_codes(self.settings.mfa_backup_code_count)
        if not self.store.replace_backup_codes(
            account.id, [digest_backup_code(c) for c in codes]
        ):
            raise BadRequestError("MFA is not enabled")
        logger.info("backup_codes_regenerated", account_id=account.id)
        return codes
