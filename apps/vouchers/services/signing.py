"""
Voucher signing and QR payload codec.

Vouchers are signed with Ed25519. The server keeps the private key
(``VOUCHER_SIGNING_KEY``); cafeteria terminals are configured with the public
key only (``VOUCHER_VERIFY_KEY``), which is enough to check a scanned QR
payload while the terminal has no connection to the server.

Signed message::

    <code>|<stay_id>|<valid_from ISO>|<valid_until ISO>

QR payload (compact, pipe separated, stay UUID without dashes)::

    <code>|<stay_id hex>|<valid_from ISO>|<valid_until ISO>|<signature>

Signatures are URL-safe base64 without padding (86 characters).
"""

import base64
import binascii
import hashlib
import logging
from dataclasses import dataclass
from datetime import date
from uuid import UUID

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from django.conf import settings

from .exceptions import MalformedPayloadError, SignatureError

logger = logging.getLogger(__name__)

PAYLOAD_SEPARATOR = '|'


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b'=').decode('ascii')


def _b64decode(text: str) -> bytes:
    padding = '=' * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


class VoucherSigner:
    """
    Sign and verify voucher attributes.

    A signer built from a public key only can verify but not sign; this is
    the configuration terminals run with.

    Example:
        Server side::

            signer = VoucherSigner.from_settings()
            signature = signer.sign(code, stay_id, valid_from, valid_until)

        Terminal side::

            signer = VoucherSigner(public_key=VoucherSigner.load_public_key(key))
            signer.verify(code, stay_id, valid_from, valid_until, signature)
    """

    def __init__(self, *, private_key: Ed25519PrivateKey = None, public_key: Ed25519PublicKey = None):
        if private_key is None and public_key is None:
            raise ValueError("A private or public key is required")
        self._private_key = private_key
        self._public_key = public_key or private_key.public_key()

    @classmethod
    def from_seed(cls, seed: bytes) -> 'VoucherSigner':
        return cls(private_key=Ed25519PrivateKey.from_private_bytes(seed))

    @classmethod
    def generate(cls) -> 'VoucherSigner':
        return cls(private_key=Ed25519PrivateKey.generate())

    @classmethod
    def from_settings(cls) -> 'VoucherSigner':
        """
        Build the signer configured for this deployment.

        ``VOUCHER_SIGNING_KEY`` wins when set. Terminals set only
        ``VOUCHER_VERIFY_KEY``. With neither set, a development key is
        derived from ``SECRET_KEY``.
        """
        signing_key = getattr(settings, 'VOUCHER_SIGNING_KEY', '')
        verify_key = getattr(settings, 'VOUCHER_VERIFY_KEY', '')

        if signing_key:
            return cls.from_seed(_b64decode(signing_key))
        if verify_key:
            return cls(public_key=cls.load_public_key(verify_key))

        seed = hashlib.sha256(f"{settings.SECRET_KEY}:voucher-signing".encode()).digest()
        return cls.from_seed(seed)

    @staticmethod
    def load_public_key(encoded: str) -> Ed25519PublicKey:
        return Ed25519PublicKey.from_public_bytes(_b64decode(encoded))

    @property
    def can_sign(self) -> bool:
        return self._private_key is not None

    def private_key_b64(self) -> str:
        """Private key seed in the format of VOUCHER_SIGNING_KEY."""
        if not self.can_sign:
            raise RuntimeError("This signer holds no private key")
        raw = self._private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return _b64encode(raw)

    def public_key_b64(self) -> str:
        """Public key in the format terminals expect in VOUCHER_VERIFY_KEY."""
        raw = self._public_key.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return _b64encode(raw)

    @staticmethod
    def message(code: str, stay_id, valid_from: date, valid_until: date) -> bytes:
        return PAYLOAD_SEPARATOR.join([
            code,
            str(UUID(str(stay_id))),
            valid_from.isoformat(),
            valid_until.isoformat(),
        ]).encode('utf-8')

    def sign(self, code: str, stay_id, valid_from: date, valid_until: date) -> str:
        if not self.can_sign:
            raise RuntimeError("This signer holds no private key")
        raw = self._private_key.sign(self.message(code, stay_id, valid_from, valid_until))
        return _b64encode(raw)

    def verify(self, code: str, stay_id, valid_from: date, valid_until: date, signature: str) -> None:
        """
        Check a presented signature.

        Raises:
            SignatureError: If the signature is malformed or does not match
        """
        try:
            raw = _b64decode(signature)
        except (binascii.Error, ValueError):
            raise SignatureError("Firma inválida", voucher_code=code)
        if len(raw) != 64:
            raise SignatureError("Firma inválida", voucher_code=code)

        try:
            self._public_key.verify(raw, self.message(code, stay_id, valid_from, valid_until))
        except InvalidSignature:
            logger.warning("Signature mismatch for voucher %s", code)
            raise SignatureError("Firma inválida", voucher_code=code)

    def sign_voucher(self, voucher) -> str:
        return self.sign(voucher.code, voucher.stay_id, voucher.valid_from, voucher.valid_until)

    def verify_voucher(self, voucher, signature: str) -> None:
        self.verify(voucher.code, voucher.stay_id, voucher.valid_from, voucher.valid_until, signature)


def get_signer() -> VoucherSigner:
    return VoucherSigner.from_settings()


# =============================================================================
# QR payload
# =============================================================================

@dataclass(frozen=True)
class VoucherPayload:
    """Everything a terminal needs to pre-validate a voucher offline."""

    code: str
    stay_id: UUID
    valid_from: date
    valid_until: date
    signature: str

    def verify(self, signer: VoucherSigner) -> None:
        signer.verify(self.code, self.stay_id, self.valid_from, self.valid_until, self.signature)

    def is_within_window(self, today: date) -> bool:
        return self.valid_from <= today <= self.valid_until


def encode_qr_payload(voucher) -> str:
    return PAYLOAD_SEPARATOR.join([
        voucher.code,
        UUID(str(voucher.stay_id)).hex,
        voucher.valid_from.isoformat(),
        voucher.valid_until.isoformat(),
        voucher.signature,
    ])


def decode_qr_payload(raw: str) -> VoucherPayload:
    """
    Parse a scanned QR string.

    Raises:
        MalformedPayloadError: If the layout or any field is invalid
    """
    parts = (raw or '').strip().split(PAYLOAD_SEPARATOR)
    if len(parts) != 5 or not all(parts):
        raise MalformedPayloadError("Formato de QR inválido")

    code, stay_hex, valid_from, valid_until, signature = parts
    try:
        return VoucherPayload(
            code=code,
            stay_id=UUID(hex=stay_hex),
            valid_from=date.fromisoformat(valid_from),
            valid_until=date.fromisoformat(valid_until),
            signature=signature,
        )
    except ValueError:
        raise MalformedPayloadError("Formato de QR inválido")
