from __future__ import annotations

import base64
import json
import struct
from dataclasses import dataclass
from typing import Optional, Protocol

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa

# COSE algorithm identifiers
ALG_ES256 = -7
ALG_EDDSA = -8
ALG_RS256 = -257
SUPPORTED_ALGORITHMS = (ALG_ES256, ALG_EDDSA, ALG_RS256)

FLAG_USER_PRESENT = 0x01
FLAG_USER_VERIFIED = 0x04
FLAG_BACKUP_ELIGIBLE = 0x08
FLAG_BACKED_UP = 0x10
FLAG_ATTESTED_DATA = 0x40


class WebAuthnFormatError(ValueError):
    """Raised when client data or authenticator data cannot be parsed."""


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_decode(value: str) -> bytes:
    if not isinstance(value, str):
        raise WebAuthnFormatError("expected a base64url string")
    padded = value + "=" * (-len(value) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except (ValueError, UnicodeEncodeError) as exc:
        raise WebAuthnFormatError("invalid base64url value") from exc


@dataclass
class ClientData:
    type: str
    challenge: str
    origin: str
    cross_origin: bool = False


def parse_client_data(raw: bytes) -> ClientData:
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise WebAuthnFormatError("clientDataJSON is not valid JSON") from exc
    if not isinstance(data, dict):
        raise WebAuthnFormatError("clientDataJSON must be an object")
    try:
        return ClientData(
            type=str(data["type"]),
            challenge=str(data["challenge"]),
            origin=str(data["origin"]),
            cross_origin=bool(data.get("crossOrigin", False)),
        )
    except KeyError as exc:
        raise WebAuthnFormatError(f"clientDataJSON missing {exc.args[0]}") from exc


@dataclass
class AuthenticatorData:
    rp_id_hash: bytes
    flags: int
    sign_count: int
    aaguid: Optional[bytes] = None
    credential_id: Optional[bytes] = None

    @property
    def user_present(self) -> bool:
        return bool(self.flags & FLAG_USER_PRESENT)

    @property
    def user_verified(self) -> bool:
        return bool(self.flags & FLAG_USER_VERIFIED)

    @property
    def backup_eligible(self) -> bool:
        return bool(self.flags & FLAG_BACKUP_ELIGIBLE)

    @property
    def backed_up(self) -> bool:
        return bool(self.flags & FLAG_BACKED_UP)

    @property
    def has_attested_data(self) -> bool:
        return bool(self.flags & FLAG_ATTESTED_DATA)


def parse_authenticator_data(raw: bytes) -> AuthenticatorData:
    """Parse the fixed header and, when flagged, the attested credential id.

    The COSE public key that follows the credential id is not decoded here;
    registration takes the SubjectPublicKeyInfo form the browser exposes.
    """
    if len(raw) < 37:
        raise WebAuthnFormatError("authenticatorData is too short")
    rp_id_hash = raw[:32]
    flags = raw[32]
    (sign_count,) = struct.unpack(">I", raw[33:37])
    parsed = AuthenticatorData(rp_id_hash=rp_id_hash, flags=flags, sign_count=sign_count)
    if flags & FLAG_ATTESTED_DATA:
        if len(raw) < 55:
            raise WebAuthnFormatError("attested credential data is truncated")
        parsed.aaguid = raw[37:53]
        (cred_len,) = struct.unpack(">H", raw[53:55])
        if len(raw) < 55 + cred_len:
            raise WebAuthnFormatError("credential id is truncated")
        parsed.credential_id = raw[55 : 55 + cred_len]
    return parsed


def format_aaguid(raw: Optional[bytes]) -> Optional[str]:
    if not raw or len(raw) != 16:
        return None
    h = raw.hex()
    return f"{h[:8]}-{h[8:12]}-{h[12:16]}-{h[16:20]}-{h[20:]}"


def load_public_key(spki_der: bytes, algorithm: int):
    """Load a DER SubjectPublicKeyInfo key and check it fits ``algorithm``."""
    if algorithm not in SUPPORTED_ALGORITHMS:
        raise WebAuthnFormatError(f"unsupported COSE algorithm {algorithm}")
    try:
        key = serialization.load_der_public_key(spki_der)
    except (ValueError, UnsupportedAlgorithm) as exc:
        raise WebAuthnFormatError("public key is not a valid SubjectPublicKeyInfo") from exc
    if algorithm == ALG_ES256:
        if not isinstance(key, ec.EllipticCurvePublicKey) or not isinstance(
            key.curve, ec.SECP256R1
        ):
            raise WebAuthnFormatError("ES256 requires a P-256 key")
    elif algorithm == ALG_RS256:
        if not isinstance(key, rsa.RSAPublicKey):
            raise WebAuthnFormatError("RS256 requires an RSA key")
    elif not isinstance(key, ed25519.Ed25519PublicKey):
        raise WebAuthnFormatError("EdDSA requires an Ed25519 key")
    return key


class AssertionVerifier(Protocol):
    def verify(
        self, public_key: bytes, algorithm: int, signature: bytes, signed_data: bytes
    ) -> bool: ...


class CryptographyVerifier:
    """Signature checks for ES256, RS256 and Ed25519 via ``cryptography``."""

    def verify(
        self, public_key: bytes, algorithm: int, signature: bytes, signed_data: bytes
    ) -> bool:
        try:
            key = load_public_key(public_key, algorithm)
        except WebAuthnFormatError:
            return False
        try:
            if algorithm == ALG_ES256:
                key.verify(signature, signed_data, ec.ECDSA(hashes.SHA256()))
            elif algorithm == ALG_RS256:
                key.verify(signature, signed_data, padding.PKCS1v15(), hashes.SHA256())
            else:
                key.verify(signature, signed_data)
        except InvalidSignature:
            return False
        return True
