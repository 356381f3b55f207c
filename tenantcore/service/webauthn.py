from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from tenantcore.logging import get_logger
from tenantcore.service.audit import AuditSink
from tenantcore.service.auth import AuthService
from tenantcore.service.errors import (
    AuthenticationError,
    ConflictError,
    ExpiredError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from tenantcore.service.vault import TokenVault
from tenantcore.service.webauthn_crypto import (
    SUPPORTED_ALGORITHMS,
    AssertionVerifier,
    CryptographyVerifier,
    WebAuthnFormatError,
    b64url_decode,
    b64url_encode,
    format_aaguid,
    load_public_key,
    parse_authenticator_data,
    parse_client_data,
)
from tenantcore.storage.errors import ConstraintViolation
from tenantcore.storage.models import PasskeyCredential, new_id, utcnow

logger = get_logger(__name__)

_VALID_TRANSPORTS = {"usb", "nfc", "ble", "internal", "hybrid", "smart-card"}


def counter_advances(stored: int, reported: int) -> bool:
    """Signature counters must strictly increase.

    Authenticators without a counter report 0 forever; 0 against a stored 0
    is the only non-increasing value accepted.
    """
    if reported == 0 and stored == 0:
        return True
    return reported > stored


class WebAuthnService:
    """Passkey registration and sign-in ceremonies.

    Each ceremony keeps exactly one outstanding challenge per owner and
    type in the token vault. Verification consumes it before looking at the
    response, so a replayed or late response always finds nothing and fails
    with ``challenge_expired``.
    """

    def __init__(
        self,
        store,
        vault: TokenVault,
        auth: AuthService,
        audit: AuditSink,
        *,
        rp_id: str,
        rp_name: str,
        allowed_origins: Iterable[str],
        challenge_ttl_seconds: int = 300,
        verifier: Optional[AssertionVerifier] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.vault = vault
        self.auth = auth
        self.audit = audit
        self.rp_id = rp_id
        self.rp_name = rp_name
        self.allowed_origins = set(allowed_origins)
        self.challenge_ttl_seconds = challenge_ttl_seconds
        self.verifier: AssertionVerifier = verifier or CryptographyVerifier()
        self._clock = clock
        self._rp_id_hash = hashlib.sha256(rp_id.encode("utf-8")).digest()

    @staticmethod
    def _slot(owner: str, ceremony: str) -> str:
        return f"{owner}:{ceremony}"

    async def _issue_challenge(self, owner: str, ceremony: str) -> str:
        challenge = b64url_encode(secrets.token_bytes(32))
        await self.vault.put_slot(
            self._slot(owner, ceremony),
            {"challenge": challenge, "type": ceremony},
            self.challenge_ttl_seconds,
            owner_key=owner,
        )
        return challenge

    async def _take_challenge(self, owner: str, ceremony: str) -> str:
        entry = await self.vault.take_slot(self._slot(owner, ceremony))
        if entry is None or entry.payload.get("type") != ceremony:
            raise ExpiredError(
                "The WebAuthn challenge has expired. Please try again.",
                error_code="challenge_expired",
            )
        return entry.payload["challenge"]

    @staticmethod
    def _fail(reason: str) -> AuthenticationError:
        return AuthenticationError(
            "WebAuthn verification failed",
            error_code="verification_failed",
            detail={"reason": reason},
        )

    def _check_client_data(self, raw: bytes, expected_type: str, expected_challenge: str):
        try:
            client = parse_client_data(raw)
        except WebAuthnFormatError as exc:
            raise self._fail(str(exc))
        if client.type != expected_type:
            raise self._fail("unexpected ceremony type")
        if not hmac.compare_digest(client.challenge.encode(), expected_challenge.encode()):
            raise self._fail("challenge mismatch")
        if client.origin not in self.allowed_origins:
            logger.warning("webauthn_origin_rejected", origin=client.origin)
            raise self._fail("origin not allowed")
        return client

    def _check_authenticator_data(self, raw: bytes):
        try:
            auth_data = parse_authenticator_data(raw)
        except WebAuthnFormatError as exc:
            raise self._fail(str(exc))
        if not hmac.compare_digest(auth_data.rp_id_hash, self._rp_id_hash):
            raise self._fail("relying party mismatch")
        if not auth_data.user_present:
            raise self._fail("user presence required")
        return auth_data

    @staticmethod
    def _decode(value: str, field: str) -> bytes:
        try:
            return b64url_decode(value)
        except WebAuthnFormatError:
            raise ValidationError("Malformed WebAuthn payload", detail={"field": field})

    # registration
    async def registration_options(self, user_id: str) -> Dict[str, Any]:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        challenge = await self._issue_challenge(user_id, "registration")
        display = f"{user.first_name or ''} {user.last_name or ''}".strip() or user.email
        return {
            "challenge": challenge,
            "rp": {"id": self.rp_id, "name": self.rp_name},
            "user": {
                "id": b64url_encode(user.id.encode("utf-8")),
                "name": user.email,
                "displayName": display,
            },
            "pubKeyCredParams": [
                {"type": "public-key", "alg": alg} for alg in SUPPORTED_ALGORITHMS
            ],
            "timeout": self.challenge_ttl_seconds * 1000,
            "attestation": "none",
            "excludeCredentials": [
                {"id": pk.credential_id, "type": "public-key", "transports": pk.transports}
                for pk in self.store.list_passkeys(user_id)
            ],
            "authenticatorSelection": {
                "residentKey": "preferred",
                "userVerification": "preferred",
            },
        }

    async def verify_registration(
        self,
        user_id: str,
        *,
        credential_id: str,
        client_data_json: str,
        authenticator_data: str,
        public_key: str,
        public_key_algorithm: int,
        transports: Optional[List[str]] = None,
        name: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> PasskeyCredential:
        expected = await self._take_challenge(user_id, "registration")

        client_raw = self._decode(client_data_json, "client_data_json")
        auth_raw = self._decode(authenticator_data, "authenticator_data")
        key_raw = self._decode(public_key, "public_key")
        cred_raw = self._decode(credential_id, "credential_id")

        self._check_client_data(client_raw, "webauthn.create", expected)
        auth_data = self._check_authenticator_data(auth_raw)
        if not auth_data.has_attested_data or auth_data.credential_id is None:
            raise self._fail("attested credential data missing")
        if not hmac.compare_digest(auth_data.credential_id, cred_raw):
            raise self._fail("credential id mismatch")
        try:
            load_public_key(key_raw, public_key_algorithm)
        except WebAuthnFormatError as exc:
            raise self._fail(str(exc))

        now = self._clock()
        credential = PasskeyCredential(
            id=new_id(),
            user_id=user_id,
            credential_id=b64url_encode(cred_raw),
            public_key=key_raw,
            algorithm=public_key_algorithm,
            counter=auth_data.sign_count,
            transports=[t for t in (transports or []) if t in _VALID_TRANSPORTS],
            device_type="multiDevice" if auth_data.backup_eligible else "singleDevice",
            backed_up=auth_data.backed_up,
            name=(name or "").strip()[:100] or f"Passkey {now.date().isoformat()}",
            aaguid=format_aaguid(auth_data.aaguid),
            created_at=now,
            last_used_at=now,
        )
        try:
            credential = self.store.create_passkey(credential)
        except ConstraintViolation as exc:
            raise ConflictError("This passkey is already registered", detail=exc.detail)
        self.store.set_webauthn_enabled(user_id, True)
        self.audit.record(
            "passkey_register",
            actor_id=user_id,
            resource_type="passkey",
            resource_id=credential.id,
            details={
                "device_type": credential.device_type,
                "backed_up": credential.backed_up,
                "name": credential.name,
            },
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return credential

    # authentication
    async def authentication_options(self, email: Optional[str] = None) -> Dict[str, Any]:
        ceremony_id = secrets.token_urlsafe(32)
        challenge = await self._issue_challenge(ceremony_id, "authentication")
        allow: List[Dict[str, Any]] = []
        if email:
            user = self.store.get_user_by_email(email.strip().lower())
            if user:
                allow = [
                    {"id": pk.credential_id, "type": "public-key", "transports": pk.transports}
                    for pk in self.store.list_passkeys(user.id)
                ]
        options: Dict[str, Any] = {
            "ceremony_id": ceremony_id,
            "challenge": challenge,
            "rpId": self.rp_id,
            "timeout": self.challenge_ttl_seconds * 1000,
            "userVerification": "preferred",
        }
        if allow:
            options["allowCredentials"] = allow
        return options

    async def verify_authentication(
        self,
        ceremony_id: str,
        *,
        credential_id: str,
        client_data_json: str,
        authenticator_data: str,
        signature: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        expected = await self._take_challenge(ceremony_id, "authentication")

        cred_raw = self._decode(credential_id, "credential_id")
        passkey = self.store.get_passkey_by_credential_id(b64url_encode(cred_raw))
        if not passkey:
            raise AuthenticationError(
                "Passkey not recognised", error_code="credential_not_found"
            )
        client_raw = self._decode(client_data_json, "client_data_json")
        auth_raw = self._decode(authenticator_data, "authenticator_data")
        sig_raw = self._decode(signature, "signature")

        self._check_client_data(client_raw, "webauthn.get", expected)
        auth_data = self._check_authenticator_data(auth_raw)

        signed = auth_raw + hashlib.sha256(client_raw).digest()
        if not self.verifier.verify(passkey.public_key, passkey.algorithm, sig_raw, signed):
            self.audit.record(
                "login_failed",
                actor_id=passkey.user_id,
                resource_type="passkey",
                resource_id=passkey.id,
                details={"reason": "bad_signature"},
                ip_address=ip_address,
                user_agent=user_agent,
                status="failure",
            )
            raise self._fail("signature invalid")

        if not counter_advances(passkey.counter, auth_data.sign_count) or not (
            self.store.update_passkey_counter(
                passkey.credential_id, passkey.counter, auth_data.sign_count, self._clock()
            )
        ):
            logger.warning(
                "webauthn_counter_regression",
                passkey_id=passkey.id,
                stored=passkey.counter,
                reported=auth_data.sign_count,
            )
            self.audit.record(
                "login_failed",
                actor_id=passkey.user_id,
                resource_type="passkey",
                resource_id=passkey.id,
                details={"reason": "possible_clone"},
                ip_address=ip_address,
                user_agent=user_agent,
                status="failure",
            )
            raise ForbiddenError(
                "This passkey may have been cloned and was rejected",
                error_code="possible_clone",
            )

        user = self.store.get_user(passkey.user_id)
        if not user or not user.is_active:
            raise ForbiddenError("This account is disabled", error_code="account_disabled")

        session = self.auth.issue_session(
            user,
            auth_method="passkey",
            mfa_verified=auth_data.user_verified,
            user_agent=user_agent,
            ip_addr=ip_address,
        )
        self.audit.record(
            "login",
            actor_id=user.id,
            resource_type="passkey",
            resource_id=passkey.id,
            details={"method": "passkey"},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return {"user_id": user.id, "email": user.email, **session}

    # credential management
    def list_credentials(self, user_id: str) -> List[PasskeyCredential]:
        return self.store.list_passkeys(user_id)

    def rename_credential(self, user_id: str, passkey_id: str, name: str) -> PasskeyCredential:
        cleaned = (name or "").strip()
        if not cleaned or len(cleaned) > 100:
            raise ValidationError("Name must be 1-100 characters", detail={"field": "name"})
        updated = self.store.rename_passkey(user_id, passkey_id, cleaned)
        if not updated:
            raise NotFoundError("Passkey not found", detail={"passkey_id": passkey_id})
        self.audit.record(
            "passkey_rename",
            actor_id=user_id,
            resource_type="passkey",
            resource_id=passkey_id,
        )
        return updated

    def delete_credential(self, user_id: str, passkey_id: str) -> None:
        if not self.store.delete_passkey(user_id, passkey_id):
            raise NotFoundError("Passkey not found", detail={"passkey_id": passkey_id})
        if self.store.count_passkeys(user_id) == 0:
            self.store.set_webauthn_enabled(user_id, False)
        self.audit.record(
            "passkey_remove",
            actor_id=user_id,
            resource_type="passkey",
            resource_id=passkey_id,
        )
