from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from tenantcore.config import Settings
from tenantcore.logging import get_logger
from tenantcore.storage.models import Session, User, utcnow

logger = get_logger(__name__)


@dataclass
class AuthContext:
    user_id: str
    email: str
    session_id: str
    tenant_id: Optional[str] = None
    mfa_verified: bool = False
    auth_method: str = "magic_link"


class AuthService:
    """Session and HS256 JWT handling.

    Sessions are rows in the relational store; access tokens are JWTs bound
    to a session id, so revoking the session invalidates every token minted
    for it.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock
        self.logger = logger
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=120)

    def issue_session(
        self,
        user: User,
        *,
        auth_method: str,
        tenant_id: Optional[str] = None,
        mfa_verified: bool = False,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Dict[str, Any]:
        session = self.store.create_session(
            user.id,
            self.settings.session_ttl_minutes,
            user_agent,
            ip_addr,
            tenant_id=tenant_id,
            mfa_verified=mfa_verified,
            auth_method=auth_method,
        )
        tokens = self._issue_tokens(user, session)
        self.logger.info(
            "session_issued", user_id=user.id, session_id=session.id, auth_method=auth_method
        )
        return {"session_id": session.id, **tokens}

    async def revoke(self, session_id: str) -> None:
        self.store.revoke_session(session_id)

    async def revoke_all_user_sessions(self, user_id: str) -> None:
        self.store.revoke_user_sessions(user_id)

    def resolve_session(self, session_id: Optional[str]) -> Optional[AuthContext]:
        if not session_id:
            return None
        sess = self.store.get_session(session_id)
        if not sess:
            return None
        if sess.expires_at <= self._clock() - self._clock_skew_leeway:
            return None
        user = self.store.get_user(sess.user_id)
        if not user or not user.is_active:
            return None
        return AuthContext(
            user_id=user.id,
            email=user.email,
            session_id=sess.id,
            tenant_id=sess.tenant_id,
            mfa_verified=sess.mfa_verified,
            auth_method=sess.auth_method,
        )

    async def authenticate(
        self,
        authorization: Optional[str],
        session_id: Optional[str],
    ) -> Optional[AuthContext]:
        token = self._extract_bearer(authorization)
        if token:
            payload = self._decode_jwt(token)
            if payload and payload.get("token_type") == "access":
                ctx = self.resolve_session(payload.get("sid"))
                if ctx and ctx.user_id == payload.get("sub"):
                    return ctx
        return self.resolve_session(session_id)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _encode_jwt(self, payload: Dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return f"{signing_input}.{self._encode_segment(signature)}"

    def _decode_jwt(self, token: str) -> Optional[Dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    def _issue_tokens(self, user: User, session: Session) -> Dict[str, str]:
        access_exp = int(
            (
                self._clock() + timedelta(minutes=self.settings.access_token_ttl_minutes)
            ).timestamp()
        )
        access_payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "sid": session.id,
            "tenant_id": session.tenant_id,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "exp": access_exp,
        }
        return {
            "access_token": self._encode_jwt(access_payload),
            "token_type": "bearer",
            "expires_at": datetime.fromtimestamp(access_exp, tz=timezone.utc).isoformat(),
        }

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip()
