from __future__ import annotations

import re
import secrets
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol

import httpx

from tenantcore.logging import get_logger
from tenantcore.service.audit import AuditSink
from tenantcore.service.errors import ConflictError, NotFoundError, UpstreamError, ValidationError
from tenantcore.storage.models import Tenant, utcnow

logger = get_logger(__name__)

TXT_PREFIX = "tenantcore-verify="
_DOMAIN_RE = re.compile(
    r"^(?=.{1,253}$)(?!-)[a-z0-9-]{1,63}(?<!-)(\.(?!-)[a-z0-9-]{1,63}(?<!-))+$"
)
_DNS_TXT = 16


def normalize_domain(domain: str) -> str:
    value = (domain or "").strip().lower().rstrip(".")
    if value.startswith("http://") or value.startswith("https://"):
        value = value.split("://", 1)[1]
    value = value.split("/", 1)[0]
    if value.startswith("www."):
        value = value[4:]
    if not _DOMAIN_RE.match(value) or "." not in value:
        raise ValidationError("Invalid domain name", detail={"field": "domain"})
    return value


class TxtRecordChecker(Protocol):
    async def txt_records(self, name: str) -> List[str]: ...


class ManualOnlyChecker:
    """No DNS lookups; domains are only verified through a manual override."""

    async def txt_records(self, name: str) -> List[str]:
        return []


class DnsOverHttpsChecker:
    """Resolve TXT records through a DNS-over-HTTPS JSON endpoint."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def txt_records(self, name: str) -> List[str]:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport, follow_redirects=False
            ) as client:
                response = await client.get(
                    self.url,
                    params={"name": name, "type": "TXT"},
                    headers={"Accept": "application/dns-json"},
                )
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("domain_txt_lookup_failed", domain=name, error=str(exc))
            raise UpstreamError("DNS lookup failed, please retry") from exc

        records = []
        for answer in payload.get("Answer") or []:
            if answer.get("type") != _DNS_TXT:
                continue
            # TXT data arrives quoted and may be split into several strings
            data = str(answer.get("data", ""))
            records.append("".join(re.findall(r'"([^"]*)"', data)) or data.strip('"'))
        return records


class DomainVerificationService:
    def __init__(
        self,
        store,
        audit: AuditSink,
        checker: Optional[TxtRecordChecker] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.audit = audit
        self.checker: TxtRecordChecker = checker or ManualOnlyChecker()
        self._clock = clock

    def _tenant(self, tenant_id: str) -> Tenant:
        tenant = self.store.get_tenant(tenant_id)
        if not tenant:
            raise NotFoundError("Tenant not found", detail={"tenant_id": tenant_id})
        return tenant

    @staticmethod
    def instructions(tenant: Tenant) -> Dict[str, Optional[str]]:
        return {
            "domain": tenant.domain,
            "record_type": "TXT",
            "record_name": tenant.domain,
            "record_value": (
                f"{TXT_PREFIX}{tenant.domain_verification_token}"
                if tenant.domain_verification_token
                else None
            ),
        }

    def start_domain_verification(
        self, tenant_id: str, domain: str, *, actor_id: Optional[str] = None
    ) -> Dict[str, Optional[str]]:
        self._tenant(tenant_id)
        normalized = normalize_domain(domain)
        tenant = self.store.update_tenant(
            tenant_id,
            domain=normalized,
            domain_verified=False,
            domain_verification_token=secrets.token_hex(16),
            domain_verification_method=None,
            domain_verified_at=None,
        )
        self.audit.record(
            "domain_verification_start",
            actor_id=actor_id,
            tenant_id=tenant_id,
            resource_type="tenant",
            resource_id=tenant_id,
            details={"domain": normalized},
        )
        return self.instructions(tenant)

    async def check_domain_verification(
        self, tenant_id: str, *, actor_id: Optional[str] = None
    ) -> bool:
        tenant = self._tenant(tenant_id)
        if tenant.domain_verified:
            return True
        if not tenant.domain or not tenant.domain_verification_token:
            raise ConflictError("Domain verification has not been started")
        expected = f"{TXT_PREFIX}{tenant.domain_verification_token}"
        records = await self.checker.txt_records(tenant.domain)
        if expected not in (r.strip() for r in records):
            logger.info("domain_not_verified", tenant_id=tenant_id, domain=tenant.domain)
            return False
        self.store.update_tenant(
            tenant_id,
            domain_verified=True,
            domain_verification_method="dns_txt",
            domain_verified_at=self._clock(),
        )
        self.audit.record(
            "domain_verified",
            actor_id=actor_id,
            tenant_id=tenant_id,
            resource_type="tenant",
            resource_id=tenant_id,
            details={"domain": tenant.domain, "method": "dns_txt"},
        )
        return True

    def override_domain_verification(
        self, tenant_id: str, *, actor_id: str, reason: str
    ) -> Tenant:
        tenant = self._tenant(tenant_id)
        if not tenant.domain:
            raise ConflictError("Domain verification has not been started")
        if not (reason or "").strip():
            raise ValidationError("A reason is required", detail={"field": "reason"})
        updated = self.store.update_tenant(
            tenant_id,
            domain_verified=True,
            domain_verification_method="manual",
            domain_verified_at=self._clock(),
        )
        self.audit.record(
            "domain_verification_override",
            actor_id=actor_id,
            tenant_id=tenant_id,
            resource_type="tenant",
            resource_id=tenant_id,
            details={"domain": tenant.domain, "reason": reason.strip()},
        )
        logger.warning("domain_verification_overridden", tenant_id=tenant_id)
        return updated
