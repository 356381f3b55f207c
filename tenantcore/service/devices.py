from __future__ import annotations

import hashlib
import ipaddress
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from tenantcore.logging import get_logger
from tenantcore.service.audit import AuditSink
from tenantcore.service.errors import NotFoundError
from tenantcore.storage.models import TrustedDevice, utcnow

logger = get_logger(__name__)


@dataclass
class ParsedDevice:
    browser: str = "Unknown"
    browser_version: str = ""
    os: str = "Unknown"
    os_version: str = ""
    device_type: str = "unknown"
    device_name: str = "Unknown Device"


def _match(pattern: str, value: str) -> str:
    found = re.search(pattern, value)
    return found.group(1) if found else ""


def parse_user_agent(user_agent: Optional[str]) -> ParsedDevice:
    """Best-effort browser and OS family detection from a User-Agent header."""
    if not user_agent:
        return ParsedDevice()

    ua = user_agent
    browser, browser_version = "Unknown", ""
    if "Firefox/" in ua:
        browser, browser_version = "Firefox", _match(r"Firefox/([\d.]+)", ua)
    elif "Edg/" in ua:
        browser, browser_version = "Edge", _match(r"Edg/([\d.]+)", ua)
    elif "OPR/" in ua or "Opera" in ua:
        browser, browser_version = "Opera", _match(r"(?:Opera|OPR)/([\d.]+)", ua)
    elif "Chrome/" in ua and "Chromium" not in ua:
        browser, browser_version = "Chrome", _match(r"Chrome/([\d.]+)", ua)
    elif "Safari/" in ua and "Chrome" not in ua:
        browser, browser_version = "Safari", _match(r"Version/([\d.]+)", ua)

    # Mobile platforms first: their UAs also mention Linux or Mac OS X
    os_name, os_version, device_type = "Unknown", "", "desktop"
    if "iPhone" in ua or "iPad" in ua:
        os_name = "iOS"
        os_version = _match(r"OS ([\d_]+)", ua).replace("_", ".")
        device_type = "tablet" if "iPad" in ua else "mobile"
    elif "Android" in ua:
        os_name = "Android"
        os_version = _match(r"Android ([\d.]+)", ua)
        device_type = "mobile" if "Mobile" in ua else "tablet"
    elif "Windows NT 10" in ua:
        os_name, os_version = "Windows", "10/11"
    elif "Windows NT 6.3" in ua:
        os_name, os_version = "Windows", "8.1"
    elif "Windows NT 6.1" in ua:
        os_name, os_version = "Windows", "7"
    elif "CrOS" in ua:
        os_name = "Chrome OS"
    elif "Mac OS X" in ua:
        os_name = "macOS"
        os_version = _match(r"Mac OS X ([\d_]+)", ua).replace("_", ".")
    elif "Linux" in ua:
        os_name = "Linux"

    device_name = f"{browser} on {os_name}{' ' + os_version if os_version else ''}"
    return ParsedDevice(
        browser=browser,
        browser_version=browser_version,
        os=os_name,
        os_version=os_version,
        device_type=device_type,
        device_name=device_name,
    )


def ip_network(ip_address: Optional[str]) -> str:
    """Coarse network identifier: /16 for IPv4, first three groups for IPv6."""
    if not ip_address:
        return "unknown"
    try:
        addr = ipaddress.ip_address(ip_address.strip())
    except ValueError:
        return "unknown"
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped:
        addr = addr.ipv4_mapped
    if addr.version == 4:
        return ".".join(str(addr).split(".")[:2])
    return ":".join(addr.exploded.split(":")[:3])


def create_device_hash(
    user_agent: Optional[str],
    accept_language: Optional[str],
    ip_address: Optional[str],
) -> str:
    """Stable fingerprint. A network change requires re-trusting the device."""
    parsed = parse_user_agent(user_agent)
    language = (accept_language or "").split(",")[0].strip() or "unknown"
    components = [
        parsed.browser,
        parsed.os,
        parsed.device_type,
        language,
        ip_network(ip_address),
    ]
    return hashlib.sha256("|".join(components).encode("utf-8")).hexdigest()


class TrustedDeviceService:
    def __init__(
        self,
        store,
        audit: AuditSink,
        *,
        trust_days: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.audit = audit
        self.trust_days = trust_days
        self._clock = clock

    def trust_device(
        self,
        user_id: str,
        *,
        user_agent: Optional[str] = None,
        accept_language: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> TrustedDevice:
        """Trust the caller's device for ``trust_days``, replacing any prior trust."""
        device_hash = create_device_hash(user_agent, accept_language, ip_address)
        parsed = parse_user_agent(user_agent)
        trusted_until = self._clock() + timedelta(days=self.trust_days)
        device = self.store.upsert_trusted_device(
            user_id,
            device_hash,
            trusted_until,
            device_name=parsed.device_name,
            browser=parsed.browser,
            os=parsed.os,
            ip_address=ip_address,
        )
        self.audit.record(
            "device_trust",
            actor_id=user_id,
            resource_type="trusted_device",
            resource_id=device.id,
            details={
                "device_name": parsed.device_name,
                "trusted_until": trusted_until.isoformat(),
            },
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return device

    def is_device_trusted(
        self,
        user_id: str,
        *,
        user_agent: Optional[str] = None,
        accept_language: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> bool:
        device_hash = create_device_hash(user_agent, accept_language, ip_address)
        device = self.store.get_trusted_device(user_id, device_hash)
        return bool(device and device.trusted_until > self._clock())

    def list_devices(self, user_id: str) -> List[TrustedDevice]:
        return self.store.list_trusted_devices(user_id, self._clock())

    def untrust_device(
        self,
        user_id: str,
        device_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        if not self.store.delete_trusted_device(user_id, device_id):
            raise NotFoundError("Trusted device not found", detail={"device_id": device_id})
        self.audit.record(
            "device_untrust",
            actor_id=user_id,
            resource_type="trusted_device",
            resource_id=device_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def untrust_all(
        self,
        user_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        count = self.store.delete_user_trusted_devices(user_id)
        if count:
            self.audit.record(
                "devices_untrust_all",
                actor_id=user_id,
                resource_type="trusted_device",
                details={"count": count},
                ip_address=ip_address,
                user_agent=user_agent,
            )
        return count

    def cleanup_expired(self) -> int:
        removed = self.store.delete_expired_trusted_devices(self._clock())
        if removed:
            logger.info("trusted_devices_cleaned", count=removed)
        return removed
