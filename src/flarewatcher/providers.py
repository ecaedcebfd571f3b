"""External collaborators: public IP lookup and the DNS provider API."""

from __future__ import annotations

import ipaddress
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import requests

from flarewatcher.errors import (
    IpResolutionFailed,
    PropagationCheckFailed,
    ProviderError,
    RecordNotFound,
)
from flarewatcher.models import DnsRecord, WriteResult, Zone

logger = logging.getLogger(__name__)

DEFAULT_IP_LOOKUP_URL = "https://api.ipify.org?format=json"
DEFAULT_CLOUDFLARE_API_URL = "https://api.cloudflare.com/client/v4"
DEFAULT_DOH_URL = "https://cloudflare-dns.com/dns-query"

# Cloudflare error codes meaning "no such record".
_RECORD_NOT_FOUND_CODES = {81044, 1032}


# =============================================================================
# Public IP Resolver
# =============================================================================


class PublicIpResolver(ABC):
    """Abstract base class for public IP lookups."""

    @abstractmethod
    def resolve(self) -> str:
        """Return the caller's public IP. Raises IpResolutionFailed."""
        pass


class IpifyResolver(PublicIpResolver):
    """Resolver for ipify-style services answering ``{"ip": "..."}``."""

    def __init__(self, url: str = DEFAULT_IP_LOOKUP_URL, timeout_seconds: float = 10.0):
        self._url = url
        self._timeout = timeout_seconds
        self._session = requests.Session()

    def resolve(self) -> str:
        try:
            response = self._session.get(self._url, timeout=self._timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, json.JSONDecodeError, ValueError) as e:
            logger.debug(f"Public IP lookup against {self._url} failed: {e}")
            raise IpResolutionFailed("Unable to detect public IP.") from e

        ip = data.get("ip") if isinstance(data, dict) else None
        if not isinstance(ip, str) or not ip.strip():
            raise IpResolutionFailed("Unable to detect public IP.")
        try:
            return str(ipaddress.ip_address(ip.strip()))
        except ValueError as e:
            raise IpResolutionFailed(f"Public IP service returned an invalid address: {ip}") from e


# =============================================================================
# DNS Record Gateway Interface and Implementations
# =============================================================================


class DnsRecordGateway(ABC):
    """Abstract base class for DNS providers holding monitored records."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def list_zones(self, credential: str) -> List[Zone]:
        """List the zones visible to ``credential``."""
        pass

    @abstractmethod
    def list_records(self, zone_id: str, credential: str) -> List[DnsRecord]:
        """List every record in a zone."""
        pass

    @abstractmethod
    def read_record(self, zone_id: str, record_id: str, credential: str) -> DnsRecord:
        """Fetch one record. Raises RecordNotFound or ProviderError."""
        pass

    @abstractmethod
    def write_record(
        self,
        zone_id: str,
        record_id: str,
        credential: str,
        *,
        name: str,
        type: str,
        content: str,
        ttl: int,
        proxied: bool,
        comment: Optional[str] = None,
    ) -> WriteResult:
        """Overwrite a record. Failures are reported in the result, not raised."""
        pass

    def check_propagation(self, name: str, content: str, record_type: str = "A") -> bool:
        """Return True when a public resolver already answers ``content``."""
        raise PropagationCheckFailed(f"{self.name} does not support propagation checks")


class CloudflareGateway(DnsRecordGateway):
    """Cloudflare v4 REST API, with DNS-over-HTTPS propagation checks."""

    def __init__(
        self,
        api_url: str = DEFAULT_CLOUDFLARE_API_URL,
        doh_url: str = DEFAULT_DOH_URL,
        timeout_seconds: float = 10.0,
    ):
        self._api_url = api_url.rstrip("/")
        self._doh_url = doh_url
        self._timeout = timeout_seconds
        self._session = requests.Session()

    @property
    def name(self) -> str:
        return "Cloudflare"

    def _headers(self, credential: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {credential}"}

    def _get(self, path: str, credential: str, params: Optional[Dict[str, Any]] = None):
        try:
            response = self._session.get(
                f"{self._api_url}{path}",
                headers=self._headers(credential),
                params=params,
                timeout=self._timeout,
            )
            data = response.json()
        except (requests.exceptions.RequestException, json.JSONDecodeError, ValueError) as e:
            raise ProviderError(f"{self.name} request failed: {e}") from e
        if not isinstance(data, dict):
            raise ProviderError(f"Unexpected response format from {self.name}")
        return response, data

    def _paged(self, path: str, credential: str, per_page: int, fallback: str) -> List[Dict]:
        items: List[Dict] = []
        page = 1
        while True:
            _, data = self._get(path, credential, params={"per_page": per_page, "page": page})
            if not data.get("success"):
                raise ProviderError(_first_error(data) or fallback)
            result = data.get("result") or []
            items.extend(item for item in result if isinstance(item, dict))
            total_pages = (data.get("result_info") or {}).get("total_pages") or 1
            if page >= total_pages:
                return items
            page += 1

    def list_zones(self, credential: str) -> List[Zone]:
        raw = self._paged("/zones", credential, 50, "Failed to fetch zones.")
        return [
            Zone(id=str(z["id"]), name=str(z.get("name") or ""), status=str(z.get("status") or ""))
            for z in raw
            if z.get("id")
        ]

    def list_records(self, zone_id: str, credential: str) -> List[DnsRecord]:
        raw = self._paged(f"/zones/{zone_id}/dns_records", credential, 100, "Failed to fetch records.")
        records = []
        for item in raw:
            try:
                records.append(_record_from_api(zone_id, item))
            except (KeyError, TypeError, ValueError):
                logger.warning(f"Skipping malformed record in zone {zone_id}: {item}")
        return records

    def read_record(self, zone_id: str, record_id: str, credential: str) -> DnsRecord:
        response, data = self._get(f"/zones/{zone_id}/dns_records/{record_id}", credential)
        if not data.get("success") or not isinstance(data.get("result"), dict):
            message = _first_error(data) or "Unable to load record details."
            codes = {e.get("code") for e in data.get("errors") or [] if isinstance(e, dict)}
            if response.status_code == 404 or codes & _RECORD_NOT_FOUND_CODES:
                raise RecordNotFound(message)
            raise ProviderError(message)
        try:
            return _record_from_api(zone_id, data["result"], record_id=record_id)
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderError(f"Malformed record returned by {self.name}: {e}") from e

    def write_record(
        self,
        zone_id: str,
        record_id: str,
        credential: str,
        *,
        name: str,
        type: str,
        content: str,
        ttl: int,
        proxied: bool,
        comment: Optional[str] = None,
    ) -> WriteResult:
        payload: Dict[str, Any] = {
            "name": name,
            "type": type.upper(),
            "content": content,
            "ttl": ttl,
            "proxied": proxied,
        }
        if comment and comment.strip():
            payload["comment"] = comment.strip()

        try:
            response = self._session.put(
                f"{self._api_url}/zones/{zone_id}/dns_records/{record_id}",
                headers=self._headers(credential),
                json=payload,
                timeout=self._timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to write record {name}: {e}")
            return WriteResult(success=False, message=str(e), response={"error": str(e)})

        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError):
            return WriteResult(
                success=False,
                message=f"Invalid response from {self.name} (HTTP {response.status_code}).",
                response={"status": response.status_code},
            )
        if not isinstance(data, dict):
            data = {"result": data}

        if data.get("success"):
            logger.info(f"Wrote DNS record: {name} -> {content}")
            return WriteResult(success=True, message="DNS record updated.", response=data)
        message = _first_error(data) or f"{self.name} rejected the update."
        logger.error(f"{self.name} rejected write for {name}: {message}")
        return WriteResult(success=False, message=message, response=data)

    def check_propagation(self, name: str, content: str, record_type: str = "A") -> bool:
        try:
            response = self._session.get(
                self._doh_url,
                params={"name": name, "type": record_type.upper()},
                headers={"Accept": "application/dns-json"},
                timeout=self._timeout,
            )
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, json.JSONDecodeError, ValueError) as e:
            raise PropagationCheckFailed(str(e)) from e
        answers = [
            entry.get("data")
            for entry in (data.get("Answer") or [] if isinstance(data, dict) else [])
            if isinstance(entry, dict) and entry.get("data")
        ]
        return content in answers


# =============================================================================
# Helpers
# =============================================================================


def _first_error(data: Dict[str, Any]) -> str:
    errors = data.get("errors") or []
    if errors and isinstance(errors[0], dict):
        return str(errors[0].get("message") or "")
    return ""


def _record_from_api(zone_id: str, item: Dict[str, Any], record_id: str = "") -> DnsRecord:
    return DnsRecord(
        id=str(item.get("id") or record_id),
        zone_id=zone_id,
        name=str(item["name"]),
        type=str(item["type"]).upper(),
        content=str(item["content"]),
        ttl=int(item.get("ttl") or 1),
        proxied=bool(item.get("proxied", False)),
        comment=item.get("comment") or None,
    )
