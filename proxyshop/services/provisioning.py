"""Upstream proxy provider client.

The provider answers ``GET /gen`` with plain text, one ``ip:port[:user[:pass]]``
record per line. Parsing is expressed as a tagged result
(``ParsedOk | ParsedEmpty | UpstreamFailure``) and only ``generate`` turns the
non-ok variants into exceptions.
"""

import time
from dataclasses import dataclass, field

import httpx
from pydantic import BaseModel

from proxyshop.core.catalog import ProxyCatalog
from proxyshop.core.exceptions import UpstreamEmptyResponse, UpstreamError, ValidationError
from proxyshop.core.logging import get_logger

log = get_logger(__name__)

USER_AGENT = "ProxyShop/1.0"


class RawProxy(BaseModel):
    ip: str
    port: int
    username: str
    password: str
    country: str
    session_type: str
    proxy_type: str
    protocol: str
    traffic_left: int


@dataclass(frozen=True)
class ParsedOk:
    proxies: list[RawProxy]
    dropped: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ParsedEmpty:
    dropped: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class UpstreamFailure:
    reason: str
    status: int | None = None


ParseResult = ParsedOk | ParsedEmpty | UpstreamFailure


def _parse_line(line: str) -> tuple[str, int, str | None, str | None] | None:
    parts = [p.strip() for p in line.split(":")]
    if len(parts) < 2 or not parts[0] or not parts[1]:
        return None
    try:
        port = int(parts[1])
    except ValueError:
        return None
    if not 0 < port < 65536:
        return None
    username = parts[2] if len(parts) > 2 and parts[2] else None
    password = parts[3] if len(parts) > 3 and parts[3] else None
    return parts[0], port, username, password


def parse_response(
    body: str | None,
    *,
    region: str,
    session_type: str,
    proxy_type: str,
    protocol: str = "http",
    traffic_left: int = 0,
    now_ms: int | None = None,
) -> ParseResult:
    """Turn the provider's text body into proxy records.

    Blank lines and lines without a colon are skipped silently; lines that have a
    colon but no usable ip/port are dropped with a warning. Missing credentials are
    filled from ``now_ms`` and the line index so every record has concrete ones.
    """
    if body is None or not isinstance(body, str):
        return UpstreamFailure("Invalid proxy response format")
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    lines = [ln for ln in body.replace("\r\n", "\n").split("\n") if ln.strip() and ":" in ln]

    proxies: list[RawProxy] = []
    dropped: list[str] = []
    for index, line in enumerate(lines):
        parsed = _parse_line(line)
        if parsed is None:
            log.warning("provisioning_line_dropped", line=line[:100])
            dropped.append(line)
            continue
        ip, port, username, password = parsed
        proxies.append(
            RawProxy(
                ip=ip,
                port=port,
                username=username or f"user_{stamp}_{index}",
                password=password or f"pass_{stamp}_{index}",
                country=region,
                session_type=session_type,
                proxy_type=proxy_type,
                protocol=protocol,
                traffic_left=traffic_left,
            )
        )
    if not proxies:
        return ParsedEmpty(dropped=dropped)
    return ParsedOk(proxies=proxies, dropped=dropped)


class ProvisioningClient:
    def __init__(
        self,
        catalog: ProxyCatalog,
        base_url: str,
        timeout_seconds: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.catalog = catalog
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client

    def validate_region(self, region: str) -> str:
        normalized = (region or "").upper()
        if normalized not in self.catalog.regions:
            raise ValidationError(
                f"Unsupported region: {region}. Supported: {', '.join(self.catalog.regions)}",
                details={"supported": list(self.catalog.regions)},
            )
        return normalized

    def validate_proxy_type(self, proxy_type: str) -> str:
        normalized = (proxy_type or "").lower()
        if normalized not in self.catalog.proxy_types:
            raise ValidationError(
                f"Unsupported proxy type: {proxy_type}. Supported: {', '.join(self.catalog.proxy_types)}",
                details={"supported": list(self.catalog.proxy_types)},
            )
        return normalized

    def validate_protocol(self, protocol: str) -> str:
        normalized = (protocol or "").lower()
        if normalized not in self.catalog.protocols:
            raise ValidationError(
                f"Unsupported protocol: {protocol}",
                details={"supported": list(self.catalog.protocols)},
            )
        return normalized

    def build_params(self, region: str, count: int, session_type: str, protocol: str, proxy_type: str) -> dict:
        provider = self.catalog.proxy_types[proxy_type].provider
        return {
            "zone": provider.zone,
            "ptype": provider.ptype,
            "region": region,
            "count": max(1, min(count, self.catalog.max_per_call)),
            "proto": protocol,
            "stype": "text",
            "split": "\r\n",
            "sessType": session_type.lower(),
        }

    async def _fetch(self, params: dict) -> httpx.Response:
        url = f"{self.base_url}/gen"
        headers = {"User-Agent": USER_AGENT}
        if self._http_client is not None:
            return await self._http_client.get(url, params=params, headers=headers, timeout=self.timeout_seconds)
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await client.get(url, params=params, headers=headers)

    async def generate(
        self,
        region: str,
        count: int,
        session_type: str = "rotating",
        protocol: str = "http",
        proxy_type: str = "residential",
    ) -> list[RawProxy]:
        """Request ``count`` proxies (clamped to the per-call maximum) from the provider."""
        region = self.validate_region(region)
        proxy_type = self.validate_proxy_type(proxy_type)
        protocol = self.validate_protocol(protocol)
        params = self.build_params(region, count, session_type, protocol, proxy_type)

        log.info("provisioning_request", region=region, proxy_type=proxy_type, count=params["count"])
        try:
            response = await self._fetch(params)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise UpstreamError(
                f"{proxy_type} proxy generation failed: upstream timed out after {self.timeout_seconds}s",
                upstream_message=str(e) or "timeout",
            ) from e
        except httpx.HTTPStatusError as e:
            body = e.response.text[:500]
            raise UpstreamError(
                f"{proxy_type} proxy generation failed: {body or e.response.reason_phrase}",
                upstream_status=e.response.status_code,
                upstream_message=body,
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamError(
                f"{proxy_type} proxy generation failed: {e}",
                upstream_message=str(e),
            ) from e

        result = parse_response(
            response.text,
            region=region,
            session_type=session_type,
            proxy_type=proxy_type,
            protocol=protocol,
            traffic_left=self.catalog.default_traffic_bytes,
        )
        if isinstance(result, ParsedOk):
            if result.dropped:
                log.warning("provisioning_partial_parse", kept=len(result.proxies), dropped=len(result.dropped))
            return result.proxies
        if isinstance(result, ParsedEmpty):
            raise UpstreamEmptyResponse(
                "No valid proxies received from API",
                upstream_status=response.status_code,
                upstream_message=f"{len(result.dropped)} malformed line(s)",
            )
        raise UpstreamError(result.reason, upstream_status=result.status or response.status_code)
