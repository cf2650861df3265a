"""
Intelligence providers for detection enrichment.

A provider answers ``lookup(entity_type, entity_id)`` with a
``ReputationResult``. "No data" is ``ReputationVerdict.UNKNOWN``; a provider
that could not answer returns ``ReputationVerdict.ERROR`` or raises
``EnrichmentTimeout``. Callers apply the provider's declared ``timeout``.
"""

import asyncio
import ipaddress
import time
from pathlib import Path
from typing import Any, Iterable, Mapping, Protocol, runtime_checkable

import httpx
import yaml
from pydantic import BaseModel, Field

from src.threat_engine.cache import BoundedLRU
from src.threat_engine.errors import ConfigError, EnrichmentTimeout
from src.threat_engine.schemas import ReputationResult, ReputationVerdict, entity_key
from src.shared.config import settings
from src.shared.logger import get_logger

logger = get_logger()

_VERDICT_RANK = {
    ReputationVerdict.ERROR: 0,
    ReputationVerdict.UNKNOWN: 1,
    ReputationVerdict.BENIGN: 2,
    ReputationVerdict.SUSPICIOUS: 3,
    ReputationVerdict.MALICIOUS: 4,
}


@runtime_checkable
class IntelligenceProvider(Protocol):
    """Reputation / allowlist / asset-criticality source."""

    name: str
    timeout: float

    async def lookup(self, entity_type: str, entity_id: str) -> ReputationResult:
        ...


class StaticIntelligenceProvider:
    """In-memory allowlist, reputation map and asset-criticality table.

    Keys are ``role:id`` entity keys or bare ids (matched for any role).
    Allowlist entries may also be CIDR networks, matched against IP entities.
    """

    def __init__(
        self,
        allowlist: Iterable[str] = (),
        reputation: Mapping[str, str | Mapping[str, Any]] | None = None,
        criticality: Mapping[str, float] | None = None,
        name: str = "static",
        timeout: float = 0.5,
    ):
        self.name = name
        self.timeout = timeout
        self._allowlist: set[str] = set()
        self._networks: list[ipaddress.IPv4Network | ipaddress.IPv6Network] = []
        for entry in allowlist:
            if "/" in entry:
                try:
                    self._networks.append(ipaddress.ip_network(entry, strict=False))
                    continue
                except ValueError:
                    pass
            self._allowlist.add(entry)

        self._reputation: dict[str, tuple[ReputationVerdict, float]] = {}
        for key, value in (reputation or {}).items():
            if isinstance(value, Mapping):
                verdict = ReputationVerdict(value.get("verdict", "suspicious"))
                score = float(value.get("score", _default_score(verdict)))
            else:
                verdict = ReputationVerdict(value)
                score = _default_score(verdict)
            self._reputation[key] = (verdict, score)

        self._criticality = {k: max(0.0, min(1.0, float(v))) for k, v in (criticality or {}).items()}

    @classmethod
    def from_file(cls, path: str | Path) -> "StaticIntelligenceProvider":
        """Load from YAML with ``allowlist``, ``reputation`` and ``criticality`` keys."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"cannot load intelligence file {path}: {e}") from e
        return cls(
            allowlist=data.get("allowlist") or (),
            reputation=data.get("reputation") or {},
            criticality=data.get("criticality") or {},
        )

    def _find(self, table: Mapping[str, Any], entity_type: str, entity_id: str) -> Any:
        key = entity_key(entity_type, entity_id)
        if key in table:
            return table[key]
        return table.get(entity_id)

    def _is_allowlisted(self, entity_type: str, entity_id: str) -> bool:
        if entity_key(entity_type, entity_id) in self._allowlist or entity_id in self._allowlist:
            return True
        if self._networks:
            try:
                address = ipaddress.ip_address(entity_id)
            except ValueError:
                return False
            return any(address in network for network in self._networks)
        return False

    async def lookup(self, entity_type: str, entity_id: str) -> ReputationResult:
        result = ReputationResult(entity_type=entity_type, entity_id=entity_id, provider=self.name)
        reputation = self._find(self._reputation, entity_type, entity_id)
        if reputation is not None:
            result.verdict, result.score = reputation
        result.allowlisted = self._is_allowlisted(entity_type, entity_id)
        if result.allowlisted and result.verdict == ReputationVerdict.UNKNOWN:
            result.verdict = ReputationVerdict.BENIGN
        result.criticality = self._find(self._criticality, entity_type, entity_id)
        return result


def _default_score(verdict: ReputationVerdict) -> float:
    return {
        ReputationVerdict.MALICIOUS: 0.9,
        ReputationVerdict.SUSPICIOUS: 0.5,
        ReputationVerdict.BENIGN: 0.0,
    }.get(verdict, 0.0)


class OTXIndicator(BaseModel):
    """The parts of an OTX ``/general`` response used for scoring."""

    indicator: str
    indicator_type: str
    pulse_count: int = Field(default=0, description="Number of pulses referencing this indicator")
    reputation: int | None = Field(default=None, description="OTX reputation score")
    malware_families: list[str] = Field(default_factory=list)
    country: str | None = None


class OTXIntelligenceProvider:
    """AlienVault OTX indicator lookups over httpx, with a small TTL cache."""

    # Entity role -> OTX indicator section
    ROLE_TYPES = {
        "ip": "IPv4",
        "src_ip": "IPv4",
        "dst_ip": "IPv4",
        "domain": "domain",
        "url": "url",
        "file_hash": "file",
        "hash": "file",
    }

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        malicious_pulses: int = 5,
        cache_size: int = 5_000,
        cache_ttl_seconds: float = 3_600.0,
        transport: httpx.AsyncBaseTransport | None = None,
        name: str = "otx",
    ):
        self.name = name
        self.api_key = api_key if api_key is not None else settings.otx_api_key
        self.base_url = (base_url or settings.otx_api_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.intel_timeout_seconds
        self.malicious_pulses = malicious_pulses
        self.cache_ttl_seconds = cache_ttl_seconds
        self._cache: BoundedLRU[str, tuple[float, ReputationResult]] = BoundedLRU(cache_size)
        self._transport = transport

    def _get_headers(self) -> dict[str, str]:
        """Get headers for OTX API requests."""
        headers = {
            "Accept": "application/json",
            "User-Agent": "Threatline/1.0",
        }
        if self.api_key:
            headers["X-OTX-API-KEY"] = self.api_key
        return headers

    def indicator_type(self, entity_type: str, entity_id: str) -> str | None:
        """OTX indicator section for an entity, or None when OTX cannot answer for it."""
        kind = self.ROLE_TYPES.get(entity_type)
        if kind == "IPv4":
            try:
                address = ipaddress.ip_address(entity_id)
            except ValueError:
                return None
            if address.is_private or address.is_loopback:
                return None
            return "IPv6" if address.version == 6 else "IPv4"
        if kind is None and entity_type == "host" and "." in entity_id:
            return "hostname"
        return kind

    async def lookup(self, entity_type: str, entity_id: str) -> ReputationResult:
        result = ReputationResult(entity_type=entity_type, entity_id=entity_id, provider=self.name)
        indicator_type = self.indicator_type(entity_type, entity_id)
        if not self.api_key or indicator_type is None:
            return result

        cache_key = f"{indicator_type}:{entity_id}"
        cached = self._cache.get(cache_key)
        if cached is not None and cached[0] > time.monotonic():
            return cached[1]

        url = f"{self.base_url}/indicators/{indicator_type}/{entity_id}/general"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(url, headers=self._get_headers())
        except httpx.TimeoutException as e:
            raise EnrichmentTimeout(self.name, entity_key(entity_type, entity_id), self.timeout) from e
        except httpx.HTTPError as e:
            logger.warning(f"OTX lookup for {entity_id} failed: {type(e).__name__}: {e}")
            result.verdict = ReputationVerdict.ERROR
            result.details = {"error": str(e)}
            return result

        if response.status_code == 404:
            # Not in the OTX database
            self._cache.put(cache_key, (time.monotonic() + self.cache_ttl_seconds, result))
            return result
        if response.status_code != 200:
            result.verdict = ReputationVerdict.ERROR
            result.details = {"error": f"OTX API error: HTTP {response.status_code}"}
            return result

        data = response.json()
        pulse_info = data.get("pulse_info", {}) or {}
        indicator = OTXIndicator(
            indicator=entity_id,
            indicator_type=indicator_type,
            pulse_count=pulse_info.get("count", 0) or 0,
            reputation=data.get("reputation"),
            malware_families=[
                f.get("display_name", "") if isinstance(f, dict) else str(f)
                for f in pulse_info.get("related", {}).get("alienvault", {}).get("malware_families", []) or []
            ],
            country=data.get("country_code"),
        )

        if indicator.pulse_count >= self.malicious_pulses:
            result.verdict = ReputationVerdict.MALICIOUS
        elif indicator.pulse_count > 0:
            result.verdict = ReputationVerdict.SUSPICIOUS
        else:
            result.verdict = ReputationVerdict.BENIGN
        result.score = min(1.0, indicator.pulse_count / (2 * self.malicious_pulses))
        result.details = indicator.model_dump()

        self._cache.put(cache_key, (time.monotonic() + self.cache_ttl_seconds, result))
        return result


class CompositeIntelligenceProvider:
    """Queries several providers concurrently and merges their answers.

    The merged verdict is the most severe one with data; ERROR only when every
    provider failed. A sub-provider timeout marks the result partial.
    """

    def __init__(self, providers: Iterable[IntelligenceProvider], name: str = "composite"):
        self.providers = list(providers)
        self.name = name
        self.timeout = max((p.timeout for p in self.providers), default=1.0)

    async def _bounded(self, provider: IntelligenceProvider, entity_type: str, entity_id: str) -> ReputationResult:
        try:
            return await asyncio.wait_for(provider.lookup(entity_type, entity_id), timeout=provider.timeout)
        except asyncio.TimeoutError as e:
            raise EnrichmentTimeout(provider.name, entity_key(entity_type, entity_id), provider.timeout) from e

    async def lookup(self, entity_type: str, entity_id: str) -> ReputationResult:
        answers = await asyncio.gather(
            *(self._bounded(p, entity_type, entity_id) for p in self.providers),
            return_exceptions=True,
        )

        merged = ReputationResult(entity_type=entity_type, entity_id=entity_id, provider=self.name)
        results: list[ReputationResult] = []
        timed_out: list[str] = []
        failed: list[str] = []
        for provider, answer in zip(self.providers, answers):
            if isinstance(answer, EnrichmentTimeout):
                timed_out.append(provider.name)
            elif isinstance(answer, Exception):
                logger.warning(f"Provider {provider.name} failed for {entity_id}: {type(answer).__name__}: {answer}")
                failed.append(provider.name)
            else:
                results.append(answer)

        if not results:
            merged.verdict = ReputationVerdict.ERROR if failed or timed_out else ReputationVerdict.UNKNOWN
        else:
            merged.verdict = max((r.verdict for r in results), key=_VERDICT_RANK.__getitem__)
            merged.score = max(r.score for r in results)
            merged.allowlisted = any(r.allowlisted for r in results)
            criticalities = [r.criticality for r in results if r.criticality is not None]
            merged.criticality = max(criticalities) if criticalities else None
            merged.details = {"sources": [r.provider for r in results if r.has_data]}

        if timed_out:
            merged.details["partial"] = True
            merged.details["timed_out"] = timed_out
        if failed:
            merged.details["failed"] = failed
        return merged


def build_default_provider(intel_file: str | Path | None = None) -> IntelligenceProvider:
    """Static table (when configured) plus OTX (when a key is configured)."""
    providers: list[IntelligenceProvider] = []
    if intel_file:
        providers.append(StaticIntelligenceProvider.from_file(intel_file))
    if settings.has_otx_key:
        providers.append(OTXIntelligenceProvider())
    if not providers:
        return StaticIntelligenceProvider()
    if len(providers) == 1:
        return providers[0]
    return CompositeIntelligenceProvider(providers)
