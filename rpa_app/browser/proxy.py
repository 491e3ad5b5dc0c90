"""
Egress proxy resolution: configured endpoint, validated auto-discovery, or
no proxy at all.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional

import requests
from pydantic import BaseModel, AliasChoices, Field, ValidationError

logger = logging.getLogger(__name__)

CANDIDATE_CACHE_SECONDS = 300


@dataclass
class ProxyDescriptor:
    endpoint: str  # host:port, optionally with scheme
    username: Optional[str] = None
    password: Optional[str] = None
    source: str = "configured"

    @property
    def server(self) -> str:
        return self.endpoint if "://" in self.endpoint else f"http://{self.endpoint}"

    @property
    def has_credentials(self) -> bool:
        return bool(self.username)

    def requests_proxies(self) -> dict[str, str]:
        scheme, _, hostport = self.server.partition("://")
        if self.has_credentials:
            hostport = f"{self.username}:{self.password or ''}@{hostport}"
        url = f"{scheme}://{hostport}"
        return {"http": url, "https": url}


class ProxyCandidate(BaseModel):
    """One entry of a public proxy-list feed; feeds disagree on key names."""

    host: str = Field(validation_alias=AliasChoices("ip", "host", "address", "ipAddress"))
    port: int = Field(validation_alias=AliasChoices("port", "portNumber"))
    country: Optional[str] = Field(default=None, validation_alias=AliasChoices("country", "country_code", "countryCode"))

    def to_descriptor(self, source: str) -> ProxyDescriptor:
        return ProxyDescriptor(endpoint=f"{self.host}:{self.port}", source=source)


def _entries(payload) -> list:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in ("data", "proxies", "results", "LISTA"):
            if isinstance(payload.get(key), list):
                return payload[key]
    return []


class ProxyFinder:
    """Pulls candidate proxies for one country from a list of JSON feeds."""

    def __init__(self, sources: list[str], country: str = "SG", timeout: int = 10,
                 http: Optional[requests.Session] = None, clock: Callable[[], float] = time.monotonic) -> None:
        self.sources = sources
        self.country = country.upper()
        self.timeout = timeout
        self.http = http or requests.Session()
        self.clock = clock
        self._cache: list[ProxyDescriptor] = []
        self._cached_at: Optional[float] = None

    def candidates(self) -> list[ProxyDescriptor]:
        if self._cached_at is not None and self.clock() - self._cached_at < CANDIDATE_CACHE_SECONDS:
            return list(self._cache)

        found: dict[str, ProxyDescriptor] = {}
        for url in self.sources:
            try:
                resp = self.http.get(url, timeout=self.timeout)
                resp.raise_for_status()
                payload = resp.json()
            except (requests.RequestException, ValueError) as exc:
                logger.warning("proxy source %s unavailable: %s", url, exc)
                continue
            for entry in _entries(payload):
                try:
                    candidate = ProxyCandidate.model_validate(entry)
                except ValidationError:
                    continue
                if candidate.country and candidate.country.upper() != self.country:
                    continue
                descriptor = candidate.to_descriptor(source=url)
                found.setdefault(descriptor.endpoint, descriptor)

        self._cache = list(found.values())
        self._cached_at = self.clock()
        logger.info("found %d %s proxy candidates", len(self._cache), self.country)
        return list(self._cache)

    def random_candidate(self, exclude: set[str] | None = None) -> Optional[ProxyDescriptor]:
        pool = [c for c in self.candidates() if c.endpoint not in (exclude or set())]
        return random.choice(pool) if pool else None


class ProxyValidator:
    """Checks that traffic through a proxy exits in the expected country."""

    def __init__(self, check_url: str = "https://ipinfo.io/json", country: str = "SG", timeout: int = 10,
                 http: Optional[requests.Session] = None) -> None:
        self.check_url = check_url
        self.country = country.upper()
        self.timeout = timeout
        self.http = http or requests.Session()

    def validate(self, proxy: ProxyDescriptor) -> bool:
        try:
            resp = self.http.get(self.check_url, proxies=proxy.requests_proxies(), timeout=self.timeout)
            resp.raise_for_status()
            info = resp.json()
        except (requests.RequestException, ValueError) as exc:
            logger.info("proxy %s failed validation: %s", proxy.endpoint, exc)
            return False
        country = str(info.get("country") or "").upper()
        if country != self.country:
            logger.info("proxy %s exits in %s, expected %s", proxy.endpoint, country or "unknown", self.country)
            return False
        logger.info("proxy %s validated (%s, %s)", proxy.endpoint, info.get("ip"), country)
        return True


class ProxyResolver:
    def __init__(self, mode: str = "off", server: Optional[str] = None, username: Optional[str] = None,
                 password: Optional[str] = None, finder: Optional[ProxyFinder] = None,
                 validator: Optional[ProxyValidator] = None, max_attempts: int = 3) -> None:
        self.mode = (mode or "off").lower()
        self.server = server
        self.username = username
        self.password = password
        self.finder = finder
        self.validator = validator
        self.max_attempts = max(1, max_attempts)

    @classmethod
    def from_config(cls, config) -> "ProxyResolver":
        finder = validator = None
        if config.proxy_mode == "auto":
            finder = ProxyFinder(config.proxy_sources, country=config.proxy_country)
            validator = ProxyValidator(config.proxy_check_url, country=config.proxy_country)
        return cls(
            mode=config.proxy_mode,
            server=config.proxy_server,
            username=config.proxy_username,
            password=config.proxy_password,
            finder=finder,
            validator=validator,
            max_attempts=config.proxy_max_attempts,
        )

    def resolve(self) -> Optional[ProxyDescriptor]:
        if self.server:
            logger.info("using configured proxy %s", self.server)
            return ProxyDescriptor(self.server, self.username, self.password, source="configured")
        if self.mode == "auto" and self.finder is not None:
            return self._discover()
        return None

    def _discover(self) -> Optional[ProxyDescriptor]:
        tried: set[str] = set()
        for attempt in range(1, self.max_attempts + 1):
            candidate = self.finder.random_candidate(exclude=tried)
            if candidate is None:
                break
            tried.add(candidate.endpoint)
            logger.info("validating proxy %s (attempt %d/%d)", candidate.endpoint, attempt, self.max_attempts)
            if self.validator is None or self.validator.validate(candidate):
                return candidate
        logger.warning("no valid proxy after %d attempts; continuing without proxy", len(tried))
        return None
