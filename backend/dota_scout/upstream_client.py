from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import aiohttp
import requests

from dota_scout.errors import (
    ConfigError,
    NetworkError,
    NotFoundError,
    RateLimitedError,
    ScoutDataError,
    UpstreamError,
)
from dota_scout.fixtures import FixtureStore
from dota_scout.rate_limiter import RateLimiter
from dota_scout.settings import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

OPENDOTA = "opendota"
STRATZ = "stratz"


def _build_auth_headers(
    api_key: str, header_name: str, token_prefix: Optional[str]
) -> Dict[str, str]:
    headers = {"Accept": "application/json"}
    if not api_key:
        return headers
    value = f"{token_prefix} {api_key}".strip() if token_prefix else api_key
    headers[header_name] = value
    return headers


@dataclass(frozen=True)
class ProviderConfig:
    name: str
    base_url: str
    api_key: str = ""
    auth_header: str = "Authorization"
    token_prefix: Optional[str] = "Bearer"

    def url(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"

    def headers(self) -> Dict[str, str]:
        return _build_auth_headers(self.api_key, self.auth_header, self.token_prefix)

    @classmethod
    def from_settings(cls, settings: Settings) -> Dict[str, "ProviderConfig"]:
        token_prefix = os.getenv("UPSTREAM_TOKEN_PREFIX", "Bearer").strip() or None
        return {
            OPENDOTA: cls(
                name=OPENDOTA,
                base_url=settings.opendota_api_url,
                api_key=settings.opendota_api_key,
                auth_header=os.getenv("OPENDOTA_AUTH_HEADER", "Authorization").strip(),
                token_prefix=token_prefix,
            ),
            STRATZ: cls(
                name=STRATZ,
                base_url=settings.stratz_api_url,
                api_key=settings.stratz_api_token,
                auth_header=os.getenv("STRATZ_AUTH_HEADER", "Authorization").strip(),
                token_prefix=token_prefix,
            ),
        }


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _error_detail(payload: Any, text: str) -> str:
    if isinstance(payload, dict):
        for key in ("error", "message", "error_message"):
            if key in payload:
                return str(payload[key])
        return json.dumps(payload)
    return text.strip() or "No response body"


def raise_for_status(
    provider: str, path: str, status: int, detail: str, retry_after: Optional[str] = None
) -> None:
    if status < 400:
        return
    logger.warning(f"[UPSTREAM] {provider} {path} -> {status}: {detail}")
    if status == 404:
        raise NotFoundError(f"{provider} has no data for {path}", detail)
    if status == 429:
        raise RateLimitedError(
            f"{provider} rate limited the request for {path}",
            detail,
            retry_after=_parse_retry_after(retry_after),
        )
    raise UpstreamError(f"{provider} API error: {status} - {detail}", detail)


def _limiter_for(settings: Settings) -> Optional[RateLimiter]:
    return RateLimiter.from_settings(settings) if settings.rate_limit_enabled else None


class AsyncUpstreamClient:
    """aiohttp client for the OpenDota and Stratz endpoints."""

    def __init__(
        self,
        providers: Dict[str, ProviderConfig],
        timeout_seconds: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:
        self.providers = providers
        self.timeout_seconds = timeout_seconds
        self.session = session
        self.rate_limiter = rate_limiter

    @classmethod
    def from_settings(cls, settings: Settings) -> "AsyncUpstreamClient":
        return cls(
            ProviderConfig.from_settings(settings),
            timeout_seconds=settings.upstream_timeout_seconds,
            rate_limiter=_limiter_for(settings),
        )

    def _provider(self, provider: str) -> ProviderConfig:
        config = self.providers.get(provider)
        if config is None:
            raise ConfigError(f"Unknown upstream provider: {provider}")
        return config

    async def fetch_raw(
        self, provider: str, path: str, params: Optional[Dict[str, Any]] = None
    ) -> Any:
        config = self._provider(provider)
        if self.rate_limiter is not None:
            await self.rate_limiter.acquire(config.name)
        try:
            if self.session is not None:
                return await self._get(self.session, config, path, params)
            async with aiohttp.ClientSession() as session:
                return await self._get(session, config, path, params)
        except RateLimitedError as exc:
            if self.rate_limiter is not None:
                self.rate_limiter.record_rate_limit_hit(config.name, exc.retry_after)
            raise

    async def _get(
        self,
        session: aiohttp.ClientSession,
        config: ProviderConfig,
        path: str,
        params: Optional[Dict[str, Any]],
    ) -> Any:
        url = config.url(path)
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        start = time.perf_counter()
        try:
            async with session.get(
                url, headers=config.headers(), params=params, timeout=timeout
            ) as response:
                try:
                    text = await response.text()
                except UnicodeDecodeError as exc:
                    logger.warning(f"[UPSTREAM] {config.name} {path} returned an undecodable body")
                    raise UpstreamError(f"Undecodable response from {config.name} for {path}") from exc
                payload: Any = None
                try:
                    payload = json.loads(text) if text else None
                except ValueError:
                    payload = None
                raise_for_status(
                    config.name,
                    path,
                    response.status,
                    _error_detail(payload, text),
                    response.headers.get("Retry-After"),
                )
                if payload is None:
                    raise UpstreamError(f"Non-JSON response from {config.name} for {path}")
                return payload
        except asyncio.TimeoutError as exc:
            logger.warning(f"[UPSTREAM] {config.name} {path} timed out")
            raise NetworkError(
                f"{config.name} timeout after {self.timeout_seconds:.0f}s"
            ) from exc
        except aiohttp.ClientError as exc:
            logger.warning(f"[UPSTREAM] {config.name} {path} failed: {exc}")
            raise NetworkError(f"{config.name} request failed: {exc}") from exc
        finally:
            elapsed = time.perf_counter() - start
            logger.debug(f"[TIMING] {config.name} GET {path} took {elapsed:.3f}s")


class UpstreamClient:
    """Synchronous twin of ``AsyncUpstreamClient`` used by operator scripts."""

    def __init__(
        self,
        providers: Dict[str, ProviderConfig],
        timeout_seconds: float = 30.0,
        session: Optional[requests.Session] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:
        self.providers = providers
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()
        self.rate_limiter = rate_limiter

    @classmethod
    def from_settings(cls, settings: Settings) -> "UpstreamClient":
        return cls(
            ProviderConfig.from_settings(settings),
            timeout_seconds=settings.upstream_timeout_seconds,
            rate_limiter=_limiter_for(settings),
        )

    def fetch_raw(
        self, provider: str, path: str, params: Optional[Dict[str, Any]] = None
    ) -> Any:
        config = self.providers.get(provider)
        if config is None:
            raise ConfigError(f"Unknown upstream provider: {provider}")
        if self.rate_limiter is not None:
            self.rate_limiter.acquire_sync(config.name)
        try:
            response = self.session.get(
                config.url(path),
                headers=config.headers(),
                params=params,
                timeout=self.timeout_seconds,
            )
        except requests.Timeout as exc:
            raise NetworkError(
                f"{config.name} timeout after {self.timeout_seconds:.0f}s"
            ) from exc
        except requests.RequestException as exc:
            raise NetworkError(f"{config.name} request failed: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = None
        try:
            raise_for_status(
                config.name,
                path,
                response.status_code,
                _error_detail(payload, response.text),
                response.headers.get("Retry-After"),
            )
        except RateLimitedError as exc:
            if self.rate_limiter is not None:
                self.rate_limiter.record_rate_limit_hit(config.name, exc.retry_after)
            raise
        if payload is None:
            raise UpstreamError(f"Non-JSON response from {config.name} for {path}")
        return payload


class FixtureUpstreamClient:
    """Serves previously captured raw payloads instead of calling the network."""

    def __init__(self, store: FixtureStore) -> None:
        self.store = store

    async def fetch_raw(
        self, provider: str, path: str, params: Optional[Dict[str, Any]] = None
    ) -> Any:
        payload = await asyncio.to_thread(self.store.load, provider, path)
        if payload is None:
            raise NotFoundError(
                f"No captured {provider} payload for {path}",
                "Run scripts/seed_fixtures.py first.",
            )
        return payload


def _backoff_delay(exc: ScoutDataError, attempt: int, base_delay: float) -> float:
    retry_after = getattr(exc, "retry_after", None)
    if retry_after:
        return float(retry_after)
    return base_delay * (2 ** attempt)


async def with_backoff(
    fn: Callable[[], Awaitable[T]], attempts: int = 3, base_delay: float = 2.0
) -> T:
    """Retry ``fn`` on rate limits and transient network failures."""
    for attempt in range(attempts):
        try:
            return await fn()
        except ScoutDataError as exc:
            if not exc.retryable or attempt >= attempts - 1:
                raise
            delay = _backoff_delay(exc, attempt, base_delay)
            logger.info(f"[UPSTREAM] retrying after {exc.error}, attempt {attempt + 1}, sleeping {delay:.1f}s")
            await asyncio.sleep(delay)
    raise UpstreamError("Unable to fetch after retries.")


def retry_sync(fn: Callable[[], T], attempts: int = 3, base_delay: float = 2.0) -> T:
    for attempt in range(attempts):
        try:
            return fn()
        except ScoutDataError as exc:
            if not exc.retryable or attempt >= attempts - 1:
                raise
            delay = _backoff_delay(exc, attempt, base_delay)
            logger.info(f"[UPSTREAM] retrying after {exc.error}, attempt {attempt + 1}, sleeping {delay:.1f}s")
            time.sleep(delay)
    raise UpstreamError("Unable to fetch after retries.")
