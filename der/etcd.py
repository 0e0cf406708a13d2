from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Pattern

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)

WAIT_TIME_S = 0.2
MAX_TRIES = 4
BACKOFF = 2

KEY_NOT_FOUND = 100


class EtcdError(Exception):
    """A failed etcd request.

    `status_code` is the HTTP status (None for transport failures) and
    `error_code` the etcd errorCode from the response body, if any.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: int | None = None,
        cause: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.cause = cause

    @property
    def retryable(self) -> bool:
        return self.status_code is None or self.status_code >= 500

    def __str__(self) -> str:
        parts = [self.message]
        if self.cause:
            parts.append(f"({self.cause})")
        if self.error_code is not None:
            parts.append(f"[errorCode {self.error_code}]")
        return " ".join(parts)


class EtcdKeyNotFound(EtcdError):
    pass


class EtcdAccessDenied(EtcdError):
    pass


class EtcdConnectionError(EtcdError):
    """No endpoint answered."""


@dataclass
class EtcdNode:
    key: str
    value: str | None = None
    dir: bool = False
    nodes: list["EtcdNode"] = field(default_factory=list)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "EtcdNode":
        return cls(
            key=data.get("key", "/"),
            value=data.get("value"),
            dir=bool(data.get("dir", False)),
            nodes=[cls.from_json(n) for n in data.get("nodes") or []],
        )


def deep_find_keys(node: EtcdNode, pattern: Pattern[str]) -> list[str]:
    """Collect keys matching `pattern`; a matching node is not descended into."""
    if pattern.search(node.key):
        return [node.key]
    hits: list[str] = []
    for child in node.nodes:
        hits.extend(deep_find_keys(child, pattern))
    return hits


def _normalize_key(key: str) -> str:
    return "/" + key.strip("/")


class EtcdClient:
    """Minimal async client for the etcd v2 keys API."""

    def __init__(
        self,
        endpoints: tuple[str, ...] | list[str] = ("http://127.0.0.1:4001",),
        timeout_s: float = 5.0,
        cafile: str | None = None,
        certfile: str | None = None,
        keyfile: str | None = None,
        username: str | None = None,
        password: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not endpoints:
            raise ValueError("At least one etcd endpoint is required.")
        self.endpoints = [ep.rstrip("/") for ep in endpoints]
        kwargs: dict[str, Any] = {"timeout": timeout_s, "follow_redirects": True}
        if cafile:
            kwargs["verify"] = cafile
        if certfile and keyfile:
            kwargs["cert"] = (certfile, keyfile)
        if username:
            kwargs["auth"] = (username, password or "")
        if transport is not None:
            kwargs["transport"] = transport
        self._http = httpx.AsyncClient(**kwargs)
        self._current = 0

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(self, method: str, key: str, params: dict[str, str] | None = None, data: dict[str, str] | None = None) -> dict[str, Any]:
        key = _normalize_key(key)
        last_exc: Exception | None = None
        n = len(self.endpoints)
        for i in range(n):
            idx = (self._current + i) % n
            url = f"{self.endpoints[idx]}/v2/keys{key}"
            try:
                resp = await self._http.request(method, url, params=params, data=data)
            except httpx.TransportError as e:
                last_exc = e
                logger.debug("etcd endpoint %s failed: %s", self.endpoints[idx], e)
                continue
            self._current = idx
            return self._handle(resp, key)
        raise EtcdConnectionError(f"No etcd endpoint reachable ({', '.join(self.endpoints)}): {last_exc}", cause=key)

    @staticmethod
    def _handle(resp: httpx.Response, key: str) -> dict[str, Any]:
        try:
            body = resp.json()
        except ValueError:
            body = {}
        if resp.status_code < 400:
            return body if isinstance(body, dict) else {}

        error_code = body.get("errorCode") if isinstance(body, dict) else None
        message = (body.get("message") if isinstance(body, dict) else None) or f"HTTP {resp.status_code}"
        cause = (body.get("cause") if isinstance(body, dict) else None) or key
        if error_code == KEY_NOT_FOUND or resp.status_code == 404:
            raise EtcdKeyNotFound(message, resp.status_code, error_code, cause)
        if resp.status_code in (401, 403):
            raise EtcdAccessDenied(message, resp.status_code, error_code, cause)
        raise EtcdError(message, resp.status_code, error_code, cause)

    async def get(self, key: str, recursive: bool = False) -> EtcdNode:
        params = {"recursive": "true"} if recursive else None
        body = await self._request("GET", key, params=params)
        return EtcdNode.from_json(body.get("node") or {"key": _normalize_key(key)})

    async def set(self, key: str, value: str) -> None:
        await self._request("PUT", key, data={"value": value})

    async def delete(self, key: str, recursive: bool = False) -> None:
        params = {"recursive": "true"} if recursive else None
        await self._request("DELETE", key, params=params)

    async def version(self) -> dict[str, Any]:
        """Probe the first reachable endpoint; used as a startup connectivity check."""
        last_exc: Exception | None = None
        for ep in self.endpoints:
            try:
                resp = await self._http.get(f"{ep}/version")
            except httpx.TransportError as e:
                last_exc = e
                continue
            if resp.status_code in (401, 403):
                raise EtcdAccessDenied(f"Access to {ep} denied", resp.status_code)
            try:
                return resp.json()
            except ValueError:
                return {}
        raise EtcdConnectionError(f"No etcd endpoint reachable ({', '.join(self.endpoints)}): {last_exc}")


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, EtcdError) and exc.retryable


class RetryingStore:
    """Wraps an EtcdClient; writes and deletes are retried with backoff.

    Client-side failures (4xx, including "not found") are raised on the first
    attempt. Server-side and transport failures are retried up to
    `max_attempts` times in total, waiting `wait_s * backoff ** (n - 1)`
    between attempts. Reads go straight through.
    """

    def __init__(
        self,
        client: EtcdClient,
        max_attempts: int = MAX_TRIES,
        wait_s: float = WAIT_TIME_S,
        backoff: float = BACKOFF,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.max_attempts = max(1, int(max_attempts))
        self.wait_s = wait_s
        self.backoff = backoff
        self._sleep = sleep

    def _retrying(self, op: str, key: str) -> AsyncRetrying:
        def _log_retry(state: Any) -> None:
            exc = state.outcome.exception() if state.outcome else None
            logger.warning("Retry etcd.%s %s (attempt %d): %s", op, key, state.attempt_number, exc)

        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.wait_s, exp_base=self.backoff),
            retry=retry_if_exception(_is_retryable),
            before_sleep=_log_retry,
            sleep=self._sleep,
            reraise=True,
        )

    async def get(self, key: str, recursive: bool = False) -> EtcdNode:
        return await self.client.get(key, recursive=recursive)

    async def set(self, key: str, value: str) -> None:
        async for attempt in self._retrying("set", key):
            with attempt:
                await self.client.set(key, value)

    async def delete(self, key: str, recursive: bool = False) -> None:
        async for attempt in self._retrying("delete", key):
            with attempt:
                await self.client.delete(key, recursive=recursive)

    async def aclose(self) -> None:
        await self.client.aclose()


def host_key_pattern(hostname: str, container_id: str | None = None) -> Pattern[str]:
    """Match keys whose last segment is <hostname>-<cid>-<port>."""
    cid = re.escape(container_id) if container_id else r"[^/-]+"
    return re.compile(rf"/{re.escape(hostname)}-{cid}-[^/-]+$")
