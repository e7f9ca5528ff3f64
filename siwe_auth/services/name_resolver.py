"""
Name registry (ENS) resolution over Ethereum JSON-RPC.

Forward: name -> namehash -> registry.resolver(node) -> resolver.addr(node)
Reverse: address -> "<hex>.addr.reverse" -> registry.resolver(node) -> resolver.name(node)

Every lookup walks the configured endpoints in order (primary first) and
moves to the next one on a transport error or timeout. Results, including
"not found", are cached for the configured TTL; transport failures are not.

A name from reverse resolution is only returned after forward resolution of
that name gives back the same address.
"""

import itertools
import logging
import threading
from concurrent.futures import Future
from typing import Callable, Dict, Generic, Optional, Sequence, TypeVar

import requests
from eth_abi import decode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak

from siwe_auth.core.cache import HybridCacheManager
from siwe_auth.core.errors import ErrorKind, Result
from siwe_auth.core.signature import is_address, normalize_address

logger = logging.getLogger(__name__)

REGISTRY_ADDRESS = "0x00000000000C2E074eC69A0dFb2997BA6C7d2e1e"
ZERO_ADDRESS = "0x" + "00" * 20
EMPTY_NODE = b"\x00" * 32

RESOLVER_SELECTOR = keccak(text="resolver(bytes32)")[:4]
ADDR_SELECTOR = keccak(text="addr(bytes32)")[:4]
NAME_SELECTOR = keccak(text="name(bytes32)")[:4]

H = TypeVar("H")
_MISS = object()


class ResolverError(Exception):
    """An endpoint failed to answer a JSON-RPC call."""


def namehash(name: str) -> bytes:
    """ENS namehash: fold keccak(label) from the rightmost label inwards."""
    node = EMPTY_NODE
    if not name:
        return node
    for label in reversed(name.lower().split(".")):
        node = keccak(node + keccak(text=label))
    return node


class SessionRegistry(Generic[H]):
    """
    Keyed registry of lazily created handles (one HTTP session per endpoint).

    - pending: key -> Future for an initialisation in flight; concurrent
      callers for the same key wait on it instead of creating a second handle
    - ready: key -> initialised handle
    - evict(key) closes and forgets a handle, the next get() recreates it
    """

    def __init__(self, factory: Callable[[str], H]):
        self._factory = factory
        self._pending: Dict[str, Future] = {}
        self._ready: Dict[str, H] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> H:
        with self._lock:
            if key in self._ready:
                return self._ready[key]
            future = self._pending.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._pending[key] = future
        if not owner:
            return future.result()

        try:
            handle = self._factory(key)
        except Exception as e:
            with self._lock:
                self._pending.pop(key, None)
            future.set_exception(e)
            raise
        with self._lock:
            self._ready[key] = handle
            self._pending.pop(key, None)
        future.set_result(handle)
        return handle

    def evict(self, key: str) -> None:
        with self._lock:
            handle = self._ready.pop(key, None)
        close = getattr(handle, "close", None)
        if close is not None:
            close()

    def keys(self):
        with self._lock:
            return list(self._ready)

    def close(self) -> None:
        for key in self.keys():
            self.evict(key)


def _new_http_session(endpoint: str) -> requests.Session:
    session = requests.Session()
    session.headers.update({"Content-Type": "application/json"})
    return session


class NameResolver:
    """Forward and reverse name lookups with endpoint failover and caching."""

    def __init__(
        self,
        endpoints: Sequence[str],
        cache: Optional[HybridCacheManager] = None,
        cache_ttl_seconds: int = 3600,
        timeout: float = 5.0,
        sessions: Optional[SessionRegistry] = None,
    ):
        self.endpoints = [url for url in endpoints if url]
        self.cache = cache or HybridCacheManager()
        self.cache_ttl_seconds = cache_ttl_seconds
        self.timeout = timeout
        self.sessions = sessions or SessionRegistry(_new_http_session)
        self._request_ids = itertools.count(1)

    @property
    def enabled(self) -> bool:
        return bool(self.endpoints)

    # ------------------------------------------------------------------
    # JSON-RPC plumbing
    # ------------------------------------------------------------------

    def _eth_call(self, endpoint: str, to: str, data: bytes) -> bytes:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._request_ids),
            "method": "eth_call",
            "params": [{"to": to, "data": "0x" + data.hex()}, "latest"],
        }
        session = self.sessions.get(endpoint)
        try:
            response = session.post(endpoint, json=payload, timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except (requests.RequestException, ValueError) as e:
            self.sessions.evict(endpoint)
            raise ResolverError(f"{endpoint}: {e}") from e

        if body.get("error"):
            raise ResolverError(f"{endpoint}: {body['error']}")
        result = body.get("result") or "0x"
        try:
            return bytes.fromhex(result[2:] if result.startswith("0x") else result)
        except ValueError as e:
            raise ResolverError(f"{endpoint}: malformed result") from e

    def _execute_with_failover(self, operation: Callable[[str], Optional[str]]) -> Optional[str]:
        """Run operation against each endpoint in order until one answers."""
        if not self.endpoints:
            raise ResolverError("no resolver endpoints configured")
        last_error: Optional[Exception] = None
        for endpoint in self.endpoints:
            try:
                return operation(endpoint)
            except ResolverError as e:
                last_error = e
                logger.warning("RPC call failed on %s: %s", endpoint, e)
        raise ResolverError(f"all resolver endpoints failed: {last_error}")

    def _resolver_for(self, endpoint: str, node: bytes) -> Optional[str]:
        raw = self._eth_call(endpoint, REGISTRY_ADDRESS, RESOLVER_SELECTOR + node)
        if len(raw) < 32:
            return None
        (resolver,) = decode(["address"], raw)
        if resolver.lower() == ZERO_ADDRESS:
            return None
        return resolver

    def _forward_on(self, endpoint: str, name: str) -> Optional[str]:
        node = namehash(name)
        resolver = self._resolver_for(endpoint, node)
        if resolver is None:
            return None
        raw = self._eth_call(endpoint, resolver, ADDR_SELECTOR + node)
        if len(raw) < 32:
            return None
        (address,) = decode(["address"], raw)
        if address.lower() == ZERO_ADDRESS:
            return None
        return normalize_address(address)

    def _reverse_on(self, endpoint: str, address: str) -> Optional[str]:
        node = namehash(f"{address[2:]}.addr.reverse")
        resolver = self._resolver_for(endpoint, node)
        if resolver is None:
            return None
        raw = self._eth_call(endpoint, resolver, NAME_SELECTOR + node)
        if len(raw) < 64:
            return None
        try:
            (name,) = decode(["string"], raw)
        except DecodingError as e:
            raise ResolverError(f"{endpoint}: undecodable name record") from e
        return name or None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def resolve_forward(self, name: str) -> Result:
        """
        Resolve a name to a lowercase address.

        Returns:
            Result.success(address) or Result.failure(NAME_RESOLUTION_FAILED)
        """
        name = (name or "").strip().lower()
        if not name:
            return Result.failure(ErrorKind.NAME_RESOLUTION_FAILED, "empty name")
        cache_key = f"siwe:name:forward:{name}"
        address = self.cache.get(cache_key, _MISS)
        if address is _MISS:
            try:
                address = self._execute_with_failover(lambda endpoint: self._forward_on(endpoint, name))
            except ResolverError as e:
                logger.error("name forward resolution failed for %s: %s", name, e)
                return Result.failure(ErrorKind.NAME_RESOLUTION_FAILED, str(e))
            self.cache.set(cache_key, address, self.cache_ttl_seconds)

        if not address:
            return Result.failure(ErrorKind.NAME_RESOLUTION_FAILED, f"{name} not found")
        return Result.success(address)

    def resolve_reverse(self, address: str) -> Result:
        """
        Resolve an address to its primary name, verified by forward lookup.

        An unverified reverse record is treated as not found.
        """
        if not is_address(address):
            return Result.failure(ErrorKind.NAME_RESOLUTION_FAILED, "invalid address")
        address = normalize_address(address)
        cache_key = f"siwe:name:reverse:{address}"
        name = self.cache.get(cache_key, _MISS)
        if name is _MISS:
            try:
                name = self._execute_with_failover(lambda endpoint: self._reverse_on(endpoint, address))
            except ResolverError as e:
                logger.error("name reverse resolution failed for %s: %s", address, e)
                return Result.failure(ErrorKind.NAME_RESOLUTION_FAILED, str(e))

            if name is not None:
                forward = self.resolve_forward(name)
                if not forward.ok or forward.value != address:
                    logger.warning(
                        "name forward verification failed: %s resolves to %s, not %s",
                        name, forward.value, address,
                    )
                    name = None
            self.cache.set(cache_key, name, self.cache_ttl_seconds)

        if not name:
            return Result.failure(ErrorKind.NAME_RESOLUTION_FAILED, f"no verified name for {address}")
        return Result.success(name)

    def validate_claim(self, address: str, name: str) -> Result:
        """A claimed name must forward-resolve to the signing address."""
        forward = self.resolve_forward(name)
        if not forward.ok:
            return forward
        if forward.value != normalize_address(address):
            return Result.failure(ErrorKind.NAME_MISMATCH, f"{name} does not resolve to signer")
        return Result.success(name.strip().lower())

    def close(self) -> None:
        self.sessions.close()
