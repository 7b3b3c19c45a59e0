"""
Snapshot contract: the on-chain registry of (epoch, hash) pairs.

submit_snapshot(hash, epoch, submitter) -> chain_timestamp
    InvalidHashSize unless hash is 32 bytes; InvalidEpoch for epoch 0 (or beyond u64);
    Unauthorized unless submitter is the admin; DuplicateEpoch if the epoch is taken.
    On success the record is immutable and exactly one SnapshotSubmitted event is emitted.
get_snapshot(epoch) -> hash                      SnapshotNotFound
latest_snapshot() -> (hash, epoch, timestamp)    NoSnapshotsExist
verify_snapshot(hash) -> bool                    pure membership check

InMemorySnapshotContract is the reference behavior; RpcSnapshotContract talks to a
contract gateway over JSON-RPC 2.0 and maps its error codes onto the same exceptions.
"""

from __future__ import annotations

import itertools
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol

import httpx

from stellar_insights.core.exceptions import (
    CONTRACT_ERRORS_BY_CODE,
    ContractError,
    ContractUnavailableError,
    DuplicateEpochError,
    InvalidEpochError,
    InvalidHashSizeError,
    NoSnapshotsExistError,
    SnapshotNotFoundError,
    UnauthorizedSubmitterError,
)
from stellar_insights.horizon.client import USER_AGENT
from stellar_insights.logging import get_logger

logger = get_logger(__name__)

HASH_SIZE = 32
MAX_EPOCH = 2**64 - 1
DEFAULT_TIMEOUT_SEC = 20.0


@dataclass(frozen=True)
class OnChainSnapshot:
    hash: bytes
    epoch: int
    chain_timestamp: int


@dataclass(frozen=True)
class SnapshotSubmittedEvent:
    hash: bytes
    epoch: int
    chain_timestamp: int
    topic: str = "SnapshotSubmitted"


class SnapshotContract(Protocol):
    def submit_snapshot(self, hash: bytes, epoch: int, submitter: str) -> int: ...

    def get_snapshot(self, epoch: int) -> bytes: ...

    def latest_snapshot(self) -> OnChainSnapshot: ...

    def verify_snapshot(self, hash: bytes) -> bool: ...


def _validate(hash: bytes, epoch: int) -> None:
    if not isinstance(hash, (bytes, bytearray)) or len(hash) != HASH_SIZE:
        size = len(hash) if isinstance(hash, (bytes, bytearray)) else "non-bytes"
        raise InvalidHashSizeError(f"hash must be {HASH_SIZE} bytes, got {size}")
    if not isinstance(epoch, int) or isinstance(epoch, bool) or epoch <= 0 or epoch > MAX_EPOCH:
        raise InvalidEpochError(f"epoch must be an integer in 1..{MAX_EPOCH}, got {epoch!r}")


class InMemorySnapshotContract:
    """In-process contract with a single authorized submitter (the admin)."""

    def __init__(self, admin: str, *, clock: Callable[[], float] | None = None) -> None:
        if not admin:
            raise ValueError("admin must be non-empty")
        self._admin = admin
        self._clock = clock or time.time
        self._lock = threading.Lock()
        self._snapshots: dict[int, OnChainSnapshot] = {}
        self._events: list[SnapshotSubmittedEvent] = []

    @property
    def admin(self) -> str:
        return self._admin

    def submit_snapshot(self, hash: bytes, epoch: int, submitter: str) -> int:
        _validate(hash, epoch)
        if submitter != self._admin:
            raise UnauthorizedSubmitterError(f"{submitter!r} may not submit snapshots")
        with self._lock:
            if epoch in self._snapshots:
                raise DuplicateEpochError(f"snapshot for epoch {epoch} already exists")
            ts = int(self._clock())
            self._snapshots[epoch] = OnChainSnapshot(hash=bytes(hash), epoch=epoch, chain_timestamp=ts)
            self._events.append(SnapshotSubmittedEvent(hash=bytes(hash), epoch=epoch, chain_timestamp=ts))
        return ts

    def get_snapshot(self, epoch: int) -> bytes:
        with self._lock:
            record = self._snapshots.get(epoch)
        if record is None:
            raise SnapshotNotFoundError(f"no snapshot for epoch {epoch}")
        return record.hash

    def latest_snapshot(self) -> OnChainSnapshot:
        with self._lock:
            if not self._snapshots:
                raise NoSnapshotsExistError("no snapshots submitted yet")
            return self._snapshots[max(self._snapshots)]

    def verify_snapshot(self, hash: bytes) -> bool:
        with self._lock:
            return any(r.hash == hash for r in self._snapshots.values())

    def snapshot_history(self) -> list[OnChainSnapshot]:
        with self._lock:
            return [self._snapshots[e] for e in sorted(self._snapshots)]

    def get_events(self) -> list[SnapshotSubmittedEvent]:
        with self._lock:
            return list(self._events)


class RpcSnapshotContract:
    """
    JSON-RPC 2.0 client for a contract gateway.

    Methods are called with named params {contract_id, ...}; hashes travel as lowercase hex.
    Gateway errors carry the contract error name in error.data.contract_error (or error.message).
    """

    def __init__(
        self,
        rpc_url: str,
        contract_id: str,
        *,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not rpc_url.strip():
            raise ValueError("rpc_url must be non-empty")
        self._rpc_url = rpc_url
        self._contract_id = contract_id
        self._ids = itertools.count(1)
        self._http = httpx.Client(
            timeout=timeout_sec,
            headers={"Content-Type": "application/json", "User-Agent": USER_AGENT},
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def _call(self, method: str, params: dict[str, Any]) -> Any:
        body = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": {"contract_id": self._contract_id, **params},
        }
        try:
            resp = self._http.post(self._rpc_url, json=body)
        except httpx.TransportError as e:
            raise ContractUnavailableError(f"contract gateway unreachable for {method}: {e}") from e
        if resp.status_code == 429 or resp.status_code >= 500:
            raise ContractUnavailableError(f"contract gateway returned {resp.status_code} for {method}")
        if resp.status_code >= 400:
            raise ContractError(f"contract gateway rejected {method} with {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as e:
            raise ContractUnavailableError(f"contract gateway returned invalid JSON for {method}") from e
        error = data.get("error") if isinstance(data, dict) else None
        if error:
            raise self._map_error(method, error)
        if not isinstance(data, dict) or "result" not in data:
            raise ContractUnavailableError(f"contract gateway response for {method} has no result")
        return data["result"]

    @staticmethod
    def _map_error(method: str, error: dict[str, Any]) -> ContractError:
        data = error.get("data") if isinstance(error.get("data"), dict) else {}
        name = data.get("contract_error") or error.get("message") or ""
        cls = CONTRACT_ERRORS_BY_CODE.get(str(name), ContractError)
        logger.debug("contract_call_rejected", method=method, code=error.get("code"), contract_error=name)
        return cls(f"{method}: {error.get('message') or name}")

    @staticmethod
    def _hash(value: Any) -> bytes:
        try:
            return bytes.fromhex(str(value))
        except ValueError as e:
            raise ContractError(f"gateway returned a malformed hash {value!r}") from e

    def submit_snapshot(self, hash: bytes, epoch: int, submitter: str) -> int:
        _validate(hash, epoch)
        result = self._call("submit_snapshot", {"hash": bytes(hash).hex(), "epoch": epoch, "submitter": submitter})
        return int(result)

    def get_snapshot(self, epoch: int) -> bytes:
        return self._hash(self._call("get_snapshot", {"epoch": epoch}))

    def latest_snapshot(self) -> OnChainSnapshot:
        result = self._call("latest_snapshot", {})
        return OnChainSnapshot(
            hash=self._hash(result["hash"]),
            epoch=int(result["epoch"]),
            chain_timestamp=int(result["timestamp"]),
        )

    def verify_snapshot(self, hash: bytes) -> bool:
        return bool(self._call("verify_snapshot", {"hash": bytes(hash).hex()}))
