"""Data types shared by the messager services."""

from __future__ import annotations

import enum
import hashlib
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

ATTO_PER_FIL = 10**18


class MessageState(enum.IntEnum):
    """Lifecycle state of a message kept by the messager."""

    UNKNOWN = 0
    UNFILL = 1
    FILL = 2
    ON_CHAIN = 3
    FAILED = 4
    REPLACED = 5
    NONCE_CONFLICT = 6


class AddressState(enum.IntEnum):
    """State of a sending address."""

    UNKNOWN = 0
    ALIVE = 1
    REMOVING = 2
    REMOVED = 3
    FORBIDDEN = 4


class RecordNotFoundError(LookupError):
    """Raised by a repository when a requested record does not exist."""


def _new_id() -> str:
    return str(uuid.uuid4())


def _digest(payload: Any) -> str:
    data = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode()
    return hashlib.sha256(data).hexdigest()


@dataclass
class MessageReceipt:
    """Execution receipt of a message included on chain."""

    exit_code: int = 0
    return_value: bytes = b""
    gas_used: int = 0


@dataclass
class ChainMessage:
    """An unsigned chain message."""

    from_addr: str
    to: str
    nonce: int = 0
    value: int = 0
    gas_limit: int = 0
    gas_fee_cap: int = 0
    gas_premium: int = 0
    method: int = 0
    params: bytes = b""
    version: int = 0

    def _payload(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "from": self.from_addr,
            "to": self.to,
            "nonce": self.nonce,
            "value": str(self.value),
            "gas_limit": self.gas_limit,
            "gas_fee_cap": str(self.gas_fee_cap),
            "gas_premium": str(self.gas_premium),
            "method": self.method,
            "params": self.params.hex(),
        }

    def cid(self) -> str:
        """Content identifier of the unsigned message."""
        return _digest(self._payload())


@dataclass
class SignedMessage:
    """A chain message together with its signature."""

    message: ChainMessage
    signature: bytes = b""

    def cid(self) -> str:
        """Content identifier of the signed message."""
        return _digest({"message": self.message._payload(), "signature": self.signature.hex()})


@dataclass
class SendSpec:
    """Per-message gas options given by the sender."""

    gas_over_estimation: float = 0.0
    max_fee: int = 0
    gas_over_premium: float = 0.0


@dataclass
class Message:
    """A message as tracked by the messager."""

    id: str
    message: ChainMessage
    state: MessageState = MessageState.UNFILL
    meta: SendSpec | None = None
    wallet_name: str = ""
    unsigned_cid: str | None = None
    signed_cid: str | None = None
    signature: bytes | None = None
    height: int = 0
    confidence: int = 0
    receipt: MessageReceipt | None = None
    tipset_key: tuple[str, ...] = ()
    error_msg: str = ""
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)


@dataclass
class AddressInfo:
    """A sending address and its settings."""

    addr: str
    id: str = field(default_factory=_new_id)
    nonce: int = 0
    sel_msg_num: int = 0
    state: AddressState = AddressState.ALIVE
    gas_over_estimation: float = 0.0
    gas_over_premium: float = 0.0
    max_fee: int = 0
    gas_fee_cap: int = 0
    base_fee: int = 0
    is_deleted: bool = False
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)


@dataclass
class SharedSpec:
    """Gas parameters shared by all addresses."""

    id: int = 1
    gas_over_estimation: float = 0.0
    max_fee: int = 0
    gas_fee_cap: int = 0
    gas_over_premium: float = 0.0
    sel_msg_num: int = 0
    base_fee: int = 0


@dataclass(frozen=True)
class TipSet:
    """A set of blocks at one chain height."""

    height: int
    cids: tuple[str, ...]
    parents: tuple[str, ...] = ()
    parent_base_fee: int = 0
    min_timestamp: int = 0

    def key(self) -> tuple[str, ...]:
        """The tipset key: the cids of its blocks."""
        return tuple(self.cids)

    def to_dict(self) -> dict[str, Any]:
        """A JSON-ready representation."""
        return {
            "height": self.height,
            "cids": list(self.cids),
            "parents": list(self.parents),
            "parent_base_fee": str(self.parent_base_fee),
            "min_timestamp": self.min_timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TipSet:
        """Build a tipset from the output of :meth:`to_dict`."""
        return cls(
            height=int(data["height"]),
            cids=tuple(data["cids"]),
            parents=tuple(data.get("parents", ())),
            parent_base_fee=int(data.get("parent_base_fee", 0)),
            min_timestamp=int(data.get("min_timestamp", 0)),
        )

    def __str__(self) -> str:
        return f"{{{','.join(self.cids)}}}@{self.height}"


@dataclass
class Node:
    """A chain node that messages can be pushed to."""

    name: str
    url: str
    token: str
    id: str = field(default_factory=_new_id)
    node_type: int = 0


@dataclass
class MessageServiceConfig:
    """Timing and behaviour settings of the message service (seconds)."""

    sign_message_timeout: float = 3.0
    estimate_message_timeout: float = 5.0
    default_timeout: float = 1.0
    skip_process_head: bool = False
    skip_push_message: bool = False
    waiting_chain_head_stable_duration: float = 8.0


def is_id_address(address: str) -> bool:
    """Whether a textual address uses the ID protocol (e.g. ``f01234``)."""
    return len(address) >= 3 and address[0] in "ft" and address[1] == "0" and address[2:].isdigit()


def default_shared_params() -> SharedSpec:
    """The shared parameters stored when none exist yet."""
    return SharedSpec(
        id=1,
        gas_over_estimation=1.25,
        max_fee=7 * ATTO_PER_FIL // 100,
        gas_fee_cap=0,
        gas_over_premium=0.0,
        sel_msg_num=20,
        base_fee=0,
    )