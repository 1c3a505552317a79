"""The message service: accepting, tracking, replacing and re-publishing messages."""

from __future__ import annotations

import enum
import json
import logging
import queue
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable

from .cache import TipsetCache
from .head_tracking import LOOK_BACK_LIMIT, HeadChange, StateRefresher, look_ancestors
from .models import (
    AddressInfo,
    AddressState,
    ChainMessage,
    Message,
    MessageServiceConfig,
    MessageState,
    RecordNotFoundError,
    SendSpec,
    SignedMessage,
    TipSet,
    is_id_address,
)
from .selector import MsgSelectMgr, _storage_bytes, cap_gas_fee

log = logging.getLogger(__name__)

REPLACE_BY_FEE_RATIO_DEFAULT = 1.25
RBF_DENOM = 256
_RBF_NUM = int((REPLACE_BY_FEE_RATIO_DEFAULT - 1) * RBF_DENOM)

LOOKBACK_NO_LIMIT = -1
METHOD_SEND = 0
DEFAULT_POLL_INTERVAL = 30.0

ParamsEncoder = Callable[[Any, int, Any], bytes]


class ParamsCodec(str, enum.Enum):
    """How the parameters of a quick send are written."""

    JSON = "json"
    HEX = "hex"


@dataclass
class QuickSendParams:
    """A method call to send without building the message by hand."""

    from_addr: str
    to: str
    method: int
    params: str
    params_type: ParamsCodec = ParamsCodec.HEX
    val: int = 0
    gas_premium: int | None = None
    gas_fee_cap: int | None = None
    gas_limit: int | None = None


@dataclass
class ReplaceMessageParams:
    """How to re-price a message that has not landed on chain."""

    id: str
    auto: bool = False
    max_fee: int = 0
    gas_limit: int = 0
    gas_premium: int = 0
    gas_feecap: int = 0
    gas_over_premium: float = 0.0


def compute_min_rbf(premium: int) -> int:
    """The smallest premium that may replace a message paying *premium*."""
    return premium + premium * _RBF_NUM // RBF_DENOM + 1


def is_chain_msg(state: MessageState) -> bool:
    """Whether a message in this state has been seen on chain."""
    return state in (MessageState.ON_CHAIN, MessageState.NONCE_CONFLICT)


def to_signed_msg(wallet_client: Any, msg: Message, accounts: list[str]) -> SignedMessage:
    """Sign *msg* with the wallet, filling in its cids, signature and state."""
    unsigned_cid = msg.message.cid()
    msg.unsigned_cid = unsigned_cid
    meta = {"type": "chain_msg", "extra": _storage_bytes(msg.message)}
    try:
        signature = wallet_client.wallet_sign(msg.message.from_addr, accounts, unsigned_cid.encode(), meta)
    except Exception as err:
        raise RuntimeError(f"wallet sign failed {msg.id} fail {err}") from err

    msg.signature = signature
    msg.state = MessageState.FILL
    signed = SignedMessage(message=msg.message, signature=signature)
    msg.signed_cid = signed.cid()
    return signed


class MessageService:
    """Accepts messages, follows the chain and keeps message states current.

    ``repo`` offers ``address_repo``, ``message_repo`` and a ``transaction()``
    context manager; ``node_client`` is the chain node API.
    """

    def __init__(
        self,
        repo: Any,
        node_client: Any,
        address_service: Any,
        shared_params: Any,
        wallet_client: Any,
        msg_receiver: Any,
        tipset_file: str | Path,
        config: MessageServiceConfig | None = None,
        msg_select_mgr: Any = None,
        params_encoder: ParamsEncoder | None = None,
    ):
        self.repo = repo
        self.node_client = node_client
        self.address_service = address_service
        self.shared_params = shared_params
        self.wallet_client = wallet_client
        self.msg_receiver = msg_receiver
        self.tipset_file = Path(tipset_file)
        self.config = config or MessageServiceConfig()
        self.params_encoder = params_encoder
        self.msg_select_mgr = msg_select_mgr or MsgSelectMgr(
            repo, self.config, node_client, address_service, shared_params, wallet_client, msg_receiver
        )
        self._select_lock = threading.Lock()

        self.tipset_cache = TipsetCache()
        self.refresher = StateRefresher(
            repo,
            node_client,
            address_service,
            self.tipset_cache,
            self.tipset_file,
            trigger=self._on_stable_head,
            stable_duration=self.config.waiting_chain_head_stable_duration,
        )
        try:
            self.tipset_cache.load(self.tipset_file)
        except (OSError, ValueError) as err:
            log.info("load tipset file failed: %s", err)

        try:
            network_params = node_client.state_get_network_params()
        except Exception as err:
            raise RuntimeError(f"get network params failed {err}") from err
        block_delay = network_params.block_delay_secs
        self.poll_interval = block_delay if block_delay > 0 else DEFAULT_POLL_INTERVAL

        self._verify_network_name()

    def _verify_network_name(self) -> None:
        network_name = str(self.node_client.state_network_name())
        if self.tipset_cache.network_name:
            if self.tipset_cache.network_name != network_name:
                raise ValueError(
                    f"network name not match, expect {network_name}, actual "
                    f"{self.tipset_cache.network_name}, please remove `{self.tipset_file}`"
                )
            return
        self.tipset_cache.network_name = network_name
        self.tipset_cache.save(self.tipset_file)

    def _on_stable_head(self, ts: TipSet) -> None:
        with self._select_lock:
            if self.config.skip_push_message:
                log.info("skip push message")
                return
            start = time.monotonic()
            log.info("start select message %s", ts)
            try:
                self.msg_select_mgr.select_message(ts)
            except Exception as err:
                log.error("select message at %s failed %s", ts, err)
            log.info("end select message spent %.3fs", time.monotonic() - start)

    # Message intake

    def _push_message(self, msg: Message) -> None:
        if not msg.id:
            raise ValueError("empty uid")

        from_addr = msg.message.from_addr
        if is_id_address(from_addr):
            try:
                key_addr = self.node_client.state_account_key(from_addr, ())
            except Exception as err:
                raise RuntimeError(f"getting key address: {err}") from err
            log.warning("Push from ID address (%s), adjusting to %s", from_addr, key_addr)
            msg.message.from_addr = from_addr = key_addr

        try:
            accounts = self.address_service.accounts_of_signer(from_addr)
        except Exception as err:
            raise RuntimeError(f"get accounts for {from_addr}: {err}") from err
        if not self.wallet_client.wallet_has(from_addr, accounts):
            raise ValueError(f"signer address {from_addr} not exists")

        addr_info: AddressInfo | None = None
        with self.repo.transaction() as tx:
            try:
                addr_info = tx.address_repo.get_address(from_addr)
            except RecordNotFoundError:
                now = datetime.now()
                try:
                    tx.address_repo.save_address(
                        AddressInfo(addr=from_addr, state=AddressState.ALIVE, created_at=now, updated_at=now)
                    )
                except Exception as err:
                    raise RuntimeError(f"save address {from_addr} failed {err}") from err
                log.info("add new address %s", from_addr)

        if addr_info is not None and addr_info.state == AddressState.FORBIDDEN:
            log.error("address(%s) is forbidden", from_addr)
            raise PermissionError(f"address({from_addr}) is forbidden")

        msg.message.nonce = 0
        self.repo.message_repo.create_message(msg)

    def push_message(self, msg: ChainMessage, meta: SendSpec | None = None, account: str = "") -> str:
        """Queue a message under a fresh id and return the id."""
        return self.push_message_with_id(str(uuid.uuid4()), msg, meta, account)

    def push_message_with_id(
        self, msg_id: str, msg: ChainMessage, meta: SendSpec | None = None, account: str = ""
    ) -> str:
        """Queue a message under the given id and return the id."""
        try:
            self._push_message(
                Message(id=msg_id, message=msg, meta=meta, wallet_name=account, state=MessageState.UNFILL)
            )
        except Exception as err:
            log.error("push message %s failed %s", msg_id, err)
            raise
        return msg_id

    def send(self, params: QuickSendParams) -> str:
        """Build a method call from *params*, queue it and return its id."""
        if params.method == METHOD_SEND:
            raise ValueError("do not use it to send funds")

        if params.params_type == ParamsCodec.JSON:
            try:
                decoded = self._decode_typed_params_from_json(params.to, params.method, params.params)
            except Exception as err:
                raise ValueError(f"failed to decode json params: {err}") from err
        elif params.params_type == ParamsCodec.HEX:
            try:
                decoded = bytes.fromhex(params.params)
            except ValueError as err:
                raise ValueError(f"failed to decode hex params: {err}") from err
        else:
            raise ValueError(f"unexpected param type {params.params_type}")

        msg_id = str(uuid.uuid4())
        msg = Message(
            id=msg_id,
            message=ChainMessage(
                from_addr=params.from_addr,
                to=params.to,
                value=params.val,
                method=params.method,
                params=decoded,
                gas_premium=params.gas_premium if params.gas_premium is not None else 0,
                gas_fee_cap=params.gas_fee_cap if params.gas_fee_cap is not None else 0,
                gas_limit=params.gas_limit if params.gas_limit is not None else 0,
            ),
            state=MessageState.UNFILL,
        )
        self._push_message(msg)
        return msg_id

    def _decode_typed_params_from_json(self, to: str, method: int, text: str) -> bytes:
        actor = self.node_client.state_get_actor(to, ())
        if self.params_encoder is None:
            raise ValueError("no params encoder configured")
        value = json.loads(text)
        try:
            return self.params_encoder(actor.code, method, value)
        except LookupError as err:
            raise ValueError(f"method {method} not found on actor {actor.code}") from err

    # Queries

    def _with_confidence(self, msg: Message, head: TipSet) -> Message:
        if is_chain_msg(msg.state):
            msg.confidence = head.height - msg.height
        return msg

    def _fetch_one(self, lookup: Callable[[], Message]) -> Message:
        head = self.node_client.chain_head()
        return self._with_confidence(lookup(), head)

    def _fetch_many(self, lookup: Callable[[], list[Message]]) -> list[Message]:
        head = self.node_client.chain_head()
        return [self._with_confidence(msg, head) for msg in lookup()]

    def wait_message(self, msg_id: str, confidence: int, timeout: float | None = None) -> Message:
        """Poll until the message is on chain deeper than *confidence* or has failed."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            msg = self.get_message_by_uid(msg_id)
            if msg.state == MessageState.FAILED:
                return msg
            if is_chain_msg(msg.state) and msg.confidence > confidence:
                return msg
            wait = self.poll_interval
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TimeoutError("exit by client")
                wait = min(wait, remaining)
            time.sleep(wait)

    def get_message_by_uid(self, msg_id: str) -> Message:
        return self._fetch_one(lambda: self.repo.message_repo.get_message_by_uid(msg_id))

    def has_message_by_uid(self, msg_id: str) -> bool:
        return bool(self.repo.message_repo.has_message_by_uid(msg_id))

    def get_message_by_cid(self, cid: str) -> Message:
        return self._fetch_one(lambda: self.repo.message_repo.get_message_by_cid(cid))

    def get_message_by_signed_cid(self, cid: str) -> Message:
        return self._fetch_one(lambda: self.repo.message_repo.get_message_by_signed_cid(cid))

    def get_message_by_from_and_nonce(self, from_addr: str, nonce: int) -> Message:
        return self._fetch_one(lambda: self.repo.message_repo.get_message_by_from_and_nonce(from_addr, nonce))

    def list_message(self) -> list[Message]:
        return self._fetch_many(self.repo.message_repo.list_message)

    def list_message_by_address(self, addr: str) -> list[Message]:
        return self._fetch_many(lambda: self.repo.message_repo.list_message_by_address(addr))

    def list_blocked_message(self, addr: str, duration: timedelta) -> list[Message]:
        """Messages blocked longer than *duration*; all active addresses when *addr* is empty."""
        if addr:
            return list(self.repo.message_repo.list_blocked_message(addr, duration))
        msgs: list[Message] = []
        for info in self.address_service.list_active_address():
            msgs.extend(self.repo.message_repo.list_blocked_message(info.addr, duration))
        return msgs

    # Head changes

    def _sorted_cache(self) -> list[TipSet]:
        return sorted(self.tipset_cache.list(), key=lambda ts: ts.height, reverse=True)

    def process_new_head(self, apply: list[TipSet]) -> None:
        """Handle newly applied tipsets (newest first), reverting local ones on a fork."""
        log.info("receive new head from chain")
        if self.config.skip_process_head:
            log.info("skip process new head")
            return
        if not apply:
            log.error("expect apply blocks, but got none")
            return

        ts_list = self._sorted_cache()
        smallest = apply[-1]
        if not ts_list or smallest.parents == ts_list[0].key():
            log.info("apply a block height %d %s", apply[0].height, apply[0])
            self.refresher.refresh(HeadChange(apply=list(apply)))
            return

        try:
            local_apply, revert = look_ancestors(self.node_client, ts_list, smallest)
        except Exception as err:
            log.error("look ancestor error from %s and %s, error: %s", smallest, ts_list[0].key(), err)
            return
        if len(apply) > 1:
            local_apply = list(apply[:-1]) + local_apply
        self.refresher.refresh(HeadChange(apply=local_apply, revert=revert))

    def reconnect_check(self, head: TipSet) -> None:
        """Catch up with the chain after (re)connecting to the node."""
        log.info("reconnect to node")
        if not self.tipset_cache.cache:
            count = self.update_all_filled_message()
            log.info("update filled message count %d", count)
            return

        ts_list = self._sorted_cache()
        gap = head.height - ts_list[0].height
        if gap >= LOOK_BACK_LIMIT:
            count = self.update_all_filled_message()
            log.info("gap height %d, update filled message count %d", gap, count)
            return

        if ts_list[0].height == head.height and ts_list[0].key() == head.key():
            log.info("The head does not change and returns directly.")
            return

        gap_tipsets, revert = look_ancestors(self.node_client, ts_list, head)
        self.refresher.refresh(HeadChange(apply=gap_tipsets, revert=revert, is_reconnect=True))

    def update_all_filled_message(self) -> int:
        """Look up every filled message on the node; returns how many were updated."""
        msgs: list[Message] = []
        for addr in self.address_service.active_addresses():
            try:
                msgs.extend(self.repo.message_repo.list_filled_message_by_address(addr))
            except Exception as err:
                log.error("list filled message %s %s", addr, err)

        log.info("%d messages need to sync", len(msgs))
        count = 0
        for msg in msgs:
            try:
                self._update_filled_message(msg)
            except Exception as err:
                log.error("failed to update filled message: %s", err)
                continue
            count += 1
        return count

    def _update_filled_message(self, msg: Message) -> None:
        if msg.signed_cid is None:
            return
        try:
            lookup = self.node_client.state_search_msg((), msg.signed_cid, LOOKBACK_NO_LIMIT, True)
        except Exception as err:
            raise RuntimeError(f"search message {msg.signed_cid} from node {err}") from err
        if lookup is None:
            raise RuntimeError(f"search message {msg.signed_cid} from node: not found")
        self.repo.message_repo.update_message_info_by_cid(
            msg.unsigned_cid, lookup.receipt, lookup.height, MessageState.ON_CHAIN, lookup.tipset
        )
        log.info("update message %s by node success, height: %d", msg.id, lookup.height)

    # Fixing messages

    def replace_message(self, params: ReplaceMessageParams) -> str:
        """Re-price and re-sign a message, publish it, and return its new signed cid."""
        if params is None:
            raise ValueError("params is nil")
        try:
            msg = self.get_message_by_uid(params.id)
        except Exception as err:
            raise LookupError(f"found message {err}") from err
        if msg.state == MessageState.ON_CHAIN:
            raise ValueError("message already on chain")

        chain_msg = msg.message
        if params.auto:
            min_rbf = compute_min_rbf(chain_msg.gas_premium)
            spec = SendSpec(max_fee=params.max_fee, gas_over_premium=params.gas_over_premium)
            chain_msg.gas_fee_cap = 0
            chain_msg.gas_premium = 0
            try:
                estimated = self.node_client.gas_estimate_message_gas(chain_msg, spec, ())
            except Exception as err:
                raise RuntimeError(f"failed to estimate gas values: {err}") from err

            chain_msg.gas_premium = max(estimated.gas_premium, min_rbf)
            chain_msg.gas_fee_cap = max(estimated.gas_fee_cap, chain_msg.gas_premium)

            if not spec.max_fee:
                max_fee = self.address_service.get_address(chain_msg.from_addr).max_fee
                shared = self.shared_params.get_shared_params()
                spec.max_fee = max_fee or shared.max_fee

            cap_gas_fee(chain_msg, spec.max_fee)
        else:
            if params.gas_limit > 0:
                chain_msg.gas_limit = params.gas_limit
            if params.gas_premium <= 0:
                raise ValueError(f"gas premium({params.gas_premium}) must bigger than zero")
            if params.gas_feecap <= 0:
                raise ValueError(f"gas feecap({params.gas_feecap}) must bigger than zero")
            if chain_msg.gas_fee_cap < chain_msg.gas_premium:
                raise ValueError(
                    f"gas feecap({chain_msg.gas_fee_cap}) must bigger or equal than "
                    f"gas premium ({chain_msg.gas_premium})"
                )
            chain_msg.gas_premium = params.gas_premium
            chain_msg.gas_fee_cap = params.gas_feecap

        accounts = self.address_service.accounts_of_signer(chain_msg.from_addr)
        signed = to_signed_msg(self.wallet_client, msg, accounts)
        self.repo.message_repo.update_message_by_state(msg, MessageState.FILL)
        self.republish_message(params.id)
        return signed.cid()

    def recover_failed_msg(self, addr: str) -> list[str]:
        """Put failed signed messages whose nonce is still usable back to filled."""
        actor = self.node_client.state_get_actor(addr, ())
        addr_info = self.repo.address_repo.get_address(addr)
        if addr_info.nonce < actor.nonce:
            return []
        recovered: list[str] = []
        for msg in self.repo.message_repo.get_signed_message_from_failed_msg(addr):
            if msg.message.nonce >= actor.nonce:
                self.repo.message_repo.update_message_state_by_id(msg.id, MessageState.FILL)
                recovered.append(msg.id)
        return recovered

    def republish_message(self, msg_id: str) -> None:
        """Hand a filled message to the publishers again; unknown ids are ignored."""
        try:
            msg = self.get_message_by_uid(msg_id)
        except Exception:
            return
        if msg.state != MessageState.FILL:
            raise ValueError(f"need FillMsg got {msg.state.name}")
        signed = SignedMessage(message=msg.message, signature=msg.signature or b"")
        try:
            self.msg_receiver.put([signed])
        except queue.Full as err:
            raise RuntimeError("message receiver channel is full") from err

    def clear_unfill_message(self, addr: str) -> int:
        """Mark every unfilled message of *addr* as failed; returns how many."""
        with self._select_lock:
            count = 0
            with self.repo.transaction() as tx:
                for msg in tx.message_repo.list_unfilled_message(addr):
                    try:
                        tx.message_repo.mark_bad_message(msg.id)
                    except Exception as err:
                        raise RuntimeError(f"mark bad message {msg.id} failed {err}") from err
                    count += 1
        log.info("clear unfill messages success, address: %s, count: %d", addr, count)
        return count

    def close(self) -> None:
        """Stop pending triggers and selection work."""
        self.refresher.close()
        self.msg_select_mgr.close()