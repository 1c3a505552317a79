"""Choosing, pricing and signing pending messages for each sending address."""

from __future__ import annotations

import dataclasses
import json
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

from .models import (
    AddressInfo,
    ChainMessage,
    Message,
    MessageServiceConfig,
    MessageState,
    SendSpec,
    SharedSpec,
    SignedMessage,
    TipSet,
)
from .timeouts import call_with_timeout

log = logging.getLogger(__name__)

GAS_ESTIMATE = "gas estimate: "
SIGN_MSG = "sign msg: "
MAX_SELECT_COUNT = 100


@dataclass
class GasSpec:
    """Effective gas options of one message after merging all levels."""

    gas_over_estimation: float = 0.0
    max_fee: int = 0
    gas_over_premium: float = 0.0
    gas_fee_cap: int = 0
    base_fee: int = 0


@dataclass
class MsgErrInfo:
    """Why a message could not be selected."""

    id: str
    err: str


@dataclass
class MsgSelectResult:
    """Outcome of one selection round for one address."""

    address: AddressInfo
    select_msg: list[Message] = field(default_factory=list)
    to_push_msg: list[SignedMessage] = field(default_factory=list)
    err_msg: list[MsgErrInfo] = field(default_factory=list)


class SignMessageError(RuntimeError):
    """Raised when the wallet fails to sign a message."""


def merge_msg_spec(
    global_spec: SharedSpec | None,
    send_spec: SendSpec | None,
    addr_info: AddressInfo,
    msg: Message,
) -> GasSpec:
    """Combine message, address and shared settings; the most specific non-zero wins."""
    send_spec = send_spec or SendSpec()
    spec = GasSpec(
        gas_over_estimation=send_spec.gas_over_estimation,
        gas_over_premium=send_spec.gas_over_premium,
        max_fee=send_spec.max_fee,
    )

    if send_spec.gas_over_estimation == 0:
        if addr_info.gas_over_estimation != 0:
            spec.gas_over_estimation = addr_info.gas_over_estimation
        elif global_spec is not None:
            spec.gas_over_estimation = global_spec.gas_over_estimation

    if not send_spec.max_fee:
        if addr_info.max_fee:
            spec.max_fee = addr_info.max_fee
        elif global_spec is not None:
            spec.max_fee = global_spec.max_fee

    if not msg.message.gas_fee_cap:
        if addr_info.gas_fee_cap:
            spec.gas_fee_cap = addr_info.gas_fee_cap
        elif global_spec is not None:
            spec.gas_fee_cap = global_spec.gas_fee_cap

    if send_spec.gas_over_premium == 0:
        if addr_info.gas_over_premium != 0:
            spec.gas_over_premium = addr_info.gas_over_premium
        elif global_spec is not None and global_spec.gas_over_premium != 0:
            spec.gas_over_premium = global_spec.gas_over_premium

    if addr_info.base_fee:
        spec.base_fee = addr_info.base_fee
    elif global_spec is not None:
        spec.base_fee = global_spec.base_fee

    return spec


def cap_gas_fee(msg: ChainMessage, max_fee: int) -> None:
    """Lower the fee cap (and premium) so that fee cap times gas limit stays within max_fee."""
    if not max_fee:
        return
    gas_limit = msg.gas_limit
    if msg.gas_fee_cap * gas_limit <= max_fee:
        return
    msg.gas_fee_cap = max_fee // gas_limit
    msg.gas_premium = min(msg.gas_fee_cap, msg.gas_premium)


def addr_select_msg_num(addr_list: Iterable[AddressInfo], default_num: int) -> dict[str, int]:
    """How many pending messages each address may have; zero settings use the default."""
    result: dict[str, int] = {}
    for info in addr_list:
        if info.addr in result:
            if info.sel_msg_num > 0 and result[info.addr] < info.sel_msg_num:
                result[info.addr] = info.sel_msg_num
        else:
            result[info.addr] = info.sel_msg_num if info.sel_msg_num else default_num
    return result


def address_map(addr_list: Iterable[AddressInfo]) -> dict[str, AddressInfo]:
    """Index address infos by their address."""
    return {info.addr: info for info in addr_list}


def nonce_in_tipset(messages: Iterable[ChainMessage]) -> dict[str, int]:
    """Next nonce per sender after applying the tipset's messages in order."""
    applied: dict[str, int] = {}
    for msg in messages:
        # The first message of a sender always carries the correct nonce.
        applied.setdefault(msg.from_addr, msg.nonce)
        if applied[msg.from_addr] == msg.nonce:
            applied[msg.from_addr] += 1
    return applied


def _storage_bytes(msg: ChainMessage) -> bytes:
    body = dataclasses.asdict(msg)
    body["params"] = msg.params.hex()
    return json.dumps(body, sort_keys=True, separators=(",", ":")).encode()


class _Work:
    """Per-address selection slot; only one round may run at a time."""

    def __init__(self, addr: str):
        self.addr = addr
        self._busy = threading.Lock()
        self.closed = threading.Event()
        self.started = 0.0

    def try_begin(self) -> bool:
        return self._busy.acquire(blocking=False)

    def finish(self) -> None:
        self._busy.release()

    def close(self) -> None:
        self.closed.set()


class MsgSelectMgr:
    """Selects, prices and signs messages for every active address on each new head.

    ``repo`` offers ``address_repo``, ``message_repo`` and a ``transaction()``
    context manager; ``full_node`` offers ``state_get_actor``,
    ``chain_get_messages_in_tipset`` and ``gas_batch_estimate_message_gas``;
    ``wallet_client`` offers ``wallet_sign``; ``msg_receiver`` offers ``put``.
    """

    def __init__(
        self,
        repo: Any,
        config: MessageServiceConfig,
        full_node: Any,
        address_service: Any,
        shared_params: Any,
        wallet_client: Any,
        msg_receiver: Any,
    ):
        self.repo = repo
        self.config = config
        self.full_node = full_node
        self.address_service = address_service
        self.shared_params = shared_params
        self.wallet_client = wallet_client
        self.msg_receiver = msg_receiver
        self.works: dict[str, _Work] = {}
        self._update_works(address_map(address_service.list_active_address()))

    def select_message(self, ts: TipSet) -> list[threading.Thread]:
        """Start a selection round for every address; returns the started threads."""
        shared = self.shared_params.get_shared_params()
        active = self.address_service.list_active_address()
        sel_nums = addr_select_msg_num(active, shared.sel_msg_num)
        infos = address_map(active)
        self._update_works(infos)

        applied = self._applied_nonce(ts)

        threads = []
        for addr, work in self.works.items():
            info = infos.get(addr)
            if info is None:
                continue
            thread = threading.Thread(
                target=self._run_work,
                args=(work, info, ts, applied, sel_nums[addr], shared),
                name=f"select-{addr}",
                daemon=True,
            )
            thread.start()
            threads.append(thread)
        return threads

    def _applied_nonce(self, ts: TipSet) -> dict[str, int]:
        try:
            entries = self.full_node.chain_get_messages_in_tipset(ts.key())
        except Exception as err:
            raise RuntimeError(f"failed to get message in tipset {err}") from err
        return nonce_in_tipset(getattr(entry, "message", entry) for entry in entries)

    def _update_works(self, infos: dict[str, AddressInfo]) -> None:
        works: dict[str, _Work] = {}
        for addr in infos:
            work = self.works.pop(addr, None)
            if work is None:
                log.info("add a work %s", addr)
                work = _Work(addr)
            works[addr] = work
        for addr, work in self.works.items():
            if work.try_begin():
                work.close()
                work.finish()
                log.info("remove a work %s", addr)
            else:
                works[addr] = work
        self.works = works

    def _run_work(
        self,
        work: _Work,
        addr_info: AddressInfo,
        ts: TipSet,
        applied_nonce: dict[str, int],
        max_pending: int,
        shared_params: SharedSpec,
    ) -> None:
        if work.closed.is_set():
            log.info("work closed, %s skip select message", work.addr)
            return
        if not work.try_begin():
            log.info("%s is already selecting message, had took %.3fs", work.addr, time.monotonic() - work.started)
            return
        work.started = time.monotonic()
        try:
            try:
                result = self.select_for_address(addr_info, ts, applied_nonce, max_pending, shared_params)
            except Exception as err:
                log.error("select message for %s failed %s", work.addr, err)
                return
            log.info(
                "select message result %s | SelectMsg: %d | ToPushMsg: %d | ErrMsg: %d | took: %.3fs",
                work.addr,
                len(result.select_msg),
                len(result.to_push_msg),
                len(result.err_msg),
                time.monotonic() - work.started,
            )
            try:
                self._save_selected(result)
            except Exception as err:
                log.error("failed to save selected messages to db %s", err)
                return

            result.to_push_msg.extend(
                SignedMessage(message=msg.message, signature=msg.signature or b"") for msg in result.select_msg
            )
            if result.to_push_msg:
                try:
                    self.msg_receiver.put(result.to_push_msg)
                except queue.Full:
                    log.error(
                        "message receiver channel is full, skip message %s %d", work.addr, len(result.to_push_msg)
                    )
        finally:
            work.finish()

    def select_for_address(
        self,
        addr_info: AddressInfo,
        ts: TipSet,
        applied_nonce: dict[str, int],
        max_pending: int,
        shared_params: SharedSpec,
    ) -> MsgSelectResult:
        """Run one selection round for one address and return what was chosen."""
        addr = addr_info.addr
        accounts = self.address_service.accounts_of_signer(addr)

        nonce_in_ts, actor_nonce = self._get_nonce(addr, ts, applied_nonce)
        if nonce_in_ts > addr_info.nonce:
            log.warning(
                "nonce in db %d is smaller than nonce on chain %d, update to latest", addr_info.nonce, nonce_in_ts
            )
            addr_info.nonce = nonce_in_ts
            addr_info.updated_at = datetime.now()
            try:
                self.repo.address_repo.update_nonce(addr, addr_info.nonce)
            except Exception as err:
                raise RuntimeError(f"update nonce failed {err}") from err

        to_push = self._filled_messages(addr, nonce_in_ts)

        nonce_gap = addr_info.nonce - nonce_in_ts
        if nonce_gap >= max_pending:
            log.error("there are %d message not to be package, nonce gap %d", len(to_push), nonce_gap)
            return MsgSelectResult(address=addr_info, to_push_msg=to_push)
        want_count = max_pending - nonce_gap
        log.info(
            "state actor nonce %d, latest nonce in ts %d, assigned nonce %d, nonce gap %d, want %d",
            actor_nonce,
            nonce_in_ts,
            addr_info.nonce,
            nonce_gap,
            want_count,
        )

        select_count = min(want_count * 2, MAX_SELECT_COUNT)
        try:
            messages = self.repo.message_repo.list_unchain_message_by_address(addr, select_count)
        except Exception as err:
            raise RuntimeError(f"list unfill message error {err}") from err
        if not messages:
            log.info("have no unfill message")
            return MsgSelectResult(address=addr_info, to_push_msg=to_push)

        results, candidates = self._estimate(ts, messages, shared_params, addr_info)

        selected: list[Message] = []
        errors: list[MsgErrInfo] = []
        count = 0
        for msg, estimate in zip(candidates, results):
            if estimate.err:
                errors.append(MsgErrInfo(id=msg.id, err=GAS_ESTIMATE + estimate.err))
                log.error("estimate message %s fail %s", msg.id, estimate.err)
                continue
            if count >= want_count:
                break

            estimated = estimate.msg
            msg.message.nonce = addr_info.nonce
            msg.message.gas_fee_cap = estimated.gas_fee_cap
            msg.message.gas_premium = estimated.gas_premium
            msg.message.gas_limit = estimated.gas_limit
            msg.unsigned_cid = msg.message.cid()

            try:
                signature = self._sign(addr, msg, accounts)
            except SignMessageError as err:
                errors.append(MsgErrInfo(id=msg.id, err=f"{SIGN_MSG}{err}"))
                log.error("sign message %s failed %s", msg.id, err)
                break
            except Exception as err:
                log.error("prepare message %s for signing failed %s", msg.id, err)
                continue

            msg.signature = signature
            msg.state = MessageState.FILL
            msg.signed_cid = SignedMessage(message=msg.message, signature=signature).cid()

            selected.append(msg)
            addr_info.nonce += 1
            count += 1

        return MsgSelectResult(address=addr_info, select_msg=selected, to_push_msg=to_push, err_msg=errors)

    def _get_nonce(self, addr: str, ts: TipSet, applied_nonce: dict[str, int]) -> tuple[int, int]:
        actor = call_with_timeout(self.config.default_timeout, self.full_node.state_get_actor, addr, ts.key())
        nonce_in_ts = actor.nonce
        if addr in applied_nonce:
            log.info(
                "update address %s nonce in ts %d nonce in actor %d", addr, applied_nonce[addr], actor.nonce
            )
            nonce_in_ts = applied_nonce[addr]
        return nonce_in_ts, actor.nonce

    def _filled_messages(self, addr: str, nonce_in_ts: int) -> list[SignedMessage]:
        try:
            filled = self.repo.message_repo.list_filled_message_by_address(addr)
        except Exception as err:
            log.warning("list filled message %s", err)
            filled = []
        return [
            SignedMessage(message=msg.message, signature=msg.signature or b"")
            for msg in filled
            if msg.message.nonce >= nonce_in_ts
        ]

    def _estimate(
        self,
        ts: TipSet,
        msgs: list[Message],
        shared_params: SharedSpec,
        addr_info: AddressInfo,
    ) -> tuple[list[Any], list[Message]]:
        candidates: list[Message] = []
        to_estimate: list[tuple[ChainMessage, SendSpec]] = []
        for msg in msgs:
            spec = merge_msg_spec(shared_params, msg.meta, addr_info, msg)
            if not msg.message.gas_fee_cap and spec.gas_fee_cap:
                msg.message.gas_fee_cap = spec.gas_fee_cap

            base_fee = ts.parent_base_fee
            if spec.base_fee and base_fee > spec.base_fee:
                log.info(
                    "skip msg %s, base fee too high %d(local) < %d(chain), height %d",
                    msg.id,
                    spec.base_fee,
                    base_fee,
                    ts.height,
                )
                continue

            candidates.append(msg)
            to_estimate.append(
                (
                    msg.message,
                    SendSpec(
                        gas_over_estimation=spec.gas_over_estimation,
                        max_fee=spec.max_fee,
                        gas_over_premium=spec.gas_over_premium,
                    ),
                )
            )
            log.info(
                "estimate message %s, gas fee cap %d, gas limit %d, gas premium %d, "
                "meta maxfee %d, over estimation %f, gas over premium %f",
                msg.id,
                msg.message.gas_fee_cap,
                msg.message.gas_limit,
                msg.message.gas_premium,
                spec.max_fee,
                spec.gas_over_estimation,
                spec.gas_over_premium,
            )

        results = call_with_timeout(
            self.config.estimate_message_timeout,
            self.full_node.gas_batch_estimate_message_gas,
            to_estimate,
            addr_info.nonce,
            ts.key(),
        )
        return list(results), candidates

    def _sign(self, addr: str, msg: Message, accounts: list[str]) -> bytes:
        meta = {"type": "chain_msg", "extra": _storage_bytes(msg.message)}
        try:
            return call_with_timeout(
                self.config.sign_message_timeout,
                self.wallet_client.wallet_sign,
                addr,
                accounts,
                msg.message.cid().encode(),
                meta,
            )
        except Exception as err:
            raise SignMessageError(str(err)) from err

    def _save_selected(self, result: MsgSelectResult) -> None:
        start = time.monotonic()
        addr_info = result.address
        log.info("start save messages of %s to database", addr_info.addr)
        with self.repo.transaction() as tx:
            if result.select_msg:
                tx.message_repo.batch_save_message(result.select_msg)
                tx.address_repo.update_nonce(addr_info.addr, addr_info.nonce)
            for info in result.err_msg:
                log.info("update message %s error info with error %s", info.id, info.err)
                tx.message_repo.update_err_msg(info.id, info.err)
        log.info("end save messages to database, took %.3fs", time.monotonic() - start)

    def close(self) -> None:
        """Stop every address from starting further selection rounds."""
        for work in self.works.values():
            work.close()