"""Following chain head changes and keeping message states in step with them."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable

from .cache import TipsetCache
from .models import MessageReceipt, MessageState, TipSet

log = logging.getLogger(__name__)

LOOK_BACK_LIMIT = 900

HC_CURRENT = "current"
HC_APPLY = "apply"
HC_REVERT = "revert"


@dataclass
class HeadChange:
    """Tipsets to apply and to revert, newest first."""

    apply: list[TipSet] = field(default_factory=list)
    revert: list[TipSet] = field(default_factory=list)
    is_reconnect: bool = False


@dataclass
class ApplyMessage:
    """A message of an active address found in an applied tipset."""

    signed_cid: str
    msg: Any
    height: int
    tsk: tuple[str, ...]
    receipt: MessageReceipt


def look_ancestors(
    node_client: Any, local_tipsets: list[TipSet], head: TipSet
) -> tuple[list[TipSet], list[TipSet]]:
    """Walk back from *head* to the local chain.

    *local_tipsets* must be sorted by height, highest first. Returns the
    tipsets missing locally (newest first) and the local tipsets to revert.
    """
    ts = head
    idx = 0
    gap: list[TipSet] = []
    loop_count = 0
    while loop_count <= LOOK_BACK_LIMIT and idx < len(local_tipsets):
        local = local_tipsets[idx]
        if ts.height == 0:
            break
        if local.height > ts.height:
            idx += 1
        elif local.height == ts.height:
            if local.key() == ts.key():
                break
            idx += 1
        else:
            gap.append(ts)
            parents = ts.parents
            try:
                ts = node_client.chain_get_tipset(parents)
            except Exception as err:
                raise RuntimeError(f"got tipset({parents}) failed {err}") from err
        loop_count += 1

    return gap, list(local_tipsets[: min(idx, len(local_tipsets))])


class StateRefresher:
    """Applies head changes to stored messages, one change at a time.

    After a change that is not a reconnect, *trigger* is called with the new
    head once the head has been stable for *stable_duration* seconds; a newer
    change cancels a trigger still pending.
    """

    def __init__(
        self,
        repo: Any,
        node_client: Any,
        address_service: Any,
        tipset_cache: TipsetCache,
        tipset_file: str | Path,
        trigger: Callable[[TipSet], None] | None = None,
        stable_duration: float = 8.0,
    ):
        self.repo = repo
        self.node_client = node_client
        self.address_service = address_service
        self.tipset_cache = tipset_cache
        self.tipset_file = Path(tipset_file)
        self.trigger = trigger
        self.stable_duration = stable_duration
        self._lock = threading.Lock()
        self._pending: threading.Timer | None = None

    def refresh(self, change: HeadChange) -> None:
        """Bring message states in line with the head change."""
        with self._lock:
            if not change.apply:
                log.info("apply is empty")
                return
            start = time.monotonic()
            log.info("start refresh message state, apply %d, revert %d", len(change.apply), len(change.revert))

            revert_msgs = self.process_revert_head(change)
            try:
                apply_msgs = self.process_block_parent_messages(change.apply)
            except Exception as err:
                raise RuntimeError(f"process apply failed {err}") from err

            replaced, invalid = self.update_message_state(apply_msgs, revert_msgs)

            self.tipset_cache.curr_height = change.apply[0].height
            self.tipset_cache.add(*change.apply)
            try:
                self.tipset_cache.save(self.tipset_file)
            except OSError as err:
                log.error("store tipsetkey failed %s", err)

            log.info(
                "process block %d, revert %d message, apply %d message, replaced %d message",
                self.tipset_cache.curr_height,
                len(revert_msgs),
                len(apply_msgs) - len(invalid),
                len(replaced),
            )

            self._cancel_pending()
            if not change.is_reconnect and self.trigger is not None:
                timer = threading.Timer(self.stable_duration, self.trigger, args=(change.apply[0],))
                timer.daemon = True
                self._pending = timer
                timer.start()
            log.info("end refresh message state, spent %.3fs", time.monotonic() - start)

    def process_revert_head(self, change: HeadChange) -> set[str]:
        """Unsigned cids of messages of active addresses in the reverted tipsets."""
        reverted: set[str] = set()
        for ts in change.revert:
            try:
                msgs = self.repo.message_repo.list_chain_message_by_height(ts.height)
            except Exception as err:
                raise RuntimeError(f"found filled message at height {ts.height} error {err}") from err
            addrs = self.address_service.active_addresses()
            reverted.update(
                msg.unsigned_cid for msg in msgs if msg.message.from_addr in addrs and msg.unsigned_cid
            )
        return reverted

    def process_block_parent_messages(self, apply: Iterable[TipSet]) -> list[ApplyMessage]:
        """Messages of active addresses executed in the applied tipsets, with receipts."""
        addrs = self.address_service.active_addresses()
        result: list[ApplyMessage] = []
        for ts in apply:
            block_cid = ts.cids[0]
            try:
                msgs = list(self.node_client.chain_get_parent_messages(block_cid))
            except Exception as err:
                raise RuntimeError(f"got parent message failed {err}") from err
            try:
                receipts = list(self.node_client.chain_get_parent_receipts(block_cid))
            except Exception as err:
                raise RuntimeError(f"got parent receipt failed {err}") from err
            if len(msgs) != len(receipts):
                raise RuntimeError(f"messages not match receipts, {len(msgs)} != {len(receipts)}")
            for entry, receipt in zip(msgs, receipts):
                if entry.message.from_addr in addrs:
                    result.append(
                        ApplyMessage(
                            signed_cid=entry.cid,
                            msg=entry.message,
                            height=ts.height,
                            tsk=ts.key(),
                            receipt=receipt,
                        )
                    )
        return result

    def update_message_state(
        self, apply_msgs: list[ApplyMessage], revert_msgs: set[str]
    ) -> tuple[dict[str, Any], set[str]]:
        """Store the changes; returns replaced messages by id and unknown signed cids.

        Unsigned cids of messages found applied are removed from *revert_msgs*.
        """
        replaced: dict[str, Any] = {}
        invalid: set[str] = set()
        with self.repo.transaction() as tx:
            for cid in list(revert_msgs):
                tx.message_repo.update_message_info_by_cid(
                    cid, MessageReceipt(exit_code=-1), 0, MessageState.FILL, ()
                )

            for applied in apply_msgs:
                # Two messages may share a nonce when one failed estimation; only the
                # filled one can be the message that landed on chain.
                try:
                    local = tx.message_repo.get_message_by_from_nonce_and_state(
                        applied.msg.from_addr, applied.msg.nonce, MessageState.FILL
                    )
                except Exception:
                    log.warning(
                        "msg %s not exist in local db maybe address %s send out of messager",
                        applied.signed_cid,
                        applied.msg.from_addr,
                    )
                    invalid.add(applied.signed_cid)
                    continue

                unsigned_cid = applied.msg.cid()
                if local.signed_cid is not None and local.signed_cid != applied.signed_cid:
                    log.warning(
                        "replace message old msg cid %s, new msg cid %s, id %s",
                        local.signed_cid,
                        applied.signed_cid,
                        local.id,
                    )
                    local.state = MessageState.NONCE_CONFLICT
                    local.receipt = applied.receipt
                    local.height = applied.height
                    local.tipset_key = applied.tsk
                    try:
                        tx.message_repo.update_message(local)
                    except Exception as err:
                        raise RuntimeError(
                            f"update message receipt failed, cid:{applied.signed_cid} failed:{err}"
                        ) from err
                    replaced[local.id] = local
                else:
                    try:
                        tx.message_repo.update_message_info_by_cid(
                            unsigned_cid, applied.receipt, applied.height, MessageState.ON_CHAIN, applied.tsk
                        )
                    except Exception as err:
                        raise RuntimeError(
                            f"update message receipt failed, cid:{unsigned_cid} failed:{err}"
                        ) from err
                revert_msgs.discard(unsigned_cid)
        return replaced, invalid

    def _cancel_pending(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

    def close(self) -> None:
        """Cancel a pending push trigger."""
        with self._lock:
            self._cancel_pending()


class NodeEvents:
    """Feeds head change notifications of a node to the message service."""

    def __init__(self, client: Any, msg_service: Any):
        self.client = client
        self.msg_service = msg_service

    def listen_head_changes_once(self) -> None:
        """Consume one notification stream until it ends."""
        notifs = iter(self.client.chain_notify())
        first = next(notifs, None)
        if first is None:
            return
        if len(first) != 1:
            raise RuntimeError(f"expect hccurrent length 1 but for {len(first)}")
        if first[0].type != HC_CURRENT:
            raise RuntimeError(f"expect hccurrent event but got {first[0].type}")
        try:
            self.msg_service.reconnect_check(first[0].val)
        except Exception as err:
            raise RuntimeError(f"reconnect check error: {err}") from err

        for notif in notifs:
            apply = [change.val for change in notif if change.type == HC_APPLY]
            try:
                self.msg_service.process_new_head(apply)
            except Exception as err:
                raise RuntimeError(f"process new head error: {err}") from err