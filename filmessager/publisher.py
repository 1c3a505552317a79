"""Publishers that push signed messages to chain nodes and the p2p network."""

from __future__ import annotations

import json
import logging
import queue
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any, Callable, Iterable

from .models import SignedMessage

log = logging.getLogger(__name__)

_IGNORED_PUSH_ERRORS = ("minimum expected nonce", "already in mpool: validation failure")
_POLL_INTERVAL = 0.1


class MessagePublisher(ABC):
    """Something that can publish signed messages to the chain."""

    @abstractmethod
    def publish_messages(self, msgs: list[SignedMessage]) -> None:
        """Publish the messages."""

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        close = getattr(self, "close", None)
        if close is not None:
            close()


@dataclass
class PublisherConfig:
    """How the publisher chain is assembled."""

    enable_p2p: bool = False
    concurrency: int = 5
    cache_release_period: int = 0
    enable_multi_node: bool = False


def _encode_signed(msg: SignedMessage) -> bytes:
    body = asdict(msg.message)
    body["params"] = msg.message.params.hex()
    return json.dumps({"message": body, "signature": msg.signature.hex()}, sort_keys=True).encode()


class P2pPublisher(MessagePublisher):
    """Publishes messages on the network's message pubsub topic."""

    def __init__(self, pubsub: Any, network_name: str):
        self.topic_name = f"/fil/msgs/{network_name}"
        self._topic = pubsub.get_topic(self.topic_name)

    def publish_messages(self, msgs: list[SignedMessage]) -> None:
        for msg in msgs:
            try:
                data = _encode_signed(msg)
            except (TypeError, ValueError) as err:
                raise RuntimeError(f"marshal message {msg.cid()} failed: {err}") from err
            try:
                self._topic.publish(data)
            except Exception as err:
                raise RuntimeError(f"publish message {msg.cid()} failed: {err}") from err


class _NodeThread:
    """Background pusher for one node."""

    def __init__(self, name: str, client: Any, on_close: Callable[[], None] | None = None):
        self.name = name
        self._client = client
        self._on_close = on_close
        self._queue: queue.Queue = queue.Queue(maxsize=30)
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=f"push-{name}", daemon=True)
        self._thread.start()

    def handle(self, msgs: list[SignedMessage]) -> None:
        self._queue.put(msgs)

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                msgs = self._queue.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            try:
                self._client.mpool_batch_push_untrusted(msgs)
            except Exception as err:
                text = str(err)
                if any(ignored in text for ignored in _IGNORED_PUSH_ERRORS):
                    log.debug("push message to node failed %s", err)
                else:
                    log.error("push message to node %s failed %s", self.name, err)

    def close(self) -> None:
        self._stop.set()
        if self._on_close is not None:
            self._on_close()
        log.debug("close node thread %s", self.name)


class RpcPublisher(MessagePublisher):
    """Pushes messages to the main node and, optionally, to every registered node."""

    def __init__(
        self,
        node_client: Any,
        node_provider: Any = None,
        enable_multi_node: bool = False,
        dial: Callable[[str, str], tuple[Any, Callable[[], None]]] | None = None,
    ):
        if enable_multi_node and (node_provider is None or dial is None):
            raise ValueError("multi node publishing needs a node provider and a dial function")
        self._main = _NodeThread("mainNode", node_client)
        self._node_provider = node_provider
        self._enable_multi_node = enable_multi_node
        self._dial = dial
        self._threads: dict[str, _NodeThread] = {}
        self._lock = threading.Lock()

    def publish_messages(self, msgs: list[SignedMessage]) -> None:
        self._main.handle(msgs)
        if not self._enable_multi_node:
            return

        try:
            nodes = self._node_provider.list_node()
        except Exception as err:
            raise RuntimeError(f"list node fail {err}") from err

        with self._lock:
            remaining = set()
            for node in nodes:
                remaining.add(node.id)
                thread = self._threads.get(node.id)
                if thread is None:
                    try:
                        client, closer = self._dial(node.url, node.token)
                    except Exception as err:
                        log.warning("connect node(%s) fail %s", node.name, err)
                        continue
                    thread = _NodeThread(node.name, client, closer)
                    self._threads[node.id] = thread
                thread.handle(msgs)

            for node_id in [i for i in self._threads if i not in remaining]:
                self._threads.pop(node_id).close()

    def close(self) -> None:
        """Stop every pusher thread."""
        self._main.close()
        with self._lock:
            for thread in self._threads.values():
                thread.close()
            self._threads.clear()


class MergePublisher(MessagePublisher):
    """Hands every batch to each of its sub-publishers."""

    def __init__(self, *publishers: MessagePublisher):
        self._publishers: list[MessagePublisher] = list(publishers)

    def publish_messages(self, msgs: list[SignedMessage]) -> None:
        if not self._publishers:
            raise ValueError("no publisher available")
        for publisher in self._publishers:
            try:
                publisher.publish_messages(msgs)
            except Exception as err:
                log.error("MergePublisher publish message with sub publisher failed: %s", err)

    def add_publisher(self, publisher: MessagePublisher) -> None:
        self._publishers.append(publisher)


class CachePublisher(MessagePublisher):
    """Drops messages that were published recently; the cache ages out over two periods."""

    def __init__(self, sub_publisher: MessagePublisher, release_period: float):
        if release_period <= 0:
            raise ValueError("cache release period should not be zero")
        self.release_period = release_period
        self.sub_publisher = sub_publisher
        self._cache: dict[str, bool] = {}
        self._queue: queue.Queue = queue.Queue(maxsize=30)
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name="cache-publisher", daemon=True)
        self._thread.start()

    def publish_messages(self, msgs: list[SignedMessage]) -> None:
        self._queue.put(list(msgs))

    def _run(self) -> None:
        next_release = time.monotonic() + self.release_period
        while not self._stop.is_set():
            timeout = min(max(0.0, next_release - time.monotonic()), _POLL_INTERVAL)
            try:
                msgs = self._queue.get(timeout=timeout)
            except queue.Empty:
                pass
            else:
                self._publish_new(msgs)
            if time.monotonic() >= next_release:
                self._cache = {cid: False for cid, fresh in self._cache.items() if fresh}
                next_release += self.release_period

    def _publish_new(self, msgs: list[SignedMessage]) -> None:
        fresh = []
        for msg in msgs:
            cid = msg.cid()
            if cid not in self._cache:
                fresh.append(msg)
            self._cache[cid] = True
        if fresh:
            try:
                self.sub_publisher.publish_messages(fresh)
            except Exception as err:
                log.error("CachePublisher publish message with sub publisher fail %s", err)

    def close(self) -> None:
        self._stop.set()


class ConcurrentPublisher(MessagePublisher):
    """Runs several workers that call a thread-safe sub-publisher."""

    def __init__(self, sub_publisher: MessagePublisher, concurrency: int):
        if sub_publisher is None:
            raise ValueError("sub publisher is nil")
        self.sub_publisher = sub_publisher
        self.concurrency = concurrency
        self._queue: queue.Queue = queue.Queue(maxsize=30)
        self._stop = threading.Event()
        self._workers = [
            threading.Thread(target=self._run, name=f"concurrent-publisher-{i}", daemon=True)
            for i in range(concurrency)
        ]
        for worker in self._workers:
            worker.start()

    def publish_messages(self, msgs: list[SignedMessage]) -> None:
        self._queue.put(msgs)

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                msgs = self._queue.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            try:
                self.sub_publisher.publish_messages(msgs)
            except Exception as err:
                log.error("ConcurrentPublisher publish message with sub publisher fail %s", err)

    def close(self) -> None:
        self._stop.set()


def group_by_address(msgs: Iterable[SignedMessage]) -> dict[str, list[SignedMessage]]:
    """Group messages by sender, keeping their order within each group."""
    groups: dict[str, list[SignedMessage]] = {}
    for msg in msgs:
        groups.setdefault(msg.message.from_addr, []).append(msg)
    return groups


class MessageReceiver:
    """Bounded inbox that publishes batches per sender, sorted by nonce."""

    def __init__(self, publisher: MessagePublisher, maxsize: int = 100):
        self._publisher = publisher
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name="message-receiver", daemon=True)
        self._thread.start()

    def put(self, msgs: Iterable[SignedMessage]) -> None:
        """Queue a batch without blocking; raises queue.Full when the inbox is full."""
        self._queue.put_nowait(list(msgs))

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                msgs = self._queue.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            for addr, group in group_by_address(msgs).items():
                group.sort(key=lambda m: m.message.nonce)
                try:
                    self._publisher.publish_messages(group)
                except Exception as err:
                    log.warning("publish message failed addr=%s len=%d err=%s", addr, len(group), err)
        log.info("receiver closed, stop receive message")

    def close(self) -> None:
        self._stop.set()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def build_publisher(
    config: PublisherConfig,
    block_delay_secs: int,
    rpc_publisher: MessagePublisher,
    p2p_publisher: MessagePublisher | None = None,
) -> MessagePublisher:
    """Assemble the merge, concurrent and cache publishers as configured."""
    merge = MergePublisher(rpc_publisher)
    if config.enable_p2p:
        if p2p_publisher is None:
            raise ValueError("p2p publishing is enabled but no p2p publisher was given")
        merge.add_publisher(p2p_publisher)
    result: MessagePublisher = merge

    if config.concurrency > 0:
        result = ConcurrentPublisher(result, config.concurrency)

    if config.cache_release_period == 0:
        result = CachePublisher(result, max(1, block_delay_secs // 3))
    elif config.cache_release_period > 0:
        result = CachePublisher(result, config.cache_release_period)

    return result