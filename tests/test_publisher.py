import json
import queue
import threading
import time

import pytest

from filmessager.models import ChainMessage, Node, SignedMessage
from filmessager.publisher import (
    CachePublisher,
    ConcurrentPublisher,
    MergePublisher,
    MessagePublisher,
    MessageReceiver,
    P2pPublisher,
    PublisherConfig,
    RpcPublisher,
    build_publisher,
    group_by_address,
)


def make_signed(count, sender="f1sender"):
    return [
        SignedMessage(ChainMessage(from_addr=sender, to="f1receiver", nonce=i, value=i), b"sig%d" % i)
        for i in range(count)
    ]


class Recorder(MessagePublisher):
    def __init__(self, fail=False):
        self.calls = []
        self.fail = fail
        self.cond = threading.Condition()

    def publish_messages(self, msgs):
        with self.cond:
            self.calls.append(list(msgs))
            self.cond.notify_all()
        if self.fail:
            raise RuntimeError("boom")

    def wait_calls(self, n, timeout=5.0):
        with self.cond:
            return self.cond.wait_for(lambda: len(self.calls) >= n, timeout)


class FakeNode:
    def __init__(self, fail_first=False):
        self.pushed = []
        self.fail_first = fail_first
        self.cond = threading.Condition()

    def mpool_batch_push_untrusted(self, msgs):
        with self.cond:
            self.pushed.append(list(msgs))
            self.cond.notify_all()
            if self.fail_first and len(self.pushed) == 1:
                raise RuntimeError("node unavailable")
        return []

    def wait(self, n, timeout=5.0):
        with self.cond:
            return self.cond.wait_for(lambda: len(self.pushed) >= n, timeout)


class FakeProvider:
    def __init__(self):
        self.nodes = []

    def list_node(self):
        return list(self.nodes)


def test_main_node_publish_message():
    main = FakeNode()
    msgs = make_signed(10)
    with RpcPublisher(main) as rpc:
        MergePublisher(rpc).publish_messages(msgs)
        assert main.wait(1)
        time.sleep(0.2)
        assert main.pushed == [msgs]


def test_main_node_error_does_not_stop_pushing():
    main = FakeNode(fail_first=True)
    msgs = make_signed(2)
    with RpcPublisher(main) as rpc:
        rpc.publish_messages(msgs)
        rpc.publish_messages(msgs)
        assert main.wait(2)
        assert len(main.pushed) == 2


def test_multi_node_publish_message():
    msgs = make_signed(5)
    main = FakeNode()
    servers = [FakeNode() for _ in range(4)]
    nodes = [Node(name=f"node_{i}", url=f"/ip4/127.0.0.1/tcp/{4000 + i}", token="token") for i in range(4)]
    by_url = {node.url: server for node, server in zip(nodes, servers)}
    closed = []

    def dial(url, token):
        return by_url[url], lambda: closed.append(url)

    provider = FakeProvider()
    rpc = RpcPublisher(main, provider, True, dial)
    try:
        provider.nodes = nodes[:3]
        rpc.publish_messages(msgs)
        for srv in servers[:3]:
            assert srv.wait(1)
        assert servers[3].pushed == []

        provider.nodes = nodes[1:2]
        rpc.publish_messages(msgs)
        assert servers[1].wait(2)
        assert sorted(closed) == sorted([nodes[0].url, nodes[2].url])
        assert len(servers[0].pushed) == 1
        assert len(servers[2].pushed) == 1

        provider.nodes = nodes[:4]
        rpc.publish_messages(msgs)
        assert servers[0].wait(2)
        assert servers[1].wait(3)
        assert servers[2].wait(2)
        assert servers[3].wait(1)
        assert servers[3].pushed == [msgs]
        assert main.wait(3)
    finally:
        rpc.close()
    assert len(closed) == 6


def test_multi_node_dial_failure_skips_node():
    msgs = make_signed(1)
    good = FakeNode()
    nodes = [Node(name="bad", url="bad", token="token"), Node(name="good", url="good", token="token")]

    def dial(url, token):
        if url == "bad":
            raise ConnectionError("refused")
        return good, lambda: None

    provider = FakeProvider()
    provider.nodes = nodes
    with RpcPublisher(FakeNode(), provider, True, dial) as rpc:
        rpc.publish_messages(msgs)
        assert good.wait(1)
        assert good.pushed == [msgs]


def test_multi_node_requires_dial():
    with pytest.raises(ValueError):
        RpcPublisher(FakeNode(), FakeProvider(), True)


def test_merge_publisher():
    p1, p2 = Recorder(), Recorder()
    msgs = make_signed(10)
    MergePublisher(p1, p2).publish_messages(msgs)
    assert p1.calls == [msgs]
    assert p2.calls == [msgs]


def test_merge_publisher_ignores_failing_sub():
    p1, p2 = Recorder(fail=True), Recorder()
    merge = MergePublisher(p1)
    merge.add_publisher(p2)
    msgs = make_signed(3)
    merge.publish_messages(msgs)
    assert p2.calls == [msgs]


def test_merge_publisher_without_subs():
    with pytest.raises(ValueError):
        MergePublisher().publish_messages(make_signed(1))


def test_msg_cache():
    sub = Recorder()
    msgs = make_signed(10)
    with CachePublisher(sub, 1) as publisher:
        publisher.publish_messages(msgs[:4])
        assert sub.wait_calls(1)
        assert sub.calls[0] == msgs[:4]

        publisher.publish_messages(msgs)
        assert sub.wait_calls(2)
        assert sub.calls[1] == msgs[4:]

        publisher.publish_messages(msgs)
        time.sleep(0.3)
        assert len(sub.calls) == 2

        time.sleep(2.5)
        publisher.publish_messages(msgs)
        assert sub.wait_calls(3)
        assert sub.calls[2] == msgs


def test_cache_publisher_rejects_zero_period():
    with pytest.raises(ValueError):
        CachePublisher(Recorder(), 0)


def test_concurrent_publisher():
    sub = Recorder()
    msgs = make_signed(10)
    with ConcurrentPublisher(sub, 2) as publisher:
        publisher.publish_messages(msgs)
        assert sub.wait_calls(1)
        time.sleep(0.2)
        assert sub.calls == [msgs]


def test_concurrent_publisher_requires_sub():
    with pytest.raises(ValueError):
        ConcurrentPublisher(None, 2)


def test_integrate():
    p1, p2 = Recorder(), Recorder()
    merge = MergePublisher(p1, p2)
    concurrent = ConcurrentPublisher(merge, 2)
    cache = CachePublisher(concurrent, 5)
    msgs = make_signed(10)
    try:
        cache.publish_messages(msgs)
        assert p1.wait_calls(1) and p2.wait_calls(1)
        assert p1.calls == [msgs]
        assert p2.calls == [msgs]
    finally:
        cache.close()
        concurrent.close()


def test_p2p_publisher():
    published = []

    class Topic:
        def publish(self, data):
            published.append(data)

    class PubSub:
        def __init__(self):
            self.joined = []

        def get_topic(self, name):
            self.joined.append(name)
            return Topic()

    ps = PubSub()
    publisher = P2pPublisher(ps, "testnet")
    msgs = make_signed(3)
    publisher.publish_messages(msgs)
    assert ps.joined == ["/fil/msgs/testnet"]
    assert [json.loads(d)["message"]["nonce"] for d in published] == [0, 1, 2]


def test_p2p_publisher_wraps_errors():
    class Topic:
        def publish(self, data):
            raise OSError("down")

    class PubSub:
        def get_topic(self, name):
            return Topic()

    with pytest.raises(RuntimeError, match="publish message"):
        P2pPublisher(PubSub(), "testnet").publish_messages(make_signed(1))


def test_group_by_address():
    a = make_signed(2, "f1a")
    b = make_signed(1, "f1b")
    groups = group_by_address([a[0], b[0], a[1]])
    assert groups == {"f1a": a, "f1b": b}


def test_message_receiver_sorts_by_nonce_per_address():
    sub = Recorder()
    a = make_signed(3, "f1a")
    b = make_signed(2, "f1b")
    with MessageReceiver(sub) as receiver:
        receiver.put([a[2], b[1], a[0], b[0], a[1]])
        assert sub.wait_calls(2)
    by_sender = {call[0].message.from_addr: call for call in sub.calls}
    assert by_sender["f1a"] == a
    assert by_sender["f1b"] == b


def test_message_receiver_full():
    blocker = threading.Event()

    class Slow(MessagePublisher):
        def publish_messages(self, msgs):
            blocker.wait(5)

    receiver = MessageReceiver(Slow(), maxsize=1)
    try:
        receiver.put(make_signed(1))
        time.sleep(0.3)
        receiver.put(make_signed(1))
        with pytest.raises(queue.Full):
            receiver.put(make_signed(1))
    finally:
        blocker.set()
        receiver.close()


def test_build_publisher_default_cache_period():
    rpc = Recorder()
    result = build_publisher(PublisherConfig(concurrency=2, cache_release_period=0), 30, rpc)
    try:
        assert isinstance(result, CachePublisher)
        assert result.release_period == 10
        assert isinstance(result.sub_publisher, ConcurrentPublisher)
        assert result.sub_publisher.concurrency == 2
    finally:
        result.sub_publisher.close()
        result.close()


def test_build_publisher_cache_period_minimum_and_explicit():
    small = build_publisher(PublisherConfig(concurrency=0, cache_release_period=0), 2, Recorder())
    explicit = build_publisher(PublisherConfig(concurrency=0, cache_release_period=7), 30, Recorder())
    try:
        assert small.release_period == 1
        assert explicit.release_period == 7
        assert isinstance(explicit.sub_publisher, MergePublisher)
    finally:
        small.close()
        explicit.close()


def test_build_publisher_without_cache_and_concurrency():
    rpc = Recorder()
    result = build_publisher(PublisherConfig(concurrency=0, cache_release_period=-1), 30, rpc)
    msgs = make_signed(2)
    result.publish_messages(msgs)
    assert isinstance(result, MergePublisher)
    assert rpc.calls == [msgs]


def test_build_publisher_with_p2p():
    rpc, p2p = Recorder(), Recorder()
    config = PublisherConfig(enable_p2p=True, concurrency=0, cache_release_period=-1)
    msgs = make_signed(1)
    build_publisher(config, 30, rpc, p2p).publish_messages(msgs)
    assert p2p.calls == [msgs]
    with pytest.raises(ValueError):
        build_publisher(config, 30, rpc)


def test_build_publisher_end_to_end():
    node = FakeNode()
    msgs = make_signed(4)
    rpc = RpcPublisher(node)
    result = build_publisher(PublisherConfig(concurrency=1, cache_release_period=1), 30, rpc)
    try:
        result.publish_messages(msgs)
        assert node.wait(1)
        assert node.pushed == [msgs]
    finally:
        result.sub_publisher.close()
        result.close()
        rpc.close()