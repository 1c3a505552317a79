import random
import uuid

import pytest

from filmessager.models import Node, RecordNotFoundError
from filmessager.node_service import NodeService


class FakeNodeRepo:
    def __init__(self):
        self.rows = {}

    def save_node(self, node):
        self.rows[node.name] = node

    def get_node(self, name):
        try:
            return self.rows[name]
        except KeyError:
            raise RecordNotFoundError(name) from None

    def has_node(self, name):
        return name in self.rows

    def list_node(self):
        return list(self.rows.values())

    def del_node(self, name):
        self.rows.pop(name, None)


class RecordingDial:
    def __init__(self):
        self.dialed = []
        self.closed = 0

    def __call__(self, url, token):
        self.dialed.append((url, token))
        return object(), self._close

    def _close(self):
        self.closed += 1


def test_node_service():
    dial = RecordingDial()
    service = NodeService(FakeNodeRepo(), dial)

    node_cases = [
        Node(
            name=f"node-{i}",
            url=f"http://{i}",
            token="token",
            node_type=random.randint(1, 2),
        )
        for i in range(10)
    ]
    node_map = {n.name: n for n in node_cases}

    for node in node_cases:
        service.save_node(node)
    assert len(dial.dialed) == 10
    assert dial.closed == 10

    for node in node_cases:
        got = service.get_node(node.name)
        assert got == node_map[got.name]
        assert service.has_node(got.name) is True

    with pytest.raises(RecordNotFoundError):
        service.get_node(str(uuid.uuid4()))
    assert service.has_node(str(uuid.uuid4())) is False

    nodes = service.list_node()
    assert len(nodes) == len(node_cases)
    for n in nodes:
        assert n == node_map[n.name]

    service.delete_node(node_cases[0].name)
    assert service.has_node(node_cases[0].name) is False


def test_save_node_unreachable_is_not_stored():
    def failing_dial(url, token):
        raise ConnectionError("refused")

    repo = FakeNodeRepo()
    service = NodeService(repo, failing_dial)
    with pytest.raises(ConnectionError):
        service.save_node(Node(name="bad", url="http://bad", token="token"))
    assert service.has_node("bad") is False


def test_save_node_without_dialer():
    service = NodeService(FakeNodeRepo())
    node = Node(name="plain", url="http://plain", token="token")
    service.save_node(node)
    assert service.get_node("plain") is node