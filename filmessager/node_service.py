"""Management of the chain nodes messages are pushed to."""

from __future__ import annotations

import logging
from typing import Any, Callable

from .models import Node

log = logging.getLogger(__name__)

Dialer = Callable[[str, str], "tuple[Any, Callable[[], None]]"]


class NodeService:
    """Stores nodes in a node repository, checking they can be reached first."""

    def __init__(self, repo: Any, dial: Dialer | None = None):
        self.repo = repo
        self._dial = dial

    def save_node(self, node: Node) -> None:
        """Try to connect to the node, then store it."""
        if self._dial is not None:
            _, closer = self._dial(node.url, node.token)
            closer()
        self.repo.save_node(node)
        log.info("add node %s", node.name)

    def get_node(self, name: str) -> Node:
        return self.repo.get_node(name)

    def has_node(self, name: str) -> bool:
        return bool(self.repo.has_node(name))

    def list_node(self) -> list[Node]:
        return list(self.repo.list_node())

    def delete_node(self, name: str) -> None:
        self.repo.del_node(name)
        log.info("delete node %s", name)