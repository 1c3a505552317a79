"""Access to the gas parameters shared by all addresses."""

from __future__ import annotations

import logging
from typing import Any

from .models import RecordNotFoundError, SharedSpec, default_shared_params

log = logging.getLogger(__name__)


class SharedParamsService:
    """Reads and writes shared parameters, storing the defaults when none exist."""

    def __init__(self, repo: Any):
        self.repo = repo
        try:
            self.get_shared_params()
        except RecordNotFoundError:
            self.set_shared_params(default_shared_params())

    def get_shared_params(self) -> SharedSpec:
        return self.repo.shared_params_repo.get_shared_params()

    def set_shared_params(self, params: SharedSpec) -> None:
        self.repo.shared_params_repo.set_shared_params(params)
        log.info("new shared params %s", params)