import pytest

from filmessager.models import RecordNotFoundError, SharedSpec, default_shared_params
from filmessager.shared_params import SharedParamsService


class FakeSharedParamsRepo:
    def __init__(self, stored=None, error=None):
        self.stored = stored
        self.error = error
        self.writes = 0

    def get_shared_params(self):
        if self.error is not None:
            raise self.error
        if self.stored is None:
            raise RecordNotFoundError("shared params")
        return self.stored

    def set_shared_params(self, params):
        self.writes += 1
        self.stored = params
        return params.id


class FakeRepo:
    def __init__(self, shared_params_repo):
        self.shared_params_repo = shared_params_repo


def test_defaults_stored_when_missing():
    params_repo = FakeSharedParamsRepo()
    service = SharedParamsService(FakeRepo(params_repo))
    assert params_repo.writes == 1
    assert service.get_shared_params() == default_shared_params()


def test_default_values_fixed_by_source():
    spec = default_shared_params()
    assert spec.gas_over_estimation == 1.25
    assert spec.sel_msg_num == 20
    assert spec.max_fee == 70_000_000_000_000_000


def test_existing_params_kept():
    existing = SharedSpec(id=1, sel_msg_num=5)
    params_repo = FakeSharedParamsRepo(stored=existing)
    service = SharedParamsService(FakeRepo(params_repo))
    assert params_repo.writes == 0
    assert service.get_shared_params() is existing


def test_other_errors_propagate():
    params_repo = FakeSharedParamsRepo(error=RuntimeError("database down"))
    with pytest.raises(RuntimeError, match="database down"):
        SharedParamsService(FakeRepo(params_repo))


def test_set_then_get_round_trip():
    params_repo = FakeSharedParamsRepo()
    service = SharedParamsService(FakeRepo(params_repo))
    new = SharedSpec(id=1, gas_over_estimation=2.0, max_fee=123, sel_msg_num=9)
    service.set_shared_params(new)
    assert service.get_shared_params() == new