import pytest

from filmessager.cache import MAX_STORE_TIPSET_COUNT, TipsetCache
from filmessager.models import TipSet


def _tipset(height: int) -> TipSet:
    return TipSet(
        height=height,
        cids=(f"block-{height}-a", f"block-{height}-b"),
        parents=(f"block-{height - 1}-a",),
        parent_base_fee=100 + height,
        min_timestamp=1_600_000_000 + height,
    )


def test_read_and_write_tipset(tmp_path):
    ts_cache = TipsetCache()
    for height in (10, 11, 12):
        ts_cache.add(_tipset(height))
        ts_cache.curr_height = height
    ts_cache.network_name = "testnet"

    path = tmp_path / "tipset.json"
    ts_cache.save(path)

    loaded = TipsetCache()
    loaded.load(path)
    assert loaded.cache == ts_cache.cache
    assert loaded.curr_height == ts_cache.curr_height
    assert loaded.network_name == "testnet"


def test_load_missing_file_keeps_empty_cache(tmp_path):
    ts_cache = TipsetCache()
    ts_cache.load(tmp_path / "absent.json")
    assert ts_cache.cache == {}
    assert ts_cache.curr_height == 0
    assert ts_cache.network_name == ""


def test_load_invalid_file_raises(tmp_path):
    path = tmp_path / "tipset.json"
    path.write_text("not json")
    with pytest.raises(ValueError):
        TipsetCache().load(path)


def test_add_replaces_same_height_and_list_returns_all():
    ts_cache = TipsetCache()
    ts_cache.add(_tipset(1), _tipset(2))
    replacement = TipSet(height=2, cids=("other",))
    ts_cache.add(replacement)
    listed = sorted(ts_cache.list(), key=lambda ts: ts.height)
    assert listed == [_tipset(1), replacement]


def test_save_drops_old_tipsets_when_full(tmp_path):
    ts_cache = TipsetCache()
    top = MAX_STORE_TIPSET_COUNT + 100
    ts_cache.add(*(_tipset(h) for h in range(1, top + 1)))
    ts_cache.curr_height = top
    ts_cache.save(tmp_path / "tipset.json")

    min_height = top - MAX_STORE_TIPSET_COUNT
    heights = {ts.height for ts in ts_cache.list()}
    assert min(heights) == min_height
    assert max(heights) == top
    assert all(h >= min_height for h in heights)


def test_save_keeps_everything_below_limit(tmp_path):
    ts_cache = TipsetCache()
    ts_cache.add(*(_tipset(h) for h in range(1, 11)))
    ts_cache.curr_height = 5000
    path = tmp_path / "tipset.json"
    ts_cache.save(path)

    loaded = TipsetCache()
    loaded.load(path)
    assert sorted(loaded.cache) == list(range(1, 11))