import json

from filmessager.models import (
    AddressInfo,
    ChainMessage,
    Message,
    MessageState,
    SignedMessage,
    TipSet,
    default_shared_params,
    is_id_address,
)


def _msg(nonce=0, **kw):
    return ChainMessage(from_addr="f1sender", to="f1receiver", nonce=nonce, **kw)


def test_chain_message_cid_is_deterministic():
    first = _msg(3).cid()
    second = _msg(3).cid()
    assert first == second
    assert len({first, second, _msg(4).cid()}) == 2
    assert first != _msg(4).cid()


def test_chain_message_cid_changes_with_fields():
    base = _msg(1)
    assert base.cid() != _msg(2).cid()
    assert base.cid() != _msg(1, gas_limit=10).cid()
    assert base.cid() != _msg(1, params=b"\x01").cid()


def test_signed_message_cid_depends_on_signature():
    m = _msg(5)
    a = SignedMessage(m, b"sig-a")
    b = SignedMessage(m, b"sig-b")
    assert a.cid() == SignedMessage(_msg(5), b"sig-a").cid()
    assert a.cid() != b.cid()
    assert a.cid() != m.cid()


def test_tipset_key_and_round_trip():
    ts = TipSet(height=10, cids=("b1", "b2"), parents=("p1",), parent_base_fee=100, min_timestamp=7)
    assert ts.key() == ("b1", "b2")
    restored = TipSet.from_dict(json.loads(json.dumps(ts.to_dict())))
    assert restored == ts


def test_is_id_address():
    assert is_id_address("f01234")
    assert is_id_address("t0100")
    assert not is_id_address("f1abcdef")
    assert not is_id_address("f3xyz")
    assert not is_id_address("f0")


def test_default_shared_params():
    params = default_shared_params()
    assert params.id == 1
    assert params.gas_over_estimation == 1.25
    assert params.sel_msg_num == 20
    assert params.max_fee == 70_000_000_000_000_000
    assert params.gas_fee_cap == 0 and params.base_fee == 0


def test_default_shared_params_are_independent():
    a = default_shared_params()
    a.sel_msg_num = 1
    assert default_shared_params().sel_msg_num == 20


def test_message_defaults():
    msg = Message(id="x", message=_msg())
    assert msg.state is MessageState.UNFILL
    assert msg.signed_cid is None and msg.confidence == 0


def test_address_info_ids_unique():
    infos = [AddressInfo(addr="f1a") for _ in range(5)]
    assert len({info.id for info in infos}) == 5
    assert all(info.addr == "f1a" for info in infos)