from datetime import datetime, timezone

import pytest

from rfmpd.frames import Frag, Msg, Svec
from rfmpd.message import InvalidFrameError, UnknownFrameTypeError, generate_message_id
from rfmpd.parser import decode, decode_msg_raw, encode, encode_msg_raw

TEST_ID = bytes([0xAB, 0xCD, 0xEF, 0x01, 0x23, 0x45])
TEST_TIME = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


def _msg(**overrides):
    values = dict(id=TEST_ID, from_node="N0CALL", time=TEST_TIME, channel="general", body="Hello world")
    values.update(overrides)
    return Msg(**values)


def test_encode_msg_basic_round_trip():
    encoded = encode(_msg())
    assert len(encoded) > 0
    decoded = decode(encoded)
    assert isinstance(decoded, Msg)
    assert decoded.id == TEST_ID
    assert decoded.from_node == "N0CALL"
    assert decoded.time == TEST_TIME
    assert decoded.channel == "general"
    assert decoded.body == "Hello world"
    assert decoded.reply_to is None
    assert decoded.seq is None


def test_encode_msg_with_reply_and_seq():
    reply_id = bytes([0xFE, 0xDC, 0xBA, 0x98, 0x76, 0x54])
    msg = _msg(from_node="N0CALL-1", reply_to=reply_id, body="Reply here", seq=5)
    decoded = decode(encode(msg))
    assert decoded.reply_to == reply_id
    assert decoded.seq == 5


def test_encode_msg_utf8_body():
    msg = _msg(body="Café ☕ hello|world 50% off")
    assert decode(encode(msg)).body == msg.body


def test_encode_msg_author_round_trip():
    decoded = decode(encode(_msg(author="Doug")))
    assert decoded.author == "Doug"


def test_encode_frag_round_trip():
    frag = Frag(message_id=TEST_ID, idx=1, total=3, data=b"some raw protobuf bytes here")
    decoded = decode(encode(frag))
    assert isinstance(decoded, Frag)
    assert decoded.message_id == TEST_ID
    assert decoded.idx == 1
    assert decoded.total == 3
    assert decoded.data == b"some raw protobuf bytes here"


def test_encode_svec_round_trip():
    svec = Svec(from_node="N0CALL", vector={"KD2ABC": 3, "N0CALL": 12, "W1AW": 7, "N0CALL-1": 5})
    decoded = decode(encode(svec))
    assert isinstance(decoded, Svec)
    assert decoded.from_node == "N0CALL"
    assert decoded.vector == {"KD2ABC": 3, "N0CALL": 12, "W1AW": 7, "N0CALL-1": 5}


@pytest.mark.parametrize("data", [b"", b"\xff\xff\xff", None])
def test_decode_invalid_data(data):
    with pytest.raises(InvalidFrameError):
        decode(data)


def test_encode_compactness():
    assert len(encode(_msg())) <= 60


def test_encode_compactness_benchmark():
    msg_id = generate_message_id("N0CALL", 1705320000, "Hello world")
    assert len(encode(_msg(id=msg_id))) <= 50

    body = "x" * 140
    long_id = generate_message_id("N0CALL", 1705320000, body)
    assert len(encode(_msg(id=long_id, body=body))) <= 185

    svec = Svec(
        from_node="N0CALL",
        vector={"KD2ABC": 3, "N0CALL": 12, "W1AW": 7, "AB1CDE": 22, "N0XYZ": 9},
    )
    assert len(encode(svec)) <= 75


def test_encode_msg_raw_round_trip():
    data = encode_msg_raw(_msg(body="raw encoding test"))
    assert data
    assert decode_msg_raw(data).body == "raw encoding test"


def test_decode_msg_raw_invalid_data():
    with pytest.raises(InvalidFrameError):
        decode_msg_raw(b"\xff\xff\xff")


def test_decode_valid_frag():
    frag = Frag(message_id=TEST_ID, idx=0, total=3, data=b"test")
    decoded = decode(encode(frag))
    assert decoded == frag


def test_decode_frag_with_zero_total_is_invalid():
    encoded = encode(Frag(message_id=TEST_ID, idx=0, total=0, data=b"x"))
    with pytest.raises(InvalidFrameError):
        decode(encoded)


def test_decode_frag_with_too_many_fragments_is_invalid():
    encoded = encode(Frag(message_id=TEST_ID, idx=0, total=256, data=b"x"))
    with pytest.raises(InvalidFrameError):
        decode(encoded)


def test_decode_msg_with_short_id_is_invalid():
    encoded = encode(_msg(id=b"\x01\x02"))
    with pytest.raises(InvalidFrameError):
        decode(encoded)


def test_decode_skips_unknown_fields():
    encoded = encode(_msg()) + b"\x50\x01"
    assert decode(encoded).body == "Hello world"


def test_encode_unknown_type():
    with pytest.raises(UnknownFrameTypeError):
        encode("not a frame")