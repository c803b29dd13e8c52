import sqlite3
from contextlib import closing
from datetime import datetime

import pytest

from rfmpd.storage import (
    ChannelNotEmptyError,
    ChannelNotFoundError,
    Database,
    StorageError,
    round_half_away,
)


@pytest.fixture
def db():
    database = Database(":memory:")
    yield database
    database.close()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "test.db")


def make_msg(msg_id, from_node, channel, body, seq):
    return {
        "id": msg_id,
        "from_node": from_node,
        "author": None,
        "timestamp": datetime.now().isoformat(timespec="seconds"),
        "channel": channel,
        "reply_to": None,
        "body": body,
        "seq": seq,
        "raw_frame": None,
    }


def inspect(path, sql, params=()):
    with closing(sqlite3.connect(path)) as conn:
        return conn.execute(sql, params).fetchall()


def test_open_empty(db):
    assert db.get_message_count() == 0


def test_save_message(db):
    assert db.save_message(make_msg("abc123", "N0CALL", "general", "hello", 1)) is True
    assert db.get_message_count() == 1


def test_save_message_deduplication(db):
    msg = make_msg("abc123", "N0CALL", "general", "hello", 1)
    db.save_message(msg)
    assert db.save_message(msg) is False
    assert db.get_message_count() == 1


def test_get_message(db):
    db.save_message(make_msg("msg001", "N0CALL", "general", "test body", 1))
    row = db.get_message("msg001")
    assert row is not None
    assert row.id == "msg001"
    assert row.body == "test body"
    assert row.seq == 1


def test_get_message_not_found(db):
    assert db.get_message("nonexistent") is None


def test_get_recent_messages_channel_filter(db):
    db.save_message(make_msg("m1", "N0CALL", "general", "one", 1))
    db.save_message(make_msg("m2", "N0CALL", "general", "two", 2))
    db.save_message(make_msg("m3", "N0CALL", "other", "three", 3))
    msgs = db.get_recent_messages(10, "general", None)
    assert len(msgs) == 2
    assert {m.channel for m in msgs} == {"general"}


def test_save_message_with_seq(db):
    is_new, seq = db.save_message_with_seq(make_msg("s1", "N0CALL", "general", "first", None), "N0CALL")
    assert is_new is True
    assert seq == 1
    _, seq2 = db.save_message_with_seq(make_msg("s2", "N0CALL", "general", "second", None), "N0CALL")
    assert seq2 == 2
    assert db.get_message("s2").seq == 2


def test_save_message_with_seq_duplicate_errors(db):
    msg = make_msg("dup-seq", "N0CALL", "general", "hello", None)
    assert db.save_message_with_seq(msg, "N0CALL") == (True, 1)
    with pytest.raises(StorageError):
        db.save_message_with_seq(msg, "N0CALL")


def test_mark_seen_if_new(db):
    assert db.mark_seen_if_new("msg1", None) is True
    assert db.mark_seen_if_new("msg1", None) is False


def test_mark_seen_if_new_with_fragment_index(db):
    assert db.mark_seen_if_new("msg1", 2) is True
    assert db.mark_seen_if_new("msg1", 2) is False
    assert db.mark_seen_if_new("msg1", 3) is True


def test_mark_seen(db):
    db.mark_seen("mark1", None, False)
    db.mark_seen("mark2", 2, True)
    assert db.mark_seen_if_new("mark1", None) is False
    assert db.mark_seen_if_new("mark2", 2) is False
    assert db.mark_seen_if_new("mark2", None) is True


def test_vector_clock(db):
    for msg_id, seq in (("a1", 1), ("a2", 2), ("a3", 3)):
        db.save_message(make_msg(msg_id, "NODE-A", "general", msg_id, seq))
    for msg_id, seq in (("b1", 1), ("b2", 2)):
        db.save_message(make_msg(msg_id, "NODE-B", "general", msg_id, seq))
    assert db.get_vector_clock() == {"NODE-A": 3, "NODE-B": 2}


def test_vector_clock_gap_detection(db):
    db.save_message(make_msg("a1", "NODE-A", "general", "a1", 1))
    db.save_message(make_msg("a2", "NODE-A", "general", "a2", 2))
    db.save_message(make_msg("a4", "NODE-A", "general", "a4", 4))
    assert db.get_vector_clock()["NODE-A"] == 2


def test_get_messages_after_seq(db):
    for msg_id, seq in (("a1", 1), ("a2", 2), ("a3", 3)):
        db.save_message(make_msg(msg_id, "NODE-A", "general", msg_id, seq))
    msgs = db.get_messages_after_seq("NODE-A", 1)
    assert [m.id for m in msgs] == ["a2", "a3"]


def test_get_messages_after_seq_no_results(db):
    db.save_message(make_msg("sq1", "N0CALL", "general", "only one", 1))
    assert db.get_messages_after_seq("N0CALL", 1) == []


def test_get_messages_after_seq_multiple(db):
    db.save_message(make_msg("ms1", "NODE-X", "general", "one", 1))
    db.save_message(make_msg("ms2", "NODE-X", "general", "two", 2))
    db.save_message(make_msg("ms3", "NODE-X", "general", "three", 3))
    db.save_message(make_msg("ms4", "NODE-Y", "general", "four", 1))
    assert len(db.get_messages_after_seq("NODE-X", 0)) == 3
    assert len(db.get_messages_after_seq("NODE-Y", 0)) == 1


def test_transmission_queue(db):
    db.queue_transmission("MSG", '{"test":"data"}', 0)
    tx = db.get_next_transmission()
    assert tx is not None
    assert tx["frame_type"] == "MSG"
    assert tx["frame_data"] == '{"test":"data"}'


def test_transmission_queue_empty(db):
    assert db.get_next_transmission() is None


def test_transmission_queue_future_schedule(db):
    db.queue_transmission("MSG", "{}", 3600)
    assert db.get_next_transmission() is None


def test_queue_transmission_negative_delay(db):
    db.queue_transmission("MSG", '{"test":"negative"}', -1.0)
    tx = db.get_next_transmission()
    assert tx is not None
    assert tx["frame_data"] == '{"test":"negative"}'


def test_get_next_transmission_claims_item(db):
    db.queue_transmission("MSG", "{}", 0)
    assert db.get_next_transmission() is not None
    assert db.get_next_transmission() is None


def test_mark_transmitted(db):
    db.queue_transmission("MSG", '{"body":"test"}', 0)
    tx = db.get_next_transmission()
    assert tx is not None
    db.mark_transmitted(tx["id"])
    assert db.get_next_transmission() is None


def test_mark_transmission_failed(db_path):
    with Database(db_path) as database:
        database.queue_transmission("MSG", "{}", 0)
        item_id = database.get_next_transmission()["id"]

        database.mark_transmission_failed(item_id, 3)
        assert inspect(db_path, "SELECT status, attempts FROM transmission_queue") == [("pending", 1)]
        assert database.get_next_transmission() is None

        database.mark_transmission_failed(item_id, 3)
        assert inspect(db_path, "SELECT status, attempts FROM transmission_queue") == [("pending", 2)]

        database.mark_transmission_failed(item_id, 3)
        assert inspect(db_path, "SELECT status, attempts FROM transmission_queue") == [("failed", 3)]


def test_cleanup_transmission_queue_keeps_pending(db):
    db.queue_transmission("MSG", "{}", 0)
    db.cleanup_transmission_queue()
    tx = db.get_next_transmission()
    assert tx is not None
    assert tx["frame_type"] == "MSG"


def test_channels(db):
    db.create_channel("test-chan")
    channels = db.get_channels()
    assert len(channels) == 1
    assert channels[0]["name"] == "test-chan"
    assert channels[0]["message_count"] == 0


def test_delete_channel_empty(db):
    db.create_channel("empty-chan")
    db.delete_channel("empty-chan")
    assert db.get_channels() == []


def test_delete_channel_with_messages(db):
    db.save_message(make_msg("m1", "N0CALL", "has-msgs", "hello", 1))
    with pytest.raises(ChannelNotEmptyError):
        db.delete_channel("has-msgs")


def test_delete_channel_not_found(db):
    with pytest.raises(ChannelNotFoundError) as info:
        db.delete_channel("nonexistent")
    assert str(info.value) == "channel not found"


def test_save_fragment(db_path):
    with Database(db_path) as database:
        database.save_fragment("frag-msg", 0, 3, b"chunk0")
        database.save_fragment("frag-msg", 1, 3, b"chunk1")
        database.save_fragment("frag-msg", 1, 3, b"other")
    rows = inspect(db_path, "SELECT idx, data FROM fragments ORDER BY idx")
    assert rows == [(0, b"chunk0"), (1, b"chunk1")]


def test_cleanup_old_fragments(db):
    db.save_fragment("old-msg", 0, 2, b"data")
    assert db.cleanup_old_fragments(3600) == 0
    assert db.cleanup_old_fragments(-1) == 1


def test_get_active_nodes(db):
    db.save_message(make_msg("n1", "ALPHA", "general", "hi", 1))
    db.save_message(make_msg("n2", "BRAVO", "general", "hey", 1))
    nodes = db.get_active_nodes(86400)
    assert sorted(n["callsign"] for n in nodes) == ["ALPHA", "BRAVO"]


def test_get_active_nodes_empty(db):
    assert db.get_active_nodes(86400) == []


def test_update_node_sync(db):
    db.save_message(make_msg("ns1", "SYNC-NODE", "general", "hi", 1))
    db.update_node_sync("SYNC-NODE")
    nodes = {n["callsign"]: n for n in db.get_active_nodes(86400)}
    assert "SYNC-NODE" in nodes
    assert nodes["SYNC-NODE"]["sync_count"] == 1
    assert nodes["SYNC-NODE"]["message_count"] == 1
    assert nodes["SYNC-NODE"]["last_sync"] is not None


def test_get_message_for_api(db):
    db.save_message(make_msg("api1", "N0CALL", "general", "api test", 1))
    msg = db.get_message_for_api("api1")
    assert msg is not None
    assert msg["id"] == "api1"
    assert msg["body"] == "api test"
    assert msg["transmitted_at"] is None


def test_get_message_for_api_not_found(db):
    assert db.get_message_for_api("nonexistent") is None


def test_get_recent_messages_for_api(db):
    db.save_message(make_msg("r1", "N0CALL", "general", "one", 1))
    db.save_message(make_msg("r2", "N0CALL", "general", "two", 2))
    db.save_message(make_msg("r3", "N0CALL", "other", "three", 3))
    assert len(db.get_recent_messages_for_api(10, None, None)) == 3
    assert len(db.get_recent_messages_for_api(10, "general", None)) == 2
    assert len(db.get_recent_messages_for_api(1, None, "N0CALL")) == 1


def test_cleanup_seen_cache(db):
    db.mark_seen_if_new("seen1", None)
    db.mark_seen_if_new("seen2", None)
    assert db.cleanup_seen_cache(3600) == 0
    assert db.mark_seen_if_new("seen1", None) is False
    assert db.cleanup_seen_cache(-1) == 2
    assert db.mark_seen_if_new("seen1", None) is True


def test_mark_message_transmitted(db):
    db.save_message(make_msg("tx1", "N0CALL", "general", "hello", 1))
    before = db.get_message_for_api("tx1")
    assert before["transmitted_at"] is None
    assert db.get_message("tx1").transmitted_at is None

    db.mark_message_transmitted("tx1")

    after = db.get_message_for_api("tx1")
    assert isinstance(after["transmitted_at"], str)
    assert len(after["transmitted_at"]) >= 19
    row = db.get_message("tx1")
    assert isinstance(row.transmitted_at, int)
    assert row.transmitted_at >= row.received_at


def test_increment_rebroadcast_count(db_path):
    with Database(db_path) as database:
        database.save_message(make_msg("rb1", "N0CALL", "general", "hello", 1))
        database.increment_rebroadcast_count("rb1")
        database.increment_rebroadcast_count("rb1")
    assert inspect(db_path, "SELECT rebroadcast_count FROM messages WHERE id = ?", ("rb1",)) == [(2,)]


def test_update_user_stats(db_path):
    with Database(db_path) as database:
        database.update_user_stats("testuser")
        database.update_user_stats("testuser")
    assert inspect(db_path, "SELECT username, message_count FROM users") == [("testuser", 2)]


def test_get_recent_messages_from_node_filter(db):
    db.save_message(make_msg("fn1", "ALPHA", "general", "from alpha", 1))
    db.save_message(make_msg("fn2", "BRAVO", "general", "from bravo", 2))
    msgs = db.get_recent_messages(10, None, "ALPHA")
    assert len(msgs) == 1
    assert msgs[0].from_node == "ALPHA"


def test_get_recent_messages_both_filters(db):
    db.save_message(make_msg("bf1", "ALPHA", "general", "alpha general", 1))
    db.save_message(make_msg("bf2", "ALPHA", "other", "alpha other", 2))
    db.save_message(make_msg("bf3", "BRAVO", "general", "bravo general", 3))
    msgs = db.get_recent_messages(10, "general", "ALPHA")
    assert [m.id for m in msgs] == ["bf1"]


def test_get_channels_multiple_with_stats(db):
    db.save_message(make_msg("ch1", "ALPHA", "general", "hello", 1))
    db.save_message(make_msg("ch2", "BRAVO", "general", "world", 2))
    db.save_message(make_msg("ch3", "ALPHA", "other-ch", "hi", 3))
    channels = {c["name"]: c for c in db.get_channels()}
    assert set(channels) == {"general", "other-ch"}
    assert channels["general"]["message_count"] >= 2
    assert channels["general"]["unique_nodes"] == 2


def test_save_message_updates_channel_and_node_stats(db):
    db.save_message(make_msg("stat1", "ALPHA", "test-ch", "first", 1))
    db.save_message(make_msg("stat2", "BRAVO", "test-ch", "second", 2))
    channels = {c["name"]: c for c in db.get_channels()}
    assert channels["test-ch"]["message_count"] == 2
    assert len(db.get_active_nodes(86400)) >= 2


def test_get_active_nodes_with_sync_data(db):
    db.save_message(make_msg("nd1", "NODE-A", "general", "hi", 1))
    db.update_node_sync("NODE-A")
    nodes = db.get_active_nodes(86400)
    assert len(nodes) == 1
    assert nodes[0]["sync_count"] == 1


def test_open_and_close():
    database = Database(":memory:")
    database.close()
    with pytest.raises(StorageError):
        database.get_message_count()


def test_open_file_reopen_keeps_messages_and_resets_seen_cache(db_path):
    with Database(db_path) as database:
        database.save_message(make_msg("p1", "N0CALL", "general", "persist", 1))
        assert database.mark_seen_if_new("p1", None) is True
    with Database(db_path) as database:
        assert database.get_message_count() == 1
        assert database.get_message("p1").body == "persist"
        assert database.mark_seen_if_new("p1", None) is True


def test_error_paths_closed_db():
    database = Database(":memory:")
    database.save_message(make_msg("err1", "N0CALL", "general", "hi", 1))
    database.close()

    calls = [
        lambda: database.get_recent_messages(10, None, None),
        lambda: database.get_messages_after_seq("N0CALL", 0),
        lambda: database.get_active_nodes(86400),
        database.get_channels,
        database.get_vector_clock,
        lambda: database.queue_transmission("MSG", "{}", 0),
        database.get_next_transmission,
        database.get_message_count,
    ]
    for call in calls:
        with pytest.raises(StorageError):
            call()

    # These log their failures instead of raising.
    assert database.update_user_stats("user") is None
    assert database.update_node_sync("NODE") is None
    assert database.cleanup_transmission_queue() is None


@pytest.mark.parametrize(
    "value, expected",
    [(1.5, 2), (1.4, 1), (-1.5, -2), (-1.4, -1), (0, 0)],
)
def test_round_half_away(value, expected):
    assert round_half_away(value) == expected