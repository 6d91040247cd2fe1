import pytest

from dropswarm.utils import database


@pytest.fixture
def db(tmp_path):
    database.set_db_path(tmp_path / "events.db")
    database.init_db()
    yield database
    database.close_write_conn()


def test_events_round_trip_newest_first(db):
    db.log_event("INFO", "[Agent 1] Started with public key: Wallet1", symbol="Agent 1", step="Status")
    db.log_event("ERROR", "[Agent 1] Error buying the token: boom", symbol="Agent 1", step="Status")
    db.force_commit()

    events = db.get_events(limit=10)
    assert list(events["level"]) == ["ERROR", "INFO"]
    assert events.iloc[0]["symbol"] == "Agent 1"


def test_trades_can_be_filtered_by_agent(db):
    db.record_trade(1, "MintM", "BUY", 0.1, "sig-1", "OK")
    db.record_trade(2, "MintM", "BUY", 0.2, None, "FAILED")
    db.record_trade(1, "MintM", "SELL", 1000.0, "sig-3", "OK")
    db.force_commit()

    assert len(db.get_trades()) == 3
    mine = db.get_trades(agent_id=1)
    assert list(mine["action"]) == ["BUY", "SELL"]
    assert list(mine["signature"]) == ["sig-1", "sig-3"]


def test_init_db_is_idempotent(db):
    db.init_db()
    db.record_trade(1, "MintM", "BUY", 0.1, "sig-1", "OK")
    db.close_write_conn()
    assert len(db.get_trades()) == 1


def test_reads_from_missing_schema_return_empty_frames(tmp_path):
    database.set_db_path(tmp_path / "empty.db")
    try:
        assert database.get_events().empty
        assert database.get_trades().empty
    finally:
        database.close_write_conn()
