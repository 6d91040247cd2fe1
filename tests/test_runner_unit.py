import functools
import json

import httpx
import pytest

import dropswarm.trader.runner as runner
from dropswarm.chain.rpc import LedgerRpc
from dropswarm.utils import database
from dropswarm.utils.config_loader import METADATA_PROGRAM_ID, PUMP_PROGRAM_ID


def _cfg(keys_dir) -> dict:
    return {
        "bot": {
            "agent_count": 2,
            "buy_interval": 0.01,
            "spend_limit": 1,
            "mcap_threshold": 50000,
            "token_name": "Foo",
            "token_ticker": "FOO",
            "start_buy": 0.1,
        },
        "ledger": {
            "rpc_url": "https://rpc.test",
            "program_id": PUMP_PROGRAM_ID,
            "metadata_program_id": METADATA_PROGRAM_ID,
            "max_retries": 0,
        },
        "trading": {"mode": "paper"},
        "keys": {"directory": str(keys_dir)},
    }


@pytest.fixture
def events_db(tmp_path):
    database.set_db_path(tmp_path / "events.db")
    yield database
    database.close_write_conn()


def _mock_ledger(monkeypatch, handler):
    monkeypatch.setattr(runner, "LedgerRpc", functools.partial(LedgerRpc, transport=httpx.MockTransport(handler)))


def _signatures(request):
    body = json.loads(request.content)
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": []})


@pytest.mark.asyncio
async def test_run_without_keys_exits_with_failure(tmp_path, monkeypatch, events_db):
    _mock_ledger(monkeypatch, _signatures)
    keys = tmp_path / "keys"
    keys.mkdir()

    assert await runner.run_bot(_cfg(keys), seed=1) == 1

    events = events_db.get_events()
    assert "No keys available." in list(events["message"])


@pytest.mark.asyncio
async def test_run_with_unreachable_ledger_exits_with_failure(tmp_path, monkeypatch, events_db):
    _mock_ledger(monkeypatch, lambda request: httpx.Response(503))
    assert await runner.run_bot(_cfg(tmp_path), seed=1) == 1

    messages = list(events_db.get_events()["message"])
    assert any("Failed to subscribe to logs" in m for m in messages)


def test_relative_keys_directory_resolves_from_project_root():
    path = runner._keys_dir({"keys": {"directory": "keys"}})
    assert path.is_absolute()
    assert path.name == "keys"
    assert (path.parent / "dropswarm").is_dir()


def test_cli_without_command_prints_help(capsys):
    runner.main([])
    assert "start" in capsys.readouterr().out
