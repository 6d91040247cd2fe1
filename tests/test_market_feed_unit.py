import httpx
import pytest

from conftest import wait_until
from dropswarm.domain.models import AssetMetadata
from dropswarm.trading.market_feed import MarketFeed, metadata_from_coin_info

CURRENT = AssetMetadata(mint="MintM", symbol="FOO", market_cap=0.0)


def _feed(handler, published, **kwargs):
    async def publish(meta):
        published.append(meta)

    return MarketFeed(
        "https://coins.test/coins/{mint}",
        publish,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def test_coin_info_keeps_mint_and_reads_valuation():
    fresh = metadata_from_coin_info(CURRENT, {"mint": "Other", "symbol": "FOO", "usd_market_cap": 51234.5, "raydium_pool": None})
    assert fresh == AssetMetadata(mint="MintM", symbol="FOO", market_cap=51234.5, pool=None)

    graduated = metadata_from_coin_info(fresh, {"raydium_pool": "PoolAddr"})
    assert graduated.market_cap == 51234.5
    assert graduated.pool == "PoolAddr"


@pytest.mark.asyncio
async def test_refresh_publishes_a_new_snapshot():
    seen = []

    def handler(request):
        seen.append(str(request.url))
        return httpx.Response(200, json={"symbol": "FOO", "usd_market_cap": 60000})

    published: list = []
    feed = _feed(handler, published)
    fresh = await feed.refresh(CURRENT)
    await feed.stop()

    assert seen == ["https://coins.test/coins/MintM"]
    assert fresh.market_cap == 60000.0
    assert published == [fresh]


@pytest.mark.asyncio
async def test_failed_refresh_keeps_current_snapshot_and_publishes_nothing():
    published: list = []
    feed = _feed(lambda request: httpx.Response(503), published)
    assert await feed.refresh(CURRENT) is CURRENT

    feed_bad_json = _feed(lambda request: httpx.Response(200, text="not json"), published)
    assert await feed_bad_json.refresh(CURRENT) is CURRENT

    feed_list = _feed(lambda request: httpx.Response(200, json=[1, 2]), published)
    assert await feed_list.refresh(CURRENT) is CURRENT

    assert published == []
    for f in (feed, feed_bad_json, feed_list):
        await f.stop()


@pytest.mark.asyncio
async def test_started_feed_polls_until_stopped():
    caps = iter(range(1000, 100000, 1000))
    published: list = []
    feed = _feed(lambda request: httpx.Response(200, json={"usd_market_cap": next(caps)}), published, refresh_interval_seconds=0.01)

    feed.start(CURRENT)
    await wait_until(lambda: len(published) >= 3)
    await feed.stop()

    caps_seen = [m.market_cap for m in published]
    assert caps_seen == sorted(caps_seen)
    assert all(m.mint == "MintM" for m in published)
