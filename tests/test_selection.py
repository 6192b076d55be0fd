import random
from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from sweepstakes.database.models import Entry, Winner
from sweepstakes.database.repositories import PromoRepository, WinnerRepository
from sweepstakes.errors import (
    NoEntriesError,
    PromoNotActiveError,
    PromoNotFoundError,
    WinnerAlreadyExistsError,
    WinnerNotFoundError,
)
from sweepstakes.services.accrual import EntryAccrualEngine
from sweepstakes.services.selection import WinnerSelectionEngine, draw_weighted, pick_weighted


def rows(*counts):
    return [SimpleNamespace(id=i + 1, entry_count=count) for i, count in enumerate(counts)]


def test_pick_weighted_walks_cumulative_ranges():
    entries = rows(2, 1, 3)
    picked = [pick_weighted(entries, r).id for r in range(6)]
    assert picked == [1, 1, 2, 3, 3, 3]
    with pytest.raises(ValueError):
        pick_weighted(entries, 6)


def test_draw_passes_total_weight_to_randbelow():
    seen = []

    def randbelow(n):
        seen.append(n)
        return n - 1

    entry, r = draw_weighted(rows(4, 6), randbelow)
    assert seen == [10]
    assert (entry.id, r) == (2, 9)
    assert draw_weighted(rows(4, 6), lambda n: 0)[0].id == 1


def test_draw_from_empty_population():
    with pytest.raises(ValueError):
        draw_weighted([])


def test_draw_probability_follows_entry_count():
    rng = random.Random(1234)
    entries = rows(1, 99)
    draws = 20000
    wins = sum(1 for _ in range(draws) if draw_weighted(entries, rng.randrange)[0].id == 1)
    assert abs(wins / draws - 0.01) < 0.005


async def add_entries(session, promo, *emails):
    engine = EntryAccrualEngine(session)
    for i, email in enumerate(emails):
        await engine.accrue_purchase(promo.id, email, f"order-{promo.id}-{i}", "3", 1, 10, store_id=promo.store_id)


async def test_select_winner_records_winner_and_ends_promo(session, session_factory, make_promo, notifier):
    promo = await make_promo(max_entries_per_email=10, prize_amount=Decimal("50.00"), prize_description="$50 card")
    promo_id = promo.id
    await add_entries(session, promo, "first@example.com", "second@example.com")

    engine = WinnerSelectionEngine(session, notifier, randbelow=lambda n: n - 1)
    result = await engine.select_winner(promo_id, created_by="ops@store.io")

    winner = result.winner
    assert winner.customer_email == "second@example.com"
    assert winner.prize_description == "$50 card"
    assert winner.prize_amount == Decimal("50.00")
    assert winner.created_by == "ops@store.io"
    assert winner.notified is False and winner.claimed is False
    assert result.stats() == {
        "totalEntries": 2,
        "totalWeightedEntries": 6,
        "winningEntryCount": 3,
        "randomIndex": 5,
        "promoStatusSynced": True,
    }

    async with session_factory() as fresh:
        assert (await PromoRepository(fresh).get_by_id(promo_id)).status == "ended"
        stored = await WinnerRepository(fresh).get_for_promo(promo_id)
        assert stored.id == winner.id

    assert notifier.winners == [("second@example.com", "Summer Giveaway", "$50 card", winner.entry_id)]
    assert [alert[0] for alert in notifier.alerts] == ["Winner Selected"]


async def test_second_draw_is_rejected(session, make_promo):
    promo = await make_promo()
    promo_id = promo.id
    await add_entries(session, promo, "only@example.com")
    engine = WinnerSelectionEngine(session)
    await engine.select_winner(promo_id)

    with pytest.raises(WinnerAlreadyExistsError):
        await engine.select_winner(promo_id)


async def test_winner_without_ended_status_is_repaired_on_redraw(session, session_factory, make_promo):
    promo = await make_promo()
    promo_id = promo.id
    await add_entries(session, promo, "only@example.com")
    entry_id = (await EntryAccrualEngine(session).ledger.all_entries_for(promo_id))[0].id
    await WinnerRepository(session).create(Winner(
        promo_id=promo_id, store_id=promo.store_id, entry_id=entry_id,
        customer_email="only@example.com", drawn_at=datetime.now(timezone.utc),
    ))

    with pytest.raises(WinnerAlreadyExistsError):
        await WinnerSelectionEngine(session).select_winner(promo_id)

    async with session_factory() as fresh:
        assert (await PromoRepository(fresh).get_by_id(promo_id)).status == "ended"


@pytest.mark.parametrize("status", ["draft", "paused"])
async def test_only_active_promos_can_be_drawn(session, make_promo, status):
    promo = await make_promo(status=status)
    promo_id = promo.id
    with pytest.raises(PromoNotActiveError):
        await WinnerSelectionEngine(session).select_winner(promo_id)
    assert not await WinnerRepository(session).exists_for_promo(promo_id)


async def test_draw_without_entries(session, make_promo):
    promo = await make_promo()
    with pytest.raises(NoEntriesError):
        await WinnerSelectionEngine(session).select_winner(promo.id)


async def test_draw_unknown_promo(session):
    with pytest.raises(PromoNotFoundError):
        await WinnerSelectionEngine(session).select_winner(404)


async def test_concurrent_draw_loses_on_unique_constraint(session, make_promo, monkeypatch):
    promo = await make_promo()
    promo_id = promo.id
    await add_entries(session, promo, "only@example.com")
    entry_id = (await EntryAccrualEngine(session).ledger.all_entries_for(promo_id))[0].id
    await WinnerRepository(session).create(Winner(
        promo_id=promo_id, store_id=promo.store_id, entry_id=entry_id,
        customer_email="only@example.com", drawn_at=datetime.now(timezone.utc),
    ))

    engine = WinnerSelectionEngine(session)
    real_exists = engine.winners.exists_for_promo
    calls = {"n": 0}

    async def stale_exists(pid):
        calls["n"] += 1
        if calls["n"] == 1:
            return False
        return await real_exists(pid)

    monkeypatch.setattr(engine.winners, "exists_for_promo", stale_exists)
    with pytest.raises(WinnerAlreadyExistsError):
        await engine.select_winner(promo_id)


async def test_status_sync_failure_keeps_winner(session, session_factory, make_promo, notifier, monkeypatch):
    promo = await make_promo()
    promo_id = promo.id
    await add_entries(session, promo, "only@example.com")

    engine = WinnerSelectionEngine(session, notifier, max_retries=2, retry_delay=0)
    real_mark_ended = engine.promos.mark_ended
    attempts = {"n": 0}

    async def failing_mark_ended(pid):
        attempts["n"] += 1
        raise OperationalError("UPDATE promos", {}, Exception("database is locked"))

    monkeypatch.setattr(engine.promos, "mark_ended", failing_mark_ended)
    result = await engine.select_winner(promo_id)

    assert attempts["n"] == 2
    assert result.promo_status_synced is False
    assert result.winner.id is not None
    assert "Promo status out of sync" in [alert[0] for alert in notifier.alerts]

    async with session_factory() as fresh:
        assert (await PromoRepository(fresh).get_by_id(promo_id)).status == "active"
        assert await WinnerRepository(fresh).exists_for_promo(promo_id)

    monkeypatch.setattr(engine.promos, "mark_ended", real_mark_ended)
    assert await engine.reconcile_promo_status(promo_id) is True

    async with session_factory() as fresh:
        assert (await PromoRepository(fresh).get_by_id(promo_id)).status == "ended"


async def test_reconcile_requires_a_winner(session, make_promo):
    promo = await make_promo()
    with pytest.raises(WinnerNotFoundError):
        await WinnerSelectionEngine(session).reconcile_promo_status(promo.id)


async def test_notification_and_claim_flags(session, make_promo):
    promo = await make_promo()
    promo_id = promo.id
    await add_entries(session, promo, "only@example.com")
    result = await WinnerSelectionEngine(session).select_winner(promo_id)

    repo = WinnerRepository(session)
    winner = await repo.set_notified(result.winner.id, True)
    assert winner.notified is True and winner.notified_at is not None
    winner = await repo.set_claimed(result.winner.id, True)
    assert winner.claimed is True and winner.claimed_at is not None
    winner = await repo.set_claimed(result.winner.id, False)
    assert winner.claimed is False and winner.claimed_at is None

    with pytest.raises(WinnerNotFoundError):
        await repo.set_notified(9999, True)


async def test_deleting_a_promo_removes_its_entries_and_winner(session, session_factory, make_promo):
    promo = await make_promo(max_entries_per_email=10)
    promo_id = promo.id
    await add_entries(session, promo, "first@example.com", "second@example.com")
    await WinnerSelectionEngine(session).select_winner(promo_id)

    await PromoRepository(session).delete(promo_id)

    async with session_factory() as fresh:
        entries = await fresh.execute(select(func.count()).select_from(Entry).where(Entry.promo_id == promo_id))
        winners = await fresh.execute(select(func.count()).select_from(Winner).where(Winner.promo_id == promo_id))
        assert entries.scalar() == 0
        assert winners.scalar() == 0
        assert await PromoRepository(fresh).get_by_id(promo_id) is None

    with pytest.raises(PromoNotFoundError):
        await PromoRepository(session).delete(promo_id)
