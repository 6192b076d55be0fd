from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from sweepstakes.database.repositories import EntryLedger
from sweepstakes.errors import CapReachedError, PromoNotActiveError, ValidationError
from sweepstakes.services.accrual import (
    EntryAccrualEngine,
    PromoTerms,
    compute_purchase_entries,
    ensure_accepting_entries,
)
from sweepstakes.services.identity import resolve_customer_identity
from tests.conftest import FailingNotifier


async def purchase(engine, promo, order_id, amount, email="buyer@example.com", cap=None, per_dollar=None):
    return await engine.accrue_purchase(
        promo.id,
        email,
        order_id,
        amount,
        per_dollar or promo.entries_per_dollar,
        cap or promo.max_entries_per_email,
        store_id=promo.store_id,
        promo_title=promo.title,
    )


async def test_cap_clamps_then_stops(session, make_promo, notifier):
    promo = await make_promo(max_entries_per_email=5, entries_per_dollar=1)
    engine = EntryAccrualEngine(session, notifier)

    first = await purchase(engine, promo, "1", "3.00")
    assert (first.entries_added, first.total_after, first.capped) == (3, 3, False)

    second = await purchase(engine, promo, "2", "10.00")
    assert (second.entries_added, second.total_after, second.capped) == (2, 5, True)
    assert second.entry.meta["cap_truncated"] is True
    assert second.entry.meta["requested_entries"] == 10

    third = await purchase(engine, promo, "3", "1.00")
    assert (third.entries_added, third.total_after, third.reason) == (0, 5, "cap_reached")
    assert third.entry is None

    ledger = EntryLedger(session)
    assert await ledger.sum_entry_count_for(promo.id, "buyer@example.com") == 5
    assert len(await ledger.all_entries_for(promo.id)) == 2
    assert [c[3] for c in notifier.confirmations] == [3, 2]


async def test_replayed_order_is_a_no_op(session, make_promo):
    promo = await make_promo(max_entries_per_email=100)
    engine = EntryAccrualEngine(session)

    first = await purchase(engine, promo, "98765", "20")
    replay = await purchase(engine, promo, "98765", "20")

    assert first.entries_added == 20
    assert replay.entries_added == 0
    assert replay.duplicate is True
    assert replay.total_after == 20
    assert len(await EntryLedger(session).all_entries_for(promo.id)) == 1


async def test_replay_is_detected_regardless_of_customer(session, make_promo):
    promo = await make_promo(max_entries_per_email=100)
    engine = EntryAccrualEngine(session)
    await purchase(engine, promo, "500", "5", email="a@example.com")
    replay = await purchase(engine, promo, "500", "5", email="order_500@noemail.customer")
    assert replay.duplicate is True


async def test_lost_insert_race_counts_as_processed(session, make_promo, monkeypatch):
    promo = await make_promo(max_entries_per_email=100)
    engine = EntryAccrualEngine(session)
    await purchase(engine, promo, "321", "4")

    real_exists = engine.ledger.exists_for_order
    calls = {"n": 0}

    async def stale_exists(promo_id, order_id):
        calls["n"] += 1
        if calls["n"] <= 2:
            return False
        return await real_exists(promo_id, order_id)

    monkeypatch.setattr(engine.ledger, "exists_for_order", stale_exists)
    promo_id = promo.id
    result = await purchase(engine, promo, "321", "4")

    assert result.duplicate is True
    assert result.entries_added == 0
    assert len(await EntryLedger(session).all_entries_for(promo_id)) == 1


@pytest.mark.parametrize("amount", ["0", "0.99", "-15"])
async def test_purchase_below_one_entry_adds_nothing(session, make_promo, amount):
    promo = await make_promo(max_entries_per_email=10)
    result = await purchase(EntryAccrualEngine(session), promo, "1", amount)
    assert result.entries_added == 0
    assert result.reason == "below_minimum"
    assert await EntryLedger(session).all_entries_for(promo.id) == []


async def test_entries_per_dollar_multiplies_and_floors(session, make_promo):
    promo = await make_promo(max_entries_per_email=1000, entries_per_dollar=3)
    result = await purchase(EntryAccrualEngine(session), promo, "1", "12.99")
    assert result.entries_added == 38
    assert result.entry.order_total == Decimal("12.99")
    assert result.entry.source == "purchase"


@pytest.mark.parametrize("kwargs", [
    {"order_id": ""},
    {"amount": "abc"},
    {"amount": "NaN"},
    {"email": "not an email"},
    {"per_dollar": 0},
    {"cap": -1},
])
async def test_invalid_purchase_arguments_write_nothing(session, make_promo, kwargs):
    promo = await make_promo(max_entries_per_email=10)
    engine = EntryAccrualEngine(session)
    args = {"order_id": "1", "amount": "10", "email": "buyer@example.com", "per_dollar": 1, "cap": 10, **kwargs}
    with pytest.raises(ValidationError):
        await engine.accrue_purchase(promo.id, args["email"], args["order_id"], args["amount"],
                                     args["per_dollar"], args["cap"], store_id=promo.store_id)
    assert await EntryLedger(session).all_entries_for(promo.id) == []


@pytest.mark.parametrize("existing,amount,per_dollar,cap", [
    (0, "0", 1, 5), (0, "4.5", 2, 5), (3, "100", 1, 5), (5, "100", 1, 5), (7, "10", 1, 5), (0, "2.50", 4, 100),
])
def test_clamp_stays_within_bounds(existing, amount, per_dollar, cap):
    wanted, to_add = compute_purchase_entries(Decimal(amount), per_dollar, existing, cap)
    assert 0 <= to_add <= max(wanted, 0)
    if existing < cap:
        assert existing + to_add == min(existing + max(wanted, 0), cap)
    else:
        assert to_add == 0


async def test_manual_entry_refuses_at_email_limit(session, make_promo, notifier):
    promo = await make_promo(max_entries_per_email=2)
    engine = EntryAccrualEngine(session, notifier)
    terms = PromoTerms.from_promo(promo)

    for _ in range(2):
        result = await engine.accrue_manual(terms, "Fan@Example.com", ip_address="1.1.1.1")
        assert result.entries_added == 1

    with pytest.raises(CapReachedError) as exc:
        await engine.accrue_manual(terms, "fan@example.com", ip_address="2.2.2.2")
    assert (exc.value.scope, exc.value.current, exc.value.maximum) == ("email", 2, 2)
    assert await EntryLedger(session).sum_entry_count_for(promo.id, "fan@example.com") == 2
    assert len(notifier.confirmations) == 2


async def test_manual_entry_never_clamps_after_purchases(session, make_promo):
    promo = await make_promo(max_entries_per_email=5)
    engine = EntryAccrualEngine(session)
    await purchase(engine, promo, "1", "5", email="fan@example.com")

    with pytest.raises(CapReachedError):
        await engine.accrue_manual(PromoTerms.from_promo(promo), "fan@example.com")


async def test_manual_entry_ip_limit(session, make_promo):
    promo = await make_promo(max_entries_per_email=1, max_entries_per_ip=2)
    engine = EntryAccrualEngine(session)
    terms = PromoTerms.from_promo(promo)

    await engine.accrue_manual(terms, "one@example.com", ip_address="9.9.9.9")
    await engine.accrue_manual(terms, "two@example.com", ip_address="9.9.9.9")
    with pytest.raises(CapReachedError) as exc:
        await engine.accrue_manual(terms, "three@example.com", ip_address="9.9.9.9")
    assert exc.value.scope == "ip"

    # unknown addresses are not limited
    result = await engine.accrue_manual(terms, "four@example.com", ip_address="unknown")
    assert result.entry.meta["ip_address"] == "unknown"


@pytest.mark.parametrize("email,source", [("", "direct"), ("bad-email", "direct"), ("ok@example.com", "purchase")])
async def test_manual_entry_validation(session, make_promo, email, source):
    promo = await make_promo()
    with pytest.raises(ValidationError):
        await EntryAccrualEngine(session).accrue_manual(PromoTerms.from_promo(promo), email, source=source)
    assert await EntryLedger(session).all_entries_for(promo.id) == []


async def test_notification_failure_does_not_undo_accrual(session, make_promo):
    promo = await make_promo(max_entries_per_email=10)
    engine = EntryAccrualEngine(session, FailingNotifier())

    result = await purchase(engine, promo, "1", "4")
    manual = await engine.accrue_manual(PromoTerms.from_promo(promo), "other@example.com")

    assert result.entries_added == 4
    assert manual.entries_added == 1
    assert len(await EntryLedger(session).all_entries_for(promo.id)) == 2


async def test_manual_entry_metadata(session, make_promo):
    promo = await make_promo()
    result = await EntryAccrualEngine(session).accrue_manual(
        PromoTerms.from_promo(promo), "fan@example.com",
        source="admin_manual", user_agent="pytest", consent_brand=True, created_by="ops@store.io",
    )
    entry = result.entry
    assert entry.is_manual is True
    assert entry.order_id is None
    assert entry.meta["entry_type"] == "admin_manual"
    assert entry.meta["consent_brand"] is True
    assert entry.meta["created_by"] == "ops@store.io"


@pytest.mark.parametrize("status", ["draft", "paused", "ended"])
async def test_only_active_promos_accept_entries(make_promo, status):
    promo = await make_promo(status=status)
    with pytest.raises(PromoNotActiveError):
        ensure_accepting_entries(promo)


async def test_promo_window_is_enforced(make_promo):
    now = datetime.now(timezone.utc)
    upcoming = await make_promo(start_date=now + timedelta(days=1))
    finished = await make_promo(end_date=now - timedelta(days=1))
    running = await make_promo(start_date=now - timedelta(days=1), end_date=now + timedelta(days=1))

    for promo in (upcoming, finished):
        with pytest.raises(PromoNotActiveError):
            ensure_accepting_entries(promo)
    ensure_accepting_entries(running)


async def test_anonymous_order_with_unusual_id_still_earns_entries(session, make_promo):
    promo = await make_promo(max_entries_per_email=10)
    identity = resolve_customer_identity(order_id="A-1 / 2")

    result = await purchase(EntryAccrualEngine(session), promo, "A-1 / 2", "5", email=identity)

    assert result.entries_added == 5
    assert result.entry.customer_email == identity.lower()
    assert result.entry.order_id == "A-1 / 2"
