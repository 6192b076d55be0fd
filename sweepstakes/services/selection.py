"""
Winner selection engine.

A draw picks one entry row with probability proportional to its
``entry_count``. Rather than expanding rows into one ticket per entry, a
uniform integer ``r`` in ``[0, total_weight)`` is taken from the operating
system CSPRNG (``secrets.randbelow`` rejects out-of-range samples, so there is
no modulo bias) and the rows are walked in insertion order until the running
weight exceeds ``r``.

The unique constraint on ``winners.promo_id`` is what guarantees a single
winner per promo; the existence check before drawing only short-circuits the
common case.
"""
import asyncio
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from sweepstakes.database.models import Entry, PromoStatus, Winner
from sweepstakes.database.repositories import EntryLedger, PromoRepository, WinnerRepository
from sweepstakes.errors import PromoNotActiveError, WinnerAlreadyExistsError, NoEntriesError, WinnerNotFoundError
from sweepstakes.services.notifications import Notifier, LoggingNotifier, notify_safely


logger = logging.getLogger(__name__)


def pick_weighted(entries: Sequence[Entry], r: int) -> Entry:
    """
    Returns the entry whose cumulative weight range contains ``r``.
    """
    running = 0
    for entry in entries:
        running += entry.entry_count
        if running > r:
            return entry
    raise ValueError(f"r={r} is outside of the total weight {running}")


def draw_weighted(entries: Sequence[Entry], randbelow: Callable[[int], int] = secrets.randbelow) -> Tuple[Entry, int]:
    """
    Draws one entry weighted by ``entry_count``.

    Returns:
        Tuple[Entry, int]: The winning entry and the drawn ticket index
    """
    total = sum(entry.entry_count for entry in entries)
    if total <= 0:
        raise ValueError("Cannot draw from an empty population")
    r = randbelow(total)
    return pick_weighted(entries, r), r


@dataclass
class DrawResult:
    winner: Winner
    total_rows: int
    total_weight: int
    winning_entry_count: int
    ticket_index: int
    # False when the winner was recorded but the promo could not be moved to ended
    promo_status_synced: bool = True

    def stats(self) -> dict:
        return {
            "totalEntries": self.total_rows,
            "totalWeightedEntries": self.total_weight,
            "winningEntryCount": self.winning_entry_count,
            "randomIndex": self.ticket_index,
            "promoStatusSynced": self.promo_status_synced,
        }


class WinnerSelectionEngine:
    def __init__(
        self,
        session: AsyncSession,
        notifier: Optional[Notifier] = None,
        randbelow: Callable[[int], int] = secrets.randbelow,
        max_retries: int = 3,
        retry_delay: float = 0.5,
    ):
        self.session = session
        self.notifier = notifier or LoggingNotifier()
        self.randbelow = randbelow
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.promos = PromoRepository(session)
        self.ledger = EntryLedger(session)
        self.winners = WinnerRepository(session)

    async def select_winner(self, promo_id: int, created_by: Optional[str] = None) -> DrawResult:
        """
        Draws the single winner of an active promo and ends the promo.

        Raises:
            PromoNotFoundError: unknown promo
            PromoNotActiveError: promo status is not ``active``
            WinnerAlreadyExistsError: the promo already has a winner, including
                one recorded by a concurrent draw
            NoEntriesError: the promo has no entries
            StorageError: the winner could not be recorded
        """
        promo = await self.promos.get_or_raise(promo_id)

        # A drawn promo reports its winner rather than its ended status.
        # Checked before status so a repeated draw always fails with WinnerAlreadyExistsError.
        if await self.winners.exists_for_promo(promo_id):
            if promo.status != PromoStatus.ENDED:
                logger.warning(f"Promo {promo_id} already has a winner but is {promo.status}, ending it")
                await self._end_promo(promo_id)
            raise WinnerAlreadyExistsError(promo_id)

        if promo.status != PromoStatus.ACTIVE:
            raise PromoNotActiveError(promo_id, promo.status, "Can only select winners for active promos")

        entries = await self.ledger.all_entries_for(promo_id)
        if not entries:
            raise NoEntriesError(promo_id)

        promo_title = promo.title
        winning_entry, ticket_index = draw_weighted(entries, self.randbelow)
        total_weight = sum(entry.entry_count for entry in entries)

        winner = Winner(
            promo_id=promo_id,
            store_id=promo.store_id,
            entry_id=winning_entry.id,
            customer_email=winning_entry.customer_email,
            customer_name=winning_entry.customer_name,
            prize_description=promo.prize_description,
            prize_amount=promo.prize_amount,
            drawn_at=datetime.now(timezone.utc),
            notified=False,
            claimed=False,
            created_by=created_by,
        )
        result = DrawResult(
            winner=await self.winners.create(winner),
            total_rows=len(entries),
            total_weight=total_weight,
            winning_entry_count=winning_entry.entry_count,
            ticket_index=ticket_index,
        )
        winner = result.winner
        # Detached, so a rollback while ending the promo cannot expire it
        self.session.expunge(winner)
        logger.info(f"Promo {promo_id} drew entry {winning_entry.id} (ticket {ticket_index} of {total_weight}), "
                    f"winner {winner.id}")

        result.promo_status_synced = await self._end_promo(promo_id)

        await notify_safely(
            "winner notification",
            lambda: self.notifier.winner_selected(winner.customer_email, promo_title, winner.prize_description,
                                                  winner.entry_id),
        )
        await notify_safely(
            "admin notification",
            lambda: self.notifier.admin_alert(
                "Winner Selected",
                f"A winner has been selected for promo: {promo_title}",
                {
                    "winnerEmail": winner.customer_email,
                    "winnerName": winner.customer_name,
                    "prizeDescription": winner.prize_description,
                    "prizeAmount": str(winner.prize_amount) if winner.prize_amount is not None else None,
                    "totalEntries": result.total_rows,
                    "drawnAt": winner.drawn_at.isoformat(),
                },
            ),
        )
        return result

    async def reconcile_promo_status(self, promo_id: int) -> bool:
        """
        Ends a promo whose winner was recorded but whose status update failed.

        Raises:
            PromoNotFoundError: unknown promo
            WinnerNotFoundError: the promo has no winner, so there is nothing to reconcile

        Returns:
            bool: True when the promo is ended
        """
        promo = await self.promos.get_or_raise(promo_id)
        if not await self.winners.exists_for_promo(promo_id):
            raise WinnerNotFoundError(None)
        if promo.status == PromoStatus.ENDED:
            return True
        return await self._end_promo(promo_id)

    async def _end_promo(self, promo_id: int) -> bool:
        """
        Moves the promo to ``ended``, retrying transient failures. The winner
        is never removed when this fails: the draw must not be repeated.
        """
        for attempt in range(1, self.max_retries + 1):
            try:
                await self.promos.mark_ended(promo_id)
                return True
            except SQLAlchemyError as e:
                await self.session.rollback()
                logger.error(f"Failed to end promo {promo_id} (attempt {attempt}/{self.max_retries}): {e}")
                if attempt < self.max_retries:
                    await asyncio.sleep(self.retry_delay)

        logger.error(f"Promo {promo_id} has a winner but is not ended, run reconciliation")
        await notify_safely(
            "admin notification",
            lambda: self.notifier.admin_alert(
                "Promo status out of sync",
                f"Promo {promo_id} has a winner but its status could not be set to ended",
                {"promoId": promo_id},
            ),
        )
        return False
