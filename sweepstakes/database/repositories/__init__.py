from sweepstakes.database.repositories.store_repository import StoreRepository
from sweepstakes.database.repositories.promo_repository import PromoRepository
from sweepstakes.database.repositories.entry_repository import EntryLedger
from sweepstakes.database.repositories.winner_repository import WinnerRepository

__all__ = ["StoreRepository", "PromoRepository", "EntryLedger", "WinnerRepository"]
