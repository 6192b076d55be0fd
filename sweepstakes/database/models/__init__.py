from sweepstakes.database.models.store import Store
from sweepstakes.database.models.promo import Promo, PromoStatus
from sweepstakes.database.models.entry import Entry, EntrySource
from sweepstakes.database.models.winner import Winner

__all__ = ["Store", "Promo", "PromoStatus", "Entry", "EntrySource", "Winner"]
