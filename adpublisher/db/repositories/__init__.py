from adpublisher.db.repositories.packages import PackagesRepository
from adpublisher.db.repositories.copies import AdCopiesRepository
from adpublisher.db.repositories.creatives import CreativeLedgerRepository
from adpublisher.db.repositories.ads import MetaAdsRepository

__all__ = [
    "PackagesRepository",
    "AdCopiesRepository",
    "CreativeLedgerRepository",
    "MetaAdsRepository",
]
