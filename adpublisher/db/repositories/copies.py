from sqlalchemy import select
from sqlalchemy.orm import Session

from adpublisher.db.models import MetaAdCopy


class AdCopiesRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_for_package(self, package_id: int) -> list[MetaAdCopy]:
        stmt = (
            select(MetaAdCopy)
            .where(MetaAdCopy.package_id == package_id)
            .order_by(MetaAdCopy.variant.asc())
        )
        return list(self.session.scalars(stmt).all())

