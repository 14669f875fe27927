from metering.db.base import Base
from metering.db.session import SessionLocal, engine
import metering.db.models  # noqa
from metering.quota.service import ensure_default_tiers


def init_db():
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as db:
        ensure_default_tiers(db)


if __name__ == "__main__":
    init_db()
