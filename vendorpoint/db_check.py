from sqlalchemy import create_engine, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from vendorpoint.config import settings
from vendorpoint.errors import BalanceDrift
from vendorpoint.ledger import balance
from vendorpoint.models import Wallet


def drifted_wallets(db: Session) -> list[int]:
    drifted = []
    for wallet_id in db.execute(select(Wallet.id).order_by(Wallet.id)).scalars():
        try:
            balance(db, wallet_id)
        except BalanceDrift:
            drifted.append(wallet_id)
    return drifted


def main() -> None:
    database_url = settings.database_url
    print(f"DATABASE_URL={database_url}")
    engine = create_engine(database_url, pool_pre_ping=True)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        print("DB connection OK")
        with sessionmaker(bind=engine)() as db:
            drifted = drifted_wallets(db)
    except SQLAlchemyError as exc:
        print("DB connection FAILED")
        print(exc)
        return
    if drifted:
        print(f"Wallet balances out of step with entries: {drifted}")
    else:
        print("Wallet balances OK")


if __name__ == "__main__":
    main()
