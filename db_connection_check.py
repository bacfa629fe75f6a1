from sqlalchemy import create_engine, func, select, text
from sqlalchemy.exc import SQLAlchemyError

from settlement_hub.config import settings
from settlement_hub.models import Restaurant, SettlementDocument


def main() -> None:
    database_url = settings.database_url
    print(f"DATABASE_URL={database_url}")
    engine = create_engine(database_url, pool_pre_ping=True)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            restaurants = conn.scalar(select(func.count()).select_from(Restaurant))
            documents = conn.scalar(select(func.count()).select_from(SettlementDocument))
        print("DB connection OK")
        print(f"restaurants={restaurants} settlement_documents={documents}")
    except SQLAlchemyError as exc:
        print("DB connection FAILED")
        print(exc)


if __name__ == "__main__":
    main()
