import argparse

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from barpos import models  # noqa: F401  registers the tables on Base.metadata
from barpos.config import settings
from barpos.db import Base, make_engine


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Check the bar POS database connection.")
    parser.add_argument("--database-url", default=settings.database_url)
    parser.add_argument("--create-tables", action="store_true", help="create any missing tables")
    args = parser.parse_args(argv)

    print(f"DATABASE_URL={args.database_url}")
    engine = make_engine(args.database_url)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        print("DB connection OK")
        if args.create_tables:
            Base.metadata.create_all(bind=engine)
            print(f"Schema ready ({len(Base.metadata.tables)} tables)")
    except SQLAlchemyError as exc:
        print("DB connection FAILED")
        print(exc)
        return 1
    finally:
        engine.dispose()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
