from typing import Callable

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from extraction import settings
from extraction.entities import Base


class DbConnection:
    def __init__(self, database_url: str | None = None) -> None:
        # !###############################################
        # !   EITHER A DATABASE_URL IN THE .ENV FILE OR
        # !   DB_* VARIABLES (+ SECRET MANAGER PASSWORD)
        # !###############################################
        self.DATABASE_URL = database_url or settings.DATABASE_URL
        if not self.DATABASE_URL:
            self.DATABASE_URL = (
                f"postgresql+pg8000://{settings.DB_USER}:{settings.get_db_password()}"
                f"@{settings.DB_HOST}:{settings.DB_PORT}/{settings.DB_NAME}"
            )
        self._engine: Engine | None = None
        self._sessionmaker = None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            connect_args = {}
            if self.DATABASE_URL.startswith("postgresql+pg8000"):
                # pg8000 supports 'timeout' in seconds
                connect_args = {"timeout": 10}
            self._engine = create_engine(
                self.DATABASE_URL,
                future=True,
                pool_pre_ping=True,
                connect_args=connect_args,
            )
        return self._engine

    # -------- SQLAlchemy Session factory --------
    def build_db_session_factory(self) -> Callable[[], Session]:
        if not self._sessionmaker:
            self._sessionmaker = sessionmaker(
                bind=self.engine,
                autoflush=False,
                autocommit=False,
                future=True,
            )

        def _factory() -> Session:
            return self._sessionmaker()

        return _factory

    def init_schema(self) -> None:
        settings.logger.info("[DB] Creating extraction tables if missing")
        Base.metadata.create_all(self.engine)


def insert_or_ignore(session: Session, model, values: dict, conflict_columns: list[str]) -> int:
    """
    INSERT ... ON CONFLICT (conflict_columns) DO NOTHING for the dialects we run on.
    Returns the number of inserted rows (0 when the row already existed).
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise RuntimeError(f"insert_or_ignore: unsupported dialect '{dialect}'")

    stmt = insert(model).values(**values).on_conflict_do_nothing(index_elements=conflict_columns)
    result = session.execute(stmt)
    return result.rowcount or 0
