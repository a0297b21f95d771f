from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from syncbridge.core.config import sync_settings


def make_engine(database_uri: str):
    """
    Создаёт движок для журнала. Для SQLite в памяти используется один общий
    коннект, чтобы все сессии видели одни и те же таблицы.
    """
    if database_uri.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_uri in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_uri, echo=False, **kwargs)
    return create_engine(
        database_uri,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_timeout=30,
        pool_recycle=3600,
        echo=False
    )


engine = make_engine(sync_settings.ledger_database_uri)
SessionLocal = sessionmaker(bind=engine, class_=Session, expire_on_commit=False)


def init_db(bind=None) -> None:
    """Создаёт таблицы журнала, если их нет."""
    import syncbridge.models  # noqa: F401

    SQLModel.metadata.create_all(bind or engine)

