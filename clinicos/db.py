from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from .config import settings

connect_args = {}
if settings.DATABASE_URL.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(settings.DATABASE_URL, echo=False, connect_args=connect_args)

if settings.DATABASE_URL.startswith("sqlite"):
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


class Base(DeclarativeBase):
    pass


_EXCLUSION_CONSTRAINTS = {
    "ex_appointments_professional_overlap": "professional_id",
    "ex_appointments_room_overlap": "room_id",
}


def _pg_constraint_exists(conn, name: str) -> bool:
    row = conn.execute(
        text("SELECT 1 FROM pg_constraint WHERE conname = :name"),
        {"name": name},
    ).first()
    return row is not None


def _install_overlap_exclusion(conn, name: str, column: str) -> None:
    conn.execute(
        text(
            f"""
            ALTER TABLE appointments
            ADD CONSTRAINT {name}
            EXCLUDE USING gist (
                tenant_id WITH =,
                {column} WITH =,
                tsrange(start_time, end_time, '[)') WITH &&
            )
            WHERE ({column} IS NOT NULL AND status NOT IN ('cancelled', 'no_show'))
            """
        )
    )


def run_schema_migrations(bind=None):
    """Install database-side guards the ORM metadata cannot express.

    On PostgreSQL this adds exclusion constraints rejecting overlapping
    active appointments per professional and per room. Other dialects rely
    on the locked write path alone.
    """
    target = bind or engine
    if target.dialect.name != "postgresql":
        return

    with target.begin() as conn:
        exists = conn.execute(
            text("SELECT to_regclass('public.appointments')")
        ).scalar()
        if not exists:
            return
        conn.execute(text("CREATE EXTENSION IF NOT EXISTS btree_gist"))
        for name, column in _EXCLUSION_CONSTRAINTS.items():
            if not _pg_constraint_exists(conn, name):
                _install_overlap_exclusion(conn, name, column)


def is_overlap_violation(exc: Exception) -> str | None:
    """Return the violated exclusion constraint name, if any."""
    message = str(getattr(exc, "orig", exc) or "")
    for name in _EXCLUSION_CONSTRAINTS:
        if name in message:
            return name
    return None


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
