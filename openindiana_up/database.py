"""State database schema and migrations for openindiana-up."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Tuple

from sqlalchemy import Column, DateTime, Integer, String, create_engine, event, func, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from openindiana_up.constants import DB_PATH
from openindiana_up.utils import ensure_directory, log

Base = declarative_base()


class VirtualMachine(Base):
    """One locally launched guest and the handle needed to manage it."""

    __tablename__ = "virtual_machines"
    id = Column(String, primary_key=True)
    name = Column(String, unique=True, nullable=False, index=True)
    mac_address = Column(String, unique=True, nullable=False)
    cpu = Column(String, nullable=False)
    cpus = Column(Integer, nullable=False)
    memory = Column(String, nullable=False)
    disk_size = Column(String, nullable=False)
    disk_format = Column(String, nullable=False)
    drive_path = Column(String)
    iso_path = Column(String)
    bridge = Column(String)
    port_forward = Column(String)
    version = Column(String)
    status = Column(String, nullable=False)
    pid = Column(Integer)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        for column in self.__table__.columns:
            value = getattr(self, column.name)
            if hasattr(value, "isoformat"):
                value = value.isoformat(sep=" ")
            data[column.name] = value
        return data

    def __repr__(self) -> str:
        return f"<VirtualMachine name={self.name!r} status={self.status!r} pid={self.pid!r}>"


# Ordered, additive-only schema changes; each version is applied exactly once.
MIGRATIONS: List[Tuple[str, List[str]]] = [
    (
        "001",
        [
            """
            CREATE TABLE virtual_machines (
                id VARCHAR NOT NULL PRIMARY KEY,
                name VARCHAR NOT NULL UNIQUE,
                mac_address VARCHAR NOT NULL UNIQUE,
                cpu VARCHAR NOT NULL,
                cpus INTEGER NOT NULL,
                memory VARCHAR NOT NULL,
                disk_size VARCHAR NOT NULL,
                disk_format VARCHAR NOT NULL,
                drive_path VARCHAR,
                iso_path VARCHAR,
                bridge VARCHAR,
                version VARCHAR,
                status VARCHAR NOT NULL,
                pid INTEGER,
                created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
                updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """,
            "CREATE INDEX ix_virtual_machines_name ON virtual_machines (name)",
        ],
    ),
    (
        "002",
        ["ALTER TABLE virtual_machines ADD COLUMN port_forward VARCHAR"],
    ),
]


def _begin_transaction(conn) -> None:
    conn.exec_driver_sql("BEGIN")


def _disable_driver_transactions(dbapi_connection, connection_record) -> None:
    dbapi_connection.isolation_level = None


def enable_transactional_ddl(engine: Engine) -> None:
    """Make SQLite run DDL inside the surrounding transaction.

    pysqlite otherwise runs CREATE/ALTER outside any transaction, so a
    migration and its schema_migrations row could be split by a crash.
    """
    if event.contains(engine, "begin", _begin_transaction):
        return
    event.listen(engine, "connect", _disable_driver_transactions)
    event.listen(engine, "begin", _begin_transaction)


def applied_migrations(engine: Engine) -> List[str]:
    with engine.begin() as conn:
        conn.execute(
            text(
                "CREATE TABLE IF NOT EXISTS schema_migrations ("
                "version VARCHAR NOT NULL PRIMARY KEY, "
                "applied_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP)"
            )
        )
        rows = conn.execute(text("SELECT version FROM schema_migrations ORDER BY version"))
        return [row[0] for row in rows]


def migrate_to_latest(engine: Engine) -> List[str]:
    """Apply pending migrations in order; returns the versions applied now."""
    enable_transactional_ddl(engine)
    done = set(applied_migrations(engine))
    applied_now: List[str] = []
    for version, statements in MIGRATIONS:
        if version in done:
            continue
        with engine.begin() as conn:
            for statement in statements:
                conn.execute(text(statement))
            conn.execute(text("INSERT INTO schema_migrations (version) VALUES (:version)"), {"version": version})
        log("DEBUG", f"Applied state migration {version}")
        applied_now.append(version)
    return applied_now


def create_session_factory(db_path: Path = DB_PATH) -> sessionmaker:
    """Open (and migrate) the SQLite state database at ``db_path``."""
    ensure_directory(db_path.parent)
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    migrate_to_latest(engine)
    return sessionmaker(autoflush=False, expire_on_commit=False, bind=engine)
