"""
Fire-state ledger: the last delivery time per (reminder, offset).

The ledger is the idempotency anchor of the engine. A pair whose recorded
delivery is at or after a trigger instant has already been delivered for that
occurrence and must not be delivered again.
"""

import contextlib
import logging
import threading
from pathlib import Path
from typing import Dict, Iterator, Optional, Union

from sqlalchemy import BigInteger, String, create_engine, delete, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import LedgerError, LedgerWriteError


logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class FireRecord(Base):
    __tablename__ = "reminder_fire_state"

    reminder_id: Mapped[str] = mapped_column(String, primary_key=True)
    offset_millis: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    last_fired_at: Mapped[int] = mapped_column(BigInteger, nullable=False)


def _build_url(location: Union[str, Path]) -> str:
    location = str(location)
    if "://" in location:
        return location
    if location == ":memory:":
        return "sqlite://"
    return f"sqlite:///{location}"


class FireStateLedger:
    """
    Durable (reminder_id, offset_millis) -> last_fired_at store on SQLite.

    Upserts are single INSERT ... ON CONFLICT statements, so each key is
    replaced atomically. Safe to share between threads.
    """

    def __init__(self, location: Union[str, Path] = ":memory:"):
        url = _build_url(location)
        in_memory = url == "sqlite://"

        if not in_memory and url.startswith("sqlite:///"):
            Path(url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)

        kwargs = {"connect_args": {"check_same_thread": False, "timeout": 10.0}}
        if in_memory:
            # One shared connection, so access to it has to be serialized.
            kwargs["poolclass"] = StaticPool
        self._lock: Optional[threading.Lock] = threading.Lock() if in_memory else None

        self.url = url
        self._engine = create_engine(url, **kwargs)
        self._sessions = sessionmaker(bind=self._engine, autoflush=False, expire_on_commit=False)
        Base.metadata.create_all(bind=self._engine)
        logger.info("Fire-state ledger ready: %s", url)

    @contextlib.contextmanager
    def _session(self) -> Iterator[Session]:
        guard = self._lock if self._lock is not None else contextlib.nullcontext()
        with guard:
            with self._sessions() as session:
                yield session

    def get(self, reminder_id: str, offset_millis: int) -> Optional[int]:
        """Return the last delivery time of a pair, or None if it never fired."""
        try:
            with self._session() as session:
                return session.execute(
                    select(FireRecord.last_fired_at).where(
                        FireRecord.reminder_id == reminder_id,
                        FireRecord.offset_millis == offset_millis,
                    )
                ).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise LedgerError(f"Could not read fire state for {reminder_id}/{offset_millis}") from e

    def upsert(self, reminder_id: str, offset_millis: int, timestamp: int) -> None:
        """Record a delivery, replacing any earlier value for the pair."""
        statement = sqlite_insert(FireRecord).values(
            reminder_id=reminder_id,
            offset_millis=offset_millis,
            last_fired_at=timestamp,
        )
        statement = statement.on_conflict_do_update(
            index_elements=[FireRecord.reminder_id, FireRecord.offset_millis],
            set_={"last_fired_at": statement.excluded.last_fired_at},
        )
        try:
            with self._session() as session:
                session.execute(statement)
                session.commit()
        except SQLAlchemyError as e:
            raise LedgerWriteError(
                f"Could not record delivery for {reminder_id}/{offset_millis}"
            ) from e

    def get_all_for_reminder(self, reminder_id: str) -> Dict[int, int]:
        """Return offset_millis -> last_fired_at for every fired pair of a reminder."""
        try:
            with self._session() as session:
                rows = session.execute(
                    select(FireRecord.offset_millis, FireRecord.last_fired_at).where(
                        FireRecord.reminder_id == reminder_id
                    )
                ).all()
        except SQLAlchemyError as e:
            raise LedgerError(f"Could not read fire state for {reminder_id}") from e
        return {offset: fired_at for offset, fired_at in rows}

    def delete_for_reminder(self, reminder_id: str) -> int:
        """Drop all records of a hard-deleted reminder. Returns the number removed."""
        try:
            with self._session() as session:
                result = session.execute(
                    delete(FireRecord).where(FireRecord.reminder_id == reminder_id)
                )
                session.commit()
        except SQLAlchemyError as e:
            raise LedgerWriteError(f"Could not delete fire state for {reminder_id}") from e
        return result.rowcount

    def close(self) -> None:
        self._engine.dispose()
