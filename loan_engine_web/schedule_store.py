"""Persistence layer for loans and their schedules.

Each loan is one row holding the loan and its whole schedule as JSON, keyed
by loan id. The row carries the loan's generation version and a revision
counter bumped by every write. A save replaces both documents in a single
``UPDATE ... WHERE revision = ?`` so a schedule is never left half-updated,
and a writer that read an older revision than the one stored gets a
:class:`ScheduleConflictError`. It defaults to SQLite for local
development, but accepts any SQLAlchemy-compatible URL.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import Column, DateTime, Integer, String, Text, create_engine, select, update
from sqlalchemy.orm import declarative_base, sessionmaker

from loan_engine.data_models import Loan, Schedule
from loan_engine.errors import ScheduleConflictError
from loan_engine.serialization import loan_from_dict, loan_to_dict, schedule_from_dict, schedule_to_dict

logger = logging.getLogger(__name__)

Base = declarative_base()

DEFAULT_DATABASE_URL = "sqlite:///loan_schedules.sqlite3"


class LoanRecordModel(Base):
    __tablename__ = "loan_schedules"

    id = Column(String(64), primary_key=True)
    version = Column(Integer, nullable=False)
    revision = Column(Integer, nullable=False, default=1)
    loan_json = Column(Text, nullable=False)
    schedule_json = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)


@dataclass(frozen=True)
class LoanRecord:
    loan: Loan
    schedule: Schedule
    revision: int


class ScheduleStore:
    """Database-backed loan and schedule store."""

    def __init__(self, url: str) -> None:
        self._engine = create_engine(url, future=True)
        Base.metadata.create_all(self._engine)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)

    def create(self, loan: Loan, schedule: Schedule) -> LoanRecord:
        payload = LoanRecordModel(
            id=loan.id,
            version=loan.version,
            revision=1,
            loan_json=json.dumps(loan_to_dict(loan)),
            schedule_json=json.dumps(schedule_to_dict(schedule)),
        )
        with self._session_factory() as session:
            if session.get(LoanRecordModel, loan.id) is not None:
                raise ScheduleConflictError(f"Loan {loan.id} already exists")
            session.add(payload)
            session.commit()
        logger.info("Stored loan %s at version %d", loan.id, loan.version)
        return LoanRecord(loan, schedule, 1)

    def load(self, loan_id: str) -> Optional[LoanRecord]:
        """Return the stored loan, schedule and revision, or ``None``."""
        with self._session_factory() as session:
            row = session.get(LoanRecordModel, loan_id)
            if row is None:
                return None
            return LoanRecord(
                loan=loan_from_dict(json.loads(row.loan_json)),
                schedule=schedule_from_dict(json.loads(row.schedule_json)),
                revision=row.revision,
            )

    def list_ids(self) -> List[str]:
        with self._session_factory() as session:
            return list(session.execute(select(LoanRecordModel.id).order_by(LoanRecordModel.id)).scalars())

    def save(self, loan: Loan, schedule: Schedule, expected_revision: int) -> LoanRecord:
        """Replace the stored loan and schedule.

        ``expected_revision`` is the revision the caller read. The write
        only happens if the stored row is still at that revision.

        Raises
        ------
        ScheduleConflictError
            If another writer changed the loan since it was read.
        """
        with self._session_factory() as session:
            result = session.execute(
                update(LoanRecordModel)
                .where(LoanRecordModel.id == loan.id)
                .where(LoanRecordModel.revision == expected_revision)
                .values(
                    version=loan.version,
                    revision=expected_revision + 1,
                    loan_json=json.dumps(loan_to_dict(loan)),
                    schedule_json=json.dumps(schedule_to_dict(schedule)),
                    updated_at=datetime.utcnow(),
                )
            )
            if result.rowcount != 1:
                session.rollback()
                raise ScheduleConflictError(
                    f"Loan {loan.id} changed since revision {expected_revision} was read"
                )
            session.commit()
        logger.info("Saved loan %s at version %d", loan.id, loan.version)
        return LoanRecord(loan, schedule, expected_revision + 1)

    def delete(self, loan_id: str) -> bool:
        with self._session_factory() as session:
            row = session.get(LoanRecordModel, loan_id)
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True


def create_store_from_env(url: Optional[str]) -> ScheduleStore:
    return ScheduleStore(url or DEFAULT_DATABASE_URL)
