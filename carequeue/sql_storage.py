# carequeue/sql_storage.py
# SQLAlchemy backend for the record store. Same interface as MemStorage;
# transactions map onto the session's commit/rollback.
import threading
from contextlib import contextmanager
from typing import Callable, Optional
from datetime import datetime

import structlog
from sqlalchemy.exc import SQLAlchemyError

from . import models
from .database import make_engine, make_session_factory, create_tables
from .exceptions import CareQueueError
from .storage import Entity, RECORD_SCHEMAS, Storage

logger = structlog.get_logger(__name__)

ORM_MODELS = {
    Entity.users: models.User,
    Entity.departments: models.Department,
    Entity.doctors: models.Doctor,
    Entity.nurses: models.Nurse,
    Entity.patients: models.Patient,
    Entity.pharmacy_staff: models.PharmacyStaff,
    Entity.appointments: models.Appointment,
    Entity.tokens: models.Token,
    Entity.prescriptions: models.Prescription,
    Entity.drugs: models.Drug,
    Entity.operation_theatres: models.OperationTheatre,
    Entity.surgeries: models.Surgery,
    Entity.emergency_alerts: models.EmergencyAlert,
}


class StorageError(CareQueueError):
    status_code = 500
    default_message = "A database error occurred"


class SqlStorage(Storage):
    """Record store over one SQLAlchemy session guarded by a re-entrant lock."""

    def __init__(self, session_factory, clock: Optional[Callable[[], datetime]] = None):
        super().__init__(clock)
        self._session = session_factory()
        self._lock = threading.RLock()
        self._depth = 0

    @classmethod
    def from_url(cls, database_url: str, clock: Optional[Callable[[], datetime]] = None) -> "SqlStorage":
        engine = make_engine(database_url)
        create_tables(engine)
        return cls(make_session_factory(engine), clock=clock)

    def close(self):
        self._session.close()

    def _to_record(self, entity, row):
        return RECORD_SCHEMAS[entity].model_validate(row)

    def _insert(self, entity, values):
        with self.transaction():
            row = ORM_MODELS[entity](**values)
            self._session.add(row)
            self._session.flush()
            return self._to_record(entity, row)

    def _write(self, entity, record_id, fields):
        with self.transaction():
            row = self._session.get(ORM_MODELS[entity], record_id)
            for field, value in fields.items():
                setattr(row, field, value)
            self._session.flush()
            return self._to_record(entity, row)

    def get(self, entity, record_id):
        with self._lock:
            row = self._session.get(ORM_MODELS[entity], record_id)
            return self._to_record(entity, row) if row is not None else None

    def list(self, entity, **filters):
        model = ORM_MODELS[entity]
        with self._lock:
            rows = self._session.query(model).filter_by(**filters).order_by(model.id).all()
            return [self._to_record(entity, row) for row in rows]

    @contextmanager
    def transaction(self):
        with self._lock:
            outermost = self._depth == 0
            self._depth += 1
            try:
                yield
                if outermost:
                    self._session.commit()
            except SQLAlchemyError as e:
                if outermost:
                    self._session.rollback()
                logger.error("storage_transaction_failed", error=str(e))
                raise StorageError() from e
            except BaseException:
                if outermost:
                    self._session.rollback()
                raise
            finally:
                self._depth -= 1
