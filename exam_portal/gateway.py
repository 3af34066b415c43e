# exam_portal/gateway.py
"""
Table-level persistence used by the attempt flow.

Every call runs in its own short transaction on the Flask-SQLAlchemy session.
When called outside an app context (for example from a countdown or autosave
timer thread) the gateway pushes one for the duration of the call, so each
thread gets its own session.

Driver errors are translated into the package's store errors so callers can
tell a retryable failure (connection dropped, pool exhausted) from a
permanent one (constraint violation, bad SQL).
"""
import logging
from contextlib import contextmanager, nullcontext

from flask import has_app_context
from sqlalchemy import select, update, func
from sqlalchemy.exc import (
    IntegrityError, OperationalError, InterfaceError, SQLAlchemyError,
    TimeoutError as PoolTimeoutError,
)

from .errors import TransientStoreError, PermanentStoreError, DuplicateRowError
from .models import db

log = logging.getLogger(__name__)


class SQLAlchemyGateway:

    def __init__(self, app=None, database=db):
        self.app = app
        self.db = database

    @contextmanager
    def _session(self, operation, model):
        scope = nullcontext() if has_app_context() or self.app is None else self.app.app_context()
        with scope:
            session = self.db.session
            try:
                yield session
            except IntegrityError as e:
                session.rollback()
                log.warning(f"{operation} on {model.__name__} violated a constraint: {e.orig}")
                raise DuplicateRowError(f"{operation} {model.__name__}: {e.orig}") from e
            except (OperationalError, InterfaceError, PoolTimeoutError) as e:
                session.rollback()
                log.warning(f"Transient store failure during {operation} on {model.__name__}: {e}")
                raise TransientStoreError(f"{operation} {model.__name__}: {e}") from e
            except SQLAlchemyError as e:
                session.rollback()
                log.error(f"Store rejected {operation} on {model.__name__}: {e}", exc_info=True)
                raise PermanentStoreError(f"{operation} {model.__name__}: {e}") from e

    # --- Reads ---

    def get(self, model, ident):
        """Primary key lookup, always refreshed from the store."""
        with self._session('get', model) as session:
            return session.get(model, ident, populate_existing=True)

    def fetch(self, model, order_by=None, **filters):
        with self._session('fetch', model) as session:
            stmt = select(model).filter_by(**filters)
            if order_by is not None:
                stmt = stmt.order_by(*order_by) if isinstance(order_by, (list, tuple)) else stmt.order_by(order_by)
            stmt = stmt.execution_options(populate_existing=True)
            return list(session.execute(stmt).scalars().all())

    def fetch_one(self, model, **filters):
        with self._session('fetch_one', model) as session:
            stmt = select(model).filter_by(**filters).limit(1).execution_options(populate_existing=True)
            return session.execute(stmt).scalars().first()

    def count(self, model, **filters):
        with self._session('count', model) as session:
            stmt = select(func.count()).select_from(model).filter_by(**filters)
            return session.execute(stmt).scalar_one()

    # --- Writes ---

    def insert(self, model, **values):
        with self._session('insert', model) as session:
            row = model(**values)
            session.add(row)
            session.commit()
            return row

    def update(self, model, values, **filters):
        """Conditional update. Returns the number of rows matched by ``filters``."""
        with self._session('update', model) as session:
            result = session.execute(update(model).filter_by(**filters).values(**values))
            session.commit()
            return result.rowcount

    @staticmethod
    def _guard_holds(session, guard):
        """Lock the guard row; False if it no longer matches its filters."""
        if guard is None:
            return True
        guard_model, guard_filters = guard
        stmt = select(guard_model).filter_by(**guard_filters).with_for_update()
        return session.execute(stmt).scalars().first() is not None

    def upsert(self, model, key, values, guard=None):
        """
        Insert a row identified by the composite ``key`` or overwrite its ``values``.

        ``guard`` is an optional ``(model, filters)`` pair checked under a row
        lock in the same transaction as the write. When it matches no row
        nothing is written and None is returned.
        """
        with self._session('upsert', model) as session:
            if not self._guard_holds(session, guard):
                session.rollback()
                return None
            stmt = select(model).filter_by(**key).execution_options(populate_existing=True)
            row = session.execute(stmt).scalars().first()
            if row is None:
                row = model(**key, **values)
                session.add(row)
                try:
                    session.commit()
                    return row
                except IntegrityError:
                    # Another writer inserted the same key first; overwrite theirs.
                    session.rollback()
                    if not self._guard_holds(session, guard):
                        session.rollback()
                        return None
                    row = session.execute(stmt).scalars().one()
            for name, value in values.items():
                setattr(row, name, value)
            session.commit()
            return row
