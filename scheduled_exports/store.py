"""
Scheduled Exports - Schedule Stores.

============================================================
PURPOSE
============================================================
Persistence of scheduled export configs and job history.

The registry hands stores plain dicts (from to_dict()) keyed by
identity and rehydrates them with from_dict(), so stores never
see model classes and timestamps survive as ISO-8601 strings.

============================================================
IMPLEMENTATIONS
============================================================
- InMemoryScheduleStore: tests and throwaway runs
- JsonFileScheduleStore: one JSON document on disk
- SqlScheduleStore: SQLAlchemy tables, one JSON payload per row

============================================================
"""

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Protocol
import copy
import json
import logging
import os
import tempfile

from sqlalchemy import JSON, DateTime, String, create_engine, delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from core.clock import from_iso8601
from core.exceptions import ScheduleError


logger = logging.getLogger(__name__)


Records = Dict[str, Dict[str, Any]]


class ScheduleStore(Protocol):
    """Load/save of configs and jobs as identity-keyed dict collections."""

    def load_configs(self) -> Records:
        ...

    def save_configs(self, configs: Records) -> None:
        ...

    def load_jobs(self) -> Records:
        ...

    def save_jobs(self, jobs: Records) -> None:
        ...


# ============================================================
# IN MEMORY
# ============================================================

class InMemoryScheduleStore:
    """Keeps deep copies so callers cannot mutate stored state."""

    def __init__(self):
        self._configs: Records = {}
        self._jobs: Records = {}

    def load_configs(self) -> Records:
        return copy.deepcopy(self._configs)

    def save_configs(self, configs: Records) -> None:
        self._configs = copy.deepcopy(configs)

    def load_jobs(self) -> Records:
        return copy.deepcopy(self._jobs)

    def save_jobs(self, jobs: Records) -> None:
        self._jobs = copy.deepcopy(jobs)


# ============================================================
# JSON FILE
# ============================================================

class JsonFileScheduleStore:
    """
    Single JSON document: {"configs": {...}, "jobs": {...}}.

    Writes go to a temp file in the same directory and are moved
    into place, so a crash never leaves a half-written document.
    """

    def __init__(self, path: str):
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> Dict[str, Records]:
        if not self._path.exists():
            return {"configs": {}, "jobs": {}}
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                document = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ScheduleError(
                f"Failed to read schedule store {self._path}: {e}",
                context={"path": str(self._path)},
                cause=e,
            )
        return {
            "configs": dict(document.get("configs") or {}),
            "jobs": dict(document.get("jobs") or {}),
        }

    def _write(self, document: Dict[str, Records]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self._path.parent, prefix=".schedules-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2)
            os.replace(tmp_path, self._path)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise ScheduleError(
                f"Failed to write schedule store {self._path}: {e}",
                context={"path": str(self._path)},
                cause=e,
            )

    def load_configs(self) -> Records:
        return self._read()["configs"]

    def save_configs(self, configs: Records) -> None:
        document = self._read()
        document["configs"] = configs
        self._write(document)

    def load_jobs(self) -> Records:
        return self._read()["jobs"]

    def save_jobs(self, jobs: Records) -> None:
        document = self._read()
        document["jobs"] = jobs
        self._write(document)


# ============================================================
# SQL
# ============================================================

class Base(DeclarativeBase):
    """Declarative base for schedule tables."""

    type_annotation_map = {
        datetime: DateTime(timezone=True),
    }


class ScheduledExportConfigRecord(Base):
    __tablename__ = "scheduled_export_configs"

    config_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    enabled: Mapped[bool] = mapped_column(nullable=False, default=True)
    next_run: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)


class ScheduledExportJobRecord(Base):
    __tablename__ = "scheduled_export_jobs"

    job_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    config_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    status: Mapped[str] = mapped_column(String(16), index=True, nullable=False)
    scheduled_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)


class SqlScheduleStore:
    """
    SQLAlchemy-backed store.

    The payload column is the source of truth; the other columns
    exist for querying from outside the application.
    """

    def __init__(self, database_url: str, echo: bool = False):
        engine_kwargs: Dict[str, Any] = {"echo": echo}
        if database_url.startswith("sqlite") and (":memory:" in database_url or database_url == "sqlite://"):
            engine_kwargs["poolclass"] = StaticPool
            engine_kwargs["connect_args"] = {"check_same_thread": False}

        self._engine = create_engine(database_url, **engine_kwargs)
        self._session_factory = sessionmaker(
            bind=self._engine,
            autoflush=False,
            expire_on_commit=False,
        )
        Base.metadata.create_all(self._engine)
        logger.info(f"Schedule store using {database_url.split('@')[-1]}")

    def dispose(self) -> None:
        self._engine.dispose()

    def _session(self) -> Session:
        return self._session_factory()

    def load_configs(self) -> Records:
        try:
            with self._session() as session:
                rows = session.execute(select(ScheduledExportConfigRecord)).scalars().all()
                return {row.config_id: dict(row.payload) for row in rows}
        except SQLAlchemyError as e:
            raise ScheduleError(f"Failed to load scheduled export configs: {e}", cause=e)

    def save_configs(self, configs: Records) -> None:
        try:
            with self._session() as session, session.begin():
                session.execute(
                    delete(ScheduledExportConfigRecord).where(
                        ScheduledExportConfigRecord.config_id.not_in(list(configs))
                    )
                )
                for config_id, payload in configs.items():
                    session.merge(ScheduledExportConfigRecord(
                        config_id=config_id,
                        name=payload.get("name", ""),
                        enabled=bool(payload.get("enabled", True)),
                        next_run=from_iso8601(payload.get("next_run")),
                        payload=payload,
                    ))
        except SQLAlchemyError as e:
            raise ScheduleError(f"Failed to save scheduled export configs: {e}", cause=e)

    def load_jobs(self) -> Records:
        try:
            with self._session() as session:
                rows = session.execute(select(ScheduledExportJobRecord)).scalars().all()
                return {row.job_id: dict(row.payload) for row in rows}
        except SQLAlchemyError as e:
            raise ScheduleError(f"Failed to load scheduled export jobs: {e}", cause=e)

    def save_jobs(self, jobs: Records) -> None:
        try:
            with self._session() as session, session.begin():
                session.execute(
                    delete(ScheduledExportJobRecord).where(
                        ScheduledExportJobRecord.job_id.not_in(list(jobs))
                    )
                )
                for job_id, payload in jobs.items():
                    session.merge(ScheduledExportJobRecord(
                        job_id=job_id,
                        config_id=payload["config_id"],
                        status=payload.get("status", "pending"),
                        scheduled_at=from_iso8601(payload.get("scheduled_at")),
                        payload=payload,
                    ))
        except SQLAlchemyError as e:
            raise ScheduleError(f"Failed to save scheduled export jobs: {e}", cause=e)


def create_schedule_store(
    database_url: Optional[str] = None,
    path: Optional[str] = None,
) -> ScheduleStore:
    """SQL store when a URL is given, JSON file when a path is, else in-memory."""
    if database_url:
        return SqlScheduleStore(database_url)
    if path:
        return JsonFileScheduleStore(path)
    return InMemoryScheduleStore()
