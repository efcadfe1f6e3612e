"""
Tests for Schedule Stores.
"""

import pytest
from datetime import datetime, timezone

from core.exceptions import ScheduleError
from scheduled_exports.models import (
    DeliveryConfig,
    DeliveryMethod,
    JobStatus,
    RecurrenceKind,
    RecurrenceSpec,
    ScheduledExportConfig,
    ScheduledExportJob,
)
from scheduled_exports.store import (
    InMemoryScheduleStore,
    JsonFileScheduleStore,
    SqlScheduleStore,
    create_schedule_store,
)


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def config(export_spec, clock):
    return ScheduledExportConfig(
        config_id="export_1",
        name="Weekly orders",
        export=export_spec,
        schedule=RecurrenceSpec(
            kind=RecurrenceKind.WEEKLY,
            day_of_week=1,
            time_of_day="09:00",
            timezone="Europe/Berlin",
            end_date=datetime(2025, 6, 30, tzinfo=timezone.utc),
        ),
        delivery=DeliveryConfig(method=DeliveryMethod.WEBHOOK, webhook_url="https://hooks.example.com/x"),
        next_run=datetime(2025, 1, 13, 8, 0, tzinfo=timezone.utc),
        created_at=clock.now(),
        updated_at=clock.now(),
    )


@pytest.fixture
def job(clock):
    return ScheduledExportJob(
        job_id="job_1",
        config_id="export_1",
        scheduled_at=clock.now(),
        status=JobStatus.PENDING,
        retry_count=1,
    )


@pytest.fixture(params=["json", "sql"])
def persistent_store(request, tmp_path):
    if request.param == "json":
        yield JsonFileScheduleStore(str(tmp_path / "schedules.json"))
        return
    store = SqlScheduleStore("sqlite://")
    yield store
    store.dispose()


# ============================================================
# ROUND TRIPS
# ============================================================

class TestRoundTrip:
    """Saved configs and jobs come back intact."""

    def test_config(self, persistent_store, config):
        persistent_store.save_configs({config.config_id: config.to_dict()})

        loaded = ScheduledExportConfig.from_dict(persistent_store.load_configs()["export_1"])

        assert loaded.name == "Weekly orders"
        assert loaded.schedule.kind == RecurrenceKind.WEEKLY
        assert loaded.schedule.timezone == "Europe/Berlin"
        assert loaded.schedule.end_date == config.schedule.end_date
        assert loaded.next_run == config.next_run
        assert loaded.next_run.tzinfo is not None
        assert loaded.delivery.method == DeliveryMethod.WEBHOOK
        assert loaded.export.fields == ["sku", "name"]

    def test_job(self, persistent_store, job):
        persistent_store.save_jobs({job.job_id: job.to_dict()})

        loaded = ScheduledExportJob.from_dict(persistent_store.load_jobs()["job_1"])

        assert loaded.status == JobStatus.PENDING
        assert loaded.retry_count == 1
        assert loaded.scheduled_at == job.scheduled_at

    def test_removed_records_are_deleted(self, persistent_store, config, job):
        persistent_store.save_configs({config.config_id: config.to_dict()})
        persistent_store.save_jobs({job.job_id: job.to_dict()})

        persistent_store.save_configs({})

        assert persistent_store.load_configs() == {}
        assert list(persistent_store.load_jobs()) == ["job_1"]

    def test_empty(self, persistent_store):
        assert persistent_store.load_configs() == {}
        assert persistent_store.load_jobs() == {}


class TestInMemoryStore:
    """Tests for InMemoryScheduleStore."""

    def test_returns_copies(self, config):
        store = InMemoryScheduleStore()
        store.save_configs({config.config_id: config.to_dict()})

        store.load_configs()["export_1"]["name"] = "changed"

        assert store.load_configs()["export_1"]["name"] == "Weekly orders"


class TestJsonFileStore:
    """Tests for JsonFileScheduleStore."""

    def test_corrupt_document(self, tmp_path):
        path = tmp_path / "schedules.json"
        path.write_text("{not json", encoding="utf-8")

        with pytest.raises(ScheduleError):
            JsonFileScheduleStore(str(path)).load_configs()

    def test_creates_parent_directory(self, tmp_path, job):
        store = JsonFileScheduleStore(str(tmp_path / "state" / "schedules.json"))

        store.save_jobs({job.job_id: job.to_dict()})

        assert store.path.exists()
        assert list(tmp_path.joinpath("state").iterdir()) == [store.path]


class TestCreateScheduleStore:
    """Tests for create_schedule_store."""

    def test_choices(self, tmp_path):
        sql = create_schedule_store(database_url="sqlite://", path=str(tmp_path / "s.json"))
        assert isinstance(sql, SqlScheduleStore)
        sql.dispose()

        assert isinstance(create_schedule_store(path=str(tmp_path / "s.json")), JsonFileScheduleStore)
        assert isinstance(create_schedule_store(), InMemoryScheduleStore)
