from __future__ import annotations

from pathlib import Path

import pytest
from celery.schedules import crontab

from services.schedule_loader import DEFAULT_SCHEDULE_FILE, as_celery_schedule, load_schedule_config


def test_bundled_schedule_registers_hourly_sweep() -> None:
    timezone_name, entries, path = load_schedule_config(DEFAULT_SCHEDULE_FILE)

    assert path == DEFAULT_SCHEDULE_FILE
    assert timezone_name == "UTC"
    assert set(entries) == {"tier-lifecycle-sweep"}
    schedule = as_celery_schedule(entries)
    entry = schedule["tier-lifecycle-sweep"]
    assert entry["task"] == "tier.run_sweep"
    assert isinstance(entry["schedule"], crontab)
    assert entry["options"] == {"expires": 3300}


def test_invalid_entries_are_ignored(tmp_path: Path) -> None:
    schedule_file = tmp_path / "tier.yml"
    schedule_file.write_text(
        "entries:\n"
        "  missing-cron:\n"
        "    task: tier.run_sweep\n"
        "  not-a-mapping: nope\n"
        "  nightly:\n"
        "    task: tier.run_sweep\n"
        "    cron: '15 2 * * *'\n"
        "    kwargs:\n"
        "      dry_run: true\n",
        encoding="utf-8",
    )

    timezone_name, entries, _ = load_schedule_config(schedule_file)

    assert timezone_name is None
    assert list(entries) == ["nightly"]
    assert entries["nightly"]["kwargs"] == {"dry_run": True}


def test_missing_file_yields_empty_schedule(tmp_path: Path) -> None:
    assert load_schedule_config(tmp_path / "absent.yml")[1] == {}


def test_cron_expression_must_have_five_fields() -> None:
    with pytest.raises(ValueError):
        as_celery_schedule({"broken": {"task": "tier.run_sweep", "cron": "0 * * *"}})


def test_celery_app_loads_tier_beat_schedule() -> None:
    from worker.celery_app import app

    assert "tier-lifecycle-sweep" in app.conf.beat_schedule
    assert app.conf.beat_schedule["tier-lifecycle-sweep"]["task"] == "tier.run_sweep"
    assert "services.tier_tasks" in app.conf.include
