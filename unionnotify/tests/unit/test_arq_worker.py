from __future__ import annotations

import asyncio
import json
import logging

import pytest

from unionnotify.core.logging import JsonFormatter
from unionnotify.services.delivery.store import enqueue_push
from unionnotify.workers import delivery_worker


def test_worker_settings_register_jobs() -> None:
    settings = delivery_worker.WorkerSettings

    assert settings.functions == [delivery_worker.drain_deliveries, delivery_worker.send_meeting_reminders]
    assert settings.queue_name == "deliveries"
    assert settings.on_startup is delivery_worker._startup


@pytest.mark.asyncio
async def test_drain_job_sends_due_pushes(session) -> None:
    await enqueue_push(session=session, user_id="u-1", push_token="ExponentPushToken[ok]", title="t", body="b")

    summary = await delivery_worker.drain_deliveries({})

    assert summary["processed"] == 1


@pytest.mark.asyncio
async def test_reminder_job_writes_run_log() -> None:
    result = await delivery_worker.send_meeting_reminders({})

    assert result["success"] is True
    assert result["notifications_queued"] == 0


@pytest.mark.asyncio
async def test_poll_loop_survives_failing_iteration(monkeypatch) -> None:
    calls: list[int] = []

    async def flaky(ctx) -> None:
        calls.append(len(calls))
        if len(calls) == 1:
            raise RuntimeError("transient")
        raise asyncio.CancelledError

    async def no_sleep(_seconds) -> None:
        return None

    monkeypatch.setattr(delivery_worker.asyncio, "sleep", no_sleep)

    with pytest.raises(asyncio.CancelledError):
        await delivery_worker._poll_loop("test", flaky, 1, {})

    assert calls == [0, 1]


@pytest.mark.asyncio
async def test_startup_and_shutdown_manage_loops(monkeypatch) -> None:
    started: list[str] = []

    async def idle_loop(name, job, interval_s, ctx) -> None:
        started.append(name)
        await asyncio.Event().wait()

    monkeypatch.setattr(delivery_worker, "_poll_loop", idle_loop)
    ctx: dict = {}

    await delivery_worker._startup(ctx)
    await asyncio.sleep(0)
    await delivery_worker._shutdown(ctx)
    await asyncio.sleep(0)

    assert sorted(started) == ["delivery drain", "meeting reminder"]
    assert ctx["drain_task"].cancelled()
    assert ctx["reminder_task"].cancelled()


def test_json_formatter_carries_extra_fields() -> None:
    record = logging.LogRecord("unionnotify.test", logging.INFO, __file__, 1, "push_failed id=%s", ("p-1",), None)
    record.delivery_id = "p-1"

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "push_failed id=p-1"
    assert payload["level"] == "INFO"
    assert payload["extra"] == {"delivery_id": "p-1"}
