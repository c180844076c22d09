import asyncio

import pytest

from core.dedup import ProcessedJobSet
from tests.fakes import FakeAutomator, FakeNotifier, FakeWatcher
from worker.main import UmzugshilfeService
from worker.session import LoginError

WITTEN = {"date": "23.08.2025", "time": "15:00", "zip": "58452", "city": "Witten"}
BERLIN = {"date": "24.08.2025", "time": "9", "zip": "10115", "city": "Berlin"}
WITTEN_KEY = "23.08.2025_15:00_58452"
BERLIN_KEY = "24.08.2025_09:00_10115"


def _service(settings, automator=None, processed=None, queue_delay=0):
    return UmzugshilfeService(
        settings,
        automator=automator or FakeAutomator(),
        watcher=FakeWatcher(),
        notifier=FakeNotifier(),
        processed=processed,
        queue_delay=queue_delay,
    )


def test_successful_job(settings):
    service = _service(settings)
    result = asyncio.run(service.handle_new_job(WITTEN))

    assert result["results"] == {"successful": [WITTEN_KEY], "failed": []}
    assert result["method"] == "job_details"
    assert isinstance(result["response_time"], int)
    assert "timestamp" in result
    assert service.processed.has(WITTEN_KEY)
    assert service.notifier.successes == [[WITTEN_KEY]]
    assert service.stats["success_count"] == 1
    assert not service.is_processing


def test_no_match_is_a_failure_without_notification(settings):
    service = _service(settings, FakeAutomator(result=False))
    result = asyncio.run(service.handle_new_job(WITTEN))

    assert result["results"] == {"successful": [], "failed": [WITTEN_KEY]}
    assert not service.processed.has(WITTEN_KEY)
    assert service.notifier.successes == []
    assert service.stats["fail_count"] == 1


@pytest.mark.parametrize("details", [None, {}, {"date": "morgen", "time": "15:00", "zip": "58452"}, "23.08.2025"])
def test_invalid_details(settings, details):
    service = _service(settings)
    result = asyncio.run(service.handle_new_job(details))
    assert result == {"results": {"successful": [], "failed": ["INVALID_DETAILS"]}}
    assert service.automator.calls == []


def test_duplicate_is_reported_successful_without_resubmitting(settings):
    processed = ProcessedJobSet()
    processed.add(WITTEN_KEY)
    service = _service(settings, processed=processed)

    result = asyncio.run(service.handle_new_job(WITTEN))

    assert result["results"] == {"successful": [WITTEN_KEY], "failed": []}
    assert service.automator.calls == []


def test_fatal_error_is_recorded_and_notified(settings):
    service = _service(settings, FakeAutomator(error=LoginError("Login failed")))
    result = asyncio.run(service.handle_new_job(WITTEN))

    assert result["results"] == {"successful": [], "failed": [WITTEN_KEY]}
    assert result["error"] == "Login failed"
    assert service.notifier.errors == [("Login failed", [WITTEN_KEY])]
    assert service.stats["fail_count"] == 1
    assert not service.is_processing


def test_single_flight_queues_and_serializes(settings):
    async def scenario():
        gate = asyncio.Event()
        automator = FakeAutomator(gate=gate)
        service = _service(settings, automator)

        first = asyncio.create_task(service.handle_new_job(WITTEN))
        await asyncio.sleep(0)
        assert service.is_processing

        second = await service.handle_new_job(BERLIN)
        again = await service.handle_new_job(BERLIN)
        assert second["queued"] is True and again["queued"] is True
        assert len(service.queue) == 1

        gate.set()
        await first
        for _ in range(100):
            if len(automator.calls) == 2 and not service.is_processing:
                break
            await asyncio.sleep(0.01)
        return service, automator

    service, automator = asyncio.run(scenario())

    assert automator.calls == [WITTEN_KEY, BERLIN_KEY]
    assert automator.max_active == 1
    assert len(service.queue) == 0
    assert service.stats["total_jobs_processed"] == 2


def test_stats_snapshot(settings):
    service = _service(settings)
    asyncio.run(service.handle_new_job(WITTEN))
    snapshot = service.stats_snapshot()

    assert snapshot["total_jobs_processed"] == 1
    assert snapshot["success_rate"] == 100
    assert snapshot["queue_length"] == 0
    assert snapshot["processed_jobs_count"] == 1
    assert snapshot["is_processing"] is False
    assert snapshot["uptime"] >= 0


def test_start_and_stop(settings):
    async def scenario():
        service = _service(settings)
        await service.start()
        await asyncio.sleep(0)
        health = service.health()
        await service.stop()
        return service, health

    service, health = asyncio.run(scenario())

    assert health["browser_ready"] is True
    assert health["email_connected"] is True
    assert health["smtp_configured"] is True
    assert service.watcher.stopped
    assert service.automator.cleaned_up


DORTMUND = {"date": "25.08.2025", "time": "10:00", "zip": "44137", "city": "Dortmund"}
DORTMUND_KEY = "25.08.2025_10:00_44137"


async def _drain(service, automator, expected_calls):
    for _ in range(200):
        if len(automator.calls) == expected_calls and not service.is_processing and not service.queue:
            return
        await asyncio.sleep(0.01)


def test_job_arriving_during_settle_delay_waits_its_turn(settings):
    async def scenario():
        gate = asyncio.Event()
        automator = FakeAutomator(gate=gate)
        service = _service(settings, automator, queue_delay=0.05)

        first = asyncio.create_task(service.handle_new_job(WITTEN))
        await asyncio.sleep(0)
        assert (await service.handle_new_job(BERLIN))["queued"] is True

        gate.set()
        await first
        assert not service.is_processing
        late = await service.handle_new_job(DORTMUND)
        await _drain(service, automator, 3)
        return late, automator

    late, automator = asyncio.run(scenario())

    assert late["queued"] is True
    assert automator.calls == [WITTEN_KEY, BERLIN_KEY, DORTMUND_KEY]
    assert automator.max_active == 1


def test_queue_runner_is_scheduled_once(settings):
    async def scenario():
        gate = asyncio.Event()
        automator = FakeAutomator(gate=gate)
        service = _service(settings, automator, queue_delay=0.05)

        first = asyncio.create_task(service.handle_new_job(WITTEN))
        await asyncio.sleep(0)
        await service.handle_new_job(BERLIN)
        await service.handle_new_job(DORTMUND)

        gate.set()
        await first
        runner = service._queue_task
        service._schedule_queue()
        service._schedule_queue()
        same = service._queue_task is runner
        await _drain(service, automator, 3)
        return same, runner, automator

    same, runner, automator = asyncio.run(scenario())

    assert same
    assert runner.done()
    assert automator.calls == [WITTEN_KEY, BERLIN_KEY, DORTMUND_KEY]


def test_stop_cancels_pending_queue_runner(settings):
    async def scenario():
        gate = asyncio.Event()
        automator = FakeAutomator(gate=gate)
        service = _service(settings, automator, queue_delay=10)
        await service.start()

        first = asyncio.create_task(service.handle_new_job(WITTEN))
        await asyncio.sleep(0)
        await service.handle_new_job(BERLIN)
        gate.set()
        await first

        runner = service._queue_task
        await service.stop()
        return service, runner, automator

    service, runner, automator = asyncio.run(scenario())

    assert runner.cancelled()
    assert automator.calls == [WITTEN_KEY]
    assert len(service.queue) == 0
