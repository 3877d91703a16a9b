"""Unit tests for the workflow interpreter, driven by browser fakes."""

from __future__ import annotations

import asyncio
import itertools
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from pagerun.exceptions import ErrorKind, SessionLaunchError
from pagerun.interrupt import ChallengeDetection, InterruptCoordinator
from pagerun.monitoring.event_bus import EventBus, InMemorySink, ProgressStatus
from pagerun.workflow.interpreter import WorkflowInterpreter
from pagerun.workflow.loader import load_workflow_from_file
from pagerun.workflow.models import ExecutionStatus, TaskContext, Workflow

WORKFLOWS_DIR = Path(__file__).resolve().parents[1] / "fixtures" / "workflows"


def _profile_workflow() -> Workflow:
    return load_workflow_from_file(WORKFLOWS_DIR / "profile_metrics.json")


def _context(task_id: str = "t1", **params: str) -> TaskContext:
    return TaskContext(task_id=task_id, parameters={"creatorId": "42", **params})


def _workflow(*steps: dict) -> Workflow:
    return Workflow.model_validate({"workflowId": "adhoc", "steps": list(steps)})


@pytest.fixture()
def profile_page(fake_page_cls, fake_element_cls):
    return fake_page_cls(
        {
            "body": fake_element_cls(),
            ".followers": fake_element_cls(" 12.5K "),
            ".header": fake_element_cls(shot=b"header-png"),
        }
    )


class TestExecute:
    @pytest.mark.anyio
    async def test_completed_run(self, settings, fake_sessions_cls, blob_store, profile_page) -> None:
        sessions = fake_sessions_cls(profile_page)
        bus = EventBus()
        sink = InMemorySink()
        bus.add_sink(sink)
        interpreter = WorkflowInterpreter(sessions, blob_store, settings=settings, progress=bus)

        result = await interpreter.execute(_profile_workflow(), _context())

        assert result.status is ExecutionStatus.COMPLETED
        assert result.error is None
        assert result.data == {"followers": "12.5K"}
        assert [s.name for s in result.screenshots] == ["42_header.png"]
        assert result.screenshots[0].url == "mem://automation_screenshots/t1/42_header.png"
        assert blob_store.blobs["automation_screenshots/t1/42_header.png"] == b"header-png"
        profile_page.goto.assert_awaited_once()
        assert profile_page.goto.await_args.args[0] == "https://example.test/profile/42"
        assert sessions.released == [profile_page]
        assert sink.statuses() == [ProgressStatus.RUNNING] * 3 + [ProgressStatus.COMPLETED]

    @pytest.mark.anyio
    async def test_extraction_miss_is_recovered(self, settings, fake_sessions_cls, blob_store, fake_page_cls, fake_element_cls) -> None:
        page = fake_page_cls({"body": fake_element_cls()})
        workflow = _workflow(
            {"action": "navigate", "url": "https://example.test/"},
            {"action": "extractData", "selector": ".views", "dataName": "views"},
            {
                "action": "compositeExtract",
                "template": "${likes} likes / ${shares} shares",
                "sources": [{"name": "likes", "selector": ".likes"}, {"name": "shares", "selector": ".shares"}],
                "dataName": "engagement",
            },
        )
        page.elements[".likes"] = fake_element_cls("7")

        result = await WorkflowInterpreter(fake_sessions_cls(page), blob_store, settings=settings).execute(
            workflow, _context()
        )

        assert result.status is ExecutionStatus.COMPLETED
        assert result.data["views"] == "extraction failed"
        assert result.data["engagement"] == "7 likes / not found shares"

    @pytest.mark.anyio
    async def test_missing_screenshot_target_fails_task(self, settings, fake_sessions_cls, blob_store, profile_page) -> None:
        workflow = _workflow(
            {"action": "navigate", "url": "https://example.test/"},
            {"action": "extractData", "selector": ".followers", "dataName": "followers"},
            {"action": "screenshot", "selector": ".chart"},
            {"action": "click", "selector": ".next"},
        )
        sessions = fake_sessions_cls(profile_page)

        result = await WorkflowInterpreter(sessions, blob_store, settings=settings).execute(workflow, _context())

        assert result.status is ExecutionStatus.FAILED
        assert result.error.phase == "screenshot"
        assert result.error.kind is ErrorKind.ELEMENT_NOT_FOUND
        assert result.error.step_index == 2
        assert result.data == {"followers": "12.5K"}
        profile_page.click.assert_not_awaited()
        assert sessions.released == [profile_page]

    @pytest.mark.anyio
    async def test_navigation_timeout(self, settings, fake_sessions_cls, blob_store, profile_page) -> None:
        profile_page.goto.side_effect = PlaywrightTimeoutError("Timeout 60000ms exceeded")

        result = await WorkflowInterpreter(fake_sessions_cls(profile_page), blob_store, settings=settings).execute(
            _profile_workflow(), _context()
        )

        assert result.error.phase == "navigate"
        assert result.error.kind is ErrorKind.NAVIGATION

    @pytest.mark.anyio
    async def test_missing_ready_marker_is_navigation_error(self, settings, fake_sessions_cls, blob_store, fake_page_cls) -> None:
        result = await WorkflowInterpreter(fake_sessions_cls(fake_page_cls()), blob_store, settings=settings).execute(
            _profile_workflow(), _context()
        )

        assert result.error.kind is ErrorKind.NAVIGATION
        assert result.error.step_index == 0

    @pytest.mark.anyio
    async def test_closed_page_is_stale_session(self, settings, fake_sessions_cls, blob_store, profile_page) -> None:
        profile_page.elements[".tab"] = profile_page.elements["body"]
        profile_page.click.side_effect = PlaywrightError("Target page, context or browser has been closed")
        workflow = _workflow({"action": "click", "selector": ".tab"})

        result = await WorkflowInterpreter(fake_sessions_cls(profile_page), blob_store, settings=settings).execute(
            workflow, _context()
        )

        assert result.error.phase == "click"
        assert result.error.kind is ErrorKind.STALE_SESSION

    @pytest.mark.anyio
    async def test_acquire_failure(self, settings, fake_sessions_cls, blob_store) -> None:
        sessions = fake_sessions_cls(error=SessionLaunchError("no browser binary"))

        result = await WorkflowInterpreter(sessions, blob_store, settings=settings).execute(
            _profile_workflow(), _context()
        )

        assert result.status is ExecutionStatus.FAILED
        assert result.error.phase == "session"
        assert result.error.kind is ErrorKind.SESSION
        assert sessions.released == []

    @pytest.mark.anyio
    async def test_upload_failure(self, settings, fake_sessions_cls, profile_page) -> None:
        store = AsyncMock()
        store.upload.side_effect = OSError("bucket unreachable")

        result = await WorkflowInterpreter(fake_sessions_cls(profile_page), store, settings=settings).execute(
            _profile_workflow(), _context()
        )

        assert result.error.phase == "screenshot"
        assert result.error.kind is ErrorKind.UPLOAD

    @pytest.mark.anyio
    async def test_time_budget(self, settings, fake_sessions_cls, blob_store) -> None:
        workflow = _workflow({"action": "wait", "milliseconds": 1}, {"action": "wait", "milliseconds": 1})
        clock = itertools.chain([0.0, 0.0, 1000.0], itertools.repeat(1000.0))
        sleeps = AsyncMock()

        with patch("pagerun.workflow.interpreter.time") as fake_time:
            fake_time.monotonic.side_effect = lambda: next(clock)
            result = await WorkflowInterpreter(
                fake_sessions_cls(), blob_store, settings=settings, sleep=sleeps
            ).execute(workflow, _context())

        assert result.error.kind is ErrorKind.TIMEOUT
        assert result.error.step_index == 1
        sleeps.assert_awaited_once_with(0.001)

    @pytest.mark.anyio
    async def test_full_page_screenshot_scrolls_first(self, settings, fake_sessions_cls, blob_store, fake_page_cls) -> None:
        page = fake_page_cls()
        workflow = _workflow({"action": "screenshot", "saveAs": "full.png"})

        result = await WorkflowInterpreter(fake_sessions_cls(page), blob_store, settings=settings).execute(
            workflow, _context()
        )

        assert result.status is ExecutionStatus.COMPLETED
        assert page.mouse.wheel.await_count >= 1
        page.screenshot.assert_awaited_with(full_page=True)


class _ScriptedDetector:
    """Answers ``inspect`` from a script, then from ``active``."""

    def __init__(self, *answers: bool, active: bool = False) -> None:
        self.answers = list(answers)
        self.active = active
        self.calls = 0

    async def inspect(self, page) -> ChallengeDetection:
        self.calls += 1
        detected = self.answers.pop(0) if self.answers else self.active
        return ChallengeDetection(detected=detected, selector="#captcha_container" if detected else "")

    async def is_active(self, page) -> bool:
        return self.active


async def _wait_until_paused(coordinator: InterruptCoordinator, task_id: str) -> None:
    for _ in range(200):
        if coordinator.is_paused(task_id):
            return
        await asyncio.sleep(0)
    raise AssertionError(f"{task_id} never paused")


class TestCheckpoints:
    @pytest.mark.anyio
    async def test_navigation_and_click_are_checked(self, settings, fake_sessions_cls, blob_store, profile_page) -> None:
        profile_page.elements[".tab"] = profile_page.elements["body"]
        detector = _ScriptedDetector()
        coordinator = InterruptCoordinator(detector)
        workflow = _workflow(
            {"action": "navigate", "url": "https://example.test/"},
            {"action": "wait", "milliseconds": 0},
            {"action": "click", "selector": ".tab"},
        )

        result = await WorkflowInterpreter(
            fake_sessions_cls(profile_page), blob_store, settings=settings, coordinator=coordinator
        ).execute(workflow, _context())

        assert result.status is ExecutionStatus.COMPLETED
        assert detector.calls == 2

    @pytest.mark.anyio
    async def test_missing_marker_without_challenge_fails(self, settings, fake_sessions_cls, blob_store, fake_page_cls) -> None:
        detector = _ScriptedDetector()
        coordinator = InterruptCoordinator(detector)

        result = await WorkflowInterpreter(
            fake_sessions_cls(fake_page_cls()), blob_store, settings=settings, coordinator=coordinator
        ).execute(_workflow({"action": "navigate", "url": "https://example.test/"}), _context())

        assert result.error.kind is ErrorKind.NAVIGATION
        # once after the load, once more when the marker did not show up
        assert detector.calls == 2

    @pytest.mark.anyio
    async def test_unresolved_challenge_times_out(self, settings, fake_sessions_cls, blob_store, fake_page_cls) -> None:
        detector = _ScriptedDetector(active=True)
        coordinator = InterruptCoordinator(detector, pause_timeout_sec=0.05)

        result = await WorkflowInterpreter(
            fake_sessions_cls(fake_page_cls()), blob_store, settings=settings, coordinator=coordinator
        ).execute(_workflow({"action": "navigate", "url": "https://example.test/"}), _context())

        assert result.status is ExecutionStatus.FAILED
        assert result.error.kind is ErrorKind.CHALLENGE_TIMEOUT
        assert result.error.phase == "navigate"
        assert detector.calls == 1
        assert not coordinator.is_paused("t1")


class TestPauseResume:
    @pytest.mark.anyio
    async def test_challenge_on_load_parks_task_until_resumed(
        self, settings, fake_sessions_cls, blob_store, fake_page_cls, fake_element_cls
    ) -> None:
        bus = EventBus()
        sink = InMemorySink()
        bus.add_sink(sink)
        detector = _ScriptedDetector(active=True)
        coordinator = InterruptCoordinator(detector, progress=bus, pause_timeout_sec=5)
        page = fake_page_cls()  # the overlay hides the ready marker
        workflow = _workflow(
            {"action": "navigate", "url": "https://example.test/"},
            {"action": "extractData", "selector": ".v", "dataName": "v"},
        )
        interpreter = WorkflowInterpreter(
            fake_sessions_cls(page), blob_store, settings=settings, coordinator=coordinator, progress=bus
        )

        task = asyncio.create_task(interpreter.execute(workflow, _context()))
        await _wait_until_paused(coordinator, "t1")

        assert not task.done()
        assert sink.statuses() == [ProgressStatus.RUNNING, ProgressStatus.PAUSED]

        refused = await coordinator.resume("t1")
        await asyncio.sleep(0)
        assert refused.accepted is False
        assert refused.reason == "challenge_still_visible"
        assert coordinator.is_paused("t1")
        assert not task.done()

        detector.active = False
        page.elements["body"] = fake_element_cls()
        page.elements[".v"] = fake_element_cls("9")
        accepted = await coordinator.resume("t1")
        result = await task

        assert accepted.accepted is True
        assert result.status is ExecutionStatus.COMPLETED
        assert result.data == {"v": "9"}
        page.goto.assert_awaited_once()
        assert sink.statuses() == [
            ProgressStatus.RUNNING,
            ProgressStatus.PAUSED,
            ProgressStatus.RUNNING,
            ProgressStatus.RUNNING,
            ProgressStatus.COMPLETED,
        ]

    @pytest.mark.anyio
    async def test_challenge_during_ready_wait_retries_marker(
        self, settings, fake_sessions_cls, blob_store, fake_page_cls, fake_element_cls
    ) -> None:
        # clear right after the load, showing by the time the marker wait gives up
        detector = _ScriptedDetector(False, True, active=True)
        coordinator = InterruptCoordinator(detector, pause_timeout_sec=5)
        page = fake_page_cls()
        interpreter = WorkflowInterpreter(fake_sessions_cls(page), blob_store, settings=settings, coordinator=coordinator)

        task = asyncio.create_task(
            interpreter.execute(_workflow({"action": "navigate", "url": "https://example.test/"}), _context())
        )
        await _wait_until_paused(coordinator, "t1")
        assert detector.calls == 2

        detector.active = False
        page.elements["body"] = fake_element_cls()
        assert (await coordinator.resume("t1")).accepted
        result = await task

        assert result.status is ExecutionStatus.COMPLETED
        page.goto.assert_awaited_once()

    @pytest.mark.anyio
    async def test_overlay_blocking_click_target(
        self, settings, fake_sessions_cls, blob_store, fake_page_cls, fake_element_cls
    ) -> None:
        detector = _ScriptedDetector(active=True)
        coordinator = InterruptCoordinator(detector, pause_timeout_sec=5)
        page = fake_page_cls()
        interpreter = WorkflowInterpreter(fake_sessions_cls(page), blob_store, settings=settings, coordinator=coordinator)

        task = asyncio.create_task(interpreter.execute(_workflow({"action": "click", "selector": ".tab"}), _context()))
        await _wait_until_paused(coordinator, "t1")
        page.click.assert_not_awaited()

        detector.active = False
        page.elements[".tab"] = fake_element_cls()
        assert (await coordinator.resume("t1")).accepted
        result = await task

        assert result.status is ExecutionStatus.COMPLETED
        page.click.assert_awaited_once()
        assert page.click.await_args.args[0] == ".tab"

    @pytest.mark.anyio
    async def test_paused_time_does_not_count_against_budget(
        self, settings, fake_sessions_cls, blob_store, fake_page_cls, fake_element_cls
    ) -> None:
        now = [0.0]
        detector = _ScriptedDetector(active=True)
        coordinator = InterruptCoordinator(detector, pause_timeout_sec=5)
        page = fake_page_cls()
        workflow = _workflow(
            {"action": "navigate", "url": "https://example.test/"},
            {"action": "wait", "milliseconds": 1},
        )
        sleeps = AsyncMock()

        with patch("pagerun.workflow.interpreter.time") as fake_time:
            fake_time.monotonic.side_effect = lambda: now[0]
            interpreter = WorkflowInterpreter(
                fake_sessions_cls(page), blob_store, settings=settings, coordinator=coordinator, sleep=sleeps
            )
            task = asyncio.create_task(interpreter.execute(workflow, _context()))
            await _wait_until_paused(coordinator, "t1")

            # an operator takes far longer than the whole budget
            now[0] = settings.runner.max_duration_sec * 10.0
            detector.active = False
            page.elements["body"] = fake_element_cls()
            assert (await coordinator.resume("t1")).accepted
            result = await task

        assert result.status is ExecutionStatus.COMPLETED
        assert result.duration_sec == settings.runner.max_duration_sec * 10.0
        sleeps.assert_awaited_once_with(0.001)
