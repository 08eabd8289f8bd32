import asyncio
import logging

import pytest

from genbot.errors import (
    BackendRejected,
    BackendTimeout,
    BackendUnavailable,
    JobCancelled,
)
from genbot.model import GenerationRequest, GenerationResult
from genbot.worker import Dispatcher, Job


class ScriptedBackend:
    """Backend giả: mỗi prompt có thể gắn một chuỗi lỗi / độ trễ."""

    name = "scripted"

    def __init__(self, delay=0.0):
        self.delay = delay
        self.calls = []
        self.failures = {}
        self.gates = {}

    async def generate_from_text(self, req):
        self.calls.append(req.prompt)
        gate = self.gates.get(req.prompt)
        if gate is not None:
            await gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        pending = self.failures.get(req.prompt)
        if pending:
            raise pending.pop(0)
        return GenerationResult(images=[b"img"], seed=len(self.calls), parameters={})

    async def generate_from_image(self, req):
        return await self.generate_from_text(req)


def _job(prompt, session="1:1"):
    return Job(session, GenerationRequest(prompt=prompt))


@pytest.mark.asyncio
async def test_jobs_run_fifo_one_at_a_time():
    backend = ScriptedBackend(delay=0.01)
    finished = []
    dispatcher = Dispatcher(backend, on_finished=lambda job: finished.append(job.request.prompt))
    dispatcher.start()
    try:
        jobs = [dispatcher.submit(_job(p)) for p in ("a", "b", "c")]
        results = [await job.wait() for job in jobs]
    finally:
        await dispatcher.stop()

    assert backend.calls == ["a", "b", "c"]
    assert finished == ["a", "b", "c"]
    assert [r.seed for r in results] == [1, 2, 3]
    assert all(job.state == "succeeded" for job in jobs)


@pytest.mark.asyncio
async def test_terminal_state_is_absorbing():
    job = _job("a")
    assert job.mark_dispatched()
    assert job.succeed(GenerationResult(images=[b"img"]))
    assert not job.fail(BackendRejected("late"))
    assert not job.cancel()
    assert not job.mark_dispatched()
    assert job.state == "succeeded"
    assert (await job.wait()).images == [b"img"]


@pytest.mark.asyncio
async def test_unavailable_is_retried_with_backoff():
    backend = ScriptedBackend()
    backend.failures["a"] = [BackendUnavailable("down"), BackendUnavailable("still down")]
    dispatcher = Dispatcher(backend, max_retries=2, retry_backoff=0.001)
    dispatcher.start()
    try:
        job = dispatcher.submit(_job("a"))
        result = await job.wait()
    finally:
        await dispatcher.stop()

    assert result.images == [b"img"]
    assert job.attempts == 3
    assert backend.calls == ["a", "a", "a"]


@pytest.mark.asyncio
async def test_retries_are_bounded():
    backend = ScriptedBackend()
    backend.failures["a"] = [BackendUnavailable("down")] * 5
    dispatcher = Dispatcher(backend, max_retries=1, retry_backoff=0.001)
    dispatcher.start()
    try:
        job = dispatcher.submit(_job("a"))
        with pytest.raises(BackendUnavailable):
            await job.wait()
    finally:
        await dispatcher.stop()

    assert job.state == "failed"
    assert job.attempts == 2


@pytest.mark.asyncio
async def test_rejected_is_not_retried():
    backend = ScriptedBackend()
    backend.failures["a"] = [BackendRejected("bad sampler")]
    dispatcher = Dispatcher(backend, max_retries=3, retry_backoff=0.001)
    dispatcher.start()
    try:
        job = dispatcher.submit(_job("a"))
        with pytest.raises(BackendRejected):
            await job.wait()
    finally:
        await dispatcher.stop()

    assert backend.calls == ["a"]


@pytest.mark.asyncio
async def test_job_timeout_moves_on_to_next_job():
    backend = ScriptedBackend()
    backend.gates["slow"] = asyncio.Event()
    dispatcher = Dispatcher(backend, job_timeout=0.05)
    dispatcher.start()
    try:
        slow = dispatcher.submit(_job("slow"))
        fast = dispatcher.submit(_job("fast"))
        with pytest.raises(BackendTimeout):
            await slow.wait()
        assert (await fast.wait()).images == [b"img"]
    finally:
        await dispatcher.stop()

    assert slow.state == "failed"
    assert fast.state == "succeeded"


@pytest.mark.asyncio
async def test_cancel_queued_job_is_skipped():
    backend = ScriptedBackend()
    backend.gates["first"] = asyncio.Event()
    finished = []
    dispatcher = Dispatcher(backend, on_finished=lambda job: finished.append((job.request.prompt, job.state)))
    dispatcher.start()
    try:
        first = dispatcher.submit(_job("first"))
        second = dispatcher.submit(_job("second"))
        assert dispatcher.cancel(second)
        with pytest.raises(JobCancelled):
            await second.wait()

        backend.gates["first"].set()
        await first.wait()
        await dispatcher.queue.join()
    finally:
        await dispatcher.stop()

    assert backend.calls == ["first"]
    assert finished == [("first", "succeeded"), ("second", "cancelled")]


@pytest.mark.asyncio
async def test_cancel_in_flight_job():
    backend = ScriptedBackend()
    backend.gates["a"] = asyncio.Event()
    dispatcher = Dispatcher(backend)
    dispatcher.start()
    try:
        job = dispatcher.submit(_job("a"))
        while backend.calls != ["a"]:
            await asyncio.sleep(0)
        assert job.state == "dispatched"
        assert dispatcher.cancel(job)
        with pytest.raises(JobCancelled):
            await job.wait()

        # dispatcher vẫn chạy tiếp
        after = dispatcher.submit(_job("b"))
        assert (await after.wait()).images == [b"img"]
    finally:
        await dispatcher.stop()

    assert job.state == "cancelled"


@pytest.mark.asyncio
async def test_unexpected_exception_fails_job_but_not_loop():
    class Broken(ScriptedBackend):
        async def generate_from_text(self, req):
            if req.prompt == "boom":
                raise KeyError("missing")
            return await super().generate_from_text(req)

    dispatcher = Dispatcher(Broken())
    dispatcher.start()
    try:
        boom = dispatcher.submit(_job("boom"))
        ok = dispatcher.submit(_job("ok"))
        with pytest.raises(Exception) as excinfo:
            await boom.wait()
        assert (await ok.wait()).images == [b"img"]
    finally:
        await dispatcher.stop()

    assert excinfo.value.kind == "backend"
    assert boom.state == "failed"


@pytest.mark.asyncio
async def test_full_queue_rejects_submission():
    backend = ScriptedBackend()
    backend.gates["a"] = asyncio.Event()
    dispatcher = Dispatcher(backend, queue_maxsize=1)
    dispatcher.start()
    try:
        dispatcher.submit(_job("a"))
        while backend.calls != ["a"]:
            await asyncio.sleep(0)
        dispatcher.submit(_job("b"))
        with pytest.raises(BackendUnavailable):
            dispatcher.submit(_job("c"))
    finally:
        await dispatcher.stop()


@pytest.mark.asyncio
async def test_stop_cancels_remaining_jobs():
    backend = ScriptedBackend()
    backend.gates["a"] = asyncio.Event()
    finished = []
    dispatcher = Dispatcher(backend, on_finished=lambda job: finished.append(job.request.prompt))
    dispatcher.start()
    running = dispatcher.submit(_job("a"))
    waiting = dispatcher.submit(_job("b"))
    while backend.calls != ["a"]:
        await asyncio.sleep(0)

    await dispatcher.stop()

    assert running.state == "cancelled"
    assert waiting.state == "cancelled"
    assert sorted(finished) == ["a", "b"]


@pytest.mark.asyncio
async def test_retry_delays_grow_exponentially(caplog):
    backend = ScriptedBackend()
    backend.failures["a"] = [BackendUnavailable("down"), BackendUnavailable("down")]
    dispatcher = Dispatcher(backend, max_retries=2, retry_backoff=0.01)
    caplog.set_level(logging.WARNING, logger="genbot.worker")
    dispatcher.start()
    try:
        job = dispatcher.submit(_job("a"))
        await job.wait()
    finally:
        await dispatcher.stop()

    retries = [r.getMessage() for r in caplog.records if "retrying in" in r.getMessage()]
    assert len(retries) == 2
    assert "retrying in 0.01s (1/2)" in retries[0]
    assert "retrying in 0.02s (2/2)" in retries[1]
