# genbot/worker.py

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .contract import ImageBackend, generate
from .errors import (
    BackendTimeout,
    BackendUnavailable,
    GenerationError,
    JobCancelled,
)
from .model import TERMINAL_STATES, GenerationRequest, GenerationResult, JobState
from .utils import gen_job_id, get_timestamp_ms

logger = logging.getLogger(__name__)

OnFinished = Callable[["Job"], Optional[Awaitable[None]]]


class Job:
    """
    Một request đang được theo dõi.
    State chỉ đi một chiều: queued -> dispatched -> succeeded | failed | cancelled
    (hoặc queued -> cancelled). Future chỉ được settle đúng một lần.
    """

    def __init__(
        self,
        session_key: str,
        request: GenerationRequest,
        source_request: Optional[GenerationRequest] = None,
    ):
        self.id = gen_job_id()
        self.session_key = session_key
        self.request = request
        # request gốc của người dùng, trước khi áp defaults / seed lock của session
        self.source_request = source_request or request
        self.state: JobState = "queued"
        self.submitted_at = get_timestamp_ms()
        self.attempts = 0
        self.result: Optional[GenerationResult] = None
        self.error: Optional[GenerationError] = None
        self.future: asyncio.Future = asyncio.get_running_loop().create_future()
        # lấy exception ra để asyncio không cảnh báo khi không ai await
        self.future.add_done_callback(lambda f: f.cancelled() or f.exception())
        self._task: Optional[asyncio.Task] = None

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    def mark_dispatched(self) -> bool:
        if self.state != "queued":
            return False
        self.state = "dispatched"
        return True

    def _settle(self, state: JobState, result=None, error=None) -> bool:
        if self.done:
            return False
        self.state = state
        self.result = result
        self.error = error
        if error is not None:
            self.future.set_exception(error)
        else:
            self.future.set_result(result)
        return True

    def succeed(self, result: GenerationResult) -> bool:
        return self._settle("succeeded", result=result)

    def fail(self, error: GenerationError) -> bool:
        return self._settle("failed", error=error)

    def cancel(self, reason: str = "job was cancelled") -> bool:
        if not self._settle("cancelled", error=JobCancelled(reason)):
            return False
        if self._task is not None and not self._task.done():
            self._task.cancel()
        return True

    async def wait(self) -> GenerationResult:
        """Chờ kết quả. Caller bị cancel không làm cancel job."""
        return await asyncio.shield(self.future)

    def __repr__(self) -> str:
        return f"<Job {self.id[:8]} session={self.session_key} state={self.state}>"


class Dispatcher:
    """
    Một vòng dispatch cho một backend: FIFO, tối đa một job chạy cùng lúc.
    Chỉ BackendUnavailable được retry (backoff lũy thừa).
    """

    def __init__(
        self,
        backend: ImageBackend,
        max_retries: int = 2,
        retry_backoff: float = 1.0,
        job_timeout: Optional[float] = None,
        on_finished: Optional[OnFinished] = None,
        queue_maxsize: int = 0,
    ):
        self.backend = backend
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.job_timeout = job_timeout
        self.on_finished = on_finished
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_maxsize)
        self.current: Optional[Job] = None
        self._loop_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self) -> None:
        if self.running:
            return
        self._loop_task = asyncio.create_task(self._loop(), name=f"dispatcher-{self.backend.name}")
        logger.info("Dispatcher for %s started", self.backend.name)

    async def stop(self) -> None:
        if self._loop_task is None:
            return
        self._loop_task.cancel()
        try:
            await self._loop_task
        except asyncio.CancelledError:
            pass
        self._loop_task = None

        # job còn lại trong queue không bao giờ chạy nữa
        while not self.queue.empty():
            job = self.queue.get_nowait()
            job.cancel("dispatcher stopped")
            await self._finish(job)
        logger.info("Dispatcher for %s stopped", self.backend.name)

    def submit(self, job: Job) -> Job:
        try:
            self.queue.put_nowait(job)
        except asyncio.QueueFull:
            raise BackendUnavailable(
                f"{self.backend.name} queue is full ({self.queue.maxsize} jobs waiting)"
            ) from None
        logger.info("Queued %r (queue size %d)", job, self.queue.qsize())
        return job

    def cancel(self, job: Job) -> bool:
        # job đang chờ trong queue sẽ bị bỏ qua lúc dequeue
        cancelled = job.cancel()
        if cancelled:
            logger.info("Cancelled %r", job)
        return cancelled

    async def _loop(self) -> None:
        while True:
            job = await self.queue.get()
            try:
                self.current = job
                if job.mark_dispatched():
                    await self._run(job)
                await self._finish(job)
            except asyncio.CancelledError:
                if job.cancel("dispatcher stopped"):
                    await self._finish(job)
                raise
            except Exception:
                # lỗi ngoài dự kiến không được làm chết vòng dispatch
                logger.exception("Unexpected error while processing %r", job)
                job.fail(GenerationError("internal error while processing the job"))
                await self._finish(job)
            finally:
                self.current = None
                self.queue.task_done()

    async def _run(self, job: Job) -> None:
        logger.info("Dispatching %r mode=%s prompt=%r", job, job.request.mode, job.request.prompt[:50])
        job._task = asyncio.create_task(self._execute(job))
        # wait() không ném CancelledError của task con: phân biệt job bị cancel
        # với chính dispatcher bị cancel
        await asyncio.wait({job._task})
        task = job._task
        job._task = None

        if task.cancelled():
            job.cancel()
            return
        error = task.exception()
        if error is None:
            job.succeed(task.result())
            logger.info("%r succeeded after %d attempt(s)", job, job.attempts)
        elif isinstance(error, GenerationError):
            logger.warning("%r failed: %s: %s", job, type(error).__name__, error)
            job.fail(error)
        else:
            logger.error("%r crashed", job, exc_info=error)
            job.fail(GenerationError(f"internal error: {error}"))

    async def _execute(self, job: Job) -> GenerationResult:
        if self.job_timeout is None:
            return await self._attempts(job)
        try:
            return await asyncio.wait_for(self._attempts(job), timeout=self.job_timeout)
        except asyncio.TimeoutError as e:
            raise BackendTimeout(f"job {job.id} did not finish within {self.job_timeout:.0f}s") from e

    async def _attempts(self, job: Job) -> GenerationResult:
        def log_retry(state: RetryCallState) -> None:
            logger.warning(
                "%r: %s, retrying in %gs (%d/%d)",
                job, state.outcome.exception(), state.next_action.sleep,
                state.attempt_number, self.max_retries,
            )

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(BackendUnavailable),
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.retry_backoff),
            before_sleep=log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                job.attempts = attempt.retry_state.attempt_number
                result = await generate(self.backend, job.request)
        return result

    async def _finish(self, job: Job) -> None:
        if self.on_finished is None:
            return
        try:
            outcome = self.on_finished(job)
            if asyncio.iscoroutine(outcome):
                await outcome
        except Exception:
            logger.exception("Completion callback failed for %r", job)
