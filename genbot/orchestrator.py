# genbot/orchestrator.py

import logging
from collections import OrderedDict
from typing import Any, List, Literal, Optional

from .contract import ImageBackend, validate_request
from .errors import BackendProtocolError, GenerationError, InvalidRequest
from .model import Action, GenerationRequest, GenerationResult, Mode, Reply
from .session import MODES, MemorySettingsStore, SessionState, SettingsStore, apply_setting
from .utils import format_caption
from .worker import Dispatcher, Job

logger = logging.getLogger(__name__)

EnqueuePolicy = Literal["queue", "replace"]

# số job gần nhất còn nhận action token
RECENT_JOBS = 256

# số session giữ trong bộ nhớ; session rảnh cũ nhất bị bỏ trước
MAX_SESSIONS = 1024

ACTION_LABELS = {
    "regenerate": "Rerun",
    "save-seed": "Reuse Seed",
    "clear-seed": "Clear Seed",
    "settings": "Settings",
}

SETTING_LABELS = (
    ("steps", "Steps"),
    ("count", "Batch Count"),
    ("cfg", "CFG Scale"),
    ("width", "Width"),
    ("height", "Height"),
    ("denoising", "Denoising Strength"),
    ("negative", "Negative Prompt"),
    ("styles", "Styles"),
    ("tiling", "Tiling"),
    ("faces", "Restore Faces"),
)

class Orchestrator:
    """
    Điểm vào cho tầng chat:
      generate(session_key, request) -> Reply
      handle_action(session_key, token) -> Reply
    Mọi thay đổi session đều chạy trên event loop: submit() và callback của dispatcher.
    """

    def __init__(
        self,
        backend: ImageBackend,
        store: Optional[SettingsStore] = None,
        policy: EnqueuePolicy = "queue",
        regenerate_policy: EnqueuePolicy = "replace",
        max_retries: int = 2,
        retry_backoff: float = 1.0,
        job_timeout: Optional[float] = None,
        queue_maxsize: int = 0,
        max_sessions: int = MAX_SESSIONS,
    ):
        self.backend = backend
        self.store = store or MemorySettingsStore()
        self.policy = policy
        self.regenerate_policy = regenerate_policy
        self.max_sessions = max_sessions
        self.dispatcher = Dispatcher(
            backend,
            max_retries=max_retries,
            retry_backoff=retry_backoff,
            job_timeout=job_timeout,
            on_finished=self._on_job_finished,
            queue_maxsize=queue_maxsize,
        )
        self.sessions: "OrderedDict[str, SessionState]" = OrderedDict()
        self._jobs: "OrderedDict[str, Job]" = OrderedDict()

    def start(self) -> None:
        self.dispatcher.start()

    async def stop(self) -> None:
        await self.dispatcher.stop()
        await self.store.close()

    async def __aenter__(self) -> "Orchestrator":
        self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()

    async def session(self, key: str) -> SessionState:
        state = self.sessions.get(key)
        if state is None:
            state = SessionState.from_dict(key, await self.store.load(key))
            self.sessions[key] = state
            self._evict_sessions(keep=key)
        else:
            self.sessions.move_to_end(key)
        return state

    def _evict_sessions(self, keep: str) -> None:
        # settings đã nằm trong store, session bị bỏ sẽ được load lại khi cần
        idle = [k for k, s in self.sessions.items() if not s.jobs and k != keep]
        for key in idle[: max(0, len(self.sessions) - self.max_sessions)]:
            del self.sessions[key]
            logger.debug("Evicted idle session %s", key)

    async def _persist(self, state: SessionState) -> None:
        await self.store.save(state.key, state.to_dict())

    def job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    # ---- jobs --------------------------------------------------------------

    async def submit(
        self,
        key: str,
        request: GenerationRequest,
        policy: Optional[EnqueuePolicy] = None,
    ) -> Job:
        """Đưa request vào queue, trả về Job ngay. Request sai bị từ chối trước khi vào queue."""
        validate_request(request)
        state = await self.session(key)
        policy = policy or self.policy

        if policy == "replace":
            for pending in list(state.jobs):
                logger.info("Session %s: replacing pending %r", key, pending)
                self.dispatcher.cancel(pending)

        job = Job(key, state.prepare(request), source_request=request)
        self.dispatcher.submit(job)
        state.jobs.append(job)

        self._jobs[job.id] = job
        while len(self._jobs) > RECENT_JOBS:
            self._jobs.popitem(last=False)
        return job

    async def cancel(self, key: str) -> bool:
        """Hủy mọi job chưa xong của session (đang chờ hoặc đang chạy)."""
        state = await self.session(key)
        cancelled = False
        for job in list(state.jobs):
            cancelled = self.dispatcher.cancel(job) or cancelled
        return cancelled

    def _on_job_finished(self, job: Job) -> None:
        # gọi đúng một lần cho mỗi job, từ vòng dispatch
        state = self.sessions.get(job.session_key)
        if state is None:
            return
        if job in state.jobs:
            state.jobs.remove(job)
        if job.state == "succeeded" and job.result is not None:
            state.last_request = job.source_request
            state.last_result = job.result

    # ---- replies -----------------------------------------------------------

    async def generate(
        self,
        key: str,
        request: GenerationRequest,
        policy: Optional[EnqueuePolicy] = None,
    ) -> Reply:
        job = None
        try:
            job = await self.submit(key, request, policy=policy)
            result = await job.wait()
        except GenerationError as e:
            return self._error_reply(e, job)
        return self._result_reply(job, result)

    async def regenerate(self, key: str, job: Optional[Job] = None) -> Reply:
        """
        Chạy lại request của job (mặc định: request gần nhất) với seed mới.
        Seed lock của session vẫn được áp.
        """
        try:
            state = await self.session(key)
            request = state.regenerate_request(job.source_request if job is not None else None)
        except GenerationError as e:
            return self._error_reply(e)
        return await self.generate(key, request, policy=self.regenerate_policy)

    async def save_seed(self, key: str, job: Optional[Job] = None) -> Reply:
        state = await self.session(key)
        try:
            if job is not None and job.result is not None:
                seed = state.lock_seed(job.result, job.request.mode)
            else:
                seed = state.lock_seed()
        except GenerationError as e:
            return self._error_reply(e)
        await self._persist(state)
        logger.info("Session %s locked seed %s", key, seed)
        return Reply(ok=True, seed=seed, caption=f"Seed {seed} will be reused for the next images.")

    async def clear_seed(self, key: str, mode: Optional[Mode] = None) -> Reply:
        """Bỏ seed lock của mode, hoặc của mọi mode nếu mode=None."""
        state = await self.session(key)
        for m in ([mode] if mode else MODES):
            state.locked_seeds[m] = None
        await self._persist(state)
        return Reply(ok=True, caption="Seed unlocked, new images get a random seed.")

    async def change_setting(self, key: str, name: str, value: Any, mode: Mode = "TEXT") -> Reply:
        state = await self.session(key)
        try:
            stored = apply_setting(state, name, value, mode)
        except GenerationError as e:
            return self._error_reply(e)
        await self._persist(state)
        return Reply(ok=True, seed=state.locked_seeds[mode], caption=f"{name} set to {stored}")

    async def show_settings(self, key: str, mode: Mode = "TEXT") -> Reply:
        state = await self.session(key)
        seed = state.locked_seeds[mode]
        defaults = state.defaults[mode]
        lines = [f"Mode: {mode}", f"Seed: {seed if seed is not None else -1}"]
        for name, label in SETTING_LABELS:
            if name in defaults:
                value = defaults[name]
                if isinstance(value, list):
                    value = " ".join(value)
                lines.append(f"{label}: {value}")
        return Reply(ok=True, seed=seed, caption="\n".join(lines))

    async def handle_action(self, key: str, token: str) -> Reply:
        """
        Xử lý token nút bấm dạng "<action>/<job_id>". Action áp lên đúng job của
        ảnh được bấm; job đã rơi khỏi danh sách gần đây thì dùng state của session.
        """
        action, _, job_id = token.partition("/")
        if action not in ACTION_LABELS or not job_id:
            return self._error_reply(InvalidRequest(f"unknown action {token!r}"))
        job = self._jobs.get(job_id)
        if job is not None and job.session_key != key:
            return self._error_reply(InvalidRequest("this button belongs to another conversation"))

        if action == "regenerate":
            return await self.regenerate(key, job)
        if action == "save-seed":
            return await self.save_seed(key, job)
        if action == "clear-seed":
            return await self.clear_seed(key, job.request.mode if job is not None else None)
        return await self.show_settings(key, job.request.mode if job is not None else "TEXT")

    def _actions(self, job: Job, result: GenerationResult) -> List[Action]:
        names = ["regenerate"]
        if result.seed is not None:
            names.append("save-seed")
        state = self.sessions.get(job.session_key)
        if state is not None and state.locked_seeds[job.request.mode] is not None:
            names.append("clear-seed")
        names.append("settings")
        return [Action(action=name, job_id=job.id, label=ACTION_LABELS[name]) for name in names]

    def _result_reply(self, job: Job, result: GenerationResult) -> Reply:
        return Reply(
            ok=True,
            job_id=job.id,
            images=result.images,
            caption=format_caption(job.request.prompt, result.seed, result.parameters),
            seed=result.seed,
            actions=self._actions(job, result),
        )

    def _error_reply(self, error: GenerationError, job: Optional[Job] = None) -> Reply:
        if isinstance(error, BackendProtocolError):
            logger.error("Backend protocol error%s: %s", f" in {job!r}" if job else "", error)
        else:
            logger.info("Request failed%s: %s: %s", f" in {job!r}" if job else "", type(error).__name__, error)
        return Reply(
            ok=False,
            job_id=job.id if job is not None else None,
            error_kind=error.kind,
            error_message=error.user_message(),
        )
