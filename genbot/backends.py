# genbot/backends.py

import logging
from typing import Optional

from config.settings import Settings, settings as default_settings

from .comfy_backend import ComfyBackend
from .comfy_client import ComfyClient, HistoryPoller, WebsocketListener
from .contract import ImageBackend
from .orchestrator import Orchestrator
from .session import MemorySettingsStore, RedisSettingsStore, SettingsStore
from .webui_client import WebUIBackend
from .workflow_builder import WorkflowTemplate

logger = logging.getLogger(__name__)


def build_backend(settings: Optional[Settings] = None) -> ImageBackend:
    """Tạo backend theo GENBOT_BACKEND. Workflow ComfyUI lỗi sẽ raise TemplateError ngay tại đây."""
    settings = settings or default_settings

    if settings.GENBOT_BACKEND == "webui":
        logger.info("Using Stable Diffusion WebUI at %s", settings.WEBUI_URL)
        return WebUIBackend(
            settings.WEBUI_URL,
            txt2img_defaults=settings.TXT2IMG_DEFAULTS,
            img2img_defaults=settings.IMG2IMG_DEFAULTS,
            request_timeout=settings.REQUEST_TIMEOUT,
        )

    client = ComfyClient(settings.COMFYUI_URL, request_timeout=settings.REQUEST_TIMEOUT)
    text_template = WorkflowTemplate.from_file(settings.COMFYUI_TEXT_WORKFLOW, "TEXT")
    image_template = None
    if settings.COMFYUI_IMAGE_WORKFLOW:
        image_template = WorkflowTemplate.from_file(settings.COMFYUI_IMAGE_WORKFLOW, "IMAGE")

    if settings.COMFYUI_COMPLETION == "websocket":
        waiter = WebsocketListener(client, poll_interval=settings.POLL_INTERVAL)
    else:
        waiter = HistoryPoller(client, poll_interval=settings.POLL_INTERVAL)

    logger.info("Using ComfyUI at %s (completion=%s)", settings.COMFYUI_URL, settings.COMFYUI_COMPLETION)
    return ComfyBackend(
        client,
        text_template,
        image_template=image_template,
        waiter=waiter,
        completion_timeout=settings.COMPLETION_TIMEOUT,
        output_policy=settings.OUTPUT_POLICY,
        randomize_seed=settings.RANDOMIZE_SEED,
        debug_dir=settings.WORKFLOW_DEBUG_DIR,
    )


def build_store(settings: Optional[Settings] = None) -> SettingsStore:
    settings = settings or default_settings
    if settings.REDIS_URL:
        return RedisSettingsStore(settings.REDIS_URL)
    return MemorySettingsStore()


def build_orchestrator(settings: Optional[Settings] = None) -> Orchestrator:
    settings = settings or default_settings
    return Orchestrator(
        build_backend(settings),
        store=build_store(settings),
        policy=settings.ENQUEUE_POLICY,
        regenerate_policy=settings.REGENERATE_POLICY,
        max_retries=settings.MAX_RETRIES,
        retry_backoff=settings.RETRY_BACKOFF,
        job_timeout=settings.JOB_TIMEOUT,
        queue_maxsize=settings.QUEUE_MAXSIZE,
    )
