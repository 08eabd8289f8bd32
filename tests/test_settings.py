import pytest

from config.settings import Settings
from genbot.backends import build_backend, build_orchestrator, build_store
from genbot.comfy_backend import ComfyBackend
from genbot.comfy_client import HistoryPoller, WebsocketListener
from genbot.errors import TemplateError
from genbot.session import MemorySettingsStore, RedisSettingsStore
from genbot.webui_client import WebUIBackend

ENV_NAMES = (
    "GENBOT_BACKEND", "WEBUI_URL", "COMFYUI_URL", "COMFYUI_TEXT_WORKFLOW", "COMFYUI_IMAGE_WORKFLOW",
    "COMFYUI_COMPLETION", "POLL_INTERVAL", "COMPLETION_TIMEOUT", "REQUEST_TIMEOUT", "OUTPUT_POLICY",
    "RANDOMIZE_SEED", "TXT2IMG_DEFAULTS", "IMG2IMG_DEFAULTS", "ENQUEUE_POLICY", "REGENERATE_POLICY",
    "MAX_RETRIES", "RETRY_BACKOFF", "JOB_TIMEOUT", "QUEUE_MAXSIZE", "REDIS_URL", "WORKFLOW_DEBUG_DIR",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    s = Settings()
    assert s.GENBOT_BACKEND == "comfyui"
    assert s.COMFYUI_COMPLETION == "poll"
    assert s.POLL_INTERVAL == 0.5
    assert s.OUTPUT_POLICY == "all"
    assert s.RANDOMIZE_SEED is True
    assert s.ENQUEUE_POLICY == "queue"
    assert s.REGENERATE_POLICY == "replace"
    assert s.JOB_TIMEOUT is None
    assert s.REDIS_URL is None
    assert s.TXT2IMG_DEFAULTS == {}


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("GENBOT_BACKEND", "WebUI")
    monkeypatch.setenv("TXT2IMG_DEFAULTS", '{"steps": 20, "sampler_index": "DPM++ 2M"}')
    monkeypatch.setenv("JOB_TIMEOUT", "300")
    monkeypatch.setenv("RANDOMIZE_SEED", "false")
    monkeypatch.setenv("MAX_RETRIES", "5")
    s = Settings()
    assert s.GENBOT_BACKEND == "webui"
    assert s.TXT2IMG_DEFAULTS == {"steps": 20, "sampler_index": "DPM++ 2M"}
    assert s.JOB_TIMEOUT == 300.0
    assert s.RANDOMIZE_SEED is False
    assert s.MAX_RETRIES == 5


@pytest.mark.parametrize("name,value", [
    ("GENBOT_BACKEND", "midjourney"),
    ("TXT2IMG_DEFAULTS", "[1, 2]"),
    ("POLL_INTERVAL", "fast"),
    ("COMFYUI_COMPLETION", "smoke-signals"),
])
def test_bad_values_fail_early(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        Settings()


def test_build_webui_backend(monkeypatch):
    monkeypatch.setenv("GENBOT_BACKEND", "webui")
    monkeypatch.setenv("WEBUI_URL", "http://gpu-box:7860")
    monkeypatch.setenv("IMG2IMG_DEFAULTS", '{"denoising_strength": 0.5}')
    backend = build_backend(Settings())
    assert isinstance(backend, WebUIBackend)
    assert backend.base_url == "http://gpu-box:7860"
    assert backend.img2img_defaults["denoising_strength"] == 0.5


def test_build_comfy_backend_with_bundled_workflows(monkeypatch):
    monkeypatch.setenv("COMFYUI_COMPLETION", "websocket")
    monkeypatch.setenv("OUTPUT_POLICY", "first")
    backend = build_backend(Settings())
    assert isinstance(backend, ComfyBackend)
    assert isinstance(backend.waiter, WebsocketListener)
    assert backend.image_template is not None
    assert backend.output_policy == "first"


def test_poll_is_default_completion():
    backend = build_backend(Settings())
    assert isinstance(backend.waiter, HistoryPoller)


def test_broken_workflow_fails_at_build(monkeypatch, tmp_path):
    path = tmp_path / "broken.json"
    path.write_text('{"1": {"class_type": "SaveImage", "inputs": {}}}', encoding="utf-8")
    monkeypatch.setenv("COMFYUI_TEXT_WORKFLOW", str(path))
    with pytest.raises(TemplateError):
        build_backend(Settings())


def test_build_store(monkeypatch):
    assert isinstance(build_store(Settings()), MemorySettingsStore)
    monkeypatch.setenv("REDIS_URL", "redis://127.0.0.1:6379/0")
    assert isinstance(build_store(Settings()), RedisSettingsStore)


def test_build_orchestrator(monkeypatch):
    monkeypatch.setenv("GENBOT_BACKEND", "webui")
    monkeypatch.setenv("ENQUEUE_POLICY", "replace")
    monkeypatch.setenv("QUEUE_MAXSIZE", "4")
    orch = build_orchestrator(Settings())
    assert orch.policy == "replace"
    assert orch.dispatcher.queue.maxsize == 4
