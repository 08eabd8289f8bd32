import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

# Load biến môi trường trong .env
BASE_DIR = Path(__file__).resolve().parent
PROJECT_DIR = BASE_DIR.parent
load_dotenv(BASE_DIR / ".env")
load_dotenv(PROJECT_DIR / ".env")


def _env_str(name: str, default: Optional[str]) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    value = _env_str(name, None)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}") from None


def _env_int(name: str, default: int) -> int:
    value = _env_str(name, None)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}") from None


def _env_bool(name: str, default: bool) -> bool:
    value = _env_str(name, None)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "on")


def _env_json(name: str) -> Dict[str, Any]:
    value = _env_str(name, None)
    if value is None:
        return {}
    try:
        data = json.loads(value)
    except ValueError as e:
        raise ValueError(f"{name} must be a JSON object: {e}") from None
    if not isinstance(data, dict):
        raise ValueError(f"{name} must be a JSON object, got {type(data).__name__}")
    return data


def _env_choice(name: str, default: str, choices) -> str:
    value = (_env_str(name, default) or default).lower()
    if value not in choices:
        raise ValueError(f"{name} must be one of {', '.join(choices)}, got {value!r}")
    return value


class Settings:
    """Đọc cấu hình từ biến môi trường (và file .env) mỗi khi tạo instance."""

    def __init__(self):
        self.GENBOT_BACKEND: str = _env_choice("GENBOT_BACKEND", "comfyui", ("comfyui", "webui"))

        self.WEBUI_URL: str = _env_str("WEBUI_URL", "http://127.0.0.1:7860")
        self.TXT2IMG_DEFAULTS: Dict[str, Any] = _env_json("TXT2IMG_DEFAULTS")
        self.IMG2IMG_DEFAULTS: Dict[str, Any] = _env_json("IMG2IMG_DEFAULTS")

        self.COMFYUI_URL: str = _env_str("COMFYUI_URL", "http://127.0.0.1:8188")
        self.COMFYUI_TEXT_WORKFLOW: str = _env_str(
            "COMFYUI_TEXT_WORKFLOW", str(PROJECT_DIR / "workflows" / "text_to_image.json")
        )
        # để trống = không hỗ trợ image mode trên ComfyUI
        self.COMFYUI_IMAGE_WORKFLOW: Optional[str] = _env_str(
            "COMFYUI_IMAGE_WORKFLOW", str(PROJECT_DIR / "workflows" / "image_to_image.json")
        )
        self.COMFYUI_COMPLETION: str = _env_choice("COMFYUI_COMPLETION", "poll", ("poll", "websocket"))
        self.POLL_INTERVAL: float = _env_float("POLL_INTERVAL", 0.5)  # giây
        self.COMPLETION_TIMEOUT: float = _env_float("COMPLETION_TIMEOUT", 180.0)
        self.OUTPUT_POLICY: str = _env_choice("OUTPUT_POLICY", "all", ("all", "first"))
        self.RANDOMIZE_SEED: bool = _env_bool("RANDOMIZE_SEED", True)
        self.WORKFLOW_DEBUG_DIR: Optional[str] = _env_str("WORKFLOW_DEBUG_DIR", None)

        self.REQUEST_TIMEOUT: float = _env_float("REQUEST_TIMEOUT", 600.0)

        self.ENQUEUE_POLICY: str = _env_choice("ENQUEUE_POLICY", "queue", ("queue", "replace"))
        self.REGENERATE_POLICY: str = _env_choice("REGENERATE_POLICY", "replace", ("queue", "replace"))
        self.MAX_RETRIES: int = _env_int("MAX_RETRIES", 2)
        self.RETRY_BACKOFF: float = _env_float("RETRY_BACKOFF", 1.0)
        self.JOB_TIMEOUT: Optional[float] = _env_float("JOB_TIMEOUT", None)
        self.QUEUE_MAXSIZE: int = _env_int("QUEUE_MAXSIZE", 0)

        # để trống = lưu settings trong bộ nhớ
        self.REDIS_URL: Optional[str] = _env_str("REDIS_URL", None)

        self.LOG_LEVEL: str = (_env_str("LOG_LEVEL", "INFO") or "INFO").upper()


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


settings = Settings()
