# genbot/session.py

import json
import logging
from typing import Any, Dict, List, Optional, Protocol

import redis.asyncio as redis

from .errors import InvalidRequest, NoPriorResult
from .model import GenerationRequest, GenerationResult, Mode

logger = logging.getLogger(__name__)

SETTINGS_KEY_PREFIX = "settings:"  # settings:{session_key}

MODES = ("TEXT", "IMAGE")


def session_key(chat_id, user_id) -> str:
    return f"{chat_id}:{user_id}"


class SessionState:
    """
    Trạng thái của một chat/user:
      - last_request / last_result: phục vụ regenerate và save seed
      - locked_seeds, defaults: riêng cho từng mode, lưu bền qua SettingsStore
      - jobs: các job chưa xong của session, cũ nhất trước
    """

    def __init__(
        self,
        key: str,
        locked_seeds: Optional[Dict[str, Optional[int]]] = None,
        defaults: Optional[Dict[str, Dict[str, Any]]] = None,
    ):
        self.key = key
        self.locked_seeds: Dict[str, Optional[int]] = {mode: None for mode in MODES}
        self.defaults: Dict[str, Dict[str, Any]] = {mode: {} for mode in MODES}
        for mode in MODES:
            self.locked_seeds[mode] = (locked_seeds or {}).get(mode)
            self.defaults[mode] = dict((defaults or {}).get(mode) or {})
        self.last_request: Optional[GenerationRequest] = None
        self.last_result: Optional[GenerationResult] = None
        self.jobs: List[Any] = []

    @property
    def pending(self):
        return self.jobs[-1] if self.jobs else None

    def prepare(self, request: GenerationRequest) -> GenerationRequest:
        """
        Áp settings của mode tương ứng lên request:
        defaults <- overrides của request; seed lock chỉ dùng khi request không có seed.
        """
        mode = request.mode
        overrides = {**self.defaults[mode], **request.overrides}
        default_negative = overrides.pop("negative", None)
        negative = request.negative_prompt
        if negative is None and default_negative is not None:
            negative = str(default_negative)
        seed = request.seed if request.seed is not None else self.locked_seeds[mode]
        return request.model_copy(update={
            "overrides": overrides,
            "negative_prompt": negative,
            "seed": seed,
        })

    def regenerate_request(self, source: Optional[GenerationRequest] = None) -> GenerationRequest:
        """source: request của ảnh được bấm nút; mặc định là request gần nhất."""
        source = source or self.last_request
        if source is None:
            raise NoPriorResult("there is nothing to regenerate yet")
        return source.model_copy(update={"seed": None})

    def lock_seed(self, result: Optional[GenerationResult] = None, mode: Optional[Mode] = None) -> int:
        if result is None:
            result = self.last_result
            if result is None:
                raise NoPriorResult("there is no previous image whose seed could be saved")
            mode = mode or self.last_request.mode
        if result.seed is None:
            raise InvalidRequest("the image has no reusable seed")
        mode = mode or "TEXT"
        self.locked_seeds[mode] = int(result.seed)
        return self.locked_seeds[mode]

    def to_dict(self) -> Dict[str, Any]:
        return {
            mode: {"locked_seed": self.locked_seeds[mode], "defaults": self.defaults[mode]}
            for mode in MODES
        }

    @classmethod
    def from_dict(cls, key: str, data: Optional[Dict[str, Any]]) -> "SessionState":
        data = data or {}
        sections = {mode: data.get(mode) or {} for mode in MODES}
        return cls(
            key,
            locked_seeds={mode: sections[mode].get("locked_seed") for mode in MODES},
            defaults={mode: sections[mode].get("defaults") for mode in MODES},
        )


def _parse_int(name: str, raw: Any) -> int:
    try:
        return int(str(raw).strip())
    except ValueError:
        raise InvalidRequest(f"{name} must be an integer, got {raw!r}") from None


def _parse_float(name: str, raw: Any) -> float:
    try:
        return float(str(raw).strip())
    except ValueError:
        raise InvalidRequest(f"{name} must be a number, got {raw!r}") from None


def _parse_bool(name: str, raw: Any) -> bool:
    value = str(raw).strip().lower()
    if value in ("true", "1", "yes", "on"):
        return True
    if value in ("false", "0", "no", "off"):
        return False
    raise InvalidRequest(f"{name} must be true or false, got {raw!r}")


def _clamp(value, low, high):
    return max(low, min(high, value))


def _size(name: str, raw: Any) -> int:
    value = _parse_int(name, raw)
    if value < 0:
        raise InvalidRequest(f"{name} must not be negative, got {value}")
    value -= value % 64
    return _clamp(value, 64, 1024)


def apply_setting(session: SessionState, name: str, raw: Any, mode: Mode = "TEXT") -> Any:
    """
    Đổi một setting của session, giống menu settings của bot (giá trị ngoài
    khoảng được kẹp lại, không báo lỗi):
      steps <= 200, seed >= -1 (-1 = bỏ lock), count 1..10, cfg 0..20,
      width/height làm tròn xuống bội số 64 trong 64..1024, denoising 0..1,
      negative là text tự do, styles cách nhau bởi dấu cách, tiling/faces là bool.
    txt2img và img2img có bộ settings riêng (mode). Trả về giá trị đã lưu.
    """
    name = name.strip().lower()

    if name == "seed":
        value = max(-1, _parse_int(name, raw))
        session.locked_seeds[mode] = None if value == -1 else value
        return session.locked_seeds[mode]

    if name == "steps":
        value = _clamp(_parse_int(name, raw), 1, 200)
    elif name == "count":
        value = _clamp(_parse_int(name, raw), 1, 10)
    elif name == "cfg":
        value = _clamp(_parse_float(name, raw), 0.0, 20.0)
    elif name in ("width", "height"):
        value = _size(name, raw)
    elif name == "denoising":
        value = _clamp(_parse_float(name, raw), 0.0, 1.0)
    elif name == "negative":
        value = str(raw)
    elif name == "styles":
        value = str(raw).split()
    elif name in ("tiling", "faces"):
        value = _parse_bool(name, raw)
    else:
        raise InvalidRequest(f"unknown setting {name!r}")

    session.defaults[mode][name] = value
    return value


class SettingsStore(Protocol):
    async def load(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    async def save(self, key: str, data: Dict[str, Any]) -> None:
        ...

    async def close(self) -> None:
        ...


class MemorySettingsStore:
    def __init__(self):
        self._data: Dict[str, str] = {}

    async def load(self, key: str) -> Optional[Dict[str, Any]]:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    async def save(self, key: str, data: Dict[str, Any]) -> None:
        self._data[key] = json.dumps(data)

    async def close(self) -> None:
        pass


class RedisSettingsStore:
    """Lưu settings từng session dưới key settings:{session_key} (JSON)."""

    def __init__(self, url: Optional[str] = None, client: Optional[redis.Redis] = None):
        if client is None and not url:
            raise ValueError("RedisSettingsStore needs a url or a client")
        self.rds = client or redis.from_url(url, decode_responses=True)

    async def load(self, key: str) -> Optional[Dict[str, Any]]:
        raw = await self.rds.get(f"{SETTINGS_KEY_PREFIX}{key}")
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring corrupt settings for session %s: %r", key, raw[:200])
            return None
        return data if isinstance(data, dict) else None

    async def save(self, key: str, data: Dict[str, Any]) -> None:
        await self.rds.set(f"{SETTINGS_KEY_PREFIX}{key}", json.dumps(data))

    async def close(self) -> None:
        await self.rds.aclose()
