# genbot/model.py
from pydantic import BaseModel, Field
from typing import Optional, Literal, Dict, Any, List

Mode = Literal["TEXT", "IMAGE"]

JobState = Literal["queued", "dispatched", "succeeded", "failed", "cancelled"]

TERMINAL_STATES = ("succeeded", "failed", "cancelled")

ErrorKind = Literal["invalid", "backend", "retry_later", "cancelled"]

ActionName = Literal["regenerate", "save-seed", "clear-seed", "settings"]


class GenerationRequest(BaseModel):
    """
    Request chung cho mọi backend.
    - image = None  -> TEXT mode
    - image = bytes -> IMAGE mode (bytes rỗng bị từ chối khi validate)
    """
    prompt: str = ""
    negative_prompt: Optional[str] = None
    image: Optional[bytes] = None
    seed: Optional[int] = None
    overrides: Dict[str, Any] = Field(default_factory=dict)

    @property
    def mode(self) -> Mode:
        return "IMAGE" if self.image is not None else "TEXT"


class GenerationResult(BaseModel):
    images: List[bytes]
    seed: Optional[int] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)

    @property
    def image(self) -> bytes:
        return self.images[0]


class Action(BaseModel):
    action: ActionName
    job_id: str
    label: str

    @property
    def token(self) -> str:
        return f"{self.action}/{self.job_id}"


class Reply(BaseModel):
    """Payload trả về cho tầng chat transport (ảnh + caption + nút bấm)."""
    ok: bool
    job_id: Optional[str] = None
    images: List[bytes] = Field(default_factory=list)
    caption: str = ""
    seed: Optional[int] = None
    actions: List[Action] = Field(default_factory=list)
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
