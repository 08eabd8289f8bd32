# genbot/contract.py

from typing import Optional, Protocol

from .errors import InvalidRequest
from .model import GenerationRequest, GenerationResult, Mode


class ImageBackend(Protocol):
    """Hai thao tác mà mọi backend phải có (hoặc từ chối IMAGE bằng CapabilityUnsupported)."""

    name: str

    async def generate_from_text(self, req: GenerationRequest) -> GenerationResult:
        ...

    async def generate_from_image(self, req: GenerationRequest) -> GenerationResult:
        ...


def validate_request(req: GenerationRequest, mode: Optional[Mode] = None) -> None:
    """
    Kiểm tra request trước khi gửi đi, không bao giờ chạm tới network.
    mode: ép kiểm tra theo mode cụ thể (adapter gọi với mode của nó).
    """
    mode = mode or req.mode

    if not req.prompt or not req.prompt.strip():
        raise InvalidRequest("prompt must not be empty")

    if mode == "IMAGE":
        if not req.image:
            raise InvalidRequest("image mode needs a non-empty reference image")
    elif req.image is not None:
        raise InvalidRequest("text mode request must not carry a reference image")


async def generate(backend: ImageBackend, req: GenerationRequest) -> GenerationResult:
    validate_request(req)
    if req.mode == "IMAGE":
        return await backend.generate_from_image(req)
    return await backend.generate_from_text(req)
