import pytest

from genbot.contract import generate, validate_request
from genbot.errors import InvalidRequest
from genbot.model import GenerationRequest, GenerationResult


class _RecordingBackend:
    name = "recording"

    def __init__(self):
        self.calls = []

    async def generate_from_text(self, req):
        self.calls.append(("TEXT", req))
        return GenerationResult(images=[b"x"], seed=1)

    async def generate_from_image(self, req):
        self.calls.append(("IMAGE", req))
        return GenerationResult(images=[b"y"], seed=2)


def test_mode_follows_image_presence(png_bytes):
    assert GenerationRequest(prompt="a cat").mode == "TEXT"
    assert GenerationRequest(prompt="a cat", image=png_bytes).mode == "IMAGE"
    assert GenerationRequest(prompt="a cat", image=b"").mode == "IMAGE"


@pytest.mark.parametrize("prompt", ["", "   ", "\n"])
def test_empty_prompt_is_invalid(prompt):
    with pytest.raises(InvalidRequest):
        validate_request(GenerationRequest(prompt=prompt))


def test_text_mode_rejects_reference_image(png_bytes):
    with pytest.raises(InvalidRequest):
        validate_request(GenerationRequest(prompt="a cat", image=png_bytes), "TEXT")


def test_image_mode_requires_bytes():
    with pytest.raises(InvalidRequest):
        validate_request(GenerationRequest(prompt="a cat"), "IMAGE")


@pytest.mark.asyncio
async def test_empty_image_never_reaches_backend():
    backend = _RecordingBackend()
    with pytest.raises(InvalidRequest):
        await generate(backend, GenerationRequest(prompt="a cat", image=b""))
    assert backend.calls == []


@pytest.mark.asyncio
async def test_generate_routes_by_mode(png_bytes):
    backend = _RecordingBackend()
    text = await generate(backend, GenerationRequest(prompt="a cat"))
    image = await generate(backend, GenerationRequest(prompt="a cat", image=png_bytes))
    assert [mode for mode, _ in backend.calls] == ["TEXT", "IMAGE"]
    assert text.seed == 1
    assert image.seed == 2
