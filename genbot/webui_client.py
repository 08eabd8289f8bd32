"""
Adapter cho Stable Diffusion WebUI (AUTOMATIC1111, chạy với --api).

Một request = một lần POST đồng bộ tới /sdapi/v1/txt2img hoặc /sdapi/v1/img2img,
response chứa ảnh base64 + "info" (JSON string) có seed thực tế đã dùng.
Không retry ở tầng này.
"""

import json
import logging
from typing import Any, Dict, Optional

import httpx

from .contract import validate_request
from .errors import BackendProtocolError, BackendRejected, BackendUnavailable
from .model import GenerationRequest, GenerationResult, Mode
from .utils import decode_image_b64, encode_image_b64

logger = logging.getLogger(__name__)

TXT2IMG_PATH = "/sdapi/v1/txt2img"
IMG2IMG_PATH = "/sdapi/v1/img2img"

DEFAULT_TXT2IMG: Dict[str, Any] = {
    "styles": [],
    "seed": -1,
    "sampler_index": "Euler",
    "batch_size": 1,
    "n_iter": 1,
    "steps": 50,
    "cfg_scale": 7.0,
    "width": 512,
    "height": 512,
    "restore_faces": False,
    "tiling": False,
    "negative_prompt": "",
}

DEFAULT_IMG2IMG: Dict[str, Any] = {
    **DEFAULT_TXT2IMG,
    "denoising_strength": 0.75,
    "resize_mode": 1,
}

# tên ngắn dùng trong menu settings -> tên field của WebUI
OVERRIDE_ALIASES = {
    "cfg": "cfg_scale",
    "count": "n_iter",
    "denoising": "denoising_strength",
    "denoise": "denoising_strength",
    "sampler": "sampler_index",
    "sampler_name": "sampler_index",
    "negative": "negative_prompt",
    "faces": "restore_faces",
}

# Các field của info không cần đưa vào parameters hiển thị
_INFO_SKIP = {"infotexts", "all_prompts", "all_negative_prompts", "all_subseeds", "styles"}


class WebUIBackend:
    name = "webui"

    def __init__(
        self,
        base_url: str,
        txt2img_defaults: Optional[Dict[str, Any]] = None,
        img2img_defaults: Optional[Dict[str, Any]] = None,
        request_timeout: float = 600.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.txt2img_defaults = {**DEFAULT_TXT2IMG, **(txt2img_defaults or {})}
        self.img2img_defaults = {**DEFAULT_IMG2IMG, **(img2img_defaults or {})}
        self.request_timeout = request_timeout
        self._transport = transport

    def build_payload(self, req: GenerationRequest, mode: Mode) -> Dict[str, Any]:
        """
        defaults (config) <- overrides của request <- prompt/negative/seed/ảnh.
        Override không biết tên vẫn được gửi nguyên, không bỏ đi cái nào.
        """
        defaults = self.img2img_defaults if mode == "IMAGE" else self.txt2img_defaults
        payload = dict(defaults)

        for key, value in req.overrides.items():
            payload[OVERRIDE_ALIASES.get(key, key)] = value

        payload["prompt"] = req.prompt
        if req.negative_prompt is not None:
            payload["negative_prompt"] = req.negative_prompt
        payload["seed"] = int(req.seed) if req.seed is not None else -1

        if mode == "IMAGE":
            payload["init_images"] = [encode_image_b64(req.image)]
        return payload

    async def generate_from_text(self, req: GenerationRequest) -> GenerationResult:
        validate_request(req, "TEXT")
        payload = self.build_payload(req, "TEXT")
        data = await self._post(TXT2IMG_PATH, payload)
        return self._parse_response(data, payload)

    async def generate_from_image(self, req: GenerationRequest) -> GenerationResult:
        validate_request(req, "IMAGE")
        payload = self.build_payload(req, "IMAGE")
        data = await self._post(IMG2IMG_PATH, payload)
        return self._parse_response(data, payload)

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        logger.info("WebUI %s prompt=%r seed=%s", path, payload["prompt"][:60], payload["seed"])
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.request_timeout,
                transport=self._transport,
            ) as client:
                r = await client.post(path, json=payload)
        except httpx.TransportError as e:
            raise BackendUnavailable(f"WebUI request to {path} failed: {e}") from e

        if r.status_code < 200 or r.status_code >= 300:
            raise BackendRejected(_error_message(r), status_code=r.status_code)

        try:
            data = r.json()
        except ValueError as e:
            logger.warning("WebUI returned non-JSON body: %s", r.text[:300])
            raise BackendProtocolError("WebUI response is not JSON") from e
        if not isinstance(data, dict):
            raise BackendProtocolError("WebUI response is not a JSON object")
        return data

    def _parse_response(self, data: Dict[str, Any], payload: Dict[str, Any]) -> GenerationResult:
        raw_images = data.get("images")
        if not raw_images or not isinstance(raw_images, list):
            raise BackendProtocolError("WebUI did not return any images")
        images = [decode_image_b64(img) for img in raw_images if isinstance(img, str)]
        if not images:
            raise BackendProtocolError("WebUI returned images in an unknown format")

        info = _parse_info(data.get("info"))
        seed = info.get("seed")
        if seed is None and payload.get("seed", -1) >= 0:
            seed = payload["seed"]
        if seed is None:
            raise BackendProtocolError("WebUI response does not report the seed it used")

        parameters = {k: v for k, v in payload.items() if k != "init_images"}
        parameters.update({k: v for k, v in info.items() if k not in _INFO_SKIP})
        parameters["seed"] = int(seed)
        return GenerationResult(images=images, seed=int(seed), parameters=parameters)


def _parse_info(raw: Any) -> Dict[str, Any]:
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return raw
    try:
        info = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise BackendProtocolError(f"WebUI info field is not JSON: {e}") from e
    if not isinstance(info, dict):
        raise BackendProtocolError("WebUI info field is not a JSON object")
    return info


def _error_message(r: httpx.Response) -> str:
    try:
        body = r.json()
    except ValueError:
        return f"WebUI returned {r.status_code}: {r.text[:500]}"
    if isinstance(body, dict):
        for key in ("detail", "error", "errors", "message"):
            if body.get(key):
                return f"WebUI returned {r.status_code}: {body[key]}"
    return f"WebUI returned {r.status_code}: {body}"
