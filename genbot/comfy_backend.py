# genbot/comfy_backend.py

import asyncio
import logging
import secrets
from typing import Any, Dict, List, Literal, Optional

from .comfy_client import ComfyClient, CompletionWaiter, HistoryPoller, extract_images_from_history
from .contract import validate_request
from .errors import BackendProtocolError, BackendTimeout, CapabilityUnsupported
from .model import GenerationRequest, GenerationResult
from .utils import check_image_bytes
from .workflow_builder import WorkflowTemplate, save_debug_workflow

logger = logging.getLogger(__name__)

OutputPolicy = Literal["all", "first"]


class ComfyBackend:
    """
    Adapter cho ComfyUI:
      clone template -> patch prompt/seed/overrides -> (upload ảnh) -> /prompt
      -> chờ xong (poll hoặc websocket) -> lấy ảnh từ các node output qua /view
    """

    name = "comfyui"

    def __init__(
        self,
        client: ComfyClient,
        text_template: WorkflowTemplate,
        image_template: Optional[WorkflowTemplate] = None,
        waiter: Optional[CompletionWaiter] = None,
        completion_timeout: float = 180.0,
        output_policy: OutputPolicy = "all",
        randomize_seed: bool = True,
        debug_dir: Optional[str] = None,
    ):
        self.client = client
        self.text_template = text_template
        self.image_template = image_template
        self.waiter = waiter or HistoryPoller(client)
        self.completion_timeout = completion_timeout
        self.output_policy = output_policy
        self.randomize_seed = randomize_seed
        self.debug_dir = debug_dir

    async def generate_from_text(self, req: GenerationRequest) -> GenerationResult:
        validate_request(req, "TEXT")
        return await self._run(self.text_template, req)

    async def generate_from_image(self, req: GenerationRequest) -> GenerationResult:
        validate_request(req, "IMAGE")
        if self.image_template is None:
            raise CapabilityUnsupported("no image workflow is configured for ComfyUI")
        return await self._run(self.image_template, req)

    async def _run(self, template: WorkflowTemplate, req: GenerationRequest) -> GenerationResult:
        seed = req.seed
        if seed is None and self.randomize_seed:
            seed = secrets.randbits(48)

        workflow, ignored = template.build(
            req.prompt,
            negative_prompt=req.negative_prompt,
            seed=seed,
            overrides=req.overrides,
        )

        if req.image is not None:
            image_name = await self.client.upload_image(req.image)
            logger.info("Uploaded reference image as %s", image_name)
            template.set_image(workflow, image_name)

        if self.debug_dir:
            path = save_debug_workflow(
                workflow, self.debug_dir, f"{template.mode.lower()}_{self.client.client_id[:8]}_{seed}.json"
            )
            logger.debug("Saved patched workflow to %s", path)

        prompt_id = await self.client.queue_prompt(workflow)
        logger.info("Waiting for ComfyUI prompt %s (timeout %.0fs)", prompt_id, self.completion_timeout)
        try:
            entry = await asyncio.wait_for(self.waiter.wait(prompt_id), timeout=self.completion_timeout)
        except asyncio.TimeoutError as e:
            # job phía ComfyUI vẫn có thể chạy xong, kết quả bị bỏ
            raise BackendTimeout(
                f"ComfyUI prompt {prompt_id} did not finish within {self.completion_timeout:.0f}s",
                prompt_id=prompt_id,
            ) from e

        images = await self._collect_images(entry, template, prompt_id)

        parameters: Dict[str, Any] = template.describe(workflow)
        parameters["prompt_id"] = prompt_id
        if ignored:
            parameters["ignored_overrides"] = ignored
        return GenerationResult(images=images, seed=template.read_seed(workflow), parameters=parameters)

    async def _collect_images(
        self, entry: Dict[str, Any], template: WorkflowTemplate, prompt_id: str
    ) -> List[bytes]:
        refs = extract_images_from_history(entry, list(template.output_ids))
        if not refs:
            logger.warning("ComfyUI prompt %s finished without images: outputs=%s",
                           prompt_id, list((entry.get("outputs") or {}).keys()))
            raise BackendProtocolError(f"ComfyUI prompt {prompt_id} produced no output images")
        if self.output_policy == "first":
            refs = refs[:1]

        images = []
        for ref in refs:
            data = await self.client.fetch_image(ref)
            images.append(check_image_bytes(data))
        return images
