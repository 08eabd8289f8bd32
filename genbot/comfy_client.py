import asyncio
import json
import logging
import uuid
from typing import Any, Dict, List, Optional, Protocol

import aiohttp
import httpx

from .errors import (
    BackendExecutionError,
    BackendProtocolError,
    BackendRejected,
    BackendUnavailable,
)

logger = logging.getLogger(__name__)


class ComfyClient:
    """
    Gói các endpoint ComfyUI dùng tới:
      POST /prompt, POST /upload/image, GET /history/{id}, GET /view, WS /ws?clientId=
    """

    def __init__(
        self,
        base_url: str,
        client_id: Optional[str] = None,
        request_timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id or uuid.uuid4().hex
        self.request_timeout = request_timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.request_timeout,
            transport=self._transport,
        )

    @property
    def websocket_url(self) -> str:
        if self.base_url.startswith("https://"):
            base = "wss://" + self.base_url[len("https://"):]
        elif self.base_url.startswith("http://"):
            base = "ws://" + self.base_url[len("http://"):]
        else:
            base = self.base_url
        return f"{base}/ws?clientId={self.client_id}"

    async def queue_prompt(self, workflow: Dict[str, Any]) -> str:
        """
        Gửi workflow sang /prompt. ComfyUI chỉ xác nhận đã nhận job,
        trả về prompt_id dùng để theo dõi.
        """
        payload = {"prompt": workflow, "client_id": self.client_id}
        try:
            async with self._client() as client:
                r = await client.post("/prompt", json=payload)
        except httpx.TransportError as e:
            raise BackendUnavailable(f"ComfyUI /prompt failed: {e}") from e

        data = _json_or_none(r)
        if r.status_code != 200:
            logger.warning("ComfyUI returned %s for /prompt: %s", r.status_code, r.text[:500])
            raise BackendRejected(_describe_rejection(r, data), status_code=r.status_code)

        if not isinstance(data, dict):
            raise BackendProtocolError(f"ComfyUI /prompt returned non-JSON body: {r.text[:200]}")
        # ComfyUI có thể trả node_errors ngay cả khi status 200
        if data.get("node_errors"):
            raise BackendRejected(_describe_rejection(r, data), status_code=r.status_code)

        prompt_id = data.get("prompt_id")
        if not prompt_id:
            raise BackendProtocolError(f"ComfyUI did not return a prompt_id: {data}")
        logger.info("ComfyUI accepted prompt %s (queue number %s)", prompt_id, data.get("number"))
        return str(prompt_id)

    async def upload_image(self, image: bytes, filename: str = "image.png") -> str:
        """
        Upload ảnh tham chiếu vào input folder của ComfyUI.
        Trả về tên để gán vào LoadImage. Mọi lỗi upload là BackendUnavailable.
        """
        try:
            async with self._client() as client:
                r = await client.post(
                    "/upload/image",
                    files={"image": (filename, image, "image/png")},
                    data={"overwrite": "true"},
                )
                r.raise_for_status()
                data = r.json()
        except (httpx.HTTPError, ValueError) as e:
            raise BackendUnavailable(f"reference image upload failed: {e}") from e

        name = data.get("name") if isinstance(data, dict) else None
        if not name:
            raise BackendUnavailable(f"reference image upload returned no name: {data}")
        subfolder = data.get("subfolder") or ""
        return f"{subfolder}/{name}" if subfolder else name

    async def get_history(self, prompt_id: str) -> Optional[Dict[str, Any]]:
        """Trả về history[prompt_id], hoặc None nếu ComfyUI chưa có entry."""
        try:
            async with self._client() as client:
                r = await client.get(f"/history/{prompt_id}")
        except httpx.TransportError as e:
            raise BackendUnavailable(f"ComfyUI /history failed: {e}") from e
        if r.status_code == 404:
            return None
        if r.status_code != 200:
            raise BackendUnavailable(f"ComfyUI /history returned {r.status_code}")
        data = _json_or_none(r)
        if not isinstance(data, dict):
            raise BackendProtocolError("ComfyUI /history returned non-JSON body")
        entry = data.get(prompt_id)
        if entry is None and isinstance(data.get("outputs"), dict):
            # một số proxy trả thẳng entry
            entry = data
        return entry if isinstance(entry, dict) else None

    async def fetch_image(self, ref: Dict[str, Any]) -> bytes:
        params = {
            "filename": ref["filename"],
            "subfolder": ref.get("subfolder", ""),
            "type": ref.get("type", "output"),
        }
        try:
            async with self._client() as client:
                r = await client.get("/view", params=params)
        except httpx.TransportError as e:
            raise BackendUnavailable(f"ComfyUI /view failed: {e}") from e
        if r.status_code != 200:
            raise BackendProtocolError(
                f"ComfyUI /view returned {r.status_code} for {params['filename']}"
            )
        return r.content


def _json_or_none(r: httpx.Response) -> Any:
    try:
        return r.json()
    except ValueError:
        return None


def _describe_rejection(r: httpx.Response, data: Any) -> str:
    if not isinstance(data, dict):
        return f"ComfyUI returned {r.status_code}: {r.text[:500]}"
    parts = []
    error = data.get("error")
    if isinstance(error, dict):
        parts.append(str(error.get("message") or error.get("type") or error))
    elif error:
        parts.append(str(error))
    node_errors = data.get("node_errors")
    if isinstance(node_errors, dict):
        for node_id, info in node_errors.items():
            if not isinstance(info, dict):
                continue
            messages = [
                e.get("details") or e.get("message")
                for e in info.get("errors", [])
                if isinstance(e, dict)
            ]
            parts.append(f"node {node_id} ({info.get('class_type', '?')}): {'; '.join(filter(None, messages))}")
    return "; ".join(parts) or f"ComfyUI returned {r.status_code}"


def check_history_entry(entry: Dict[str, Any]) -> bool:
    """
    True nếu entry đã xong thành công, False nếu chưa xong.
    Raise BackendExecutionError nếu ComfyUI báo lỗi khi chạy graph.
    """
    status = entry.get("status")
    if not isinstance(status, dict):
        # bản ComfyUI cũ không có status: có outputs là xong
        return bool(entry.get("outputs"))

    status_str = str(status.get("status_str") or "").lower()
    if status_str == "error":
        for message in status.get("messages") or []:
            if not isinstance(message, list) or len(message) != 2:
                continue
            event, data = message
            if event in ("execution_error", "execution_interrupted") and isinstance(data, dict):
                raise _execution_error(event, data)
        raise BackendExecutionError("unknown", "execution failed without an error message")
    return status_str == "success" or bool(status.get("completed"))


def _execution_error(event: str, data: Dict[str, Any]) -> BackendExecutionError:
    node_type = str(data.get("node_type") or "unknown")
    node_id = data.get("node_id")
    if event == "execution_interrupted":
        message = "execution was interrupted"
    else:
        message = str(data.get("exception_message") or data.get("exception_type") or "execution error").strip()
    return BackendExecutionError(node_type, message, node_id=str(node_id) if node_id is not None else None)


def extract_images_from_history(
    history_item: Dict[str, Any],
    node_ids: Optional[List[str]] = None,
) -> List[Dict[str, Any]]:
    """
    Lấy danh sách {filename, subfolder, type, node_id} từ outputs,
    chỉ giữ các node trong node_ids (nếu có), theo thứ tự node_ids.
    """
    outputs = history_item.get("outputs") or {}
    order = node_ids if node_ids is not None else list(outputs.keys())
    images = []
    for node_id in order:
        node_out = outputs.get(node_id)
        if not isinstance(node_out, dict):
            continue
        for img in node_out.get("images") or []:
            if not isinstance(img, dict) or not img.get("filename"):
                continue
            images.append({
                "node_id": node_id,
                "filename": img["filename"],
                "subfolder": img.get("subfolder", ""),
                "type": img.get("type", "output"),
            })
    return images


class CompletionWaiter(Protocol):
    """Chờ tới khi prompt_id kết thúc, trả về history entry. Timeout do caller áp."""

    async def wait(self, prompt_id: str) -> Dict[str, Any]:
        ...


class HistoryPoller:
    """Poll /history/{prompt_id} cho tới khi có trạng thái kết thúc."""

    def __init__(self, client: ComfyClient, poll_interval: float = 0.5):
        self.client = client
        self.poll_interval = poll_interval

    async def wait(self, prompt_id: str) -> Dict[str, Any]:
        while True:
            try:
                entry = await self.client.get_history(prompt_id)
            except BackendUnavailable as e:
                # job vẫn đang chạy phía ComfyUI, thử lại tới khi hết timeout
                logger.warning("Polling history for %s failed: %s", prompt_id, e)
                entry = None
            if entry is not None and check_history_entry(entry):
                return entry
            await asyncio.sleep(self.poll_interval)


class WebsocketListener:
    """
    Nghe /ws?clientId= và chờ message kết thúc của prompt_id.
    Sau khi kết nối sẽ kiểm tra history một lần, phòng trường hợp job đã xong
    trước khi subscribe.

    Chỉ `executing` với node=null mới là kết thúc: ComfyUI gửi `execution_success`
    trước khi ghi history. History vẫn chưa có thì poll tiếp tới khi có.
    """

    def __init__(self, client: ComfyClient, poll_interval: float = 0.5):
        self.client = client
        self.poll_interval = poll_interval

    async def wait(self, prompt_id: str) -> Dict[str, Any]:
        try:
            async with aiohttp.ClientSession() as session:
                async with session.ws_connect(self.client.websocket_url, heartbeat=30) as ws:
                    entry = await self.client.get_history(prompt_id)
                    if entry is not None and check_history_entry(entry):
                        return entry

                    async for msg in ws:
                        if msg.type == aiohttp.WSMsgType.TEXT:
                            if self._is_finished(msg.data, prompt_id):
                                break
                        elif msg.type == aiohttp.WSMsgType.ERROR:
                            raise BackendUnavailable(f"ComfyUI websocket error: {ws.exception()}")
                        # BINARY = ảnh preview, bỏ qua
                    else:
                        raise BackendUnavailable("ComfyUI websocket closed before the prompt finished")
        except aiohttp.ClientError as e:
            raise BackendUnavailable(f"ComfyUI websocket connection failed: {e}") from e

        return await HistoryPoller(self.client, self.poll_interval).wait(prompt_id)

    def _is_finished(self, raw: str, prompt_id: str) -> bool:
        try:
            message = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring non-JSON websocket message: %s", raw[:200])
            return False
        if not isinstance(message, dict):
            return False
        event = message.get("type")
        data = message.get("data") or {}
        if not isinstance(data, dict) or str(data.get("prompt_id")) != prompt_id:
            return False

        if event in ("execution_error", "execution_interrupted"):
            raise _execution_error(event, data)
        return event == "executing" and data.get("node") is None
