# genbot/workflow_builder.py

import copy
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .errors import TemplateError
from .model import Mode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NodeClasses:
    """
    Các class_type mà builder biết cách patch.
    Mỗi mapping: class_type -> tên input cần ghi.
    """
    prompt: Dict[str, str] = field(default_factory=lambda: {
        "CLIPTextEncode": "text",
        "TextEncodeQwenImageEdit": "prompt",
    })
    image_input: Dict[str, str] = field(default_factory=lambda: {
        "LoadImage": "image",
        "ImageLoader": "image",
    })
    seed: Dict[str, str] = field(default_factory=lambda: {
        "KSampler": "seed",
        "KSamplerAdvanced": "noise_seed",
        "SamplerCustom": "noise_seed",
        "RandomNoise": "noise_seed",
    })
    # node có input positive/negative dùng để phân biệt prompt dương / âm
    sampler: Tuple[str, ...] = ("KSampler", "KSamplerAdvanced", "SamplerCustom", "CFGGuider")
    output: Tuple[str, ...] = ("SaveImage", "PreviewImage")


# tên override -> tên input trong graph; áp lên mọi node có input đó dạng literal
OVERRIDE_INPUTS = {
    "steps": "steps",
    "cfg": "cfg",
    "cfg_scale": "cfg",
    "sampler": "sampler_name",
    "sampler_name": "sampler_name",
    "scheduler": "scheduler",
    "denoise": "denoise",
    "denoising": "denoise",
    "denoising_strength": "denoise",
    "width": "width",
    "height": "height",
    "batch_size": "batch_size",
}

DESCRIBE_INPUTS = ("steps", "cfg", "sampler_name", "scheduler", "denoise", "width", "height", "batch_size")


def _is_link(value: Any) -> bool:
    return (
        isinstance(value, list)
        and len(value) == 2
        and isinstance(value[0], (str, int))
        and isinstance(value[1], int)
    )


def _node_sort_key(node_id: str):
    return (0, int(node_id), "") if node_id.isdigit() else (1, 0, node_id)


def _unwrap_graph(data: Any, source: str) -> Dict[str, Any]:
    if isinstance(data, dict) and isinstance(data.get("nodes"), list):
        raise TemplateError(
            f"{source}: this is a UI-format workflow, export it with 'Save (API Format)'"
        )
    if isinstance(data, dict):
        for key in ("prompt", "graph"):
            inner = data.get(key)
            if isinstance(inner, dict) and inner and all(isinstance(v, dict) for v in inner.values()):
                return inner
        return data
    raise TemplateError(f"{source}: workflow must be a JSON object")


class WorkflowTemplate:
    """
    Graph ComfyUI (API format) đã load và kiểm tra một lần lúc khởi động.
    Không bao giờ sửa graph gốc: mỗi request làm việc trên bản clone().
    """

    def __init__(
        self,
        graph: Dict[str, Any],
        mode: Mode,
        name: str = "workflow",
        classes: Optional[NodeClasses] = None,
    ):
        self.name = name
        self.mode = mode
        self.classes = classes or NodeClasses()
        self._graph: Dict[str, Dict[str, Any]] = {}

        for node_id, node in graph.items():
            if not isinstance(node, dict) or "class_type" not in node:
                raise TemplateError(f"{name}: node {node_id} has no class_type")
            inputs = node.get("inputs", {})
            if not isinstance(inputs, dict):
                raise TemplateError(f"{name}: node {node_id} inputs must be an object")
            self._graph[str(node_id)] = copy.deepcopy({**node, "inputs": inputs})

        self.positive_id, self.negative_id = self._resolve_prompt_nodes()
        self.image_input_id = self._resolve_image_input()
        self.output_ids = tuple(self._ids_of(self.classes.output))
        if not self.output_ids:
            raise TemplateError(
                f"{name}: no image output node ({', '.join(self.classes.output)})"
            )
        self.seed_ids = tuple(
            nid for nid in self._ids_of(self.classes.seed)
            if self.classes.seed[self._graph[nid]["class_type"]] in self._graph[nid]["inputs"]
        )

        logger.info(
            "Loaded %s workflow %s: %d nodes, positive=%s negative=%s image=%s outputs=%s",
            mode, name, len(self._graph), self.positive_id, self.negative_id,
            self.image_input_id, list(self.output_ids),
        )

    @classmethod
    def from_file(cls, path, mode: Mode, classes: Optional[NodeClasses] = None) -> "WorkflowTemplate":
        path = Path(path)
        try:
            with path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except OSError as e:
            raise TemplateError(f"cannot read workflow {path}: {e}") from e
        except ValueError as e:
            raise TemplateError(f"workflow {path} is not valid JSON: {e}") from e
        return cls(_unwrap_graph(data, str(path)), mode, name=path.name, classes=classes)

    # ---- lookup ------------------------------------------------------------

    def _ids_of(self, class_types: Iterable[str]) -> List[str]:
        wanted = set(class_types)
        return sorted(
            (nid for nid, node in self._graph.items() if node["class_type"] in wanted),
            key=_node_sort_key,
        )

    def _upstream_prompts(self, start: str) -> Set[str]:
        """Đi ngược theo link từ start cho tới khi gặp node prompt."""
        found: Set[str] = set()
        seen: Set[str] = set()
        stack = [start]
        while stack:
            nid = stack.pop()
            if nid in seen or nid not in self._graph:
                continue
            seen.add(nid)
            node = self._graph[nid]
            if node["class_type"] in self.classes.prompt:
                found.add(nid)
                continue
            for value in node["inputs"].values():
                if _is_link(value):
                    stack.append(str(value[0]))
        return found

    def _resolve_prompt_nodes(self) -> Tuple[str, Optional[str]]:
        prompt_ids = self._ids_of(self.classes.prompt)
        positive: Set[str] = set()
        negative: Set[str] = set()
        wired = False
        for sid in self._ids_of(self.classes.sampler):
            inputs = self._graph[sid]["inputs"]
            if _is_link(inputs.get("positive")):
                wired = True
                positive |= self._upstream_prompts(str(inputs["positive"][0]))
            if _is_link(inputs.get("negative")):
                wired = True
                negative |= self._upstream_prompts(str(inputs["negative"][0]))
        if not wired:
            positive = set(prompt_ids)

        both = positive & negative
        if both:
            raise TemplateError(
                f"{self.name}: prompt node(s) {sorted(both)} feed both positive and negative"
            )
        if not positive:
            raise TemplateError(
                f"{self.name}: no positive prompt node ({', '.join(self.classes.prompt)})"
            )
        if len(positive) > 1:
            raise TemplateError(
                f"{self.name}: ambiguous positive prompt, candidates {sorted(positive, key=_node_sort_key)}"
            )
        if len(negative) > 1:
            raise TemplateError(
                f"{self.name}: ambiguous negative prompt, candidates {sorted(negative, key=_node_sort_key)}"
            )

        positive_id = positive.pop()
        self._require_input(positive_id, self.classes.prompt)
        negative_id = negative.pop() if negative else None
        if negative_id is not None:
            self._require_input(negative_id, self.classes.prompt)
        return positive_id, negative_id

    def _resolve_image_input(self) -> Optional[str]:
        ids = self._ids_of(self.classes.image_input)
        if self.mode != "IMAGE":
            return None
        if not ids:
            raise TemplateError(
                f"{self.name}: image workflow has no image input node ({', '.join(self.classes.image_input)})"
            )
        if len(ids) > 1:
            raise TemplateError(f"{self.name}: ambiguous image input, candidates {ids}")
        self._require_input(ids[0], self.classes.image_input)
        return ids[0]

    def _require_input(self, node_id: str, mapping: Dict[str, str]) -> None:
        node = self._graph[node_id]
        input_name = mapping[node["class_type"]]
        if input_name not in node["inputs"]:
            raise TemplateError(
                f"{self.name}: node {node_id} ({node['class_type']}) has no '{input_name}' input"
            )

    # ---- patch -------------------------------------------------------------

    def clone(self) -> Dict[str, Any]:
        return copy.deepcopy(self._graph)

    def _set_input(self, graph: Dict[str, Any], node_id: str, mapping: Dict[str, str], value: Any) -> None:
        node = graph[node_id]
        node["inputs"][mapping[node["class_type"]]] = value

    def build(
        self,
        prompt: str,
        negative_prompt: Optional[str] = None,
        seed: Optional[int] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Dict[str, Any], List[str]]:
        """
        Trả về (graph đã patch, danh sách override không áp được vào node nào).
        seed=None -> giữ nguyên seed mặc định của template.
        """
        graph = self.clone()

        self._set_input(graph, self.positive_id, self.classes.prompt, prompt)
        if negative_prompt is not None and self.negative_id is not None:
            self._set_input(graph, self.negative_id, self.classes.prompt, negative_prompt)

        if seed is not None:
            for nid in self.seed_ids:
                self._set_input(graph, nid, self.classes.seed, int(seed))

        ignored = []
        for key, value in (overrides or {}).items():
            if not _apply_override(graph, key, value):
                logger.warning("Override %s=%r matched no node in %s", key, value, self.name)
                ignored.append(key)
        return graph, ignored

    def set_image(self, graph: Dict[str, Any], image_name: str) -> None:
        if self.image_input_id is None:
            raise TemplateError(f"{self.name}: workflow has no image input node")
        self._set_input(graph, self.image_input_id, self.classes.image_input, image_name)

    def describe(self, graph: Dict[str, Any]) -> Dict[str, Any]:
        """Đọc lại các tham số hiệu lực từ graph đã patch (để hiển thị / regenerate)."""
        info: Dict[str, Any] = {
            "prompt": graph[self.positive_id]["inputs"].get(self.classes.prompt[graph[self.positive_id]["class_type"]]),
        }
        if self.negative_id is not None:
            neg = graph[self.negative_id]
            info["negative_prompt"] = neg["inputs"].get(self.classes.prompt[neg["class_type"]])
        seed = self.read_seed(graph)
        if seed is not None:
            info["seed"] = seed
        for input_name in DESCRIBE_INPUTS:
            for nid in sorted(graph, key=_node_sort_key):
                value = graph[nid]["inputs"].get(input_name)
                if value is not None and not _is_link(value):
                    info[input_name] = value
                    break
        return info

    def read_seed(self, graph: Dict[str, Any]) -> Optional[int]:
        for nid in self.seed_ids:
            node = graph[nid]
            value = node["inputs"].get(self.classes.seed[node["class_type"]])
            if isinstance(value, int) and not isinstance(value, bool):
                return value
        return None


def _apply_override(graph: Dict[str, Any], key: str, value: Any) -> bool:
    # "<node_id>.<input>" patch thẳng vào một node
    if "." in key:
        node_id, input_name = key.split(".", 1)
        node = graph.get(node_id)
        if node is None:
            return False
        node["inputs"][input_name] = value
        return True

    input_name = OVERRIDE_INPUTS.get(key, key)
    applied = False
    for node in graph.values():
        inputs = node["inputs"]
        if input_name in inputs and not _is_link(inputs[input_name]):
            inputs[input_name] = value
            applied = True
    return applied


def save_debug_workflow(workflow: Dict[str, Any], directory, filename: str) -> Path:
    """Lưu workflow đã patch ra file để debug."""
    debug_dir = Path(directory)
    debug_dir.mkdir(parents=True, exist_ok=True)
    path = debug_dir / filename
    with path.open("w", encoding="utf-8") as f:
        json.dump(workflow, f, indent=2, ensure_ascii=False)
    return path
