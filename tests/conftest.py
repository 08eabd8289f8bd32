import json
import sys
from io import BytesIO
from pathlib import Path


# Allow `import genbot` / `import config` when running tests from repo root.
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import pytest
from PIL import Image


WORKFLOWS_DIR = ROOT_DIR / "workflows"


def make_png(color=(200, 30, 30), size=(8, 8)) -> bytes:
    buf = BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture
def text_graph() -> dict:
    with (WORKFLOWS_DIR / "text_to_image.json").open(encoding="utf-8") as f:
        return json.load(f)


@pytest.fixture
def image_graph() -> dict:
    with (WORKFLOWS_DIR / "image_to_image.json").open(encoding="utf-8") as f:
        return json.load(f)
