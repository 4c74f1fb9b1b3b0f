# services/matching/images.py
from __future__ import annotations

from io import BytesIO

import cv2
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from services.errors import ExternalServiceError

CANVAS_W = 200
CANVAS_H = 100


def decode_image_with_exif(contents: bytes) -> np.ndarray:
    img_pil = Image.open(BytesIO(contents))
    img_pil = ImageOps.exif_transpose(img_pil)
    img_rgb = np.array(img_pil.convert("RGB"))
    return cv2.cvtColor(img_rgb, cv2.COLOR_RGB2BGR)


def decode_bgr(contents: bytes) -> np.ndarray:
    """Pillow first (honours EXIF rotation), OpenCV as fallback; raises if neither can read it."""
    if not contents:
        raise ExternalServiceError("Image is empty")
    try:
        return decode_image_with_exif(contents)
    except (UnidentifiedImageError, OSError, ValueError):
        img = cv2.imdecode(np.frombuffer(contents, np.uint8), cv2.IMREAD_COLOR)
    if img is None or img.size == 0:
        raise ExternalServiceError("Could not decode image")
    return img


def to_canvas(img_bgr: np.ndarray, width: int = CANVAS_W, height: int = CANVAS_H) -> np.ndarray:
    """
    Grayscale, aspect-preserving fit onto a white width x height canvas,
    then min-max contrast stretch. Output is uint8.
    """
    gray = cv2.cvtColor(img_bgr, cv2.COLOR_BGR2GRAY) if img_bgr.ndim == 3 else img_bgr
    h, w = gray.shape[:2]
    scale = min(width / w, height / h)
    new_w = max(1, int(round(w * scale)))
    new_h = max(1, int(round(h * scale)))
    interp = cv2.INTER_AREA if scale < 1 else cv2.INTER_CUBIC
    resized = cv2.resize(gray, (new_w, new_h), interpolation=interp)

    canvas = np.full((height, width), 255, dtype=np.uint8)
    y0 = (height - new_h) // 2
    x0 = (width - new_w) // 2
    canvas[y0 : y0 + new_h, x0 : x0 + new_w] = resized

    return cv2.normalize(canvas, None, 0, 255, cv2.NORM_MINMAX)
