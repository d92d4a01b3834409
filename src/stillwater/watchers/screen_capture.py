import time
from io import BytesIO
from typing import cast

import mss  # pyright: ignore[reportMissingImports]
from PIL import Image  # pyright: ignore[reportMissingImports]

from stillwater.logger import get_logger

logger = get_logger("screen_capture")

# 解析器に送る画像の長辺の上限（全ディスプレイ合計）
MAX_LONG_EDGE = 1568
JPEG_QUALITY = 85


def per_display_long_edge(display_count: int) -> int:
    """ディスプレイ 1 枚あたりの長辺上限. 枚数で等分する."""
    return MAX_LONG_EDGE // max(1, display_count)


def fit_long_edge(image: Image.Image, max_edge: int) -> Image.Image:
    """長辺が ``max_edge`` 以下になるよう縦横比を保って縮小する."""
    width, height = image.size
    long_edge = max(width, height)
    if long_edge <= max_edge:
        return image
    scale = max_edge / long_edge
    size = (max(1, round(width * scale)), max(1, round(height * scale)))
    return image.resize(size, Image.Resampling.LANCZOS)


def stitch_side_by_side(images: list[Image.Image]) -> Image.Image:
    """複数ディスプレイの画像を横に並べて 1 枚にする."""
    if len(images) == 1:
        return images[0]
    width = sum(img.width for img in images)
    height = max(img.height for img in images)
    canvas = Image.new("RGB", (width, height))
    x = 0
    for img in images:
        canvas.paste(img, (x, 0))
        x += img.width
    return canvas


def encode_jpeg(image: Image.Image, quality: int = JPEG_QUALITY) -> bytes:
    buffer = BytesIO()
    image.convert("RGB").save(buffer, format="JPEG", quality=quality)
    return buffer.getvalue()


class ScreenCapture:
    """全ディスプレイのスクリーンショットを JPEG で取得するクラス."""

    def __init__(self, monitors: list[dict[str, int]] | None = None) -> None:
        """初期化する

        Args:
            monitors: キャプチャ領域 {"top", "left", "width", "height"} のリスト.
                Noneの場合は接続中の全ディスプレイ

        """
        self.monitors = monitors or self._detect_monitors()
        self.last_capture_time: float = 0.0
        logger.info("ScreenCapture initialized | displays=%s", len(self.monitors))

    def _detect_monitors(self) -> list[dict[str, int]]:
        """接続中のディスプレイ領域を取得. monitors[0] は仮想スクリーン全体."""
        with mss.mss() as sct:
            monitors = cast("list[dict[str, int]]", sct.monitors)
            chosen = monitors[1:] or monitors[:1]
            logger.info("Monitors detected: %s", len(chosen))
            return chosen

    def capture_images(self) -> list[Image.Image]:
        max_edge = per_display_long_edge(len(self.monitors))
        images: list[Image.Image] = []
        with mss.mss() as sct:
            for bbox in self.monitors:
                shot = sct.grab(bbox)
                image = Image.frombytes("RGB", shot.size, shot.bgra, "raw", "BGRX")
                images.append(fit_long_edge(image, max_edge))
        return images

    def capture_jpeg(self) -> bytes:
        """スクリーンキャプチャを JPEG バイト列で返す."""
        data = encode_jpeg(stitch_side_by_side(self.capture_images()))
        self.last_capture_time = time.time()
        logger.debug("captured %d bytes", len(data))
        return data

