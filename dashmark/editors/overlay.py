"""Overlay editor: composites the timestamp watermark onto decoded frames."""

from datetime import datetime
from pathlib import Path

from PIL import Image, ImageDraw, ImageFont

from dashmark.manifest import OverlayConfig

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def format_timestamp(instant: datetime) -> str:
    return instant.strftime(TIMESTAMP_FORMAT)


def font_size_for_width(width: int, minimum: int = 16, divisor: int = 30) -> int:
    """Font size proportional to frame width, never below *minimum*."""
    return max(minimum, round(width / divisor))


def load_font(size: int, font_path: Path | None = None) -> ImageFont.FreeTypeFont:
    if font_path is not None:
        return ImageFont.truetype(str(font_path), size)
    return ImageFont.load_default(size=size)


class FrameBuffer:
    """Fixed-size RGB surface the compositor draws into and capture reads.

    Starts black, like a fresh canvas.
    """

    def __init__(self, width: int, height: int):
        if width <= 0 or height <= 0:
            raise ValueError(f"Invalid frame size {width}x{height}")
        self.width = width
        self.height = height
        self._image = Image.new("RGB", (width, height))
        self.frames_written = 0

    @property
    def size(self) -> tuple[int, int]:
        return (self.width, self.height)

    def write(self, image: Image.Image) -> None:
        if image.size != self.size:
            raise ValueError(
                f"Frame is {image.size[0]}x{image.size[1]}, buffer is {self.width}x{self.height}"
            )
        self._image = image
        self.frames_written += 1

    def snapshot(self) -> bytes:
        return self._image.tobytes()

    @property
    def image(self) -> Image.Image:
        return self._image


class Compositor:
    """Draws ``frame + timestamp panel`` into a FrameBuffer.

    Font size and padding are fixed at construction from the frame width.
    """

    def __init__(self, frame_buffer: FrameBuffer, config: OverlayConfig | None = None):
        self.frame_buffer = frame_buffer
        self.config = config or OverlayConfig()
        width = frame_buffer.width
        self.font_size = font_size_for_width(
            width, self.config.min_font_size, self.config.font_divisor
        )
        self.padding = width / self.config.padding_divisor
        self.font = load_font(self.font_size, self.config.font_path)
        self.last_box: tuple[int, int, int, int] | None = None

    def panel_box(self, text_width: float) -> tuple[int, int, int, int]:
        """Background rectangle for a text of *text_width* pixels."""
        fb, pad = self.frame_buffer, self.padding
        text_x = fb.width - text_width - pad
        text_y = fb.height - pad
        left = text_x - pad / 2
        top = text_y - self.font_size
        return (
            round(left),
            round(top),
            round(left + text_width + pad),
            round(top + self.font_size + pad / 2),
        )

    def composite(self, frame: bytes, instant: datetime) -> str:
        """Render *frame* with *instant* watermarked; returns the drawn text."""
        fb = self.frame_buffer
        text = format_timestamp(instant)
        image = Image.frombytes("RGB", fb.size, frame)
        draw = ImageDraw.Draw(image)

        text_width = draw.textlength(text, font=self.font)
        box = self.panel_box(text_width)
        self.last_box = box
        background = self.config.background
        if background[3] == 255:
            draw.rectangle(box, fill=background[:3])
        else:
            mask = Image.new("L", (box[2] - box[0], box[3] - box[1]), background[3])
            image.paste(background[:3], box, mask)

        origin = (fb.width - text_width - self.padding, fb.height - self.padding)
        text_color = self.config.text_color
        if text_color[3] == 255:
            draw.text(origin, text, fill=text_color[:3], font=self.font, anchor="ls")
        else:
            # Blend only the panel region.
            region = image.crop(box).convert("RGBA")
            layer = Image.new("RGBA", region.size, (0, 0, 0, 0))
            local = (origin[0] - box[0], origin[1] - box[1])
            ImageDraw.Draw(layer).text(local, text, fill=text_color, font=self.font, anchor="ls")
            image.paste(Image.alpha_composite(region, layer).convert("RGB"), box[:2])

        fb.write(image)
        return text
