"""
Annotation overlay rendering for audit findings.

Boxes arrive in the normalized 0-1000 space and are mapped onto a surface
scaled to fit the viewing container. One finding at a time can be
emphasized: the rest of the image is dimmed and blurred, the emphasized box
gets the undimmed image back, a glowing solid stroke and a pulsing fill.
"""

from __future__ import annotations

import asyncio
import io
import logging
import math
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

from PIL import Image, ImageDraw, ImageEnhance, ImageFilter, ImageFont

from rtl_auditor.models.schemas import BoundingBox, DisplayError
from rtl_auditor.services.image_ingest import image_from_data_url

logger = logging.getLogger(__name__)

NORMALIZED_EXTENT = 1000.0
VIEWPORT_HEIGHT_FRACTION = 0.8

BACKGROUND_COLOR = (15, 23, 42, 255)
ANNOTATION_COLOR = (255, 59, 48)
LABEL_TEXT_COLOR = (255, 255, 255)

DIM_ALPHA = 0.5
DIM_BRIGHTNESS = 0.4
DIM_BLUR_RADIUS = 2
IDLE_BOX_ALPHA = 0.9
FADED_BOX_ALPHA = 0.1
FADED_LABEL_ALPHA = 0.2
DASH_PATTERN = (5, 5)
GLOW_BLUR_RADIUS = 12
LABEL_GLOW_BLUR_RADIUS = 8

LABEL_RADIUS = 14
LABEL_MARGIN = 20
LABEL_CORNER_RADIUS = 8
LABEL_FONT_SIZE = 14


@dataclass(frozen=True)
class PixelRect:
    x: float
    y: float
    width: float
    height: float

    def clipped(self, size: Tuple[int, int]) -> Optional[Tuple[int, int, int, int]]:
        """Integer ``(left, top, right, bottom)`` inside the surface, None if empty."""
        left = max(0, int(round(self.x)))
        top = max(0, int(round(self.y)))
        right = min(size[0], int(round(self.x + self.width)))
        bottom = min(size[1], int(round(self.y + self.height)))
        if right <= left or bottom <= top:
            return None
        return left, top, right, bottom


@dataclass(frozen=True)
class LabelPlacement:
    x: float
    y: float
    below: bool


@dataclass
class RenderResult:
    image: Image.Image
    frame: int
    boxes: List[Tuple[int, PixelRect]] = field(default_factory=list)
    labels: List[Tuple[int, LabelPlacement]] = field(default_factory=list)


def to_pixel_rect(box: BoundingBox, canvas_width: float, canvas_height: float) -> PixelRect:
    return PixelRect(
        x=(box.x / NORMALIZED_EXTENT) * canvas_width,
        y=(box.y / NORMALIZED_EXTENT) * canvas_height,
        width=(box.width / NORMALIZED_EXTENT) * canvas_width,
        height=(box.height / NORMALIZED_EXTENT) * canvas_height,
    )


def compute_scale(
    image_size: Tuple[int, int],
    container_width: float,
    viewport_height: float,
    fraction: float = VIEWPORT_HEIGHT_FRACTION,
) -> float:
    image_width, image_height = image_size
    if image_width <= 0 or image_height <= 0:
        raise ValueError(f"Invalid image size: {image_size}")
    return min(container_width / image_width, (viewport_height * fraction) / image_height)


def fit_surface(
    image_size: Tuple[int, int],
    container_width: float,
    viewport_height: float,
) -> Tuple[int, int]:
    scale = compute_scale(image_size, container_width, viewport_height)
    return max(1, int(image_size[0] * scale)), max(1, int(image_size[1] * scale))


def place_label(
    rect: PixelRect,
    canvas_width: float,
    radius: float = LABEL_RADIUS,
    margin: float = LABEL_MARGIN,
) -> LabelPlacement:
    """Bubble above the box's top edge, flipped below it when it would leave the surface."""
    draw_y = rect.y - radius * 2.5
    below = draw_y < margin
    if below:
        draw_y = rect.y + radius * 1.5
    draw_x = min(max(rect.x, margin), canvas_width - margin)
    return LabelPlacement(x=draw_x, y=draw_y, below=below)


def pulse(frame: int) -> float:
    return 1 + math.sin(frame * 0.15) * 0.1


def fill_alpha(frame: int) -> float:
    return 0.1 + math.sin(frame * 0.2) * 0.05


@lru_cache(maxsize=16)
def _label_font(size: int) -> ImageFont.ImageFont:
    return ImageFont.load_default(size=size)


def _rgba(alpha: float) -> Tuple[int, int, int, int]:
    return ANNOTATION_COLOR + (max(0, min(255, int(round(255 * alpha)))),)


def _dashed_line(draw, start, end, fill, width, offset: float) -> float:
    dash, gap = DASH_PATTERN
    period = dash + gap
    (x0, y0), (x1, y1) = start, end
    length = math.hypot(x1 - x0, y1 - y0)
    if length == 0:
        return offset
    ux, uy = (x1 - x0) / length, (y1 - y0) / length
    pos = 0.0
    while pos < length:
        phase = (offset + pos) % period
        if phase < dash:
            seg = min(dash - phase, length - pos)
            draw.line(
                [(x0 + ux * pos, y0 + uy * pos), (x0 + ux * (pos + seg), y0 + uy * (pos + seg))],
                fill=fill,
                width=width,
            )
        else:
            seg = min(period - phase, length - pos)
        pos += seg
    return offset + length


def _dashed_rectangle(draw, rect: PixelRect, fill, width: int) -> None:
    x0, y0 = rect.x, rect.y
    x1, y1 = rect.x + rect.width, rect.y + rect.height
    offset = 0.0
    for start, end in (((x0, y0), (x1, y0)), ((x1, y0), (x1, y1)), ((x1, y1), (x0, y1)), ((x0, y1), (x0, y0))):
        offset = _dashed_line(draw, start, end, fill, width, offset)


class AnnotationRenderer:
    """Draws the scaled screenshot with its finding overlays."""

    def __init__(self, image: Image.Image, annotations: Sequence[DisplayError]) -> None:
        self._source = image.convert("RGB")
        self.annotations = list(annotations)
        self.frame = 0
        self.surface_size: Optional[Tuple[int, int]] = None
        self.reallocations = 0
        self._base: Optional[Image.Image] = None
        self._dimmed: Optional[Image.Image] = None

    @property
    def image_size(self) -> Tuple[int, int]:
        return self._source.size

    def resize(self, container_width: float, viewport_height: float) -> Tuple[int, int]:
        size = fit_surface(self._source.size, container_width, viewport_height)
        if size != self.surface_size:
            self._allocate(size)
        return size

    def _allocate(self, size: Tuple[int, int]) -> None:
        base = self._source.resize(size, Image.Resampling.LANCZOS)
        dimmed = ImageEnhance.Brightness(base).enhance(DIM_BRIGHTNESS)
        dimmed = dimmed.filter(ImageFilter.GaussianBlur(DIM_BLUR_RADIUS)).convert("RGBA")
        dimmed.putalpha(int(255 * DIM_ALPHA))
        self._dimmed = Image.alpha_composite(Image.new("RGBA", size, BACKGROUND_COLOR), dimmed)
        self._base = base.convert("RGBA")
        self.surface_size = size
        self.reallocations += 1

    def render(self, active_index: Optional[int] = None) -> RenderResult:
        if self.surface_size is None:
            # Natural size when no container has been measured yet.
            width, height = self._source.size
            self.resize(width, height / VIEWPORT_HEIGHT_FRACTION)
        self.frame += 1
        size = self.surface_size
        emphasized = active_index is not None
        canvas = (self._dimmed if emphasized else self._base).copy()
        scale = pulse(self.frame)

        # Boxes first, labels second, so no box covers a label.
        boxes: List[Tuple[int, PixelRect]] = []
        for index, item in enumerate(self.annotations):
            if item.location is None:
                continue
            rect = to_pixel_rect(item.location, size[0], size[1])
            if index == active_index:
                self._draw_emphasized_box(canvas, rect)
            else:
                self._draw_idle_box(canvas, rect, FADED_BOX_ALPHA if emphasized else IDLE_BOX_ALPHA)
            boxes.append((index, rect))

        labels: List[Tuple[int, LabelPlacement]] = []
        for index, rect in boxes:
            placement = place_label(rect, size[0])
            self._draw_label(
                canvas,
                index,
                placement,
                highlighted=index == active_index,
                faded=emphasized and index != active_index,
                scale=scale * 1.2 if index == active_index else 1.0,
            )
            labels.append((index, placement))

        return RenderResult(image=canvas, frame=self.frame, boxes=boxes, labels=labels)

    def _draw_idle_box(self, canvas: Image.Image, rect: PixelRect, alpha: float) -> None:
        layer = Image.new("RGBA", canvas.size, (0, 0, 0, 0))
        _dashed_rectangle(ImageDraw.Draw(layer), rect, _rgba(alpha), 2)
        canvas.alpha_composite(layer)

    def _draw_emphasized_box(self, canvas: Image.Image, rect: PixelRect) -> None:
        box = rect.clipped(canvas.size)
        if box is None:
            return
        canvas.paste(self._base.crop(box), box[:2])

        glow = Image.new("RGBA", canvas.size, (0, 0, 0, 0))
        ImageDraw.Draw(glow).rectangle(box, outline=_rgba(1.0), width=8)
        canvas.alpha_composite(glow.filter(ImageFilter.GaussianBlur(GLOW_BLUR_RADIUS)))

        layer = Image.new("RGBA", canvas.size, (0, 0, 0, 0))
        draw = ImageDraw.Draw(layer)
        draw.rectangle(box, fill=_rgba(fill_alpha(self.frame)))
        draw.rectangle(box, outline=_rgba(1.0), width=4)
        canvas.alpha_composite(layer)

    def _draw_label(
        self,
        canvas: Image.Image,
        index: int,
        placement: LabelPlacement,
        *,
        highlighted: bool,
        faded: bool,
        scale: float,
    ) -> None:
        alpha = FADED_LABEL_ALPHA if faded else 1.0
        radius = LABEL_RADIUS * scale
        # Scaled around the bubble's lower anchor, like a CSS transform origin.
        anchor_y = placement.y + LABEL_RADIUS
        cx = placement.x
        cy = anchor_y + (placement.y - anchor_y) * scale
        tip = 6 * scale
        half = 5 * scale

        layer = Image.new("RGBA", canvas.size, (0, 0, 0, 0))
        draw = ImageDraw.Draw(layer)
        draw.rounded_rectangle(
            (cx - radius, cy - radius, cx + radius, cy + radius),
            radius=max(1, int(round(LABEL_CORNER_RADIUS * scale))),
            fill=_rgba(alpha),
        )
        if placement.below:
            pointer = [(cx - half, cy - radius), (cx + half, cy - radius), (cx, cy - radius - tip)]
        else:
            pointer = [(cx - half, cy + radius), (cx + half, cy + radius), (cx, cy + radius + tip)]
        draw.polygon(pointer, fill=_rgba(alpha))
        draw.text(
            (cx, cy),
            str(index + 1),
            fill=LABEL_TEXT_COLOR + (int(round(255 * alpha)),),
            font=_label_font(max(1, int(round(LABEL_FONT_SIZE * scale)))),
            anchor="mm",
        )

        if highlighted:
            canvas.alpha_composite(layer.filter(ImageFilter.GaussianBlur(LABEL_GLOW_BLUR_RADIUS)))
        canvas.alpha_composite(layer)


def encode_png(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


async def load_image(data_url: str) -> Image.Image:
    """Decode the source screenshot off the event loop."""
    return await asyncio.to_thread(image_from_data_url, data_url)


FrameCallback = Callable[[RenderResult], Awaitable[None] | None]


class RenderLoop:
    """
    Repeating render task bound to the lifetime of its owning view.

    Renders at a fixed frame rate to drive the pulse animation and
    immediately on resize. ``stop()`` (or leaving the ``async with`` block)
    cancels the scheduling.
    """

    def __init__(
        self,
        renderer: AnnotationRenderer,
        on_frame: FrameCallback,
        *,
        fps: float = 30,
        active_index: Optional[int] = None,
    ) -> None:
        if fps <= 0:
            raise ValueError("fps must be positive")
        self._renderer = renderer
        self._on_frame = on_frame
        self.interval = 1.0 / fps
        self.active_index = active_index
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def set_active(self, index: Optional[int]) -> None:
        self.active_index = index

    async def resize(self, container_width: float, viewport_height: float) -> None:
        self._renderer.resize(container_width, viewport_height)
        await self._emit()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="render-loop")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            await self._emit()
            await asyncio.sleep(self.interval)

    async def _emit(self) -> None:
        maybe = self._on_frame(self._renderer.render(self.active_index))
        if maybe is not None and hasattr(maybe, "__await__"):
            await maybe

    async def __aenter__(self) -> "RenderLoop":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
