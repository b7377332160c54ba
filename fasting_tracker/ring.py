from __future__ import annotations

from pathlib import Path

from PIL import Image, ImageDraw, ImageFont

ACCENT = (82, 163, 123)
TRACK = (221, 224, 228)
BACKGROUND = (246, 247, 249)
TEXT = (33, 37, 41)
SECONDARY_TEXT = (108, 117, 125)


def ring_geometry(size: int) -> tuple[int, int]:
    """Return ``(padding, line_width)`` for a ring rendered at ``size`` pixels."""
    line_width = max(4, size // 15)
    padding = max(line_width, size // 10)
    return padding, line_width


def render_progress_ring(progress: float, remaining_text: str, size: int = 240) -> Image.Image:
    clamped = min(max(progress, 0.0), 1.0)
    padding, line_width = ring_geometry(size)

    image = Image.new("RGB", (size, size), BACKGROUND)
    draw = ImageDraw.Draw(image)
    box = (padding, padding, size - padding - 1, size - padding - 1)

    draw.ellipse(box, outline=TRACK, width=line_width)
    if clamped > 0:
        # PIL measures angles clockwise from 3 o'clock; -90 puts the start at 12.
        draw.arc(box, start=-90, end=-90 + 360 * clamped, fill=ACCENT, width=line_width)

    font = ImageFont.load_default()
    percent = f"{clamped * 100:.0f}%"
    _draw_centered(draw, percent, size / 2, size / 2 - 8, font, TEXT)
    _draw_centered(draw, remaining_text, size / 2, size / 2 + 10, font, SECONDARY_TEXT)
    return image


def save_progress_ring(path: Path, progress: float, remaining_text: str, size: int = 240) -> Path:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    render_progress_ring(progress, remaining_text, size).save(target, format="PNG")
    return target


def _draw_centered(draw: ImageDraw.ImageDraw, text: str, cx: float, cy: float, font, fill) -> None:
    if not text:
        return
    left, top, right, bottom = draw.textbbox((0, 0), text, font=font)
    width = right - left
    height = bottom - top
    draw.text((cx - width / 2 - left, cy - height / 2 - top), text, font=font, fill=fill)
