"""Turtle state machine and the raster surface it draws on.

The surface keeps an RGBA ``numpy`` image for raster output and the list of
committed segments for SVG output. PNG encoding goes through Pillow; BMP is
written directly.
"""

from __future__ import annotations

import math
import os
import struct
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
from PIL import Image

from evaluator import LogoRuntimeError
from lexer import LogoError


HEADING_MODULUS = 360
DEFAULT_COLOR = 0

BACKGROUND: Tuple[int, int, int] = (255, 255, 255)

PALETTE: List[Tuple[int, int, int]] = [
    (0, 0, 0),        # 0 black
    (0, 0, 255),      # 1 blue
    (0, 255, 0),      # 2 lime
    (0, 255, 255),    # 3 cyan
    (255, 0, 0),      # 4 red
    (255, 0, 255),    # 5 magenta
    (255, 255, 0),    # 6 yellow
    (255, 255, 255),  # 7 white
    (155, 96, 59),    # 8 brown
    (197, 136, 18),   # 9 tan
    (100, 162, 64),   # 10 green
    (120, 187, 187),  # 11 aquamarine
    (255, 149, 119),  # 12 salmon
    (144, 113, 208),  # 13 purple
    (255, 163, 0),    # 14 orange
    (183, 183, 183),  # 15 grey
]


class LogoImageError(LogoError):
    """Raised when a finished drawing cannot be written out."""


@dataclass(frozen=True)
class Segment:
    x0: int
    y0: int
    x1: int
    y1: int
    color: int


def _guard_image_size(width: int, height: int) -> None:
    if width <= 0 or height <= 0:
        raise LogoImageError(f"Invalid image dimensions {width}x{height}")
    # Simple safety limit to avoid exhausting memory on crafted inputs.
    if width * height > 100_000_000:
        raise LogoImageError(f"Image too large: {width}x{height}")


def _clip_segment(x0: int, y0: int, x1: int, y1: int, max_x: int, max_y: int) -> Optional[Tuple[int, int, int, int]]:
    """Liang-Barsky clip of a segment to the box ``0..max_x`` by ``0..max_y``.

    Returns ``None`` when no part of the segment lies inside the box.
    """
    dx = x1 - x0
    dy = y1 - y0
    t0, t1 = 0.0, 1.0
    for p, q in ((-dx, x0), (dx, max_x - x0), (-dy, y0), (dy, max_y - y0)):
        if p == 0:
            if q < 0:
                return None
            continue
        t = q / p
        if p < 0:
            if t > t1:
                return None
            t0 = max(t0, t)
        else:
            if t < t0:
                return None
            t1 = min(t1, t)

    def at(t: float) -> Tuple[int, int]:
        x = min(max(round(x0 + t * dx), 0), max_x)
        y = min(max(round(y0 + t * dy), 0), max_y)
        return x, y

    return at(t0) + at(t1)


class Surface:
    def __init__(self, width: int, height: int) -> None:
        _guard_image_size(width, height)
        self.width = width
        self.height = height
        self.pixels = np.zeros((height, width, 4), dtype=np.uint8)
        self.pixels[:, :, :3] = BACKGROUND
        self.pixels[:, :, 3] = 255
        self.segments: List[Segment] = []

    def draw_line(self, x0: int, y0: int, x1: int, y1: int, color: int) -> None:
        self.segments.append(Segment(x0, y0, x1, y1, color))
        clipped = _clip_segment(x0, y0, x1, y1, self.width - 1, self.height - 1)
        if clipped is None:
            return
        x0, y0, x1, y1 = clipped
        rgb = PALETTE[color]
        pixels = self.pixels

        # Bresenham integer line rasterization over the clipped span
        dx = abs(x1 - x0)
        dy = abs(y1 - y0)
        x, y = x0, y0
        sx = 1 if x0 < x1 else -1
        sy = 1 if y0 < y1 else -1
        if dx > dy:
            err = dx // 2
            while True:
                pixels[y, x, :3] = rgb
                if x == x1:
                    break
                err -= dy
                if err < 0:
                    y += sy
                    err += dx
                x += sx
        else:
            err = dy // 2
            while True:
                pixels[y, x, :3] = rgb
                if y == y1:
                    break
                err -= dx
                if err < 0:
                    x += sx
                    err += dy
                y += sy

    def save(self, path: str) -> None:
        ext = os.path.splitext(path)[1].lower()
        writer = {
            ".png": self._write_png,
            ".bmp": self._write_bmp,
            ".svg": self._write_svg,
        }.get(ext)
        if writer is None:
            raise LogoImageError(f"Unsupported image extension '{ext or path}' (expected .png, .bmp or .svg)")
        try:
            writer(path)
        except OSError as exc:
            raise LogoImageError(f"Failed to write {path}: {exc}") from exc

    def _write_png(self, path: str) -> None:
        im = Image.frombytes("RGBA", (self.width, self.height), self.pixels.tobytes())
        im.save(path, format="PNG")

    def _write_bmp(self, path: str) -> None:
        # Write a simple 32-bit BMP (BGRA) uncompressed
        width, height = self.width, self.height
        row_bytes = width * 4
        with open(path, "wb") as handle:
            bfOffBits = 14 + 40  # file header + info header
            bfSize = bfOffBits + (row_bytes * height)
            handle.write(struct.pack('<2sIHHI', b'BM', bfSize, 0, 0, bfOffBits))
            handle.write(struct.pack('<IIIHHIIIIII', 40, width, height, 1, 32, 0, row_bytes * height, 0, 0, 0, 0))
            # BMP stores rows bottom-up, each pixel B G R A
            bgra = self.pixels[::-1, :, [2, 1, 0, 3]]
            handle.write(np.ascontiguousarray(bgra).tobytes())

    def _write_svg(self, path: str) -> None:
        r, g, b = BACKGROUND
        lines = [
            f'<svg xmlns="http://www.w3.org/2000/svg" width="{self.width}" height="{self.height}" '
            f'viewBox="0 0 {self.width} {self.height}">',
            f'<rect width="{self.width}" height="{self.height}" fill="#{r:02x}{g:02x}{b:02x}"/>',
        ]
        for seg in self.segments:
            r, g, b = PALETTE[seg.color]
            lines.append(
                f'<line x1="{seg.x0}" y1="{seg.y0}" x2="{seg.x1}" y2="{seg.y1}" '
                f'stroke="#{r:02x}{g:02x}{b:02x}" stroke-width="1"/>'
            )
        lines.append("</svg>")
        with open(path, "w", encoding="utf-8") as handle:
            handle.write("\n".join(lines) + "\n")


def _offset(heading: int, distance: int) -> Tuple[int, int]:
    # Headings past 180 reuse the mirrored angle so that opposite moves
    # round to exactly opposite offsets.
    flip = heading >= 180
    angle = math.radians(heading - 180 if flip else heading)
    dx = round(distance * math.sin(angle))
    dy = -round(distance * math.cos(angle))
    if flip:
        return -dx, -dy
    return dx, dy


@dataclass(frozen=True)
class TurtleState:
    x: int
    y: int
    heading: int
    pen_down: bool
    color: int

    def describe(self) -> str:
        pen = "down" if self.pen_down else "up"
        return f"x={self.x} y={self.y} heading={self.heading} pen={pen} color={self.color}"


class TurtleCanvas:
    """Pen position, heading, pen state and color over a ``Surface``.

    Coordinates are surface pixels with y growing downward. Heading 0 points
    up and increases clockwise.
    """

    def __init__(self, width: int, height: int) -> None:
        self.surface = Surface(width, height)
        self.x = width // 2
        self.y = height // 2
        self.heading = 0
        self.pen_is_down = False
        self.color = DEFAULT_COLOR

    def state(self) -> TurtleState:
        return TurtleState(self.x, self.y, self.heading, self.pen_is_down, self.color)

    def pen_up(self) -> None:
        self.pen_is_down = False

    def pen_down(self) -> None:
        self.pen_is_down = True

    def draw_forward(self, distance: int) -> None:
        self._move(0, distance)

    def draw_backward(self, distance: int) -> None:
        self._move(180, distance)

    def draw_left(self, distance: int) -> None:
        # Headings grow clockwise, so a quarter turn to the left is +270.
        self._move(270, distance)

    def draw_right(self, distance: int) -> None:
        self._move(90, distance)

    def _move(self, relative: int, distance: int) -> None:
        dx, dy = _offset((self.heading + relative) % HEADING_MODULUS, distance)
        x0, y0 = self.x, self.y
        self.x, self.y = x0 + dx, y0 + dy
        if self.pen_is_down:
            self.surface.draw_line(x0, y0, self.x, self.y, self.color)

    def set_pos(self, x: int, y: int) -> None:
        self.x = x
        self.y = y

    def turn_degree(self, delta: int) -> None:
        self.heading = (self.heading + delta) % HEADING_MODULUS

    def set_heading(self, heading: int) -> None:
        self.heading = heading % HEADING_MODULUS

    def set_color(self, index: int) -> None:
        if index < 0 or index >= len(PALETTE):
            raise LogoRuntimeError(
                f"Invalid color {index}: expected 0..{len(PALETTE) - 1}",
                rewrite_rule="SETPENCOLOR",
            )
        self.color = index

    def save(self, path: str) -> None:
        self.surface.save(path)
