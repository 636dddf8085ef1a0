#!/usr/bin/env python3

"""
Gauge Scale Generator
Piecewise-linear instrument scales in the manner of a vertical-speed indicator:
a signed domain is tiled onto a pixel extent by weighted segments, annotated
with classified ticks, a value indicator and a confidence band.

Table of Contents
   1. Setup
   2. Fundamental Functions
   3. Scale Generating Function
   4. Tick Classification
   5. Indicator Geometry
   6. Recompute Controller
   7. Drawing Functions
   8. Models
   9. Commands
"""

# ----------------------1. Setup----------------------------

import io
import math
import os
import random
import re
import time
from contextlib import contextmanager
from xml.etree import ElementTree
from dataclasses import dataclass, fields, replace
from enum import Enum
from functools import cache
from typing import Callable

import toml
from PIL import Image, ImageColor, ImageDraw, ImageFont
import drawsvg as svg
import ziamath as zm


def keys_of(obj: object):
    return [k for k, v in obj.__dict__.items() if not k.startswith('__')]


def checked_keys(def_dict: dict, known, table: str) -> dict:
    """Raises ValueError naming any key of a model table that nothing reads."""
    if unknown := sorted(set(def_dict) - set(known)):
        raise ValueError(f'Unknown key(s) in [{table}]: {", ".join(unknown)}')
    return def_dict


def field_names(cls) -> list[str]:
    return [f.name for f in fields(cls)]


FF = 255
WH = tuple[int, int]
RGB = tuple[int, int, int]


class Color(Enum):
    WHITE, BLACK = (FF, FF, FF), (0, 0, 0)
    RED, GREEN, BLUE = (FF, 0, 0), (0, FF, 0), (0, 0, FF)
    YELLOW, CYAN, MAGENTA = (FF, FF, 0), (0, FF, FF), (FF, 0, FF)
    ORANGE = (FF, 165, 0)
    GREY = (127, 127, 127)
    PANEL_BLACK = (28, 28, 28)  # instrument face
    MARKING_WHITE = (236, 236, 228)  # instrument markings

    @staticmethod
    @cache
    def to_pil(col_spec) -> RGB:
        if isinstance(col_spec, Color):
            return col_spec.value
        if isinstance(col_spec, str):
            return ImageColor.getrgb(col_spec)[:3]
        return tuple(col_spec)

    @classmethod
    def with_alpha(cls, col_spec, opacity: float):
        return cls.to_pil(col_spec) + (round(FF * max(0., min(1., opacity))),)

    @classmethod
    def to_str(cls, col):
        """CSS color: a keyword only where CSS defines it with the same value, rgb() otherwise"""
        if isinstance(col, cls):
            col = col.value
        if isinstance(col, tuple):
            for member in cls:
                name = member.name.lower()
                if member.value == col and name in ImageColor.colormap and ImageColor.getrgb(name)[:3] == col:
                    return name
            return f'rgb({col[0]},{col[1]},{col[2]})'
        return col

    @classmethod
    def from_str(cls, color: str):
        return getattr(cls, color.upper(), color)


class Orientation(Enum):
    """Axis of a scale. Vertical scales read upward: larger values sit at smaller pixel coordinates."""
    HORIZONTAL, VERTICAL = 'horizontal', 'vertical'

    @property
    def direction(self) -> int:
        return 1 if self == Orientation.HORIZONTAL else -1

    @classmethod
    def of(cls, spec):
        return spec if isinstance(spec, cls) else cls(str(spec).lower())


class HMod(Enum):
    """Tick height size factors"""
    SM, MED, LG = 0.5, 0.75, 1


@dataclass(frozen=True)
class Geometry:
    """Gauge drawing parameters, in pixels"""
    STH: int = 40
    """standard tick height"""
    STT: int = 2
    """standard tick thickness"""
    line_percent: float = 50
    """cross-axis position of the scale line, as a percentage of the cross extent"""
    label_gap: int = 6
    """space between the end of a major tick and its numeral"""

    PixelsPerIN = 96  # CSS reference pixel
    PixelsPerCM = PixelsPerIN / 2.54

    @classmethod
    def dim_to_pixels(cls, dim):
        if matches := re.match(r'^\s*([\d.]+)\s*(\w*)\s*$', dim) if isinstance(dim, str) else None:
            num, units = matches.group(1), matches.group(2)
            result = float(num) if '.' in num else int(num)
            if units == 'cm':
                result *= cls.PixelsPerCM
            elif units == 'mm':
                result *= cls.PixelsPerCM / 10
            elif units == 'in':
                result *= cls.PixelsPerIN
            elif units == 'pt':
                result *= cls.PixelsPerIN / 72
            return int(result)
        return dim

    @classmethod
    def from_dict(cls, geometry_def: dict):
        checked_keys(geometry_def, field_names(cls), 'geometry')
        return cls(**{k: cls.dim_to_pixels(v) for k, v in geometry_def.items()})

    def tick_h(self, h_mod: HMod) -> int:
        return round(self.STH * h_mod.value)

    def line_pos(self, cross_extent: float) -> float:
        return cross_extent * self.line_percent / HUNDRED


@dataclass(frozen=True)
class Viewport:
    """Pixel size of the drawing surface. A zero dimension means it has not been laid out yet."""
    width: int = 0
    height: int = 0

    @classmethod
    def from_dict(cls, viewport_def: dict):
        checked_keys(viewport_def, field_names(cls), 'viewport')
        return cls(**{k: Geometry.dim_to_pixels(v) for k, v in viewport_def.items()})

    def is_laid_out(self):
        return self.width > 0 and self.height > 0

    def extent_along(self, orientation: Orientation):
        return self.width if orientation == Orientation.HORIZONTAL else self.height

    def cross_extent(self, orientation: Orientation):
        return self.height if orientation == Orientation.HORIZONTAL else self.width


# ----------------------2. Fundamental Functions----------------------------


TEN = 10
HUNDRED = TEN * TEN
WEIGHT_SUM_TOLERANCE = 1e-3
DEFAULT_DOMAIN = (-10., 10.)
"""domain of the fallback scale when the breakpoints themselves are unusable"""
TICK_SF = TEN  # derived sub-ticks per domain unit
HALF_STEP = TICK_SF // 2


def interpolate(x: float, x0: float, x1: float, y0: float, y1: float) -> float:
    return y0 + (x - x0) * (y1 - y0) / (x1 - x0)


class Sym:
    @classmethod
    def num_sym(cls, num) -> str:
        if isinstance(num, float) and num.is_integer():
            num = int(num)
        if isinstance(num, int):
            return str(num)
        num_sym = f'{num:g}'
        if num_sym.startswith('0.'):
            return num_sym[1:]  # Omit leading zero digit
        elif num_sym.startswith('-0.'):
            return '-' + num_sym[2:]
        return num_sym


class ConfigErrorKind(Enum):
    INSUFFICIENT_BREAKPOINTS = 'insufficient_breakpoints'
    UNSORTED_BREAKPOINTS = 'unsorted_breakpoints'
    WEIGHT_COUNT_MISMATCH = 'weight_count_mismatch'
    NEGATIVE_WEIGHT = 'negative_weight'
    WEIGHT_SUM_OUT_OF_TOLERANCE = 'weight_sum_out_of_tolerance'
    INVALID_PADDING = 'invalid_padding'


class ConfigurationError(ValueError):
    """A scale configuration that cannot tile its extent, naming the offending field."""

    def __init__(self, kind: ConfigErrorKind, field_name: str, reason: str):
        super().__init__(f'{field_name}: {reason}')
        self.kind = kind
        self.field_name = field_name
        self.reason = reason


@dataclass(frozen=True)
class ScaleConfig:
    """Breakpoints and segment weights of a piecewise scale, with its padding and axis."""
    breakpoints: tuple[float, ...] | None = (-10., -5., -1., 0., 1., 5., 10.)
    """ascending segment boundaries, each drawn as a major tick"""
    weights: tuple[float, ...] | None = (0.1, 0.1, 0.3, 0.3, 0.1, 0.1)
    """fraction of the effective length for each segment"""
    padding: float = 50
    """pixel margin at both ends"""
    orientation: Orientation = Orientation.HORIZONTAL
    minor_ticks: tuple[float, ...] | None = None
    intermediate_ticks: tuple[float, ...] | None = None
    """explicit unlabeled ticks; when both lists are absent, sub-ticks are derived from the breakpoints"""

    def __post_init__(self):
        # plain data (lists, dimension strings, orientation names) arriving through make() or replace()
        for name in ('breakpoints', 'weights', 'minor_ticks', 'intermediate_ticks'):
            values = getattr(self, name)
            if values is not None:
                object.__setattr__(self, name, tuple(float(v) for v in values))
        object.__setattr__(self, 'padding', Geometry.dim_to_pixels(self.padding))
        object.__setattr__(self, 'orientation', Orientation.of(self.orientation))

    @classmethod
    def make(cls, breakpoints=None, weights=None, padding=0, orientation=Orientation.HORIZONTAL,
             minor_ticks=None, intermediate_ticks=None):
        return cls(breakpoints=breakpoints, weights=weights, padding=padding, orientation=orientation,
                   minor_ticks=minor_ticks, intermediate_ticks=intermediate_ticks)

    @classmethod
    def from_percentages(cls, breakpoints, percentages, **kwargs):
        return cls.make(breakpoints, [p / HUNDRED for p in percentages], **kwargs)

    @classmethod
    def thirds(cls, limit: float = 10., inner: float = 1., **kwargs):
        """Fixed-thirds layout: the inner band [-inner, inner] and each outer band get a third of the length."""
        return cls.from_percentages((-limit, -inner, inner, limit), (HUNDRED / 3,) * 3, **kwargs)

    @classmethod
    def from_dict(cls, config_def: dict):
        config_def = dict(checked_keys(config_def, field_names(cls) + ['percentages', 'thirds'], 'scale'))
        if 'percentages' in config_def:
            return cls.from_percentages(config_def.pop('breakpoints', None), config_def.pop('percentages'),
                                        **config_def)
        if 'thirds' in config_def:
            thirds_def = checked_keys(config_def.pop('thirds'), ('limit', 'inner'), 'scale.thirds')
            return cls.thirds(**thirds_def, **config_def)
        return cls.make(**config_def)

    @property
    def derives_ticks(self):
        return self.minor_ticks is None and self.intermediate_ticks is None

    def validate(self):
        """Raises ConfigurationError for the first problem found."""
        bps, weights = self.breakpoints or (), self.weights or ()
        if len(bps) < 2:
            raise ConfigurationError(ConfigErrorKind.INSUFFICIENT_BREAKPOINTS, 'breakpoints',
                                     f'at least 2 breakpoints are needed, got {len(bps)}')
        if not all(map(math.isfinite, bps)) or any(b1 <= b0 for b0, b1 in zip(bps, bps[1:])):
            raise ConfigurationError(ConfigErrorKind.UNSORTED_BREAKPOINTS, 'breakpoints',
                                     'breakpoints must be finite and strictly ascending')
        if len(weights) != len(bps) - 1:
            raise ConfigurationError(ConfigErrorKind.WEIGHT_COUNT_MISMATCH, 'weights',
                                     f'{len(bps)} breakpoints need {len(bps) - 1} weights, got {len(weights)}')
        for i, w in enumerate(weights):
            if not w >= 0:
                raise ConfigurationError(ConfigErrorKind.NEGATIVE_WEIGHT, 'weights',
                                         f'weight {i} must be a non-negative number, got {w}')
        if not abs(sum(weights) - 1) <= WEIGHT_SUM_TOLERANCE:
            raise ConfigurationError(ConfigErrorKind.WEIGHT_SUM_OUT_OF_TOLERANCE, 'weights',
                                     f'weights must sum to 1, got {sum(weights):g}')
        if not isinstance(self.padding, (int, float)) or not self.padding >= 0:
            raise ConfigurationError(ConfigErrorKind.INVALID_PADDING, 'padding',
                                     f'padding must be non-negative, got {self.padding}')

    def fallback_domain(self) -> tuple[float, float]:
        """Widest usable domain bound for a plain linear scale."""
        values = [b for b in self.breakpoints or () if math.isfinite(b)]
        if values and min(values) < max(values):
            return min(values), max(values)
        return DEFAULT_DOMAIN


# ----------------------3. Scale Generating Function----------------------------


@dataclass(frozen=True)
class PiecewiseScale:
    """
    Maps domain values onto pixels, linearly within each segment between breakpoints.
    Built once per configuration and extent; a later build supersedes it.
    """
    breakpoints: tuple[float, ...]
    pixels: tuple[float, ...]
    """pixel coordinate of each breakpoint"""
    total_extent: float
    padding: float = 0
    orientation: Orientation = Orientation.HORIZONTAL
    is_fallback: bool = False
    """whether this is the plain linear scale standing in for an invalid configuration"""

    @classmethod
    def build(cls, config: ScaleConfig, total_extent: float):
        config.validate()
        if total_extent - 2 * config.padding <= 0:
            raise ConfigurationError(ConfigErrorKind.INVALID_PADDING, 'padding',
                                     f'padding {config.padding} leaves no room in an extent of {total_extent}')
        return cls.tiled(config.breakpoints, config.weights, total_extent, config.padding,
                         Orientation.of(config.orientation))

    @classmethod
    def tiled(cls, breakpoints, weights, total_extent: float, padding: float = 0,
              orientation: Orientation = Orientation.HORIZONTAL, is_fallback=False):
        """Lay out the segments consecutively from the starting end, each weight * effective length long."""
        direction = orientation.direction
        effective_length = total_extent - 2 * padding
        pixel = padding if direction > 0 else total_extent - padding
        pixels = [pixel]
        for w in weights:
            pixel += direction * w * effective_length
            pixels.append(pixel)
        return cls(tuple(breakpoints), tuple(pixels), total_extent, padding, orientation, is_fallback)

    @classmethod
    def linear_fallback(cls, config: ScaleConfig, total_extent: float):
        padding = config.padding if isinstance(config.padding, (int, float)) \
            and 0 <= config.padding and 2 * config.padding < total_extent else 0
        return cls.tiled(config.fallback_domain(), (1.,), total_extent, padding,
                         Orientation.of(config.orientation), is_fallback=True)

    @property
    def effective_length(self) -> float:
        return self.total_extent - 2 * self.padding

    def __call__(self, value: float):
        return self.forward(value)

    def pixel_of(self, breakpoint: float) -> float:
        return self.pixels[self.breakpoints.index(breakpoint)]

    def range(self) -> tuple[float, float]:
        return self.pixels[0], self.pixels[-1]

    def domain(self) -> tuple[float, float]:
        return self.breakpoints[0], self.breakpoints[-1]

    def segment_index(self, value: float) -> int:
        """Segment containing value; the outermost segments also take values beyond the breakpoints."""
        last = len(self.breakpoints) - 2
        for i in range(last):
            if value < self.breakpoints[i + 1]:
                return i
        return last

    def forward(self, value: float) -> float:
        """
        Pixel position of any value. Outside the breakpoints the outermost segment's slope continues,
        so the mapping stays continuous and monotonic rather than clamping.
        """
        i = self.segment_index(value)
        bps, pxs = self.breakpoints, self.pixels
        return interpolate(value, bps[i], bps[i + 1], pxs[i], pxs[i + 1])

    def value_at(self, pixel: float) -> float:
        """Value indicated at a pixel position; inverse of forward across non-degenerate segments."""
        direction = self.orientation.direction
        offsets = [(p - self.pixels[0]) * direction for p in self.pixels]
        offset = (pixel - self.pixels[0]) * direction
        last = len(self.breakpoints) - 2
        i = next((i for i in range(last) if offset < offsets[i + 1]), last)
        if offsets[i + 1] == offsets[i]:  # zero-weight outermost segment
            return self.breakpoints[i] if offset <= offsets[i] else self.breakpoints[i + 1]
        return interpolate(offset, offsets[i], offsets[i + 1], self.breakpoints[i], self.breakpoints[i + 1])


def build_scale(config: ScaleConfig, total_extent: float) -> tuple[PiecewiseScale, ConfigurationError | None]:
    """Build the scale for a configuration, degrading to a plain linear scale and returning the error if invalid."""
    try:
        return PiecewiseScale.build(config, total_extent), None
    except ConfigurationError as e:
        return PiecewiseScale.linear_fallback(config, total_extent), e


# ----------------------4. Tick Classification----------------------------


class TickKind(Enum):
    """Visual class of a tick: (precedence, height factor, labeled, stroke factor)"""
    MAJOR = (3, HMod.LG, True, 3)
    INTERMEDIATE = (2, HMod.MED, False, 2)
    MINOR = (1, HMod.SM, False, 1)

    def __init__(self, rank: int, h_mod: HMod, labeled: bool, stroke: int):
        self.rank = rank
        self.h_mod = h_mod
        self.labeled = labeled
        self.stroke = stroke


@dataclass(frozen=True)
class Tick:
    value: float
    kind: TickKind


def classify_ticks(majors, minors=(), intermediates=()) -> list[Tick]:
    """Sorted union of the tick values, each keeping its strongest class when listed more than once."""
    kinds: dict[float, TickKind] = {}
    for values, kind in ((minors, TickKind.MINOR), (intermediates, TickKind.INTERMEDIATE), (majors, TickKind.MAJOR)):
        for v in values or ():
            v = float(v)
            if v not in kinds or kind.rank > kinds[v].rank:
                kinds[v] = kind
    return [Tick(v, kinds[v]) for v in sorted(kinds)]


def innermost_segment(breakpoints) -> tuple[float, float]:
    """The band around the center breakpoint (odd count) or the middle segment (even count)."""
    center = len(breakpoints) // 2
    if len(breakpoints) % 2:
        return breakpoints[center - 1], breakpoints[center + 1]
    return breakpoints[center - 1], breakpoints[center]


@dataclass(frozen=True)
class TickSet:
    majors: tuple[float, ...] = ()
    minors: tuple[float, ...] = ()
    intermediates: tuple[float, ...] = ()
    derived: bool = False
    """whether the unlabeled ticks were derived from the breakpoints"""

    @classmethod
    def derive(cls, breakpoints, max_ticks: int | None = None):
        """
        Fine tenths inside the innermost segment (halves as intermediate, the rest minor)
        and whole numbers as minor further out.
        A tier that would need more than max_ticks marks is left out entirely.
        """
        lo, hi = innermost_segment(breakpoints)
        halves, smalls = [], []
        tenths = range(math.ceil(round(lo * TICK_SF, 9)), math.floor(round(hi * TICK_SF, 9)) + 1)
        if max_ticks is None or len(tenths) <= max_ticks:
            for i in tenths:
                (halves if i % HALF_STEP == 0 else smalls).append(i / TICK_SF)
        majors = set(breakpoints)
        whole_range = range(math.ceil(breakpoints[0]), math.floor(breakpoints[-1]) + 1)
        wholes = []
        if max_ticks is None or len(whole_range) <= max_ticks:
            wholes = [float(n) for n in whole_range if not lo <= n <= hi and n not in majors]
        return cls(tuple(breakpoints), tuple(smalls + wholes), tuple(halves), derived=True)

    @classmethod
    def for_config(cls, config: ScaleConfig, scale: PiecewiseScale):
        if config.derives_ticks:
            # at most one derived mark per pixel of scale length
            return cls.derive(scale.breakpoints, max_ticks=int(scale.effective_length))
        return cls(scale.breakpoints, tuple(config.minor_ticks or ()), tuple(config.intermediate_ticks or ()))

    def ticks(self) -> list[Tick]:
        return classify_ticks(self.majors, self.minors, self.intermediates)


# ----------------------5. Indicator Geometry----------------------------


@dataclass(frozen=True)
class Indicator:
    value: float = 0.
    size: int = 24
    color: Color = Color.ORANGE
    opacity: float = 1.
    distance_percent: float = 25.
    """cross-axis placement, as a percentage of the cross extent"""
    transition_ms: int = 100

    @classmethod
    def from_dict(cls, indicator_def: dict):
        checked_keys(indicator_def, field_names(cls), 'indicator')
        if 'color' in indicator_def:
            indicator_def = dict(indicator_def, color=Color.from_str(indicator_def['color']))
        return cls(**indicator_def)


@dataclass(frozen=True)
class ConfidenceBand:
    center_value: float = 0.
    width_percent: float = 10.
    """along-axis size, as a percentage of the effective length"""
    cross_dimension: int = 40
    color: Color = Color.CYAN
    opacity: float = 0.35

    @classmethod
    def from_dict(cls, band_def: dict):
        checked_keys(band_def, field_names(cls), 'confidence')
        if 'color' in band_def:
            band_def = dict(band_def, color=Color.from_str(band_def['color']))
        return cls(**band_def)


@dataclass(frozen=True)
class Transform:
    x: float
    y: float

    def svg(self):
        return f'translate({self.x:g},{self.y:g})'


@dataclass(frozen=True)
class Box:
    x0: float
    y0: float
    dx: float
    dy: float

    @property
    def center(self):
        return self.x0 + self.dx / 2, self.y0 + self.dy / 2


@dataclass(frozen=True)
class GeometryUpdate:
    indicator: Transform
    confidence_box: Box


def update_geometry(scale: PiecewiseScale, indicator: Indicator, confidence: ConfidenceBand,
                    cross_extent: float) -> GeometryUpdate:
    """Indicator translation and confidence rectangle for the current value, against an already-built scale."""
    along = scale.forward(indicator.value)
    across = indicator.distance_percent / HUNDRED * cross_extent
    band_len = confidence.width_percent / HUNDRED * scale.effective_length
    band_start = scale.forward(confidence.center_value) - band_len / 2
    band_cross_start = (cross_extent - confidence.cross_dimension) / 2
    if scale.orientation == Orientation.HORIZONTAL:
        return GeometryUpdate(Transform(along, across),
                              Box(band_start, band_cross_start, band_len, confidence.cross_dimension))
    return GeometryUpdate(Transform(across, along),
                          Box(band_cross_start, band_start, confidence.cross_dimension, band_len))


# ----------------------6. Recompute Controller----------------------------


class RecomputeState(Enum):
    STABLE, REBUILDING = 'stable', 'rebuilding'


class ViewportSource:
    """Resize notifications for a drawing surface. Subscribers receive (width, height) on every report."""

    def __init__(self, width: int = 0, height: int = 0):
        self.viewport = Viewport(width, height)
        self.subscribers: list[Callable[[int, int], object]] = []

    def subscribe(self, callback: Callable[[int, int], object]) -> Callable[[], None]:
        self.subscribers.append(callback)

        def unsubscribe():
            if callback in self.subscribers:
                self.subscribers.remove(callback)
        return unsubscribe

    def resize(self, width: int, height: int):
        self.viewport = Viewport(width, height)
        for callback in list(self.subscribers):
            callback(width, height)


@dataclass(frozen=True)
class Frame:
    """Consistent snapshot of everything a renderer needs."""
    config: ScaleConfig
    viewport: Viewport
    scale: PiecewiseScale | None
    tick_set: TickSet | None
    ticks: tuple[Tick, ...]
    error: ConfigurationError | None
    indicator: Indicator
    confidence: ConfidenceBand
    geometry: GeometryUpdate | None


class GaugeController:
    """
    Keeps a gauge's scale, ticks and indicator geometry consistent with its inputs.
    Configuration and viewport changes go through rebuild(); value, confidence and cosmetic
    changes only go through update(), which re-uses the current scale.
    """

    def __init__(self, config: ScaleConfig, indicator: Indicator | None = None,
                 confidence: ConfidenceBand | None = None, viewport: Viewport | None = None,
                 on_frame: Callable[[Frame], object] | None = None):
        self.config = config
        self.indicator = indicator or Indicator()
        self.confidence = replace(confidence or ConfidenceBand(), center_value=self.indicator.value)
        self.viewport = Viewport()
        self.on_frame = on_frame
        self.state = RecomputeState.STABLE
        self.scale: PiecewiseScale | None = None
        self.tick_set: TickSet | None = None
        self.ticks: tuple[Tick, ...] = ()
        self.error: ConfigurationError | None = None
        self.geometry: GeometryUpdate | None = None
        self.rebuild_count = 0
        self.update_count = 0
        self._unsubscribe: Callable[[], None] | None = None
        if viewport:
            self.resize(viewport.width, viewport.height)

    def configure(self, config: ScaleConfig | None = None, **changes):
        """Replace the configuration (or some of its fields) and rebuild."""
        self.config = replace(config or self.config, **changes)
        return self.rebuild()

    def resize(self, width: int, height: int):
        viewport = Viewport(width, height)
        if viewport == self.viewport:
            return None
        self.viewport = viewport
        return self.rebuild()

    def rebuild(self):
        """Rebuild scale and ticks, then position the indicator once. Deferred until the viewport has a size."""
        if not self.viewport.is_laid_out():
            return None
        self.state = RecomputeState.REBUILDING
        try:
            orientation = Orientation.of(self.config.orientation)
            scale, error = build_scale(self.config, self.viewport.extent_along(orientation))
            tick_set = TickSet.for_config(self.config, scale)
            ticks = tuple(tick_set.ticks())
            self.scale, self.tick_set, self.ticks, self.error = scale, tick_set, ticks, error
            self.rebuild_count += 1
        finally:
            self.state = RecomputeState.STABLE
        self.update()
        return self.frame()

    def set_value(self, value: float, width_percent: float | None = None):
        self.indicator = replace(self.indicator, value=value)
        if width_percent is None:
            self.confidence = replace(self.confidence, center_value=value)
        else:
            self.confidence = replace(self.confidence, center_value=value, width_percent=width_percent)
        return self.update()

    def restyle(self, indicator: dict | None = None, confidence: dict | None = None):
        """Cosmetic changes (color, opacity, size, transition); never rebuilds."""
        if indicator:
            self.indicator = replace(self.indicator, **indicator)
        self.confidence = replace(self.confidence, **dict(confidence or {}, center_value=self.indicator.value))
        return self.update()

    def update(self):
        if self.scale is None:
            return None
        cross_extent = self.viewport.cross_extent(self.scale.orientation)
        self.geometry = update_geometry(self.scale, self.indicator, self.confidence, cross_extent)
        self.update_count += 1
        if self.on_frame:
            self.on_frame(self.frame())
        return self.geometry

    def frame(self) -> Frame:
        return Frame(self.config, self.viewport, self.scale, self.tick_set, self.ticks, self.error,
                     self.indicator, self.confidence, self.geometry)

    @property
    def is_attached(self):
        return self._unsubscribe is not None

    def attach(self, source: ViewportSource):
        self.detach()
        self._unsubscribe = source.subscribe(self.resize)
        try:
            self.resize(source.viewport.width, source.viewport.height)
        except BaseException:
            self.detach()
            raise

    def detach(self):
        if self._unsubscribe is not None:
            unsubscribe, self._unsubscribe = self._unsubscribe, None
            unsubscribe()

    @contextmanager
    def attached(self, source: ViewportSource):
        self.attach(source)
        try:
            yield self
        finally:
            self.detach()


class Simulation:
    """Random-walk value events for a controller, one per tick, at 1 to 10 Hz."""
    MIN_RATE_HZ, MAX_RATE_HZ = 1, 10

    def __init__(self, controller: GaugeController, rate_hz: float = 2, seed=None,
                 width_range: tuple[float, float] = (4., 16.)):
        if not self.MIN_RATE_HZ <= rate_hz <= self.MAX_RATE_HZ:
            raise ValueError(f'Simulation rate must be {self.MIN_RATE_HZ}-{self.MAX_RATE_HZ} Hz, got {rate_hz}')
        self.controller = controller
        self.rate_hz = rate_hz
        self.width_range = width_range
        self.rng = random.Random(seed)
        self.running = False

    @property
    def period_s(self):
        return 1 / self.rate_hz

    def next_value(self) -> float:
        lo, hi = self.controller.config.fallback_domain()
        value = self.controller.indicator.value + self.rng.gauss(0, (hi - lo) / 40)
        return max(lo, min(hi, value))

    def tick(self):
        return self.controller.set_value(self.next_value(), self.rng.uniform(*self.width_range))

    def run(self, num_ticks: int, realtime=False, sleep: Callable[[float], object] = time.sleep) -> int:
        """Fire up to num_ticks value events, each completing before the next; returns how many fired."""
        fired = 0
        self.running = True
        try:
            while self.running and fired < num_ticks:
                self.tick()
                fired += 1
                if realtime and self.running and fired < num_ticks:
                    sleep(self.period_s)
        finally:
            self.running = False
        return fired

    def stop(self):
        self.running = False


# ----------------------7. Drawing Functions----------------------------


DEBUG = False


@cache
def raster_font(font_size: int):
    return ImageFont.load_default(font_size)


class Out:
    def __init__(self, r):
        self.r = r
    def draw_box(self, x0, y0, dx, dy, col, width=1): pass
    def fill_rect(self, x0, y0, dx, dy, col, opacity=1.): pass
    def draw_line(self, x0, y0, x1, y1, col, width=1): pass
    def fill_polygon(self, points, col, opacity=1.): pass
    def draw_text(self, x_left, y_top, symbol: str, font_size: int, col): pass
    def draw_latex(self, x_left, y_top, latex: zm.Latex, col): pass


class RasterOut(Out):
    r: ImageDraw.ImageDraw = None
    image: Image.Image = None

    @classmethod
    def for_image(cls, i: Image.Image):
        out = cls(ImageDraw.Draw(i, 'RGBA'))
        out.image = i
        return out

    def draw_box(self, x0, y0, dx, dy, col, width=1):
        self.r.rectangle((x0, y0, x0 + dx, y0 + dy), outline=Color.to_pil(col), width=width)

    def fill_rect(self, x0, y0, dx, dy, col, opacity=1.):
        x1, y1 = x0 + dx, y0 + dy
        self.r.rectangle((min(x0, x1), min(y0, y1), max(x0, x1), max(y0, y1)), fill=Color.with_alpha(col, opacity))

    def draw_line(self, x0, y0, x1, y1, col, width=1):
        self.r.line((x0, y0, x1, y1), fill=Color.to_pil(col), width=width)

    def fill_polygon(self, points, col, opacity=1.):
        self.r.polygon(points, fill=Color.with_alpha(col, opacity))

    def draw_text(self, x_left, y_top, symbol: str, font_size: int, col):
        self.r.text((x_left, y_top), symbol, font=raster_font(font_size), fill=Color.to_pil(col))

    def draw_latex(self, x_left, y_top, latex: zm.Latex, col):
        import cairosvg
        png_bytes = cairosvg.svg2png(latex.svg())
        latex_img = Image.open(io.BytesIO(png_bytes)).convert('RGBA')
        self.image.paste(latex_img, (round(x_left), round(y_top)), latex_img)


class SVGOut(Out):
    r: svg.Drawing = None
    font_family = 'sans-serif'

    @classmethod
    def init(cls, debug=False):
        if debug: zm.config.debug.on()

    @classmethod
    def for_drawing(cls, i: svg.Drawing):
        return cls(i)

    @staticmethod
    def color_str(col):
        return Color.to_str(Color.to_pil(col))

    def draw_box(self, x0, y0, dx, dy, col, width=1):
        self.r.append(svg.Rectangle(x0, y0, dx, dy, fill_opacity=0, stroke=self.color_str(col), stroke_width=width))

    def fill_rect(self, x0, y0, dx, dy, col, opacity=1.):
        if dx < 0: x0, dx = x0 + dx, -dx
        if dy < 0: y0, dy = y0 + dy, -dy
        self.r.append(svg.Rectangle(x0, y0, dx, dy, fill=self.color_str(col), fill_opacity=opacity))

    def draw_line(self, x0, y0, x1, y1, col, width=1):
        self.r.append(svg.Line(x0, y0, x1, y1, stroke=self.color_str(col), stroke_width=width))

    def fill_polygon(self, points, col, opacity=1.):
        coords = [c for point in points for c in point]
        self.r.append(svg.Lines(*coords, close=True, fill=self.color_str(col), fill_opacity=opacity))

    def draw_text(self, x_left, y_top, symbol: str, font_size: int, col):
        self.r.append(svg.Text(symbol, font_size, x_left, y_top, font_family=self.font_family,
                               fill=self.color_str(col), text_anchor='start', dominant_baseline='hanging'))

    def draw_latex(self, x_left, y_top, latex: zm.Latex, col):
        latex_svg = latex.svgxml()
        latex_svg.set('x', str(x_left))
        latex_svg.set('y', str(y_top))
        latex_svg.set('fill', self.color_str(col))
        desc = latex_svg.makeelement('desc', {})
        desc.text = latex.latex
        latex_svg.append(desc)
        self.r.append(svg.Raw(ElementTree.tostring(latex_svg, encoding='unicode')))


@dataclass(frozen=True)
class Style:
    fg: Color = Color.BLACK
    """scale line, tick and numeral color"""
    bg: Color = Color.WHITE
    error_color: Color = Color.RED
    """color of the configuration error notice"""
    font_size: int = 18
    font_family: str = 'sans-serif'
    unsigned_labels: bool = False
    """label magnitudes only, as an instrument face does on both sides of zero"""
    legend: str | None = None
    """caption at the far end of the scale; LaTeX when it contains a backslash"""

    @classmethod
    def from_dict(cls, style_def: dict):
        style_def = dict(checked_keys(style_def, field_names(cls), 'style'))
        for key in ('fg', 'bg', 'error_color'):
            if key in style_def:
                style_def[key] = Color.from_str(style_def[key])
        return cls(**style_def)

    @staticmethod
    def sym_dims(symbol: str, font_size: int) -> WH:
        """Gets the size dimensions (width, height) of the input text"""
        (x1, y1, x2, y2) = raster_font(font_size).getbbox(symbol)
        return x2 - x1, y2 - y1

    def label_for(self, value: float) -> str:
        return Sym.num_sym(abs(value) if self.unsigned_labels else value)


@dataclass(frozen=True)
class Renderer:
    r: Out = None
    geometry: Geometry = None
    style: Style = None

    @classmethod
    def to_image(cls, i, g: Geometry, s: Style):
        out = None
        if isinstance(i, Image.Image):
            out = RasterOut.for_image(i)
        elif isinstance(i, svg.Drawing):
            out = SVGOut.for_drawing(i)
            out.font_family = s.font_family
        return cls(out, g, s)

    def place(self, orientation: Orientation, along: float, across: float) -> tuple[float, float]:
        return (along, across) if orientation == Orientation.HORIZONTAL else (across, along)

    def draw_tick(self, orientation: Orientation, along: float, across: float, tick: Tick, col):
        """Places an individual tick, hanging from the scale line toward the far cross edge"""
        g = self.geometry
        h, w = g.tick_h(tick.kind.h_mod), g.STT * tick.kind.stroke
        x0, y0 = self.place(orientation, along - w / 2, across)
        dx, dy = self.place(orientation, w, h)
        self.r.fill_rect(x0, y0, dx, dy, col)

    def draw_numeral(self, orientation: Orientation, along: float, across: float, value: float, col):
        symbol = self.style.label_for(value)
        font_size = self.style.font_size
        w, h = Style.sym_dims(symbol, font_size)
        if orientation == Orientation.HORIZONTAL:
            x_left, y_top = along - w / 2, across
        else:
            x_left, y_top = across, along - h / 2
        self.r.draw_text(round(x_left), round(y_top), symbol, font_size, col)

    def draw_legend(self, orientation: Orientation, along: float, across: float, col):
        legend = self.style.legend
        if not legend:
            return
        x, y = self.place(orientation, along, across)
        if '\\' in legend:
            latex = zm.Latex(legend, size=self.style.font_size, color=SVGOut.color_str(col), inline=True)
            self.r.draw_latex(round(x), round(y), latex, col)
        else:
            self.r.draw_text(round(x), round(y), legend, self.style.font_size, col)

    def draw_indicator(self, orientation: Orientation, transform: Transform, indicator: Indicator):
        """Triangular pointer with its tip at the indicator position, pointing at the scale line"""
        s = indicator.size
        x, y = transform.x, transform.y
        if orientation == Orientation.HORIZONTAL:
            points = [(x - s / 2, y - s), (x + s / 2, y - s), (x, y)]
        else:
            points = [(x - s, y - s / 2), (x - s, y + s / 2), (x, y)]
        self.r.fill_polygon(points, indicator.color, indicator.opacity)

    def draw_frame(self, frame: Frame):
        if frame.scale is None:
            return
        s, g, sc = self.style, self.geometry, frame.scale
        orientation = sc.orientation
        cross_extent = frame.viewport.cross_extent(orientation)
        line_at = g.line_pos(cross_extent)
        if DEBUG:
            start, end = sorted(sc.range())
            x0, y0 = self.place(orientation, start, 0)
            dx, dy = self.place(orientation, end - start, cross_extent)
            self.r.draw_box(x0, y0, dx, dy, Color.GREY)
        # Confidence band beneath the markings
        band, box = frame.confidence, frame.geometry.confidence_box
        self.r.fill_rect(box.x0, box.y0, box.dx, box.dy, band.color, band.opacity)
        # Scale line and ticks
        (x0, y0), (x1, y1) = (self.place(orientation, p, line_at) for p in sc.range())
        self.r.draw_line(x0, y0, x1, y1, s.fg, width=g.STT)
        numeral_at = line_at + g.tick_h(TickKind.MAJOR.h_mod) + g.label_gap
        for tick in frame.ticks:
            along = sc.forward(tick.value)
            self.draw_tick(orientation, along, line_at, tick, s.fg)
            if tick.kind.labeled:
                self.draw_numeral(orientation, along, numeral_at, tick.value, s.fg)
        self.draw_legend(orientation, min(sc.range()), numeral_at + s.font_size * 1.5, s.fg)
        self.draw_indicator(orientation, frame.geometry.indicator, frame.indicator)
        if frame.error:
            self.r.draw_text(g.label_gap, g.label_gap, str(frame.error), s.font_size, s.error_color)


# --------------------------8. Models----------------------------


GAUGE_TABLES = ('name', 'subtitle', 'scale', 'viewport', 'indicator', 'confidence', 'geometry', 'style')


@dataclass(frozen=True)
class Gauge:
    name: str
    config: ScaleConfig
    viewport: Viewport = Viewport(900, 200)
    indicator: Indicator = Indicator()
    confidence: ConfidenceBand = ConfidenceBand()
    geometry: Geometry = Geometry()
    style: Style = Style()
    subtitle: str | None = None

    @classmethod
    def from_dict(cls, gauge_def: dict):
        if 'scale' not in gauge_def:
            raise ValueError(f'Gauge definition has no [scale] table: {gauge_def.get("name")}')
        checked_keys(gauge_def, GAUGE_TABLES, 'gauge')
        return cls(name=gauge_def.get('name'), subtitle=gauge_def.get('subtitle'),
                   config=ScaleConfig.from_dict(gauge_def['scale']),
                   viewport=Viewport.from_dict(gauge_def.get('viewport', {'width': 900, 'height': 200})),
                   indicator=Indicator.from_dict(gauge_def.get('indicator', {})),
                   confidence=ConfidenceBand.from_dict(gauge_def.get('confidence', {})),
                   geometry=Geometry.from_dict(gauge_def.get('geometry', {})),
                   style=Style.from_dict(gauge_def.get('style', {})))

    @classmethod
    def from_toml_file(cls, toml_filename: str):
        return cls.from_dict(toml.load(toml_filename))

    example_dir_path = os.path.join(os.path.dirname(os.path.realpath(__file__)), 'examples')

    @classmethod
    def from_example(cls, example_name: str):
        return cls.from_toml_file(os.path.join(cls.example_dir_path, f'Gauge-{example_name}.toml'))

    @classmethod
    def load(cls, gauge_name):
        if preset := getattr(Gauges, gauge_name, None):
            return preset
        if os.path.exists(gauge_name):
            return cls.from_toml_file(gauge_name)
        if gauge_name in set(cls.example_names()):
            return cls.from_example(gauge_name)
        raise ValueError(f'Unrecognized gauge name: {gauge_name}')

    @classmethod
    def example_names(cls):
        yield from keys_of(Gauges)
        if os.path.isdir(cls.example_dir_path):
            for fn in sorted(os.listdir(cls.example_dir_path)):
                if match := re.match(r'Gauge-(.*)\.toml$', fn):
                    yield match.group(1)

    def controller(self, on_frame: Callable[[Frame], object] | None = None) -> GaugeController:
        return GaugeController(self.config, self.indicator, self.confidence, self.viewport, on_frame=on_frame)


VSIConfig = ScaleConfig()


class Gauges:
    VSI = Gauge('VSI', VSIConfig, subtitle='Vertical Speed ×1000 ft/min',
                style=Style(fg=Color.MARKING_WHITE, bg=Color.PANEL_BLACK, unsigned_labels=True,
                            legend='\\times 1000\\ ft/min'))
    VSIVertical = replace(VSI, name='VSIVertical', config=replace(VSIConfig, orientation=Orientation.VERTICAL),
                          viewport=Viewport(240, 900), indicator=Indicator(distance_percent=20))
    Thirds = Gauge('Thirds', ScaleConfig.thirds(10, 1, padding=40), subtitle='Fixed thirds')
    Weighted = Gauge('Weighted', ScaleConfig.make(breakpoints=(-6, -2, -1, 0, 1, 2, 6),
                                                  weights=(0.12, 0.13, 0.25, 0.25, 0.13, 0.12), padding=40,
                                                  intermediate_ticks=(-4, -1.5, -0.5, 0.5, 1.5, 4),
                                                  minor_ticks=(-5, -3, -0.25, 0.25, 3, 5)),
                     subtitle='Explicit weighted ticks')


# ----------------------9. Commands------------------------------------------


class OutFormat(Enum):
    PNG, SVG = 'png', 'svg'


def image_for_rendering(gauge: Gauge, out_format: OutFormat, viewport: Viewport | None = None):
    vp = viewport or gauge.viewport
    if out_format == OutFormat.PNG:
        return Image.new('RGB', (int(vp.width), int(vp.height)), Color.to_pil(gauge.style.bg))
    elif out_format == OutFormat.SVG:
        drawing = svg.Drawing(int(vp.width), int(vp.height), id_prefix='def_')
        drawing.append(svg.Rectangle(0, 0, vp.width, vp.height, fill=SVGOut.color_str(gauge.style.bg)))
        return drawing


def render_gauge(gauge: Gauge, out_format: OutFormat, frame: Frame | None = None):
    if frame is None:
        frame = gauge.controller().frame()
    gauge_img = image_for_rendering(gauge, out_format, frame.viewport)
    Renderer.to_image(gauge_img, gauge.geometry, gauge.style).draw_frame(frame)
    return gauge_img


def save_image(img_to_save, basename: str, output_suffix=None):
    output_filename = f"{basename}{'.' + output_suffix if output_suffix else ''}"
    output_full_path = os.path.abspath(output_filename)
    if isinstance(img_to_save, Image.Image):
        output_full_path += '.png'
        img_to_save.save(output_full_path, 'PNG')
    elif isinstance(img_to_save, svg.Drawing):
        output_full_path += '.svg'
        img_to_save.save_svg(output_full_path)
    print(f'Result saved to: file://{output_full_path}')


def main():
    """CLI processor for rendering gauges, optionally after simulated value updates."""
    import argparse
    args_parser = argparse.ArgumentParser()
    args_parser.add_argument('--gauge',
                             choices=list(Gauge.example_names()),
                             default='VSI',
                             help='Which gauge model')
    args_parser.add_argument('--format',
                             default=OutFormat.PNG.value,
                             choices=[f.value for f in OutFormat],
                             help='Output format')
    args_parser.add_argument('--value', type=float, default=None,
                             help='Indicated value')
    args_parser.add_argument('--confidence', type=float, default=None,
                             help='Confidence band width as a percentage of the scale length')
    args_parser.add_argument('--simulate', type=int, default=0, metavar='TICKS',
                             help='Number of simulated value updates before rendering')
    args_parser.add_argument('--rate', type=float, default=2,
                             help='Simulation rate in Hz (1-10)')
    args_parser.add_argument('--realtime',
                             action='store_true',
                             help='Pace simulated updates at the simulation rate')
    args_parser.add_argument('--seed', type=int, default=None,
                             help='Simulation random seed')
    args_parser.add_argument('--suffix',
                             help='Output filename suffix for variations')
    args_parser.add_argument('--debug',
                             action='store_true',
                             help='Render debug indications (bounding boxes)')
    cli_args = args_parser.parse_args()
    out_format: OutFormat = next(f for f in OutFormat if f.value == cli_args.format)
    gauge = Gauge.load(cli_args.gauge)
    global DEBUG
    DEBUG = cli_args.debug
    SVGOut.init(debug=DEBUG)

    start_time = time.process_time()

    controller = gauge.controller()
    if controller.error:
        print(f'Configuration error, using a linear scale: {controller.error}')
    if cli_args.value is not None or cli_args.confidence is not None:
        value = controller.indicator.value if cli_args.value is None else cli_args.value
        controller.set_value(value, cli_args.confidence)
    if cli_args.simulate:
        simulation = Simulation(controller, rate_hz=cli_args.rate, seed=cli_args.seed)
        fired = simulation.run(cli_args.simulate, realtime=cli_args.realtime)
        print(f'Simulated {fired} updates ({controller.rebuild_count} rebuilds),'
              f' final value: {round(controller.indicator.value, 3)}')

    gauge_img = render_gauge(gauge, out_format, controller.frame())
    print(f'Gauge render finished at: {round(time.process_time() - start_time, 3)} seconds')
    save_image(gauge_img, f'{gauge.name}.Gauge', cli_args.suffix)

    print(f'Program finished at: {round(time.process_time() - start_time, 3)} seconds')


if __name__ == '__main__':
    main()
