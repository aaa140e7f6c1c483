import re
from dataclasses import dataclass
from functools import lru_cache
from typing import NamedTuple

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured


class Resolution(NamedTuple):
    width: int
    height: int

    def __str__(self):
        return f"{self.width}x{self.height}"

    @classmethod
    def parse(cls, value: str) -> "Resolution":
        m = re.fullmatch(r"\s*(\d+)\s*[xX]\s*(\d+)\s*", value)
        if not m:
            raise ValueError(f"Invalid resolution {value!r}; expected WIDTHxHEIGHT")
        width, height = int(m.group(1)), int(m.group(2))
        if width <= 0 or height <= 0:
            raise ValueError(f"Invalid resolution {value!r}")
        return cls(width, height)


@dataclass(frozen=True)
class RenditionSpec:
    name: str
    resolution: Resolution
    bitrate: int  # bits/sec

    @property
    def ffmpeg_bitrate(self) -> str:
        if self.bitrate % 1000 == 0:
            return f"{self.bitrate // 1000}k"
        return str(self.bitrate)


DEFAULT_LADDER = (
    RenditionSpec("360p", Resolution(640, 360), 800_000),
    RenditionSpec("720p", Resolution(1280, 720), 2_500_000),
    RenditionSpec("1080p", Resolution(1920, 1080), 5_000_000),
)

_MULTIPLIERS = {"": 1, "k": 1_000, "m": 1_000_000}


def parse_bitrate(value: str) -> int:
    """'800k' -> 800000, '5M' -> 5000000, '640000' -> 640000."""
    m = re.fullmatch(r"\s*(\d+)\s*([kKmM]?)\s*", str(value))
    if not m:
        raise ValueError(f"Invalid bitrate {value!r}")
    bits = int(m.group(1)) * _MULTIPLIERS[m.group(2).lower()]
    if bits <= 0:
        raise ValueError(f"Bitrate must be positive, got {value!r}")
    return bits


def parse_ladder(value: str) -> tuple[RenditionSpec, ...]:
    """
    Parse "name:WIDTHxHEIGHT:bitrate,..." into an ordered ladder.
    An empty or malformed ladder is a configuration error.
    """
    entries = [e.strip() for e in (value or "").split(",") if e.strip()]
    if not entries:
        raise ImproperlyConfigured("TRANSCODER_LADDER must define at least one rendition")

    ladder = []
    seen = set()
    for entry in entries:
        parts = entry.split(":")
        if len(parts) != 3:
            raise ImproperlyConfigured(f"Invalid ladder entry {entry!r}; expected name:WIDTHxHEIGHT:bitrate")
        name = parts[0].strip()
        if not name or "/" in name:
            raise ImproperlyConfigured(f"Invalid rendition name in {entry!r}")
        if name in seen:
            raise ImproperlyConfigured(f"Duplicate rendition name {name!r} in TRANSCODER_LADDER")
        try:
            spec = RenditionSpec(name, Resolution.parse(parts[1]), parse_bitrate(parts[2]))
        except ValueError as exc:
            raise ImproperlyConfigured(f"Invalid ladder entry {entry!r}: {exc}") from exc
        seen.add(name)
        ladder.append(spec)
    return tuple(ladder)


@lru_cache(maxsize=1)
def get_ladder() -> tuple[RenditionSpec, ...]:
    """The configured ladder, parsed once per process and shared read-only."""
    return parse_ladder(settings.TRANSCODER_LADDER)
