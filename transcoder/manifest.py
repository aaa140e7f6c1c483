from dataclasses import dataclass
from typing import Iterable

from .ladder import Resolution

MASTER_MANIFEST_NAME = "master.m3u8"
SUB_MANIFEST_NAME = "index.m3u8"


@dataclass(frozen=True)
class RenditionResult:
    name: str
    relative_manifest_path: str  # e.g. "360p/index.m3u8", relative to the master
    bitrate_bits: int
    resolution: Resolution
    codec_tags: str


def _sort_key(result: RenditionResult):
    return (result.bitrate_bits, result.name, result.relative_manifest_path)


def build_master_manifest(results: Iterable[RenditionResult], target_duration: int = 10) -> str:
    """
    Master playlist listing every rendition, lowest bandwidth first so players
    probing the list start cheap. Same results in any order give the same text.
    """
    ordered = sorted(results, key=_sort_key)
    if not ordered:
        raise ValueError("Cannot build a master manifest without renditions")

    lines = [
        "#EXTM3U",
        "#EXT-X-VERSION:3",
        f"#EXT-X-TARGETDURATION:{int(target_duration)}",
    ]
    for r in ordered:
        lines.append(
            f'#EXT-X-STREAM-INF:BANDWIDTH={r.bitrate_bits},RESOLUTION={r.resolution},CODECS="{r.codec_tags}"'
        )
        lines.append(r.relative_manifest_path)
    return "\n".join(lines) + "\n"
