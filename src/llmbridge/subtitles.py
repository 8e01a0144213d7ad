"""Timed transcripts parsed from WebVTT, as returned by Whisper."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
import re

_TIMING = re.compile(
    r"^(?P<start>(?:\d+:)?\d{2}:\d{2}[.,]\d{3})\s+-->\s+"
    r"(?P<end>(?:\d+:)?\d{2}:\d{2}[.,]\d{3})"
)


@dataclass(frozen=True)
class Subtitle:
    """One cue: the text spoken between ``start`` and ``end``."""

    start: timedelta
    end: timedelta
    text: str


@dataclass(frozen=True)
class Transcript:
    cues: tuple[Subtitle, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.cues

    def plain_text(self) -> str:
        return " ".join(cue.text for cue in self.cues if cue.text)

    def format_for_output(self) -> str:
        """One ``[HH:MM:SS] text`` line per cue."""
        return "\n".join(f"[{_clock(cue.start)}] {cue.text}" for cue in self.cues)


def _parse_timestamp(value: str) -> timedelta:
    parts = value.replace(",", ".").split(":")
    hours = int(parts[0]) if len(parts) == 3 else 0
    minutes, seconds = int(parts[-2]), float(parts[-1])
    return timedelta(hours=hours, minutes=minutes, seconds=seconds)


def _clock(value: timedelta) -> str:
    total = int(value.total_seconds())
    return f"{total // 3600:02d}:{total % 3600 // 60:02d}:{total % 60:02d}"


def parse_vtt(document: str) -> Transcript:
    """Parse a WebVTT document into cues.

    Cue identifiers, cue settings and ``NOTE``/``STYLE`` blocks are skipped.

    Raises:
        ValueError: If *document* does not start with the ``WEBVTT`` header.
    """
    text = document.lstrip("\ufeff")
    if not text.startswith("WEBVTT"):
        raise ValueError("missing WEBVTT header")

    cues: list[Subtitle] = []
    blocks = re.split(r"\r?\n\s*\r?\n", text.strip())
    for block in blocks[1:]:
        lines = block.splitlines()
        if not lines or lines[0].startswith(("NOTE", "STYLE", "REGION")):
            continue
        for offset, line in enumerate(lines[:2]):
            match = _TIMING.match(line.strip())
            if match is None:
                continue
            cues.append(
                Subtitle(
                    start=_parse_timestamp(match["start"]),
                    end=_parse_timestamp(match["end"]),
                    text="\n".join(lines[offset + 1 :]).strip(),
                )
            )
            break
    return Transcript(tuple(cues))
