"""Track registry, alias matching and tiered track inference for form rows."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Sequence

from .models import CustomTrack

MAX_TRACK_KEY_LENGTH = 32

EXPLICIT_SELECTION_HINTS = ("what are you applying for",)
PRIMARY_HEADER_HINTS = ("applying for", "apply for", "application for", "track", "position", "role")
SECONDARY_HEADER_HINTS = ("department", "team", "type")


@dataclass(frozen=True)
class Track:
    key: str
    label: str
    aliases: tuple[str, ...] = field(default_factory=tuple)


DEFAULT_BASE_TRACKS: tuple[Track, ...] = (
    Track(key="tester", label="Tester", aliases=("tester", "qa")),
    Track(key="builder", label="Builder", aliases=("builder", "dev")),
    Track(key="cmd", label="CMD", aliases=("cmd", "command")),
)


def normalize_track_alias(value: str | None) -> str:
    return re.sub(r"\s+", " ", str(value or "").strip().lower())


def parse_track_alias_input(value) -> List[str]:
    """Split comma/semicolon/newline separated alias input into normalised aliases."""

    if isinstance(value, (list, tuple)):
        return [alias for item in value for alias in parse_track_alias_input(item)]
    raw = str(value or "").strip()
    if not raw:
        return []
    return [alias for alias in (normalize_track_alias(part) for part in re.split(r"[,;\n]+", raw)) if alias]


def normalize_track_storage_key(value: str | None) -> str:
    cleaned = re.sub(r"[^a-z0-9]+", "_", str(value or "").strip().lower()).strip("_")
    return cleaned[:MAX_TRACK_KEY_LENGTH]


def default_track_label(track_key: str) -> str:
    words = [part for part in re.split(r"[_\-\s]+", track_key or "") if part]
    if not words:
        return "Track"
    return " ".join(word[:1].upper() + word[1:] for word in words)


class TrackRegistry:
    """Base tracks plus operator-defined custom tracks."""

    def __init__(
        self,
        base_tracks: Sequence[Track] = DEFAULT_BASE_TRACKS,
        custom_tracks: Iterable[CustomTrack] | None = None,
        *,
        default_track_key: str = "tester",
    ) -> None:
        self._base = list(base_tracks)
        self._custom: List[Track] = []
        self.default_track_key = default_track_key
        if custom_tracks:
            self.set_custom_tracks(custom_tracks)

    @classmethod
    def from_custom_tracks(
        cls,
        custom_tracks: Iterable[CustomTrack] | None,
        *,
        default_track_key: str = "tester",
        base_tracks: Sequence[Track] = DEFAULT_BASE_TRACKS,
    ) -> "TrackRegistry":
        return cls(base_tracks, custom_tracks, default_track_key=default_track_key)

    @property
    def tracks(self) -> List[Track]:
        return [*self._base, *self._custom]

    @property
    def track_keys(self) -> List[str]:
        return [track.key for track in self.tracks]

    def _alias_lookup(self, tracks: Iterable[Track]) -> Dict[str, str]:
        lookup: Dict[str, str] = {}
        for track in tracks:
            for alias in (track.key, *track.aliases):
                normalised = normalize_track_alias(alias)
                if normalised and normalised not in lookup:
                    lookup[normalised] = track.key
        return lookup

    def set_custom_tracks(self, raw_tracks: Iterable[CustomTrack | dict]) -> List[CustomTrack]:
        """Replace the custom track list, dropping keys or aliases owned by other tracks."""

        base_keys = {track.key for track in self._base}
        lookup = self._alias_lookup(self._base)
        accepted: List[Track] = []

        for raw in raw_tracks:
            data = raw.model_dump() if isinstance(raw, CustomTrack) else dict(raw or {})
            key = normalize_track_storage_key(data.get("key") or data.get("label") or data.get("name"))
            if not key or key in base_keys or any(track.key == key for track in accepted):
                continue
            owner = lookup.get(key)
            if owner and owner != key:
                continue

            label = str(data.get("label") or data.get("name") or "").strip() or default_track_label(key)
            candidates = [
                *parse_track_alias_input(data.get("aliases")),
                normalize_track_alias(key),
                normalize_track_alias(key.replace("_", " ")),
                normalize_track_alias(label),
            ]
            aliases: List[str] = []
            for alias in candidates:
                alias_owner = lookup.get(alias)
                if alias and alias not in aliases and (alias_owner is None or alias_owner == key):
                    aliases.append(alias)
            if key not in aliases:
                aliases.append(key)

            accepted.append(Track(key=key, label=label, aliases=tuple(aliases)))
            for alias in aliases:
                lookup[alias] = key

        accepted.sort(key=lambda track: track.label.lower())
        self._custom = accepted
        return [CustomTrack(key=track.key, label=track.label, aliases=list(track.aliases)) for track in accepted]

    def normalize_track_key(self, value: str | None) -> str | None:
        normalised = normalize_track_alias(value)
        if not normalised:
            return None
        for track in self.tracks:
            if track.key == normalised or normalised in track.aliases:
                return track.key
        return None

    def normalize_track_keys(self, values, *, fallback: Sequence[str] = ()) -> List[str]:
        """Return known, de-duplicated track keys preserving first-seen order."""

        if isinstance(values, str) or values is None:
            values = [values] if values else []
        keys: List[str] = []
        for value in values:
            key = self.normalize_track_key(value)
            if key and key not in keys:
                keys.append(key)
        if keys:
            return keys
        return [key for key in dict.fromkeys(fallback) if key]

    def label(self, track_key: str | None) -> str:
        key = self.normalize_track_key(track_key) or track_key or self.default_track_key
        for track in self.tracks:
            if track.key == key:
                return track.label
        return default_track_label(str(key))

    def detect_tracks(self, text: str | None) -> List[str]:
        value = str(text or "").lower()
        if not value.strip():
            return []
        matched: List[str] = []
        for track in self.tracks:
            for alias in track.aliases:
                if re.search(rf"\b{re.escape(alias)}\b", value) and track.key not in matched:
                    matched.append(track.key)
        return matched

    def application_id_prefix(self, track_key: str | None) -> str:
        cleaned = re.sub(r"[^A-Za-z0-9]+", "", self.label(track_key)).upper()
        return cleaned or "APP"


def _matches_from_headers(
    registry: TrackRegistry,
    headers: Sequence[str],
    row: Sequence[str],
    hints: Sequence[str],
) -> List[str]:
    matches: List[str] = []
    for index, header in enumerate(headers):
        lowered = str(header or "").lower()
        if not any(hint in lowered for hint in hints):
            continue
        value = str(row[index] if index < len(row) else "").strip()
        if not value:
            continue
        for key in registry.detect_tracks(value):
            if key not in matches:
                matches.append(key)
    return matches


def infer_application_tracks(
    registry: TrackRegistry,
    headers: Sequence[str],
    row: Sequence[str],
) -> List[str]:
    """Infer target tracks for a form row, most specific column first."""

    for hints in (EXPLICIT_SELECTION_HINTS, PRIMARY_HEADER_HINTS, SECONDARY_HEADER_HINTS):
        matches = _matches_from_headers(registry, headers, row, hints)
        if matches:
            return matches

    found: List[str] = []
    for cell in row:
        for key in registry.detect_tracks(cell):
            if key not in found:
                found.append(key)
    return found or [registry.default_track_key]
