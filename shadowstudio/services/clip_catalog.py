"""Clip catalog: the read-only source of ``ClipRef`` records.

The render core only needs ``get``; the in-memory implementation can be
seeded from a JSON file (a list of clip objects, or ``{"clips": [...]}``).
"""

import json
import logging
import threading
from pathlib import Path
from typing import Callable, Protocol

from shadowstudio.exceptions import ClipNotFoundError
from shadowstudio.render.template import ClipRef

logger = logging.getLogger(__name__)


class ClipCatalog(Protocol):
    def get(self, clip_id: str) -> ClipRef: ...

    def get_many(self, clip_ids: list[str]) -> list[ClipRef]: ...


class InMemoryClipCatalog:
    """Dictionary-backed catalog."""

    def __init__(self, clips: list[ClipRef] | None = None) -> None:
        self._clips: dict[str, ClipRef] = {}
        self._lock = threading.Lock()
        for clip in clips or []:
            self.add(clip)

    def __len__(self) -> int:
        return len(self._clips)

    def add(self, clip: ClipRef) -> None:
        with self._lock:
            self._clips[clip.id] = clip

    def get(self, clip_id: str) -> ClipRef:
        with self._lock:
            clip = self._clips.get(clip_id)
        if clip is None:
            raise ClipNotFoundError(clip_id)
        return clip

    def get_many(self, clip_ids: list[str]) -> list[ClipRef]:
        """Resolve ids in order; the first unknown id raises."""
        return [self.get(clip_id) for clip_id in clip_ids]

    @classmethod
    def from_json_file(
        cls, path: str | Path, audio_lookup: Callable[[str], bool] | None = None
    ) -> "InMemoryClipCatalog":
        """Load clips from JSON.

        Entries without ``has_audio`` are checked with ``audio_lookup`` when one
        is given; a clip whose media cannot be inspected is assumed to have audio.
        """
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if isinstance(data, dict):
            data = data.get("clips", [])
        clips = []
        for item in data:
            if audio_lookup is not None and "has_audio" not in item:
                try:
                    item = {**item, "has_audio": audio_lookup(item["media_path"])}
                except RuntimeError as e:
                    logger.warning(f"[CATALOG] Could not inspect audio of clip {item.get('id')}: {e}")
            clips.append(ClipRef.from_dict(item))
        catalog = cls(clips)
        logger.info(f"[CATALOG] Loaded {len(catalog)} clips from {path}")
        return catalog
