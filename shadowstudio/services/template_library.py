"""Template library: built-in presets plus saved custom templates.

Custom templates are stored as ``<template_id>.json`` files (``to_dict``
output) in one directory and loaded into memory at startup. Presets are
read-only; a saved template may not reuse a preset id.
"""

import json
import logging
import os
import re
import threading
from pathlib import Path
from typing import Optional

from shadowstudio.exceptions import (
    InvalidTemplateError,
    TemplateIdTakenError,
    TemplateNotFoundError,
)
from shadowstudio.render.template import TEMPLATE_PRESETS, RenderTemplate

logger = logging.getLogger(__name__)

_TEMPLATE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,100}$")


class TemplateLibrary:
    """Presets and custom templates, optionally persisted to ``directory``."""

    def __init__(self, directory: Optional[str] = None) -> None:
        self.directory = Path(directory) if directory else None
        self._custom: dict[str, RenderTemplate] = {}
        self._lock = threading.Lock()
        if self.directory is not None:
            self._load()

    def _load(self) -> None:
        if not self.directory.is_dir():
            return
        for path in sorted(self.directory.glob("*.json")):
            try:
                template = RenderTemplate.from_dict(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"[TEMPLATE] Skipping unreadable template {path.name}: {e}")
                continue
            if template.id in TEMPLATE_PRESETS:
                logger.warning(f"[TEMPLATE] Skipping {path.name}: id shadows a preset")
                continue
            self._custom[template.id] = template
        logger.info(f"[TEMPLATE] Loaded {len(self._custom)} saved templates from {self.directory}")

    def _path_for(self, template_id: str) -> Path:
        return self.directory / f"{template_id}.json"

    def get(self, template_id: str) -> RenderTemplate:
        """Preset or saved template by id.

        Raises:
            TemplateNotFoundError: unknown id
        """
        preset = TEMPLATE_PRESETS.get(template_id)
        if preset is not None:
            return preset
        with self._lock:
            template = self._custom.get(template_id)
        if template is None:
            raise TemplateNotFoundError(template_id)
        return template

    def list_templates(self, category: Optional[str] = None) -> list[RenderTemplate]:
        """Presets first, then saved templates by id."""
        with self._lock:
            custom = [self._custom[key] for key in sorted(self._custom)]
        templates = list(TEMPLATE_PRESETS.values()) + custom
        if category:
            templates = [t for t in templates if t.category == category]
        return templates

    def is_preset(self, template_id: str) -> bool:
        return template_id in TEMPLATE_PRESETS

    def save(self, template: RenderTemplate) -> RenderTemplate:
        """Validate and store a custom template, replacing one with the same id.

        Raises:
            InvalidTemplateError: bad id or failed validation
            TemplateIdTakenError: id belongs to a preset
        """
        if not isinstance(template.id, str) or not _TEMPLATE_ID_RE.match(template.id):
            raise InvalidTemplateError(
                [f"id must be 1-100 letters, digits, '-' or '_', got {template.id!r}"]
            )
        if template.id in TEMPLATE_PRESETS:
            raise TemplateIdTakenError(template.id)
        errors = template.validate()
        if errors:
            raise InvalidTemplateError(errors)

        with self._lock:
            if self.directory is not None:
                self.directory.mkdir(parents=True, exist_ok=True)
                path = self._path_for(template.id)
                tmp_path = path.with_suffix(".json.tmp")
                tmp_path.write_text(
                    json.dumps(template.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8"
                )
                os.replace(tmp_path, path)
            self._custom[template.id] = template
        logger.info(f"[TEMPLATE] Saved template {template.id}")
        return template

    def delete(self, template_id: str) -> None:
        """Remove a saved template.

        Raises:
            TemplateIdTakenError: presets cannot be deleted
            TemplateNotFoundError: unknown id
        """
        if template_id in TEMPLATE_PRESETS:
            raise TemplateIdTakenError(template_id)
        with self._lock:
            if self._custom.pop(template_id, None) is None:
                raise TemplateNotFoundError(template_id)
            if self.directory is not None:
                self._path_for(template_id).unlink(missing_ok=True)
        logger.info(f"[TEMPLATE] Deleted template {template_id}")
