"""Subject prompt templates for Cleo lesson plans."""
from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, Iterable, Mapping, Tuple

_PROMPT_DIR = Path(__file__).resolve().parent

DEFAULT_TEMPLATE_ID = "general"


@dataclass(frozen=True)
class SubjectTemplate:
    """Subject-specific guidance appended to the lesson plan system prompt."""

    id: str
    label: str
    prompt_version: str
    keywords: Tuple[str, ...]
    system_guidance: str

    def match_length(self, subject: str) -> int:
        """Length of the longest keyword found in ``subject``; 0 when none match."""
        lowered = subject.lower()
        return max((len(keyword) for keyword in self.keywords if keyword in lowered), default=0)


def _load_template(path: Path) -> SubjectTemplate:
    payload = json.loads(path.read_text(encoding="utf-8"))
    required = {"id", "label", "prompt_version", "keywords", "system_guidance"}
    missing = sorted(required - payload.keys())
    if missing:
        raise ValueError(f"Prompt file {path.name} missing keys: {', '.join(missing)}")
    if not isinstance(payload["keywords"], list):
        raise ValueError(f"Prompt file {path.name}: keywords must be a list")
    return SubjectTemplate(
        id=str(payload["id"]),
        label=str(payload["label"]),
        prompt_version=str(payload["prompt_version"]),
        keywords=tuple(str(keyword).lower() for keyword in payload["keywords"]),
        system_guidance=str(payload["system_guidance"]),
    )


def _iter_prompt_files(directory: Path) -> Iterable[Path]:
    for path in sorted(directory.glob("*.json")):
        if path.is_file():
            yield path


@lru_cache(maxsize=1)
def load_templates(directory: Path | None = None) -> Mapping[str, SubjectTemplate]:
    base_dir = Path(directory) if directory else _PROMPT_DIR
    templates: Dict[str, SubjectTemplate] = {}
    for file_path in _iter_prompt_files(base_dir):
        template = _load_template(file_path)
        if template.id in templates:
            raise ValueError(f"Duplicate lesson plan template detected: {template.id}")
        templates[template.id] = template
    if DEFAULT_TEMPLATE_ID not in templates:
        raise RuntimeError(f"No '{DEFAULT_TEMPLATE_ID}' lesson plan template found in {base_dir}")
    return templates


def get_template(subject: str | None) -> SubjectTemplate:
    """Template whose keywords best match ``subject``, falling back to general."""
    templates = load_templates()
    best = templates[DEFAULT_TEMPLATE_ID]
    best_length = 0
    for template in templates.values():
        length = template.match_length(subject or "")
        if length > best_length:
            best, best_length = template, length
    return best


__all__ = ["SubjectTemplate", "load_templates", "get_template", "DEFAULT_TEMPLATE_ID"]
