"""Render an item's stored content into the exact text expected on disk.

Most (provider, item type, path) combinations pass content through. Skills
written to the canonical `SKILL.md` of a provider that needs a manifest header
get a fresh `name`/`description` header synthesized from the content.
"""

from __future__ import annotations

import re
from pathlib import PurePosixPath

from .registry import SKILL_FILENAME, ProviderSpec


DEFAULT_DESCRIPTION_MAX_LENGTH = 200

_HEADER_OPEN = "---\n"
_HEADER_CLOSE = "\n---\n"
_HEADING_RE = re.compile(r"^#+\s*")
_SEP_RE = re.compile(r"[-_]+")


def strip_leading_header(content: str) -> str:
    normalized = content.replace("\r\n", "\n")
    if not normalized.startswith(_HEADER_OPEN):
        return normalized
    end = normalized.find(_HEADER_CLOSE, len(_HEADER_OPEN))
    if end == -1:
        return normalized
    return normalized[end + len(_HEADER_CLOSE):]


def title_from_slug(slug: str) -> str:
    words = _SEP_RE.sub(" ", slug).split()
    if not words:
        return "Skill"
    return " ".join(w[:1].upper() + w[1:] for w in words)


def _escape_double_quoted(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _cap(value: str, max_length: int) -> str:
    if len(value) <= max_length:
        return value
    return value[: max_length - 3].rstrip() + "..."


def describe(body: str, slug: str, *, max_length: int = DEFAULT_DESCRIPTION_MAX_LENGTH) -> str:
    first = next((line for line in body.split("\n") if line.strip()), "")
    heading = _HEADING_RE.sub("", first.strip()).strip()
    return _cap(heading or title_from_slug(slug), max_length)


def needs_skill_header(spec: ProviderSpec, item_type: str, target_path: str) -> bool:
    if item_type != "skill" or not spec.skill_header:
        return False
    p = PurePosixPath(target_path.replace("\\", "/"))
    return p.name == SKILL_FILENAME and len(p.parts) > 1


def render(
    spec: ProviderSpec,
    item_type: str,
    slug: str,
    target_path: str,
    content: str,
    *,
    description_max_length: int = DEFAULT_DESCRIPTION_MAX_LENGTH,
) -> str:
    if not needs_skill_header(spec, item_type, target_path):
        return content

    body = strip_leading_header(content).lstrip("\n")
    description = describe(body, slug, max_length=description_max_length)
    header = "\n".join(
        [
            "---",
            f"name: {slug}",
            f'description: "{_escape_double_quoted(description)}"',
            "---",
            "",
        ]
    )
    return f"{header}\n{body}" if body else f"{header}\n"
