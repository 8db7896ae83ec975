"""Compile notification markdown docs into the runtime JSON catalog.

Each `catalog_src/notifications/<key>.md` file starts with a YAML frontmatter
block holding one catalog entry. Docs-only keys (title, description) are
dropped during validation.
"""

import json
from pathlib import Path
from typing import Any

import yaml

from totlpush.catalog.catalog import DEFAULT_CATALOG_PATH, CatalogEntry
from totlpush.common.logging import logger


FRONTMATTER_DELIMITER = "---"


class CatalogBuildError(ValueError):
    """Raised when a source document cannot be turned into a catalog entry."""


def parse_frontmatter(text: str) -> dict[str, Any]:
    """Return the YAML mapping between the leading `---` delimiters."""

    lines = text.splitlines()
    if not lines or lines[0].strip() != FRONTMATTER_DELIMITER:
        raise CatalogBuildError("missing frontmatter opening delimiter")
    for index in range(1, len(lines)):
        if lines[index].strip() == FRONTMATTER_DELIMITER:
            data = yaml.safe_load("\n".join(lines[1:index])) or {}
            if not isinstance(data, dict):
                raise CatalogBuildError("frontmatter is not a mapping")
            return data
    raise CatalogBuildError("missing frontmatter closing delimiter")


def load_entry(path: Path) -> CatalogEntry:
    try:
        data = parse_frontmatter(path.read_text(encoding="utf-8"))
    except CatalogBuildError as exc:
        raise CatalogBuildError(f"{path.name}: {exc}") from exc
    data.setdefault("notification_key", path.stem)
    if data["notification_key"] != path.stem:
        raise CatalogBuildError(f"{path.name}: notification_key {data['notification_key']!r} does not match file name")
    return CatalogEntry.model_validate(data)


def build_catalog(source_dir: str | Path) -> dict[str, dict[str, Any]]:
    """Validate every source doc and return the catalog mapping sorted by key."""

    source = Path(source_dir)
    paths = sorted(source.glob("*.md"))
    if not paths:
        raise CatalogBuildError(f"no notification docs found in {source}")
    catalog: dict[str, dict[str, Any]] = {}
    for path in paths:
        entry = load_entry(path)
        catalog[entry.notification_key] = entry.model_dump(mode="json")
    return catalog


def write_catalog(catalog: dict[str, dict[str, Any]], output: str | Path = DEFAULT_CATALOG_PATH) -> Path:
    target = Path(output)
    target.write_text(json.dumps(catalog, indent=2) + "\n", encoding="utf-8")
    logger.info("catalog_written path=%s entries=%s", target, len(catalog))
    return target
