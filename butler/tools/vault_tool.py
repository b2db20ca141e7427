"""Knowledge vault tools: markdown pages grouped into named vaults."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any

from butler.models import ToolContext
from butler.tools.base import Tool

_MAX_SLUG_LENGTH = 60
_INDEX_PAGE = "index"


def _slugify(name: str) -> str:
    return name.strip().lower().replace(" ", "-").replace("/", "-").replace("..", "-")[:_MAX_SLUG_LENGTH]


def _page_path(vault_root: Path, vault: str, page: str) -> Path:
    return vault_root / _slugify(vault) / f"{_slugify(page) or _INDEX_PAGE}.md"


class SaveNoteTool(Tool):
    """Append a note to a page in a knowledge vault."""

    name = "save_note"
    description = (
        "Save knowledge to a vault (e.g. 'health', 'house', 'travel'). Notes are appended "
        "to the vault's index page unless another page is named. Use this when the user "
        "shares durable information about a topic."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "vault": {"type": "string", "description": "Vault name."},
            "content": {"type": "string", "description": "The note content."},
            "page": {"type": "string", "description": "Page name (default 'index')."},
        },
        "required": ["vault", "content"],
        "additionalProperties": False,
    }

    def __init__(self, vault_root: Path) -> None:
        self._vault_root = vault_root

    async def run(self, context: ToolContext, **kwargs: Any) -> dict[str, Any]:
        vault: str = kwargs["vault"]
        page: str = kwargs.get("page") or _INDEX_PAGE
        if not _slugify(vault):
            return {"error": "Vault name must not be empty."}

        filepath = _page_path(self._vault_root, vault, page)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        is_new = not filepath.exists()
        with open(filepath, "a") as f:
            if is_new:
                f.write(f"# {vault} / {page}\n\n")
            f.write(f"- [{datetime.now().strftime('%Y-%m-%d %H:%M')}] {kwargs['content']}\n")
        action = "Created" if is_new else "Appended to"
        return {"info": f"{action} {filepath.parent.name}/{filepath.name}"}


class ReadNotesTool(Tool):
    """Read a vault page, or list vaults and pages."""

    name = "read_notes"
    description = (
        "Read from the knowledge vaults. With no vault, lists vaults. With a vault and no "
        "page, returns the index page and the list of pages."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "vault": {"type": "string"},
            "page": {"type": "string"},
        },
        "additionalProperties": False,
    }

    def __init__(self, vault_root: Path) -> None:
        self._vault_root = vault_root

    async def run(self, context: ToolContext, **kwargs: Any) -> dict[str, Any]:
        vault: str | None = kwargs.get("vault")
        if not vault:
            vaults = sorted(p.name for p in self._vault_root.glob("*") if p.is_dir())
            return {"vaults": vaults}

        vault_dir = self._vault_root / _slugify(vault)
        if not vault_dir.is_dir():
            slug = _slugify(vault)
            similar = sorted(p.name for p in self._vault_root.glob("*") if p.is_dir() and slug in p.name)
            if similar:
                return {"error": f"No vault '{vault}'. Similar vaults: {', '.join(similar)}"}
            return {"error": f"No vault '{vault}'."}

        page = kwargs.get("page") or _INDEX_PAGE
        filepath = _page_path(self._vault_root, vault, page)
        pages = sorted(p.stem for p in vault_dir.glob("*.md"))
        if not filepath.exists():
            return {"error": f"No page '{page}' in vault '{vault}'.", "pages": pages}
        return {"content": filepath.read_text()[:8000], "pages": pages}
