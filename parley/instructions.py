"""Load and render prompt templates from disk.

Templates ship inside the package under ``parley/instructions/``. A personal
copy in ``~/.parley/instructions/`` (or ``PARLEY_INSTRUCTIONS_DIR``) takes
precedence, so prompts can be tuned without touching the install.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping


_PERSONAL_DIR = Path("~/.parley/instructions").expanduser()

DEFAULT_SYSTEM = "default_system.md"
SEARCH_PREAMBLE = "search_preamble.md"
TUTOR_PREAMBLE = "tutor_preamble.md"
FOLLOW_UP_SEARCH = "follow_up_search.md"
FOLLOW_UP_DEFAULT = "follow_up_default.md"
SOURCES_BLOCK = "sources_block.md"


class _SafeFormatDict(dict[str, str]):
    """Leave unknown placeholders untouched instead of raising KeyError."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


class InstructionLoader:
    """Read and render prompt templates with personal-override support."""

    def __init__(
        self,
        base_dir: Path | str | None = None,
        personal_dir: Path | str | None = None,
    ):
        self.base_dir = self._resolve_base_dir(base_dir)
        self.personal_dir: Path = (
            Path(personal_dir).expanduser().resolve()
            if personal_dir is not None
            else _PERSONAL_DIR.resolve()
        )
        self._cache: dict[str, str] = {}

    @staticmethod
    def _resolve_base_dir(base_dir: Path | str | None) -> Path:
        if base_dir is not None:
            return Path(base_dir).expanduser().resolve()
        env_dir = os.getenv("PARLEY_INSTRUCTIONS_DIR")
        if env_dir:
            return Path(env_dir).expanduser().resolve()
        return (Path(__file__).resolve().parent / "instructions").resolve()

    def _path(self, name: str) -> Path:
        personal = self.personal_dir / name
        if personal.is_file():
            return personal
        return self.base_dir / name

    def is_overridden(self, name: str) -> bool:
        return (self.personal_dir / name).is_file()

    def load(self, name: str) -> str:
        """Load template content by filename."""
        cached = self._cache.get(name)
        if cached is not None:
            return cached

        path = self._path(name)
        if not path.is_file():
            raise FileNotFoundError(f"Instruction template not found: {path}")
        content = path.read_text(encoding="utf-8").strip()
        self._cache[name] = content
        return content

    def render(self, name: str, **variables: object) -> str:
        """Render template with ``str.format`` placeholder substitution."""
        template = self.load(name)
        values: Mapping[str, str] = {k: str(v) for k, v in variables.items()}
        return template.format_map(_SafeFormatDict(values))


_loader: InstructionLoader | None = None


def get_instruction_loader() -> InstructionLoader:
    """Get the global instruction loader."""
    global _loader
    if _loader is None:
        _loader = InstructionLoader()
    return _loader


def set_instruction_loader(loader: InstructionLoader | None) -> None:
    global _loader
    _loader = loader
