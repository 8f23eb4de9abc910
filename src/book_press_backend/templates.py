"""
Template resolution across the system library and per-user namespaces.

Template names have changed convention several times, so a requested base name is
matched by an ordered list of independent strategies; the first hit wins:

1. ``exact``            ``<dir>/<base>.tex``
2. ``cover-suffix``     covers only, ``<base>-cover-*.tex``
3. ``cover-prefix``     covers only, ``*-<base>.tex``
4. ``layout-suffix``    layouts only, ``<base>-layout.tex``
5. ``fuzzy``            any file containing ``<base>`` (case-insensitive) or every
                        hyphen-separated part of it

Library layout: ``<library>/{layout,cover,impose}/<name>.tex``.
User layout: ``<usersRoot>/<userId>/{layout,cover,impose}/<name>.tex`` plus ``fonts/``.
"""

from __future__ import annotations

import glob
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

from .errors import InputValidationError, TemplateResolutionError
from .utils import is_safe_identifier, safe_basename

logger = logging.getLogger(__name__)

TEMPLATE_EXTENSION = ".tex"


class TemplateKind(str, Enum):
    LAYOUT = "layout"
    COVER = "cover"
    IMPOSE = "impose"


class ScopeKind(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ANY_USER = "any_user"


@dataclass(frozen=True)
class TemplateScope:
    kind: ScopeKind = ScopeKind.SYSTEM
    user_id: Optional[str] = None

    @classmethod
    def system(cls) -> "TemplateScope":
        return cls(ScopeKind.SYSTEM)

    @classmethod
    def user(cls, user_id: str) -> "TemplateScope":
        if not is_safe_identifier(user_id):
            raise InputValidationError(f"Invalid user identifier: {user_id!r}")
        return cls(ScopeKind.USER, user_id)

    @classmethod
    def any_user(cls) -> "TemplateScope":
        return cls(ScopeKind.ANY_USER)

    @classmethod
    def for_selection(cls, is_user_template: bool, user_id: Optional[str]) -> "TemplateScope":
        if not is_user_template:
            return cls.system()
        if user_id:
            return cls.user(user_id)
        return cls.any_user()


def normalize_base_name(name: str) -> str:
    base = safe_basename(name)
    if base.lower().endswith(TEMPLATE_EXTENSION):
        base = base[: -len(TEMPLATE_EXTENSION)]
    return base


@dataclass(frozen=True)
class TemplateReference:
    kind: TemplateKind
    base_name: str
    scope: TemplateScope = TemplateScope()

    @property
    def name(self) -> str:
        return normalize_base_name(self.base_name)


def _tex_files(directory: Path) -> List[Path]:
    return sorted(path for path in directory.glob(f"*{TEMPLATE_EXTENSION}") if path.is_file())


class ResolutionStrategy:
    """One naming convention. ``kinds`` restricts the template kinds it applies to."""

    name = "strategy"
    kinds: Optional[Tuple[TemplateKind, ...]] = None

    def applies_to(self, kind: TemplateKind) -> bool:
        return self.kinds is None or kind in self.kinds

    def find(self, directory: Path, base_name: str) -> Optional[Path]:
        raise NotImplementedError


class ExactNameStrategy(ResolutionStrategy):
    name = "exact"

    def find(self, directory: Path, base_name: str) -> Optional[Path]:
        candidate = directory / f"{base_name}{TEMPLATE_EXTENSION}"
        return candidate if candidate.is_file() else None


class CoverSuffixStrategy(ResolutionStrategy):
    """``Garamond-a5`` finds ``Garamond-a5-cover-A4.tex``."""

    name = "cover-suffix"
    kinds = (TemplateKind.COVER,)

    def find(self, directory: Path, base_name: str) -> Optional[Path]:
        if "-cover-" in base_name:
            return None
        matches = sorted(directory.glob(f"{glob.escape(base_name)}-cover-*{TEMPLATE_EXTENSION}"))
        return matches[0] if matches else None


class CoverPrefixStrategy(ResolutionStrategy):
    name = "cover-prefix"
    kinds = (TemplateKind.COVER,)

    def find(self, directory: Path, base_name: str) -> Optional[Path]:
        if "-cover-" in base_name:
            return None
        matches = sorted(directory.glob(f"*-{glob.escape(base_name)}{TEMPLATE_EXTENSION}"))
        return matches[0] if matches else None


class LayoutSuffixStrategy(ResolutionStrategy):
    name = "layout-suffix"
    kinds = (TemplateKind.LAYOUT,)

    def find(self, directory: Path, base_name: str) -> Optional[Path]:
        candidate = directory / f"{base_name}-layout{TEMPLATE_EXTENSION}"
        return candidate if candidate.is_file() else None


class FuzzyContainmentStrategy(ResolutionStrategy):
    name = "fuzzy"

    def find(self, directory: Path, base_name: str) -> Optional[Path]:
        needle = base_name.lower()
        parts = [part for part in needle.split("-") if part]
        files = _tex_files(directory)

        for path in files:
            if needle in path.name.lower():
                return path
        if len(parts) > 1:
            for path in files:
                filename = path.name.lower()
                if all(part in filename for part in parts):
                    return path
        return None


DEFAULT_STRATEGIES: Tuple[ResolutionStrategy, ...] = (
    ExactNameStrategy(),
    CoverSuffixStrategy(),
    CoverPrefixStrategy(),
    LayoutSuffixStrategy(),
    FuzzyContainmentStrategy(),
)


class TemplateResolver:
    def __init__(
        self,
        library_root: Path,
        users_root: Path,
        strategies: Sequence[ResolutionStrategy] = DEFAULT_STRATEGIES,
    ) -> None:
        self.library_root = library_root
        self.users_root = users_root
        self.strategies = tuple(strategies)

    def system_dir(self, kind: TemplateKind) -> Path:
        return self.library_root / kind.value

    def user_dir(self, user_id: str, kind: TemplateKind) -> Path:
        return self.users_root / user_id / kind.value

    def user_font_dir(self, user_id: str) -> Path:
        return self.users_root / user_id / "fonts"

    def library_font_dir(self, kind: TemplateKind) -> Path:
        return self.library_root / kind.value / "fonts"

    def user_ids(self) -> List[str]:
        if not self.users_root.is_dir():
            return []
        return sorted(path.name for path in self.users_root.iterdir() if path.is_dir())

    def directories_for(self, reference: TemplateReference) -> List[Path]:
        """Directories searched for ``reference``, in precedence order."""
        scope = reference.scope
        if scope.kind is ScopeKind.SYSTEM:
            return [self.system_dir(reference.kind)]
        if scope.kind is ScopeKind.USER:
            return [self.user_dir(scope.user_id or "", reference.kind)]
        directories = [self.user_dir(user_id, reference.kind) for user_id in self.user_ids()]
        directories.append(self.system_dir(reference.kind))
        return directories

    def search_directory(self, directory: Path, kind: TemplateKind, base_name: str) -> Optional[Path]:
        if not directory.is_dir():
            return None
        for strategy in self.strategies:
            if not strategy.applies_to(kind):
                continue
            found = strategy.find(directory, base_name)
            if found is not None:
                logger.debug(f"Resolved {kind.value} '{base_name}' via {strategy.name}: {found}")
                return found
        return None

    def find(self, reference: TemplateReference) -> Optional[Path]:
        base_name = reference.name
        if not base_name:
            return None
        for directory in self.directories_for(reference):
            found = self.search_directory(directory, reference.kind, base_name)
            if found is not None:
                return found
        return None

    def resolve(self, reference: TemplateReference) -> Path:
        found = self.find(reference)
        if found is None:
            searched = self.directories_for(reference)
            logger.warning(f"Template {reference.kind.value} '{reference.name}' not found in {[str(d) for d in searched]}")
            raise TemplateResolutionError(reference.kind.value, reference.name, searched)
        logger.info(f"Using {reference.kind.value} template {found}")
        return found

    def iter_templates(self, kind: TemplateKind, user_id: Optional[str] = None) -> Iterable[Tuple[TemplateScope, Path]]:
        """Yield every template file of ``kind`` from the library, then from the user's namespace."""
        for path in _tex_files(self.system_dir(kind)) if self.system_dir(kind).is_dir() else []:
            yield TemplateScope.system(), path
        if user_id:
            scope = TemplateScope.user(user_id)
            directory = self.user_dir(user_id, kind)
            if directory.is_dir():
                for path in _tex_files(directory):
                    yield scope, path
