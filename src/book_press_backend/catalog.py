"""
Template catalog: the options each template declares in its own source.

Templates describe themselves with comments and macros:

- header comments ``% title: ...``, ``% description: ...``, ``% version: ...``, ``% author: ...``
- ``\\newif\\if<name>`` followed by ``\\<name>true|false`` declares a boolean toggle;
  a ``%`` comment on the line above becomes its description
- ``{{name}}`` declares a text variable (an image variable when the name contains "image")
- ``%% META: booleans=name:default,name:default, variables=a,b`` annotations
- ``%NAME%`` tokens declare implicit text variables named in lower case
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .errors import TemplateResolutionError, WorkspaceError
from .models import (
    CoverVariables,
    InvalidTemplate,
    TemplateDescriptor,
    TemplateListing,
    TemplateOption,
    TemplateOptions,
)
from .templates import TemplateKind, TemplateReference, TemplateResolver, TemplateScope

logger = logging.getLogger(__name__)

HEADER_PATTERN = re.compile(r"^%\s*([a-zA-Z]+):\s*(.+)$", re.MULTILINE)
HEADER_KEYS = ("title", "description", "version", "author")
META_PATTERN = re.compile(r"^%%\s*META:\s*(.*?)$", re.MULTILINE)
NEWIF_PATTERN = re.compile(r"\\newif\\if(\w+)\s*(?:\\(\w+)(true|false))?")
VARIABLE_PATTERN = re.compile(r"\{\{(\w+)\}\}")
PERCENT_TOKEN_PATTERN = re.compile(r"%([A-Z0-9_]+)%")

LAYOUT_NAME_PATTERN = re.compile(r"^(?P<style>[^-]+)-(?P<format>[^-]+)-layout$")
COVER_NAME_PATTERN = re.compile(r"^(?P<style>[^-]+)-(?P<format>[^-]+)-cover-(?P<paper>[^-]+)$")


def parse_header_comments(source: str) -> Dict[str, str]:
    header: Dict[str, str] = {}
    for key, value in HEADER_PATTERN.findall(source):
        key = key.lower()
        if key in HEADER_KEYS and key not in header:
            header[key] = value.strip()
    return header


def parse_meta_annotations(source: str) -> Dict[str, str]:
    """
    Collect ``%% META:`` key/value pairs.

    Values may themselves contain commas (``booleans=a:true,b:false``): a segment
    without ``=`` continues the previous key's value.
    """
    annotations: Dict[str, str] = {}
    for line in META_PATTERN.findall(source):
        current: Optional[str] = None
        for segment in line.split(","):
            segment = segment.strip()
            if not segment:
                continue
            if "=" in segment:
                key, value = segment.split("=", 1)
                current = key.strip()
                annotations[current] = value.strip()
            elif current is not None:
                annotations[current] = f"{annotations[current]},{segment}"
    return annotations


def _preceding_comment(source: str, position: int) -> Optional[str]:
    line_start = source.rfind("\n", 0, position)
    if line_start == -1:
        return None
    line = source[source.rfind("\n", 0, line_start) + 1 : line_start].strip()
    if line.startswith("%") and not line.startswith("%%"):
        return line.lstrip("%").strip() or None
    return None


def parse_boolean_options(source: str, annotations: Optional[Dict[str, str]] = None) -> List[TemplateOption]:
    options: Dict[str, TemplateOption] = {}
    for match in NEWIF_PATTERN.finditer(source):
        name = match.group(1)
        default = match.group(3) == "true" if match.group(2) == name else False
        options[name] = TemplateOption(
            name=name,
            type="boolean",
            default=default,
            description=_preceding_comment(source, match.start()),
        )

    declared = (annotations or {}).get("booleans", "")
    for entry in declared.split(","):
        name, _, default = entry.strip().partition(":")
        name = name.strip()
        if name and name not in options:
            options[name] = TemplateOption(
                name=name,
                type="boolean",
                default=default.strip().lower() in ("true", "1", "yes"),
            )
    return list(options.values())


def parse_variables(source: str, annotations: Optional[Dict[str, str]] = None) -> List[TemplateOption]:
    names: List[str] = list(VARIABLE_PATTERN.findall(source))
    declared = (annotations or {}).get("variables", "")
    names.extend(name.strip() for name in declared.split(",") if name.strip())
    names.extend(token.lower() for token in PERCENT_TOKEN_PATTERN.findall(source))

    return [
        TemplateOption(name=name, type="image" if "image" in name.lower() else "text")
        for name in dict.fromkeys(names)
    ]


def parse_template_name(name: str, kind: TemplateKind) -> Dict[str, str]:
    pattern = {TemplateKind.LAYOUT: LAYOUT_NAME_PATTERN, TemplateKind.COVER: COVER_NAME_PATTERN}.get(kind)
    if pattern is None:
        return {}
    match = pattern.match(name)
    return match.groupdict() if match else {}


def describe_template(source: str, name: str, kind: TemplateKind, scope: TemplateScope) -> TemplateDescriptor:
    header = parse_header_comments(source)
    annotations = parse_meta_annotations(source)
    return TemplateDescriptor(
        name=name,
        kind=kind.value,
        scope=scope.kind.value,
        user_id=scope.user_id,
        title=header.get("title", name),
        description=header.get("description", ""),
        version=header.get("version", ""),
        author=header.get("author", ""),
        annotations=annotations,
        options=TemplateOptions(
            booleans=parse_boolean_options(source, annotations),
            variables=parse_variables(source, annotations),
        ),
        **parse_template_name(name, kind),
    )


def read_template(path: Path) -> str:
    """
    Read a template's source text.

    UTF-8 is tried first; legacy templates saved in Latin-1 are decoded as such.

    Raises:
        WorkspaceError: If the file cannot be read or holds binary data
    """
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise WorkspaceError(f"Could not read template {path.name}: {exc.strerror or exc}", path=path) from exc
    if b"\x00" in data:
        raise WorkspaceError(f"Template {path.name} is not a text file", path=path)
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        logger.info(f"{path.name} is not valid UTF-8, reading it as Latin-1")
        return data.decode("latin-1")


def declared_variable_names(paths: Iterable[Path]) -> List[str]:
    """Variable names declared by the given template files, in first-seen order."""
    names: List[str] = []
    for path in paths:
        source = read_template(path)
        names.extend(option.name for option in parse_variables(source, parse_meta_annotations(source)))
    return list(dict.fromkeys(names))


class TemplateCatalog:
    def __init__(self, resolver: TemplateResolver) -> None:
        self.resolver = resolver

    def list_templates(self, user_id: Optional[str] = None) -> TemplateListing:
        listing = TemplateListing()
        targets = {
            TemplateKind.LAYOUT: listing.layouts,
            TemplateKind.COVER: listing.covers,
            TemplateKind.IMPOSE: listing.imposes,
        }
        for kind, descriptors in targets.items():
            for scope, path in self.resolver.iter_templates(kind, user_id):
                try:
                    source = read_template(path)
                except WorkspaceError as exc:
                    logger.warning(f"Unreadable template {path}: {exc}")
                    listing.invalid_files.setdefault(kind.value, []).append(
                        InvalidTemplate(file=path.name, error=str(exc))
                    )
                    continue
                descriptors.append(describe_template(source, path.stem, kind, scope))
        return listing

    def cover_variables(self, cover: str, user_id: Optional[str] = None) -> CoverVariables:
        path: Optional[Path] = None
        if user_id:
            path = self.resolver.find(TemplateReference(TemplateKind.COVER, cover, TemplateScope.user(user_id)))
        if path is None:
            reference = TemplateReference(TemplateKind.COVER, cover, TemplateScope.system())
            path = self.resolver.find(reference)
        if path is None:
            raise TemplateResolutionError(TemplateKind.COVER.value, cover, [self.resolver.system_dir(TemplateKind.COVER)])

        source = read_template(path)
        return CoverVariables(cover=path.stem, variables=parse_variables(source, parse_meta_annotations(source)))
