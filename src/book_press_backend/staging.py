"""
Text patches applied to templates copied into a job's working directory.

- font declarations are pointed at the job-local ``fonts/`` directory
- document metadata is validated, LaTeX-escaped and substituted for ``{{key}}`` / ``%KEY%``
- ``\\newif`` toggles are switched according to the caller's boolean options
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, Mapping

from .configuration import MetadataSettings
from .errors import InputValidationError
from .markdown import unescape_filename
from .utils import safe_basename

logger = logging.getLogger(__name__)

LOCAL_FONT_PATH = "./fonts/"
DEFAULT_FONT_EXTENSION = ".ttf"

_FONT_COMMAND = r"\\(?:set(?:main|sans|mono)font|newfontfamily\s*\\\w+)"
FONT_OPTIONS_PATTERN = re.compile(rf"({_FONT_COMMAND}\s*(?:\{{[^}}]+\}}\s*)?)\[([^\]]*)\]")
BARE_FONT_PATTERN = re.compile(rf"({_FONT_COMMAND}\s*)\{{([^}}]+)\}}(?!\s*\[)")
PATH_OPTION_PATTERN = re.compile(r"Path\s*=\s*[^,\]]*")

LATEX_SPECIAL_CHARACTERS = {
    "\\": r"\textbackslash{}",
    "$": r"\$",
    "%": r"\%",
    "&": r"\&",
    "_": r"\_",
    "{": r"\{",
    "}": r"\}",
    "#": r"\#",
    "~": r"\textasciitilde{}",
    "^": r"\textasciicircum{}",
}
LATEX_SPECIAL_PATTERN = re.compile("|".join(re.escape(char) for char in LATEX_SPECIAL_CHARACTERS))
IMAGE_NAME_PATTERN = re.compile(r"[\w .-]+")


def _rewrite_font_options(match: re.Match) -> str:
    prefix, options = match.group(1), match.group(2)
    if PATH_OPTION_PATTERN.search(options):
        options = PATH_OPTION_PATTERN.sub(f"Path={LOCAL_FONT_PATH}", options)
    else:
        options = f"Path={LOCAL_FONT_PATH}, {options}" if options.strip() else f"Path={LOCAL_FONT_PATH}"
    return f"{prefix}[{options}]"


def _add_font_options(match: re.Match) -> str:
    prefix, font_name = match.group(1), match.group(2)
    options = f"Path={LOCAL_FONT_PATH}"
    if "." not in font_name:
        options += f", Extension={DEFAULT_FONT_EXTENSION}"
    return f"{prefix}[{options}]{{{font_name}}}"


def fix_font_paths(source: str) -> str:
    """Make every fontspec declaration load its files from ``./fonts/``."""
    source = FONT_OPTIONS_PATTERN.sub(_rewrite_font_options, source)
    return BARE_FONT_PATTERN.sub(_add_font_options, source)


def escape_latex(value: str) -> str:
    return LATEX_SPECIAL_PATTERN.sub(lambda match: LATEX_SPECIAL_CHARACTERS[match.group(0)], value)


def is_image_field(name: str) -> bool:
    return "image" in name.lower()


def clean_image_name(field: str, value: str) -> str:
    """
    Reduce an image field to the bare upload file name it is substituted as.

    Args:
        field: Metadata field name, for the error message
        value: File name or path as sent by the editor

    Returns:
        str: The file name without directories or editor escapes

    Raises:
        InputValidationError: If the name holds anything but word characters, spaces, dots and hyphens
    """
    name = safe_basename(unescape_filename(value))
    if name and (name in (".", "..") or not IMAGE_NAME_PATTERN.fullmatch(name)):
        raise InputValidationError(f"Invalid image file name in {field}: {value!r}")
    return name


def validate_image_fields(metadata: Mapping[str, Any]) -> None:
    """Reject unusable image names before any file is written."""
    for name, raw in metadata.items():
        if is_image_field(name) and raw is not None:
            clean_image_name(name, str(raw).strip())


def validate_and_clean_metadata(
    metadata: Mapping[str, Any],
    settings: MetadataSettings,
    extra_fields: Iterable[str] = (),
) -> Dict[str, str]:
    """
    Keep only the allowed fields, fill blanks from the defaults and escape values.

    Image fields name upload files: they are reduced to a bare file name instead
    of being escaped.

    Raises:
        InputValidationError: If an image field is not a plain file name
    """
    allowed = list(dict.fromkeys([*settings.allowed_fields, *extra_fields]))
    cleaned: Dict[str, str] = {}
    for name in allowed:
        raw = metadata.get(name)
        value = "" if raw is None else str(raw).strip()
        if not value:
            value = settings.defaults.get(name, "")
        cleaned[name] = clean_image_name(name, value) if is_image_field(name) else escape_latex(value)

    ignored = sorted(set(metadata) - set(allowed))
    if ignored:
        logger.debug(f"Ignoring metadata fields not declared by the templates: {ignored}")
    return cleaned


def substitute_variables(source: str, values: Mapping[str, str]) -> str:
    for key, value in values.items():
        source = source.replace(f"{{{{{key}}}}}", value)
        source = source.replace(f"%{key.upper()}%", value)
    return source


def apply_boolean_toggles(source: str, toggles: Mapping[str, bool]) -> str:
    """Rewrite ``\\<name>true`` / ``\\<name>false`` to the requested value."""
    for name, enabled in toggles.items():
        if not re.fullmatch(r"\w+", name):
            logger.warning(f"Ignoring invalid boolean option name: {name!r}")
            continue
        state = "true" if enabled else "false"
        source = re.sub(rf"\\{name}(?:true|false)\b", lambda _match: f"\\{name}{state}", source)
    return source


def stage_template_text(source: str, values: Mapping[str, str], toggles: Mapping[str, bool]) -> str:
    return apply_boolean_toggles(substitute_variables(fix_font_paths(source), values), toggles)
