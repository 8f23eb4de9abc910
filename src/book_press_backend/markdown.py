"""
Markdown normalization and image materialization.

Authors write manuscripts in a note-taking editor, so image references arrive in
several shapes: wiki embeds (``![[photo.png|Caption]]``), bare wiki links to image
files, or standard Markdown images pointing at the upload storage. The normalizer
rewrites all of them to ``![alt](images/<file>)``; the materializer then copies the
referenced uploads into the job's ``images/`` directory.
"""

from __future__ import annotations

import logging
import re
import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import unquote, urlparse
from uuid import uuid4

import yaml

from .utils import ensure_directory, safe_basename

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = ("png", "jpg", "jpeg", "gif", "svg")

WIKI_EMBED_PATTERN = re.compile(
    r"!\\?\[\[(?P<target>[^\]|#]+)(?:#[^\]|]+)?(?:\|(?P<alt>[^\]]+))?\]\]"
)
WIKI_LINK_PATTERN = re.compile(r"(?<!!)\[\[(?P<target>[^\]|#]+)(?:#[^\]|]+)?\]\]")
UPLOAD_URL_PATTERN = re.compile(r"!\[(?P<alt>[^\]]*)\]\((?P<url>[^)]+/uploads/[^)]+)\)")
SERVED_IMAGE_PATTERN = re.compile(r"!\[(?P<alt>[^\]]*)\]\((?P<url>[^)]*serve-image\.php/[\w%.-]+)\)")
LINK_DELIMITERS = "[]()"

LOCAL_IMAGE_PATTERN = re.compile(r"!\[[^\]]*\]\(images/(?P<name>[^)\s]+)\)")
ESCAPED_FOOTNOTE_PATTERN = re.compile(r"\^\\\[(.*?)\\\]", re.DOTALL)
INLINE_FOOTNOTE_PATTERN = re.compile(r"\^\[([^\]]+)\]")
FRONT_MATTER_PATTERN = re.compile(r"\A---\s*\n(.*?)\n---\s*\n", re.DOTALL)
H1_PATTERN = re.compile(r"^#\s+(.+)$", re.MULTILINE)
H2_PATTERN = re.compile(r"^##\s+(.+)$", re.MULTILINE)

# Stored uploads are named <shortSessionId>_<uid>_<originalName>
STORED_PREFIX_PATTERN = re.compile(r"^[A-Za-z0-9]+_[a-z0-9]+_")

SESSION_SHORT_ID_LENGTH = 10


def unescape_filename(name: str) -> str:
    """Undo the backslash escaping editors add to underscores and hyphens."""
    return name.replace("\\_", "_").replace("\\-", "-")


def is_image_name(name: str) -> bool:
    return name.rsplit(".", 1)[-1].lower() in IMAGE_EXTENSIONS if "." in name else False


def _image_embed(alt: str, name: str) -> str:
    return f"![{alt}](images/{name})"


def _replace_wiki_embed(match: re.Match) -> str:
    target = unescape_filename(match.group("target").strip())
    alt = (match.group("alt") or "").strip()
    return _image_embed(alt, safe_basename(target))


def _replace_wiki_link(match: re.Match) -> str:
    target = unescape_filename(match.group("target").strip())
    if not is_image_name(target):
        return match.group(0)
    return _image_embed("", safe_basename(target))


def _replace_upload_url(match: re.Match) -> str:
    path = urlparse(match.group("url").strip()).path
    return _image_embed(match.group("alt"), safe_basename(path))


def _replace_served_image(match: re.Match) -> str:
    encoded = safe_basename(match.group("url"))
    name = safe_basename(unquote(encoded))
    # Brackets or parentheses would end the rewritten link early
    if any(char in name for char in LINK_DELIMITERS):
        name = encoded
    return _image_embed(match.group("alt"), name)


def normalize_markdown(content: str) -> str:
    """
    Rewrite every supported image reference to ``![alt](images/<basename>)``.

    The output contains no wiki embeds and no upload URLs, so a second run finds
    nothing to rewrite.
    """
    content = WIKI_EMBED_PATTERN.sub(_replace_wiki_embed, content)
    content = WIKI_LINK_PATTERN.sub(_replace_wiki_link, content)
    content = UPLOAD_URL_PATTERN.sub(_replace_upload_url, content)
    content = SERVED_IMAGE_PATTERN.sub(_replace_served_image, content)
    return content


def fix_escaped_footnotes(content: str) -> str:
    """Repair ``^\\[note\\]`` produced by the note exporter back into ``^[note]``."""
    return ESCAPED_FOOTNOTE_PATTERN.sub(lambda match: f"^[{match.group(1)}]", content)


def convert_inline_footnotes(content: str) -> str:
    """Turn ``^[text]`` into numbered references with definitions appended at the end."""
    notes: List[str] = []

    def replace(match: re.Match) -> str:
        notes.append(match.group(1))
        return f"[^{len(notes)}]"

    converted = INLINE_FOOTNOTE_PATTERN.sub(replace, content)
    if not notes:
        return content

    definitions = "".join(f"[^{index}]: {text}\n" for index, text in enumerate(notes, start=1))
    return f"{converted.rstrip()}\n\n<!-- footnotes -->\n{definitions}"


def extract_image_references(content: str) -> List[str]:
    """Image file names referenced by embeds or local ``images/`` links, in order, without duplicates."""
    names: List[str] = []
    for match in WIKI_EMBED_PATTERN.finditer(content):
        names.append(safe_basename(unescape_filename(match.group("target").strip())))
    for match in LOCAL_IMAGE_PATTERN.finditer(content):
        names.append(unquote(match.group("name")))
    return list(dict.fromkeys(name for name in names if name))


def extract_markdown_metadata(content: str) -> Dict[str, Any]:
    """
    Read title, author, date, description and tags from YAML front matter.

    Without a front-matter title the first level-one heading is used, then the
    first level-two heading.
    """
    metadata: Dict[str, Any] = {}
    match = FRONT_MATTER_PATTERN.match(content)
    if match:
        try:
            front_matter = yaml.safe_load(match.group(1)) or {}
        except yaml.YAMLError as exc:
            logger.warning(f"Ignoring unreadable front matter: {exc}")
            front_matter = {}
        if isinstance(front_matter, dict):
            aliases = {
                "title": ("title", "titre"),
                "author": ("author", "auteur"),
                "date": ("date",),
                "description": ("description", "desc"),
            }
            for target, keys in aliases.items():
                for key in keys:
                    value = front_matter.get(key)
                    if value not in (None, ""):
                        metadata[target] = str(value).strip()
                        break
            tags = front_matter.get("tags")
            if isinstance(tags, str):
                metadata["tags"] = [tag.strip() for tag in tags.split(",") if tag.strip()]
            elif isinstance(tags, list):
                metadata["tags"] = [str(tag).strip() for tag in tags if str(tag).strip()]

    if "title" not in metadata:
        heading = H1_PATTERN.search(content) or H2_PATTERN.search(content)
        if heading:
            metadata["title"] = heading.group(1).strip()
    return metadata


def strip_stored_prefix(stored_name: str) -> str:
    return STORED_PREFIX_PATTERN.sub("", stored_name, count=1)


@dataclass
class UploadSession:
    session_id: str
    uploaded_files: Dict[str, str] = field(default_factory=dict)

    @property
    def short_id(self) -> str:
        safe = re.sub(r"[^A-Za-z0-9]", "", self.session_id)
        return safe[:SESSION_SHORT_ID_LENGTH] or "anon"


class UploadSessionStore:
    """
    Upload records per editing session: original file name -> stored file name.

    Passed explicitly to whatever needs to resolve a session's images; nothing
    else keeps session state.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, UploadSession] = {}
        self._lock = threading.Lock()

    def new_session_id(self) -> str:
        return uuid4().hex

    def get(self, session_id: Optional[str]) -> Optional[UploadSession]:
        if not session_id:
            return None
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            return UploadSession(session.session_id, dict(session.uploaded_files))

    def stored_name_for(self, session_id: str, original_name: str) -> str:
        short_id = UploadSession(session_id).short_id
        return f"{short_id}_{uuid4().hex[:13]}_{safe_basename(original_name)}"

    def record_upload(self, session_id: str, original_name: str, stored_name: str) -> None:
        with self._lock:
            session = self._sessions.setdefault(session_id, UploadSession(session_id))
            session.uploaded_files[original_name] = stored_name
        logger.debug(f"Session {session_id}: {original_name} stored as {stored_name}")


@dataclass
class MaterializationReport:
    copied: Dict[str, Path] = field(default_factory=dict)
    missing: List[str] = field(default_factory=list)


LookupLayer = Callable[[str, Optional[UploadSession]], Optional[Path]]


class ImageMaterializer:
    """Copies referenced uploads into a job's ``images/`` directory."""

    def __init__(self, uploads_root: Path) -> None:
        self.uploads_root = uploads_root
        self.layers: List[Tuple[str, LookupLayer]] = [
            ("session-record", self._from_session_record),
            ("session-prefix", self._from_session_prefix),
            ("exact", self._exact),
            ("global-map", self._from_global_map),
            ("fuzzy", self._fuzzy),
        ]

    def _upload_files(self) -> List[Path]:
        if not self.uploads_root.is_dir():
            return []
        return sorted(path for path in self.uploads_root.iterdir() if path.is_file())

    def _from_session_record(self, name: str, session: Optional[UploadSession]) -> Optional[Path]:
        if session is None:
            return None
        stored = session.uploaded_files.get(name)
        if stored:
            candidate = self.uploads_root / safe_basename(stored)
            if candidate.is_file():
                return candidate
        return None

    def _from_session_prefix(self, name: str, session: Optional[UploadSession]) -> Optional[Path]:
        if session is None:
            return None
        prefix = f"{session.short_id}_"
        for path in self._upload_files():
            if path.name.startswith(prefix) and strip_stored_prefix(path.name) == name:
                return path
        return None

    def _exact(self, name: str, session: Optional[UploadSession]) -> Optional[Path]:
        candidate = self.uploads_root / name
        return candidate if candidate.is_file() else None

    def _from_global_map(self, name: str, session: Optional[UploadSession]) -> Optional[Path]:
        for path in self._upload_files():
            if strip_stored_prefix(path.name) == name:
                return path
        return None

    def _fuzzy(self, name: str, session: Optional[UploadSession]) -> Optional[Path]:
        stem = Path(name).stem.lower()
        if not stem:
            return None
        files = self._upload_files()
        if session is not None:
            prefix = f"{session.short_id}_"
            files = [path for path in files if path.name.startswith(prefix)] + [
                path for path in files if not path.name.startswith(prefix)
            ]
        for path in files:
            candidate = Path(strip_stored_prefix(path.name)).stem.lower()
            if candidate and (stem in candidate or candidate in stem):
                return path
        return None

    def locate(self, name: str, session: Optional[UploadSession] = None) -> Optional[Path]:
        name = safe_basename(name)
        if not name:
            return None
        for layer_name, layer in self.layers:
            found = layer(name, session)
            if found is not None:
                logger.debug(f"Image '{name}' found via {layer_name}: {found.name}")
                return found
        return None

    def copy_image(self, name: str, images_dir: Path, session: Optional[UploadSession] = None) -> Optional[Path]:
        source = self.locate(name, session)
        if source is None:
            logger.warning(f"Image '{name}' not found in {self.uploads_root}")
            return None
        destination = ensure_directory(images_dir) / safe_basename(name)
        try:
            shutil.copyfile(source, destination)
        except OSError as exc:
            logger.warning(f"Could not copy image {source} to {destination}: {exc}")
            return None
        return destination

    def materialize(
        self,
        content: str,
        images_dir: Path,
        session: Optional[UploadSession] = None,
    ) -> MaterializationReport:
        report = MaterializationReport()
        for name in extract_image_references(content):
            copied = self.copy_image(name, images_dir, session)
            if copied is None:
                report.missing.append(name)
            else:
                report.copied[name] = copied
        if report.copied or report.missing:
            logger.info(f"Images: {len(report.copied)} copied, {len(report.missing)} missing")
        return report

    def copy_metadata_images(
        self,
        metadata: Mapping[str, Any],
        images_dir: Path,
        session: Optional[UploadSession] = None,
    ) -> List[Path]:
        """Copy the uploads named by metadata fields such as ``imagecouv``."""
        copied: List[Path] = []
        for key, value in metadata.items():
            lowered = key.lower()
            if "image" not in lowered and "couv" not in lowered:
                continue
            name = safe_basename(unescape_filename(str(value or "")))
            if not name:
                continue
            result = self.copy_image(name, images_dir, session)
            if result is not None:
                copied.append(result)
        return copied
