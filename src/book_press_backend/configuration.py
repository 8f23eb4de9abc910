"""
Configuration loading and the injected settings value object.

Defaults live in ``config/config.yaml`` next to this module. They are loaded once,
merged with per-run overrides in struct mode (unknown keys are rejected) and then
frozen into a :class:`PressConfig` that every component receives explicitly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from omegaconf import DictConfig, OmegaConf

from .models import ConfigMetadata

_HERE = Path(__file__).resolve()
_CANDIDATE_CONFIG_PATHS = [parent / "config/config.yaml" for parent in _HERE.parents[:5]]

CONFIG_PATH = next((path for path in _CANDIDATE_CONFIG_PATHS if path.exists()), None)
if CONFIG_PATH is None:  # pragma: no cover - fail fast in misconfigured environments
    raise FileNotFoundError("Default config.yaml could not be located; the package data appears to be missing.")

CONVERSION_METHODS: List[str] = ["pandoc_direct", "obsidian_export"]

TEMPLATE_KINDS: List[str] = ["layout", "cover", "impose"]

NOTES = {
    "paths.workspace": "Per-job working directories and the shared commands/ inbox live here.",
    "paths.library": "System template library: layout/, cover/ and impose/ sub-directories.",
    "dispatcher.mode": "'file' hands commands to a press-worker process; 'local' runs them in-process.",
    "imposition.base_compensation": "Millimetres applied to the innermost spread package.",
}


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def get_default_config_container(resolve: bool = False) -> Dict[str, Any]:
    config = _load_default_config()
    return OmegaConf.to_container(config, resolve=resolve, enum_to_str=True)  # type: ignore[return-value]


def build_config_metadata() -> ConfigMetadata:
    defaults = get_default_config_container(resolve=True)
    metadata_section = defaults.get("metadata", {})

    return ConfigMetadata(
        defaults=defaults,
        conversion_methods=CONVERSION_METHODS,
        template_kinds=TEMPLATE_KINDS,
        metadata_fields=list(metadata_section.get("allowed_fields", [])),
        metadata_defaults=dict(metadata_section.get("defaults", {})),
        notes=NOTES,
    )


def make_runtime_config(overrides: Dict[str, Any]) -> DictConfig:
    base_container = OmegaConf.to_container(_load_default_config(), resolve=False)
    base = OmegaConf.create(base_container)
    OmegaConf.set_struct(base, True)

    cli_config = OmegaConf.create(overrides)
    merged = DictConfig(OmegaConf.merge(base, cli_config))
    return merged


@dataclass(frozen=True)
class DispatcherSettings:
    mode: str = "file"
    commands_subdir: str = "commands"
    poll_interval: float = 0.1
    timeout: float = 60.0
    local_workers: int = 2
    result_ttl: float = 600.0


@dataclass(frozen=True)
class BuildSettings:
    conversion_method: str = "pandoc_direct"
    entry_point: str = "main"
    compile_passes: int = 2
    min_pdf_size: int = 1024
    timezone: str = "Europe/Paris"
    compile_command: str = "xelatex -interaction=nonstopmode {tex}"

    def compile_command_for(self, tex_name: str) -> str:
        return self.compile_command.format(tex=tex_name)


@dataclass(frozen=True)
class ImpositionSettings:
    default_pages_per_unit: int = 4
    default_paper_thickness: float = 0.1
    base_compensation: float = -1.10
    retry_failed_package: bool = True
    blank_command: str = "pdflatex -interaction=nonstopmode blank.tex"
    impose_command: str = "xelatex -interaction=nonstopmode -no-shell-escape impose.tex"


@dataclass(frozen=True)
class MetadataSettings:
    allowed_fields: Tuple[str, ...] = ("titre", "auteur", "edition", "spineThickness", "imagecouv")
    defaults: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class UploadSettings:
    allowed_mime_types: Tuple[str, ...] = ("image/jpeg", "image/png", "image/gif", "image/svg+xml")
    max_size: int = 5 * 1024 * 1024


@dataclass(frozen=True)
class PressConfig:
    """
    Immutable settings shared by the dispatcher, resolver, builder and job manager.

    Built from the merged omegaconf tree so that a component never reaches for
    process-wide state: tests and alternative deployments simply construct a
    different instance.
    """

    workspace_root: Path
    library_root: Path
    user_templates_root: Path
    public_root: Path
    uploads_root: Path
    database_path: Path
    api_url: str
    dispatcher: DispatcherSettings = field(default_factory=DispatcherSettings)
    build: BuildSettings = field(default_factory=BuildSettings)
    imposition: ImpositionSettings = field(default_factory=ImpositionSettings)
    metadata: MetadataSettings = field(default_factory=MetadataSettings)
    uploads: UploadSettings = field(default_factory=UploadSettings)
    max_workers: int = 2
    log_level: str = "INFO"

    @property
    def commands_dir(self) -> Path:
        return self.workspace_root / self.dispatcher.commands_subdir

    @classmethod
    def from_config(cls, config: DictConfig) -> "PressConfig":
        resolved: Dict[str, Any] = OmegaConf.to_container(config, resolve=True, enum_to_str=True)  # type: ignore[assignment]
        paths = resolved["paths"]
        metadata = resolved.get("metadata", {})
        uploads = resolved.get("uploads", {})

        return cls(
            workspace_root=Path(paths["workspace"]),
            library_root=Path(paths["library"]),
            user_templates_root=Path(paths["user_templates"]),
            public_root=Path(paths["public"]),
            uploads_root=Path(paths["uploads"]),
            database_path=Path(paths["database"]),
            api_url=str(resolved["api"]["url"]).rstrip("/"),
            dispatcher=DispatcherSettings(**resolved.get("dispatcher", {})),
            build=BuildSettings(**resolved.get("build", {})),
            imposition=ImpositionSettings(**resolved.get("imposition", {})),
            metadata=MetadataSettings(
                allowed_fields=tuple(metadata.get("allowed_fields", [])),
                defaults={key: str(value) for key, value in metadata.get("defaults", {}).items()},
            ),
            uploads=UploadSettings(
                allowed_mime_types=tuple(uploads.get("allowed_mime_types", [])),
                max_size=int(uploads.get("max_size", UploadSettings.max_size)),
            ),
            max_workers=int(resolved.get("jobs", {}).get("max_workers", 2)),
            log_level=str(resolved.get("logging", {}).get("level", "INFO")).upper(),
        )


def load_press_config(overrides: Optional[Dict[str, Any]] = None) -> PressConfig:
    return PressConfig.from_config(make_runtime_config(overrides or {}))
