"""CloudronManifest.json handling."""

import base64
import json
from pathlib import Path
from typing import Any, Dict, Optional

MANIFEST_FILE = "CloudronManifest.json"


class ManifestError(Exception):
    """Raised when the manifest is missing or unreadable."""
    pass


def locate_manifest(start: Optional[Path] = None) -> Optional[Path]:
    """Find CloudronManifest.json in ``start`` or any of its parents.

    Args:
        start: Directory to start from. Defaults to the working directory

    Returns:
        Path to the manifest, or None if there is none
    """
    directory = (start or Path.cwd()).resolve()
    for candidate_dir in (directory, *directory.parents):
        candidate = candidate_dir / MANIFEST_FILE
        if candidate.is_file():
            return candidate
    return None


def load_manifest(path: Path) -> Dict[str, Any]:
    """Read and minimally validate a manifest.

    Raises:
        ManifestError: If the file cannot be read or lacks an id
    """
    try:
        manifest = json.loads(Path(path).read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise ManifestError(f"Unable to read manifest {path}: {e}")

    if not isinstance(manifest, dict):
        raise ManifestError(f"Invalid {MANIFEST_FILE}: not a JSON object")
    if not manifest.get("id"):
        raise ManifestError(f"Invalid {MANIFEST_FILE}: missing id")
    return manifest


def find_manifest(start: Optional[Path] = None) -> Dict[str, Any]:
    """Locate and load the manifest, or raise ManifestError."""
    path = locate_manifest(start)
    if path is None:
        raise ManifestError(f"No {MANIFEST_FILE} found")
    return load_manifest(path)


def default_port_bindings(manifest: Dict[str, Any]) -> Dict[str, Any]:
    return {
        env: (spec or {}).get("defaultValue")
        for env, spec in (manifest.get("tcpPorts") or {}).items()
    }


def ports_changed(app_port_bindings: Dict[str, Any], manifest: Dict[str, Any]) -> bool:
    """True when the app's bound ports differ from the ports the manifest declares."""
    return sorted(app_port_bindings or {}) != sorted(manifest.get("tcpPorts") or {})


def encode_icon(manifest: Dict[str, Any], manifest_path: Optional[Path]) -> Optional[str]:
    """Base64 of a local ``file://`` icon, resolved relative to the manifest."""
    icon = manifest.get("icon")
    if not icon or not icon.startswith("file://"):
        return None

    icon_path = Path(icon[len("file://"):])
    if manifest_path and not icon_path.is_absolute():
        icon_path = manifest_path.parent / icon_path
    if not icon_path.is_file():
        return None
    return base64.b64encode(icon_path.read_bytes()).decode("ascii")
