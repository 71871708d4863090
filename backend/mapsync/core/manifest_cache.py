"""
Manifest cache keyed by (path, mtime).
The YAML file is re-parsed only when its modification time changes; one cache
instance is created by the caller and passed to whoever needs manifests.
"""
from __future__ import annotations

import logging
from pathlib import Path
from threading import Lock

import yaml

from mapsync.core.config import settings
from mapsync.core.errors import ManifestError
from mapsync.schemas.manifest import Manifest, manifests_from_document

logger = logging.getLogger(__name__)


class ManifestCache:
    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path or settings.manifest_path)
        self._lock = Lock()
        self._entries: dict[Path, tuple[float, dict[str, Manifest]]] = {}

    def get(self, path: str | Path | None = None) -> dict[str, Manifest]:
        target = Path(path) if path is not None else self.path
        try:
            mtime = target.stat().st_mtime
        except OSError as exc:
            raise ManifestError(f'manifest file {str(target)!r} is not readable: {exc}') from exc
        with self._lock:
            entry = self._entries.get(target)
            if entry is not None and entry[0] == mtime:
                return dict(entry[1])
        manifests = self._load(target)
        with self._lock:
            self._entries[target] = (mtime, manifests)
        logger.info('[manifest] loaded %d entities from %s', len(manifests), target)
        return dict(manifests)

    def entity(self, name: str, path: str | Path | None = None) -> Manifest:
        manifests = self.get(path)
        if name not in manifests:
            raise ManifestError(f'unknown entity {name!r}; known: {", ".join(sorted(manifests)) or "-"}')
        return manifests[name]

    def invalidate(self, path: str | Path | None = None) -> None:
        with self._lock:
            if path is None:
                self._entries.clear()
            else:
                self._entries.pop(Path(path), None)

    @staticmethod
    def _load(path: Path) -> dict[str, Manifest]:
        try:
            with path.open('r', encoding='utf-8') as handle:
                document = yaml.safe_load(handle)
        except yaml.YAMLError as exc:
            raise ManifestError(f'manifest file {str(path)!r} is not valid YAML: {exc}') from exc
        return manifests_from_document(document)
