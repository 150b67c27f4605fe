"""Provider persisting resources as JSON files under a root directory."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

from stratum.providers.simulated import SimulatedProvider

logger = logging.getLogger("stratum.providers")


class LocalFileProvider(SimulatedProvider):
    """Each resource is ``<root>/<type>/<id>.json``.

    Configuration keys: ``root`` and ``replace_attributes``.
    """

    name = "local"

    def __init__(
        self,
        config: Optional[Mapping[str, Any]] = None,
        resource_types: Optional[Iterable[str]] = None,
        root: Optional[Path] = None,
    ):
        super().__init__(config, resource_types=resource_types)
        if root is not None:
            self.config.setdefault("root", str(root))

    @property
    def root(self) -> Path:
        return Path(self.config.get("root", ".stratum/resources")).expanduser()

    def _path(self, resource_type: str, resource_id: str) -> Path:
        return self.root / resource_type / f"{resource_id}.json"

    def _find(self, resource_id: str) -> Optional[Path]:
        if not self.root.exists():
            return None
        matches = sorted(self.root.glob(f"*/{resource_id}.json"))
        return matches[0] if matches else None

    def _snapshot(self) -> dict[str, tuple[str, dict[str, Any]]]:
        snapshot: dict[str, tuple[str, dict[str, Any]]] = {}
        if self.root.exists():
            for path in sorted(self.root.glob("*/*.json")):
                snapshot[path.stem] = (path.parent.name, json.loads(path.read_text(encoding="utf-8")))
        return snapshot

    def _load(self, resource_id: str) -> tuple[str, dict[str, Any]]:
        path = self._find(resource_id)
        if path is None:
            raise KeyError(resource_id)
        return path.parent.name, json.loads(path.read_text(encoding="utf-8"))

    def _store(self, resource_type: str, resource_id: str, attributes: dict[str, Any]) -> None:
        path = self._path(resource_type, resource_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(attributes, indent=2, sort_keys=True), encoding="utf-8")
        tmp.replace(path)

    def _discard(self, resource_id: str) -> None:
        path = self._find(resource_id)
        if path is not None:
            path.unlink()

    @property
    def _counters_path(self) -> Path:
        return self.root / "counters.state"

    def _next_id(self, resource_type: str) -> str:
        """Ids come from a persisted per-type counter and are never reused."""
        counters: dict[str, int] = {}
        if self._counters_path.exists():
            counters = json.loads(self._counters_path.read_text(encoding="utf-8"))
        issued = counters.get(resource_type, 0)
        directory = self.root / resource_type
        if directory.exists():
            # roots written before the counter existed
            for path in directory.glob("*.json"):
                suffix = path.stem.rsplit("-", 1)[-1]
                if suffix.isdigit():
                    issued = max(issued, int(suffix))
        counters[resource_type] = issued + 1

        self.root.mkdir(parents=True, exist_ok=True)
        tmp = self._counters_path.with_suffix(".tmp")
        tmp.write_text(json.dumps(counters, sort_keys=True), encoding="utf-8")
        tmp.replace(self._counters_path)
        return f"{resource_type}-{counters[resource_type]:04d}"
