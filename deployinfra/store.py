"""Persisted records: servers, integrations and tunnels as JSON files."""

import json
from pathlib import Path
from typing import Literal, Protocol

RecordKind = Literal["server", "integration", "tunnel"]


class RecordStore(Protocol):
    def get(self, kind: RecordKind, record_id: str) -> dict | None: ...

    def set(self, kind: RecordKind, record_id: str, data: dict) -> None: ...

    def delete(self, kind: RecordKind, record_id: str) -> None: ...

    def all(self, kind: RecordKind) -> list[dict]: ...

    def filter(self, kind: RecordKind, **equals) -> list[dict]: ...


class JSONStore:
    """One JSON file per record at ``{root}/{kind}/{id}.json``.

    :param root: Directory holding the store, created on first write
    """

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _path(self, kind: RecordKind, record_id: str) -> Path:
        if not record_id or "/" in record_id or record_id.startswith("."):
            raise ValueError(f"Invalid record id: '{record_id}'")
        return self.root / kind / f"{record_id}.json"

    def get(self, kind: RecordKind, record_id: str) -> dict | None:
        path = self._path(kind, record_id)
        if not path.exists():
            return None
        return json.loads(path.read_text())

    def set(self, kind: RecordKind, record_id: str, data: dict) -> None:
        path = self._path(kind, record_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(data, indent=2, default=str))
        tmp.replace(path)

    def delete(self, kind: RecordKind, record_id: str) -> None:
        self._path(kind, record_id).unlink(missing_ok=True)

    def all(self, kind: RecordKind) -> list[dict]:
        directory = self.root / kind
        if not directory.is_dir():
            return []
        return [json.loads(p.read_text()) for p in sorted(directory.glob("*.json"))]

    def filter(self, kind: RecordKind, **equals) -> list[dict]:
        """Records whose fields equal every keyword given."""
        return [r for r in self.all(kind) if all(r.get(k) == v for k, v in equals.items())]
