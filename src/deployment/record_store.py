"""
LOT 6: Deployment Record Store

Persistance des DeploymentRecord pour reprise après redémarrage.

Invariants:
    save() remplace le record entier (écriture atomique sur disque).
    Les records retournés sont des copies: le contrôleur reste seul propriétaire.
"""

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Union

from .interfaces import DeploymentRecord, IDeploymentRecordStore


class RecordStoreError(Exception):
    """Erreur de lecture/écriture du store."""

    pass


class InMemoryRecordStore(IDeploymentRecordStore):
    """Store en mémoire (sérialisation dict pour isoler les copies)."""

    def __init__(self) -> None:
        self._records: Dict[str, dict] = {}

    async def save(self, record: DeploymentRecord) -> None:
        self._records[record.request_id] = record.to_dict()

    async def get(self, request_id: str) -> Optional[DeploymentRecord]:
        data = self._records.get(request_id)
        return DeploymentRecord.from_dict(data) if data else None

    async def list_records(self) -> List[DeploymentRecord]:
        return [DeploymentRecord.from_dict(d) for d in self._records.values()]

    async def list_in_flight(self, listener_id: Optional[str] = None) -> List[DeploymentRecord]:
        return [
            r for r in await self.list_records()
            if not r.state.is_terminal and (listener_id is None or r.listener_id == listener_id)
        ]


class JsonFileRecordStore(IDeploymentRecordStore):
    """
    Un fichier JSON par requête dans un répertoire.

    Écriture dans un fichier temporaire puis os.replace (atomique).
    """

    def __init__(self, directory: Union[str, Path]) -> None:
        self._directory = Path(directory)
        self._directory.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def _path_for(self, request_id: str) -> Path:
        safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in request_id)
        return self._directory / f"{safe}.json"

    async def save(self, record: DeploymentRecord) -> None:
        payload = json.dumps(record.to_dict(), indent=2, sort_keys=True)
        target = self._path_for(record.request_id)
        async with self._lock:
            fd, tmp_path = tempfile.mkstemp(dir=self._directory, suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(payload)
                os.replace(tmp_path, target)
            except OSError as e:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise RecordStoreError(f"Cannot write {target}: {e}")

    def _load(self, path: Path) -> DeploymentRecord:
        try:
            with open(path, "r", encoding="utf-8") as handle:
                return DeploymentRecord.from_dict(json.load(handle))
        except (OSError, ValueError, KeyError) as e:
            raise RecordStoreError(f"Cannot read {path}: {e}")

    async def get(self, request_id: str) -> Optional[DeploymentRecord]:
        path = self._path_for(request_id)
        if not path.exists():
            return None
        return self._load(path)

    async def list_records(self) -> List[DeploymentRecord]:
        return [self._load(p) for p in sorted(self._directory.glob("*.json"))]

    async def list_in_flight(self, listener_id: Optional[str] = None) -> List[DeploymentRecord]:
        return [
            r for r in await self.list_records()
            if not r.state.is_terminal and (listener_id is None or r.listener_id == listener_id)
        ]
