"""Local storage on the emission device.

The device's own copy of receipts and journals is authoritative; failures
here propagate to the caller.
"""

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional


class EmissionPointStorage(ABC):
    """Every backend implements the full contract."""

    @abstractmethod
    def save_receipt(self, document_number: str, receipt: dict[str, Any]) -> None: ...

    @abstractmethod
    def get_receipt(self, document_number: str) -> Optional[dict[str, Any]]: ...

    @abstractmethod
    def list_receipts(self) -> list[dict[str, Any]]: ...

    @abstractmethod
    def save_journal(self, reference_date: str, journal: dict[str, Any]) -> None: ...

    @abstractmethod
    def get_journal(self, reference_date: str) -> Optional[dict[str, Any]]: ...

    @abstractmethod
    def save_metadata(self, key: str, value: Any) -> None: ...

    @abstractmethod
    def get_metadata(self, key: str) -> Any: ...

    @abstractmethod
    def clear(self) -> None: ...


class MemoryStorage(EmissionPointStorage):
    def __init__(self) -> None:
        self._receipts: dict[str, dict[str, Any]] = {}
        self._journals: dict[str, dict[str, Any]] = {}
        self._metadata: dict[str, Any] = {}

    def save_receipt(self, document_number: str, receipt: dict[str, Any]) -> None:
        self._receipts[document_number] = receipt

    def get_receipt(self, document_number: str) -> Optional[dict[str, Any]]:
        return self._receipts.get(document_number)

    def list_receipts(self) -> list[dict[str, Any]]:
        return [self._receipts[k] for k in sorted(self._receipts)]

    def save_journal(self, reference_date: str, journal: dict[str, Any]) -> None:
        self._journals[reference_date] = journal

    def get_journal(self, reference_date: str) -> Optional[dict[str, Any]]:
        return self._journals.get(reference_date)

    def save_metadata(self, key: str, value: Any) -> None:
        self._metadata[key] = value

    def get_metadata(self, key: str) -> Any:
        return self._metadata.get(key)

    def clear(self) -> None:
        self._receipts.clear()
        self._journals.clear()
        self._metadata.clear()


class FileStorage(EmissionPointStorage):
    """JSON files under ``root``: receipts/, journals/ and metadata.json."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _write(self, path: Path, data: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
        tmp.replace(path)

    def _read(self, path: Path) -> Any:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None

    def save_receipt(self, document_number: str, receipt: dict[str, Any]) -> None:
        self._write(self.root / "receipts" / f"{document_number}.json", receipt)

    def get_receipt(self, document_number: str) -> Optional[dict[str, Any]]:
        return self._read(self.root / "receipts" / f"{document_number}.json")

    def list_receipts(self) -> list[dict[str, Any]]:
        folder = self.root / "receipts"
        if not folder.exists():
            return []
        return [self._read(p) for p in sorted(folder.glob("*.json"))]

    def save_journal(self, reference_date: str, journal: dict[str, Any]) -> None:
        self._write(self.root / "journals" / f"{reference_date}.json", journal)

    def get_journal(self, reference_date: str) -> Optional[dict[str, Any]]:
        return self._read(self.root / "journals" / f"{reference_date}.json")

    def _metadata(self) -> dict[str, Any]:
        return self._read(self.root / "metadata.json") or {}

    def save_metadata(self, key: str, value: Any) -> None:
        metadata = self._metadata()
        metadata[key] = value
        self._write(self.root / "metadata.json", metadata)

    def get_metadata(self, key: str) -> Any:
        return self._metadata().get(key)

    def clear(self) -> None:
        for sub in ("receipts", "journals"):
            folder = self.root / sub
            if folder.exists():
                for path in folder.glob("*.json"):
                    path.unlink()
        (self.root / "metadata.json").unlink(missing_ok=True)
