"""Content-addressed signal records and append-only event logs on disk."""

import json
import os
import tempfile
from pathlib import Path
from typing import Iterator

from .log import error, warn


def write_json_atomic(path: Path, obj) -> None:
    """Write obj as JSON via a temp file in the same directory and rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(obj, f, indent=2)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def read_json(path: Path):
    """Parsed JSON or None if the file is missing or unreadable."""
    try:
        with open(path) as f:
            return json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        warn(store_read="corrupt", path=str(path), msg=str(e))
        return None


def read_jsonl(path: Path) -> Iterator[dict]:
    """Stream parsed lines, skipping partial or corrupt ones."""
    try:
        f = open(path)
    except FileNotFoundError:
        return
    with f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except ValueError:
                continue


class RecordStore:
    def __init__(self, data_dir: str | Path):
        self.root = Path(data_dir)
        self.jams_dir = self.root / "jams"
        self.successful_log = self.jams_dir / "successful" / "successful-jams.jsonl"
        self.interactions_log = self.jams_dir / "interactions.jsonl"
        self.attributions_log = self.root / "logs" / "attributions.jsonl"
        self.profit_log = self.root / "logs" / "profit-monitor.jsonl"
        self.beacon_path = self.root / "latest-jam.json"

    def _record_path(self, jam_hash: str) -> Path:
        return self.jams_dir / f"{jam_hash.lower()}.json"

    def put(self, jam_hash: str, record: dict) -> bool:
        try:
            write_json_atomic(self._record_path(jam_hash), record)
            return True
        except OSError as e:
            error(store_put="failed", hash=jam_hash, msg=str(e))
            return False

    def get(self, jam_hash: str) -> dict | None:
        """Record by content hash or by an on-chain alias."""
        data = read_json(self._record_path(jam_hash))
        if isinstance(data, dict) and "alias_of" in data:
            data = read_json(self._record_path(data["alias_of"]))
        return data if isinstance(data, dict) else None

    def update(self, jam_hash: str, patch: dict) -> bool:
        record = self.get(jam_hash)
        if record is None:
            warn(store_update="missing", hash=jam_hash)
            return False
        record.update(patch)
        return self.put(record["hash"], record)

    def link(self, alias: str, jam_hash: str) -> bool:
        """Make get(alias) resolve to the record stored under jam_hash."""
        if alias.lower() == jam_hash.lower():
            return True
        try:
            write_json_atomic(self._record_path(alias), {"alias_of": jam_hash})
            return True
        except OSError as e:
            error(store_link="failed", alias=alias, hash=jam_hash, msg=str(e))
            return False

    def list_hashes(self) -> list[str]:
        if not self.jams_dir.exists():
            return []
        return sorted(p.stem for p in self.jams_dir.glob("0x*.json"))

    def record_versions(self) -> dict[str, tuple[int, int]]:
        """(mtime_ns, size) per stored file, aliases included. Changes whenever a file is rewritten."""
        versions = {}
        if not self.jams_dir.exists():
            return versions
        for path in self.jams_dir.glob("0x*.json"):
            try:
                st = path.stat()
            except FileNotFoundError:
                continue
            versions[path.stem] = (st.st_mtime_ns, st.st_size)
        return versions

    def list_records(self) -> Iterator[dict]:
        for jam_hash in self.list_hashes():
            data = read_json(self._record_path(jam_hash))
            if isinstance(data, dict) and "alias_of" not in data and "hash" in data:
                yield data

    def _append(self, path: Path, entry: dict) -> bool:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a") as f:
                f.write(json.dumps(entry, separators=(",", ":")) + "\n")
            return True
        except OSError as e:
            error(store_append="failed", path=str(path), msg=str(e))
            return False

    def append_successful(self, compressed: dict) -> bool:
        return self._append(self.successful_log, compressed)

    def list_successful(self) -> Iterator[dict]:
        return read_jsonl(self.successful_log)

    def list_by_intent(self, intent: str) -> Iterator[dict]:
        for entry in self.list_successful():
            if entry.get("intent_class") == intent:
                yield entry

    def append_interaction(self, signal_hash: str, counterparty: str, yield_amount: int,
                           timestamp: str) -> bool:
        return self._append(self.interactions_log, {
            "timestamp": timestamp,
            "signal_hash": signal_hash,
            "counterparty": counterparty,
            "yield": yield_amount,
        })

    def get_interaction_history(self, signal_hash: str) -> list[dict]:
        return [e for e in read_jsonl(self.interactions_log) if e.get("signal_hash") == signal_hash]

    def append_attribution(self, event: dict) -> bool:
        return self._append(self.attributions_log, event)

    def list_attributions(self) -> Iterator[dict]:
        return read_jsonl(self.attributions_log)

    def append_profit(self, entry: dict) -> bool:
        return self._append(self.profit_log, entry)

    def list_profits(self) -> Iterator[dict]:
        return read_jsonl(self.profit_log)

    def write_beacon(self, beacon: dict) -> bool:
        try:
            write_json_atomic(self.beacon_path, beacon)
            return True
        except OSError as e:
            error(beacon_write="failed", msg=str(e))
            return False

    def read_beacon(self) -> dict | None:
        return read_json(self.beacon_path)
