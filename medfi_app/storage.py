# medfi_app/storage.py
"""Client-local, non-authoritative state: the hidden-records set and the
last-upload token. Nothing here touches the ledger's record sequence."""

import json
import logging
import os
import tempfile

from medfi_app.content_ref import is_ipfs_hash

logger = logging.getLogger(__name__)

HIDDEN_RECORDS_KEY = "hiddenRecords"
LAST_UPLOAD_KEY = "lastUpload"


class MemoryStore:
    """Dict-backed key/value store (tests, single-process dev)."""

    def __init__(self, initial=None):
        self._data = dict(initial or {})

    def get(self, key, default=None):
        return self._data.get(key, default)

    def set(self, key, value):
        self._data[key] = value

    def clear(self, key):
        self._data.pop(key, None)


class JsonFileStore:
    """Key/value store persisted as one JSON object on disk.

    Every write re-reads the file and replaces it atomically, so the last
    writer wins per key.
    """

    def __init__(self, path):
        self.path = path

    def _load(self):
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Client state file %s unreadable, starting empty: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data):
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def get(self, key, default=None):
        return self._load().get(key, default)

    def set(self, key, value):
        data = self._load()
        data[key] = value
        self._save(data)

    def clear(self, key):
        data = self._load()
        if key in data:
            del data[key]
            self._save(data)


class HiddenRecords:
    """Set of content refs the user chose to hide from their record views."""

    def __init__(self, store):
        self.store = store

    def refs(self):
        raw = self.store.get(HIDDEN_RECORDS_KEY)
        if not raw:
            return set()
        try:
            values = json.loads(raw) if isinstance(raw, str) else raw
        except ValueError:
            logger.warning("Discarding malformed hidden-records value: %r", raw)
            return set()
        return {str(v) for v in values}

    def _write(self, refs):
        self.store.set(HIDDEN_RECORDS_KEY, json.dumps(sorted(refs)))

    def hide(self, content_ref):
        refs = self.refs()
        refs.add(content_ref)
        self._write(refs)

    def hide_legacy(self, records):
        """Hides every legacy-format record in ``records``; returns how many were newly hidden."""
        refs = self.refs()
        legacy = {r.content_ref for r in records if not is_ipfs_hash(r.content_ref)}
        added = legacy - refs
        if added:
            self._write(refs | added)
        return len(added)

    def show_all(self):
        self.store.clear(HIDDEN_RECORDS_KEY)

    def apply(self, records):
        """Returns (visible_records, has_hidden)."""
        hidden = self.refs()
        visible = [r for r in records if r.content_ref not in hidden]
        return visible, len(visible) < len(records)


class LastUploadToken:
    """Change-notification token: the timestamp of the most recent upload."""

    def __init__(self, store):
        self.store = store

    def get(self):
        return self.store.get(LAST_UPLOAD_KEY)

    def set(self, timestamp):
        self.store.set(LAST_UPLOAD_KEY, timestamp)
