"""
Per-source JSON state store

Layout under the state directory:

    <state_dir>/<source>/signature.json   last committed change signature
    <state_dir>/<source>/latest.json      last published snapshot payload
    <state_dir>/<source>/diff.json        diff of the last publication
    <state_dir>/<source>/history.json     capped list of publication summaries

Every write goes to a temp file in the same directory and is renamed over
the target, so readers see either the old or the new document.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from pipeline_errors import PipelineError

logger = logging.getLogger(__name__)


SIGNATURE_KEY = "signature"
LATEST_KEY = "latest"
DIFF_KEY = "diff"
HISTORY_KEY = "history"


class StateStoreError(PipelineError):
    """Raised when a state document cannot be read or written"""
    pass


class StateStore:
    """Flat key-value store of JSON documents, one directory per source"""

    def __init__(self, state_dir: str = "state"):
        self.root = Path(state_dir)

    def _path(self, source: str, key: str) -> Path:
        return self.root / source / f"{key}.json"

    def read(self, source: str, key: str) -> Optional[Any]:
        """Return the stored document or None if it was never written

        Raises:
            StateStoreError: If the document exists but is not valid JSON
        """
        path = self._path(source, key)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding='utf-8'))
        except (OSError, ValueError) as e:
            raise StateStoreError(f"Cannot read {path}: {e}") from e

    def write(self, source: str, key: str, value: Any) -> Path:
        """Atomically replace one document"""
        path = self._path(source, key)
        path.parent.mkdir(parents=True, exist_ok=True)

        fd, temp_path = tempfile.mkstemp(suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(value, f, ensure_ascii=False, indent=2)
            os.replace(temp_path, path)
        except Exception:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
        logger.debug(f"Wrote {path}")
        return path

    # ============================================
    # TYPED ACCESSORS
    # ============================================

    def get_signature(self, source: str) -> Optional[str]:
        doc = self.read(source, SIGNATURE_KEY)
        if isinstance(doc, dict):
            return doc.get('signature')
        return None

    def get_descriptor(self, source: str) -> Optional[Dict[str, Any]]:
        """Descriptor stored with the last committed signature"""
        doc = self.read(source, SIGNATURE_KEY)
        if isinstance(doc, dict) and isinstance(doc.get('descriptor'), dict):
            return doc['descriptor']
        return None

    def set_signature(self, source: str, signature: str, descriptor: Dict[str, Any],
                      checked_at: str) -> None:
        self.write(source, SIGNATURE_KEY, {
            'signature': signature,
            'descriptor': descriptor,
            'checkedAt': checked_at,
        })

    def get_latest(self, source: str) -> Optional[Dict[str, Any]]:
        return self.read(source, LATEST_KEY)

    def get_history(self, source: str) -> List[Dict[str, Any]]:
        doc = self.read(source, HISTORY_KEY)
        return doc if isinstance(doc, list) else []

    def append_history(self, source: str, item: Dict[str, Any], limit: int) -> List[Dict[str, Any]]:
        """Prepend a summary, keeping at most ``limit`` newest items"""
        history = [item] + self.get_history(source)
        history = history[:max(1, limit)]
        self.write(source, HISTORY_KEY, history)
        return history
