"""
Shared job for the XML sanctions feeds

The change descriptor is the feed's declared date plus the HEAD cache
validators. Reading the declared date needs the body, which is kept for
the ingest step of the same run so the feed is downloaded once.
"""

import logging
from typing import Any, Dict, Optional

from change_detector import feed_descriptor
from feed_parser import PARSERS, parse_feed
from fetcher import CacheValidators, SessionContext
from pipeline_errors import FetchError
from snapshot_models import Snapshot
from state_store import StateStoreError
from sources.base import IngestionJob

logger = logging.getLogger(__name__)

NO_CACHE_HEADERS = {'Cache-Control': 'no-cache', 'Pragma': 'no-cache'}


class XmlFeedJob(IngestionJob):
    """Base for OFAC and UN jobs"""

    date_key = ""

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._body: Optional[bytes] = None
        self._last_modified = ""

    def feed_url(self) -> str:
        raise NotImplementedError

    def _download(self, session: SessionContext) -> bytes:
        if self._body is None:
            response = session.get(self.feed_url(), headers=NO_CACHE_HEADERS)
            self._body = response.content
            self._last_modified = (response.headers.get('Last-Modified') or '').strip()
            logger.info(f"✓ [{self.source}] downloaded {len(self._body) / 1024 / 1024:.1f} MB")
        return self._body

    def _stored_validators(self) -> CacheValidators:
        """Validators from the last committed descriptor, empty if none"""
        try:
            previous = self.store.get_descriptor(self.source) or {}
        except StateStoreError as e:
            logger.warning(f"[{self.source}] stored descriptor unreadable: {e}")
            previous = {}
        return CacheValidators(etag=previous.get('etag', ''),
                               last_modified=previous.get('lastModified', ''))

    def probe_descriptor(self, session: SessionContext) -> Dict[str, Any]:
        self._body = None
        try:
            validators = session.head(self.feed_url())
        except FetchError as e:
            logger.warning(f"[{self.source}] HEAD probe failed: {e}; reusing stored validators")
            validators = self._stored_validators()
        declared = PARSERS[self.source].read_declared_date(self._download(session))
        return feed_descriptor(self.date_key, declared, validators.etag, validators.last_modified)

    def ingest(self, session: SessionContext, run_id: str = "") -> Snapshot:
        data = self._download(session)
        self._body = None
        return parse_feed(self.source, data).to_snapshot(self._last_modified)
