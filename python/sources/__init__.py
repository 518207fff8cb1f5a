"""
Per-source ingestion jobs

JOBS maps each source identifier to its job class.
"""

from typing import Dict, Type

from sources.base import IngestionJob, JobResult
from sources.kofiu_restricted import KofiuRestrictedJob
from sources.kofiu_vasp import KofiuVaspJob
from sources.ofac import OfacJob
from sources.un import UnJob

JOBS: Dict[str, Type[IngestionJob]] = {
    OfacJob.source: OfacJob,
    UnJob.source: UnJob,
    KofiuVaspJob.source: KofiuVaspJob,
    KofiuRestrictedJob.source: KofiuRestrictedJob,
}

__all__ = [
    'JOBS',
    'IngestionJob',
    'JobResult',
    'OfacJob',
    'UnJob',
    'KofiuVaspJob',
    'KofiuRestrictedJob',
]
