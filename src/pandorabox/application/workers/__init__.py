"""Worker system - Background maintenance jobs."""

from pandorabox.application.workers.cache_purge_worker import CachePurgeWorker

__all__ = ["CachePurgeWorker"]
