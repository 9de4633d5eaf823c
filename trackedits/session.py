"""Explicitly owned state of one editing session.

An EditSession is created when an editing session starts and passed into the
operations that need it.  It owns:
  - the active cluster set, rebuilt per document on every clustering pass
  - the producer registry
  - the channel hub (and therefore the loop guard of the commits channel)

``reset()`` clears all of it; nothing is kept in module-level globals.
"""

from __future__ import annotations

import logging

from trackedits.config import Settings, settings as default_settings
from trackedits.events.channels import ChannelHub
from trackedits.models import EditCluster, new_id
from trackedits.producers import ProducerRegistry

logger = logging.getLogger(__name__)


class EditSession:
    """Active clusters, producers and channels for one editing session."""

    def __init__(self, session_id: str | None = None, settings: Settings | None = None) -> None:
        self.session_id = session_id or new_id("session")
        self.settings = settings or default_settings
        self.registry = ProducerRegistry(self.settings)
        self.channels = ChannelHub(self.settings)
        self._clusters: dict[str, EditCluster] = {}
        self._by_document: dict[str | None, list[str]] = {}

    def replace_clusters(self, document_id: str | None, clusters: tuple[EditCluster, ...]) -> None:
        """Swap in the result of a clustering pass for *document_id*."""
        for cluster_id in self._by_document.pop(document_id, []):
            self._clusters.pop(cluster_id, None)
        self._by_document[document_id] = [cluster.id for cluster in clusters]
        for cluster in clusters:
            self._clusters[cluster.id] = cluster

    def get_cluster(self, cluster_id: str) -> EditCluster | None:
        return self._clusters.get(cluster_id)

    def remove_cluster(self, cluster_id: str) -> bool:
        """Drop one active cluster (e.g. once the host accepted or rejected it)."""
        if self._clusters.pop(cluster_id, None) is None:
            return False
        for ids in self._by_document.values():
            if cluster_id in ids:
                ids.remove(cluster_id)
                break
        return True

    def all_clusters(self, document_id: str | None = None) -> list[EditCluster]:
        """Active clusters, optionally restricted to one document, in pass order."""
        if document_id is not None:
            return [self._clusters[cid] for cid in self._by_document.get(document_id, [])]
        return [self._clusters[cid] for ids in self._by_document.values() for cid in ids]

    def clear(self) -> None:
        self._clusters.clear()
        self._by_document.clear()

    def reset(self) -> None:
        """Clear clusters, producers and loop-guard state."""
        self.clear()
        self.registry.clear()
        self.channels.guard.reset()
        logger.debug("Session %s reset", self.session_id)
