"""Groups raw edit records into semantic clusters.

The scan is a single pass over the records sorted by timestamp.  An edit
joins the current cluster when it follows the previous edit within
``cluster_time_window_ms`` AND is spatially continuous with it:

  - ``|prev.end - edit.start| <= spatial_threshold_chars``, or
  - both are inserts and the new one touches or directly follows the previous
    one's inserted text, or
  - the previous edit is a delete and the new edit starts within
    ``spatial_threshold_chars`` of either end of the deleted range (typing a
    replacement over a selection).

Anything else starts a new cluster.  Because clusters are consecutive runs of
the sorted sequence they are time-disjoint, and every valid record lands in
exactly one of them.

Ties: edits with equal timestamps (multi-cursor typing, batched host events)
keep their input order and are still split by spatial continuity.  Adjacent
clusters may then share an endpoint, ``prev.end_time == next.start_time``,
but never more: each cluster starts no earlier than the previous one ends.

Clustering is synchronous and never runs twice concurrently for the same
document: a per-document lock enforces the single-writer rule while
different documents may be clustered from different threads.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Mapping
from typing import Any

from trackedits.config import Settings, settings as default_settings
from trackedits.errors import ConcurrentClusteringError, EditValidationError
from trackedits.events.channels import ChannelHub
from trackedits.models import (
    ClusteringResult,
    ClusterMetadata,
    ClusterType,
    EditCluster,
    EditRecord,
    EditType,
    RecordRejection,
    new_id,
    parse_edit_record,
)
from trackedits.session import EditSession

logger = logging.getLogger(__name__)

DISABLED_REASON = "clustering disabled (enable_clustering=False)"


class EditClusterManager:
    """Turns a stream of granular edit records into presentable clusters.

    Args:
        settings: Window, threshold and feature-gate options.
        channels: Hub used when no session is passed to cluster_edits().
    """

    def __init__(self, settings: Settings | None = None, channels: ChannelHub | None = None) -> None:
        self._settings = settings or default_settings
        self._channels = channels
        self._guard = threading.Lock()
        self._active_documents: set[str | None] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def cluster_edits(
        self,
        records: Iterable[EditRecord | Mapping[str, Any]],
        session: EditSession | None = None,
        *,
        document_id: str | None = None,
    ) -> ClusteringResult:
        """Cluster one batch of edit records.

        Malformed records are excluded, listed in ``rejected`` and published
        on the rejections channel.  When clustering is disabled the result
        carries ``skipped_reason`` and no clusters.

        Args:
            records:     Edit records in arrival order (models or raw mappings).
            session:     Owner of the active cluster set; its channels are used.
            document_id: Document the records belong to.

        Returns:
            ClusteringResult with the clusters in time order.

        Raises:
            ConcurrentClusteringError: If the same document is already being
                clustered.
        """
        channels = session.channels if session is not None else self._channels
        valid, rejected = _validate(records)
        if channels is not None:
            for rejection in rejected:
                channels.rejections.publish(rejection)
        if rejected:
            logger.warning("Rejected %d malformed edit record(s) for %s", len(rejected), document_id)

        if not self._settings.enable_clustering:
            logger.info("Clustering skipped for %s: %s", document_id, DISABLED_REASON)
            result = ClusteringResult(
                document_id=document_id,
                rejected=tuple(rejected),
                skipped_reason=DISABLED_REASON,
            )
            if channels is not None:
                channels.clusters.publish(result)
            return result

        self._enter(document_id)
        try:
            clusters = self._build_clusters(valid)
        finally:
            self._exit(document_id)

        if session is not None:
            session.replace_clusters(document_id, clusters)

        logger.debug("Clustered %d edit(s) into %d cluster(s) for %s", len(valid), len(clusters), document_id)
        result = ClusteringResult(document_id=document_id, clusters=clusters, rejected=tuple(rejected))
        if channels is not None:
            channels.clusters.publish(result)
        return result

    # ------------------------------------------------------------------
    # Single-writer rule
    # ------------------------------------------------------------------

    def _enter(self, document_id: str | None) -> None:
        with self._guard:
            if document_id in self._active_documents:
                raise ConcurrentClusteringError(f"document {document_id!r} is already being clustered")
            self._active_documents.add(document_id)

    def _exit(self, document_id: str | None) -> None:
        with self._guard:
            self._active_documents.discard(document_id)

    # ------------------------------------------------------------------
    # Scan
    # ------------------------------------------------------------------

    def _build_clusters(self, edits: list[EditRecord]) -> tuple[EditCluster, ...]:
        ordered = sorted(edits, key=lambda e: e.timestamp)
        groups: list[list[EditRecord]] = []
        for edit in ordered:
            if groups and self._continues(groups[-1][-1], edit):
                groups[-1].append(edit)
            else:
                groups.append([edit])
        return tuple(_make_cluster(group) for group in groups)

    def _continues(self, prev: EditRecord, edit: EditRecord) -> bool:
        if edit.timestamp - prev.timestamp > self._settings.cluster_time_window_ms:
            return False

        threshold = self._settings.spatial_threshold_chars
        if abs(prev.end - edit.start) <= threshold:
            return True
        if prev.type is EditType.INSERT and edit.type is EditType.INSERT:
            typed_end = prev.start + len(prev.text)
            if edit.start in (prev.end, prev.end + 1, typed_end):
                return True
        if prev.type is EditType.DELETE:
            return abs(edit.start - prev.start) <= threshold
        return False


def _validate(records: Iterable[EditRecord | Mapping[str, Any]]) -> tuple[list[EditRecord], list[RecordRejection]]:
    valid: list[EditRecord] = []
    rejected: list[RecordRejection] = []
    for index, raw in enumerate(records):
        try:
            valid.append(parse_edit_record(raw))
        except EditValidationError as exc:
            rejected.append(RecordRejection(index=index, error=exc))
    return valid, rejected


def _classify(edits: tuple[EditRecord, ...]) -> ClusterType:
    types = {edit.type for edit in edits}
    if EditType.INSERT in types and EditType.DELETE in types:
        return ClusterType.WORD_REPLACEMENT
    if types == {EditType.DELETE}:
        return ClusterType.DELETION
    if types == {EditType.INSERT}:
        return ClusterType.CONSECUTIVE_TYPING
    return ClusterType.MIXED


def _make_cluster(group: list[EditRecord]) -> EditCluster:
    edits = tuple(group)
    cluster_type = _classify(edits)
    inserted = "".join(edit.replacement for edit in edits)

    metadata = ClusterMetadata(position=edits[0].start)
    if cluster_type is ClusterType.WORD_REPLACEMENT:
        metadata = ClusterMetadata(
            original_word="".join(e.removed_text for e in edits if e.type is EditType.DELETE),
            new_word="".join(e.text for e in edits if e.type is EditType.INSERT),
            position=edits[0].start,
        )

    return EditCluster(
        id=new_id("cluster"),
        type=cluster_type,
        edits=edits,
        start_time=edits[0].timestamp,
        end_time=edits[-1].timestamp,
        word_count=len(inserted.split()),
        character_count=len(inserted),
        metadata=metadata,
    )


def cluster_edits(
    records: Iterable[EditRecord | Mapping[str, Any]],
    session: EditSession | None = None,
    *,
    document_id: str | None = None,
    settings: Settings | None = None,
) -> ClusteringResult:
    """One-shot clustering with a throwaway manager."""
    if settings is None and session is not None:
        settings = session.settings
    return EditClusterManager(settings).cluster_edits(records, session, document_id=document_id)
