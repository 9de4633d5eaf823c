"""trackedits: edit clustering and multi-producer change consolidation.

Raw edit records from an editor-integration layer are grouped into clusters
(clustering.manager).  When several producers propose changes to one document
concurrently, conflicts are detected (conflict.detector), resolved
(conflict.merger) and committed under a per-document lock
(consolidation.coordinator).  Committed changes propagate on typed channels
guarded against feedback loops (events).
"""
