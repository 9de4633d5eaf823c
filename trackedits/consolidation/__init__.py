"""Lock-guarded consolidation of concurrent proposals.

coordinator.py drives each request through its state machine, locks.py
serializes writers per document, manual.py queues manual-resolution tickets
and sink.py defines the host apply collaborator.
"""
