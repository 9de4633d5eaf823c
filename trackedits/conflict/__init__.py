"""Conflict detection and resolution for concurrently proposed edits.

Detection (detector.py) reports five kinds of conflict:
  OVERLAP, SEMANTIC, DEPENDENCY, RESOURCE, PRIORITY

Resolution (merger.py) tries, in order:
  COMPATIBLE  side by side
  SEMANTIC    higher confidence wins among superficial variants
  PRIORITY    higher declared priority wins
  SEQUENTIAL  apply one, re-target the other

Conflicts no strategy resolves become manual-resolution tickets scoped to
their region.
"""
