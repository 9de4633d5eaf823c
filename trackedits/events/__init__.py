"""Change-event propagation for trackedits.

Typed in-process channels carry clustering results, conflicts, rejections,
failures and commits between components.  The commits channel can re-trigger
producers and is wrapped by the feedback-loop guard:
  HOP_LIMIT    chain re-propagated more than loop_guard_max_hops times
  OSCILLATION  same producer re-entering one chain too often in the window
"""
