"""Edit clustering for trackedits.

Groups a stream of granular edit records into clusters:
  consecutive_typing  only inserts
  word_replacement    inserts and deletes (a word typed over a selection)
  deletion            only deletes
  mixed               anything else
"""
