"""
Dead-Letter Replay App

Responsibilities:
- Consume the dead-letter streams of the analyzer and indexer pipelines
- Discard messages that reached DLQ_MAX_RETRIES, with a warning
- Back off according to the retry count, then reprocess through the
  pipeline's own decode, staleness and business steps
- Republish failures with the retry count incremented
"""
