"""
Indexer App - Analysis-Result Outbox to Search Documents

Responsibilities:
- Consume change events from the analysis-result outbox stream
- Index a decoded batch with one bulk call, with retries
- Fall back to per-record indexing for the documents the bulk call rejected
- Dead-letter undecodable messages and records that still fail
"""
