"""
Analyzer Relay App - Article CDC to Analysis Requests

Responsibilities:
- Consume article change events from the article CDC stream
- Skip non-creation events and events older than the recorded analysis request
- Upsert one analysis request per article and hand it to the analysis stream
- Dead-letter undecodable messages and exhausted requests
"""
