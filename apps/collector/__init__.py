"""
Collector App - Paginated Article Collection

Responsibilities:
- Scheduled execution (cron via APScheduler, every 10 minutes by default)
- Fetch today's articles from the Safety Data API page by page
- Page 1 fetched eagerly with retries; it fixes the number of pages
- Remaining pages fetched with per-page retries, persisted immediately,
  failed pages resweeped once before the run is failed
- Persist new articles to the ``articles`` table (deduplicated by article id)
"""
