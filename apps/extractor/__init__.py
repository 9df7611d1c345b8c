"""
Extractor App - Phase 1: The Resilient Extractor

Responsibilities:
- Scheduled execution (cron via APScheduler) and manual triggers
- Resumable pagination over the users API (limit/skip, checkpoint after every page)
- Exponential backoff retry strategy via tenacity
- Output raw user data to one JSONL batch file per run
- Publish Redis Pub/Sub events on successful extraction

Output:
- raw_users/records_[YYYYMMDD_HHMMSS].jsonl
- Redis event: channel=files.raw_users, payload={type, path, ts}
"""
