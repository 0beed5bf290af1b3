"""
Campaign Sync - Resilient Campaign Synchronization

Responsibilities:
- Obtain and cache a bearer token, refreshing it before expiry or on 401
- Page through the ad platform's campaign listing until has_more=false
- Retry timeouts and 5xx with exponential backoff and jitter; wait out 429s
  using the server's Retry-After hint on a separate budget
- Sync every campaign on a bounded worker pool; one failure never aborts the batch
- Upsert campaigns idempotently into the relational store
- Publish run summaries and dead-letter events to Redis Pub/Sub

Output:
- campaigns table (upserted by campaign id, synced_at refreshed on every write)
- Redis events: campaigns.synced (sync_completed), campaigns.dlq (sync_failed)
"""
