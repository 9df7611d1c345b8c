"""
Transformer App - Phase 2: Transformation and Validation

Responsibilities:
- Subscribe to Redis Pub/Sub channel: files.raw_users
- Validate records (id, firstName, email, age, company.department)
- Enrich valid records with departments.csv lookup (department → departmentCode)
- Route invalid records to the dead-letter file with every violated rule
- Publish exactly one batch manifest per raw batch

Outputs:
- processed_users/etl_[rawstem]_[YYYYMMDD_HHMMSS].jsonl (valid records)
- dlq/invalid_[rawstem]_[YYYYMMDD_HHMMSS].jsonl (invalid records with errors)
- Redis event: channel=files.manifests, payload={type, ts, manifest}
"""
