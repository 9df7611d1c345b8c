"""
Delivery App - Phase 3: Secure Delivery

Responsibilities:
- Subscribe to Redis Pub/Sub channel: files.manifests
- Record file metadata (record counts, delivery status) in SQLite
- Encrypt every non-empty batch file with AES-256-GCM
- Upload to SFTP exactly once per file (receipts survive restarts)

Remote layout:
- <SFTP_REMOTE_BASE>/raw_users/, processed_users/, dlq/ (files end in .enc)
"""
