"""
Backend API Service - FastAPI Application

Responsibilities:
- Manual extraction trigger sharing the extractor's single-run guard
- Extraction status (running flag and current checkpoint)
- Health check

Endpoints:
- POST /api/extraction/trigger
- GET /api/extraction/status
- GET /health
"""
