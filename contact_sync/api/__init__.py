"""
Contact Sync API Module

FastAPI backend providing REST endpoints for:
- Starting sync jobs per page
- Polling job progress
- Cancelling running jobs
"""
