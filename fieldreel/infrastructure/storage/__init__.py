"""
Object storage integration for recordings.

Supports S3 and S3-compatible stores (R2, MinIO) via boto3 and httpx.
Includes mock mode for local development without credentials.
"""
