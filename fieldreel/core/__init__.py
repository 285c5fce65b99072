"""
Core business logic for recording uploads and playback.

This module is framework-agnostic - it doesn't import FastAPI, boto3,
Snowflake, or any infrastructure concerns. The object store and the
recording registry are reached through protocols, so the upload logic
can be tested against in-memory fakes.
"""
