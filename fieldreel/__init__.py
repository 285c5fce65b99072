"""
FieldReel - upload and playback service for packing-station recordings.

This package contains the complete application:
- core: Framework-agnostic upload orchestration and delivery
- infrastructure: Object storage and recording registry integrations
- api: FastAPI routes and dependencies
- config: Application configuration
"""

__version__ = "0.1.0"
