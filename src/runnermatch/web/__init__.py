"""Web interface for Runnermatch.

This package provides the FastAPI application for runner answers, task
dispatch control, ranking previews, and live dispatch events over SSE.
"""

from runnermatch.web.app import create_app

__all__ = ["create_app"]
