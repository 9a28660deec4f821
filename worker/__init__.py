"""Celery worker entrypoint for scheduled tier jobs."""
