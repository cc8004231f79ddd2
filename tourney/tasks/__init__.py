"""Celery tasks (periodic lifecycle driver)."""
