"""Celery application setup."""

from __future__ import annotations

from celery import Celery

from challenge_engine.config import settings

celery_app = Celery(
    "challenge_engine",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["challenge_engine.tasks.metrics"],
)

celery_app.conf.task_always_eager = settings.celery_task_always_eager
