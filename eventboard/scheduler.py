"""APScheduler integration for the carousel timer."""

from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler

from .carousel import Carousel

logger = logging.getLogger("uvicorn.error")

_scheduler: BackgroundScheduler | None = None


def start_scheduler(carousel: Carousel) -> BackgroundScheduler:
    global _scheduler
    if _scheduler and _scheduler.running:
        return _scheduler
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        carousel.tick,
        "interval",
        seconds=carousel.interval_seconds,
        id="carousel-tick",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.start()
    logger.info("Carousel timer started (every %ss)", carousel.interval_seconds)
    _scheduler = scheduler
    return scheduler


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        _scheduler = None
