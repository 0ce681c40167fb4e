"""
Scheduled job runner.

AutoTrack does not run its own timer thread: the host (cron, a k8s CronJob,
...) calls ``flask run-job <name>`` and this module executes the named job.

    @register_job("lifecycle_sweep")
    def lifecycle_sweep(app) -> dict:
        ...

``SchedulerService.run_job`` wraps the call in an app context, turns any
exception into a ``failed`` outcome and keeps the most recent outcome per
job for the health endpoint.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Callable

from flask import Flask, has_app_context

logger = logging.getLogger(__name__)

JobFn = Callable[[Flask], dict]

_job_registry: dict[str, JobFn] = {}
_last_outcomes: dict[str, dict] = {}


def register_job(name: str):
    def decorator(fn: JobFn) -> JobFn:
        if name in _job_registry and _job_registry[name] is not fn:
            raise ValueError(f"Job already registered: {name}")
        _job_registry[name] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, JobFn]:
    return dict(_job_registry)


def get_last_outcomes() -> dict[str, dict]:
    """Most recent outcome of each job run in this process."""
    return {name: dict(outcome) for name, outcome in _last_outcomes.items()}


class SchedulerService:
    _app: Flask | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        cls._app = app
        app.extensions["autotrack.scheduler"] = cls
        logger.info("Job runner ready: %s", ", ".join(sorted(_job_registry)) or "no jobs")

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """Run one job and return ``{job_name, status, started_at, duration_ms, result, error}``.

        ``status`` is ``success`` or ``failed``; an unknown job (or a runner
        without an app) gives ``error`` and is not recorded.
        """
        fn = _job_registry.get(job_name)
        if fn is None:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}
        if cls._app is None:
            return {"job_name": job_name, "status": "error", "error": "Job runner not initialised"}

        outcome = {
            "job_name": job_name,
            "status": "success",
            "started_at": datetime.now(timezone.utc).isoformat(),
            "result": None,
            "error": None,
        }
        clock = time.monotonic()
        try:
            if has_app_context():
                outcome["result"] = fn(cls._app)
            else:
                with cls._app.app_context():
                    outcome["result"] = fn(cls._app)
        except Exception as exc:
            outcome["status"] = "failed"
            outcome["error"] = str(exc)
            logger.exception("Job %s raised", job_name, extra={"job": job_name})
        outcome["duration_ms"] = int((time.monotonic() - clock) * 1000)

        _last_outcomes[job_name] = outcome
        log = logger.info if outcome["status"] == "success" else logger.warning
        log("Job %s %s in %dms: %s", job_name, outcome["status"], outcome["duration_ms"],
            outcome["result"] or outcome["error"], extra={"job": job_name})
        return outcome
