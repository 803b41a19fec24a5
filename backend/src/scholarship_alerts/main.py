from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import router
from .config import get_settings, runtime_secret_issues

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()
    secret_issues = runtime_secret_issues(settings)
    if secret_issues:
        if settings.runtime_secret_guard_mode == "enforce":
            raise RuntimeError(
                "runtime secret guard blocked startup: "
                + "; ".join(secret_issues)
                + ". Remediation: set ALERT_ACTION_TOKEN_SECRET, CRON_SECRET and ALERTS_SERVICE_SECRET "
                + "to non-placeholder values and configure the notifier or keep NOTIFIER_SENDER_TYPE=stub."
            )
        if settings.runtime_secret_guard_mode == "warn":
            for issue in secret_issues:
                logger.warning("runtime secret guard warning: %s", issue)

    app = FastAPI(title=settings.app_name, version="0.1.0")

    app_origin = settings.app_base_url.rstrip("/")
    if "://" in app_origin:
        app_origin = "/".join(app_origin.split("/")[:3])

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[app_origin],
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    app.include_router(router)
    return app


app = create_app()
