"""lockhub — standalone HTTP server.

Exposes:
  /devices/...   — discovery, arbitration and saved devices (see :mod:`lockhub.api`)
  GET  /health   — liveness check

Start with::

    python -m lockhub serve
    # or
    uvicorn lockhub.server:app --host 0.0.0.0 --port 5200
"""

from __future__ import annotations

import logging

from fastapi import FastAPI

from lockhub import __version__
from lockhub.api import lockhub_error_handler, router
from lockhub.config import get_settings
from lockhub.db import get_db, init_db
from lockhub.errors import LockhubError

logger = logging.getLogger(__name__)

# ──────────────────────────────────────────────────────────────────
# FastAPI app
# ──────────────────────────────────────────────────────────────────

app = FastAPI(title="lockhub", version=__version__)
app.include_router(router)
app.add_exception_handler(LockhubError, lockhub_error_handler)


@app.get("/health")
async def health():
    try:
        init_db()
        get_db().execute("SELECT 1").fetchone()
        db_ok = True
    except Exception:
        logger.exception("health check: database unavailable")
        db_ok = False
    return {"status": "ok" if db_ok else "degraded", "database": db_ok, "version": __version__}


# ──────────────────────────────────────────────────────────────────
# Entry point
# ──────────────────────────────────────────────────────────────────

def main(host: str | None = None, port: int | None = None):
    import uvicorn
    settings = get_settings()
    host = host or settings.host
    port = port or settings.port
    logging.basicConfig(level=logging.INFO)
    logger.info("Starting lockhub server on %s:%d", host, port)
    uvicorn.run("lockhub.server:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
