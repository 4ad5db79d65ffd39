"""Run the billing API with uvicorn.

Settings come from the environment: ``PORT``, ``UVICORN_WORKERS`` and
``LOG_LEVEL``.
"""

import os

import uvicorn


def run():
    uvicorn.run(
        "clinic_billing.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "9003")),
        workers=int(os.getenv("UVICORN_WORKERS", str(max(2, (os.cpu_count() or 1))))),
        loop="auto",  # uvloop when uvicorn[standard] is installed
        http="h11",
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )


if __name__ == "__main__":
    run()
