"""ASGI entry point: `uvicorn advisor.main:app`.

Loads config.yaml (or $ADVISOR_CONFIG) at import time so CORS origins are
known before the app is built.
"""

from __future__ import annotations

import logging

from advisor.app import create_app

logging.basicConfig(level=logging.INFO)

app = create_app()
