"""WSGI entrypoint for the Virtual Recipe Box.

Run locally with ``flask --app main run``; the backends are configured from
the environment (``GCP_PROJECT``, ``GCS_BUCKET``, ``FIREBASE_API_KEY``).
"""

import logging
import os

from recipebox import create_app

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app()


__all__ = ["app"]
