"""
Run the API with uvicorn: ``python -m loan_backend``.
"""

from __future__ import annotations

import logging

import uvicorn

from loan_backend.app import create_app
from loan_backend.config import get_settings


def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = create_app(settings=settings)
    logging.getLogger(__name__).info(
        "Server running on http://%s:%d", settings.host, settings.port
    )
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
