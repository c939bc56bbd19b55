from __future__ import annotations

import uvicorn

from vibephoto.config import get_settings
from vibephoto.utils.logging import configure_logging
from vibephoto.web.app import create_app


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    app = create_app(settings)
    uvicorn.run(
        app,
        host=settings.web_host,
        port=settings.web_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
