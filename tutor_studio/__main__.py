from __future__ import annotations

import uvicorn

from tutor_studio.config import Settings
from tutor_studio.logger import setup_logging
from tutor_studio.main import create_app


def main() -> None:
    settings = Settings.from_env()
    setup_logging(settings.log_level)
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
