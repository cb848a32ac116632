from __future__ import annotations

import uvicorn

from caseguard.apps.api.main import create_app
from caseguard.core.config import get_settings


def main() -> None:
    # Single-process server; rate windows and the audit spool live in this process.
    settings = get_settings()
    uvicorn.run(create_app(), host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
