from __future__ import annotations

import uvicorn

from dashops.core.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "dashops.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_config=None,
    )


if __name__ == "__main__":
    main()
