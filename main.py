from __future__ import annotations

import uvicorn

from portfolio_analytics.api import create_api_app
from portfolio_analytics.core.config import settings


app = create_api_app()


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.is_development,
        log_config=None,
    )
