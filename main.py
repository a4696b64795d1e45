"""
Trip Dispatch Backend
=====================
Entry point. Run with: uvicorn main:app --reload

The availability reconciler starts with the app (``RECONCILER_ENABLED``);
with several workers the Redis lock keeps a single instance running.
"""

import uvicorn

from dispatch.api.app import create_app
from dispatch.config import settings

app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level=settings.log_level.lower(),
    )
