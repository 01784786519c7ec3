from __future__ import annotations

import os

import uvicorn

from unionnotify.apps.api.main import create_app


def main() -> None:
    # Run the API with env-driven bind settings for compose and local development.
    app = create_app()
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")))


if __name__ == "__main__":
    main()
