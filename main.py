"""
Stepflow API entry point
"""
import uvicorn

from stepflow.api import create_app
from stepflow.config import EngineSettings, configure_logging


settings = EngineSettings.from_env()
configure_logging(settings.log_level)


if __name__ == "__main__":
    if settings.api_reload:
        uvicorn.run(
            "stepflow.api:create_app",
            factory=True,
            host=settings.api_host,
            port=settings.api_port,
            reload=True,
            log_level=settings.log_level.lower()
        )
    else:
        uvicorn.run(
            create_app(settings=settings),
            host=settings.api_host,
            port=settings.api_port,
            log_level=settings.log_level.lower()
        )
