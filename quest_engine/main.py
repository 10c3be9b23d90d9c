import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

# .env sits next to the package; tests configure the environment themselves
_PROJECT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(_PROJECT_DIR, ".env"))

from quest_engine.api import challenges, health  # noqa: E402
from quest_engine.core.config import settings, validate_config  # noqa: E402
from quest_engine.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from quest_engine.core.logging import LOGGER_NAME, configure_logging  # noqa: E402
from quest_engine.core.middleware.request_id import RequestIdMiddleware  # noqa: E402

configure_logging(settings.ENV, settings.LOG_LEVEL)
validate_config(strict=settings.CONFIG_STRICT)

logger = logging.getLogger(LOGGER_NAME)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.startup_time = time.time()
    logger.info("Quest engine up", extra={"event_type": "app.startup"})
    yield
    logger.info("Quest engine shutting down", extra={"event_type": "app.shutdown"})


def create_app() -> FastAPI:
    application = FastAPI(title="Quest Engine", lifespan=lifespan)

    application.add_middleware(RequestIdMiddleware)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.add_exception_handler(AppError, app_error_handler)
    application.add_exception_handler(HTTPException, http_error_handler)
    application.add_exception_handler(RequestValidationError, request_validation_handler)
    application.add_exception_handler(Exception, unhandled_exception_handler)

    application.include_router(challenges.router, tags=["challenges"])
    application.include_router(health.root_router, tags=["health"])
    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("quest_engine.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")), reload=False)
