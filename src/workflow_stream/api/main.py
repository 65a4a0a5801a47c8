from __future__ import annotations

import logging
import time
import uuid
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.status import HTTP_500_INTERNAL_SERVER_ERROR

from workflow_stream import __version__
from workflow_stream.api.http_logging import install_http_logging
from workflow_stream.api.routes.health import router as health_router
from workflow_stream.api.routes.stream import router as stream_router
from workflow_stream.generation import DspyGenerator
from workflow_stream.pipeline import Pipeline
from workflow_stream.relay import EventRelay
from workflow_stream.settings import Settings

logger = logging.getLogger("workflow_stream.api")


def _repo_root() -> Path:
    # `src/workflow_stream/api/main.py` lives at `<repo>/src/workflow_stream/api/main.py`
    return Path(__file__).resolve().parents[3]


def _configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def build_pipeline(settings: Settings) -> Pipeline:
    return Pipeline(
        generator=DspyGenerator(settings),
        thread_outputs=settings.thread_stage_outputs,
        buffer=settings.notification_buffer,
    )


def create_app(settings: Optional[Settings] = None, pipeline: Optional[Pipeline] = None) -> FastAPI:
    """
    Build the app. The pipeline is constructed once here and shared by every request.
    """
    # `.env.local` first so its values win over `.env`; real environment variables win over both.
    load_dotenv(_repo_root() / ".env.local", override=False)
    load_dotenv(_repo_root() / ".env", override=False)

    settings = settings or Settings.from_env()
    _configure_logging(settings)
    pipeline = pipeline or build_pipeline(settings)

    app = FastAPI(title="workflow-stream-service", version=__version__)
    app.state.settings = settings
    app.state.relay = EventRelay(pipeline, close_timeout_sec=settings.close_timeout_sec)

    @app.exception_handler(Exception)
    async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        request_id = f"err_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"
        logger.error("500 internal_error requestId=%s path=%s err=%r", request_id, request.url.path, exc)
        return JSONResponse(
            status_code=HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "ok": False,
                "error": "internal_error",
                "message": "Unhandled server error.",
                "requestId": request_id,
            },
        )

    app.include_router(health_router)
    app.include_router(stream_router)
    install_http_logging(app, settings)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
