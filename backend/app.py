import logging
import os
import random
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.routes import router
from backend.routes.errors import status_for
from chronicle.errors import ChronicleError
from chronicle.llm import SECRET_ENV_VARS
from chronicle.pipeline import ProviderFactory, TurnPipeline, default_provider_factory
from chronicle.storage import JsonStore

load_dotenv(Path(__file__).parent.parent / ".env")

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path(__file__).parent.parent / "data"


def load_secrets() -> dict[str, str]:
    """System provider keys from the environment, by provider name."""
    return {
        provider: os.environ[var]
        for provider, var in SECRET_ENV_VARS.items()
        if os.getenv(var)
    }


def create_app(
    data_dir: Path | None = None,
    *,
    provider_factory: ProviderFactory = default_provider_factory,
    rng: random.Random | None = None,
) -> FastAPI:
    resolved = data_dir or Path(os.getenv("DATA_DIR", str(DEFAULT_DATA_DIR)))
    store = JsonStore(resolved)

    app = FastAPI(title="Chronicle")
    app.state.store = store
    app.state.pipeline = TurnPipeline(
        store=store,
        secrets=load_secrets(),
        provider_factory=provider_factory,
        rng=rng,
    )
    app.include_router(router, prefix="/api")

    @app.exception_handler(ChronicleError)
    async def chronicle_error(request: Request, exc: ChronicleError):
        return JSONResponse(
            status_code=status_for(exc.code),
            content={"errorCode": exc.code, "error": exc.message},
        )

    logger.info("chronicle service using data dir %s", resolved)
    return app


# Default app instance for uvicorn (uses DATA_DIR env var or default)
app = create_app()
