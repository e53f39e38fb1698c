from contextlib import asynccontextmanager
from fastapi import FastAPI
import logging
import uvicorn
from auth import auth_router
from config import Settings, configure_logging, get_settings
from context import AppContext
from router import router

logger = logging.getLogger(__name__)


def create_app(settings: Settings = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)
    context = AppContext.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        logger.info("Closing live expense feeds")
        context.close()

    app = FastAPI(title="Expense Tracker API", lifespan=lifespan)
    app.state.context = context

    app.include_router(router, prefix="/api", tags=["expenses"])
    app.include_router(auth_router, prefix="/auth", tags=["authentication"])

    @app.get("/")
    def home():
        return {"message": "Welcome to Expense Tracker API"}

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(app, host="127.0.0.1", port=8000)
