import asyncio
import os
from contextlib import asynccontextmanager
from dotenv import load_dotenv

from fastapi import FastAPI, Depends
from fastapi.middleware.cors import CORSMiddleware

from .chat.registry import ScreenRegistry
from .core.config import get_settings
from .core.dependencies import get_viewer
from .core.middleware import logging_middleware
from .core.supabase_client import close_supabase
from .screens import customer, driver, restaurant
from .utils.logging_config import setup_logging

load_dotenv()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    app.state.screens = ScreenRegistry(idle_ttl=settings.screen_idle_ttl)
    sweeper = asyncio.create_task(
        app.state.screens.sweep_forever(min(60.0, settings.screen_idle_ttl))
    )
    yield
    sweeper.cancel()
    await asyncio.gather(sweeper, return_exceptions=True)
    await app.state.screens.close_all()
    await close_supabase()


def create_app() -> FastAPI:
    setup_logging()

    app = FastAPI(title="Mataim chat", lifespan=lifespan)
    app.include_router(customer.router, prefix="/customer", tags=["Customer chat"])
    app.include_router(restaurant.router, prefix="/restaurant", tags=["Restaurant chat"])
    app.include_router(driver.router, prefix="/driver", tags=["Driver chat"])

    origins = [
        origin.strip()
        for origin in os.getenv("CORS_ORIGINS", "http://localhost:8081").split(",")
        if origin.strip()
    ]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(logging_middleware)

    @app.get("/me")
    def me(viewer=Depends(get_viewer)):
        return {"id": viewer.id, "role": viewer.role.value, "name": viewer.display_name}

    return app


app = create_app()
