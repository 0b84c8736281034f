from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from deepsearch.api.routes import chat, chats
from deepsearch.config import settings
from deepsearch.services import database, telemetry
from deepsearch.services.errors import ChatNotFoundError, UnauthorizedError


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    telemetry.init_telemetry()
    if settings.storage_backend.lower().strip() == "postgres" and settings.database_url:
        await database.init_schema()
    logger.info(f"DeepSearch started (storage={settings.storage_backend})")
    yield
    # Shutdown
    telemetry.shutdown()
    await database.close_pool()


app = FastAPI(
    title="DeepSearch",
    description="Conversational web research assistant with cited answers",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining"],
)


@app.exception_handler(UnauthorizedError)
async def unauthorized_handler(request: Request, exc: UnauthorizedError):
    return JSONResponse(status_code=401, content={"detail": str(exc)})


@app.exception_handler(ChatNotFoundError)
async def chat_not_found_handler(request: Request, exc: ChatNotFoundError):
    # Foreign and missing chats look the same to the caller.
    return JSONResponse(status_code=404, content={"detail": "Chat not found"})


# Routes
app.include_router(chat.router)
app.include_router(chats.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "deepsearch"}
