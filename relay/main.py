"""FastAPI application for ticket-thread-relay."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from relay.clients.chat_client import ChatClient
from relay.clients.ticketing_client import TicketingClient
from relay.config import settings
from relay.database import async_session, close_db, init_db
from relay.pipeline.kv_store import KeyValueStore
from relay.pipeline.pipeline import RelayPipeline
from relay.routes.operations import router as operations_router
from relay.routes.webhooks import router as webhooks_router

logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("ticket-thread-relay starting up")
    await init_db()
    kv = KeyValueStore(async_session)
    chat = ChatClient()
    ticketing = TicketingClient(cache=kv)
    pipeline = RelayPipeline(async_session, chat, ticketing, settings, kv=kv)
    app.state.pipeline = pipeline
    await pipeline.start()
    yield
    logger.info("ticket-thread-relay shutting down")
    await pipeline.stop()
    await chat.close()
    await ticketing.close()
    await close_db()


app = FastAPI(
    title="Ticket Thread Relay",
    description="Relays messages, threads and status changes between chat threads and support tickets",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhooks_router, prefix=settings.api_prefix)
app.include_router(operations_router, prefix=settings.api_prefix)


@app.get("/health")
async def health(request: Request):
    report = await request.app.state.pipeline.get_health()
    status_code = 503 if report.status == "unhealthy" else 200
    return JSONResponse(report.model_dump(), status_code=status_code)
