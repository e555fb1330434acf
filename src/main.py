from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from src.bridge.conversation_cache import ConversationCache
from src.bridge.dedup import DedupGuard
from src.bridge.events import EventProcessor
from src.bridge.service import BridgeService
from src.bridge.store import BridgeStore
from src.bridge.whatsapp import ClientRegistry
from src.config import settings
from src.db import get_supabase
from src.delivery.engine import DeliveryEngine, DeliverySettings
from src.delivery.queue import QueuePublisher
from src.delivery.vault import CredentialVault
from src.observability import configure_logging, log_event
from src.routers import bridge_config, chatwoot_webhook


def build_services(app: FastAPI) -> None:
    store = BridgeStore(get_supabase())
    registry = ClientRegistry()
    dedup = DedupGuard(
        window_seconds=settings.dedup_window_seconds,
        cleanup_interval_seconds=settings.dedup_cleanup_interval_seconds,
    )
    publisher = QueuePublisher.from_url(
        settings.redis_url,
        event_stream=settings.event_queue_stream,
        error_stream=settings.webhook_error_stream,
        socket_timeout_seconds=settings.redis_socket_timeout_seconds,
    )
    vault = (
        CredentialVault.from_base64_key(settings.credential_encryption_key)
        if settings.credential_encryption_key
        else None
    )

    app.state.store = store
    app.state.bridge = BridgeService(
        store=store,
        clients=registry,
        dedup=dedup,
        conversations=ConversationCache(store),
        timeout_seconds=settings.ticketing_timeout_seconds,
        default_inbox_name=settings.default_inbox_name,
        bot_organization=settings.bot_contact_organization,
        bot_logo_url=settings.bot_contact_logo_url,
    )
    app.state.delivery = DeliveryEngine(
        DeliverySettings.from_settings(settings),
        vault=vault,
        publisher=publisher,
    )
    app.state.events = EventProcessor(
        bridge=app.state.bridge,
        delivery=app.state.delivery,
        store=store,
        clients=registry,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    build_services(app)
    app.state.bridge.start()
    log_event(
        "service_started",
        queue_enabled=app.state.delivery.publisher.enabled,
        signing_enabled=app.state.delivery.vault is not None,
    )
    try:
        yield
    finally:
        app.state.bridge.stop()
        log_event("service_stopped")


app = FastAPI(title="WhatsApp Bridge", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = (
        request.headers.get("X-Request-ID")
        or request.headers.get("X-Correlation-ID")
        or str(uuid4())
    )
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response

app.include_router(bridge_config.router)
app.include_router(chatwoot_webhook.router)


@app.get("/")
async def root():
    return {"status": "ok", "service": "whatsapp-bridge"}


@app.get("/health")
async def health():
    return {"status": "healthy"}
