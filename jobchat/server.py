"""FastAPI chat server.

HTTP surface of the chat pipeline:
- ``POST /messages`` publishes a submission to the broker
- history, inbox and sent listings plus mark-read read the store directly
- ``/ws/messages`` streams live messages to a connected receiver

The server is a thin adapter: validation lives in the messaging service,
persistence in the consumer, fan-out in the hub.
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Query, Request, WebSocket, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from jobchat import __version__
from jobchat.auth import CHAT_ROLES, Identity, require_roles
from jobchat.config import get_settings
from jobchat.db import MessageStore, close_db, init_db
from jobchat.errors import (
    AuthenticationError,
    AuthorizationError,
    BrokerUnavailableError,
    MessageValidationError,
)
from jobchat.logging import configure_logging, get_logger
from jobchat.messaging import Broker, Hub, MessagingService, PersistenceConsumer
from jobchat.messaging.service import Publisher, validate_identifier
from jobchat.metrics import metrics
from jobchat.middleware import RequestTracingMiddleware
from jobchat.notifications import NotificationClient
from jobchat.schemas.messages import (
    Envelope,
    MarkReadResult,
    MessageAccepted,
    MessageCreate,
    is_valid_identifier,
)

logger = get_logger(__name__)

chat_user = require_roles(*CHAT_ROLES)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start store, broker, hub and consumer; tear them down in reverse."""
    settings = get_settings()
    configure_logging(
        json_format=not settings.debug,
        level="DEBUG" if settings.debug else settings.log_level,
    )
    logger.info(
        "server_starting",
        version=__version__,
        host=settings.listen_host,
        port=settings.listen_port,
        debug=settings.debug,
    )

    # A store that cannot be initialized is fatal: startup fails, uvicorn exits non-zero.
    await init_db()
    logger.info("store_ready")

    store = MessageStore()
    hub = Hub(buffer_size=settings.hub_buffer_size)
    broker = app.state.broker_override or Broker.from_settings(settings)
    try:
        await broker.connect()
    except BrokerUnavailableError as e:
        # Publishes retry inline and the consume loop keeps reconnecting.
        logger.warning("broker_unavailable_at_startup", error=str(e))

    notifier = app.state.notifier_override
    if notifier is None and settings.notification_url:
        notifier = NotificationClient(settings.notification_url, timeout=settings.notification_timeout)

    consumer = PersistenceConsumer(store, hub, notifier)
    consumer_task = asyncio.create_task(broker.consume(consumer.handle), name="chat-consumer")

    app.state.store = store
    app.state.hub = hub
    app.state.broker = broker
    app.state.service = MessagingService(broker)
    yield

    logger.info("server_stopping")
    await hub.close()
    consumer_task.cancel()
    await asyncio.gather(consumer_task, return_exceptions=True)
    await consumer.drain_background()
    await broker.close()
    if notifier is not None:
        await notifier.aclose()
    await close_db()
    logger.info("server_shutdown")


def get_store(request: Request) -> MessageStore:
    return request.app.state.store


def get_service(request: Request) -> MessagingService:
    return request.app.state.service


def create_app(
    broker: Publisher | None = None,
    notifier: NotificationClient | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        broker: Broker to use instead of one built from settings.
        notifier: Notification client to use instead of one built from settings.
    """
    settings = get_settings()

    app = FastAPI(
        title="jobchat",
        description="Real-time chat pipeline of the employment service",
        version=__version__,
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.state.broker_override = broker
    app.state.broker = broker
    app.state.notifier_override = notifier

    app.add_middleware(RequestTracingMiddleware)

    # =========================================================================
    # Error mapping
    # =========================================================================

    @app.exception_handler(MessageValidationError)
    async def on_validation_error(request: Request, exc: MessageValidationError) -> JSONResponse:
        logger.debug("message_rejected", field=exc.field, detail=exc.detail)
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": exc.detail})

    @app.exception_handler(RequestValidationError)
    async def on_request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.debug("request_rejected", errors=len(exc.errors()))
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": "Invalid request body", "errors": jsonable_errors(exc)},
        )

    @app.exception_handler(BrokerUnavailableError)
    async def on_broker_unavailable(request: Request, exc: BrokerUnavailableError) -> JSONResponse:
        logger.error("message_publish_unavailable", error=str(exc))
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Message broker unavailable, retry later"},
        )

    @app.exception_handler(AuthenticationError)
    async def on_authentication_error(request: Request, exc: AuthenticationError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"detail": str(exc)},
            headers={"WWW-Authenticate": "Bearer"},
        )

    @app.exception_handler(AuthorizationError)
    async def on_authorization_error(request: Request, exc: AuthorizationError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"detail": str(exc)})

    # =========================================================================
    # Operational endpoints
    # =========================================================================

    @app.get("/health")
    async def health(request: Request) -> dict[str, str]:
        """Health check endpoint."""
        broker_state = getattr(request.app.state.broker, "state", None)
        return {
            "status": "healthy",
            "version": __version__,
            "broker": getattr(broker_state, "value", "unknown"),
        }

    @app.get("/metrics", include_in_schema=False)
    async def get_metrics():
        """Return Prometheus-formatted metrics."""
        from starlette.responses import PlainTextResponse

        return PlainTextResponse(
            content=metrics.to_prometheus(),
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    @app.get("/metrics/json")
    async def get_metrics_json() -> dict:
        return metrics.get_stats()

    # =========================================================================
    # Messages
    # =========================================================================

    @app.post("/messages", response_model=MessageAccepted)
    async def send_message(
        submission: MessageCreate,
        identity: Identity = Depends(chat_user),
        service: MessagingService = Depends(get_service),
    ) -> MessageAccepted:
        """Submit a message from the authenticated user.

        Returns once the broker has accepted it. The receiver gets it live
        over WebSocket and it shows up in history after persistence.

        Raises:
            400: Invalid submission
            503: Broker unavailable
        """
        envelope = await service.submit(identity.user_id, submission)
        return MessageAccepted(id=envelope.id, sent_at=envelope.sent_at)

    @app.get("/messages/inbox/{user_id}", response_model=list[Envelope])
    async def inbox(
        user_id: str,
        identity: Identity = Depends(chat_user),
        store: MessageStore = Depends(get_store),
    ) -> list[Envelope]:
        """Messages received by a user, newest first."""
        return await store.inbox(validate_identifier(user_id, "userId"))

    @app.get("/messages/sent/{user_id}", response_model=list[Envelope])
    async def sent(
        user_id: str,
        identity: Identity = Depends(chat_user),
        store: MessageStore = Depends(get_store),
    ) -> list[Envelope]:
        """Messages sent by a user, newest first."""
        return await store.sent(validate_identifier(user_id, "userId"))

    @app.get("/messages/{user_a}/{user_b}", response_model=list[Envelope])
    async def thread(
        user_a: str,
        user_b: str,
        identity: Identity = Depends(chat_user),
        store: MessageStore = Depends(get_store),
    ) -> list[Envelope]:
        """Conversation between two users in chronological order."""
        return await store.thread(
            validate_identifier(user_a, "userAId"),
            validate_identifier(user_b, "userBId"),
        )

    @app.put("/messages/{sender_id}/{receiver_id}/read", response_model=MarkReadResult)
    async def mark_read(
        sender_id: str,
        receiver_id: str,
        identity: Identity = Depends(chat_user),
        store: MessageStore = Depends(get_store),
    ) -> MarkReadResult:
        """Mark everything sender sent to receiver as read. Idempotent."""
        updated = await store.mark_read(
            validate_identifier(sender_id, "senderId"),
            validate_identifier(receiver_id, "receiverId"),
        )
        logger.info("messages_marked_read", sender_id=sender_id, receiver_id=receiver_id, updated=updated)
        return MarkReadResult(updated=updated)

    # =========================================================================
    # Live delivery
    # =========================================================================

    @app.websocket("/ws/messages")
    async def messages_socket(
        websocket: WebSocket,
        user_id: str | None = Query(default=None, alias="userId"),
    ) -> None:
        """Stream messages addressed to ``userId`` as JSON text frames."""
        if not user_id or not is_valid_identifier(user_id):
            await _deny(websocket, status.HTTP_400_BAD_REQUEST, "userId query param required")
            return
        await websocket.accept()
        await websocket.app.state.hub.serve(user_id, websocket)

    return app


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", "")}
        for error in exc.errors()
    ]


async def _deny(websocket: WebSocket, status_code: int, detail: str) -> None:
    # Prefer a real HTTP response; servers without the denial extension get a policy close.
    if "websocket.http.response" in websocket.scope.get("extensions", {}):
        await websocket.send_denial_response(
            JSONResponse(status_code=status_code, content={"detail": detail})
        )
    else:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)


# Application instance for uvicorn
app = create_app()
