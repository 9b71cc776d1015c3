import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse

from .config import Settings
from .database import Database
from .errors import Forbidden, LottoError, Unauthenticated
from .health import create_health_router
from .jobs import RoundRollover, pending_payment_loop, round_rollover_loop
from .logging_config import configure_logging
from .models import RoundStatus
from .payments import CardCheckoutRail, OnChainRail, OrderCaptureRail, PaymentAdapter
from .redis_streams import RedisStreamClient
from .rounds import RoundManager
from .schemas import (
    CaptureOrderRequest, CheckoutSessionResponse, CreateOrderResponse, CryptoPaymentRequest,
    DrawResponse, PaymentResponse, PurchaseRequest, RoundResponse, StatsResponse,
    TicketResponse, WebhookAck,
)
from .stats import StatsAggregator
from .telemetry import instrument_fastapi, setup_telemetry, shutdown_telemetry
from .tickets import TicketIssuer

logger = logging.getLogger(__name__)


@dataclass
class Caller:
    user_id: str
    email: Optional[str]
    role: str


@dataclass
class Services:
    db: Database
    events: Optional[RedisStreamClient]
    http_client: httpx.AsyncClient
    rounds: RoundManager
    tickets: TicketIssuer
    payments: PaymentAdapter
    stats: StatsAggregator


async def current_caller(
    x_user_id: Optional[str] = Header(None),
    x_user_email: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Caller:
    """Identity forwarded by the authenticating gateway."""
    if not x_user_id:
        raise Unauthenticated()
    return Caller(user_id=x_user_id, email=x_user_email, role=(x_user_role or "user").lower())


async def admin_caller(caller: Caller = Depends(current_caller)) -> Caller:
    if caller.role != "admin":
        raise Forbidden()
    return caller


def get_services(request: Request) -> Services:
    return request.app.state.services


lottery_router = APIRouter(prefix="/api/lottery", tags=["lottery"])
payment_router = APIRouter(prefix="/api/payment", tags=["payment"])
user_router = APIRouter(prefix="/api/user", tags=["user"])
admin_router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(admin_caller)])


@lottery_router.get("/current", response_model=Optional[RoundResponse])
async def get_current_round(services: Services = Depends(get_services)):
    lottery = await services.rounds.get_active_round()
    return RoundResponse.model_validate(lottery) if lottery else None


@lottery_router.get("/stats", response_model=StatsResponse)
async def get_stats(services: Services = Depends(get_services)):
    stats = await services.stats.get_stats()
    return StatsResponse(**stats.__dict__)


@lottery_router.get("/history", response_model=list[RoundResponse])
async def get_history(limit: int = 50, services: Services = Depends(get_services)):
    rounds = await services.rounds.list_rounds(RoundStatus.COMPLETED, limit=min(limit, 200))
    return [RoundResponse.model_validate(r) for r in rounds]


@lottery_router.get("/{lottery_id}", response_model=RoundResponse)
async def get_round(lottery_id: str, services: Services = Depends(get_services)):
    return RoundResponse.model_validate(await services.rounds.get_round(lottery_id))


@lottery_router.get("/{lottery_id}/tickets", response_model=list[TicketResponse])
async def get_round_tickets(lottery_id: str, services: Services = Depends(get_services)):
    await services.rounds.get_round(lottery_id)
    tickets = await services.tickets.list_round_tickets(lottery_id)
    return [TicketResponse.model_validate(t) for t in tickets]


@payment_router.post("/stripe/create-session", response_model=CheckoutSessionResponse)
async def create_stripe_session(
    request: PurchaseRequest,
    caller: Caller = Depends(current_caller),
    services: Services = Depends(get_services),
):
    handle = await services.payments.create_card_checkout(
        caller.user_id, caller.email, request.lottery_id, request.quantity
    )
    return CheckoutSessionResponse(session_id=handle.reference, url=handle.redirect_url)


@payment_router.post("/stripe/webhook", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    services: Services = Depends(get_services),
):
    payload = await request.body()
    await services.payments.handle_card_webhook(payload, stripe_signature)
    return WebhookAck()


@payment_router.post("/paypal/create-order", response_model=CreateOrderResponse)
async def create_paypal_order(
    request: PurchaseRequest,
    caller: Caller = Depends(current_caller),
    services: Services = Depends(get_services),
):
    handle = await services.payments.create_order(
        caller.user_id, caller.email, request.lottery_id, request.quantity
    )
    return CreateOrderResponse(order_id=handle.reference, approval_url=handle.redirect_url)


@payment_router.post("/paypal/capture-order", response_model=list[TicketResponse])
async def capture_paypal_order(
    request: CaptureOrderRequest,
    caller: Caller = Depends(current_caller),
    services: Services = Depends(get_services),
):
    tickets = await services.payments.capture_order(request.order_id)
    return [TicketResponse.model_validate(t) for t in tickets]


@payment_router.post("/crypto", response_model=list[TicketResponse])
async def crypto_payment(
    request: CryptoPaymentRequest,
    caller: Caller = Depends(current_caller),
    services: Services = Depends(get_services),
):
    tickets = await services.payments.confirm_on_chain(
        caller.user_id, request.lottery_id, request.quantity, request.transaction_signature
    )
    return [TicketResponse.model_validate(t) for t in tickets]


@payment_router.get("/history", response_model=list[PaymentResponse])
async def payment_history(
    caller: Caller = Depends(current_caller),
    services: Services = Depends(get_services),
):
    payments = await services.payments.list_user_payments(caller.user_id)
    return [PaymentResponse.model_validate(p) for p in payments]


@user_router.get("/tickets", response_model=list[TicketResponse])
async def user_tickets(
    caller: Caller = Depends(current_caller),
    services: Services = Depends(get_services),
):
    tickets = await services.tickets.list_user_tickets(caller.user_id)
    return [TicketResponse.model_validate(t) for t in tickets]


@admin_router.get("/dashboard", response_model=StatsResponse)
async def admin_dashboard(services: Services = Depends(get_services)):
    stats = await services.stats.get_stats()
    return StatsResponse(**stats.__dict__)


@admin_router.post("/lottery/create", response_model=RoundResponse)
async def admin_create_round(services: Services = Depends(get_services)):
    return RoundResponse.model_validate(await services.rounds.create_round())


@admin_router.post("/lottery/{lottery_id}/draw", response_model=DrawResponse)
async def admin_draw_round(lottery_id: str, services: Services = Depends(get_services)):
    result = await services.rounds.draw_round(lottery_id)
    if result.drawn:
        message = f"Winning ticket {result.winner_ticket_number}"
    elif result.reason == "no_sales":
        message = "No tickets sold, round stays active"
    else:
        message = f"Round already {result.round.status.value}"
    return DrawResponse(
        drawn=result.drawn,
        round=RoundResponse.model_validate(result.round),
        winner_ticket_number=result.round.winner_ticket_number,
        message=message,
    )


@admin_router.get("/payments", response_model=list[PaymentResponse])
async def admin_payments(services: Services = Depends(get_services)):
    return [PaymentResponse.model_validate(p) for p in await services.payments.list_payments()]


async def handle_lotto_error(request: Request, exc: LottoError):
    if exc.status_code >= 500:
        logger.error(
            f"{request.method} {request.url.path} failed: {exc}",
            extra={key: value for key, value in exc.context.items() if key in ("lottery_id", "reference")}
        )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def create_app(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    rng=None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    db = database or Database(settings.database_url)
    events = RedisStreamClient(settings.redis_url) if settings.redis_url else None
    owns_http_client = http_client is None
    http_client = http_client or httpx.AsyncClient()

    rounds = RoundManager(db, settings, events=events, rng=rng)
    tickets = TicketIssuer(db, events=events)
    payments = PaymentAdapter(
        db,
        tickets,
        card=CardCheckoutRail(settings, http_client),
        order=OrderCaptureRail(settings, http_client),
        on_chain=OnChainRail(settings, http_client),
    )
    services = Services(
        db=db, events=events, http_client=http_client, rounds=rounds,
        tickets=tickets, payments=payments, stats=StatsAggregator(db),
    )

    tracer_provider = setup_telemetry(settings) if settings.otel_enabled else None
    background_tasks = set()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await db.create_tables()
        if events:
            await events.connect()

        if settings.scheduler_enabled:
            background_tasks.add(asyncio.create_task(
                round_rollover_loop(RoundRollover(rounds), settings.round_check_interval)
            ))
            background_tasks.add(asyncio.create_task(
                pending_payment_loop(
                    payments,
                    settings.payment_sweep_interval,
                    timedelta(minutes=settings.pending_payment_age_minutes),
                )
            ))

        logger.info("CryptoLotto service started")
        yield

        for task in background_tasks:
            task.cancel()
        if events:
            await events.close()
        if owns_http_client:
            await http_client.aclose()
        await db.close()
        shutdown_telemetry(tracer_provider)

    app = FastAPI(title="CryptoLotto", lifespan=lifespan)
    app.state.services = services
    app.state.settings = settings
    app.add_exception_handler(LottoError, handle_lotto_error)

    if tracer_provider is not None:
        instrument_fastapi(app, tracer_provider)

    readiness_checks = {"ledger": db.ping}
    if events:
        readiness_checks["events"] = events.ping

    app.include_router(create_health_router(readiness_checks, settings.service_name))
    app.include_router(lottery_router)
    app.include_router(payment_router)
    app.include_router(user_router)
    app.include_router(admin_router)
    return app


def main():
    import uvicorn

    settings = Settings.from_env()
    configure_logging(settings.service_name, settings.log_level)
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
