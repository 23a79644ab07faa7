import logging

import stripe
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from order_service import config, reconciliation, responses
from order_service.database import Base, engine, get_db
from order_service.errors import NotFoundError, OrderServiceError
from order_service.gateway import StripeGateway, get_gateway, metadata_of
from order_service.routes import orders_router, refunds_router, returns_router, stock_router

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Order Lifecycle Service")

app.include_router(orders_router)
app.include_router(refunds_router)
app.include_router(returns_router)
app.include_router(stock_router)

Base.metadata.create_all(bind=engine)

AUTHORIZED_EVENTS = ("payment_intent.succeeded", "payment_intent.amount_capturable_updated")


@app.exception_handler(OrderServiceError)
async def order_service_error_handler(request: Request, exc: OrderServiceError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return responses.error(exc.message, exc.status_code, error=type(exc).__name__, **exc.to_dict())


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    response = responses.error(str(exc.detail), exc.status_code)
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(part) for part in e["loc"] if part != "body"), "message": e["msg"]}
        for e in exc.errors()
    ]
    return responses.error("Validation failed", 400, error="ValidationError", errors=errors)


@app.get("/healthz")
def health():
    return {"status": "healthy"}


@app.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
):
    payload = await request.body()

    try:
        event = gateway.construct_event(payload, stripe_signature)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid signature")

    event_type = event["type"]
    obj = event["data"]["object"]

    if event_type in AUTHORIZED_EVENTS:
        advanced = reconciliation.record_payment_authorized(db, obj["id"], metadata_of(obj))
        if advanced:
            logger.info(f"{event_type}: orders {', '.join(advanced)} moved to processing")
    elif event_type == "charge.refund.updated":
        try:
            reconciliation.update_refund_status(db, obj["id"], obj["status"])
        except NotFoundError:
            logger.info(f"Ignoring update for refund {obj['id']} not issued by this service")
    else:
        logger.debug(f"Unhandled webhook event {event_type}")

    return {"ok": True}
