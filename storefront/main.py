import json
import logging
import random
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal

from fastapi import Depends, FastAPI, Request, Response
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import ValidationError
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from storefront import database
from storefront.config import MerchantCredential, load_settings
from storefront.database import get_db
from storefront.gateway_client import GatewayClient, GatewayCommunicationError
from storefront.models import Base, CallbackEvent, Payment
from storefront.payment_request import (
    PaymentRequestBuilder,
    PaymentRequestError,
    PreparedPayment,
)
from storefront.schemas import (
    CheckoutRequest,
    CheckoutResponse,
    PaymentStatusResponse,
    RefundRequest,
)
from storefront.state_machine import (
    COMPLETED,
    REFUND_PENDING,
    ConflictingEventError,
    InvalidTransitionError,
    apply_transition,
    failure_reason,
)
from storefront.verifier import PaymentCallback, PaymentResponseVerifier, Rejected, Verified

logger = logging.getLogger(__name__)

MAX_BODY_SIZE = 1024 * 1024  # 1 MB limit
MAX_DB_RETRIES = 12
DB_RETRY_DELAY = 0.05  # 50ms base
REFUND_ACCEPTED = "1"


@asynccontextmanager
async def lifespan(application: FastAPI):
    yield
    # the app owns its gateway client, whoever constructed it
    application.state.gateway.close()


def create_app(
    credential: MerchantCredential,
    gateway_client: GatewayClient | None = None,
) -> FastAPI:
    application = FastAPI(title="Storefront Payments", lifespan=lifespan)
    application.state.credential = credential
    application.state.builder = PaymentRequestBuilder(credential)
    application.state.verifier = PaymentResponseVerifier(credential)
    application.state.gateway = gateway_client or GatewayClient(credential)

    @application.post("/payments/checkout", status_code=201, response_model=CheckoutResponse)
    def create_checkout(
        payload: CheckoutRequest,
        request: Request,
        db: Session = Depends(get_db),
    ):
        prepared = _sign_and_store(request.app.state.builder, payload, db)
        if isinstance(prepared, Response):
            return prepared
        return CheckoutResponse(
            txnid=prepared.txnid,
            endpoint=prepared.endpoint,
            fields=prepared.fields,
        )

    @application.post("/payments/checkout/form", response_class=HTMLResponse)
    def create_checkout_form(
        payload: CheckoutRequest,
        request: Request,
        db: Session = Depends(get_db),
    ) -> Response:
        prepared = _sign_and_store(request.app.state.builder, payload, db)
        if isinstance(prepared, Response):
            return prepared
        return HTMLResponse(content=prepared.html_form())

    @application.post("/payments/callback")
    async def receive_callback(
        request: Request,
        db: Session = Depends(get_db),
    ) -> Response:
        # 1. Read raw body with size limit
        body = await request.body()
        if len(body) > MAX_BODY_SIZE:
            return JSONResponse(status_code=413, content={"error": "Payload too large"})

        # 2. Parse form or JSON body -> 400 if unreadable
        content_type = request.headers.get("content-type", "")
        try:
            if "application/json" in content_type:
                raw = json.loads(body)
            else:
                form = await request.form()
                raw = {k: v for k, v in form.items() if isinstance(v, str)}
        except (json.JSONDecodeError, UnicodeDecodeError, RecursionError, ValueError):
            return JSONResponse(status_code=400, content={"error": "Unreadable body"})

        if not isinstance(raw, dict):
            return JSONResponse(status_code=400, content={"error": "Expected an object"})

        try:
            callback = PaymentCallback.model_validate(raw)
        except ValidationError as exc:
            return JSONResponse(status_code=400, content={"error": str(exc)})

        # 3. Verify hash -> 400 if rejected; nothing below runs for unverified input
        verdict = request.app.state.verifier.verify(callback)
        if isinstance(verdict, Rejected):
            return JSONResponse(
                status_code=400,
                content={"error": verdict.reason.value, "txnid": verdict.txnid},
            )

        body_str = body.decode("utf-8", errors="replace")
        # database work and its backoff sleeps stay off the event loop
        return await run_in_threadpool(_process_with_retries, db, verdict, callback, body_str)

    @application.get("/payments/{txnid}", response_model=PaymentStatusResponse)
    def get_payment(txnid: str, db: Session = Depends(get_db)):
        payment = db.get(Payment, txnid)
        if payment is None:
            return _not_found(txnid)
        return _status_response(payment)

    @application.post("/payments/{txnid}/verify")
    def verify_with_gateway(
        txnid: str,
        request: Request,
        db: Session = Depends(get_db),
    ) -> Response:
        payment = db.get(Payment, txnid)
        if payment is None:
            return _not_found(txnid)
        try:
            result = request.app.state.gateway.verify_payment(txnid)
        except GatewayCommunicationError as exc:
            return JSONResponse(status_code=502, content={"error": str(exc), "txnid": txnid})
        return JSONResponse(
            status_code=200,
            content={"txnid": txnid, "payment_status": payment.status, "gateway": result},
        )

    @application.post("/payments/{txnid}/refund")
    def refund_payment(
        txnid: str,
        request: Request,
        payload: RefundRequest | None = None,
        db: Session = Depends(get_db),
    ) -> Response:
        try:
            claim = _with_db_retries(db, lambda: _claim_refund(db, txnid))
        except OperationalError:
            logger.exception("Could not claim refund for %s", txnid)
            return JSONResponse(
                status_code=503,
                content={"error": "Temporarily unavailable", "txnid": txnid},
            )
        if isinstance(claim, JSONResponse):
            return claim
        payment_id, amount = claim

        token = payload.token if payload else None
        try:
            result = request.app.state.gateway.refund(payment_id, amount, token=token)
        except GatewayCommunicationError as exc:
            # outcome unknown; the refund token is stable, so a retry cannot refund twice
            _with_db_retries(db, lambda: _release_refund(db, txnid, COMPLETED))
            return JSONResponse(status_code=502, content={"error": str(exc), "txnid": txnid})

        if str(result.get("status")) != REFUND_ACCEPTED:
            logger.warning("Refund for %s declined by gateway: %s", txnid, result.get("msg"))
            _with_db_retries(db, lambda: _release_refund(db, txnid, COMPLETED))
            return JSONResponse(
                status_code=422,
                content={"error": "Refund declined", "txnid": txnid, "gateway": result},
            )

        new_status = apply_transition(COMPLETED, "refund")
        _with_db_retries(db, lambda: _release_refund(db, txnid, new_status))
        logger.info("Payment %s refunded", txnid)
        return JSONResponse(
            status_code=200,
            content={"txnid": txnid, "payment_status": new_status, "gateway": result},
        )

    return application


def app_from_env() -> FastAPI:
    """Startup factory: fails loudly when merchant credentials are missing."""
    settings = load_settings()
    database.configure(settings.database_url)
    Base.metadata.create_all(database.engine)
    gateway = GatewayClient(settings.credential, timeout=settings.gateway_timeout)
    return create_app(settings.credential, gateway_client=gateway)


def _not_found(txnid: str) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": f"Payment '{txnid}' not found"})


def _status_response(payment: Payment) -> PaymentStatusResponse:
    return PaymentStatusResponse(
        txnid=payment.id,
        order_id=payment.order_id,
        amount=str(Decimal(payment.amount).quantize(Decimal("0.01"))),
        status=payment.status,
        gateway_payment_id=payment.gateway_payment_id,
    )


def _sign_and_store(
    builder: PaymentRequestBuilder,
    payload: CheckoutRequest,
    db: Session,
) -> PreparedPayment | JSONResponse:
    """Sign a checkout request and record it as a pending payment.

    A txnid is never signed twice: a caller-supplied id that already exists
    is rejected with 409 before anything is signed.
    """
    if payload.txnid and db.get(Payment, payload.txnid) is not None:
        return JSONResponse(
            status_code=409,
            content={"error": f"Transaction id '{payload.txnid}' already used"},
        )

    try:
        prepared = builder.build(
            amount=payload.amount,
            productinfo=payload.product_info,
            firstname=payload.buyer_name,
            email=payload.buyer_email,
            phone=payload.buyer_phone,
            success_url=payload.success_url,
            failure_url=payload.failure_url,
            custom_fields=payload.custom_fields,
            txnid=payload.txnid,
        )
    except PaymentRequestError as exc:
        return JSONResponse(
            status_code=400,
            content={"error": type(exc).__name__, "detail": str(exc)},
        )

    signed = prepared.request
    db.add(Payment(
        id=signed.txnid,
        order_id=payload.order_id,
        amount=signed.amount,
        product_info=signed.productinfo,
        buyer_name=signed.firstname,
        buyer_email=signed.email,
        buyer_phone=signed.phone,
        status="pending",
    ))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return JSONResponse(
            status_code=409,
            content={"error": f"Transaction id '{signed.txnid}' already used"},
        )
    return prepared


def _backoff(attempt: int) -> None:
    jitter = random.uniform(0, DB_RETRY_DELAY)
    time.sleep(DB_RETRY_DELAY * (attempt + 1) + jitter)


def _with_db_retries(db: Session, operation):
    """Run a short database operation, retrying while the database is locked."""
    for attempt in range(MAX_DB_RETRIES):
        try:
            return operation()
        except OperationalError:
            db.rollback()
            if attempt == MAX_DB_RETRIES - 1:
                raise
            _backoff(attempt)


def _claim_refund(db: Session, txnid: str) -> tuple[str, Decimal] | JSONResponse:
    """Move a completed payment to refund_pending before the gateway is asked.

    The conditional UPDATE is the claim: of several concurrent refund requests
    for one payment, exactly one matches a row. Returns the gateway payment id
    and amount for the winner, or the error response for everyone else.
    """
    payment = db.get(Payment, txnid)
    if payment is None:
        return _not_found(txnid)
    payment_id, amount = payment.gateway_payment_id, payment.amount

    claimed = db.execute(
        update(Payment)
        .where(
            Payment.id == txnid,
            Payment.status == COMPLETED,
            Payment.gateway_payment_id.is_not(None),
        )
        .values(status=REFUND_PENDING, updated_at=datetime.now(timezone.utc))
    ).rowcount
    db.commit()
    if claimed != 1:
        return JSONResponse(
            status_code=409,
            content={"error": f"Payment in '{payment.status}' status cannot be refunded"},
        )
    return payment_id, amount


def _release_refund(db: Session, txnid: str, status: str) -> None:
    """Settle a claimed refund: refunded when accepted, back to completed otherwise."""
    db.execute(
        update(Payment)
        .where(Payment.id == txnid, Payment.status == REFUND_PENDING)
        .values(status=status, updated_at=datetime.now(timezone.utc))
    )
    db.commit()


def _process_with_retries(
    db: Session,
    verdict: Verified,
    callback: PaymentCallback,
    body_str: str,
) -> JSONResponse:
    # Steps 4-8 wrapped in a retry loop for database concurrency
    for attempt in range(MAX_DB_RETRIES):
        try:
            return _process_callback(db, verdict, callback, body_str)
        except Exception:  # noqa: BLE001
            db.rollback()
            if attempt == MAX_DB_RETRIES - 1:
                logger.exception(
                    "DB operations failed after %d attempts for txnid %s",
                    MAX_DB_RETRIES, verdict.txnid,
                )
                return JSONResponse(
                    status_code=503,
                    content={"error": "Temporarily unavailable", "txnid": verdict.txnid},
                )
            _backoff(attempt)


def _process_callback(
    db: Session,
    verdict: Verified,
    callback: PaymentCallback,
    body_str: str,
) -> JSONResponse:
    """Execute database operations for a single verified callback.

    Any database errors (OperationalError, etc.) propagate to the caller for retry.
    """
    txnid = verdict.txnid

    # 4. Look up payment -> 404 if not found
    payment = db.get(Payment, txnid)
    if payment is None:
        return _not_found(txnid)

    # 5. Atomic idempotency claim via unique (txnid, status) constraint
    event = CallbackEvent(
        txnid=txnid,
        gateway_status=verdict.status,
        digest=callback.hash.strip().lower(),
        payload=body_str,
        processing_status="processing",
        received_at=datetime.now(timezone.utc),
    )
    db.add(event)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        return JSONResponse(
            status_code=200,
            content={"status": "accepted", "txnid": txnid, "idempotent": True},
        )

    # 6. The signed amount must be the amount this transaction was created for
    if Decimal(verdict.amount) != Decimal(payment.amount):
        logger.error(
            "Callback amount mismatch for %s: expected %s, received %s",
            txnid, payment.amount, verdict.amount,
        )
        event.processing_status = "needs_reconciliation"
        db.commit()
        return JSONResponse(
            status_code=409,
            content={"error": "Payment amount mismatch", "txnid": txnid},
        )

    # 7. Apply state transition
    try:
        new_status = apply_transition(payment.status, verdict.status)
    except ConflictingEventError as exc:
        logger.warning("Callback for %s needs reconciliation: %s", txnid, exc)
        event.processing_status = "needs_reconciliation"
        db.commit()
        return JSONResponse(
            status_code=202,
            content={"status": "needs_reconciliation", "txnid": txnid},
        )
    except InvalidTransitionError as exc:
        db.rollback()
        return JSONResponse(status_code=422, content={"error": str(exc), "txnid": txnid})

    # 8. Update payment status + mark event processed, then commit
    payment.status = new_status
    payment.updated_at = datetime.now(timezone.utc)
    if new_status == COMPLETED and callback.mihpayid:
        payment.gateway_payment_id = callback.mihpayid
    event.processing_status = "processed"
    event.processed_at = datetime.now(timezone.utc)
    db.commit()

    succeeded = new_status == COMPLETED
    return JSONResponse(
        status_code=200,
        content={
            "status": "accepted",
            "txnid": txnid,
            "payment_status": new_status,
            "message": (
                "Payment successful" if succeeded
                else failure_reason(verdict.status, callback.error_Message)
            ),
        },
    )
