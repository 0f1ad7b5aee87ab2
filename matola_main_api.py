"""
Matola - FastAPI Application
Thin HTTP surface over the invariant enforcement layer
"""

from fastapi import FastAPI, Depends, Form, Header, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel, Field
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from typing import Any, Optional
from datetime import date
from dataclasses import replace
import json
import logging
from contextlib import asynccontextmanager

from matola_config import MatolaSettings, configure_logging, get_settings
from matola_enforcement_integration import (
    DecisionLedger,
    InvariantEnforcer,
    MatolaError,
    InvariantViolation,
    ValidationError,
    Forbidden,
    InMemoryRepository,
    SettingsSecretStore,
    WebhookVerifier,
    TokenRegistry,
    RequestContext,
    UserInvariantEnforcer,
    ShipmentInvariantEnforcer,
    MatchInvariantEnforcer,
    PaymentInvariantEnforcer,
    RatingInvariantEnforcer,
    UssdInvariantEnforcer,
    UssdMenu,
    UssdSessionStore,
    UssdState,
    UssdStep,
    parse_ussd_text,
    require_authenticated,
    require_role,
    require_resource_owner,
    require_payment_access,
    calculate_distance,
    map_provider_status,
    webhook_idempotency_key,
)
from matola_geo_v1 import lookup_location
from matola_metrics import metrics_registry, record_api_error
from matola_models_v1 import (
    CargoType,
    Coordinate,
    Match,
    Payment,
    PaymentProvider,
    PaymentStatus,
    Rating,
    Role,
    Shipment,
    User,
    new_id,
)
from matola_phone_v1 import detect_mobile_money_provider, normalize_phone
from matola_ussd_v1 import SHORT_CODE, render_menu
from matola_webhook_v1 import SIGNATURE_HEADERS, parse_provider_callback, resolve_provider

logger = logging.getLogger("matola.api")

VERSION = "1.0.0"

# ============================================
# PYDANTIC MODELS (API DTOs)
# ============================================

class CoordinateRequest(BaseModel):
    lat: float
    lng: float

class ShipmentCreateRequest(BaseModel):
    cargo_type: CargoType
    weight_kg: float
    origin: CoordinateRequest
    destination: CoordinateRequest
    origin_name: str = Field(..., min_length=1, max_length=100)
    destination_name: str = Field(..., min_length=1, max_length=100)
    price_mwk: Optional[float] = None
    pickup_date: Optional[date] = None
    delivery_date: Optional[date] = None

    class Config:
        json_schema_extra = {
            "example": {
                "cargo_type": "agricultural",
                "weight_kg": 5000,
                "origin": {"lat": -13.9626, "lng": 33.7741},
                "destination": {"lat": -15.7861, "lng": 35.0058},
                "origin_name": "Lilongwe",
                "destination_name": "Blantyre",
                "price_mwk": 185000
            }
        }

class ShipmentResponse(BaseModel):
    id: str
    shipper_id: str
    status: str
    origin_name: str
    destination_name: str
    distance_km: float
    weight_kg: float
    price_mwk: Optional[float] = None

class MatchCreateRequest(BaseModel):
    shipment_id: str
    transporter_id: Optional[str] = None
    agreed_price_mwk: Optional[float] = None
    score: float = 0.0

class MatchResponse(BaseModel):
    id: str
    shipment_id: str
    transporter_id: str
    status: str
    agreed_price_mwk: Optional[float] = None

class RatingCreateRequest(BaseModel):
    match_id: str
    ratee_id: str
    score: Any  # type checked by the rating enforcer
    comment: Optional[str] = Field(None, max_length=500)

class RatingResponse(BaseModel):
    id: str
    match_id: str
    rater_id: str
    ratee_id: str
    score: int

class PaymentCreateRequest(BaseModel):
    shipment_id: str
    provider: Optional[PaymentProvider] = None
    amount_mwk: float
    platform_fee_mwk: float = 0.0
    idempotency_key: Optional[str] = Field(None, max_length=128)

class PaymentResponse(BaseModel):
    id: str
    shipment_id: str
    reference: str
    status: str
    escrow_status: str
    amount_mwk: float
    net_amount_mwk: float

class HealthResponse(BaseModel):
    status: str
    version: str
    health_score: float
    ledger_integrity: bool
    total_users: int
    total_shipments: int
    total_matches: int

# ============================================
# APPLICATION LIFECYCLE
# ============================================

class AppState:
    """Collaborators built once per process and shared by all requests."""
    def __init__(self, settings: Optional[MatolaSettings] = None):
        self.settings = settings or get_settings()
        self.repository = InMemoryRepository()
        self.secret_store = SettingsSecretStore(self.settings)
        self.verifier = WebhookVerifier(self.secret_store)
        self.decision_ledger = DecisionLedger(self.settings.DECISION_LEDGER_SECRET)
        self.tokens = TokenRegistry()

        self.user_enforcer = UserInvariantEnforcer(self.repository)
        self.shipment_enforcer = ShipmentInvariantEnforcer(self.repository)
        self.match_enforcer = MatchInvariantEnforcer(self.repository, self.settings)
        self.payment_enforcer = PaymentInvariantEnforcer(self.repository, self.settings)
        self.rating_enforcer = RatingInvariantEnforcer(self.repository)

        self.ussd_menu = UssdMenu(UssdInvariantEnforcer(self.settings))
        self.ussd_sessions = UssdSessionStore(self.settings.USSD_SESSION_TTL_SECONDS)

app_state = AppState()

def get_app_state() -> AppState:
    return app_state

def get_request_context(
    authorization: Optional[str] = Header(None),
    state: AppState = Depends(get_app_state)
) -> RequestContext:
    return state.tokens.resolve(authorization)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    configure_logging(app_state.settings)
    logger.info("Matola API starting...")
    if not app_state.settings.AIRTEL_WEBHOOK_SECRET or not app_state.settings.TNM_WEBHOOK_SECRET:
        logger.warning("Payment webhook secrets incomplete; unconfigured providers will be rejected")
    yield
    logger.info("Matola API shutting down...")

# ============================================
# FASTAPI APPLICATION
# ============================================

app = FastAPI(
    title="Matola",
    description="Logistics marketplace for Malawi: validation and enforcement layer",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ============================================
# API ENDPOINTS
# ============================================

@app.get("/", tags=["Health"])
async def root():
    return {
        "service": "Matola",
        "version": VERSION,
        "status": "operational"
    }

@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check(state: AppState = Depends(get_app_state)):
    """System health check."""
    health_score = state.decision_ledger.health_score()

    return HealthResponse(
        status="healthy" if health_score >= 0.95 else "degraded",
        version=VERSION,
        health_score=health_score,
        ledger_integrity=state.decision_ledger.verify_chain_integrity(),
        total_users=len(state.repository.users),
        total_shipments=len(state.repository.shipments),
        total_matches=len(state.repository.matches)
    )

@app.post("/api/v1/shipments", response_model=ShipmentResponse, status_code=status.HTTP_201_CREATED, tags=["Shipments"])
async def create_shipment(
    request: ShipmentCreateRequest,
    context: RequestContext = Depends(get_request_context),
    state: AppState = Depends(get_app_state)
):
    """
    Post a shipment.

    Validates coordinates (inside Malawi), weight, price, dates and
    distinct endpoints before anything is stored.
    """
    principal = require_role(context, [Role.SHIPPER, Role.BROKER, Role.ADMIN])

    shipment = Shipment(
        id=new_id("SHP"),
        shipper_id=principal.user_id,
        cargo_type=request.cargo_type,
        weight_kg=request.weight_kg,
        origin=Coordinate(request.origin.lat, request.origin.lng),
        destination=Coordinate(request.destination.lat, request.destination.lng),
        origin_name=request.origin_name,
        destination_name=request.destination_name,
        price_mwk=request.price_mwk,
        pickup_date=request.pickup_date,
        delivery_date=request.delivery_date
    )
    state.shipment_enforcer.assert_on_create(shipment)
    state.repository.save_shipment(shipment)

    return _shipment_response(shipment)

@app.post("/api/v1/matches", response_model=MatchResponse, status_code=status.HTTP_201_CREATED, tags=["Matches"])
async def create_match(
    request: MatchCreateRequest,
    context: RequestContext = Depends(get_request_context),
    state: AppState = Depends(get_app_state)
):
    """
    Propose a transporter for a shipment.

    Runs under the InvariantEnforcer: pre-checks in dependency order, the
    store write, then a post-check that no second active match slipped in.
    Every check is recorded in the signed decision ledger.
    """
    principal = require_role(context, [Role.TRANSPORTER, Role.BROKER, Role.ADMIN])
    transporter_id = request.transporter_id or principal.user_id
    if principal.role == Role.TRANSPORTER and transporter_id != principal.user_id:
        raise Forbidden("Transporters can only accept loads for themselves", code="NOT_OWNER")

    match = Match(
        id=new_id("MAT"),
        shipment_id=request.shipment_id,
        transporter_id=transporter_id,
        score=request.score,
        agreed_price_mwk=request.agreed_price_mwk
    )

    def _save_match_action(match: Match, repository: InMemoryRepository, **kwargs) -> Match:
        return repository.save_match(match)

    enforcer = InvariantEnforcer(state.match_enforcer.create_invariants(), state.decision_ledger)
    match = enforcer.enforce_action(_save_match_action, **state.match_enforcer.create_kwargs(match))

    return MatchResponse(
        id=match.id,
        shipment_id=match.shipment_id,
        transporter_id=match.transporter_id,
        status=match.status.value,
        agreed_price_mwk=match.agreed_price_mwk
    )

@app.post("/api/v1/ratings", response_model=RatingResponse, status_code=status.HTTP_201_CREATED, tags=["Ratings"])
async def create_rating(
    request: RatingCreateRequest,
    context: RequestContext = Depends(get_request_context),
    state: AppState = Depends(get_app_state)
):
    principal = require_authenticated(context)

    rating = Rating(
        id=new_id("RAT"),
        match_id=request.match_id,
        rater_id=principal.user_id,
        ratee_id=request.ratee_id,
        score=request.score,
        comment=request.comment
    )
    state.rating_enforcer.assert_on_create(rating)
    state.repository.save_rating(rating)

    return RatingResponse(
        id=rating.id,
        match_id=rating.match_id,
        rater_id=rating.rater_id,
        ratee_id=rating.ratee_id,
        score=rating.score
    )

@app.post("/api/v1/payments", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED, tags=["Payments"])
async def create_payment(
    request: PaymentCreateRequest,
    context: RequestContext = Depends(get_request_context),
    state: AppState = Depends(get_app_state)
):
    """Open a payment for a shipment. Amount must match the agreed price."""
    principal = require_role(context, [Role.SHIPPER, Role.BROKER, Role.ADMIN])
    shipment = state.repository.get_shipment(request.shipment_id)
    if shipment is not None and principal.role == Role.SHIPPER:
        require_resource_owner(context, shipment.shipper_id)

    provider = request.provider
    if provider is None:
        payer = state.repository.get_user(principal.user_id)
        provider = detect_mobile_money_provider(payer.phone) if payer is not None else None
        if provider is None:
            raise ValidationError("Payment provider required for this number", code="PROVIDER_REQUIRED")

    payment = Payment(
        id=new_id("PAY"),
        shipment_id=request.shipment_id,
        payer_id=principal.user_id,
        provider=provider,
        amount_mwk=request.amount_mwk,
        platform_fee_mwk=request.platform_fee_mwk,
        idempotency_key=request.idempotency_key,
        reference=new_id("REF")
    )
    state.payment_enforcer.assert_on_create(payment)
    state.repository.save_payment(payment)

    return _payment_response(payment)

@app.get("/api/v1/payments/{payment_id}", response_model=PaymentResponse, tags=["Payments"])
async def get_payment(
    payment_id: str,
    context: RequestContext = Depends(get_request_context),
    state: AppState = Depends(get_app_state)
):
    require_authenticated(context)
    payment = state.repository.get_payment(payment_id)
    if payment is None:
        # same answer as "not yours" so payment ids cannot be probed
        raise Forbidden("No access to this payment", code="PAYMENT_ACCESS_DENIED")
    require_payment_access(context, payment.payer_id)
    return _payment_response(payment)

@app.post("/api/v1/payments/webhook/{provider}", tags=["Payments"])
async def payment_webhook(provider: str, request: Request, state: AppState = Depends(get_app_state)):
    """
    Mobile-money callback.

    The raw body must carry a valid HMAC-SHA256 signature from the
    provider. A callback (transaction, status) is processed at most once;
    replays are acknowledged without effect.
    """
    provider = resolve_provider(provider)
    raw_body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADERS.get(provider, "x-signature"))

    state.verifier.require_verified(provider, raw_body, signature)

    try:
        body = json.loads(raw_body)
    except ValueError:
        raise ValidationError("Malformed webhook body", code="INVALID_WEBHOOK_PAYLOAD")
    callback = parse_provider_callback(provider, body)
    key = webhook_idempotency_key(provider, callback.transaction_id, callback.status_code)

    try:
        state.payment_enforcer.assert_webhook_not_replayed(key)
    except InvariantViolation:
        logger.info(f"Duplicate webhook ignored: {key}")
        return {"received": True, "duplicate": True}

    payment = state.repository.get_payment_by_reference(callback.reference)
    if payment is None:
        logger.error(f"Payment not found for reference {callback.reference}")
        raise InvariantViolation("Payment not found", code="PAYMENT_NOT_FOUND")

    new_status = map_provider_status(provider, callback.status_code)
    if new_status == PaymentStatus.CONFIRMED:
        state.payment_enforcer.assert_can_confirm(payment, webhook_verified=True)
    elif new_status != payment.status:
        state.payment_enforcer.assert_status_transition(payment.status, new_status)

    if not state.repository.mark_webhook_processed(key):
        return {"received": True, "duplicate": True}

    state.repository.save_payment(
        replace(payment, status=new_status, provider_reference=callback.transaction_id)
    )
    logger.info(f"Payment {payment.id}: {payment.status.value} -> {new_status.value} via {provider.value}")
    return {"received": True, "status": new_status.value}

@app.post("/api/v1/ussd", response_class=PlainTextResponse, tags=["USSD"])
async def ussd_callback(
    sessionId: str = Form(...),
    phoneNumber: str = Form(...),
    serviceCode: str = Form(""),
    text: str = Form(""),
    state: AppState = Depends(get_app_state)
):
    """
    USSD gateway callback (form-encoded, as the gateway posts it).

    Replies "CON <menu>" to continue or "END <message>" to close the
    session. Every reply is 200; enforcement failures end the session.
    """
    try:
        return _ussd_reply(state, sessionId, phoneNumber, text)
    except MatolaError as e:
        logger.warning(f"USSD {sessionId} ({serviceCode}): {e.code} {e.message}")
        record_api_error(e.code, e.http_status)
        state.ussd_sessions.delete(sessionId)
        if e.code == "SESSION_EXPIRED":
            return PlainTextResponse("END " + render_menu(UssdState.SESSION_TIMEOUT, {}))
        if e.code == "INVALID_PHONE":
            return PlainTextResponse("END Invalid request. Please try again.")
        return PlainTextResponse(f"END An error occurred. Please dial {SHORT_CODE} to try again.")

@app.get("/metrics", tags=["Observability"])
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(metrics_registry),
        media_type=CONTENT_TYPE_LATEST
    )

# ============================================
# HELPERS
# ============================================

def _ussd_reply(state: AppState, session_id: str, phone: str, raw_text: str) -> PlainTextResponse:
    state.user_enforcer.assert_phone_format(phone)
    text = parse_ussd_text(raw_text)
    session = state.ussd_sessions.get(session_id)

    if session is None:
        if text:
            return PlainTextResponse("END " + render_menu(UssdState.SESSION_TIMEOUT, {}))
        session = state.ussd_sessions.create(session_id, normalize_phone(phone))
        return PlainTextResponse("CON " + render_menu(UssdState.WELCOME, session.context, session.language))

    try:
        step = state.ussd_menu.process_input(session, text)
    except ValidationError as e:
        logger.info(f"USSD {session.session_id}: {e.code} for input {text!r}")
        step = UssdStep(UssdState.ERROR_RETRY, session.context, False)

    if step.is_end and step.new_state == UssdState.POST_CONFIRM:
        try:
            _create_ussd_shipment(state, session.phone, step.context)
        except MatolaError as e:
            state.ussd_sessions.delete(session.session_id)
            return PlainTextResponse(("END Could not post shipment: " + e.message)[:164])

    state.ussd_sessions.advance(session, step)
    prefix = "END " if step.is_end else "CON "
    return PlainTextResponse(prefix + state.ussd_menu.render(step, session.language))

def _shipment_response(shipment: Shipment) -> ShipmentResponse:
    return ShipmentResponse(
        id=shipment.id,
        shipper_id=shipment.shipper_id,
        status=shipment.status.value,
        origin_name=shipment.origin_name,
        destination_name=shipment.destination_name,
        distance_km=round(calculate_distance(
            shipment.origin.lat, shipment.origin.lng,
            shipment.destination.lat, shipment.destination.lng
        ), 1),
        weight_kg=shipment.weight_kg,
        price_mwk=shipment.price_mwk
    )

def _payment_response(payment: Payment) -> PaymentResponse:
    return PaymentResponse(
        id=payment.id,
        shipment_id=payment.shipment_id,
        reference=payment.reference,
        status=payment.status.value,
        escrow_status=payment.escrow_status.value,
        amount_mwk=payment.amount_mwk,
        net_amount_mwk=payment.net_amount_mwk
    )

def _create_ussd_shipment(state: AppState, phone: str, context: dict) -> Shipment:
    """Store the shipment a USSD caller just confirmed, registering the caller if new."""
    user = state.repository.get_user_by_phone(phone)
    if user is None:
        user = User(id=new_id("USR"), phone=phone, role=Role.SHIPPER)
        state.user_enforcer.assert_on_create(user)
        state.repository.save_user(user)

    origin = lookup_location(context.get('origin'))
    destination = lookup_location(context.get('destination'))
    if origin is None or destination is None:
        raise ValidationError("unknown town, use a district centre", code="UNKNOWN_LOCATION")

    shipment = Shipment(
        id=new_id("SHP"),
        shipper_id=user.id,
        cargo_type=CargoType(context['cargo_type']),
        weight_kg=context['weight_kg'],
        origin=Coordinate(*origin),
        destination=Coordinate(*destination),
        origin_name=context['origin'],
        destination_name=context['destination'],
        price_mwk=context.get('price_mwk')
    )
    state.shipment_enforcer.assert_on_create(shipment)
    logger.info(f"USSD shipment {shipment.id} posted by {user.id}")
    return state.repository.save_shipment(shipment)

# ============================================
# ERROR HANDLERS
# ============================================

@app.exception_handler(MatolaError)
async def matola_error_handler(request: Request, exc: MatolaError):
    if exc.http_status >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
    else:
        logger.warning(f"{exc.code} on {request.url.path}: {exc.message}")
    record_api_error(exc.code, exc.http_status)
    return JSONResponse(exc.to_response(), status_code=exc.http_status)

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    field = ".".join(str(part) for part in errors[0]["loc"][1:]) if errors else ""
    message = f"Invalid request field: {field}" if field else "Invalid request"
    record_api_error("VALIDATION_ERROR", status.HTTP_400_BAD_REQUEST)
    return JSONResponse({"error": message, "code": "VALIDATION_ERROR"}, status_code=status.HTTP_400_BAD_REQUEST)

@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.url.path}")
    record_api_error("INTERNAL_ERROR", status.HTTP_500_INTERNAL_SERVER_ERROR)
    return JSONResponse(MatolaError().to_response(), status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "matola_main_api:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
