"""
Payment Guard Service
Screens mobile money payments and provider webhooks before they reach execution:
- Rate limiting per user and per webhook source
- Webhook signature and replay verification
- Phone / amount / provider validation and daily limits
- Fraud risk scoring with manual review queue
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import jwt
from fastapi import FastAPI, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from payguard.behavior import BehaviorAnalysisWorker
from payguard.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, HISTORY_CB_CONFIG
from payguard.db import make_engine, make_session_factory
from payguard.error_handling import ErrorCodes, add_error_handlers, create_error_response
from payguard.events import SecurityEventSink, SqlEventSink
from payguard.guard import AttemptState, GuardDecision, PaymentGuard
from payguard.kafka import KafkaEventSink, make_producer
from payguard.models import Base
from payguard.providers import ProviderDirectory
from payguard.rate_limiter import InMemoryCounterStore, RateLimiter, rules_from_config
from payguard.redis_client import RedisClient, RedisCounterStore
from payguard.risk_scoring import IpSet, RiskScorer, RiskThresholds
from payguard.schemas import OutcomeReport, PaymentAttempt, PaymentCheckRequest, WebhookEnvelope
from payguard.security import (
    AUD_OUTCOME, account_created_at, has_role, verify_service_token, verify_user_token,
)
from payguard.settings import Settings, settings as default_settings
from payguard.signatures import SignatureVerifier
from payguard.validation import PaymentValidator

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = ("x-signature", "x-yellowcard-signature")
TIMESTAMP_HEADERS = ("x-timestamp", "x-yellowcard-timestamp")

def build_sink(config: Settings) -> SecurityEventSink:
    engine = make_engine(config.database_url)
    Base.metadata.create_all(bind=engine)
    sink: SecurityEventSink = SqlEventSink(make_session_factory(engine))
    if config.kafka_enabled:
        sink = KafkaEventSink(sink, make_producer(config.kafka_bootstrap))
        logger.info(f"Publishing security events to Kafka at {config.kafka_bootstrap}")
    return sink

def build_guard(config: Settings, sink: Optional[SecurityEventSink] = None) -> PaymentGuard:
    """Wire every guard component from one Settings object"""
    sink = sink or build_sink(config)

    if config.counter_backend == "redis":
        store = RedisCounterStore(RedisClient(config.redis_url, config.redis_timeout_seconds))
    else:
        store = InMemoryCounterStore(lock_timeout=config.rate_limit_timeout_seconds)

    if config.provider_directory_path:
        directory = ProviderDirectory.from_json(config.provider_directory_path)
    else:
        directory = ProviderDirectory.default()

    thresholds = RiskThresholds(
        large_amount=config.large_amount_threshold,
        velocity=config.velocity_threshold,
        unusual_amount_variance=config.unusual_amount_variance,
    )
    breaker_config = CircuitBreakerConfig(
        failure_threshold=HISTORY_CB_CONFIG.failure_threshold,
        reset_timeout=HISTORY_CB_CONFIG.reset_timeout,
        success_threshold=HISTORY_CB_CONFIG.success_threshold,
        timeout=config.history_timeout_seconds,
    )

    return PaymentGuard(
        rate_limiter=RateLimiter(store, sink, rules_from_config(config.rate_limits)),
        validator=PaymentValidator(directory),
        scorer=RiskScorer(thresholds, config.suspicious_ips),
        sink=sink,
        verifier=SignatureVerifier(config.resolved_webhook_secrets(), sink,
                                   tolerance_seconds=config.replay_tolerance_seconds),
        history_breaker=CircuitBreaker("payment_history", breaker_config),
        behavior_worker=BehaviorAnalysisWorker(sink, max_queue_size=config.behavior_queue_size),
        history_window_seconds=config.history_window_seconds,
    )

def client_ip(request: Request, trusted_proxies: Optional[IpSet] = None) -> str:
    """
    The peer address, or the first untrusted hop of X-Forwarded-For when the
    peer itself is a trusted proxy. Hops are read right to left.
    """
    peer = request.client.host if request.client else ""
    if trusted_proxies is None or peer not in trusted_proxies:
        return peer
    forwarded = request.headers.get("x-forwarded-for", "")
    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    for hop in reversed(hops):
        if hop not in trusted_proxies:
            return hop
    return hops[0] if hops else peer

def first_header(request: Request, names) -> Optional[str]:
    for name in names:
        value = request.headers.get(name)
        if value:
            return value
    return None

def decision_response(decision: GuardDecision) -> JSONResponse:
    """Render a guard decision; risk factors never leave the service"""
    if decision.state == AttemptState.APPROVED:
        content = {
            "success": True,
            "status": decision.state.value,
            "message": decision.message,
        }
        if decision.attempt_id:
            content["attempt_id"] = decision.attempt_id
        if decision.fee is not None:
            content["fee"] = decision.fee
            content["total"] = decision.total
        return JSONResponse(status_code=decision.http_status, content=content)

    headers = None
    if decision.retry_after:
        headers = {"Retry-After": str(decision.retry_after)}
    field = next(iter(decision.errors), None) if decision.errors else None
    return create_error_response(
        error_code=decision.code,
        message=decision.message,
        status_code=decision.http_status,
        field=field,
        context=decision.public_context() or None,
        headers=headers,
        status=decision.state.value,
    )

def create_app(config: Optional[Settings] = None, guard: Optional[PaymentGuard] = None) -> FastAPI:
    config = config or default_settings
    trusted_proxies = IpSet(config.trusted_proxies)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.guard is None:
            app.state.guard = build_guard(config)
        worker = app.state.guard.behavior_worker
        if worker is not None:
            worker.start()
        logger.info(f"{config.service_name} started")
        yield
        if worker is not None:
            worker.stop()
        if app.state.guard.history_breaker is not None:
            app.state.guard.history_breaker.shutdown()

    app = FastAPI(title="Payment Guard Service", version="1.0.0", lifespan=lifespan)
    app.state.settings = config
    app.state.guard = guard
    add_error_handlers(app)

    def get_guard(request: Request) -> PaymentGuard:
        current = request.app.state.guard
        if current is None:
            raise HTTPException(503, "guard not initialised")
        return current

    def bearer_token(authorization: Optional[str]) -> str:
        if not authorization or not authorization.startswith("Bearer "):
            raise HTTPException(401, "missing bearer token")
        return authorization.split(" ", 1)[1]

    # User auth dependency
    def user_auth(authorization: Optional[str] = Header(None)):
        try:
            return verify_user_token(config, bearer_token(authorization))
        except jwt.PyJWTError as e:
            raise HTTPException(401, f"invalid token: {e}")

    def admin_auth(user=Depends(user_auth)):
        if not has_role(user, "ADMIN"):
            raise HTTPException(403, "admin role required")
        return user

    def outcome_auth(authorization: Optional[str] = Header(None)):
        try:
            return verify_service_token(config, bearer_token(authorization), AUD_OUTCOME)
        except jwt.PyJWTError as e:
            raise HTTPException(401, f"invalid token: {e}")

    @app.get("/health")
    def health(request: Request):
        current = request.app.state.guard
        if current is None:
            return JSONResponse(status_code=503, content={"ok": False, "service": config.service_name})
        status = {"service": config.service_name, **current.health()}
        return JSONResponse(status_code=200 if status["ok"] else 503, content=status)

    @app.post("/payments/check")
    def check_payment(body: PaymentCheckRequest, request: Request,
                      user=Depends(user_auth), guard: PaymentGuard = Depends(get_guard)):
        """
        Screen a payment attempt before it is executed.
        Returns 200 when the payment may proceed, 202 when it is held for review.
        """
        # attempt ids are always minted here; unknown body fields are ignored
        attempt = PaymentAttempt(
            user_id=user["sub"],
            user_role=user["role"],
            account_created_at=account_created_at(user),
            source_ip=client_ip(request, trusted_proxies),
            user_agent=request.headers.get("user-agent", ""),
            headers=dict(request.headers),
            **body.model_dump(),
        )
        return decision_response(guard.check_payment(attempt))

    @app.get("/providers/{country_code}", dependencies=[Depends(user_auth)])
    def list_providers(country_code: str, guard: PaymentGuard = Depends(get_guard)):
        """Providers available in a country, with limits, fees and payer instructions"""
        directory = guard.validator.directory
        items = []
        for provider_id in directory.providers_for_country(country_code):
            rule = directory.lookup(provider_id, country_code)
            item = {
                "provider_id": provider_id,
                "currency": rule.currency,
                "min_amount": rule.min_amount,
                "max_amount": rule.max_amount,
                "fee_percentage": rule.fee_percentage,
                "fee_fixed": rule.fee_fixed,
            }
            info = directory.info(provider_id)
            if info is not None:
                item.update(info.model_dump(mode="json", exclude={"provider_id"}))
            items.append(item)
        if not items:
            return create_error_response(
                error_code=ErrorCodes.NOT_FOUND,
                message=f"No providers available in {country_code.upper()}",
                status_code=404,
            )
        return {"country_code": country_code.upper(), "count": len(items), "providers": items}

    @app.post("/webhooks/{source_tag}")
    async def receive_webhook(source_tag: str, request: Request, guard: PaymentGuard = Depends(get_guard)):
        envelope = WebhookEnvelope(
            raw_body=await request.body(),
            signature_header=first_header(request, SIGNATURE_HEADERS),
            timestamp_header=first_header(request, TIMESTAMP_HEADERS),
            source_tag=source_tag,
            source_ip=client_ip(request, trusted_proxies),
            user_agent=request.headers.get("user-agent", ""),
        )
        decision = await run_in_threadpool(guard.check_webhook, envelope)
        if decision.state == AttemptState.APPROVED:
            return {"success": True, "status": decision.state.value, "source": source_tag}
        return decision_response(decision)

    @app.post("/payments/{attempt_id}/outcome", dependencies=[Depends(outcome_auth)])
    def report_outcome(attempt_id: str, body: OutcomeReport, guard: PaymentGuard = Depends(get_guard)):
        if not guard.report_outcome(attempt_id, body.status):
            return create_error_response(
                error_code=ErrorCodes.NOT_FOUND,
                message=f"Payment attempt {attempt_id} not found",
                status_code=404,
            )
        return {"success": True, "attempt_id": attempt_id, "status": body.status}

    @app.get("/review-queue", dependencies=[Depends(admin_auth)])
    def review_queue(limit: int = 100, guard: PaymentGuard = Depends(get_guard)):
        items = guard.sink.pending_reviews(limit)
        return {"count": len(items), "items": [item.model_dump(mode="json") for item in items]}

    return app

logging.basicConfig(level=getattr(logging, default_settings.log_level.upper(), logging.INFO))

app = create_app()
