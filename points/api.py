from datetime import datetime
from typing import Optional

import structlog
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PayloadValidationError

from .config import Settings
from .errors import (
    IntegrationError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from .gateway import AlfredPayClient, PaymentGateway
from .logs import configure_logging
from .models import (
    CreateOrderRequest,
    CreateOrderResponse,
    HistoryPage,
    OrderStatusHistory,
    OrderStatusResponse,
    UserBalance,
    WebhookHealth,
    WebhookPayload,
    WebhookResult,
)
from .repositories import Storage
from .service import PointsService
from .signature import WebhookSignatureValidator
from .webhooks import WebhookProcessor

logger = structlog.get_logger(__name__)

WEBHOOK_STATUS_CODES = {
    None: status.HTTP_200_OK,
    "disabled": status.HTTP_503_SERVICE_UNAVAILABLE,
    "invalid_signature": status.HTTP_401_UNAUTHORIZED,
    "order_not_found": status.HTTP_404_NOT_FOUND,
    "transaction_mismatch": status.HTTP_400_BAD_REQUEST,
    "state_conflict": status.HTTP_400_BAD_REQUEST,
    "credit_failed": status.HTTP_400_BAD_REQUEST,
    "internal": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def _webhook_response(result: WebhookResult) -> JSONResponse:
    code = WEBHOOK_STATUS_CODES.get(result.error_code, status.HTTP_400_BAD_REQUEST)
    return JSONResponse(status_code=code, content=result.model_dump(mode="json"))


def create_app(
    settings: Optional[Settings] = None,
    storage: Optional[Storage] = None,
    gateway: Optional[PaymentGateway] = None,
    root_path: str = "",
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings)

    if gateway is None and settings.gateway_configured:
        gateway = AlfredPayClient.from_settings(settings)

    service = PointsService(storage=storage, gateway=gateway, settings=settings)
    processor = WebhookProcessor(service, settings=settings)

    app = FastAPI(
        title="Points Purchase API",
        description="PIX points purchases with webhook and polling payment reconciliation",
        version="1.0.0",
        root_path=root_path,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.service = service
    app.state.webhooks = processor

    @app.get("/health", tags=["System"])
    async def health_check():
        return {"status": "healthy", "service": "points", "environment": settings.environment}

    @app.post(
        "/points/orders",
        response_model=CreateOrderResponse,
        status_code=status.HTTP_201_CREATED,
        tags=["Orders"],
    )
    async def create_order(request: CreateOrderRequest) -> CreateOrderResponse:
        try:
            return await service.create_order(request)
        except ValidationError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        except IntegrationError:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Payment provider unavailable")
        except StateConflictError:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Order could not be created")

    @app.get("/points/orders/{order_id}/status", response_model=OrderStatusResponse, tags=["Orders"])
    async def get_order_status(order_id: str) -> OrderStatusResponse:
        try:
            return await service.check_order_status(order_id)
        except NotFoundError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Order {order_id} not found")

    @app.get("/points/orders/{order_id}/history", response_model=list[OrderStatusHistory], tags=["Orders"])
    async def get_order_history(order_id: str) -> list[OrderStatusHistory]:
        try:
            return await service.get_order_history(order_id)
        except NotFoundError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Order {order_id} not found")

    @app.get("/points/history", response_model=HistoryPage, tags=["History"])
    async def get_transaction_history(
        user_id: Optional[str] = None,
        order_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20,
    ) -> HistoryPage:
        try:
            return await service.get_transaction_history(
                user_id=user_id,
                order_id=order_id,
                start_date=start_date,
                end_date=end_date,
                page=page,
                limit=limit,
            )
        except ValidationError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    @app.get("/points/users/{user_id}/balance", response_model=UserBalance, tags=["Users"])
    async def get_user_balance(user_id: str) -> UserBalance:
        try:
            return await service.get_balance(user_id)
        except NotFoundError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No balance for user {user_id}")

    @app.post("/webhooks/alfred-pay", tags=["Webhooks"])
    async def receive_webhook(request: Request) -> JSONResponse:
        raw_body = await request.body()
        try:
            payload = WebhookPayload.model_validate_json(raw_body)
        except PayloadValidationError as e:
            logger.warning("webhook_payload_invalid", errors=e.error_count())
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook payload")

        result = await processor.process(payload, raw_body, headers=request.headers)
        return _webhook_response(result)

    @app.get("/webhooks/alfred-pay/health", response_model=WebhookHealth, tags=["Webhooks"])
    async def webhook_health() -> WebhookHealth:
        return await processor.health()

    @app.post("/webhooks/alfred-pay/simulate", tags=["Webhooks"])
    async def simulate_webhook(payload: WebhookPayload) -> JSONResponse:
        if settings.is_production:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Webhook simulation is not available in production",
            )

        payload = payload.model_copy(update={"signature": ""})
        raw_body = payload.model_dump_json(by_alias=True, exclude={"signature"}).encode("utf-8")
        if settings.webhook_secret:
            validator = processor.validator
            headers = {"X-Alfred-Signature": validator.sign(raw_body)}
        else:
            validator = WebhookSignatureValidator(None, allow_unsigned=True, production=False)
            headers = {}

        logger.info("webhook_simulated", order_id=payload.external_id, webhook_status=payload.status)
        result = await processor.process(payload, raw_body, headers=headers, validator=validator)
        return _webhook_response(result)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
