import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from order_service.saga import OrderSagaOrchestrator, RequestedItem
from order_service.schemas.order import OrderCreate, OrderFailureResponse, OrderResponse
from order_service.store import OrderStore
from shared.errors import MessagingUnavailableError, ReasonCode

router = APIRouter()
logger = logging.getLogger(__name__)

_FAILURE_STATUS = {
    ReasonCode.INVALID_INPUT: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ReasonCode.INSUFFICIENT_STOCK: status.HTTP_409_CONFLICT,
    ReasonCode.PAYMENT_DECLINED: status.HTTP_402_PAYMENT_REQUIRED,
    ReasonCode.SERVICE_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def get_orchestrator(request: Request) -> OrderSagaOrchestrator:
    return request.app.state.orchestrator


def get_store(request: Request) -> OrderStore:
    return request.app.state.orchestrator.store


def _failure(reason: ReasonCode, detail: str, order_id=None, order_status=None) -> JSONResponse:
    body = OrderFailureResponse(order_id=order_id, status=order_status, reason=reason, detail=detail)
    return JSONResponse(status_code=_FAILURE_STATUS[reason], content=body.model_dump(mode="json"))


@router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    responses={code: {"model": OrderFailureResponse} for code in set(_FAILURE_STATUS.values())},
)
async def place_order(
    body: OrderCreate,
    request: Request,
    orchestrator: OrderSagaOrchestrator = Depends(get_orchestrator),
):
    request_id = _request_id(request)
    logger.info(
        "Received place_order request",
        extra={"request_id": request_id, "owner_id": body.owner_id, "item_count": len(body.items)},
    )
    try:
        result = await orchestrator.create_order(
            body.owner_id,
            [RequestedItem(product_id=item.product_id, quantity=item.quantity) for item in body.items],
            correlation_id=request_id,
        )
    except MessagingUnavailableError as exc:
        logger.error("Order broker unavailable", extra={"request_id": request_id, "error": str(exc)})
        return _failure(ReasonCode.SERVICE_UNAVAILABLE, "Order messaging is temporarily unavailable")

    if not result.success:
        return _failure(result.reason, result.detail, result.order_id, result.status)

    order = await orchestrator.store.get(result.order_id)
    return OrderResponse.model_validate(order)


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: uuid.UUID,
    request: Request,
    store: OrderStore = Depends(get_store),
) -> OrderResponse:
    request_id = _request_id(request)
    logger.info(
        "Received get_order request",
        extra={"request_id": request_id, "order_id": str(order_id)},
    )
    order = await store.get(order_id)
    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    return OrderResponse.model_validate(order)
