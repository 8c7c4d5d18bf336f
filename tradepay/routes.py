from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Body, Depends, File, Request, Response, UploadFile
from pydantic import BaseModel

from tradepay.auth import Actor, get_actor, require_admin
from tradepay.errors import AuthorizationError, UpstreamError, ValidationError
from tradepay.price_cache import make_price_advice_cache_key, normalize_price_advice_payload

router = APIRouter()


class OrderCreateRequest(BaseModel):
    item_id: str
    method: str = "cash"
    amount: Optional[Decimal] = None
    seller_id: Optional[str] = None
    buyer_id: Optional[str] = None  # admin only; defaults to the caller


def get_orders(request: Request):
    return request.app.state.orders


def _iso(value):
    return value.isoformat() if value else None


def serialize_order(order):
    return {
        "id": order.id,
        "order_number": order.order_number,
        "item_id": order.item_id,
        "buyer_id": order.buyer_id,
        "seller_id": order.seller_id,
        "amount": str(order.amount),
        "currency": order.currency,
        "status": order.status,
        "created_at": _iso(order.created_at),
        "updated_at": _iso(order.updated_at),
    }


def serialize_payment(payment):
    if payment is None:
        return None
    return {
        "id": payment.id,
        "order_id": payment.order_id,
        "amount": str(payment.amount),
        "currency": payment.currency,
        "method": payment.method,
        "status": payment.status,
        "paid_at": _iso(payment.paid_at),
        "refunded_at": _iso(payment.refunded_at),
        "slip_image_url": payment.slip_image_url,
        "provider": payment.provider,
        "provider_order_id": payment.provider_order_id,
        "provider_capture_id": payment.provider_capture_id,
        "buyer_token_rewarded": payment.buyer_token_rewarded,
        "seller_token_rewarded": payment.seller_token_rewarded,
    }


def serialize(settlement):
    return {"order": serialize_order(settlement.order), "payment": serialize_payment(settlement.payment)}


@router.post("/orders", status_code=201)
def create_order_api(
    request: OrderCreateRequest,
    actor: Actor = Depends(get_actor),
    orders=Depends(get_orders),
):
    buyer_id = request.buyer_id or actor.user_id
    if buyer_id != actor.user_id and not actor.is_admin:
        raise AuthorizationError("only admins can create orders for another buyer")

    settlement = orders.create_order(
        item_id=request.item_id,
        buyer_id=buyer_id,
        seller_id=request.seller_id,
        amount=request.amount,
        method=request.method,
    )
    return serialize(settlement)


@router.get("/orders")
def list_orders_api(
    buyer_id: Optional[str] = None,
    seller_id: Optional[str] = None,
    status: Optional[str] = None,
    payment_status: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    actor: Actor = Depends(get_actor),
    orders=Depends(get_orders),
):
    items, total = orders.list_orders(
        actor, buyer_id=buyer_id, seller_id=seller_id, status=status,
        payment_status=payment_status, page=page, limit=limit,
    )
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "orders": [serialize(s) for s in items],
    }


@router.get("/orders/{order_id}")
def get_order_api(order_id: str, actor: Actor = Depends(get_actor), orders=Depends(get_orders)):
    return serialize(orders.get_order(order_id, actor))


@router.delete("/orders/{order_id}")
def delete_order_api(order_id: str, actor: Actor = Depends(get_actor), orders=Depends(get_orders)):
    orders.soft_delete(order_id, actor)
    return {"message": "soft_deleted", "order_id": order_id}


@router.post("/orders/{order_id}/proof")
def submit_proof_api(
    order_id: str,
    http: Request,
    slip: UploadFile = File(...),
    actor: Actor = Depends(get_actor),
    orders=Depends(get_orders),
):
    collector = http.app.state.slips
    content = slip.file.read(collector.max_bytes + 1)
    reference = collector.store(content, slip.content_type)
    try:
        settlement = orders.submit_proof(order_id, actor, reference)
    except Exception:
        collector.discard(reference)
        raise
    return serialize(settlement)


@router.post("/orders/{order_id}/verify")
def verify_api(order_id: str, actor: Actor = Depends(get_actor), orders=Depends(get_orders)):
    return serialize(orders.verify(order_id, actor))


@router.post("/orders/{order_id}/checkout")
def checkout_api(order_id: str, actor: Actor = Depends(get_actor), orders=Depends(get_orders)):
    intent, settlement = orders.begin_gateway_payment(order_id, actor)
    body = serialize(settlement)
    body["intent"] = {
        "provider": intent.provider,
        "provider_order_id": intent.provider_order_id,
        "approve_url": intent.approve_url,
        "client_secret": intent.client_secret,
    }
    return body


@router.post("/orders/{order_id}/capture")
def capture_api(order_id: str, actor: Actor = Depends(get_actor), orders=Depends(get_orders)):
    return serialize(orders.capture_gateway_payment(order_id, actor))


@router.post("/orders/{order_id}/complete")
def complete_api(order_id: str, actor: Actor = Depends(get_actor), orders=Depends(get_orders)):
    return serialize(orders.complete(order_id, actor))


@router.post("/orders/{order_id}/cancel")
def cancel_api(order_id: str, actor: Actor = Depends(get_actor), orders=Depends(get_orders)):
    return serialize(orders.cancel(order_id, actor))


@router.post("/orders/{order_id}/refund")
def refund_api(order_id: str, actor: Actor = Depends(get_actor), orders=Depends(get_orders)):
    return serialize(orders.refund(order_id, actor))


@router.get("/tokens/{owner_id}")
def token_balance_api(owner_id: str, http: Request, actor: Actor = Depends(get_actor)):
    if owner_id != actor.user_id and not actor.is_admin:
        raise AuthorizationError("can only read your own token balance")
    ledger = http.app.state.ledger
    return {"owner_id": owner_id, "symbol": ledger.symbol, "balance": ledger.balance_of(owner_id)}


@router.post("/admin/rewards/reconcile")
def reconcile_rewards_api(http: Request, batch_size: int = 500, actor: Actor = Depends(get_actor)):
    require_admin(actor)
    if batch_size < 1:
        raise ValidationError("batch_size must be positive")
    return {"repaired": http.app.state.rewards.reconcile(batch_size=batch_size)}


@router.post("/price-advice")
def price_advice_api(
    http: Request,
    response: Response,
    payload: dict = Body(...),
    actor: Actor = Depends(get_actor),
):
    advisor = http.app.state.price_advisor
    if advisor is None:
        raise UpstreamError("price advisor not configured")
    if not str(payload.get("title") or "").strip():
        raise ValidationError("title is required")

    cache = http.app.state.price_cache
    key = make_price_advice_cache_key(payload)
    advice = cache.get(key)
    if advice is not None:
        response.headers["X-Cache"] = "HIT"
        return {"advice": advice, "cached": True}

    response.headers["X-Cache"] = "MISS"
    advice = advisor(normalize_price_advice_payload(payload))
    cache.put(key, advice)
    return {"advice": advice, "cached": False}
