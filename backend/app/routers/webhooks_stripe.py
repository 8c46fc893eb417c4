"""Stripe Webhook ルーター

署名検証のみ同期で行い、即座に受領応答を返す。
イベント処理は応答送信後のバックグラウンドタスクで実行する。
"""
import stripe
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request

from app.core.logging import get_logger
from app.services import webhook_service
from app.services.stripe_service import StripeGateway, get_gateway

logger = get_logger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/api/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    gateway: StripeGateway = Depends(get_gateway),
):
    """Stripe Webhook エンドポイント (署名検証)"""
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    if not sig_header:
        logger.warning("Stripe webhook: 署名ヘッダーなし")
        raise HTTPException(status_code=400, detail="Missing signature")

    try:
        event = gateway.construct_event(payload, sig_header)
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Stripe webhook署名検証失敗: {e}")
        raise HTTPException(status_code=400, detail="Invalid signature")
    except ValueError as e:
        logger.warning(f"Stripe webhook本文不正: {e}")
        raise HTTPException(status_code=400, detail="Invalid payload")

    logger.info(f"Stripe webhook受信: {event.get('type')} ({event.get('id')})")
    background_tasks.add_task(webhook_service.process_event, gateway, event)
    return {"received": True}
