#!/usr/bin/env python3
"""プランカタログ (essential / professional / enterprise) を登録するスクリプト

    python add_plans.py                 # DBのみ (Price IDは既存値を維持)
    python add_plans.py --with-stripe   # Stripe に Product / Price を作成して紐付け
"""
import argparse
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "backend"))

import stripe

from app.core.config import settings
from app.core.database import SessionLocal
from app.models.plan import Plan
from app.services.plan_catalog import DEFAULT_LIMITS

# 価格はUSDセント。None はカスタム価格 (Stripe Price を作らない)
PLANS = [
    {
        "plan_id": "essential",
        "name": "Essential",
        "description": "For small training teams getting started.",
        "monthly_amount": 4900,
        "annual_amount": 49000,
        "trial_days": 14,
        "display_order": 1,
        "features": ["projects", "participants", "courses", "email_notifications"],
    },
    {
        "plan_id": "professional",
        "name": "Professional",
        "description": "For growing organizations running many programs.",
        "monthly_amount": 14900,
        "annual_amount": 149000,
        "trial_days": 14,
        "display_order": 2,
        "features": [
            "projects", "participants", "courses", "email_notifications",
            "curriculums", "custom_roles", "ai_summarization", "reports",
        ],
    },
    {
        "plan_id": "enterprise",
        "name": "Enterprise",
        "description": "Unlimited scale with dedicated support.",
        "monthly_amount": None,
        "annual_amount": None,
        "trial_days": 30,
        "display_order": 3,
        "features": [
            "projects", "participants", "courses", "email_notifications",
            "curriculums", "custom_roles", "ai_summarization", "reports",
            "sso", "audit_log", "priority_support",
        ],
    },
]


def create_stripe_prices(plan_data: dict) -> dict:
    """Stripe に Product と月額/年額 Price を作成"""
    product = stripe.Product.create(
        api_key=settings.STRIPE_SECRET_KEY,
        name=f"{settings.SITE_NAME} {plan_data['name']}",
        description=plan_data["description"],
        metadata={"planId": plan_data["plan_id"]},
    )
    result = {"stripe_product_id": product["id"]}
    for key, amount, interval in (
        ("stripe_price_id", plan_data["monthly_amount"], "month"),
        ("stripe_annual_price_id", plan_data["annual_amount"], "year"),
    ):
        if amount is None:
            continue
        price = stripe.Price.create(
            api_key=settings.STRIPE_SECRET_KEY,
            product=product["id"],
            unit_amount=amount,
            currency="usd",
            recurring={"interval": interval},
            metadata={"planId": plan_data["plan_id"]},
        )
        result[key] = price["id"]
    return result


def main():
    parser = argparse.ArgumentParser(description="Seed the subscription plan catalog")
    parser.add_argument("--with-stripe", action="store_true", help="create Stripe products and prices")
    args = parser.parse_args()

    if args.with_stripe and not settings.STRIPE_SECRET_KEY:
        print("STRIPE_SECRET_KEY が未設定です")
        sys.exit(1)

    db = SessionLocal()
    try:
        for i, plan_data in enumerate(PLANS, start=1):
            print(f"[{i}/{len(PLANS)}] {plan_data['plan_id']} を登録中...")

            plan = db.query(Plan).filter(Plan.plan_id == plan_data["plan_id"]).first()
            if plan is None:
                plan = Plan(plan_id=plan_data["plan_id"])
                db.add(plan)

            plan.name = plan_data["name"]
            plan.description = plan_data["description"]
            plan.trial_days = plan_data["trial_days"]
            plan.display_order = plan_data["display_order"]
            plan.features = plan_data["features"]
            plan.resource_limits = DEFAULT_LIMITS[plan_data["plan_id"]]
            plan.is_active = True
            plan.is_public = True

            if args.with_stripe and not plan.stripe_product_id:
                for key, value in create_stripe_prices(plan_data).items():
                    setattr(plan, key, value)
                print(f"  Stripe連携: product={plan.stripe_product_id}, "
                      f"monthly={plan.stripe_price_id}, annual={plan.stripe_annual_price_id}")

        db.commit()
        print(f"\n全{len(PLANS)}プランの登録が完了しました")

    except Exception as e:
        db.rollback()
        print(f"\nエラー: {e}")
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
