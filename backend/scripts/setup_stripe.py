#!/usr/bin/env python3
"""
Stripe setup script - creates the SubPirate plan catalog and the webhook endpoint.

Product metadata carries the feature grants (`feature_<key>=true`) and usage limits
(`feature_limit_<metric>=<n>`) that the webhook handlers parse into product features.
Safe to re-run: products are matched by name and prices by lookup key.
"""

import argparse
import os
import sys
from typing import Any, Dict, List

import stripe

from subpirate.services.entitlements import TIER_FEATURES, USAGE_LIMITS
from subpirate.services.webhook_service import HANDLED_EVENT_TYPES

WEBHOOK_PATH = "/api/stripe/webhook"

# price_cents: flat monthly fee in cents
PRODUCTS = {
    'starter': {
        'name': 'Starter',
        'description': 'Essential tools for Reddit marketing beginners',
        'price_cents': 1900,
    },
    'creator': {
        'name': 'Creator',
        'description': 'Perfect for content creators and growing brands',
        'price_cents': 3400,
    },
    'pro': {
        'name': 'Pro',
        'description': 'Advanced features for professional marketers',
        'price_cents': 4900,
    },
    'agency': {
        'name': 'Agency',
        'description': 'Full platform access for marketing teams and agencies',
        'price_cents': 9700,
    },
}


def build_feature_metadata(tier: str) -> Dict[str, str]:
    """Metadata encoding a tier's features and usage limits"""
    metadata = {f"feature_{key}": "true" for key in sorted(TIER_FEATURES[tier])}
    for metric, limit in USAGE_LIMITS[tier].items():
        metadata[f"feature_limit_{metric}"] = "unlimited" if limit is None else str(limit)
    return metadata


def find_or_create_price(product_id: str, plan_key: str, config: Dict[str, Any], existing_prices: List[Any],
                         api_key: str) -> Any:
    lookup_key = f"{plan_key}_monthly"
    for price in existing_prices:
        if price.product != product_id or not price.active:
            continue
        if getattr(price, 'lookup_key', None) == lookup_key and price.unit_amount == config['price_cents']:
            print(f"    ✓ Reusing price: {price.id} ({lookup_key})")
            return price

    print(f"    ➕ Creating price: {config['price_cents']} cents ({lookup_key})")
    return stripe.Price.create(
        product=product_id,
        currency="usd",
        unit_amount=config['price_cents'],
        recurring={"interval": "month"},
        lookup_key=lookup_key,
        transfer_lookup_key=True,
        api_key=api_key,
    )


def create_or_update_products(api_key: str) -> Dict[str, Dict[str, str]]:
    print(f"\n{'='*60}\nSyncing Stripe Products\n{'='*60}\n")
    results = {}
    existing_products = {p.name: p for p in stripe.Product.list(limit=100, active=True, api_key=api_key).auto_paging_iter()}
    existing_prices = list(stripe.Price.list(limit=100, active=True, api_key=api_key).auto_paging_iter())

    for key, config in PRODUCTS.items():
        print(f"Plan: {config['name']}")
        metadata = build_feature_metadata(key)

        product = existing_products.get(config['name'])
        if product:
            product = stripe.Product.modify(product.id, description=config['description'], metadata=metadata,
                                           api_key=api_key)
            print(f"  ✓ Updated product: {product.id}")
        else:
            product = stripe.Product.create(name=config['name'], description=config['description'], metadata=metadata,
                                           api_key=api_key)
            print(f"  ✓ Created product: {product.id}")

        price = find_or_create_price(product.id, key, config, existing_prices, api_key)
        results[key] = {'stripe_product_id': product.id, 'stripe_price_id': price.id}
    return results


def register_webhook(base_url: str, api_key: str) -> None:
    url = base_url.rstrip('/') + WEBHOOK_PATH
    events = list(HANDLED_EVENT_TYPES)
    print(f"\n{'='*60}\nRegistering webhook: {url}\n{'='*60}\n")

    for endpoint in stripe.WebhookEndpoint.list(limit=100, api_key=api_key).auto_paging_iter():
        if endpoint.url == url:
            if set(endpoint.enabled_events) != set(events):
                stripe.WebhookEndpoint.modify(endpoint.id, enabled_events=events, api_key=api_key)
                print(f"  ✓ Updated events on {endpoint.id}")
            else:
                print(f"  ✓ Webhook already registered: {endpoint.id}")
            return

    endpoint = stripe.WebhookEndpoint.create(url=url, enabled_events=events, api_key=api_key)
    print(f"  ✓ Created webhook: {endpoint.id}")
    print(f"  ⚠️  Signing secret (store as STRIPE_WEBHOOK_SECRET): {endpoint.secret}")


def main():
    parser = argparse.ArgumentParser(description='Setup the SubPirate Stripe catalog.')
    parser.add_argument('--mode', choices=['test', 'live'], default='test', help='Stripe mode')
    parser.add_argument('--webhook-url', help='Public base URL of the backend; registers the webhook endpoint')
    args = parser.parse_args()

    env_var = 'STRIPE_SECRET_KEY' if args.mode == 'live' else 'STRIPE_TEST_SECRET_KEY'
    api_key = os.getenv(env_var)
    if not api_key:
        print(f"❌ {env_var} not found in environment.")
        sys.exit(1)

    print(f"Starting Setup: {args.mode.upper()}")

    plans = create_or_update_products(api_key)
    for key, plan in plans.items():
        print(f"  {key}: product={plan['stripe_product_id']} price={plan['stripe_price_id']}")

    if args.webhook_url:
        register_webhook(args.webhook_url, api_key)
    print(f"\n{'='*60}\n✅ Setup Complete\n{'='*60}")


if __name__ == '__main__':
    main()
