"""Process-wide assembly of the billing collaborators."""
from __future__ import annotations

from dataclasses import dataclass

from creditledger.config import Settings, settings
from creditledger.services.credits import CreditEngine, credit_engine
from creditledger.services.cycles import CycleManager
from creditledger.services.reconciler import SubscriptionReconciler
from creditledger.services.stripe_gateway import StripeGateway
from creditledger.services.webhooks import WebhookIngestor


@dataclass(frozen=True)
class BillingServices:
    gateway: StripeGateway
    credits: CreditEngine
    cycles: CycleManager
    reconciler: SubscriptionReconciler
    ingestor: WebhookIngestor

    def close(self) -> None:
        self.gateway.close()


def build_billing_services(
    gateway: StripeGateway | None = None, config: Settings | None = None
) -> BillingServices:
    config = config or settings
    gateway = gateway or StripeGateway.from_settings(config)
    cycles = CycleManager(
        credits=credit_engine,
        default_plan_slug=config.default_plan_slug,
        plan_change_topup=config.plan_change_topup,
    )
    reconciler = SubscriptionReconciler(
        gateway,
        cycles,
        default_plan_slug=config.default_plan_slug,
        free_cycle_days=config.free_cycle_days,
    )
    ingestor = WebhookIngestor(
        gateway,
        reconciler,
        claim_timeout_seconds=config.webhook_claim_timeout_seconds,
    )
    return BillingServices(
        gateway=gateway,
        credits=credit_engine,
        cycles=cycles,
        reconciler=reconciler,
        ingestor=ingestor,
    )
