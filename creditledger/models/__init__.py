from creditledger.models.ledger import (  # noqa: F401
    GRANT_REASONS,
    SPEND_REASONS,
    Account,
    LedgerEntry,
    LedgerReason,
)
from creditledger.models.subscription import (  # noqa: F401
    BillingPlan,
    Subscription,
    SubscriptionStatus,
)
from creditledger.models.webhook import WebhookEvent, WebhookEventStatus  # noqa: F401
