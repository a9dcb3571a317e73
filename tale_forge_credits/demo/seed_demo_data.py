# tale_forge_credits/demo/seed_demo_data.py

from tale_forge_credits.config.loader import default_credit_config
from tale_forge_credits.core.coordinator import CreditCoordinator, GeneratedArtifact
from tale_forge_credits.core.payments import PaymentEvent, PaymentGrantProcessor, PaymentKind
from tale_forge_credits.storage.db import DEFAULT_DB_PATH
from tale_forge_credits.storage.models import SubscriptionTier
from tale_forge_credits.storage.repository import initialize_schema

initialize_schema(DEFAULT_DB_PATH)

coordinator = CreditCoordinator.from_config(default_credit_config(), DEFAULT_DB_PATH)
payments = PaymentGrantProcessor(coordinator)

coordinator.open_account("demo-free-reader")
coordinator.open_account("demo-storyteller", SubscriptionTier.STARTER)

payments.handle(PaymentEvent(
    event_id="evt_demo_pack",
    user_id="demo-storyteller",
    price_id="pack_medium",
    kind=PaymentKind.ONE_TIME
))

segment = "Once upon a time a small dragon learned to read by moonlight. " * 25
coordinator.with_charge(
    "demo-storyteller",
    "audio",
    {"text": segment},
    lambda: GeneratedArtifact(id="demo-segment-1", payload=b"")
)

print("Demo credit data inserted")
