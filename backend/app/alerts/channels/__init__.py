"""
channels — Per-channel delivery adapters.

Each adapter exposes:
    send(channel_id, message)   → DeliveryOutcome
    send_many(items, timeout=s) → List[DeliveryOutcome]  (same order as items)

Adapters report failures as data. The timeout bounds each send; adapters
with a native batch API (FCM) apply it to each provider batch call instead.
Batching lives in alert_service.
"""
