"""
alerts — Nearby-user alert fan-out for approved SOS reports.

Sub-modules:
    channels/       — Per-channel delivery adapters (push, WhatsApp)
    alert_service   — Fan-out orchestration: targeting, batching, timeouts
    geo_fence       — Spatial targeting of recipients around an incident
    models          — Data structures shared across the system
    store           — AlertRecord persistence
"""
