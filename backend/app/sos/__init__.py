"""
sos — Emergency report intake, admin review and AI triage.

Sub-modules:
    models      — IncidentReport and its value objects
    heuristics  — keyword priority / category tagging
    store       — store interfaces + in-memory backends
    orm         — SQLAlchemy tables
    sql_store   — SQL backends
    geocoding   — reverse geocoding with coordinate fallback
    classifier  — Gemini video classifier
    service     — intake, queries, stats
    review      — approve / reject state machine
    container   — wiring from Settings
"""
