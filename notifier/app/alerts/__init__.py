"""
alerts — Alert and subscription notification engine.

Sub-modules:
    channels/       — Channel-type registry and delivery capabilities (email, chat, http)
    conditions      — When an alert fires
    schedule        — Due-ness, slots and the periodic tick
    ledger          — At-most-once bookkeeping per channel and slot
    dispatcher      — Evaluate → render → fan-out → audit; subscription notices
    subscriptions   — Recipients, enable/disable, auto-archive
    permissions     — Read / write visibility
    service         — Operations behind the HTTP API
    engine          — Wiring of all of the above
    store           — Entity store interface + in-memory implementation
    collaborators   — Query runner, collection permissions, audit sink
    models          — Data structures shared across the system
"""
