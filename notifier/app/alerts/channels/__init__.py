"""
channels — Per-channel-type delivery capabilities.

Each capability exposes:
    validate(details)        → None, or raises ValidationError / ConfigurationError
    send(target, payload)    → DeliveryResult

Endpoint transports raise DeliveryError when the remote end is unreachable
or answers with an error; email reports per-recipient outcomes in the
returned DeliveryResult instead. The dispatcher turns either into a failed
delivery for that channel. Timeouts and fan-out live in the dispatcher.
"""
