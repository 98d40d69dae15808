"""
Proximity Payment Handshake

A vendor device requests payment from a nearby customer; the customer's
device sees the request through a realtime stream and confirms or cancels
it within five minutes.

Key Components:
- handshake_service.py: the handshake state machine and expiry sweep
- stream.py: per-customer change stream with ordered, versioned events
- router.py: REST endpoints and the WebSocket stream
"""
