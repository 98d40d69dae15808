"""
Ticket Record

The authoritative unit of ownership and admission state. Tickets are
minted by sales, gifts and cash sales; ownership moves by transfer token or
resale settlement; status moves by check-in, cancellation or refund. Rows
are never deleted.

Key Components:
- ticket_service.py: issuance, check-in, cancellation, transfer tokens and
  signed QR codes
- router.py: FastAPI endpoints for ticket holders and event staff
- schemas.py: Pydantic models for ticket data
"""
