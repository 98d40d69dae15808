"""
Ticket Type Capacity Ledger

Tracks sold versus maximum inventory for every priced tier of an event.
Reservation is a single conditional UPDATE so concurrent buyers can never
push ``sold_count`` past ``max_quantity``; release is keyed by ticket and
happens at most once per ticket.
"""
