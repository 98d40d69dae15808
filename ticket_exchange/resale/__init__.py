"""
Resale Listing Ledger

Secondary-market listings against existing tickets. At most one listing per
ticket is active at any time; the ticket row carries a mirror of that
listing (``listing_status``/``listing_price_cents``) that only this ledger
writes.
"""
