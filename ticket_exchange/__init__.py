"""
Ticket Exchange

Event ticketing marketplace: primary sales against capped ticket tiers,
peer-to-peer resale, organizer favor offers, proximity vendor payments,
door cash sales and seller balances held with an external payment
processor.
"""

__version__ = "1.0.0"
