"""
Seller Wallet

Cached view of each seller's sub-balance at the payment processor, plus
withdrawals. The processor stays authoritative; the cache is refreshed on
every read that matters.
"""
