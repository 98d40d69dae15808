"""
Account Subscriptions

Base, pro and enterprise account tiers. Paid tiers are bought through the
payment ledger and lapse when their billing period runs out.
"""
