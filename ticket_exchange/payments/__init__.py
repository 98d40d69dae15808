"""
Payments

Fee calculation, the payment ledger, checkout for primary and resale
purchases, settlement of processor outcomes, refunds and referral
attribution.

Key Components:
- fee_calculator.py: pure fee and payout arithmetic per payment type
- ledger_service.py: payment rows, guarded status transitions and refunds
- checkout_service.py: primary and resale purchase flows
- settlement_service.py: applies processor outcomes to dependent rows
- referral_service.py: referral configuration, codes and earnings
"""
